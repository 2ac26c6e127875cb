from dataclasses import dataclass, field
from typing import Any, Optional

from google.genai.types import Content, FunctionResponse, GenerateContentResponse, Part

from browser_pilot.agent.views import FunctionCall

SCREENSHOT_MIME_TYPE = 'image/png'


@dataclass
class ParsedModelResponse:
	reasoning: str = ''
	function_calls: list[FunctionCall] = field(default_factory=list)
	content: Optional[Content] = None

	@property
	def is_complete(self) -> bool:
		return not self.function_calls

	@property
	def final_response(self) -> Optional[str]:
		return self.reasoning if self.is_complete else None


class GoogleMessageSerializer:
	"""Builds Gemini computer-use turns and reads model responses back."""

	@staticmethod
	def initial_turn(goal: str, current_url: str, screenshot: bytes) -> Content:
		text = (
			f'Current URL: {current_url}\n\n'
			f'User Goal: {goal}\n\n'
			'Please analyze the screenshot and determine the best next action to take.'
		)
		return Content(
			role='user',
			parts=[
				Part.from_text(text=text),
				Part.from_bytes(data=screenshot, mime_type=SCREENSHOT_MIME_TYPE),
			],
		)

	@staticmethod
	def function_response_turn(
		responses: list[tuple[str, dict[str, Any]]],
		screenshot: bytes,
		current_url: str,
	) -> Content:
		"""One user turn answering every function call of the previous model turn."""
		parts: list[Part] = [
			Part(function_response=FunctionResponse(name=name, response={**payload, 'url': current_url}))
			for name, payload in responses
		]
		parts.append(Part.from_text(text=f'Current URL: {current_url}'))
		parts.append(Part.from_bytes(data=screenshot, mime_type=SCREENSHOT_MIME_TYPE))
		return Content(role='user', parts=parts)

	@staticmethod
	def parse_response(response: GenerateContentResponse) -> ParsedModelResponse:
		"""Split the first candidate into reasoning text and function calls.

		Raises ValueError when the response carries no candidate content.
		"""
		candidates = response.candidates or []
		if not candidates:
			raise ValueError('No candidate in response')
		content = candidates[0].content
		if content is None or not content.parts:
			raise ValueError('No content parts in response')

		texts: list[str] = []
		calls: list[FunctionCall] = []
		for part in content.parts:
			if part.text:
				texts.append(part.text)
			if part.function_call:
				calls.append(FunctionCall(name=part.function_call.name or '', args=dict(part.function_call.args or {})))

		return ParsedModelResponse(reasoning=' '.join(texts).strip(), function_calls=calls, content=content)
