import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from google import genai
from google.genai import errors, types
from pydantic import ValidationError

from browser_pilot.agent.views import FunctionCall
from browser_pilot.config import BackendConfig
from browser_pilot.controller.views import SafetyDecision, ToolResult
from browser_pilot.exceptions import BackendError, RateLimitError, UserCancelledError
from browser_pilot.llm.base import BackendAction, BackendRequest, BackendResult
from browser_pilot.llm.google.serializer import GoogleMessageSerializer

if TYPE_CHECKING:
	from browser_pilot.browser.types import Page
	from browser_pilot.controller.executor import ActAfterObserveExecutor
	from browser_pilot.controller.service import Controller

logger = logging.getLogger(__name__)

PauseGate = Callable[[], Awaitable[None]]

RATE_LIMIT_RETRIES = 3
RATE_LIMIT_DELAY_BASE = 1.0

ACT_FUNCTION = types.FunctionDeclaration(
	name='act',
	description=(
		'Perform a single natural-language action on the current page, such as '
		'"click the Sign in button" or "type \'hello\' into the search box". '
		'Prefer this when the target element is easier to describe than to locate by coordinates.'
	),
	parameters=types.Schema(
		type=types.Type.OBJECT,
		properties={'instruction': types.Schema(type=types.Type.STRING, description='What to do on the page.')},
		required=['instruction'],
	),
)


def _is_rate_limit(error: Exception) -> bool:
	if isinstance(error, errors.APIError) and error.code == 429:
		return True
	text = str(error).lower()
	return 'rate limit' in text or 'resource_exhausted' in text or 'quota' in text


def describe_call(call: FunctionCall) -> str:
	args = call.args
	if call.name == 'navigate':
		return f'Navigate to {args.get("url", "")}'
	if call.name == 'search':
		return f'Search for "{args.get("query", "")}"'
	if call.name == 'type_text_at':
		return f'Type "{args.get("text", "")}" at ({args.get("x")}, {args.get("y")})'
	if call.name == 'act':
		return str(args.get('instruction', 'act'))
	shown = {k: v for k, v in args.items() if k != 'safety_decision'}
	return f'{call.name}({json.dumps(shown, default=str)})' if shown else call.name


class GeminiComputerUseBackend:
	"""
	Gemini computer-use model driving the page through the Controller.

	Each step sends the latest screenshot and URL, executes every function call the
	model returns and answers with function responses. The loop ends when the
	model replies with text only (goal reached), when ``max_steps`` is exhausted,
	or when ``interrupt`` is called. Between steps it waits on ``pause_gate`` so a
	paused task does not start new work.
	"""

	def __init__(
		self,
		config: BackendConfig,
		controller: 'Controller',
		executor: Optional['ActAfterObserveExecutor'] = None,
		pause_gate: Optional[PauseGate] = None,
		client: Optional[genai.Client] = None,
	):
		self.config = config
		self.controller = controller
		self.executor = executor
		self.pause_gate = pause_gate
		if client is None:
			if not config.api_key:
				raise BackendError('GOOGLE_API_KEY is not set')
			client = genai.Client(api_key=config.api_key)
		self.client = client
		self.serializer = GoogleMessageSerializer()
		self._interrupted = False

	@property
	def generate_config(self) -> types.GenerateContentConfig:
		tools = [
			types.Tool(computer_use=types.ComputerUse(environment=types.Environment.ENVIRONMENT_BROWSER)),
		]
		if self.executor is not None:
			tools.append(types.Tool(function_declarations=[ACT_FUNCTION]))
		return types.GenerateContentConfig(tools=tools, system_instruction=self.config.system_prompt)

	async def interrupt(self) -> None:
		self._interrupted = True
		logger.debug('⏹️ Computer-use loop interrupt requested')

	def reset(self) -> None:
		"""Clear a previous interrupt. Called by the orchestrator when a new task starts."""
		self._interrupted = False

	async def _checkpoint(self) -> None:
		if self._interrupted:
			raise UserCancelledError('Interrupted by user')
		if self.pause_gate is not None:
			await self.pause_gate()
		if self._interrupted:
			raise UserCancelledError('Interrupted by user')

	async def _generate(self, contents: list[types.Content]) -> types.GenerateContentResponse:
		last_error: Optional[Exception] = None
		for attempt in range(RATE_LIMIT_RETRIES):
			try:
				return await asyncio.wait_for(
					self.client.aio.models.generate_content(
						model=self.config.model,
						contents=contents,
						config=self.generate_config,
					),
					timeout=self.config.request_timeout_seconds,
				)
			except asyncio.TimeoutError as e:
				raise BackendError(f'Gemini request timed out after {self.config.request_timeout_seconds}s') from e
			except Exception as e:
				if not _is_rate_limit(e):
					raise BackendError(f'Gemini API error: {e}', details={'attempt': attempt}) from e
				last_error = e
				delay = RATE_LIMIT_DELAY_BASE * (2**attempt)
				logger.warning(f'⚠️ Rate limited, retrying in {delay:.1f}s (attempt {attempt + 1}/{RATE_LIMIT_RETRIES})')
				await asyncio.sleep(delay)
		raise RateLimitError(f'Gemini API failed after {RATE_LIMIT_RETRIES} retries: {last_error}')

	async def _run_call(self, call: FunctionCall, reasoning: str, page: 'Page') -> tuple[BackendAction, dict[str, Any]]:
		safety_raw = call.args.get('safety_decision')
		if safety_raw:
			try:
				decision = SafetyDecision.model_validate(safety_raw)
				needs_user = decision.needs_user
				level, explanation = decision.decision.value, decision.explanation
			except ValidationError:
				# Unknown decisions are held back like a confirmation request
				needs_user = True
				level = safety_raw.get('decision', 'unknown') if isinstance(safety_raw, dict) else 'unknown'
				explanation = safety_raw.get('explanation') if isinstance(safety_raw, dict) else None
			if needs_user:
				note = f'Skipped: {level}. {explanation or ""}'.strip()
				logger.warning(f'🛡️ {call.name} requires confirmation, skipping: {explanation}')
				action = BackendAction(
					type=call.name,
					description=describe_call(call),
					reasoning=' '.join(filter(None, [reasoning, note])),
					args=call.args,
					success=False,
					skipped=True,
				)
				return action, {'error': 'Action requires user confirmation and was not executed'}

		result: ToolResult = await self.controller.act(call, page, executor=self.executor)
		logger.info(f'{"✅" if result.success else "❌"} {describe_call(call)}')
		action = BackendAction(
			type=call.name,
			description=describe_call(call),
			reasoning=reasoning or None,
			args=call.args,
			success=result.success,
		)
		if result.success:
			payload: dict[str, Any] = {'success': True}
			if isinstance(result.data, dict):
				payload.update({k: v for k, v in result.data.items() if isinstance(v, (str, int, float, bool))})
		else:
			payload = {'success': False, 'error': result.error or 'Action failed'}
		return action, payload

	async def execute(self, request: BackendRequest) -> BackendResult:
		page = request.page
		if page is None:
			raise BackendError('No page supplied to the computer-use backend')

		history: list[types.Content] = []
		actions: list[BackendAction] = []
		content = self.serializer.initial_turn(request.instruction, page.url, await page.screenshot(type='png'))

		for step in range(1, request.max_steps + 1):
			await self._checkpoint()
			logger.debug(f'🧠 Computer-use step {step}/{request.max_steps}')
			response = await self._generate([*history, content])
			try:
				parsed = self.serializer.parse_response(response)
			except ValueError as e:
				raise BackendError(f'Gemini API error: {e}') from e

			history.append(content)
			if parsed.content is not None:
				history.append(parsed.content)

			if parsed.is_complete:
				logger.info(f'🏁 Model finished after {step} step(s)')
				return BackendResult(
					success=True,
					message=parsed.final_response or 'Task completed',
					completed=True,
					actions=actions,
				)

			responses: list[tuple[str, dict[str, Any]]] = []
			for call in parsed.function_calls:
				await self._checkpoint()
				action, payload = await self._run_call(call, parsed.reasoning, page)
				actions.append(action)
				responses.append((call.name, payload))

			content = self.serializer.function_response_turn(responses, await page.screenshot(type='png'), page.url)

		logger.warning(f'⚠️ Step budget of {request.max_steps} exhausted before the goal was reached')
		return BackendResult(
			success=False,
			message=f'Stopped after {request.max_steps} steps without completing the goal',
			completed=False,
			actions=actions,
		)
