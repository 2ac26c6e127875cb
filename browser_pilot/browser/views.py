from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Protocol, Union, runtime_checkable

if TYPE_CHECKING:
	from browser_pilot.browser.types import Page
	from browser_pilot.controller.views import ActResult, CandidateAction


def is_new_tab_page(url: str) -> bool:
	return url in ('about:blank', 'chrome://new-tab-page/', 'chrome://new-tab-page', 'chrome://newtab/', 'chrome://newtab')


@runtime_checkable
class TabHandle(Protocol):
	"""The visible tab the user is looking at. Owned by the host UI, not by the core."""

	async def capture_screenshot(self) -> bytes: ...

	async def get_current_url(self) -> str: ...

	async def run_js(self, code: str) -> Any: ...

	async def load_url(self, url: str) -> None: ...

	async def go_back(self) -> None: ...

	async def go_forward(self) -> None: ...


@runtime_checkable
class AutomationEngine(Protocol):
	"""A pool of automatable pages plus engine-level observe/act."""

	async def start(self) -> Any: ...

	async def close(self) -> None: ...

	def pages(self) -> list['Page']: ...

	def active_page(self) -> Optional['Page']: ...

	async def new_page(self) -> 'Page': ...

	async def observe(self, instruction: str, page: 'Page') -> list['CandidateAction']: ...

	async def act(self, instruction_or_candidate: Union[str, 'CandidateAction'], page: 'Page') -> 'ActResult': ...

	async def interrupt(self) -> None: ...


class PageTab:
	"""Adapts a playwright Page to the TabHandle interface."""

	def __init__(self, page: 'Page'):
		self.page = page

	async def capture_screenshot(self) -> bytes:
		return await self.page.screenshot(type='png')

	async def get_current_url(self) -> str:
		return self.page.url

	async def run_js(self, code: str) -> Any:
		return await self.page.evaluate(code)

	async def load_url(self, url: str) -> None:
		await self.page.goto(url, wait_until='domcontentloaded')

	async def go_back(self) -> None:
		await self.page.go_back(wait_until='load')

	async def go_forward(self) -> None:
		await self.page.go_forward(wait_until='load')
