from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union

import httpx

from browser_pilot.browser.types import Browser, BrowserContext, Page, Playwright, async_playwright
from browser_pilot.config import EngineConfig
from browser_pilot.controller.views import ActResult, CandidateAction
from browser_pilot.exceptions import InvalidStateError
from browser_pilot.dom.service import DomService

logger = logging.getLogger(__name__)


async def resolve_cdp_url(base_url: str, timeout: float = 2.0) -> str:
	"""Ask the debugging endpoint for its browser websocket URL, falling back to the base URL."""
	base = base_url.rstrip('/')
	try:
		async with httpx.AsyncClient() as client:
			response = await client.get(f'{base}/json/version', timeout=timeout)
			response.raise_for_status()
			ws_url = response.json().get('webSocketDebuggerUrl')
			if ws_url:
				logger.debug(f'🔌 Resolved CDP websocket url: {ws_url}')
				return ws_url
	except (httpx.HTTPError, ValueError) as e:
		logger.debug(f'Could not resolve websocket url from {base}/json/version: {type(e).__name__}: {e}')
	return base


class BrowserSession:
	"""
	Automation engine attached to an already-running chromium host over CDP.

	Exposes the host's pages as a pool, tracks which page the agent is focused on,
	and offers DOM-backed ``observe``/``act`` for natural-language instructions.
	The session never launches or kills the browser; ``close`` only drops the
	connection.
	"""

	def __init__(self, config: Optional[EngineConfig] = None):
		self.config = config or EngineConfig()
		self.playwright: Optional[Playwright] = None
		self.browser: Optional[Browser] = None
		self.browser_context: Optional[BrowserContext] = None
		self.agent_current_page: Optional[Page] = None
		self._start_lock = asyncio.Lock()
		self._interrupted = False

	@property
	def initialized(self) -> bool:
		return self.browser_context is not None

	def __repr__(self) -> str:
		return f'BrowserSession(cdp_url={self.config.cdp_url!r}, pages={len(self.pages())})'

	async def start(self) -> 'BrowserSession':
		"""Connect if not already connected. Safe to call at the start of every task."""
		self._interrupted = False
		async with self._start_lock:
			if self.initialized:
				return self

			endpoint = await resolve_cdp_url(self.config.cdp_url)
			logger.info(f'🌎 Connecting to existing chromium-based browser via CDP: {endpoint}')
			self.playwright = self.playwright or await async_playwright().start()
			self.browser = await self.playwright.chromium.connect_over_cdp(endpoint)
			if self.browser.contexts:
				self.browser_context = self.browser.contexts[0]
			else:
				self.browser_context = await self.browser.new_context()
			self.browser_context.on('page', self._on_new_page)
			logger.debug(f'🌎 Connected, {len(self.browser_context.pages)} page(s) open')
		return self

	async def close(self) -> None:
		"""Drop the CDP connection. The host browser keeps running."""
		browser, playwright = self.browser, self.playwright
		self.browser = None
		self.browser_context = None
		self.agent_current_page = None
		self.playwright = None
		if browser is not None:
			try:
				await browser.close()
			except Exception as e:
				logger.debug(f'Error closing CDP connection: {type(e).__name__}: {e}')
		if playwright is not None:
			try:
				await playwright.stop()
			except Exception as e:
				logger.debug(f'Error stopping playwright: {type(e).__name__}: {e}')
		logger.info('🛑 Browser session closed')

	def _on_new_page(self, page: Page) -> None:
		logger.debug(f'➕ New page opened: {page.url}')

	# --- Page pool ---

	def pages(self) -> list[Page]:
		if not self.browser_context:
			return []
		return [p for p in self.browser_context.pages if not p.is_closed()]

	def active_page(self) -> Optional[Page]:
		if self.agent_current_page is not None and not self.agent_current_page.is_closed():
			return self.agent_current_page
		self.agent_current_page = None
		pages = self.pages()
		return pages[-1] if pages else None

	async def new_page(self) -> Page:
		if not self.browser_context:
			await self.start()
		if self.browser_context is None:
			raise InvalidStateError('Browser context is not set up')
		page = await self.browser_context.new_page()
		self.agent_current_page = page
		logger.info('➕ Opened new page for the agent')
		return page

	async def focus_page(self, page: Page) -> None:
		"""Bring ``page`` to front and make it the session's active page."""
		self.agent_current_page = page
		try:
			await page.bring_to_front()
		except Exception as e:
			logger.debug(f'bring_to_front failed: {type(e).__name__}: {e}')

	# --- Observe / act ---

	async def observe(self, instruction: str, page: Page) -> list[CandidateAction]:
		dom = DomService(page, logger=logger)
		candidates = await dom.observe(instruction, max_candidates=self.config.max_observed_candidates)
		logger.debug(f'👀 Observed {len(candidates)} candidate(s) for "{instruction}"')
		return candidates

	async def act(self, instruction_or_candidate: Union[str, CandidateAction], page: Page) -> ActResult:
		if self._interrupted:
			description = instruction_or_candidate if isinstance(instruction_or_candidate, str) else instruction_or_candidate.description
			return ActResult(success=False, message='Interrupted', action_description=description, error='Interrupted')

		dom = DomService(page, logger=logger)
		if isinstance(instruction_or_candidate, CandidateAction):
			return await dom.act(instruction_or_candidate)

		candidates = await dom.observe(instruction_or_candidate, max_candidates=self.config.max_observed_candidates)
		if not candidates:
			message = f'No element matched instruction: {instruction_or_candidate}'
			return ActResult(success=False, message=message, action_description=instruction_or_candidate, error=message)
		return await dom.act(candidates[0])

	async def interrupt(self) -> None:
		"""Refuse further act calls until the next ``start``."""
		self._interrupted = True
		logger.debug('⏸️ Engine interrupted')

	@property
	def interrupted(self) -> bool:
		return self._interrupted
