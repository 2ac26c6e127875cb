"""
Page target resolution.

The automation engine sees every page in the host process, including the host
application's own UI (top bar, side bar, devtools). The resolver picks the one
page that is the real external content the user is looking at.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional, Sequence
from urllib.parse import urlparse

from browser_pilot.browser.views import is_new_tab_page
from browser_pilot.config import DEFAULT_INTERNAL_URL_PATTERNS
from browser_pilot.exceptions import NoTargetPageError

if TYPE_CHECKING:
	from browser_pilot.browser.types import Page
	from browser_pilot.browser.views import AutomationEngine

logger = logging.getLogger(__name__)

INTERNAL_URL_SCHEMES = ('file://', 'chrome://', 'devtools://', 'chrome-extension://')


def _page_url(page: 'Page') -> str:
	try:
		return page.url or ''
	except Exception as e:
		logger.debug(f'Could not read page url: {type(e).__name__}: {e}')
		return ''


def _hostname(url: str) -> Optional[str]:
	try:
		return urlparse(url).hostname or None
	except ValueError:
		return None


class PageResolver:
	"""Resolve which open page is the real target for the active tab.

	Strategies, in strict priority order (first match wins):
	1. exact URL match among non-internal pages
	2. same-hostname match among non-internal pages
	3. any non-internal page, preferring the engine's active page, else the most recently created one
	4. the engine's active page, if it is not internal
	5. NoTargetPageError
	"""

	def __init__(self, engine: 'AutomationEngine', internal_url_patterns: Sequence[str] = DEFAULT_INTERNAL_URL_PATTERNS):
		self.engine = engine
		self.internal_url_patterns = tuple(internal_url_patterns)

	def is_internal_url(self, url: Optional[str]) -> bool:
		if not url:
			return True
		lower = url.lower()
		if is_new_tab_page(lower):
			return True
		if lower.startswith(INTERNAL_URL_SCHEMES):
			return True
		return any(pattern.lower() in lower for pattern in self.internal_url_patterns)

	def resolve(self, target_url: Optional[str]) -> 'Page':
		pages = list(self.engine.pages())
		active = self.engine.active_page()

		logger.debug(f'🔎 Resolving target page for {target_url!r} among {len(pages)} page(s)')
		for index, page in enumerate(pages):
			logger.debug(f'   Page {index}: {_page_url(page)}')

		external = [p for p in pages if not self.is_internal_url(_page_url(p))]

		# 1) exact URL match
		if target_url:
			for page in external:
				if _page_url(page) == target_url:
					logger.debug(f'🎯 Found page with matching url: {target_url}')
					return page

		# 2) same hostname
		target_host = _hostname(target_url) if target_url else None
		if target_host:
			for page in external:
				if _hostname(_page_url(page)) == target_host:
					logger.debug(f'🎯 Found page with matching domain: {_page_url(page)}')
					return page

		# 3) any external page, active first, else most recently created
		if external:
			if active is not None and any(p is active for p in external):
				logger.debug(f'🎯 Using active external page: {_page_url(active)}')
				return active
			logger.debug(f'🎯 Using most recent external page: {_page_url(external[-1])}')
			return external[-1]

		# 4) engine's active page, if not internal
		if active is not None and not self.is_internal_url(_page_url(active)):
			logger.debug(f'🎯 Using engine active page: {_page_url(active)}')
			return active

		raise NoTargetPageError(
			f'No suitable page found for active tab {target_url!r}',
			details={'target_url': target_url, 'page_count': len(pages)},
		)

	def resolve_or_none(self, target_url: Optional[str]) -> Optional['Page']:
		try:
			return self.resolve(target_url)
		except NoTargetPageError:
			return None

	async def resolve_with_retry(
		self,
		target_url: Optional[str],
		attempts: int = 10,
		delay_seconds: float = 0.5,
	) -> Optional['Page']:
		"""Poll resolution for pages that have not yet appeared in the engine's page list.

		Returns None once all attempts are exhausted so the caller can create a fresh page.
		"""
		for attempt in range(attempts):
			page = self.resolve_or_none(target_url)
			if page is not None:
				if attempt:
					logger.debug(f'🎯 Target page appeared after {attempt + 1} attempt(s)')
				return page
			if attempt < attempts - 1:
				await asyncio.sleep(delay_seconds)
		logger.info(f'▫️ No suitable page found for {target_url!r} after {attempts} attempt(s)')
		return None
