# centralize imports for browser typing

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

__all__ = [
	'Browser',
	'BrowserContext',
	'Page',
	'Playwright',
	'async_playwright',
]
