import asyncio
from typing import Any, Callable, Optional

import pytest

from browser_pilot.controller.views import ActResult, CandidateAction


class DummyMouse:
    def __init__(self, log: list):
        self.log = log

    async def click(self, x, y):
        self.log.append(('click', x, y))

    async def move(self, x, y, steps: int = 1):
        self.log.append(('move', x, y))

    async def down(self):
        self.log.append(('down',))

    async def up(self):
        self.log.append(('up',))

    async def wheel(self, dx, dy):
        self.log.append(('wheel', dx, dy))


class DummyKeyboard:
    def __init__(self, log: list):
        self.log = log

    async def press(self, key):
        self.log.append(('press', key))


class DummyPage:
    """Stands in for a playwright Page. Records mouse/keyboard/navigation calls in ``log``."""

    def __init__(self, url: str = 'about:blank', width: int = 1440, height: int = 900):
        self.url = url
        self.viewport_size = {'width': width, 'height': height}
        self.log: list = []
        self.mouse = DummyMouse(self.log)
        self.keyboard = DummyKeyboard(self.log)
        self.closed = False
        # (script, arg) -> result; return NotImplemented to fall through to defaults
        self.evaluate_handler: Optional[Callable[[str, Any], Any]] = None
        self.screenshot_error: Optional[Exception] = None

    def is_closed(self):
        return self.closed

    async def evaluate(self, script, arg=None):
        self.log.append(('evaluate', arg))
        if self.evaluate_handler is not None:
            result = self.evaluate_handler(script, arg)
            if result is not NotImplemented:
                return result
        if 'innerWidth' in script:
            return dict(self.viewport_size)
        if 'clearFirst' in script:
            return {'ok': True, 'tagName': 'INPUT'}
        if 'closest' in script:
            return {'tagName': 'BUTTON', 'id': 'submit', 'text': 'Submit'}
        return None

    async def goto(self, url, wait_until=None):
        self.log.append(('goto', url))
        self.url = url

    async def go_back(self, wait_until=None):
        self.log.append(('go_back',))

    async def go_forward(self, wait_until=None):
        self.log.append(('go_forward',))

    async def screenshot(self, type='png'):
        if self.screenshot_error is not None:
            raise self.screenshot_error
        return b'\x89PNG-fake'

    async def bring_to_front(self):
        self.log.append(('bring_to_front',))

    async def wait_for_load_state(self, state, timeout=None):
        self.log.append(('wait_for_load_state', state))


class DummyEngine:
    """In-memory AutomationEngine: a page list, an active page and scripted observe/act."""

    def __init__(self, pages: Optional[list] = None, active=None):
        self._pages = list(pages or [])
        self._active = active
        self.started = 0
        self.closed = False
        self.interrupted = False
        self.observe_result: Any = []
        self.act_results: dict = {}
        self.act_calls: list = []
        self.observe_calls: list = []

    async def start(self):
        self.started += 1
        return self

    async def close(self):
        self.closed = True

    def pages(self):
        return list(self._pages)

    def active_page(self):
        return self._active

    async def new_page(self):
        page = DummyPage(url='about:blank')
        self._pages.append(page)
        self._active = page
        return page

    async def observe(self, instruction, page):
        self.observe_calls.append((instruction, page))
        if isinstance(self.observe_result, Exception):
            raise self.observe_result
        return list(self.observe_result)

    async def act(self, instruction_or_candidate, page):
        self.act_calls.append(instruction_or_candidate)
        key = 'raw' if isinstance(instruction_or_candidate, str) else 'candidate'
        outcome = self.act_results.get(key)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        description = instruction_or_candidate if isinstance(instruction_or_candidate, str) else instruction_or_candidate.description
        return ActResult(success=True, message=f'{key} act ok', action_description=description)

    async def interrupt(self):
        self.interrupted = True


@pytest.fixture
def make_page():
    return DummyPage


@pytest.fixture
def make_engine():
    return DummyEngine


@pytest.fixture
def click_candidate():
    return CandidateAction(selector='xpath=/html[1]/body[1]/button[1]', description='click button "Sign in"', method='click')


@pytest.fixture
def no_sleep(monkeypatch):
    """Make asyncio.sleep return immediately (keeps settle/scroll waits out of test time)."""
    real_sleep = asyncio.sleep

    async def _fast_sleep(_delay, result=None):
        await real_sleep(0)
        return result

    monkeypatch.setattr(asyncio, 'sleep', _fast_sleep)
    return _fast_sleep
