import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union
from urllib.parse import quote_plus

from browser_pilot.agent.views import FunctionCall
from browser_pilot.config import COORDINATE_RANGE, AgentConfig, EngineConfig
from browser_pilot.controller.views import (
    ActInstructionAction,
    ActionArgs,
    ClickAtAction,
    DragAndDropAction,
    HoverAtAction,
    KeyCombinationAction,
    NavigateAction,
    NoParamsAction,
    ScrollAtAction,
    ScrollDocumentAction,
    SearchAction,
    ToolResult,
    TypeTextAtAction,
    WaitAction,
    parse_action_args,
)
from browser_pilot.exceptions import ActionFailedError, error_message

if TYPE_CHECKING:
    from browser_pilot.browser.types import Page
    from browser_pilot.controller.executor import ActAfterObserveExecutor

logger = logging.getLogger(__name__)

SEARCH_URLS = {
    'google': 'https://www.google.com/search?q={}',
    'bing': 'https://www.bing.com/search?q={}',
    'duckduckgo': 'https://duckduckgo.com/?q={}',
}

# Actions that do not change the page and need no settle wait afterwards
NO_SETTLE_ACTIONS = {'open_web_browser', 'wait', 'wait_5_seconds', 'hover_at'}

KEY_ALIASES = {
    'ctrl': 'Control',
    'control': 'Control',
    'cmd': 'Meta',
    'command': 'Meta',
    'meta': 'Meta',
    'super': 'Meta',
    'alt': 'Alt',
    'option': 'Alt',
    'shift': 'Shift',
    'enter': 'Enter',
    'return': 'Enter',
    'esc': 'Escape',
    'escape': 'Escape',
    'tab': 'Tab',
    'space': 'Space',
    'backspace': 'Backspace',
    'delete': 'Delete',
    'up': 'ArrowUp',
    'down': 'ArrowDown',
    'left': 'ArrowLeft',
    'right': 'ArrowRight',
    'pageup': 'PageUp',
    'pagedown': 'PageDown',
    'home': 'Home',
    'end': 'End',
}

ELEMENT_INFO_JS = """
({x, y}) => {
  const el = document.elementFromPoint(x, y);
  if (!el) return {tagName: 'unknown'};
  const anchor = el.href || (el.closest && el.closest('a') && el.closest('a').href) || undefined;
  return {
    tagName: el.tagName,
    id: el.id || undefined,
    className: (typeof el.className === 'string' && el.className) || undefined,
    text: el.innerText ? String(el.innerText).slice(0, 50) : undefined,
    href: anchor,
  };
}
"""

HOVER_JS = """
({x, y}) => {
  const el = document.elementFromPoint(x, y);
  if (!el) return false;
  for (const type of ['mouseover', 'mouseenter']) {
    el.dispatchEvent(new MouseEvent(type, {view: window, bubbles: true, cancelable: true, clientX: x, clientY: y}));
  }
  return true;
}
"""

# Sets text on the focused (or pointed-at) element using value semantics for form
# controls and textContent semantics for contenteditable hosts.
SET_TEXT_JS = """
({x, y, text, clearFirst}) => {
  let el = document.activeElement;
  if (!el || el === document.body || el === document.documentElement) {
    el = document.elementFromPoint(x, y);
  }
  if (!el) return {ok: false, error: 'No element at coordinates'};
  const isFormControl = (el instanceof HTMLInputElement) || (el instanceof HTMLTextAreaElement) || (el instanceof HTMLSelectElement);
  if (isFormControl) {
    el.value = clearFirst ? text : (el.value || '') + text;
  } else if (el.isContentEditable) {
    el.textContent = clearFirst ? text : (el.textContent || '') + text;
  } else {
    return {ok: false, error: `Element <${el.tagName.toLowerCase()}> at coordinates is not editable`};
  }
  el.dispatchEvent(new Event('input', {bubbles: true}));
  el.dispatchEvent(new Event('change', {bubbles: true}));
  return {ok: true, tagName: el.tagName};
}
"""

VIEWPORT_JS = '({ width: window.innerWidth, height: window.innerHeight })'


def denormalize(value: float, dimension: int, coordinate_range: int = COORDINATE_RANGE) -> int:
    """Map a normalized coordinate to pixels: round(value / range * dimension), clamped to [0, dimension]."""
    pixel = round(value / coordinate_range * dimension)
    return max(0, min(int(dimension), int(pixel)))


def normalize_keys(keys: str) -> str:
    """'ctrl+a' -> 'Control+a', 'ENTER' -> 'Enter'. Unknown single characters pass through."""
    parts = [p.strip() for p in keys.replace(' ', '').split('+') if p.strip()]
    return '+'.join(KEY_ALIASES.get(p.lower(), p) for p in parts)


def ensure_scheme(url: str) -> str:
    url = url.strip()
    if url.startswith(('http://', 'https://', 'about:', 'file://', 'chrome://', 'data:')):
        return url
    return 'https://' + url


ActionHandler = Callable[..., Awaitable[ToolResult]]


@dataclass
class RegisteredAction:
    name: str
    description: str
    param_model: type[ActionArgs]
    function: ActionHandler


class Registry:
    """Name -> handler table filled through the ``action`` decorator."""

    def __init__(self):
        self.actions: dict[str, RegisteredAction] = {}

    def action(self, description: str, param_model: type[ActionArgs] = NoParamsAction, name: Optional[str] = None):
        def decorator(func: ActionHandler) -> ActionHandler:
            action_name = name or func.__name__
            self.actions[action_name] = RegisteredAction(
                name=action_name,
                description=description,
                param_model=param_model,
                function=func,
            )
            return func

        return decorator

    def get(self, name: str) -> Optional[RegisteredAction]:
        return self.actions.get(name)

    @property
    def names(self) -> list[str]:
        return list(self.actions)


class Controller:
    """
    Coordinate-based browser action primitives.

    Every primitive takes the target page explicitly and returns a ToolResult. No
    primitive raises: playwright and script failures come back as failed results
    carrying the exception's message. Settling after an action is left to the caller
    (see ``wait_for_settle``); ``act`` applies it after dispatch.
    """

    def __init__(
        self,
        engine_config: Optional[EngineConfig] = None,
        agent_config: Optional[AgentConfig] = None,
    ):
        self.engine_config = engine_config or EngineConfig()
        self.agent_config = agent_config or AgentConfig()
        self.registry = Registry()
        self._register_default_actions()

    def _register_default_actions(self) -> None:
        @self.registry.action('Open the web browser (already open; no-op)')
        async def open_web_browser(_: NoParamsAction, page: 'Page', executor=None):
            return ToolResult.ok({'url': page.url})

        @self.registry.action('Navigate the current page to a URL', param_model=NavigateAction)
        async def navigate(params: NavigateAction, page: 'Page', executor=None):
            return await self.navigate(page, params.url)

        @self.registry.action('Search the configured search engine for a query', param_model=SearchAction)
        async def search(params: SearchAction, page: 'Page', executor=None):
            return await self.search(page, params.query)

        @self.registry.action('Go back in history')
        async def go_back(_: NoParamsAction, page: 'Page', executor=None):
            return await self.go_back(page)

        @self.registry.action('Go forward in history')
        async def go_forward(_: NoParamsAction, page: 'Page', executor=None):
            return await self.go_forward(page)

        @self.registry.action('Click at normalized coordinates', param_model=ClickAtAction)
        async def click_at(params: ClickAtAction, page: 'Page', executor=None):
            return await self.click_at(page, params.x, params.y)

        @self.registry.action('Hover at normalized coordinates', param_model=HoverAtAction)
        async def hover_at(params: HoverAtAction, page: 'Page', executor=None):
            return await self.hover_at(page, params.x, params.y)

        @self.registry.action('Type text into the element at normalized coordinates', param_model=TypeTextAtAction)
        async def type_text_at(params: TypeTextAtAction, page: 'Page', executor=None):
            return await self.type_text_at(
                page,
                params.x,
                params.y,
                params.text,
                press_enter=params.press_enter,
                clear_first=params.clear_first,
            )

        @self.registry.action('Press a key or key combination such as "Control+A"', param_model=KeyCombinationAction)
        async def key_combination(params: KeyCombinationAction, page: 'Page', executor=None):
            return await self.key_combination(page, params.keys)

        @self.registry.action('Scroll the whole document one screen in a direction', param_model=ScrollDocumentAction)
        async def scroll_document(params: ScrollDocumentAction, page: 'Page', executor=None):
            return await self.scroll_document(page, params.direction)

        @self.registry.action('Scroll at normalized coordinates', param_model=ScrollAtAction)
        async def scroll_at(params: ScrollAtAction, page: 'Page', executor=None):
            return await self.scroll_at(page, params.x, params.y, params.direction, params.magnitude)

        @self.registry.action('Drag from one point to another', param_model=DragAndDropAction)
        async def drag_and_drop(params: DragAndDropAction, page: 'Page', executor=None):
            return await self.drag_and_drop(page, params.x, params.y, params.destination_x, params.destination_y)

        @self.registry.action('Wait five seconds')
        async def wait_5_seconds(_: NoParamsAction, page: 'Page', executor=None):
            return await self.wait_seconds(5)

        @self.registry.action('Wait for a number of seconds', param_model=WaitAction)
        async def wait(params: WaitAction, page: 'Page', executor=None):
            return await self.wait_seconds(params.seconds)

        @self.registry.action('Perform a natural-language action on the page', param_model=ActInstructionAction)
        async def act(params: ActInstructionAction, page: 'Page', executor: Optional['ActAfterObserveExecutor'] = None):
            if executor is None:
                return ToolResult.fail('No act executor available')
            result = await executor.act_after_observe(params.instruction)
            return ToolResult(success=result.success, error=result.error, data=result.model_dump(mode='json'))

    # --- Dispatch ---

    async def act(
        self,
        function_call: Union[FunctionCall, dict[str, Any]],
        page: 'Page',
        executor: Optional['ActAfterObserveExecutor'] = None,
        settle: bool = True,
    ) -> ToolResult:
        """Validate and execute one function call against ``page``."""
        if isinstance(function_call, dict):
            name, args = function_call.get('name', ''), function_call.get('args') or {}
        else:
            name, args = function_call.name, function_call.args

        try:
            params = parse_action_args(name, args)
        except ActionFailedError as e:
            logger.warning(f'⚠️ Rejected function call: {e.message}')
            return ToolResult.fail(e.message)

        registered = self.registry.get(name)
        if registered is None:
            return ToolResult.fail(f'Unknown action: {name}')

        logger.debug(f'🛠️ Executing {name} {args}')
        try:
            result = await registered.function(params, page, executor)
        except Exception as e:
            logger.warning(f'❌ Action {name} raised: {type(e).__name__}: {e}')
            result = ToolResult.fail(error_message(e))

        if settle and result.success and name not in NO_SETTLE_ACTIONS:
            await self.wait_for_settle(page)
        return result

    async def wait_for_settle(self, page: 'Page') -> None:
        """Bounded wait for network idle, falling back to a short fixed delay."""
        try:
            await page.wait_for_load_state('networkidle', timeout=self.agent_config.settle_timeout_ms)
        except Exception as e:
            logger.debug(f'networkidle not reached ({type(e).__name__}), sleeping {self.agent_config.settle_fallback_seconds}s')
            await asyncio.sleep(self.agent_config.settle_fallback_seconds)

    # --- Geometry ---

    async def _viewport_size(self, page: 'Page') -> tuple[int, int]:
        try:
            size = await page.evaluate(VIEWPORT_JS)
            if size and size.get('width') and size.get('height'):
                return int(size['width']), int(size['height'])
        except Exception as e:
            logger.debug(f'Viewport lookup via script failed: {type(e).__name__}: {e}')
        size = page.viewport_size
        if size:
            return int(size['width']), int(size['height'])
        return self.engine_config.viewport_width, self.engine_config.viewport_height

    async def denormalize_point(self, page: 'Page', x: float, y: float) -> tuple[int, int]:
        width, height = await self._viewport_size(page)
        coordinate_range = self.engine_config.coordinate_range
        return denormalize(x, width, coordinate_range), denormalize(y, height, coordinate_range)

    async def _element_info_at(self, page: 'Page', x: int, y: int) -> dict[str, Any]:
        try:
            info = await page.evaluate(ELEMENT_INFO_JS, {'x': x, 'y': y})
            return {k: v for k, v in (info or {}).items() if v is not None}
        except Exception as e:
            logger.debug(f'Element info lookup failed: {type(e).__name__}: {e}')
            return {'tagName': 'unknown'}

    # --- Primitives ---

    async def navigate(self, page: 'Page', url: str) -> ToolResult:
        target = ensure_scheme(url)
        try:
            await page.goto(target, wait_until='domcontentloaded')
            logger.info(f'🔗 Navigated to {target}')
            return ToolResult.ok({'url': page.url})
        except Exception as e:
            return self._failed('navigate', e)

    async def search(self, page: 'Page', query: str) -> ToolResult:
        template = SEARCH_URLS.get(self.engine_config.search_engine, SEARCH_URLS['google'])
        return await self.navigate(page, template.format(quote_plus(query)))

    async def go_back(self, page: 'Page') -> ToolResult:
        try:
            await page.go_back(wait_until='domcontentloaded')
            logger.info('🔙 Navigated back')
            return ToolResult.ok({'url': page.url})
        except Exception as e:
            return self._failed('go_back', e)

    async def go_forward(self, page: 'Page') -> ToolResult:
        try:
            await page.go_forward(wait_until='domcontentloaded')
            logger.info('🔜 Navigated forward')
            return ToolResult.ok({'url': page.url})
        except Exception as e:
            return self._failed('go_forward', e)

    async def click_at(self, page: 'Page', x: float, y: float) -> ToolResult:
        try:
            px, py = await self.denormalize_point(page, x, y)
            await page.mouse.click(px, py)
            logger.info(f'🖱️ Clicked at ({px}, {py})')
            return ToolResult.ok(await self._element_info_at(page, px, py))
        except Exception as e:
            return self._failed('click_at', e)

    async def hover_at(self, page: 'Page', x: float, y: float) -> ToolResult:
        try:
            px, py = await self.denormalize_point(page, x, y)
            await page.mouse.move(px, py)
            await page.evaluate(HOVER_JS, {'x': px, 'y': py})
            await asyncio.sleep(0.2)
            return ToolResult.ok(await self._element_info_at(page, px, py))
        except Exception as e:
            return self._failed('hover_at', e)

    async def type_text_at(
        self,
        page: 'Page',
        x: float,
        y: float,
        text: str,
        press_enter: bool = True,
        clear_first: bool = True,
    ) -> ToolResult:
        try:
            px, py = await self.denormalize_point(page, x, y)
            await page.mouse.click(px, py)
            await asyncio.sleep(0.1)
            outcome = await page.evaluate(SET_TEXT_JS, {'x': px, 'y': py, 'text': text, 'clearFirst': clear_first})
            if not outcome or not outcome.get('ok'):
                error = (outcome or {}).get('error') or 'Could not set text'
                return ToolResult.fail(error)
            if press_enter:
                await asyncio.sleep(0.1)
                await page.keyboard.press('Enter')
            logger.info(f'⌨️ Typed {len(text)} chars at ({px}, {py})')
            return ToolResult.ok({'text': text, 'pressEnter': press_enter})
        except Exception as e:
            return self._failed('type_text_at', e)

    async def key_combination(self, page: 'Page', keys: str) -> ToolResult:
        try:
            combo = normalize_keys(keys)
            if not combo:
                return ToolResult.fail('No keys given')
            await page.keyboard.press(combo)
            logger.info(f'⌨️ Pressed {combo}')
            return ToolResult.ok({'key': combo})
        except Exception as e:
            return self._failed('key_combination', e)

    @staticmethod
    def _scroll_delta(direction: str, amount: float) -> tuple[float, float]:
        if direction == 'down':
            return 0, amount
        if direction == 'up':
            return 0, -amount
        if direction == 'right':
            return amount, 0
        return -amount, 0

    async def scroll_document(self, page: 'Page', direction: str) -> ToolResult:
        try:
            width, height = await self._viewport_size(page)
            amount = min(width, height) * 0.8
            dx, dy = self._scroll_delta(direction, amount)
            await page.mouse.move(width / 2, height / 2)
            await page.mouse.wheel(dx, dy)
            await asyncio.sleep(0.3)
            logger.info(f'🔍 Scrolled document {direction} by {int(amount)}px')
            return ToolResult.ok({'method': 'scroll', 'direction': direction})
        except Exception as e:
            return self._failed('scroll_document', e)

    async def scroll_at(self, page: 'Page', x: float, y: float, direction: str, magnitude: float = 800) -> ToolResult:
        try:
            width, height = await self._viewport_size(page)
            coordinate_range = self.engine_config.coordinate_range
            px, py = denormalize(x, width, coordinate_range), denormalize(y, height, coordinate_range)
            # magnitude is in normalized units along the scroll axis
            axis = height if direction in ('up', 'down') else width
            amount = denormalize(magnitude, axis, coordinate_range)
            dx, dy = self._scroll_delta(direction, amount)
            await page.mouse.move(px, py)
            await page.mouse.wheel(dx, dy)
            await asyncio.sleep(0.3)
            logger.info(f'🔍 Scrolled {direction} by {amount}px at ({px}, {py})')
            return ToolResult.ok({'method': 'scroll', 'direction': direction, 'amount': amount})
        except Exception as e:
            return self._failed('scroll_at', e)

    async def drag_and_drop(self, page: 'Page', x: float, y: float, destination_x: float, destination_y: float) -> ToolResult:
        try:
            sx, sy = await self.denormalize_point(page, x, y)
            dx, dy = await self.denormalize_point(page, destination_x, destination_y)
            await page.mouse.move(sx, sy)
            await page.mouse.down()
            await page.mouse.move(dx, dy, steps=10)
            await page.mouse.up()
            logger.info(f'🖱️ Dragged ({sx}, {sy}) -> ({dx}, {dy})')
            return ToolResult.ok({'from': [sx, sy], 'to': [dx, dy]})
        except Exception as e:
            return self._failed('drag_and_drop', e)

    async def wait_seconds(self, seconds: float = 5) -> ToolResult:
        logger.info(f'🕒 Waiting for {seconds} seconds')
        await asyncio.sleep(seconds)
        return ToolResult.ok({'waited': seconds})

    @staticmethod
    def _failed(action: str, error: Exception) -> ToolResult:
        logger.warning(f'❌ {action} failed: {type(error).__name__}: {error}')
        return ToolResult.fail(error_message(error))
