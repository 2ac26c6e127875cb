from __future__ import annotations

"""
Agent orchestrator: runs one goal at a time against the resolved target page.

The heavy lifting is a single long-running call into the reasoning backend. The
orchestrator owns everything around it: the task lifecycle, page resolution,
screenshots, mapping backend sub-actions into the action history, event
emission, and making sure a user cancellation is never reported as an error.
"""

import asyncio
import base64
import logging
from typing import TYPE_CHECKING, Optional

from browser_pilot.agent.events import (
    ActionCompleteEvent,
    ActionEvent,
    CancelledEvent,
    CompleteEvent,
    ErrorEvent,
    Event,
    EventBus,
    PausedEvent,
    ReasoningEvent,
    ResumedEvent,
    ScreenshotEvent,
    StartEvent,
    TurnEvent,
)
from browser_pilot.agent.state_manager import StateManager, task_log
from browser_pilot.agent.views import ActionStatus, AgentAction, FunctionCall, TaskContextSnapshot
from browser_pilot.config import AgentConfig, Settings
from browser_pilot.exceptions import BackendError, BusyError, InvalidStateError, classify_error, error_message
from browser_pilot.llm.base import BackendAction, BackendRequest, BackendResult

if TYPE_CHECKING:
    from browser_pilot.browser.resolver import PageResolver
    from browser_pilot.browser.types import Page
    from browser_pilot.browser.views import AutomationEngine, TabHandle
    from browser_pilot.controller.executor import ActAfterObserveExecutor
    from browser_pilot.llm.base import ReasoningBackend

logger = logging.getLogger(__name__)

SUMMARY_ACTION = 'task_summary'


class AgentOrchestrator:
    """
    Single-task orchestrator.

    Only one task runs at a time: ``start_task`` raises BusyError while another is
    in flight. Cancellation is cooperative: ``cancel_task`` flags the run, asks the
    backend and engine to interrupt, and the run's completion and failure paths both
    check the flag so neither ``complete`` nor ``error`` is emitted for a cancelled
    task. Pause/resume only toggle state; the in-flight backend call keeps running
    until it next waits on ``wait_while_paused``.
    """

    def __init__(
        self,
        engine: 'AutomationEngine',
        backend: 'ReasoningBackend',
        executor: 'ActAfterObserveExecutor',
        resolver: 'PageResolver',
        config: Optional[AgentConfig | Settings] = None,
        active_tab: Optional['TabHandle'] = None,
        event_bus: Optional[EventBus] = None,
    ):
        if isinstance(config, Settings):
            config = config.agent
        self.config = config or AgentConfig()
        self.engine = engine
        self.backend = backend
        self.executor = executor
        self.resolver = resolver
        self.active_tab = active_tab
        self.event_bus = event_bus or EventBus(name='orchestrator')

        self.state_manager = StateManager(config=self.config, event_bus=EventBus(name='task'))
        # Context-level events are re-published on the orchestrator bus
        self.state_manager.event_bus.on_any(self.event_bus.emit)

        self._is_running = False
        self._cancel_requested = False
        self._resume_event = asyncio.Event()
        self._resume_event.set()

    # --- Public API ---

    @property
    def is_running(self) -> bool:
        return self._is_running

    def get_context(self) -> TaskContextSnapshot:
        return self.state_manager.snapshot()

    def set_active_tab(self, tab: Optional['TabHandle']) -> None:
        self.active_tab = tab

    async def wait_while_paused(self) -> None:
        """Block while the task is paused. Used by backends between steps."""
        await self._resume_event.wait()

    async def start_task(self, goal: str) -> None:
        """Run ``goal`` to completion, error or cancellation.

        Raises BusyError if a task is already running. Every other failure is
        reported through state and the ``error`` event, never raised.
        """
        if self._is_running or self.state_manager.is_active():
            raise BusyError('A task is already running', details={'task_id': self.state_manager.task_id})

        self._is_running = True
        self._cancel_requested = False
        self._resume_event.set()
        # An interrupt belongs to the task it was sent to
        reset = getattr(self.backend, 'reset', None)
        if reset is not None:
            reset()
        try:
            await self._run(goal)
        except Exception as e:
            if self._cancel_requested:
                logger.debug(f'Ignoring error raised after cancellation: {type(e).__name__}: {e}')
            else:
                self._handle_failure(e)
        finally:
            self._is_running = False
            self.executor.clear_page_cache()

    async def cancel_task(self) -> None:
        if not self.state_manager.is_active():
            raise InvalidStateError('No task is running')

        task_id = self.state_manager.task_id
        self._cancel_requested = True
        self._resume_event.set()

        for name, target in (('backend', self.backend), ('engine', self.engine)):
            try:
                await target.interrupt()
            except Exception as e:
                logger.warning(f'⚠️ Failed to interrupt {name}: {type(e).__name__}: {e}')

        self.executor.clear_page_cache()
        self.state_manager.cancel_task()
        self.event_bus.emit(CancelledEvent(task_id=task_id))

    async def pause_task(self) -> None:
        self.state_manager.pause_task()
        self._resume_event.clear()
        self._emit(PausedEvent())
        task_log(logging.INFO, self.state_manager.task_id, self.state_manager.get_current_turn(), '⏸️ Task paused')

    async def resume_task(self) -> None:
        self.state_manager.resume_task()
        self._resume_event.set()
        self._emit(ResumedEvent())
        task_log(logging.INFO, self.state_manager.task_id, self.state_manager.get_current_turn(), '▶️ Task resumed')

    # --- Run ---

    async def _run(self, goal: str) -> None:
        state = self.state_manager
        state.start_task(goal)
        state.add_to_conversation_history('user', goal)
        self._emit(StartEvent(goal=goal))

        await self.engine.start()
        if self._stop_after_cancel('engine start'):
            return
        target_url = await self._active_tab_url()
        if self._stop_after_cancel('active tab lookup'):
            return
        page = await self.resolver.resolve_with_retry(
            target_url,
            attempts=self.config.resolve_attempts,
            delay_seconds=self.config.resolve_delay_seconds,
        )
        if self._stop_after_cancel('page resolution'):
            return
        if page is None:
            logger.info('➕ No existing target page, creating a new one')
            page = await self.engine.new_page()
            if self._stop_after_cancel('page creation'):
                return
        self.executor.set_page(page)
        await self._prepare_page(page, target_url)
        if self._stop_after_cancel('page preparation'):
            return

        turn = state.get_current_turn()
        state.set_current_url(page.url)
        screenshot = await self._capture(page)
        if self._stop_after_cancel('initial screenshot'):
            return
        self._emit(TurnEvent(turn=turn))
        self._emit(ScreenshotEvent(turn=turn, screenshot=screenshot))

        request = BackendRequest(instruction=goal, max_steps=self.config.max_turns, page=page)
        result = await self._execute_backend(request)
        if self._stop_after_cancel('backend call'):
            return

        self._record_backend_actions(result)

        final_screenshot = await self._capture(page)
        if self._stop_after_cancel('final screenshot'):
            return
        state.set_current_url(page.url)
        state.add_action(
            AgentAction(
                function_call=FunctionCall(
                    name=SUMMARY_ACTION,
                    args={'total_steps': len(result.actions), 'success': result.success, 'completed': result.completed},
                ),
                status=ActionStatus.SUCCESS if result.success else ActionStatus.FAILED,
                result=result.message,
                screenshot=final_screenshot or None,
                url=page.url,
            )
        )
        state.add_to_conversation_history('assistant', result.message)

        # A paused task completes only once resumed
        await self.wait_while_paused()
        if self._stop_after_cancel('pause'):
            return
        state.complete_task(result.message)
        duration = state.get_duration()
        task_log(logging.INFO, state.task_id, state.get_current_turn(), f'✅ Task completed in {duration:.1f}s')
        self._emit(CompleteEvent(final_response=result.message, duration=duration))

    def _stop_after_cancel(self, stage: str) -> bool:
        if self._cancel_requested:
            logger.debug(f'Run stopped after {stage}: task was cancelled')
        return self._cancel_requested

    async def _execute_backend(self, request: BackendRequest) -> BackendResult:
        try:
            return await asyncio.wait_for(self.backend.execute(request), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError as e:
            try:
                await self.backend.interrupt()
            except Exception as interrupt_error:
                logger.debug(f'Interrupt after timeout failed: {type(interrupt_error).__name__}: {interrupt_error}')
            raise BackendError(f'Task timed out after {self.config.timeout_seconds:.0f}s') from e

    def _record_backend_actions(self, result: BackendResult) -> None:
        state = self.state_manager
        for backend_action in result.actions:
            turn = state.get_current_turn()
            args = self._action_args(backend_action)
            self._emit(ActionEvent(name=backend_action.type, args=args, turn=turn))
            state.add_action(
                AgentAction(
                    function_call=FunctionCall(name=backend_action.type, args=args),
                    status=ActionStatus.IN_PROGRESS,
                    reasoning=backend_action.reasoning,
                    url=state.get_current_url(),
                )
            )
            if backend_action.reasoning:
                self._emit(ReasoningEvent(text=backend_action.reasoning, turn=turn))

            if backend_action.skipped:
                status = ActionStatus.SKIPPED
            else:
                succeeded = result.success if backend_action.success is None else backend_action.success
                status = ActionStatus.SUCCESS if succeeded else ActionStatus.FAILED
            state.update_last_action(
                status=status,
                result=backend_action.description,
                error=None if status != ActionStatus.FAILED else (backend_action.description or 'Action failed'),
            )
            self._emit(
                ActionCompleteEvent(
                    name=backend_action.type,
                    success=status == ActionStatus.SUCCESS,
                    result=backend_action.description,
                )
            )

    @staticmethod
    def _action_args(action: BackendAction) -> dict:
        args = dict(action.args)
        if not args:
            args['description'] = action.description
            if action.selector:
                args['selector'] = action.selector
        return args

    # --- Page helpers ---

    async def _active_tab_url(self) -> Optional[str]:
        if self.active_tab is None:
            return None
        try:
            return await self.active_tab.get_current_url()
        except Exception as e:
            logger.warning(f'⚠️ Could not read active tab url: {type(e).__name__}: {e}')
            return None

    async def _prepare_page(self, page: 'Page', target_url: Optional[str]) -> None:
        """Bring the target to front and align it with the active tab. Never fatal."""
        try:
            focus = getattr(self.engine, 'focus_page', None)
            if focus is not None:
                await focus(page)
            else:
                await page.bring_to_front()

            wanted = target_url if target_url and not self.resolver.is_internal_url(target_url) else None
            if wanted is None and self.resolver.is_internal_url(page.url):
                wanted = self.config.default_url
            if wanted and page.url != wanted:
                logger.info(f'🔗 Navigating target page to {wanted}')
                await page.goto(wanted, wait_until='domcontentloaded')
        except Exception as e:
            logger.warning(f'⚠️ Could not prepare target page: {type(e).__name__}: {e}')

    async def _capture(self, page: 'Page') -> str:
        try:
            return base64.b64encode(await page.screenshot(type='png')).decode('ascii')
        except Exception as e:
            logger.warning(f'⚠️ Screenshot failed: {type(e).__name__}: {e}')
            return ''

    # --- Events / failures ---

    def _emit(self, event: Event) -> None:
        if not event.task_id:
            event.task_id = self.state_manager.task_id
        self.event_bus.emit(event)

    def _handle_failure(self, error: Exception) -> None:
        state = self.state_manager
        kind = classify_error(error)
        message = error_message(error)
        turn = state.get_current_turn()
        task_log(logging.ERROR, state.task_id, turn, f'❌ Task failed ({kind.value}): {message}')
        if state.is_active():
            state.fail_task(message)
        self._emit(ErrorEvent(error=message, turn=turn, kind=kind.value))
