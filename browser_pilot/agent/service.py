from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Optional

from pydantic import BaseModel

from browser_pilot.agent.events import ErrorEvent, Event, EventBus
from browser_pilot.agent.orchestrator import AgentOrchestrator
from browser_pilot.agent.views import TaskContextSnapshot
from browser_pilot.browser.resolver import PageResolver
from browser_pilot.config import Settings
from browser_pilot.controller.executor import ActAfterObserveExecutor
from browser_pilot.controller.service import Controller
from browser_pilot.exceptions import BusyError, classify_error, error_message

if TYPE_CHECKING:
    from browser_pilot.browser.views import AutomationEngine, TabHandle
    from browser_pilot.llm.base import ReasoningBackend

logger = logging.getLogger(__name__)

EventSink = Callable[[dict[str, Any]], None]


class StartResult(BaseModel):
    success: bool
    error: Optional[str] = None


class AgentService:
    """
    Host-facing facade over one orchestrator.

    Built once at startup with explicit engine, backend and settings. Runs each goal
    as a background asyncio task, forwards every orchestrator event to the registered
    sinks as ``{"type": ..., "data": ...}`` messages, and turns control failures into
    log lines instead of exceptions.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional['AutomationEngine'] = None,
        backend: Optional['ReasoningBackend'] = None,
        active_tab: Optional['TabHandle'] = None,
    ):
        self.settings = settings or Settings.from_env()

        if engine is None:
            from browser_pilot.browser.session import BrowserSession

            engine = BrowserSession(self.settings.engine)
        self.engine = engine

        self.resolver = PageResolver(engine, self.settings.engine.internal_url_patterns)
        self.executor = ActAfterObserveExecutor(engine, max_candidates=self.settings.engine.max_observed_candidates)
        self.controller = Controller(self.settings.engine, self.settings.agent)

        if backend is None:
            from browser_pilot.llm.google.computer_use import GeminiComputerUseBackend

            backend = GeminiComputerUseBackend(self.settings.backend, self.controller, self.executor)
        self.backend = backend

        self.event_bus = EventBus(name='agent')
        self.orchestrator = AgentOrchestrator(
            engine=engine,
            backend=backend,
            executor=self.executor,
            resolver=self.resolver,
            config=self.settings.agent,
            active_tab=active_tab,
            event_bus=self.event_bus,
        )
        if getattr(backend, 'pause_gate', False) is None:
            backend.pause_gate = self.orchestrator.wait_while_paused

        self._sinks: list[EventSink] = []
        self.event_bus.on_any(self._forward)
        self._task: Optional[asyncio.Task] = None

    # --- Sinks ---

    def add_sink(self, sink: EventSink) -> Callable[[], None]:
        self._sinks.append(sink)

        def _remove() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return _remove

    def _forward(self, event: Event) -> None:
        message = event.to_message()
        for sink in list(self._sinks):
            try:
                sink(message)
            except Exception as e:
                logger.warning(f'⚠️ Event sink failed on "{event.type}": {type(e).__name__}: {e}')

    # --- Control ---

    @property
    def is_running(self) -> bool:
        return self.orchestrator.is_running or (self._task is not None and not self._task.done())

    def set_active_tab(self, tab: Optional['TabHandle']) -> None:
        self.orchestrator.set_active_tab(tab)

    async def start_agent(self, goal: str) -> StartResult:
        """Accept or reject a new run. The run itself continues in the background."""
        goal = (goal or '').strip()
        if not goal:
            return StartResult(success=False, error='Goal must not be empty')
        if self.is_running or self.orchestrator.state_manager.is_active():
            return StartResult(success=False, error='Agent already running')

        self._task = asyncio.create_task(self._run(goal), name='browser_pilot.task')
        return StartResult(success=True)

    async def _run(self, goal: str) -> None:
        try:
            await self.orchestrator.start_task(goal)
        except BusyError as e:
            logger.warning(f'⚠️ {e}')
        except Exception as e:
            logger.error(f'❌ Agent task error: {type(e).__name__}: {e}', exc_info=True)
            self.event_bus.emit(ErrorEvent(error=error_message(e), kind=classify_error(e).value))

    async def cancel_agent(self) -> None:
        try:
            await self.orchestrator.cancel_task()
        except Exception as e:
            logger.error(f'❌ Failed to cancel agent: {type(e).__name__}: {e}')

    async def pause_agent(self) -> None:
        try:
            await self.orchestrator.pause_task()
        except Exception as e:
            logger.error(f'❌ Failed to pause agent: {type(e).__name__}: {e}')

    async def resume_agent(self) -> None:
        try:
            await self.orchestrator.resume_task()
        except Exception as e:
            logger.error(f'❌ Failed to resume agent: {type(e).__name__}: {e}')

    async def wait_for_task(self, timeout: Optional[float] = None) -> None:
        """Await the background run, if any."""
        if self._task is None:
            return
        await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)

    # --- Queries ---

    def get_context(self) -> TaskContextSnapshot:
        return self.orchestrator.get_context()

    def get_agent_state(self) -> Optional[dict[str, Any]]:
        """Compact view for UIs. None while idle."""
        snapshot = self.get_context()
        if not snapshot.id:
            return None
        return {
            'isRunning': snapshot.state.value == 'RUNNING',
            'isPaused': snapshot.state.value == 'PAUSED',
            'goal': snapshot.goal,
            'currentTurn': snapshot.turn,
            'maxTurns': self.settings.agent.max_turns,
            'actions': [
                {
                    'id': a.id,
                    'type': a.name,
                    'args': a.function_call.args,
                    'status': a.status.value,
                    'timestamp': a.timestamp,
                }
                for a in snapshot.actions
            ],
            'error': snapshot.error,
        }

    # --- Lifecycle ---

    async def shutdown(self) -> None:
        if self.orchestrator.state_manager.is_active():
            await self.cancel_agent()
        if self._task is not None and not self._task.done():
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                logger.warning('⚠️ Background task did not finish in time during shutdown')
        try:
            await self.engine.close()
        except Exception as e:
            logger.warning(f'⚠️ Error while closing automation engine: {type(e).__name__}: {e}')
        self.event_bus.clear()
        logger.info('🛑 Agent service shut down')
