import asyncio
from typing import Any, Awaitable, Callable, Optional

import pytest

from browser_pilot.agent.orchestrator import SUMMARY_ACTION, AgentOrchestrator
from browser_pilot.agent.views import ActionStatus, TaskState
from browser_pilot.browser.resolver import PageResolver
from browser_pilot.config import AgentConfig, Settings
from browser_pilot.controller.executor import ActAfterObserveExecutor
from browser_pilot.exceptions import BackendError, BusyError, InvalidStateError
from browser_pilot.llm.base import BackendAction, BackendResult

FAST = AgentConfig(resolve_attempts=1, resolve_delay_seconds=0)


class DummyBackend:
    def __init__(
        self,
        result: Optional[BackendResult] = None,
        error: Optional[Exception] = None,
        on_execute: Optional[Callable[[Any], Awaitable[None]]] = None,
    ):
        self.result = result or BackendResult(success=True, message='done', completed=True)
        self.error = error
        self.on_execute = on_execute
        self.requests = []
        self.interrupted = False
        self.resets = 0

    async def execute(self, request):
        self.requests.append(request)
        if self.on_execute is not None:
            await self.on_execute(request)
        if self.error is not None:
            raise self.error
        return self.result

    async def interrupt(self):
        self.interrupted = True

    def reset(self):
        self.resets += 1
        self.interrupted = False


class DummyTab:
    def __init__(self, url):
        self.url = url

    async def get_current_url(self):
        return self.url


def _orchestrator(engine, backend, config=FAST, active_tab=None, resolver=None):
    executor = ActAfterObserveExecutor(engine)
    orch = AgentOrchestrator(
        engine=engine,
        backend=backend,
        executor=executor,
        resolver=resolver or PageResolver(engine),
        config=config,
        active_tab=active_tab,
    )
    events = []
    orch.event_bus.on_any(events.append)
    return orch, executor, events


def _types(events):
    return [e.type for e in events]


@pytest.mark.asyncio
async def test_no_page_creates_one_and_completes_with_summary(make_engine):
    engine = make_engine([])
    backend = DummyBackend(
        BackendResult(
            success=True,
            message='Found the cheapest flight',
            completed=True,
            actions=[
                BackendAction(type='navigate', description='Navigate to flights.test', args={'url': 'flights.test'}),
                BackendAction(type='click_at', description='click_at({"x": 10, "y": 20})', reasoning='Open results'),
            ],
        )
    )
    orch, _executor, events = _orchestrator(engine, backend)

    await orch.start_task('find a flight')

    ctx = orch.get_context()
    assert ctx.state == TaskState.COMPLETED
    assert ctx.final_response == 'Found the cheapest flight'
    assert ctx.error is None
    assert [a.name for a in ctx.actions] == ['navigate', 'click_at', SUMMARY_ACTION]
    assert all(a.status == ActionStatus.SUCCESS for a in ctx.actions)
    assert ctx.actions[-1].function_call.args['total_steps'] == 2

    assert engine.started == 1
    assert len(engine.pages()) == 1
    assert backend.requests[0].max_steps == FAST.max_turns
    assert backend.requests[0].page is engine.pages()[0]
    # blank page is pointed at the default url before the backend runs
    assert engine.pages()[0].url == FAST.default_url

    lifecycle = [t for t in _types(events) if t not in ('stateChange', 'actionAdded', 'actionUpdated')]
    assert lifecycle == [
        'start',
        'turn',
        'screenshot',
        'action',
        'actionComplete',
        'action',
        'reasoning',
        'actionComplete',
        'complete',
    ]
    complete = events[-1]
    assert complete.final_response == 'Found the cheapest flight'
    assert complete.duration >= 0
    assert not orch.is_running


@pytest.mark.asyncio
async def test_context_events_are_republished(make_engine):
    backend = DummyBackend(
        BackendResult(success=True, message='done', completed=True, actions=[BackendAction(type='go_back', description='go_back')])
    )
    orch, _executor, events = _orchestrator(make_engine([]), backend)
    await orch.start_task('goal')
    kinds = set(_types(events))
    assert {'stateChange', 'actionAdded', 'actionUpdated'} <= kinds


@pytest.mark.asyncio
async def test_start_while_running_is_busy_and_context_unchanged(make_engine):
    release = asyncio.Event()

    async def _block(_request):
        await release.wait()

    orch, _executor, _events = _orchestrator(make_engine([]), DummyBackend(on_execute=_block))
    run = asyncio.create_task(orch.start_task('first goal'))
    while orch.get_context().state != TaskState.RUNNING or not orch.is_running:
        await asyncio.sleep(0)
    await asyncio.sleep(0)
    before = orch.get_context()

    with pytest.raises(BusyError):
        await orch.start_task('second goal')

    after = orch.get_context()
    assert after.id == before.id
    assert after.goal == 'first goal'
    assert after.actions == before.actions

    release.set()
    await run
    assert orch.get_context().state == TaskState.COMPLETED


@pytest.mark.asyncio
async def test_cancel_during_successful_backend_call_suppresses_complete(make_engine):
    holder = {}

    async def _cancel_then_return(_request):
        await holder['orch'].cancel_task()

    backend = DummyBackend(on_execute=_cancel_then_return)
    engine = make_engine([])
    orch, _executor, events = _orchestrator(engine, backend)
    holder['orch'] = orch

    await orch.start_task('goal')

    types_seen = _types(events)
    assert 'cancelled' in types_seen
    assert 'complete' not in types_seen
    assert 'error' not in types_seen
    assert orch.get_context().state == TaskState.IDLE
    assert backend.interrupted
    assert engine.interrupted


@pytest.mark.asyncio
async def test_cancel_during_failing_backend_call_suppresses_error(make_engine):
    holder = {}

    async def _cancel(_request):
        await holder['orch'].cancel_task()

    backend = DummyBackend(error=RuntimeError('connection reset after interrupt'), on_execute=_cancel)
    orch, executor, events = _orchestrator(make_engine([]), backend)
    holder['orch'] = orch

    await orch.start_task('goal')

    types_seen = _types(events)
    assert 'cancelled' in types_seen
    assert 'error' not in types_seen
    assert 'complete' not in types_seen
    assert orch.get_context().state == TaskState.IDLE
    assert executor._page is None


class CancellingResolver(PageResolver):
    """Cancels the task while the run is still looking for its target page."""

    def __init__(self, engine, holder):
        super().__init__(engine)
        self.holder = holder

    async def resolve_with_retry(self, target_url, attempts=10, delay_seconds=0.5):
        await self.holder['orch'].cancel_task()
        return None


@pytest.mark.asyncio
async def test_cancel_during_page_resolution_stops_the_run(make_engine):
    holder = {}
    engine = make_engine([])
    backend = DummyBackend()
    orch, _executor, events = _orchestrator(engine, backend, resolver=CancellingResolver(engine, holder))
    holder['orch'] = orch

    await orch.start_task('goal')

    assert backend.requests == []
    assert engine.pages() == []
    types_seen = _types(events)
    after_cancel = types_seen[types_seen.index('cancelled') + 1 :]
    assert after_cancel == []
    ctx = orch.get_context()
    assert ctx.state == TaskState.IDLE
    assert ctx.actions == []
    assert not orch.is_running


@pytest.mark.asyncio
async def test_cancel_during_final_screenshot_adds_no_summary(make_engine, make_page):
    holder = {}

    class CancellingPage(make_page):
        shots = 0

        async def screenshot(self, type='png'):
            self.shots += 1
            if self.shots == 2:
                await holder['orch'].cancel_task()
            return await super().screenshot(type=type)

    page = CancellingPage('https://shop.test/')
    orch, _executor, events = _orchestrator(make_engine([page], active=page), DummyBackend())
    holder['orch'] = orch

    await orch.start_task('goal')

    ctx = orch.get_context()
    assert ctx.state == TaskState.IDLE
    assert ctx.actions == []
    assert 'complete' not in _types(events)


@pytest.mark.asyncio
async def test_new_task_clears_a_stale_backend_interrupt(make_engine):
    backend = DummyBackend()
    await backend.interrupt()
    orch, _executor, _events = _orchestrator(make_engine([]), backend)

    await orch.start_task('goal')

    assert backend.resets == 1
    assert not backend.interrupted
    assert orch.get_context().state == TaskState.COMPLETED


@pytest.mark.asyncio
async def test_backend_error_moves_to_error_and_emits_turn(make_engine):
    backend = DummyBackend(error=BackendError('Gemini API error: quota exceeded'))
    orch, executor, events = _orchestrator(make_engine([]), backend)

    await orch.start_task('goal')

    ctx = orch.get_context()
    assert ctx.state == TaskState.ERROR
    assert 'quota exceeded' in ctx.error
    error_events = [e for e in events if e.type == 'error']
    assert len(error_events) == 1
    assert error_events[0].turn == 1
    assert error_events[0].kind == 'BACKEND_ERROR'
    assert 'complete' not in _types(events)
    assert executor._page is None
    assert not orch.is_running


@pytest.mark.asyncio
async def test_backend_timeout_is_reported_as_error(make_engine):
    async def _hang(_request):
        await asyncio.sleep(10)

    config = AgentConfig(resolve_attempts=1, resolve_delay_seconds=0, timeout_seconds=0.05)
    backend = DummyBackend(on_execute=_hang)
    orch, _executor, events = _orchestrator(make_engine([]), backend, config=config)

    await orch.start_task('goal')

    assert orch.get_context().state == TaskState.ERROR
    assert 'timed out' in next(e for e in events if e.type == 'error').error
    assert backend.interrupted


@pytest.mark.asyncio
async def test_sub_action_failure_overrides_overall_success(make_engine):
    backend = DummyBackend(
        BackendResult(
            success=True,
            message='partly done',
            completed=True,
            actions=[
                BackendAction(type='click_at', description='missed', success=False),
                BackendAction(type='type_text_at', description='skipped', success=False, skipped=True),
                BackendAction(type='navigate', description='ok'),
            ],
        )
    )
    orch, _executor, events = _orchestrator(make_engine([]), backend)

    await orch.start_task('goal')

    statuses = [a.status for a in orch.get_context().actions]
    assert statuses == [ActionStatus.FAILED, ActionStatus.SKIPPED, ActionStatus.SUCCESS, ActionStatus.SUCCESS]
    completes = [e.success for e in events if e.type == 'actionComplete']
    assert completes == [False, False, True]


@pytest.mark.asyncio
async def test_unsuccessful_backend_marks_actions_failed_but_completes(make_engine):
    backend = DummyBackend(
        BackendResult(
            success=False,
            message='Stopped after 2 steps',
            actions=[BackendAction(type='scroll_document', description='scroll')],
        )
    )
    orch, _executor, _events = _orchestrator(make_engine([]), backend)

    await orch.start_task('goal')

    ctx = orch.get_context()
    assert ctx.state == TaskState.COMPLETED
    assert [a.status for a in ctx.actions] == [ActionStatus.FAILED, ActionStatus.FAILED]


@pytest.mark.asyncio
async def test_existing_page_for_active_tab_is_reused(make_page, make_engine):
    target = make_page('https://shop.test/cart')
    other = make_page('https://news.test/')
    engine = make_engine([target, other], active=other)
    backend = DummyBackend()
    orch, _executor, _events = _orchestrator(engine, backend, active_tab=DummyTab('https://shop.test/cart'))

    await orch.start_task('checkout')

    assert backend.requests[0].page is target
    assert ('bring_to_front',) in target.log
    assert not any(entry[0] == 'goto' for entry in target.log)
    assert len(engine.pages()) == 2


@pytest.mark.asyncio
async def test_page_is_aligned_with_active_tab_url(make_page, make_engine):
    page = make_page('https://shop.test/home')
    engine = make_engine([page], active=page)
    orch, _executor, _events = _orchestrator(engine, DummyBackend(), active_tab=DummyTab('https://shop.test/cart'))

    await orch.start_task('checkout')

    assert ('goto', 'https://shop.test/cart') in page.log


@pytest.mark.asyncio
async def test_pause_and_resume_toggle_state_and_emit(make_engine):
    release = asyncio.Event()

    async def _block(_request):
        await release.wait()

    orch, _executor, events = _orchestrator(make_engine([]), DummyBackend(on_execute=_block))
    run = asyncio.create_task(orch.start_task('goal'))
    while not orch.is_running or orch.get_context().state != TaskState.RUNNING:
        await asyncio.sleep(0)

    await orch.pause_task()
    assert orch.get_context().state == TaskState.PAUSED
    with pytest.raises(InvalidStateError):
        await orch.pause_task()

    await orch.resume_task()
    assert orch.get_context().state == TaskState.RUNNING

    release.set()
    await run
    assert 'paused' in _types(events) and 'resumed' in _types(events)
    assert orch.get_context().state == TaskState.COMPLETED


@pytest.mark.asyncio
async def test_completion_waits_for_resume_when_paused(make_engine):
    orch_holder = {}

    async def _pause_then_return(_request):
        await orch_holder['orch'].pause_task()

    orch, _executor, _events = _orchestrator(make_engine([]), DummyBackend(on_execute=_pause_then_return))
    orch_holder['orch'] = orch
    run = asyncio.create_task(orch.start_task('goal'))

    for _ in range(200):
        if orch.get_context().state == TaskState.PAUSED and len(orch.get_context().actions) == 1:
            break
        await asyncio.sleep(0)
    assert orch.get_context().state == TaskState.PAUSED
    assert not run.done()

    await orch.resume_task()
    await run
    assert orch.get_context().state == TaskState.COMPLETED


@pytest.mark.asyncio
async def test_cancel_when_idle_is_invalid(make_engine):
    orch, _executor, _events = _orchestrator(make_engine([]), DummyBackend())
    with pytest.raises(InvalidStateError):
        await orch.cancel_task()


@pytest.mark.asyncio
async def test_accepts_settings_object(make_engine):
    settings = Settings(agent=AgentConfig(max_turns=7, resolve_attempts=1, resolve_delay_seconds=0))
    backend = DummyBackend()
    orch, _executor, _events = _orchestrator(make_engine([]), backend, config=settings)
    await orch.start_task('goal')
    assert backend.requests[0].max_steps == 7


@pytest.mark.asyncio
async def test_screenshot_failure_is_not_fatal(make_page, make_engine):
    page = make_page('https://example.com/')
    page.screenshot_error = RuntimeError('capture failed')
    engine = make_engine([page], active=page)
    orch, _executor, events = _orchestrator(engine, DummyBackend())

    await orch.start_task('goal')

    assert orch.get_context().state == TaskState.COMPLETED
    shot = next(e for e in events if e.type == 'screenshot')
    assert shot.screenshot == ''
