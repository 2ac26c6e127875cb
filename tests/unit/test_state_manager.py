import pytest

from browser_pilot.agent.events import EventBus, StateChangeEvent
from browser_pilot.agent.state_manager import CANCELLED_MESSAGE, StateManager
from browser_pilot.agent.views import ActionStatus, AgentAction, FunctionCall, TaskState
from browser_pilot.config import AgentConfig
from browser_pilot.exceptions import ErrorKind, InvalidStateError


def _action(name: str = 'click_at', status: ActionStatus = ActionStatus.PENDING) -> AgentAction:
    return AgentAction(function_call=FunctionCall(name=name, args={}), status=status)


def test_new_manager_is_idle_with_empty_context():
    sm = StateManager()
    assert sm.is_idle()
    assert sm.task_id == ''
    assert sm.get_action_history() == []
    assert sm.get_current_turn() == 1


def test_start_transitions_to_running_and_emits_state_change():
    bus = EventBus()
    seen = []
    bus.on(StateChangeEvent, seen.append)
    sm = StateManager(event_bus=bus)

    ctx = sm.start_task('find flights')

    assert sm.is_running()
    assert ctx.id.startswith('task-')
    assert ctx.user_goal == 'find flights'
    assert ctx.start_time is not None and ctx.end_time is None
    assert [(e.old_state, e.state) for e in seen] == [(TaskState.IDLE, TaskState.RUNNING)]


def test_start_while_running_raises_and_leaves_context_untouched():
    sm = StateManager()
    sm.start_task('first')
    sm.add_action(_action())
    before = sm.snapshot()

    with pytest.raises(InvalidStateError) as exc_info:
        sm.start_task('second')

    assert exc_info.value.kind == ErrorKind.INVALID_STATE
    after = sm.snapshot()
    assert after.id == before.id
    assert after.goal == 'first'
    assert len(after.actions) == 1


def test_start_is_allowed_again_after_terminal_states():
    sm = StateManager()
    sm.start_task('one')
    sm.complete_task('done')
    assert sm.is_completed()
    first_id = sm.task_id

    sm.start_task('two')
    assert sm.is_running()
    assert sm.task_id != first_id
    assert sm.final_response is None

    sm.fail_task('boom')
    assert sm.has_error()
    sm.start_task('three')
    assert sm.get_errors() == []


def test_turn_is_successes_plus_one():
    sm = StateManager()
    sm.start_task('goal')
    sm.add_action(_action(status=ActionStatus.SUCCESS))
    sm.add_action(_action(status=ActionStatus.FAILED))
    sm.add_action(_action(status=ActionStatus.SUCCESS))
    assert sm.get_current_turn() == 3


def test_pause_resume_cycle():
    sm = StateManager()
    sm.start_task('goal')
    sm.pause_task()
    assert sm.is_paused()
    with pytest.raises(InvalidStateError):
        sm.pause_task()
    with pytest.raises(InvalidStateError):
        sm.complete_task('nope')
    sm.resume_task()
    assert sm.is_running()
    with pytest.raises(InvalidStateError):
        sm.resume_task()


def test_cancel_resets_to_fresh_idle_context():
    bus = EventBus()
    seen = []
    bus.on('stateChange', seen.append)
    sm = StateManager(event_bus=bus)
    sm.start_task('goal')
    sm.add_action(_action())

    sm.cancel_task()

    assert sm.is_idle()
    assert sm.task_id == ''
    assert sm.get_action_history() == []
    assert seen[-1].state == TaskState.IDLE
    assert seen[-1].old_state == TaskState.RUNNING
    assert CANCELLED_MESSAGE == 'Task cancelled by user'


def test_cancel_when_idle_is_invalid():
    with pytest.raises(InvalidStateError):
        StateManager().cancel_task()


def test_fail_from_paused_records_error_and_end_time():
    sm = StateManager()
    sm.start_task('goal')
    sm.pause_task()
    sm.fail_task('network down')
    snap = sm.snapshot()
    assert snap.state == TaskState.ERROR
    assert snap.error == 'network down'
    assert snap.end_time is not None


def test_update_last_action_only_touches_newest_entry():
    sm = StateManager()
    sm.start_task('goal')
    sm.add_action(_action('navigate'))
    sm.add_action(_action('click_at'))

    sm.mark_last_action_success({'tagName': 'A'})

    history = sm.get_action_history()
    assert history[0].status == ActionStatus.PENDING
    assert history[1].status == ActionStatus.SUCCESS
    assert history[1].result == {'tagName': 'A'}


def test_update_last_action_requires_an_action():
    sm = StateManager()
    sm.start_task('goal')
    with pytest.raises(InvalidStateError):
        sm.update_last_action(status=ActionStatus.SUCCESS)
    sm.add_action(_action())
    with pytest.raises(ValueError):
        sm.update_last_action(colour='red')


def test_action_events_are_published():
    bus = EventBus()
    kinds = []
    bus.on_any(lambda e: kinds.append(e.type))
    sm = StateManager(event_bus=bus)
    sm.start_task('goal')
    sm.add_action(_action())
    sm.mark_last_action_failed('missed')
    assert kinds == ['stateChange', 'actionAdded', 'actionUpdated']


def test_errors_accumulate_newline_joined():
    sm = StateManager()
    sm.start_task('goal')
    sm.record_error('first')
    sm.record_error('second')
    assert sm.get_errors() == ['first', 'second']
    assert sm.snapshot().error == 'first\nsecond'


def test_budget_predicates():
    sm = StateManager(config=AgentConfig(max_turns=2, max_retries=1, timeout_seconds=10))
    sm.start_task('goal')
    assert sm.should_continue()
    assert sm.can_retry()

    sm.add_action(_action(status=ActionStatus.FAILED))
    assert not sm.can_retry()
    assert not sm.has_reached_max_turns()

    sm.add_action(_action(status=ActionStatus.SUCCESS))
    assert sm.has_reached_max_turns()
    assert not sm.should_continue()

    start = sm.snapshot().start_time
    assert not sm.has_timed_out(now=start + 5)
    assert sm.has_timed_out(now=start + 11)


def test_snapshot_is_a_deep_copy():
    sm = StateManager()
    sm.start_task('goal')
    sm.add_action(_action())
    snap = sm.snapshot()
    sm.mark_last_action_success('later')
    assert snap.actions[0].status == ActionStatus.PENDING


def test_conversation_history_and_url():
    sm = StateManager()
    sm.start_task('goal')
    sm.add_to_conversation_history('user', 'goal')
    sm.add_to_conversation_history('assistant', 'done')
    sm.set_current_url('https://example.com/')
    assert [m.role for m in sm.get_conversation_history()] == ['user', 'assistant']
    assert sm.get_current_url() == 'https://example.com/'


def test_reset_discards_a_finished_context():
    bus = EventBus()
    seen = []
    bus.on('stateChange', seen.append)
    sm = StateManager(event_bus=bus)
    sm.start_task('goal')
    sm.complete_task('done')

    sm.reset()

    assert sm.is_idle()
    assert sm.task_id == ''
    assert sm.snapshot().final_response is None
    assert seen[-1].old_state == TaskState.COMPLETED


def test_reset_when_idle_emits_nothing():
    bus = EventBus()
    seen = []
    bus.on('stateChange', seen.append)
    sm = StateManager(event_bus=bus)

    sm.reset()

    assert seen == []
    assert sm.is_idle()
