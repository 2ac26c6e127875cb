from __future__ import annotations

import logging
from typing import Any, List, Optional

from browser_pilot.agent.events import ActionAddedEvent, ActionUpdatedEvent, EventBus, StateChangeEvent
from browser_pilot.agent.views import (
    ACTIVE_STATES,
    ActionStatus,
    AgentAction,
    ConversationMessage,
    TaskContext,
    TaskContextSnapshot,
    TaskState,
    new_task_id,
)
from browser_pilot.config import AgentConfig
from browser_pilot.exceptions import InvalidStateError
from browser_pilot.timing import elapsed_seconds, now_timestamp

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Task cancelled by user"


def task_log(level: int, task_id: str, turn: int, message: str, **kwargs) -> None:
    log_extras = {'task_id': task_id, 'turn': turn}
    logger.log(level, message, extra=log_extras, **kwargs)


class StateManager:
    """
    Owns one task's lifecycle state, its append-only action history, turn counter,
    timing and terminal result/error.

    Legal transitions:
        IDLE|COMPLETED|ERROR --start--> RUNNING
        RUNNING --pause--> PAUSED, PAUSED --resume--> RUNNING
        RUNNING|PAUSED --cancel--> IDLE (fresh empty context)
        RUNNING --complete--> COMPLETED
        RUNNING|PAUSED --fail--> ERROR

    Anything else raises InvalidStateError. Every state change is published on the
    event bus as a StateChangeEvent.
    """

    def __init__(self, config: Optional[AgentConfig] = None, event_bus: Optional[EventBus] = None):
        self.config = config or AgentConfig()
        self.event_bus = event_bus or EventBus(name="task")
        self._context = self._create_empty_context()

    # --- Lifecycle transitions ---

    def start_task(self, goal: str) -> TaskContext:
        if self._context.state in ACTIVE_STATES:
            raise InvalidStateError(
                f'Cannot start a new task while another is {self._context.state.value}',
                details={'task_id': self._context.id},
            )

        old_state = self._context.state
        self._context = TaskContext(
            id=new_task_id(),
            user_goal=goal,
            state=TaskState.RUNNING,
            start_time=now_timestamp(),
        )
        task_log(logging.INFO, self._context.id, 1, f'🚀 Task started: {goal}')
        self._emit_state_change(TaskState.RUNNING, old_state)
        return self._context

    def complete_task(self, final_response: Optional[str] = None) -> None:
        if self._context.state != TaskState.RUNNING:
            raise InvalidStateError(f'No running task to complete (state={self._context.state.value})')

        self._context.end_time = now_timestamp()
        self._context.final_response = final_response
        self._set_state(TaskState.COMPLETED)

    def fail_task(self, error: str) -> None:
        if self._context.state not in ACTIVE_STATES:
            raise InvalidStateError(f'No active task to fail (state={self._context.state.value})')

        self._context.end_time = now_timestamp()
        self.record_error(error)
        self._set_state(TaskState.ERROR)

    def pause_task(self) -> None:
        if self._context.state != TaskState.RUNNING:
            raise InvalidStateError(f'Can only pause a running task (state={self._context.state.value})')
        self._set_state(TaskState.PAUSED)

    def resume_task(self) -> None:
        if self._context.state != TaskState.PAUSED:
            raise InvalidStateError(f'Can only resume a paused task (state={self._context.state.value})')
        self._set_state(TaskState.RUNNING)

    def cancel_task(self) -> None:
        if self._context.state not in ACTIVE_STATES:
            raise InvalidStateError(f'No active task to cancel (state={self._context.state.value})')

        self._context.end_time = now_timestamp()
        self._context.error = CANCELLED_MESSAGE
        task_log(logging.INFO, self._context.id, self.get_current_turn(), '🛑 Task cancelled by user')
        self.reset()

    def reset(self) -> None:
        """Replace the context with a fresh IDLE one, announcing the change if the state moves."""
        self._set_state(TaskState.IDLE)
        self._context = self._create_empty_context()

    # --- Actions ---

    def add_action(self, action: AgentAction) -> None:
        self._context.actions.append(action)
        self.event_bus.emit(ActionAddedEvent(task_id=self._context.id, action=action))

    def update_last_action(self, **updates: Any) -> AgentAction:
        """Update the most recent action in place. Earlier entries are never mutated."""
        if not self._context.actions:
            raise InvalidStateError('No actions to update')

        last_action = self._context.actions[-1]
        for key, value in updates.items():
            if key not in AgentAction.model_fields:
                raise ValueError(f'Unknown AgentAction field: {key}')
            setattr(last_action, key, value)

        self.event_bus.emit(ActionUpdatedEvent(task_id=self._context.id, action=last_action))
        return last_action

    def get_last_action(self) -> Optional[AgentAction]:
        if not self._context.actions:
            return None
        return self._context.actions[-1]

    def mark_last_action_success(self, result: Any = None) -> AgentAction:
        return self.update_last_action(status=ActionStatus.SUCCESS, result=result)

    def mark_last_action_failed(self, error: str) -> AgentAction:
        return self.update_last_action(status=ActionStatus.FAILED, error=error)

    def get_action_history(self) -> List[AgentAction]:
        return list(self._context.actions)

    # --- Errors, URL, conversation ---

    def record_error(self, error: str) -> None:
        if not self._context.error:
            self._context.error = error
        else:
            self._context.error += '\n' + error

    def get_errors(self) -> List[str]:
        if not self._context.error:
            return []
        return self._context.error.split('\n')

    def set_current_url(self, url: str) -> None:
        self._context.current_url = url

    def get_current_url(self) -> str:
        return self._context.current_url

    def add_to_conversation_history(self, role: str, content: str) -> None:
        self._context.conversation_history.append(ConversationMessage(role=role, content=content))

    def get_conversation_history(self) -> List[ConversationMessage]:
        return list(self._context.conversation_history)

    # --- Derived values and predicates ---

    def get_current_turn(self) -> int:
        return sum(1 for a in self._context.actions if a.status == ActionStatus.SUCCESS) + 1

    def can_retry(self) -> bool:
        failed = sum(1 for a in self._context.actions if a.status == ActionStatus.FAILED)
        return failed < self.config.max_retries

    def has_reached_max_turns(self) -> bool:
        return len(self._context.actions) >= self.config.max_turns

    def has_timed_out(self, now: Optional[float] = None) -> bool:
        if not self._context.start_time:
            return False
        return elapsed_seconds(self._context.start_time, now) > self.config.timeout_seconds

    def should_continue(self) -> bool:
        if self._context.state != TaskState.RUNNING:
            return False
        return not self.has_reached_max_turns() and not self.has_timed_out()

    def get_duration(self) -> float:
        """Elapsed seconds for the current task (0 when idle)."""
        return elapsed_seconds(self._context.start_time, self._context.end_time)

    @property
    def state(self) -> TaskState:
        return self._context.state

    @property
    def task_id(self) -> str:
        return self._context.id

    @property
    def goal(self) -> str:
        return self._context.user_goal

    @property
    def final_response(self) -> Optional[str]:
        return self._context.final_response

    def is_running(self) -> bool:
        return self._context.state == TaskState.RUNNING

    def is_paused(self) -> bool:
        return self._context.state == TaskState.PAUSED

    def is_active(self) -> bool:
        return self._context.state in ACTIVE_STATES

    def is_completed(self) -> bool:
        return self._context.state == TaskState.COMPLETED

    def has_error(self) -> bool:
        return self._context.state == TaskState.ERROR

    def is_idle(self) -> bool:
        return self._context.state == TaskState.IDLE

    def snapshot(self) -> TaskContextSnapshot:
        ctx = self._context
        return TaskContextSnapshot(
            id=ctx.id,
            goal=ctx.user_goal,
            state=ctx.state,
            turn=self.get_current_turn(),
            actions=tuple(a.model_copy(deep=True) for a in ctx.actions),
            current_url=ctx.current_url,
            error=ctx.error,
            final_response=ctx.final_response,
            start_time=ctx.start_time,
            end_time=ctx.end_time,
        )

    # --- Internals ---

    def _set_state(self, new_state: TaskState) -> None:
        old_state = self._context.state
        self._context.state = new_state
        if old_state != new_state:
            task_log(
                logging.DEBUG,
                self._context.id,
                self.get_current_turn(),
                f'State transition: {old_state.value} -> {new_state.value}',
            )
            self._emit_state_change(new_state, old_state)

    def _emit_state_change(self, new_state: TaskState, old_state: TaskState) -> None:
        self.event_bus.emit(StateChangeEvent(task_id=self._context.id, state=new_state, old_state=old_state))

    @staticmethod
    def _create_empty_context() -> TaskContext:
        return TaskContext()
