from __future__ import annotations

import enum
import logging
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import Literal
from uuid_extensions import uuid7str

from browser_pilot.timing import now_timestamp

logger = logging.getLogger(__name__)


class TaskState(str, enum.Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


ACTIVE_STATES = {TaskState.RUNNING, TaskState.PAUSED}


class ActionStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


def new_action_id() -> str:
    return f'action-{uuid7str()}'


def new_task_id() -> str:
    return f'task-{uuid7str()}'


class FunctionCall(BaseModel):
    """The action taken or attempted, as reported by the reasoning backend."""
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class AgentAction(BaseModel):
    """One entry of a task's append-only action history."""
    id: str = Field(default_factory=new_action_id)
    timestamp: float = Field(default_factory=now_timestamp)
    function_call: FunctionCall
    status: ActionStatus = ActionStatus.PENDING
    reasoning: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    screenshot: Optional[str] = Field(default=None, repr=False)  # base64 PNG
    url: Optional[str] = None

    @property
    def name(self) -> str:
        return self.function_call.name


class ConversationMessage(BaseModel):
    """Raw exchange log entry, kept for diagnostics only."""
    id: str = Field(default_factory=uuid7str)
    role: Literal['user', 'assistant']
    content: str
    timestamp: float = Field(default_factory=now_timestamp)


class TaskContext(BaseModel):
    """Mutable state of the single live task. Owned by the orchestrator's StateManager."""
    id: str = ""
    user_goal: str = ""
    state: TaskState = TaskState.IDLE
    actions: List[AgentAction] = Field(default_factory=list)
    current_url: str = ""
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    error: Optional[str] = None
    final_response: Optional[str] = None
    conversation_history: List[ConversationMessage] = Field(default_factory=list)


class TaskContextSnapshot(BaseModel):
    """Read-only view of a TaskContext handed to external collaborators."""
    model_config = ConfigDict(frozen=True)

    id: str
    goal: str
    state: TaskState
    turn: int
    actions: tuple[AgentAction, ...]
    current_url: str
    error: Optional[str] = None
    final_response: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self.state == TaskState.RUNNING
