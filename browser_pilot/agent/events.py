from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Optional, Union

from browser_pilot.timing import now_timestamp

if TYPE_CHECKING:
    from browser_pilot.agent.views import AgentAction, TaskState

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """Base event class. ``type`` is the wire tag consumed by UI and logging sinks."""
    type: ClassVar[str] = "event"
    task_id: str = ""
    timestamp: float = field(default_factory=now_timestamp)

    def to_payload(self) -> dict[str, Any]:
        """JSON-friendly payload (without the envelope fields)."""
        payload: dict[str, Any] = {}
        for f in dataclasses.fields(self):
            if f.name in ('task_id', 'timestamp'):
                continue
            value = getattr(self, f.name)
            if hasattr(value, 'model_dump'):
                value = value.model_dump(mode='json')
            elif isinstance(value, enum.Enum):
                value = value.value
            payload[_camel(f.name)] = value
        return payload

    def to_message(self) -> dict[str, Any]:
        return {'type': self.type, 'data': self.to_payload()}


def _camel(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


@dataclass
class StartEvent(Event):
    type: ClassVar[str] = "start"
    goal: str = ""


@dataclass
class TurnEvent(Event):
    type: ClassVar[str] = "turn"
    turn: int = 0


@dataclass
class ScreenshotEvent(Event):
    type: ClassVar[str] = "screenshot"
    turn: int = 0
    screenshot: str = field(default="", repr=False)  # base64 PNG


@dataclass
class ActionEvent(Event):
    type: ClassVar[str] = "action"
    name: str = ""
    args: dict[str, Any] = field(default_factory=dict)
    turn: Optional[int] = None


@dataclass
class ActionCompleteEvent(Event):
    type: ClassVar[str] = "actionComplete"
    name: str = ""
    success: bool = False
    result: Any = None


@dataclass
class ReasoningEvent(Event):
    type: ClassVar[str] = "reasoning"
    text: str = ""
    turn: Optional[int] = None


@dataclass
class CompleteEvent(Event):
    type: ClassVar[str] = "complete"
    final_response: str = ""
    duration: float = 0.0  # seconds


@dataclass
class ErrorEvent(Event):
    type: ClassVar[str] = "error"
    error: str = ""
    turn: int = 0
    kind: str = ""


@dataclass
class CancelledEvent(Event):
    type: ClassVar[str] = "cancelled"


@dataclass
class PausedEvent(Event):
    type: ClassVar[str] = "paused"


@dataclass
class ResumedEvent(Event):
    type: ClassVar[str] = "resumed"


@dataclass
class StateChangeEvent(Event):
    type: ClassVar[str] = "stateChange"
    state: Optional[TaskState] = None
    old_state: Optional[TaskState] = None


@dataclass
class ActionAddedEvent(Event):
    type: ClassVar[str] = "actionAdded"
    action: Optional[AgentAction] = None


@dataclass
class ActionUpdatedEvent(Event):
    type: ClassVar[str] = "actionUpdated"
    action: Optional[AgentAction] = None


EVENT_TYPES: dict[str, type[Event]] = {
    cls.type: cls
    for cls in (
        StartEvent,
        TurnEvent,
        ScreenshotEvent,
        ActionEvent,
        ActionCompleteEvent,
        ReasoningEvent,
        CompleteEvent,
        ErrorEvent,
        CancelledEvent,
        PausedEvent,
        ResumedEvent,
        StateChangeEvent,
        ActionAddedEvent,
        ActionUpdatedEvent,
    )
}

EventHandler = Callable[[Event], None]


class EventBus:
    """
    Ordered, in-process event channel.

    Handlers are plain callables invoked synchronously in registration order, so
    events for one task reach every listener in emission order. Queue subscribers
    receive the same stream through ``asyncio.Queue.put_nowait``. A failing handler
    is logged and never affects other handlers or the emitter.
    """

    def __init__(self, name: str = "bus"):
        self.name = name
        self._handlers: list[tuple[Optional[str], EventHandler]] = []
        self._queues: list[asyncio.Queue] = []

    def on(self, event_type: Union[str, type[Event], None], handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for one event type (tag or class), or all events when None.

        Returns an unsubscribe callable.
        """
        tag = event_type.type if isinstance(event_type, type) else event_type
        if tag is not None and tag not in EVENT_TYPES:
            raise ValueError(f'Unknown event type: {tag}')
        entry = (tag, handler)
        self._handlers.append(entry)

        def _off() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return _off

    def on_any(self, handler: EventHandler) -> Callable[[], None]:
        return self.on(None, handler)

    def subscribe(self, maxsize: int = 0) -> asyncio.Queue:
        """Return a queue that receives every event emitted from now on."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def emit(self, event: Event) -> None:
        for tag, handler in list(self._handlers):
            if tag is not None and tag != event.type:
                continue
            try:
                handler(event)
            except Exception as e:
                logger.warning(f'⚠️ [{self.name}] Event handler for "{event.type}" failed: {type(e).__name__}: {e}')
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f'⚠️ [{self.name}] Subscriber queue full, dropping "{event.type}" event')

    def clear(self) -> None:
        self._handlers.clear()
        self._queues.clear()


__all__ = [
    "Event",
    "StartEvent",
    "TurnEvent",
    "ScreenshotEvent",
    "ActionEvent",
    "ActionCompleteEvent",
    "ReasoningEvent",
    "CompleteEvent",
    "ErrorEvent",
    "CancelledEvent",
    "PausedEvent",
    "ResumedEvent",
    "StateChangeEvent",
    "ActionAddedEvent",
    "ActionUpdatedEvent",
    "EVENT_TYPES",
    "EventBus",
]
