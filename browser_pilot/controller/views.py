from __future__ import annotations

import enum
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from typing_extensions import Literal

from browser_pilot.exceptions import ActionFailedError

Direction = Literal['up', 'down', 'left', 'right']


# --- Results ---


class ToolResult(BaseModel):
    """Outcome of a single action primitive. Primitives never raise; they return this."""
    success: bool
    error: Optional[str] = None
    data: Any = None

    @classmethod
    def ok(cls, data: Any = None) -> 'ToolResult':
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, data: Any = None) -> 'ToolResult':
        return cls(success=False, error=error, data=data)


class CandidateAction(BaseModel):
    """A concrete, selector-bound action proposed by the observe step."""
    selector: str
    description: str = ""
    method: Optional[str] = None
    arguments: list[str] = Field(default_factory=list)
    score: float = 0.0

    @property
    def is_click(self) -> bool:
        return (self.method or '').lower() == 'click' and bool(self.selector)


class ActResult(BaseModel):
    """Normalized result of an act / act-after-observe operation."""
    success: bool
    message: str = ""
    action_description: str = ""
    actions: list[CandidateAction] = Field(default_factory=list)
    error: Optional[str] = None


# --- Safety decisions ---
# Two shapes appear in function-call args and are kept as separate enums.


class SafetyDecisionLevel(str, enum.Enum):
    REGULAR = 'regular'
    REQUIRE_CONFIRMATION = 'require_confirmation'
    BLOCK = 'block'


class SafetyDecisionStatus(str, enum.Enum):
    ALLOWED = 'ALLOWED'
    REQUIRES_CONFIRMATION = 'REQUIRES_CONFIRMATION'
    BLOCKED = 'BLOCKED'


class SafetyDecision(BaseModel):
    decision: Union[SafetyDecisionLevel, SafetyDecisionStatus]
    explanation: Optional[str] = None

    @property
    def needs_user(self) -> bool:
        return self.decision not in (SafetyDecisionLevel.REGULAR, SafetyDecisionStatus.ALLOWED)


# --- Typed function-call arguments, one model per action name ---


class ActionArgs(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    safety_decision: Optional[SafetyDecision] = None


class NoParamsAction(ActionArgs):
    pass


class NavigateAction(ActionArgs):
    url: str = Field(min_length=1)


class SearchAction(ActionArgs):
    query: str = ""


class PointAction(ActionArgs):
    x: float = Field(ge=0)
    y: float = Field(ge=0)


class ClickAtAction(PointAction):
    pass


class HoverAtAction(PointAction):
    pass


class TypeTextAtAction(PointAction):
    text: str
    press_enter: bool = Field(True, validation_alias=AliasChoices('press_enter', 'pressEnter'))
    clear_first: bool = Field(
        True, validation_alias=AliasChoices('clear_before_typing', 'clear_first', 'clearFirst')
    )


class KeyCombinationAction(ActionArgs):
    keys: str

    @field_validator('keys', mode='before')
    @classmethod
    def _join_key_list(cls, v):
        if isinstance(v, (list, tuple)):
            return '+'.join(str(k) for k in v)
        return v


class ScrollDocumentAction(ActionArgs):
    direction: Direction

    @field_validator('direction', mode='before')
    @classmethod
    def _direction_from_amount(cls, v):
        return _normalize_direction(v)


class ScrollAtAction(PointAction):
    direction: Direction
    magnitude: float = Field(800, ge=0)

    @field_validator('direction', mode='before')
    @classmethod
    def _direction_from_amount(cls, v):
        return _normalize_direction(v)


class DragAndDropAction(PointAction):
    destination_x: float = Field(ge=0, validation_alias=AliasChoices('destination_x', 'dest_x', 'destX'))
    destination_y: float = Field(ge=0, validation_alias=AliasChoices('destination_y', 'dest_y', 'destY'))


class WaitAction(ActionArgs):
    seconds: float = Field(5, ge=0, le=60)


class ActInstructionAction(ActionArgs):
    instruction: str = Field(min_length=1)


def _normalize_direction(v: Any) -> Any:
    # Older function-call shapes carry a signed scroll_amount instead of a direction
    if isinstance(v, (int, float)):
        return 'down' if v > 0 else 'up'
    if isinstance(v, str):
        return v.strip().lower()
    return v


ACTION_MODELS: dict[str, type[ActionArgs]] = {
    'open_web_browser': NoParamsAction,
    'navigate': NavigateAction,
    'search': SearchAction,
    'go_back': NoParamsAction,
    'go_forward': NoParamsAction,
    'click_at': ClickAtAction,
    'hover_at': HoverAtAction,
    'type_text_at': TypeTextAtAction,
    'key_combination': KeyCombinationAction,
    'scroll_document': ScrollDocumentAction,
    'scroll_at': ScrollAtAction,
    'drag_and_drop': DragAndDropAction,
    'wait_5_seconds': NoParamsAction,
    'wait': WaitAction,
    'act': ActInstructionAction,
}


def parse_action_args(name: str, args: Optional[dict[str, Any]]) -> ActionArgs:
    """Validate raw function-call args into the typed model registered for ``name``.

    Raises ActionFailedError for unknown action names or invalid arguments.
    """
    model = ACTION_MODELS.get(name)
    if model is None:
        raise ActionFailedError(f'Unknown action: {name}', details={'name': name})

    raw = dict(args or {})
    # Legacy shape: scroll_amount instead of direction
    if 'direction' not in raw and 'scroll_amount' in raw and name in ('scroll_document', 'scroll_at'):
        raw['direction'] = raw.pop('scroll_amount')
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise ActionFailedError(f'Invalid arguments for {name}: {e.errors(include_url=False)}', details={'name': name}) from e
