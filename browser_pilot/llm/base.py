"""
Reasoning backend contract.

A backend receives the user's goal, a step budget and the resolved target page,
drives the page itself for up to ``max_steps`` steps and reports what it did.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class BackendRequest(BaseModel):
	model_config = ConfigDict(arbitrary_types_allowed=True)

	instruction: str
	max_steps: int = Field(ge=1)
	page: Any = Field(default=None, exclude=True, repr=False)


class BackendAction(BaseModel):
	"""One sub-action the backend executed (or skipped)."""

	type: str
	description: str = ''
	selector: Optional[str] = None
	reasoning: Optional[str] = None
	args: dict[str, Any] = Field(default_factory=dict)
	success: Optional[bool] = None
	skipped: bool = False


class BackendResult(BaseModel):
	success: bool
	message: str = ''
	completed: bool = False
	actions: list[BackendAction] = Field(default_factory=list)


@runtime_checkable
class ReasoningBackend(Protocol):
	async def execute(self, request: BackendRequest) -> BackendResult: ...

	async def interrupt(self) -> None: ...

