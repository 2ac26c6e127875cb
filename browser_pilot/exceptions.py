"""
Error taxonomy for browser_pilot.

Every error raised by the core carries an ``ErrorKind`` so callers (UI sinks,
logging) can branch on the category rather than on the message text.
"""
from __future__ import annotations

import asyncio
import enum
from typing import Any, Optional


class ErrorKind(str, enum.Enum):
    INVALID_STATE = "INVALID_STATE"
    BUSY = "BUSY"
    NO_TARGET_PAGE = "NO_TARGET_PAGE"
    ACTION_FAILED = "ACTION_FAILED"
    BACKEND_ERROR = "BACKEND_ERROR"
    USER_CANCELLED = "USER_CANCELLED"


class BrowserPilotError(Exception):
    """Base class for all errors raised by browser_pilot."""

    kind: ErrorKind = ErrorKind.ACTION_FAILED

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class InvalidStateError(BrowserPilotError):
    """An illegal lifecycle transition was attempted."""

    kind = ErrorKind.INVALID_STATE


class BusyError(BrowserPilotError):
    """A task is already running."""

    kind = ErrorKind.BUSY


class NoTargetPageError(BrowserPilotError):
    """The page resolver exhausted every strategy."""

    kind = ErrorKind.NO_TARGET_PAGE


class ActionFailedError(BrowserPilotError):
    """A primitive or the executor failed to affect the page."""

    kind = ErrorKind.ACTION_FAILED


class BackendError(BrowserPilotError):
    """The reasoning backend call itself failed."""

    kind = ErrorKind.BACKEND_ERROR


class RateLimitError(BackendError):
    """The remote model API rejected the request for quota or rate reasons."""


class UserCancelledError(BrowserPilotError):
    """Not a failure: the user cancelled the task. Never surfaced as ERROR."""

    kind = ErrorKind.USER_CANCELLED


class ConfigurationError(BrowserPilotError):
    """Invalid startup configuration."""

    kind = ErrorKind.INVALID_STATE


_BACKEND_MARKERS = ('rate limit', 'ratelimit', 'quota', '429', 'resource_exhausted', 'unauthenticated', 'api key')


def classify_error(error: BaseException) -> ErrorKind:
    """Map any exception to an ErrorKind."""
    if isinstance(error, BrowserPilotError):
        return error.kind
    if isinstance(error, asyncio.CancelledError):
        return ErrorKind.USER_CANCELLED
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.BACKEND_ERROR
    text = f'{type(error).__name__}: {error}'.lower()
    if any(marker in text for marker in _BACKEND_MARKERS):
        return ErrorKind.BACKEND_ERROR
    return ErrorKind.ACTION_FAILED


def error_message(error: BaseException) -> str:
    """Human-readable message for an exception, never empty."""
    message = str(error).strip()
    return message or type(error).__name__
