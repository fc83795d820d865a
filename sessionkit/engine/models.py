"""Core data models for the session supervisor.

Enums, outcome value objects and the error-to-status mapping used by
boundary layers. Kept free of I/O to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import (
    AccessDeniedError,
    ConflictError,
    NotFoundError,
    PayloadTooLargeError,
    ProcessFailureError,
    SessionTimeoutError,
    ValidationError,
)


class OutcomeStatus(str, Enum):
    """Boundary classification of an operation's outcome."""
    SUCCESS = "success"
    VALIDATION = "validation"
    ACCESS_DENIED = "access_denied"
    CONFLICT = "conflict"
    TOO_LARGE = "too_large"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


class PermissionMode(str, Enum):
    """Maps to the claude CLI --permission-mode values."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"


class EntryType(str, Enum):
    """Discriminants of session log entries and stream-json lines."""
    USER = "user"
    ASSISTANT = "assistant"
    RESULT = "result"
    PROGRESS = "progress"
    SYSTEM = "system"


# Exit codes that mean the process was told to stop rather than crashed.
# None covers "killed before reporting"; negatives are asyncio's signal
# encoding, 143/137 the shell's 128+signal encoding.
CANCELLED_EXIT_CODES: frozenset[int | None] = frozenset({None, -15, -9, 143, 137})


def _make_id() -> str:
    return str(uuid.uuid4())


def _raise_for_status(session_id: str, status: OutcomeStatus, error: str | None) -> None:
    if status == OutcomeStatus.SUCCESS:
        return
    if status == OutcomeStatus.TIMEOUT:
        raise SessionTimeoutError(session_id, detail=error or "")
    raise ProcessFailureError(session_id, error or f"Session failed ({status.value})")


@dataclass
class PermissionSettings:
    """Permission configuration forwarded to the agent CLI."""
    mode: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PermissionSettings | None:
        if not isinstance(data, dict):
            return None
        mode = data.get("mode")
        allowed = data.get("allowedTools", data.get("allowed_tools"))
        disallowed = data.get("disallowedTools", data.get("disallowed_tools"))
        return cls(
            mode=mode if isinstance(mode, str) else None,
            allowed_tools=[str(t) for t in allowed] if isinstance(allowed, list) else [],
            disallowed_tools=[str(t) for t in disallowed] if isinstance(disallowed, list) else [],
        )


@dataclass
class ImageAttachment:
    """A base64 image sent alongside a user message."""
    data: str
    media_type: str = "image/png"


@dataclass
class ResultMessage:
    """A ``result`` line from the agent's stream-json output.

    Also synthesized by the supervisor when the process exits while a
    request is still outstanding.
    """
    is_error: bool = False
    subtype: str | None = None
    result: str | None = None
    synthetic: bool = False
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_line(cls, data: dict[str, Any]) -> ResultMessage:
        result = data.get("result")
        return cls(
            is_error=bool(data.get("is_error")),
            subtype=data.get("subtype"),
            result=result if isinstance(result, str) else None,
            raw=data,
        )


@dataclass
class SendOutcome:
    """Outcome of delivering one message to a session."""
    session_id: str
    request_id: str = field(default_factory=_make_id)
    success: bool = True
    status: OutcomeStatus = OutcomeStatus.SUCCESS
    error: str | None = None
    spawned: bool = False

    def raise_for_status(self) -> None:
        """Raise the matching SessionKitError if delivery failed."""
        _raise_for_status(self.session_id, self.status, self.error)


@dataclass
class NewSessionOutcome:
    """Outcome of creating a session on disk."""
    success: bool
    session_id: str
    dir_name: str
    file_name: str
    status: OutcomeStatus = OutcomeStatus.SUCCESS
    error: str | None = None

    def raise_for_status(self) -> None:
        _raise_for_status(self.session_id, self.status, self.error)


def classify_error(exc: BaseException) -> OutcomeStatus:
    """Map an exception from the core onto a boundary status."""
    if isinstance(exc, ValidationError):
        return OutcomeStatus.VALIDATION
    if isinstance(exc, AccessDeniedError):
        return OutcomeStatus.ACCESS_DENIED
    if isinstance(exc, ConflictError):
        return OutcomeStatus.CONFLICT
    if isinstance(exc, PayloadTooLargeError):
        return OutcomeStatus.TOO_LARGE
    if isinstance(exc, NotFoundError):
        return OutcomeStatus.NOT_FOUND
    if isinstance(exc, SessionTimeoutError):
        return OutcomeStatus.TIMEOUT
    # ProcessFailureError and anything unexpected
    return OutcomeStatus.INTERNAL
