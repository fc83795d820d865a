"""Session core: supervise claude subprocesses and mirror subagent activity."""
from .models import (
    CANCELLED_EXIT_CODES,
    ImageAttachment,
    NewSessionOutcome,
    OutcomeStatus,
    PermissionMode,
    PermissionSettings,
    ResultMessage,
    SendOutcome,
    classify_error,
)
from .config import HubDirs, SessionKitConfig, validate_claude_dir
from .errors import (
    AccessDeniedError,
    ConflictError,
    NotFoundError,
    PayloadTooLargeError,
    ProcessFailureError,
    SessionKitError,
    SessionTimeoutError,
    ValidationError,
)
from .subagent_mirror import SubagentMirror
from .supervisor import LiveSession, SessionSupervisor
from .task_calls import TaskCallTracker, TaskInvocation

__all__ = [
    "CANCELLED_EXIT_CODES",
    "ImageAttachment",
    "NewSessionOutcome",
    "OutcomeStatus",
    "PermissionMode",
    "PermissionSettings",
    "ResultMessage",
    "SendOutcome",
    "classify_error",
    "HubDirs",
    "SessionKitConfig",
    "validate_claude_dir",
    "AccessDeniedError",
    "ConflictError",
    "NotFoundError",
    "PayloadTooLargeError",
    "ProcessFailureError",
    "SessionKitError",
    "SessionTimeoutError",
    "ValidationError",
    "SubagentMirror",
    "LiveSession",
    "SessionSupervisor",
    "TaskCallTracker",
    "TaskInvocation",
]
