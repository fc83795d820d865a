"""Exception hierarchy for the session core.

One exception per failure mode so boundary layers can map them to
status codes without string matching.
"""
from __future__ import annotations


class SessionKitError(Exception):
    """Base exception for all session core errors."""


class ValidationError(SessionKitError):
    """Request is malformed or missing required fields."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class AccessDeniedError(SessionKitError):
    """Path falls outside the permitted root or into a protected prefix."""
    def __init__(self, path: str, reason: str = "Access denied"):
        self.path = path
        self.reason = reason
        super().__init__(f"{reason}: {path}" if path else reason)


class ConflictError(SessionKitError):
    """A file no longer matches what an edit expected.

    ``rolled_back`` is the number of files restored after the failure.
    """
    def __init__(self, reason: str, rolled_back: int = 0):
        self.reason = reason
        self.rolled_back = rolled_back
        super().__init__(reason)


class ProcessFailureError(SessionKitError):
    """The agent subprocess failed to start or exited with an error.

    The supervisor reports these as outcome objects; ``raise_for_status``
    on the outcome turns them into this exception at the boundary.
    """
    def __init__(self, session_id: str, detail: str):
        self.session_id = session_id
        self.detail = detail
        super().__init__(detail)


class NotFoundError(SessionKitError):
    """A session, log file, or process could not be located."""
    def __init__(self, what: str):
        self.what = what
        super().__init__(f"Not found: {what}")


class SessionTimeoutError(SessionKitError):
    """A session did not materialize within its time budget."""
    def __init__(self, session_id: str, timeout_seconds: float | None = None, detail: str = ""):
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds
        self.detail = detail
        if not detail:
            detail = (
                f"Timed out after {timeout_seconds}s waiting for session to start"
                if timeout_seconds is not None
                else "Timed out waiting for session to start"
            )
        super().__init__(detail)


class PayloadTooLargeError(SessionKitError):
    """Request payload exceeds the configured byte limit."""
    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"Request body too large ({size} bytes, limit {limit})"
        )
