"""Error kinds raised by the session core.

Every error carries an ``output_code`` so the JSON-RPC layer and the CLI can map
it to a wire code or exit status without string matching.
"""

from __future__ import annotations


class AcpxError(Exception):
    """Base class for all acpx errors."""

    output_code = "RUNTIME"
    detail_code: str | None = None
    retryable = False


class SessionNotFoundError(AcpxError):
    """An identifier resolved to no session record."""

    output_code = "NO_SESSION"

    def __init__(self, session_id: str):
        super().__init__(f"No session found: {session_id}")
        self.session_id = session_id


class SessionResolutionError(AcpxError):
    """An identifier matched more than one session record."""

    output_code = "NO_SESSION"
    detail_code = "SESSION_AMBIGUOUS"

    def __init__(self, message: str, session_id: str, candidates: list[str] | None = None):
        super().__init__(message)
        self.session_id = session_id
        self.candidates = candidates or []


class PersistedKeyPolicyError(AcpxError, ValueError):
    """A document about to be persisted contains a non snake_case key."""

    def __init__(self, violations: list[str]):
        super().__init__(
            "Persisted key policy violation (expected snake_case keys): "
            + ", ".join(violations)
        )
        self.violations = violations


class PermissionDeniedError(AcpxError):
    output_code = "PERMISSION_DENIED"

    def __init__(self, method: str, reason: str | None = None):
        message = f"Permission denied for {method}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.method = method


class PermissionPromptUnavailableError(AcpxError):
    output_code = "PERMISSION_PROMPT_UNAVAILABLE"

    def __init__(self, method: str):
        super().__init__(
            f"Permission prompt unavailable for {method} in non-interactive mode"
        )
        self.method = method


class ConfigError(AcpxError, ValueError):
    output_code = "USAGE"


class EventLogError(AcpxError):
    """Misuse of the session event log (bad sequence, closed writer, invalid event)."""


class InvalidPathError(AcpxError, ValueError):
    """A filesystem request named a relative path or one outside the session cwd."""

    output_code = "USAGE"
