"""Error taxonomy shared by the backend, supervisor, journal and batch layers.

Every error raised on purpose by deskcal derives from :class:`DeskcalError`
and carries a stable :class:`~deskcal.contract.ErrorCode` so renderers outside
the core can map it to exit codes or envelopes without string matching.

Classification rules:

- ``ValidationError`` is raised before any backend round-trip and is never retried.
- ``TransientAutomationError`` is the only class the retry helper retries.
- ``BackendTimeoutError`` / ``BackendCanceledError`` come from the call
  supervisor and carry the phase (and, for timeouts, the absolute deadline).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from deskcal.contract import ErrorCode

_TRANSIENT_MARKERS = (
    "appleevent timed out",
    "(-1712)",
    "connection is invalid",
    "temporarily unavailable",
    "busy",
    "calendar got an error: not running",
)

_ACCESS_DENIED_MARKERS = (
    "authorization denied",
    "not authorized",
    "not allowed to send apple events",
    "(-1743)",
    "operation not permitted",
    "permission denied",
)

_NOT_FOUND_MARKERS = (
    "event not found",
    "calendar not found",
)


class DeskcalError(RuntimeError):
    """Base class for all classified deskcal failures."""

    code: ErrorCode = ErrorCode.generic

    def __init__(self, message: str, *, hint: str | None = None, phase: str | None = None) -> None:
        self.message = message
        self.hint = hint
        self.phase = phase
        super().__init__(message)


class ValidationError(DeskcalError):
    """Bad caller input. Raised before any backend call."""

    code = ErrorCode.invalid_usage


class NotFoundError(DeskcalError):
    """No record matches the given identity/scope."""

    code = ErrorCode.not_found


class ConcurrencyError(DeskcalError):
    """An optimistic precondition (expected edit sequence) did not hold."""

    code = ErrorCode.concurrency

    def __init__(self, *, event_id: str, expected: int, actual: int) -> None:
        self.event_id = event_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"event {event_id} changed concurrently: expected sequence {expected}, found {actual}",
            hint="Re-read the event and retry with the current sequence",
        )


class BackendUnavailableError(DeskcalError):
    """The automation layer or the structured store cannot be reached."""

    code = ErrorCode.backend_unavailable


class PermissionDeniedError(BackendUnavailableError):
    """The operating system denied automation or file access."""

    code = ErrorCode.permission_denied


class StoreUnavailableError(BackendUnavailableError):
    """The structured store could not be located, opened or queried."""

    def __init__(self, message: str, *, access_denied: bool = False) -> None:
        self.access_denied = access_denied
        super().__init__(message)


class GenericFailure(DeskcalError):
    """The native layer rejected a mutation for an unclassified reason."""

    code = ErrorCode.generic


class TransientAutomationError(GenericFailure):
    """Automation call failed in a way that is worth retrying."""


class ReminderVerificationError(GenericFailure):
    """Reminder read-back did not match the requested state."""

    def __init__(
        self,
        *,
        event_id: str,
        requested: timedelta | None,
        observed: timedelta | None,
    ) -> None:
        self.event_id = event_id
        self.requested = requested
        self.observed = observed
        if requested is None:
            message = "reminder clear verification failed"
            hint = "Reminder still present after clear operation"
        else:
            message = "reminder offset verification failed"
            hint = "Observed reminder does not match requested offset"
        super().__init__(message, hint=hint)


class BackendTimeoutError(DeskcalError, TimeoutError):
    """The supervised call did not finish before the invocation deadline."""

    code = ErrorCode.backend_unavailable

    def __init__(self, *, phase: str, deadline: datetime | None) -> None:
        self.deadline = deadline
        if deadline is not None:
            message = f"{phase} timed out after deadline {deadline.isoformat()}"
        else:
            message = f"{phase} timed out"
        super().__init__(
            message,
            hint="The operation may still complete in Calendar; re-read before retrying",
            phase=phase,
        )


class BackendCanceledError(DeskcalError):
    """The supervised call was canceled by the caller."""

    code = ErrorCode.generic

    def __init__(self, *, phase: str) -> None:
        super().__init__(f"{phase} canceled", phase=phase)


def annotate_phase(exc: BaseException, phase: str) -> BaseException:
    """Tag *exc* with the phase that produced it, keeping an earlier tag."""
    if isinstance(exc, DeskcalError):
        if exc.phase is None:
            exc.phase = phase
    else:
        exc.add_note(f"phase: {phase}")
    return exc


def error_meta(exc: BaseException) -> dict[str, Any] | None:
    """Return diagnostic metadata for phase-annotated errors."""
    if not isinstance(exc, DeskcalError) or exc.phase is None:
        return None
    meta: dict[str, Any] = {"phase": exc.phase, "code": str(exc.code)}
    if isinstance(exc, BackendTimeoutError):
        meta["kind"] = "timeout"
        if exc.deadline is not None:
            meta["deadline"] = exc.deadline.isoformat()
    elif isinstance(exc, BackendCanceledError):
        meta["kind"] = "canceled"
    else:
        meta["kind"] = "error"
    return meta


def _contains_any(message: str, markers: tuple[str, ...]) -> bool:
    lowered = message.strip().lower()
    return any(marker in lowered for marker in markers)


def is_transient_message(message: str) -> bool:
    return _contains_any(message, _TRANSIENT_MARKERS)


def is_access_denied(message: str) -> bool:
    return _contains_any(message, _ACCESS_DENIED_MARKERS)


def classify_automation_error(message: str) -> DeskcalError:
    """Map raw automation stderr onto the error taxonomy."""
    text = " ".join(message.split()) or "automation call failed"
    if is_access_denied(text):
        return PermissionDeniedError(
            f"automation access denied: {text}",
            hint="Grant Calendar automation permission in System Settings > Privacy & Security",
        )
    if is_transient_message(text):
        return TransientAutomationError(f"automation call failed: {text}")
    if _contains_any(text, _NOT_FOUND_MARKERS):
        return NotFoundError(text)
    return GenericFailure(f"automation call failed: {text}")
