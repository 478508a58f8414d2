"""Backend contract consumed by the rest of deskcal."""

from __future__ import annotations

import abc
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import timedelta

from deskcal.config import DeskcalConfig
from deskcal.contract import (
    Calendar,
    DoctorCheck,
    Event,
    EventCreateInput,
    EventFilter,
    EventUpdatePatch,
    RecurrenceScope,
)
from deskcal.errors import ValidationError


class CalendarBackend(abc.ABC):
    """Async calendar backend.

    Identifiers are composite ``<uid>[@<occurrence>]`` strings. Mutations
    accept a scope token and resolve it before touching the native layer, so
    a ``ValidationError`` never costs a round-trip.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Backend identifier (e.g. ``apple``)."""
        ...

    @abc.abstractmethod
    async def doctor(self) -> list[DoctorCheck]:
        """Run environment checks. Stops at the first failing prerequisite."""
        ...

    @abc.abstractmethod
    async def list_calendars(self) -> list[Calendar]: ...

    @abc.abstractmethod
    async def list_events(self, filter: EventFilter) -> list[Event]:
        """Events in ``[filter.start, filter.end]`` ordered by start then id."""
        ...

    @abc.abstractmethod
    async def get_event_by_id(self, event_id: str) -> Event:
        """Fetch one event; raises ``NotFoundError`` when absent."""
        ...

    @abc.abstractmethod
    async def add_event(self, payload: EventCreateInput) -> Event: ...

    @abc.abstractmethod
    async def update_event(self, event_id: str, patch: EventUpdatePatch) -> Event:
        """Apply only the provided patch fields under ``patch.scope``."""
        ...

    @abc.abstractmethod
    async def delete_event(
        self,
        event_id: str,
        scope: RecurrenceScope | str | None = None,
    ) -> None: ...

    @abc.abstractmethod
    async def get_reminder_offset(self, event_id: str) -> timedelta | None:
        """Current reminder as a negative offset from start, or ``None``."""
        ...

    @abc.abstractmethod
    async def set_reminder_offset(self, event_id: str, offset: timedelta | None) -> None:
        """Replace the reminder (``None`` clears it) and verify by read-back."""
        ...

    async def close(self) -> None:  # noqa: B027
        """Release resources held by the backend."""


BackendFactory = Callable[[DeskcalConfig], CalendarBackend]


class BackendRegistry:
    """Maps backend names to factories.

    The registry is an explicit value handed to :func:`deskcal.context.build_context`;
    tests construct their own instead of patching module state.
    """

    def __init__(self, factories: dict[str, BackendFactory] | None = None) -> None:
        self._factories: dict[str, BackendFactory] = dict(factories or {})

    def register(self, name: str, factory: BackendFactory) -> None:
        key = name.strip().lower()
        if not key:
            raise ValueError("backend name must be non-empty")
        self._factories[key] = factory

    def names(self) -> list[str]:
        return sorted(self._factories)

    def resolve(self, name: str) -> BackendFactory:
        key = (name or "").strip().lower()
        try:
            return self._factories[key]
        except KeyError:
            raise ValidationError(
                f"unsupported backend: {name!r}",
                hint=f"Available backends: {', '.join(self.names()) or 'none'}",
            ) from None

    def create(self, config: DeskcalConfig) -> CalendarBackend:
        return self.resolve(config.backend)(config)


def default_registry() -> BackendRegistry:
    from deskcal.backend.apple import create_apple_backend

    return BackendRegistry({"apple": create_apple_backend})


# ---------------------------------------------------------------------------
# Readiness summary
# ---------------------------------------------------------------------------


@dataclass
class Readiness:
    """Summary of doctor checks for first-time setup guidance."""

    ready: bool = True
    degraded: bool = False
    checks: list[DoctorCheck] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)


def assess_readiness(checks: Iterable[DoctorCheck]) -> Readiness:
    """Decide whether the backend is usable and whether reads are degraded.

    Missing automation or automation access makes the backend not ready. A
    missing or unreadable store only degrades it, since reads fall back to the
    automation layer.
    """
    result = Readiness(checks=list(checks))
    by_name = {check.name.strip().lower(): check for check in result.checks}

    def failed(name: str, *, required: bool) -> bool:
        check = by_name.get(name)
        if check is None:
            return required
        return not check.ok

    if failed("osascript", required=True):
        result.ready = False
        result.next_steps.append("Install or expose `osascript` in PATH (default on macOS).")
    if failed("calendar_access", required=True):
        result.ready = False
        result.next_steps.append(
            "Grant Calendar automation permission for your terminal app in "
            "System Settings > Privacy & Security > Automation."
        )
    if failed("calendar_db_read", required=False):
        result.degraded = True
        result.notes.append("Calendar database reads are unavailable; reads will be slower.")
        result.next_steps.append(
            "Optional: grant Full Disk Access to your terminal for faster database reads."
        )
    if failed("calendar_db", required=False):
        result.degraded = True
        result.notes.append("Calendar database path was not detected.")

    for check in result.checks:
        if not check.ok and check.message:
            result.notes.append(f"{check.name}: {check.message}")
    return result
