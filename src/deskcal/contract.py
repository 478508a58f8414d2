"""Backend contract types shared by every deskcal layer.

These pydantic models are the only shapes that cross the backend boundary:
the read/write paths produce them, the journal persists them, and callers
outside the core (renderers, query language, import/export) consume them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Fields of an event a patch may change. Order matters for script argv.
PATCHABLE_FIELDS: tuple[str, ...] = (
    "title",
    "start",
    "end",
    "location",
    "notes",
    "url",
    "all_day",
)


class ErrorCode(StrEnum):
    """Stable error codes for renderers outside the core."""

    generic = "GENERIC_FAILURE"
    invalid_usage = "INVALID_USAGE"
    permission_denied = "PERMISSION_DENIED"
    not_found = "NOT_FOUND"
    conflict = "CONFLICT"
    backend_unavailable = "BACKEND_UNAVAILABLE"
    concurrency = "CONCURRENCY_CONFLICT"


class RecurrenceScope(StrEnum):
    """Which occurrences of a series a mutation targets."""

    auto = "auto"
    this = "this"
    future = "future"
    series = "series"


class CheckStatus(StrEnum):
    ok = "ok"
    fail = "fail"


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC)


class Calendar(BaseModel):
    id: str
    name: str
    writable: bool = True


class DoctorCheck(BaseModel):
    name: str
    status: CheckStatus
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == CheckStatus.ok


class Event(BaseModel):
    """Canonical event record as observed through the read path."""

    id: str
    calendar_id: str = ""
    calendar_name: str = ""
    title: str = ""
    start: datetime
    end: datetime
    all_day: bool = False
    location: str = ""
    notes: str = ""
    url: str = ""
    sequence: int = 0
    updated_at: datetime | None = None

    @field_validator("start", "end", "updated_at")
    @classmethod
    def _normalize_instant(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @property
    def calendar_ref(self) -> str:
        """Name used to address the calendar in automation calls."""
        return (self.calendar_name or self.calendar_id).strip()

    def to_create_input(self) -> EventCreateInput:
        return EventCreateInput(
            calendar=self.calendar_ref,
            title=self.title,
            start=self.start,
            end=self.end,
            location=self.location,
            notes=self.notes,
            url=self.url,
            all_day=self.all_day,
        )


class EventFilter(BaseModel):
    """Time-bounded selection of events with optional pushdown predicates."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    calendars: tuple[str, ...] = ()
    query: str = ""
    field: str = ""
    limit: int = Field(default=0, ge=0)

    @field_validator("start", "end")
    @classmethod
    def _normalize_bounds(cls, value: datetime) -> datetime:
        return _as_utc(value)  # type: ignore[return-value]

    @field_validator("calendars", mode="before")
    @classmethod
    def _normalize_calendars(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        if value is None:
            return ()
        return tuple(item.strip() for item in value if item and item.strip())


class Frequency(StrEnum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


WEEKDAY_NAMES: tuple[str, ...] = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
MAX_REPEAT_COUNT = 366


class RepeatRule(BaseModel):
    """Parsed ``<frequency>[:<weekday-list>][*<count>]`` repeat rule.

    Weekdays use ``datetime.weekday()`` numbering (Monday is 0) and are kept
    in canonical Monday to Sunday order without duplicates.
    """

    model_config = ConfigDict(frozen=True)

    frequency: Frequency
    weekdays: tuple[int, ...] = ()
    count: int = Field(default=10, ge=1, le=MAX_REPEAT_COUNT)

    @field_validator("weekdays")
    @classmethod
    def _canonical_weekdays(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        for day in value:
            if not 0 <= day <= 6:
                raise ValueError(f"weekday out of range: {day}")
        return tuple(sorted(set(value)))

    def canonical(self) -> str:
        text = str(self.frequency)
        if self.weekdays:
            text += ":" + ",".join(WEEKDAY_NAMES[day] for day in self.weekdays)
        return f"{text}*{self.count}"


class EventCreateInput(BaseModel):
    """Plain creation payload. Validation happens in the write path."""

    calendar: str
    title: str
    start: datetime
    end: datetime
    location: str = ""
    notes: str = ""
    url: str = ""
    all_day: bool = False
    repeat: RepeatRule | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_bounds(cls, value: datetime) -> datetime:
        return _as_utc(value)  # type: ignore[return-value]


class EventUpdatePatch(BaseModel):
    """Partial update.

    A field counts as provided when it was passed explicitly, including an
    empty string (for example clearing a location). Unset fields are never
    sent to the automation layer.
    """

    title: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    location: str | None = None
    notes: str | None = None
    url: str | None = None
    all_day: bool | None = None
    scope: RecurrenceScope | None = None
    expected_sequence: int | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_bounds(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    def provided(self) -> dict[str, Any]:
        """Return the explicitly provided change fields, in script order."""
        return {
            name: getattr(self, name) for name in PATCHABLE_FIELDS if name in self.model_fields_set
        }

    def is_empty(self) -> bool:
        return not self.provided()

    @classmethod
    def from_event(
        cls,
        event: Event,
        *,
        scope: RecurrenceScope | None = None,
    ) -> EventUpdatePatch:
        """Build a patch that sets every field to the snapshot's values."""
        values: dict[str, Any] = {name: getattr(event, name) for name in PATCHABLE_FIELDS}
        if scope is not None:
            values["scope"] = scope
        return cls(**values)

