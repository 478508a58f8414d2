"""Composite event identifiers: ``<uid>[@<occurrence>]``.

The occurrence component is the instance start expressed in the structured
store's native epoch (seconds since 2001-01-01T00:00:00Z). Both read paths
derive identifiers through :func:`occurrence_id`, so an event listed from the
store and the same event enumerated through the automation layer compare
equal. An occurrence of ``0`` (or no suffix at all) addresses the whole
series.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from deskcal.errors import ValidationError

SEPARATOR = "@"

# Seconds between the Unix epoch and the store's reference date.
STORE_EPOCH_OFFSET = 978_307_200
STORE_EPOCH = datetime(2001, 1, 1, tzinfo=UTC)


def decode(event_id: str) -> tuple[str, int]:
    """Split *event_id* into ``(uid, occurrence)``.

    Splits on the last separator. A suffix that is not a non-negative integer
    is treated as part of the uid, since store uids may themselves contain
    ``@`` (for example ``abc@google.com``).
    """
    text = (event_id or "").strip()
    uid, sep, suffix = text.rpartition(SEPARATOR)
    if not sep or not suffix.isdigit() or not uid:
        return text, 0
    return uid, int(suffix)


def encode(uid: str, occurrence: int = 0) -> str:
    """Build the composite identifier; occurrence ``0`` is omitted."""
    normalized = (uid or "").strip()
    if not normalized:
        raise ValidationError("event uid must be non-empty")
    if occurrence < 0:
        raise ValidationError(f"occurrence must be >= 0, got {occurrence}")
    if occurrence == 0:
        return normalized
    return f"{normalized}{SEPARATOR}{occurrence}"


def to_store_epoch(value: datetime) -> int:
    """Convert an aware instant to whole seconds since the store epoch."""
    if value.tzinfo is None:
        raise ValidationError("instant must be timezone-aware")
    return int(value.timestamp()) - STORE_EPOCH_OFFSET


def from_store_epoch(seconds: int | float) -> datetime:
    return STORE_EPOCH + timedelta(seconds=int(seconds))


def occurrence_id(uid: str, start: datetime) -> str:
    """Identifier of the instance of *uid* starting at *start*."""
    return encode(uid, max(to_store_epoch(start), 0))


def uid_of(event_id: str) -> str:
    return decode(event_id)[0]
