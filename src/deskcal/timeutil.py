"""Duration and instant parsing helpers."""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from deskcal.errors import ValidationError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(d|h|m|s)")
_UNIT_SECONDS = {"d": 86_400, "h": 3_600, "m": 60, "s": 1}


def parse_duration(text: str) -> timedelta:
    """Parse compact durations such as ``30m``, ``1h30m``, ``-15m`` or ``2d``."""
    raw = (text or "").strip().lower()
    sign = 1
    if raw and raw[0] in "+-":
        sign = -1 if raw[0] == "-" else 1
        raw = raw[1:]
    if not raw:
        raise ValidationError(f"invalid duration: {text!r}")

    pos = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(raw):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(raw):
        raise ValidationError(f"invalid duration: {text!r}", hint="Use forms like 30m, 1h30m or 2d")
    return timedelta(seconds=sign * seconds)


def format_offset(value: timedelta) -> str:
    """Render a duration compactly: ``-15m``, ``-1h30m``, ``-2d``, ``0s``."""
    total = int(value.total_seconds())
    if total == 0:
        return "0s"
    sign = "-" if total < 0 else ""
    remaining = abs(total)
    parts: list[str] = []
    for unit in ("d", "h", "m", "s"):
        size = _UNIT_SECONDS[unit]
        amount, remaining = divmod(remaining, size)
        if amount:
            parts.append(f"{amount}{unit}")
    return sign + "".join(parts)


def normalize_reminder_offset(offset: timedelta | str) -> timedelta:
    """Normalize a reminder offset to "minutes before start" (always negative)."""
    if isinstance(offset, str):
        offset = parse_duration(offset)
    if offset == timedelta(0):
        raise ValidationError("reminder offset must not be zero")
    if offset % timedelta(minutes=1):
        raise ValidationError("reminder offset must be a whole number of minutes")
    return -abs(offset)


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_instant(text: str, tz: tzinfo) -> datetime:
    """Parse an ISO-8601 date or datetime; naive values are localized to *tz*."""
    raw = (text or "").strip()
    if not raw:
        raise ValidationError("empty date/time")
    try:
        if len(raw) == 10:
            parsed = datetime.combine(date.fromisoformat(raw), time.min)
        else:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"invalid date/time: {raw!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(UTC)
