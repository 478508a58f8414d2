"""Recurrence edit scopes and repeat rules.

Scope resolution is pure: it runs before any backend call, so a bad scope
never costs a round-trip to the calendar application.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import ValidationError as PydanticValidationError

from deskcal import identity
from deskcal.contract import MAX_REPEAT_COUNT, WEEKDAY_NAMES, Frequency, RecurrenceScope, RepeatRule
from deskcal.errors import ValidationError

OCCURRENCE_REQUIRED_MESSAGE = "scope requires an occurrence-qualified identifier"

_WEEKDAY_ALIASES: dict[str, int] = {
    "mon": 0,
    "monday": 0,
    "tue": 1,
    "tues": 1,
    "tuesday": 1,
    "wed": 2,
    "wednesday": 2,
    "thu": 3,
    "thurs": 3,
    "thursday": 3,
    "fri": 4,
    "friday": 4,
    "sat": 5,
    "saturday": 5,
    "sun": 6,
    "sunday": 6,
}

_RRULE_FREQ = {
    Frequency.daily: "DAILY",
    Frequency.weekly: "WEEKLY",
    Frequency.monthly: "MONTHLY",
    Frequency.yearly: "YEARLY",
}


@dataclass(frozen=True)
class Target:
    """A decoded identifier with its concrete mutation scope."""

    uid: str
    occurrence: int
    scope: RecurrenceScope

    @property
    def occurrence_start(self) -> datetime | None:
        if self.occurrence <= 0:
            return None
        return identity.from_store_epoch(self.occurrence)

    @property
    def event_id(self) -> str:
        return identity.encode(self.uid, self.occurrence)


def resolve_scope(requested: str | RecurrenceScope | None, occurrence: int) -> RecurrenceScope:
    """Turn a requested scope token into a concrete, validated scope."""
    token = str(requested or "").strip().lower() or RecurrenceScope.auto
    try:
        scope = RecurrenceScope(token)
    except ValueError:
        raise ValidationError(
            f"unrecognized recurrence scope: {token!r}",
            hint="Use one of: auto, this, future, series",
        ) from None

    if scope == RecurrenceScope.auto:
        return RecurrenceScope.this if occurrence > 0 else RecurrenceScope.series
    if scope in (RecurrenceScope.this, RecurrenceScope.future) and occurrence <= 0:
        raise ValidationError(
            OCCURRENCE_REQUIRED_MESSAGE,
            hint=f"Scope {scope} needs an id of the form <uid>@<occurrence>",
        )
    return scope


def resolve_target(event_id: str, requested: str | RecurrenceScope | None = None) -> Target:
    uid, occurrence = identity.decode(event_id)
    if not uid:
        raise ValidationError("invalid event id", hint="Pass an id of the form <uid>[@<occurrence>]")
    return Target(uid=uid, occurrence=occurrence, scope=resolve_scope(requested, occurrence))


# ---------------------------------------------------------------------------
# Repeat rules
# ---------------------------------------------------------------------------


def _parse_weekday(token: str) -> int:
    try:
        return _WEEKDAY_ALIASES[token.strip().lower()]
    except KeyError:
        raise ValidationError(f"invalid weekday: {token.strip()!r}") from None


def parse_repeat_rule(text: str | None) -> RepeatRule | None:
    """Parse ``<frequency>[:<weekday-list>][*<count>]``; empty text means no repeat."""
    spec = (text or "").strip().lower()
    if not spec:
        return None

    count = 10
    if "*" in spec:
        spec, _, raw_count = spec.partition("*")
        raw_count = raw_count.strip()
        if not raw_count.isdigit() or not 1 <= int(raw_count) <= MAX_REPEAT_COUNT:
            raise ValidationError(f"repeat count must be between 1 and {MAX_REPEAT_COUNT}")
        count = int(raw_count)

    frequency_text, sep, weekday_text = spec.partition(":")
    try:
        frequency = Frequency(frequency_text.strip())
    except ValueError:
        raise ValidationError(
            f"unsupported repeat frequency: {frequency_text.strip()!r}",
            hint="Use daily, weekly, monthly or yearly",
        ) from None

    weekdays: list[int] = []
    if sep:
        if frequency != Frequency.weekly:
            raise ValidationError("weekday list is only valid for weekly repeats")
        tokens = [token for token in weekday_text.split(",") if token.strip()]
        if not tokens:
            raise ValidationError("weekly repeat requires weekdays")
        weekdays = [_parse_weekday(token) for token in tokens]

    try:
        return RepeatRule(frequency=frequency, weekdays=tuple(weekdays), count=count)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid repeat rule: {text!r}") from exc


def effective_weekdays(rule: RepeatRule, anchor: datetime) -> tuple[int, ...]:
    if rule.frequency != Frequency.weekly:
        return ()
    return rule.weekdays or (anchor.weekday(),)


def to_rrule(rule: RepeatRule, anchor: datetime) -> str:
    """Render *rule* as an iCalendar RRULE value for the automation layer."""
    parts = [f"FREQ={_RRULE_FREQ[rule.frequency]}"]
    weekdays = effective_weekdays(rule, anchor)
    if weekdays:
        parts.append("BYDAY=" + ",".join(WEEKDAY_NAMES[day][:2].upper() for day in weekdays))
    parts.append(f"COUNT={rule.count}")
    return ";".join(parts)


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def expand_occurrences(rule: RepeatRule | None, start: datetime) -> list[datetime]:
    """List the first ``rule.count`` occurrence starts, beginning at *start*."""
    if rule is None:
        return [start]
    out = [start]
    weekdays = effective_weekdays(rule, start)
    step = 0
    while len(out) < rule.count:
        last = out[-1]
        if rule.frequency == Frequency.daily:
            out.append(last + timedelta(days=1))
        elif rule.frequency == Frequency.weekly:
            for offset in range(1, 8):
                candidate = last + timedelta(days=offset)
                if candidate.weekday() in weekdays:
                    out.append(candidate)
                    break
        elif rule.frequency == Frequency.monthly:
            step += 1
            out.append(_add_months(start, step))
        else:
            step += 1
            out.append(_add_months(start, 12 * step))
    return out
