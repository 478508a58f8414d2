"""Write path: automation-driven mutations confirmed through the read path.

The automation layer reports success before the structured store has
necessarily indexed a change. Reads after a write therefore tolerate lag and
fall back to a deterministically constructed record instead of failing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from deskcal import identity
from deskcal.backend.automation import AutomationClient, with_retry
from deskcal.backend.reader import EventReader
from deskcal.config import RetryPolicy
from deskcal.contract import Event, EventCreateInput, EventFilter, EventUpdatePatch, RecurrenceScope
from deskcal.errors import (
    ConcurrencyError,
    DeskcalError,
    NotFoundError,
    ReminderVerificationError,
    ValidationError,
)
from deskcal.recurrence import resolve_target
from deskcal.timeutil import normalize_reminder_offset, utc_now

logger = logging.getLogger(__name__)

CONFIRM_MARGIN = timedelta(days=1)


def _require_aware(value: datetime, field: str) -> None:
    if value.tzinfo is None:
        raise ValidationError(f"{field} must be timezone-aware")


def validate_create(payload: EventCreateInput) -> None:
    if not payload.calendar.strip():
        raise ValidationError("calendar is required")
    if not payload.title.strip():
        raise ValidationError("title is required")
    _require_aware(payload.start, "start")
    _require_aware(payload.end, "end")
    if payload.end <= payload.start:
        raise ValidationError("end must be after start")


def validate_patch(patch: EventUpdatePatch) -> dict[str, Any]:
    """Return the provided changes, rejecting unusable ones."""
    changes = patch.provided()
    if not changes:
        raise ValidationError(
            "no fields to update",
            hint="Provide at least one of: title, start, end, location, notes, url, all_day",
        )
    if "title" in changes and not (changes["title"] or "").strip():
        raise ValidationError("title must be non-empty")
    for name in ("start", "end"):
        if name in changes:
            if changes[name] is None:
                raise ValidationError(f"{name} cannot be cleared")
            _require_aware(changes[name], name)
    if "start" in changes and "end" in changes and changes["end"] <= changes["start"]:
        raise ValidationError("end must be after start")
    if "all_day" in changes and changes["all_day"] is None:
        raise ValidationError("all_day cannot be cleared")
    for name in ("location", "notes", "url"):
        if name in changes and changes[name] is None:
            changes[name] = ""
    return changes


def complete_time_change(changes: dict[str, Any], current: Event) -> dict[str, Any]:
    """Fill in the missing half of a start/end change from *current*.

    A start-only change keeps the event's length. An end-only change must
    still end after the current start.
    """
    if "start" in changes and "end" not in changes:
        changes["end"] = changes["start"] + (current.end - current.start)
    elif "end" in changes and "start" not in changes and changes["end"] <= current.start:
        raise ValidationError("end must be after start")
    return changes


class EventWriter:
    """Creates, updates, deletes and re-reads events."""

    def __init__(
        self,
        reader: EventReader,
        automation: AutomationClient,
        retry: RetryPolicy,
    ) -> None:
        self._reader = reader
        self._automation = automation
        self._retry = retry

    async def _find_quietly(self, event_id: str) -> Event | None:
        try:
            return await self._reader.find_event(event_id)
        except DeskcalError as exc:
            logger.info("Read-after-write for %s failed: %s", event_id, exc.message)
            return None

    # -- add ---------------------------------------------------------------

    async def add_event(self, payload: EventCreateInput) -> Event:
        validate_create(payload)
        uid = await with_retry(
            "automation.create_event",
            lambda: self._automation.create_event(payload),
            self._retry,
        )
        expected_id = identity.occurrence_id(uid, payload.start)

        try:
            events = await self._reader.list_events(
                EventFilter(start=payload.start - CONFIRM_MARGIN, end=payload.end + CONFIRM_MARGIN)
            )
        except DeskcalError as exc:
            logger.info("Could not confirm created event %s: %s", uid, exc.message)
            events = []

        same_uid = [event for event in events if identity.uid_of(event.id) == uid]
        for event in same_uid:
            if event.id == expected_id:
                return event
        if same_uid:
            return same_uid[0]

        logger.info(
            "Created event %s not yet visible in the store; returning constructed record", uid
        )
        return Event(
            id=expected_id,
            calendar_id=payload.calendar,
            calendar_name=payload.calendar,
            title=payload.title,
            start=payload.start,
            end=payload.end,
            all_day=payload.all_day,
            location=payload.location,
            notes=payload.notes,
            url=payload.url,
        )

    # -- update ------------------------------------------------------------

    async def update_event(self, event_id: str, patch: EventUpdatePatch) -> Event:
        target = resolve_target(event_id, patch.scope)
        changes = validate_patch(patch)

        current: Event | None = None
        one_sided = ("start" in changes) != ("end" in changes)
        if patch.expected_sequence is not None or one_sided:
            current = await self._reader.find_event(target.event_id)
            if current is None:
                raise NotFoundError(f"event not found: {event_id}")
            if patch.expected_sequence is not None and current.sequence != patch.expected_sequence:
                raise ConcurrencyError(
                    event_id=current.id,
                    expected=patch.expected_sequence,
                    actual=current.sequence,
                )
            complete_time_change(changes, current)

        touched = await with_retry(
            "automation.update_events",
            lambda: self._automation.update_events(
                target.uid, target.scope, target.occurrence_start, changes
            ),
            self._retry,
        )
        if touched == 0:
            raise NotFoundError(f"event not found: {event_id}")
        logger.debug("Updated %d instance(s) of %s (scope=%s)", touched, target.uid, target.scope)

        if "start" in changes:
            expected_id = identity.occurrence_id(target.uid, changes["start"])
        else:
            expected_id = target.event_id

        refreshed = await self._find_quietly(expected_id)
        if refreshed is not None and all(
            getattr(refreshed, name) == value for name, value in changes.items()
        ):
            return refreshed

        logger.info(
            "Updated event %s not yet visible in the store; returning patched record", expected_id
        )
        base = refreshed or current
        if base is None:
            anchor = changes.get("start") or target.occurrence_start or utc_now()
            base = Event(id=expected_id, start=anchor, end=changes.get("end") or anchor)
        return base.model_copy(update={**changes, "id": expected_id})

    # -- delete ------------------------------------------------------------

    async def delete_event(
        self,
        event_id: str,
        scope: RecurrenceScope | str | None = None,
    ) -> None:
        target = resolve_target(event_id, scope)
        removed = await with_retry(
            "automation.delete_events",
            lambda: self._automation.delete_events(
                target.uid, target.scope, target.occurrence_start
            ),
            self._retry,
        )
        if removed == 0:
            raise NotFoundError(f"event not found: {event_id}")
        logger.debug("Deleted %d instance(s) of %s (scope=%s)", removed, target.uid, target.scope)

    # -- reminders ---------------------------------------------------------

    async def get_reminder_offset(self, event_id: str) -> timedelta | None:
        target = resolve_target(event_id)
        minutes = await with_retry(
            "automation.get_alarm",
            lambda: self._automation.get_alarm(target.uid, target.occurrence_start),
            self._retry,
        )
        return None if minutes is None else timedelta(minutes=minutes)

    async def set_reminder_offset(self, event_id: str, offset: timedelta | None) -> None:
        """Replace the reminder and verify it by reading it back.

        A mismatch raises :class:`ReminderVerificationError` even though the
        automation call itself reported success.
        """
        target = resolve_target(event_id)
        requested = None if offset is None else normalize_reminder_offset(offset)
        minutes = None if requested is None else int(requested.total_seconds() // 60)

        await with_retry(
            "automation.set_alarm",
            lambda: self._automation.set_alarm(target.uid, target.occurrence_start, minutes),
            self._retry,
        )
        observed = await self.get_reminder_offset(event_id)
        if observed != requested:
            raise ReminderVerificationError(
                event_id=event_id, requested=requested, observed=observed
            )
