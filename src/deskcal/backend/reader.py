"""Read path: structured-store queries with automation fallback."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from pathlib import Path

from deskcal import identity
from deskcal.backend.automation import AutomationClient, with_retry
from deskcal.backend.store import SEARCH_COLUMNS, find_store, query_events
from deskcal.config import RetryPolicy
from deskcal.contract import Calendar, Event, EventFilter
from deskcal.errors import (
    BackendUnavailableError,
    DeskcalError,
    NotFoundError,
    PermissionDeniedError,
    StoreUnavailableError,
    ValidationError,
)
from deskcal.timeutil import utc_now

logger = logging.getLogger(__name__)

# Identifier lookups scan this far either side of "now".
LOOKUP_SPAN = timedelta(days=3 * 365)


def _field_value(event: Event, field: str) -> str:
    if field not in SEARCH_COLUMNS:
        return ""
    return getattr(event, field)


def matches_filter(event: Event, filter: EventFilter) -> bool:
    """Client-side twin of the predicates the store query pushes down."""
    if filter.calendars:
        allowed = {name.lower() for name in filter.calendars}
        if event.calendar_id.lower() not in allowed and event.calendar_name.lower() not in allowed:
            return False
    if filter.query:
        needle = filter.query.lower()
        field = filter.field.strip().lower()
        if field in ("", "all"):
            return any(needle in getattr(event, name).lower() for name in SEARCH_COLUMNS)
        if field not in SEARCH_COLUMNS:
            return False
        return needle in _field_value(event, field).lower()
    return True


def sort_events(events: list[Event]) -> list[Event]:
    return sorted(events, key=lambda event: (event.start, event.id))


class EventReader:
    """Lists and looks up events.

    The store is tried first. When it cannot be located, opened or queried,
    every calendar is enumerated through the automation layer over the same
    window and the filter is re-applied in Python, producing identical
    composite identifiers.
    """

    def __init__(
        self,
        store_paths: Sequence[Path],
        automation: AutomationClient,
        retry: RetryPolicy,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store_paths = tuple(store_paths)
        self._automation = automation
        self._retry = retry
        self._clock = clock

    @property
    def store_paths(self) -> tuple[Path, ...]:
        return self._store_paths

    async def list_events(self, filter: EventFilter) -> list[Event]:
        if filter.start.tzinfo is None or filter.end.tzinfo is None:
            raise ValidationError("filter bounds must be timezone-aware")
        if filter.end < filter.start:
            raise ValidationError("invalid time range: end is before start")

        try:
            path = find_store(self._store_paths)
            return await asyncio.to_thread(query_events, path, filter)
        except StoreUnavailableError as store_exc:
            logger.warning(
                "Calendar store unavailable, falling back to automation enumeration: %s",
                store_exc.message,
            )
            return await self._list_via_automation(filter, store_exc)

    async def _list_via_automation(
        self,
        filter: EventFilter,
        store_exc: StoreUnavailableError,
    ) -> list[Event]:
        try:
            rows = await with_retry(
                "automation.enumerate_events",
                lambda: self._automation.enumerate_events(filter.start, filter.end),
                self._retry,
            )
        except DeskcalError as exc:
            message = f"{store_exc.message} (automation fallback failed: {exc.message})"
            if store_exc.access_denied or isinstance(exc, PermissionDeniedError):
                raise PermissionDeniedError(
                    message,
                    hint="Grant Full Disk Access or Calendar automation permission to your terminal",
                ) from exc
            raise BackendUnavailableError(message) from exc

        events = [
            row.to_event() for row in rows if filter.start <= row.start <= filter.end
        ]
        events = sort_events([event for event in events if matches_filter(event, filter)])
        if filter.limit > 0:
            events = events[: filter.limit]
        return events

    def lookup_window(self, occurrence_start: datetime | None = None) -> tuple[datetime, datetime]:
        """Scan window for identifier lookups, widened to include the occurrence."""
        now = self._clock()
        start, end = now - LOOKUP_SPAN, now + LOOKUP_SPAN
        if occurrence_start is not None:
            start = min(start, occurrence_start - timedelta(days=1))
            end = max(end, occurrence_start + timedelta(days=1))
        return start, end

    async def find_event(self, event_id: str) -> Event | None:
        """Exact-identifier lookup; a series-level id matches its earliest instance."""
        uid, occurrence = identity.decode(event_id)
        if not uid:
            raise ValidationError("invalid event id")
        occurrence_start = identity.from_store_epoch(occurrence) if occurrence > 0 else None
        start, end = self.lookup_window(occurrence_start)
        events = await self.list_events(EventFilter(start=start, end=end))

        wanted = identity.encode(uid, occurrence)
        for event in events:
            if event.id == wanted:
                return event
        if occurrence == 0:
            for event in events:
                if identity.uid_of(event.id) == uid:
                    return event
        return None

    async def get_event_by_id(self, event_id: str) -> Event:
        event = await self.find_event(event_id)
        if event is None:
            raise NotFoundError(f"event not found: {event_id}")
        return event

    async def list_calendars(self) -> list[Calendar]:
        return await with_retry(
            "automation.list_calendars", self._automation.list_calendars, self._retry
        )
