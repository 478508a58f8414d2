"""Calendar.app backend: store reads, automation writes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from deskcal.backend.automation import AutomationClient, OsaScriptAutomation, with_retry
from deskcal.backend.base import CalendarBackend
from deskcal.backend.reader import EventReader
from deskcal.backend.store import find_store, probe_store
from deskcal.backend.writer import EventWriter
from deskcal.config import DeskcalConfig
from deskcal.contract import (
    Calendar,
    CheckStatus,
    DoctorCheck,
    Event,
    EventCreateInput,
    EventFilter,
    EventUpdatePatch,
    RecurrenceScope,
)
from deskcal.errors import DeskcalError
from deskcal.timeutil import utc_now

logger = logging.getLogger(__name__)


class AppleCalendarBackend(CalendarBackend):
    """Backend for the macOS Calendar application.

    Reads go to the structured store with automation fallback; writes go
    through the automation layer and are confirmed by reading back.
    """

    def __init__(
        self,
        config: DeskcalConfig,
        automation: AutomationClient | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._automation = automation or OsaScriptAutomation()
        self.reader = EventReader(config.store_paths, self._automation, config.retry, clock=clock)
        self.writer = EventWriter(self.reader, self._automation, config.retry)

    @property
    def name(self) -> str:
        return "apple"

    @property
    def automation(self) -> AutomationClient:
        return self._automation

    async def doctor(self) -> list[DoctorCheck]:
        checks: list[DoctorCheck] = []

        def add(name: str, ok: bool, message: str) -> None:
            status = CheckStatus.ok if ok else CheckStatus.fail
            checks.append(DoctorCheck(name=name, status=status, message=message))

        if isinstance(self._automation, OsaScriptAutomation) and not self._automation.available():
            add("osascript", False, "osascript not found in PATH")
            return checks
        add("osascript", True, "osascript found")

        try:
            await with_retry("automation.ping", self._automation.ping, self._config.retry)
        except DeskcalError as exc:
            add("calendar_access", False, exc.message)
            return checks
        add("calendar_access", True, "Calendar automation reachable")

        try:
            path = find_store(self._config.store_paths)
        except DeskcalError as exc:
            add("calendar_db", False, exc.message)
            return checks
        add("calendar_db", True, f"Calendar database found: {path}")

        try:
            await asyncio.to_thread(probe_store, path)
        except DeskcalError as exc:
            add("calendar_db_read", False, exc.message)
            return checks
        add("calendar_db_read", True, "Calendar database readable")
        return checks

    async def list_calendars(self) -> list[Calendar]:
        return await self.reader.list_calendars()

    async def list_events(self, filter: EventFilter) -> list[Event]:
        return await self.reader.list_events(filter)

    async def get_event_by_id(self, event_id: str) -> Event:
        return await self.reader.get_event_by_id(event_id)

    async def add_event(self, payload: EventCreateInput) -> Event:
        return await self.writer.add_event(payload)

    async def update_event(self, event_id: str, patch: EventUpdatePatch) -> Event:
        return await self.writer.update_event(event_id, patch)

    async def delete_event(
        self,
        event_id: str,
        scope: RecurrenceScope | str | None = None,
    ) -> None:
        await self.writer.delete_event(event_id, scope)

    async def get_reminder_offset(self, event_id: str) -> timedelta | None:
        return await self.writer.get_reminder_offset(event_id)

    async def set_reminder_offset(self, event_id: str, offset: timedelta | None) -> None:
        await self.writer.set_reminder_offset(event_id, offset)

    async def close(self) -> None:
        await self._automation.close()


def create_apple_backend(config: DeskcalConfig) -> AppleCalendarBackend:
    return AppleCalendarBackend(config)
