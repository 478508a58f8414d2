"""Automation layer: drives the live calendar application.

:class:`AutomationClient` is the seam between the read/write paths and the
application. :class:`OsaScriptAutomation` talks to Calendar.app through
``osascript``; tests use :class:`deskcal.testing.FakeCalendarApp`.

Calls are issued one at a time. The application serializes scripted commands
itself and no parallel dispatch is attempted.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from deskcal.backend import scripts
from deskcal.config import RetryPolicy
from deskcal.contract import Calendar, Event, EventCreateInput, RecurrenceScope
from deskcal.errors import (
    BackendUnavailableError,
    GenericFailure,
    TransientAutomationError,
    classify_automation_error,
)
from deskcal.identity import occurrence_id
from deskcal.recurrence import to_rrule

logger = logging.getLogger(__name__)

T = TypeVar("T")

OSASCRIPT = "osascript"


@dataclass(frozen=True)
class AutomationEventRow:
    """One event instance as enumerated by the automation layer."""

    uid: str
    calendar_id: str
    calendar_name: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    location: str = ""
    notes: str = ""
    url: str = ""

    def to_event(self) -> Event:
        # The automation layer exposes no edit sequence or modification time.
        return Event(
            id=occurrence_id(self.uid, self.start),
            calendar_id=self.calendar_id,
            calendar_name=self.calendar_name,
            title=self.title,
            start=self.start,
            end=self.end,
            all_day=self.all_day,
            location=self.location,
            notes=self.notes,
            url=self.url,
        )


class AutomationClient(abc.ABC):
    """Scripted interface of the live calendar application.

    ``occurrence_start`` names the anchor instance of a series; ``None``
    anchors on the earliest instance. Mutations return how many instances
    they touched so callers can report "not found".
    """

    @abc.abstractmethod
    async def ping(self) -> None:
        """Raise unless the application answers a trivial script."""
        ...

    @abc.abstractmethod
    async def list_calendars(self) -> list[Calendar]: ...

    @abc.abstractmethod
    async def enumerate_events(self, start: datetime, end: datetime) -> list[AutomationEventRow]:
        """Every instance, across all calendars, starting within ``[start, end]``."""
        ...

    @abc.abstractmethod
    async def create_event(self, payload: EventCreateInput) -> str:
        """Create the event (and its repeat rule) and return the new uid."""
        ...

    @abc.abstractmethod
    async def update_events(
        self,
        uid: str,
        scope: RecurrenceScope,
        occurrence_start: datetime | None,
        changes: dict[str, Any],
    ) -> int:
        """Apply *changes* to the instances selected by *scope*.

        Time changes are absolute for the anchor instance; other selected
        instances shift by the anchor's delta.
        """
        ...

    @abc.abstractmethod
    async def delete_events(
        self,
        uid: str,
        scope: RecurrenceScope,
        occurrence_start: datetime | None,
    ) -> int: ...

    @abc.abstractmethod
    async def get_alarm(self, uid: str, occurrence_start: datetime | None) -> int | None:
        """Minutes relative to start of the first display alarm, or ``None``."""
        ...

    @abc.abstractmethod
    async def set_alarm(
        self,
        uid: str,
        occurrence_start: datetime | None,
        minutes: int | None,
    ) -> None:
        """Remove every alarm, then add one at *minutes* unless it is ``None``."""
        ...

    async def close(self) -> None:  # noqa: B027
        """Release resources."""


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


async def with_retry(
    phase: str,
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
) -> T:
    """Run *call*, retrying only :class:`TransientAutomationError`.

    Up to ``policy.retries`` extra attempts are made with a fixed
    ``policy.backoff_seconds`` wait between them.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except TransientAutomationError as exc:
            if attempt >= policy.retries:
                raise
            attempt += 1
            logger.warning(
                "Transient automation failure in %s, retrying in %.1fs (attempt %d/%d): %s",
                phase,
                policy.backoff_seconds,
                attempt,
                policy.retries,
                exc.message,
            )
            await asyncio.sleep(policy.backoff_seconds)


# ---------------------------------------------------------------------------
# Row parsing
# ---------------------------------------------------------------------------


def _unix_text(value: datetime | None) -> str:
    return "0" if value is None else str(int(value.timestamp()))


def _bool_text(value: Any) -> str:
    return "true" if value else "false"


def _lines(output: str) -> list[str]:
    return [line for line in output.strip("\r\n").split("\n") if line.strip()]


def parse_calendar_rows(output: str) -> list[Calendar]:
    calendars: list[Calendar] = []
    for line in _lines(output):
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        calendars.append(
            Calendar(
                id=parts[0].strip(),
                name=parts[1].strip(),
                writable=parts[2].strip().lower() == "true",
            )
        )
    return calendars


def parse_event_rows(output: str) -> list[AutomationEventRow]:
    """Parse tab-separated enumeration rows, skipping malformed ones."""
    rows: list[AutomationEventRow] = []
    for line in _lines(output):
        parts = line.split("\t")
        if len(parts) < 10:
            logger.debug("Skipping short automation row: %r", line)
            continue
        try:
            start = datetime.fromtimestamp(int(parts[4].strip()), UTC)
            end = datetime.fromtimestamp(int(parts[5].strip()), UTC)
        except ValueError:
            logger.debug("Skipping automation row with bad instants: %r", line)
            continue
        rows.append(
            AutomationEventRow(
                uid=parts[0].strip(),
                calendar_id=parts[1].strip(),
                calendar_name=parts[2].strip(),
                title=parts[3].strip(),
                start=start,
                end=end,
                all_day=parts[6].strip().lower() == "true",
                location=parts[7].strip(),
                notes=parts[8].strip(),
                url=parts[9].strip(),
            )
        )
    return rows


def _parse_count(output: str) -> int:
    text = output.strip()
    try:
        return int(text)
    except ValueError:
        raise GenericFailure(f"unexpected automation result: {text!r}") from None


# ---------------------------------------------------------------------------
# osascript client
# ---------------------------------------------------------------------------


class OsaScriptAutomation(AutomationClient):
    """Automation client running AppleScript through ``osascript``."""

    def __init__(self, executable: str = OSASCRIPT) -> None:
        self._executable = executable

    def available(self) -> bool:
        return shutil.which(self._executable) is not None

    async def run(self, source: str, *args: str) -> str:
        """Run *source* with *args* as ``argv`` and return stdout."""
        cmd: list[str] = [self._executable]
        for line in source.strip().splitlines():
            if line.strip():
                cmd.extend(["-e", line])
        cmd.extend(args)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendUnavailableError(
                f"{self._executable} not found",
                hint="Install or expose `osascript` in PATH (default on macOS)",
            ) from exc

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise classify_automation_error(message or f"exit status {proc.returncode}")
        return stdout.decode("utf-8", errors="replace")

    async def ping(self) -> None:
        await self.run(scripts.PING)

    async def list_calendars(self) -> list[Calendar]:
        return parse_calendar_rows(await self.run(scripts.LIST_CALENDARS))

    async def enumerate_events(self, start: datetime, end: datetime) -> list[AutomationEventRow]:
        output = await self.run(scripts.ENUMERATE_EVENTS, _unix_text(start), _unix_text(end))
        return parse_event_rows(output)

    async def create_event(self, payload: EventCreateInput) -> str:
        rule = to_rrule(payload.repeat, payload.start) if payload.repeat else ""
        output = await self.run(
            scripts.CREATE_EVENT,
            payload.calendar,
            payload.title,
            _unix_text(payload.start),
            _unix_text(payload.end),
            payload.location,
            payload.notes,
            payload.url,
            _bool_text(payload.all_day),
            rule,
        )
        uid = output.strip()
        if not uid:
            raise GenericFailure("failed to create event: no uid returned")
        return uid

    async def update_events(
        self,
        uid: str,
        scope: RecurrenceScope,
        occurrence_start: datetime | None,
        changes: dict[str, Any],
    ) -> int:
        field_list = "," + ",".join(changes) + ","
        output = await self.run(
            scripts.UPDATE_EVENTS,
            uid,
            str(scope),
            _unix_text(occurrence_start),
            field_list,
            str(changes.get("title") or ""),
            _unix_text(changes.get("start")),
            _unix_text(changes.get("end")),
            str(changes.get("location") or ""),
            str(changes.get("notes") or ""),
            str(changes.get("url") or ""),
            _bool_text(changes.get("all_day")),
        )
        return _parse_count(output)

    async def delete_events(
        self,
        uid: str,
        scope: RecurrenceScope,
        occurrence_start: datetime | None,
    ) -> int:
        output = await self.run(
            scripts.DELETE_EVENTS, uid, str(scope), _unix_text(occurrence_start)
        )
        return _parse_count(output)

    async def get_alarm(self, uid: str, occurrence_start: datetime | None) -> int | None:
        output = (await self.run(scripts.GET_ALARM, uid, _unix_text(occurrence_start))).strip()
        if not output or output.upper() == "NONE":
            return None
        try:
            return int(float(output))
        except ValueError:
            raise GenericFailure(f"invalid reminder trigger interval: {output!r}") from None

    async def set_alarm(
        self,
        uid: str,
        occurrence_start: datetime | None,
        minutes: int | None,
    ) -> None:
        await self.run(
            scripts.SET_ALARM,
            uid,
            _unix_text(occurrence_start),
            "" if minutes is None else str(minutes),
        )
