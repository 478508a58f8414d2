"""Mutation journal: NDJSON history and redo logs with undo/redo.

Two files live in the journal directory, ``history.jsonl`` and
``redo.jsonl``, one JSON record per line. Every write rewrites the whole
file. There is no cross-process locking, so concurrent invocations race and
the last writer wins. Lines that fail to parse are skipped with a warning so
a partially corrupted log stays usable.

Linear undo/redo: appending any new entry clears the redo log.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from deskcal.backend.base import CalendarBackend
from deskcal.contract import (
    PATCHABLE_FIELDS,
    Event,
    EventUpdatePatch,
    RecurrenceScope,
    RepeatRule,
)
from deskcal.errors import GenericFailure, NotFoundError
from deskcal.timeutil import utc_now

logger = logging.getLogger(__name__)

HISTORY_FILE = "history.jsonl"
REDO_FILE = "redo.jsonl"


class EntryType(StrEnum):
    add = "add"
    update = "update"
    delete = "delete"


class HistoryEntry(BaseModel):
    """One journaled mutation with the snapshots needed to invert it."""

    at: datetime = Field(default_factory=utc_now)
    type: EntryType
    tx_id: str = ""
    op_id: str = ""
    event_id: str = ""
    scope: RecurrenceScope | None = None
    prev: Event | None = None
    next: Event | None = None
    created: Event | None = None
    deleted: Event | None = None
    repeat: RepeatRule | None = None
    reminder_changed: bool = False
    reminder_before: timedelta | None = None
    reminder_after: timedelta | None = None


@dataclass
class HistoryPage:
    """A newest-first slice of the history log."""

    entries: list[HistoryEntry]
    limit: int
    offset: int
    has_more: bool


@dataclass
class ReplayResult:
    """Outcome of an undo or redo step."""

    entry: HistoryEntry
    action: str
    preview: bool = False
    event: Event | None = None


class MutationJournal:
    """History and redo logs stored under *directory*."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory).expanduser()

    @property
    def history_path(self) -> Path:
        return self.directory / HISTORY_FILE

    @property
    def redo_path(self) -> Path:
        return self.directory / REDO_FILE

    # -- raw file access ---------------------------------------------------

    def _read(self, path: Path) -> list[HistoryEntry]:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return []
        entries: list[HistoryEntry] = []
        for number, chunk in enumerate(raw.splitlines(), start=1):
            try:
                line = chunk.decode("utf-8").strip()
            except UnicodeDecodeError:
                logger.warning("Skipping undecodable journal line %s:%d", path.name, number)
                continue
            if not line:
                continue
            try:
                entries.append(HistoryEntry.model_validate_json(line))
            except PydanticValidationError as exc:
                logger.warning(
                    "Skipping unparsable journal line %s:%d (%d errors)",
                    path.name,
                    number,
                    exc.error_count(),
                )
        return entries

    def _write(self, path: Path, entries: list[HistoryEntry]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        body = "".join(entry.model_dump_json(exclude_none=True) + "\n" for entry in entries)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(body)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def read_history(self) -> list[HistoryEntry]:
        return self._read(self.history_path)

    def read_redo(self) -> list[HistoryEntry]:
        return self._read(self.redo_path)

    def write_history(self, entries: list[HistoryEntry]) -> None:
        self._write(self.history_path, entries)

    def write_redo(self, entries: list[HistoryEntry]) -> None:
        self._write(self.redo_path, entries)

    # -- operations --------------------------------------------------------

    def append(self, entry: HistoryEntry) -> None:
        """Append *entry* and invalidate the redo log."""
        entries = self.read_history()
        entries.append(entry)
        self.write_history(entries)
        self.write_redo([])
        logger.debug(
            "Journaled %s of %s (tx=%s op=%s)", entry.type, entry.event_id, entry.tx_id, entry.op_id
        )

    def page(self, limit: int = 10, offset: int = 0) -> HistoryPage:
        """Return up to *limit* entries, newest first, skipping *offset*."""
        if limit <= 0:
            limit = 10
        if offset < 0:
            raise ValueError("offset must be >= 0")
        newest_first = list(reversed(self.read_history()))
        window = newest_first[offset : offset + limit]
        return HistoryPage(
            entries=window,
            limit=limit,
            offset=offset,
            has_more=len(newest_first) > offset + limit,
        )

    def clear(self) -> None:
        self.write_history([])
        self.write_redo([])


# ---------------------------------------------------------------------------
# Undo / redo
# ---------------------------------------------------------------------------


def diff_patch(
    source: Event,
    target: Event,
    scope: RecurrenceScope | None,
) -> EventUpdatePatch:
    """Patch turning *source* into *target*, naming only differing fields.

    Start and end are always named together.
    """
    values = {
        name: getattr(target, name)
        for name in PATCHABLE_FIELDS
        if getattr(source, name) != getattr(target, name)
    }
    # Both bounds are sent whenever either one moved.
    if "start" in values or "end" in values:
        values["start"], values["end"] = target.start, target.end
    if scope is not None:
        values["scope"] = scope
    return EventUpdatePatch(**values)


async def _apply_snapshot(
    backend: CalendarBackend,
    event_id: str,
    current: Event | None,
    desired: Event,
    scope: RecurrenceScope | None,
) -> Event | None:
    if current is None:
        patch = EventUpdatePatch.from_event(desired, scope=scope)
    else:
        patch = diff_patch(current, desired, scope)
    if patch.is_empty():
        return None
    return await backend.update_event(event_id, patch)


async def _recreate(backend: CalendarBackend, snapshot: Event, repeat: RepeatRule | None) -> Event:
    payload = snapshot.to_create_input()
    if not payload.calendar:
        raise GenericFailure("journal snapshot is missing its calendar")
    if repeat is not None:
        payload = payload.model_copy(update={"repeat": repeat})
    return await backend.add_event(payload)


def _describe(entry: HistoryEntry, *, undo: bool) -> str:
    if entry.type == EntryType.add:
        return "delete" if undo else "add"
    if entry.type == EntryType.delete:
        return "add" if undo else "delete"
    return "update"


async def undo_last(
    journal: MutationJournal,
    backend: CalendarBackend,
    *,
    preview: bool = False,
) -> ReplayResult:
    """Invert the newest history entry and move it onto the redo log."""
    entries = journal.read_history()
    if not entries:
        raise NotFoundError("history is empty")
    last = entries[-1]
    action = _describe(last, undo=True)
    if preview:
        return ReplayResult(entry=last, action=action, preview=True)

    redo_entry = last.model_copy()
    event: Event | None = None

    if last.type == EntryType.add:
        if not last.event_id:
            raise GenericFailure("invalid add history entry")
        await backend.delete_event(last.event_id, RecurrenceScope.series)
    elif last.type == EntryType.delete:
        if last.deleted is None:
            raise GenericFailure("invalid delete history entry")
        event = await _recreate(backend, last.deleted, last.repeat)
        redo_entry = last.model_copy(update={"event_id": event.id, "deleted": event})
    elif last.reminder_changed:
        await backend.set_reminder_offset(last.event_id, last.reminder_before)
    else:
        if last.prev is None:
            raise GenericFailure("invalid update history entry")
        target_id = last.next.id if last.next is not None else last.event_id
        event = await _apply_snapshot(backend, target_id, last.next, last.prev, last.scope)

    journal.write_history(entries[:-1])
    redo = journal.read_redo()
    redo.append(redo_entry.model_copy(update={"at": utc_now()}))
    journal.write_redo(redo)
    logger.info("Undid %s of %s", last.type, last.event_id)
    return ReplayResult(entry=last, action=action, event=event)


async def redo_last(
    journal: MutationJournal,
    backend: CalendarBackend,
    *,
    preview: bool = False,
) -> ReplayResult:
    """Re-apply the newest redo entry and append it to history.

    The rest of the redo log is kept so several undone steps can be redone
    in order.
    """
    redo = journal.read_redo()
    if not redo:
        raise NotFoundError("redo history is empty")
    last = redo[-1]
    action = _describe(last, undo=False)
    if preview:
        return ReplayResult(entry=last, action=action, preview=True)

    applied = last.model_copy()
    event: Event | None = None

    if last.type == EntryType.add:
        if last.created is None:
            raise GenericFailure("add redo requires created snapshot")
        event = await _recreate(backend, last.created, last.repeat)
        applied = last.model_copy(update={"event_id": event.id, "created": event})
    elif last.type == EntryType.delete:
        if not last.event_id:
            raise GenericFailure("delete redo missing event id")
        await backend.delete_event(last.event_id, RecurrenceScope.auto)
    elif last.reminder_changed:
        await backend.set_reminder_offset(last.event_id, last.reminder_after)
    else:
        if last.next is None:
            raise GenericFailure("update redo requires next snapshot")
        target_id = last.prev.id if last.prev is not None else last.event_id
        event = await _apply_snapshot(backend, target_id, last.prev, last.next, last.scope)

    history = journal.read_history()
    history.append(applied.model_copy(update={"at": utc_now()}))
    journal.write_history(history)
    journal.write_redo(redo[:-1])
    logger.info("Redid %s of %s", last.type, last.event_id)
    return ReplayResult(entry=last, action=action, event=event)
