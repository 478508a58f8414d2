"""Calendar service: journaled mutations over the supervised backend.

Every successful non-preview mutation appends one journal entry carrying the
snapshot needed to invert it. Preview runs validation and the read-only
lookups, but never calls a mutating backend method or touches the journal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from deskcal.backend.base import Readiness, assess_readiness
from deskcal.backend.writer import complete_time_change, validate_create, validate_patch
from deskcal.context import CommandContext
from deskcal.contract import (
    Calendar,
    DoctorCheck,
    Event,
    EventCreateInput,
    EventFilter,
    EventUpdatePatch,
    RecurrenceScope,
)
from deskcal.journal import (
    EntryType,
    HistoryEntry,
    HistoryPage,
    MutationJournal,
    ReplayResult,
    redo_last,
    undo_last,
)
from deskcal.recurrence import resolve_target
from deskcal.supervisor import SupervisedBackend
from deskcal.timeutil import normalize_reminder_offset

logger = logging.getLogger(__name__)


@dataclass
class MutationResult:
    action: str
    event_id: str
    event: Event | None = None
    preview: bool = False
    entry: HistoryEntry | None = None


class CalendarService:
    def __init__(self, ctx: CommandContext) -> None:
        self.ctx = ctx

    @property
    def backend(self) -> SupervisedBackend:
        return self.ctx.backend

    @property
    def journal(self) -> MutationJournal:
        return self.ctx.journal

    # -- reads -------------------------------------------------------------

    async def doctor(self) -> list[DoctorCheck]:
        return await self.backend.doctor()

    async def readiness(self) -> Readiness:
        return assess_readiness(await self.doctor())

    async def list_calendars(self) -> list[Calendar]:
        return await self.backend.list_calendars()

    async def list_events(self, filter: EventFilter) -> list[Event]:
        return await self.backend.list_events(filter)

    async def get_event(self, event_id: str) -> Event:
        return await self.backend.get_event_by_id(event_id)

    async def get_reminder(self, event_id: str) -> timedelta | None:
        return await self.backend.get_reminder_offset(event_id)

    # -- mutations ---------------------------------------------------------

    def _record(self, entry: HistoryEntry) -> HistoryEntry:
        self.journal.append(entry)
        return entry

    async def add_event(
        self,
        payload: EventCreateInput,
        *,
        preview: bool = False,
        tx_id: str = "",
        op_id: str = "",
    ) -> MutationResult:
        validate_create(payload)
        if preview:
            return MutationResult(action="add", event_id="", preview=True)

        created = await self.backend.add_event(payload)
        entry = self._record(
            HistoryEntry(
                type=EntryType.add,
                tx_id=tx_id,
                op_id=op_id,
                event_id=created.id,
                created=created,
                repeat=payload.repeat,
            )
        )
        return MutationResult(action="add", event_id=created.id, event=created, entry=entry)

    async def update_event(
        self,
        event_id: str,
        patch: EventUpdatePatch,
        *,
        preview: bool = False,
        tx_id: str = "",
        op_id: str = "",
    ) -> MutationResult:
        target = resolve_target(event_id, patch.scope)
        changes = validate_patch(patch)
        before = await self.backend.get_event_by_id(event_id)
        if preview:
            patched = before.model_copy(update=complete_time_change(changes, before))
            return MutationResult(action="update", event_id=event_id, event=patched, preview=True)

        after = await self.backend.update_event(event_id, patch)
        entry = self._record(
            HistoryEntry(
                type=EntryType.update,
                tx_id=tx_id,
                op_id=op_id,
                event_id=event_id,
                scope=target.scope,
                prev=before,
                next=after,
            )
        )
        return MutationResult(action="update", event_id=after.id, event=after, entry=entry)

    async def delete_event(
        self,
        event_id: str,
        scope: RecurrenceScope | str | None = None,
        *,
        preview: bool = False,
        tx_id: str = "",
        op_id: str = "",
    ) -> MutationResult:
        target = resolve_target(event_id, scope)
        before = await self.backend.get_event_by_id(event_id)
        if preview:
            return MutationResult(action="delete", event_id=event_id, event=before, preview=True)

        await self.backend.delete_event(event_id, target.scope)
        entry = self._record(
            HistoryEntry(
                type=EntryType.delete,
                tx_id=tx_id,
                op_id=op_id,
                event_id=event_id,
                scope=target.scope,
                deleted=before,
            )
        )
        return MutationResult(action="delete", event_id=event_id, event=before, entry=entry)

    async def set_reminder(
        self,
        event_id: str,
        offset: timedelta | None,
        *,
        preview: bool = False,
        tx_id: str = "",
        op_id: str = "",
    ) -> MutationResult:
        """Replace (or with ``None`` clear) the reminder, journaled as an update."""
        resolve_target(event_id)
        requested = None if offset is None else normalize_reminder_offset(offset)
        action = "reminder_clear" if requested is None else "reminder_set"
        before = await self.backend.get_reminder_offset(event_id)
        if preview:
            return MutationResult(action=action, event_id=event_id, preview=True)

        await self.backend.set_reminder_offset(event_id, requested)
        entry = self._record(
            HistoryEntry(
                type=EntryType.update,
                tx_id=tx_id,
                op_id=op_id,
                event_id=event_id,
                reminder_changed=True,
                reminder_before=before,
                reminder_after=requested,
            )
        )
        return MutationResult(action=action, event_id=event_id, entry=entry)

    async def clear_reminder(
        self,
        event_id: str,
        *,
        preview: bool = False,
        tx_id: str = "",
        op_id: str = "",
    ) -> MutationResult:
        return await self.set_reminder(event_id, None, preview=preview, tx_id=tx_id, op_id=op_id)

    # -- journal -----------------------------------------------------------

    async def undo(self, *, preview: bool = False) -> ReplayResult:
        return await undo_last(self.journal, self.backend, preview=preview)

    async def redo(self, *, preview: bool = False) -> ReplayResult:
        return await redo_last(self.journal, self.backend, preview=preview)

    def history(self, limit: int = 10, offset: int = 0) -> HistoryPage:
        return self.journal.page(limit=limit, offset=offset)
