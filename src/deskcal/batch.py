"""Batch execution of add/update/delete rows under one transaction id.

Input is JSON Lines, one operation per line. Each row gets an operation id
built from its 1-based line number and its kind (``0003-update``) and every
applied row is journaled under the batch transaction id, so one operation
inside a historical batch stays independently undoable.

With ``strict=False`` (the default) a failing row, including malformed JSON,
is recorded and processing continues. With ``strict=True`` the batch stops
at the first failing row.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError

from deskcal.contract import EventCreateInput, EventUpdatePatch
from deskcal.errors import DeskcalError, ValidationError
from deskcal.recurrence import parse_repeat_rule
from deskcal.service import CalendarService, MutationResult
from deskcal.timeutil import parse_duration, parse_instant

logger = logging.getLogger(__name__)


class BatchOp(StrEnum):
    add = "add"
    update = "update"
    delete = "delete"


class BatchRow(BaseModel):
    """One JSONL operation row. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    op: BatchOp
    id: str = ""
    calendar: str = ""
    title: str | None = None
    start: str | None = None
    end: str | None = None
    duration: str | None = None
    location: str | None = None
    notes: str | None = None
    url: str | None = None
    all_day: bool | None = None
    scope: str = ""
    repeat: str | None = None
    expected_sequence: int | None = None

    @field_validator("op", mode="before")
    @classmethod
    def _normalize_op(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


@dataclass
class RowResult:
    line: int
    op_id: str
    ok: bool
    op: str = ""
    event_id: str = ""
    error: str = ""
    code: str = ""
    preview: bool = False


@dataclass
class BatchReport:
    tx_id: str
    rows: list[RowResult] = field(default_factory=list)
    preview: bool = False

    @property
    def errors(self) -> int:
        return sum(1 for row in self.rows if not row.ok)

    @property
    def applied(self) -> int:
        return sum(1 for row in self.rows if row.ok)


def new_tx_id() -> str:
    return f"tx-{uuid.uuid4().hex[:12]}"


def op_id_for(line: int, op: str) -> str:
    return f"{line:04d}-{op}"


def _parse_row(text: str) -> BatchRow:
    try:
        return BatchRow.model_validate_json(text)
    except PydanticValidationError as exc:
        if any(err["type"] == "json_invalid" for err in exc.errors()):
            raise ValidationError("invalid json") from exc
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first["loc"]) or "row"
        raise ValidationError(f"invalid row: {where}: {first['msg']}") from exc


def _resolve_end(row: BatchRow, start: datetime, tz: tzinfo) -> datetime:
    if row.end is not None:
        end = parse_instant(row.end, tz)
        if end <= start:
            raise ValidationError("end must be after start")
        return end
    if row.duration is not None:
        length = parse_duration(row.duration)
        if length.total_seconds() <= 0:
            raise ValidationError("invalid duration")
        return start + length
    raise ValidationError("missing end or duration")


def _create_input(row: BatchRow, tz: tzinfo) -> EventCreateInput:
    if not row.calendar.strip() or row.title is None or row.start is None:
        raise ValidationError("add requires calendar, title, start")
    start = parse_instant(row.start, tz)
    return EventCreateInput(
        calendar=row.calendar,
        title=row.title,
        start=start,
        end=_resolve_end(row, start, tz),
        location=row.location or "",
        notes=row.notes or "",
        url=row.url or "",
        all_day=bool(row.all_day),
        repeat=parse_repeat_rule(row.repeat),
    )


def _update_patch(row: BatchRow, tz: tzinfo) -> EventUpdatePatch:
    provided = row.model_fields_set
    values: dict[str, Any] = {}
    for name in ("title", "location", "notes", "url", "all_day"):
        if name in provided:
            values[name] = getattr(row, name)
    if row.start is not None:
        values["start"] = parse_instant(row.start, tz)
    if row.end is not None and "start" not in values:
        values["end"] = parse_instant(row.end, tz)
    elif row.end is not None or row.duration is not None:
        if "start" not in values:
            raise ValidationError("update.duration requires start")
        values["end"] = _resolve_end(row, values["start"], tz)
    if row.scope:
        values["scope"] = row.scope.strip().lower()
    if row.expected_sequence is not None:
        values["expected_sequence"] = row.expected_sequence
    try:
        return EventUpdatePatch(**values)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first["loc"]) or "row"
        raise ValidationError(f"invalid update row: {where}: {first['msg']}") from exc


async def execute_row(
    service: CalendarService,
    row: BatchRow,
    *,
    tz: tzinfo,
    preview: bool,
    tx_id: str,
    op_id: str,
) -> MutationResult:
    if row.op == BatchOp.add:
        return await service.add_event(
            _create_input(row, tz), preview=preview, tx_id=tx_id, op_id=op_id
        )
    if not row.id.strip():
        raise ValidationError(f"{row.op} requires id")
    if row.op == BatchOp.update:
        return await service.update_event(
            row.id, _update_patch(row, tz), preview=preview, tx_id=tx_id, op_id=op_id
        )
    return await service.delete_event(
        row.id, row.scope or None, preview=preview, tx_id=tx_id, op_id=op_id
    )


async def run_batch(
    service: CalendarService,
    lines: Iterable[str] | str,
    *,
    strict: bool = False,
    preview: bool = False,
    tx_id: str | None = None,
    tz: tzinfo = UTC,
) -> BatchReport:
    """Apply every row of *lines* and report per-row outcomes."""
    if isinstance(lines, str):
        lines = lines.replace("\r\n", "\n").split("\n")
    report = BatchReport(tx_id=tx_id or new_tx_id(), preview=preview)

    for number, raw in enumerate(lines, start=1):
        text = raw.strip()
        if not text:
            continue

        op = "invalid"
        try:
            row = _parse_row(text)
            op = str(row.op)
            op_id = op_id_for(number, op)
            result = await execute_row(
                service, row, tz=tz, preview=preview, tx_id=report.tx_id, op_id=op_id
            )
        except DeskcalError as exc:
            op_id = op_id_for(number, op)
            logger.warning("Batch row %d (%s) failed: %s", number, op_id, exc.message)
            report.rows.append(
                RowResult(
                    line=number,
                    op_id=op_id,
                    ok=False,
                    op="" if op == "invalid" else op,
                    error=exc.message,
                    code=str(exc.code),
                    preview=preview,
                )
            )
            if strict:
                break
            continue

        report.rows.append(
            RowResult(
                line=number,
                op_id=op_id,
                ok=True,
                op=op,
                event_id=result.event_id,
                preview=preview,
            )
        )

    logger.info(
        "Batch %s finished: %d applied, %d failed%s",
        report.tx_id,
        report.applied,
        report.errors,
        " (preview)" if preview else "",
    )
    return report
