"""Read-only access to the calendar application's structured store.

The store is the application's private SQLite database. Queries join the
occurrence cache (one row per expanded instance) with items, calendars and
locations, and push calendar and free-text predicates into SQL so only
matching rows cross into Python.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

from deskcal.contract import Event, EventFilter
from deskcal.errors import StoreUnavailableError, is_access_denied
from deskcal.identity import STORE_EPOCH_OFFSET, to_store_epoch

logger = logging.getLogger(__name__)

# Free-text targets; "" and "all" search every column with OR semantics.
SEARCH_COLUMNS: dict[str, str] = {
    "title": "COALESCE(ci.summary, '')",
    "location": "COALESCE(l.title, '')",
    "notes": "COALESCE(ci.description, '')",
}

_UID_EXPR = "COALESCE(ci.unique_identifier, ci.UUID, CAST(ci.ROWID AS TEXT))"
_OCC_EXPR = "CAST(oc.occurrence_start_date AS INTEGER)"

_SELECT = f"""
SELECT
  CASE WHEN {_OCC_EXPR} > 0
       THEN {_UID_EXPR} || '@' || {_OCC_EXPR}
       ELSE {_UID_EXPR} END AS id,
  COALESCE(c.UUID, CAST(c.ROWID AS TEXT)) AS cal_id,
  COALESCE(c.title, '') AS cal_name,
  COALESCE(ci.summary, '') AS title,
  {_OCC_EXPR} AS start_epoch,
  CAST(oc.occurrence_end_date AS INTEGER) AS end_epoch,
  COALESCE(ci.all_day, 0) AS all_day,
  COALESCE(l.title, '') AS location,
  COALESCE(ci.description, '') AS notes,
  COALESCE(ci.url, '') AS url,
  COALESCE(ci.sequence_num, 0) AS seq,
  CAST(COALESCE(ci.last_modified, 0) AS INTEGER) AS updated_epoch
FROM OccurrenceCache oc
JOIN CalendarItem ci ON ci.ROWID = oc.event_id
JOIN Calendar c ON c.ROWID = oc.calendar_id
LEFT JOIN Location l ON l.item_owner_id = ci.ROWID
"""

# ---------------------------------------------------------------------------
# Locating and opening the store
# ---------------------------------------------------------------------------

_engines: dict[Path, Engine] = {}
_engines_lock = threading.Lock()


def find_store(candidates: Iterable[Path]) -> Path:
    """Return the first candidate database file that exists."""
    tried: list[str] = []
    for candidate in candidates:
        path = Path(candidate).expanduser()
        if path.is_file():
            return path
        tried.append(str(path))
    raise StoreUnavailableError(f"calendar database not found (looked in: {', '.join(tried)})")


def open_store(path: Path) -> Engine:
    """Return the process-wide read-only engine for *path*.

    One engine is cached per distinct resolved path; the first open wins and
    later callers reuse it.
    """
    key = Path(path).expanduser().resolve()
    with _engines_lock:
        engine = _engines.get(key)
        if engine is None:
            uri = f"{key.as_uri()}?mode=ro"
            engine = create_engine(
                "sqlite://",
                creator=lambda: sqlite3.connect(uri, uri=True, check_same_thread=False),
            )
            _engines[key] = engine
            logger.debug("Opened calendar store read-only: %s", key)
        return engine


def reset_store_cache() -> None:
    """Dispose every cached engine."""
    with _engines_lock:
        for engine in _engines.values():
            engine.dispose()
        _engines.clear()


# ---------------------------------------------------------------------------
# Query synthesis
# ---------------------------------------------------------------------------


def build_list_events_query(
    from_epoch: int,
    to_epoch: int,
    filter: EventFilter,
) -> tuple[str, dict[str, Any]]:
    """Build the SQL and bind parameters for one listing.

    The range bounds are inclusive store-epoch seconds. Calendar names and
    ids are compared case-insensitively. An unknown search field yields an
    always-false predicate so the result is empty rather than an error.
    """
    clauses = [
        "oc.occurrence_start_date >= :from_epoch",
        "oc.occurrence_start_date <= :to_epoch",
    ]
    params: dict[str, Any] = {"from_epoch": from_epoch, "to_epoch": to_epoch}

    if filter.calendars:
        names = []
        for index, calendar in enumerate(filter.calendars):
            key = f"cal_{index}"
            params[key] = calendar.strip().lower()
            names.append(f":{key}")
        allow = ", ".join(names)
        clauses.append(
            f"(lower(COALESCE(c.UUID, CAST(c.ROWID AS TEXT))) IN ({allow})"
            f" OR lower(COALESCE(c.title, '')) IN ({allow}))"
        )

    if filter.query:
        params["q"] = filter.query.lower()
        field = filter.field.strip().lower()
        if field in ("", "all"):
            clauses.append(
                "("
                + " OR ".join(f"instr(lower({col}), :q) > 0" for col in SEARCH_COLUMNS.values())
                + ")"
            )
        elif field in SEARCH_COLUMNS:
            clauses.append(f"instr(lower({SEARCH_COLUMNS[field]}), :q) > 0")
        else:
            clauses.append("0 = 1")

    sql = _SELECT + "WHERE " + "\n  AND ".join(clauses) + "\nORDER BY start_epoch ASC, id ASC"
    if filter.limit > 0:
        sql += "\nLIMIT :limit"
        params["limit"] = filter.limit
    return sql, params


def _instant(store_seconds: int) -> datetime:
    return datetime.fromtimestamp(int(store_seconds) + STORE_EPOCH_OFFSET, UTC)


def _row_to_event(row: Any) -> Event:
    updated = int(row.updated_epoch or 0)
    return Event(
        id=row.id,
        calendar_id=row.cal_id,
        calendar_name=row.cal_name,
        title=row.title,
        start=_instant(row.start_epoch),
        end=_instant(row.end_epoch),
        all_day=bool(row.all_day),
        location=row.location,
        notes=row.notes,
        url=row.url,
        sequence=int(row.seq or 0),
        updated_at=_instant(updated) if updated else None,
    )


def query_events(path: Path, filter: EventFilter) -> list[Event]:
    """Run one listing against the store. Blocking; call from a worker thread."""
    sql, params = build_list_events_query(
        to_store_epoch(filter.start), to_store_epoch(filter.end), filter
    )
    try:
        with open_store(path).connect() as conn:
            rows = conn.execute(text(sql), params).fetchall()
    except DBAPIError as exc:
        message = str(exc.orig or exc).strip()
        raise StoreUnavailableError(
            f"calendar database query failed: {message}",
            access_denied=is_access_denied(message),
        ) from exc
    return [_row_to_event(row) for row in rows]


def probe_store(path: Path) -> None:
    """Raise :class:`StoreUnavailableError` unless the store can be read."""
    try:
        with open_store(path).connect() as conn:
            conn.execute(text("SELECT count(*) FROM sqlite_master")).scalar()
    except DBAPIError as exc:
        message = str(exc.orig or exc).strip()
        raise StoreUnavailableError(
            f"calendar database exists but is not readable: {message}",
            access_denied=is_access_denied(message),
        ) from exc
