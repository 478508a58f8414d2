"""Tests for the structured-store query synthesis and engine cache."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from deskcal.backend.store import (
    build_list_events_query,
    find_store,
    open_store,
    probe_store,
    query_events,
)
from deskcal.contract import EventFilter
from deskcal.errors import StoreUnavailableError
from deskcal.testing import FakeCalendarApp

pytestmark = pytest.mark.unit

START = datetime(2026, 3, 2, 0, 0, tzinfo=UTC)
END = START + timedelta(days=7)


def _filter(**kwargs) -> EventFilter:
    return EventFilter(start=START, end=END, **kwargs)


# ---------------------------------------------------------------------------
# Query synthesis
# ---------------------------------------------------------------------------


class TestBuildQuery:
    def test_range_only(self):
        sql, params = build_list_events_query(10, 20, _filter())
        assert params == {"from_epoch": 10, "to_epoch": 20}
        assert "oc.occurrence_start_date >= :from_epoch" in sql
        assert sql.rstrip().endswith("ORDER BY start_epoch ASC, id ASC")

    def test_calendars_pushed_down_case_insensitively(self):
        sql, params = build_list_events_query(0, 1, _filter(calendars=("Work", "CAL-HOME")))
        assert params["cal_0"] == "work"
        assert params["cal_1"] == "cal-home"
        assert "IN (:cal_0, :cal_1)" in sql

    def test_query_all_fields(self):
        sql, params = build_list_events_query(0, 1, _filter(query="Standup"))
        assert params["q"] == "standup"
        assert sql.count("instr(lower(") == 3
        assert " OR " in sql

    def test_query_single_field(self):
        sql, _ = build_list_events_query(0, 1, _filter(query="room", field="location"))
        assert sql.count("instr(lower(") == 1
        assert "COALESCE(l.title, '')" in sql

    def test_unknown_field_is_always_false(self):
        sql, _ = build_list_events_query(0, 1, _filter(query="x", field="attendees"))
        assert "0 = 1" in sql

    def test_limit(self):
        sql, params = build_list_events_query(0, 1, _filter(limit=5))
        assert params["limit"] == 5
        assert "LIMIT :limit" in sql

    def test_calendar_string_is_split(self):
        assert _filter(calendars="Work, Home,").calendars == ("Work", "Home")


# ---------------------------------------------------------------------------
# Running queries
# ---------------------------------------------------------------------------


class TestQueryEvents:
    def test_rows_map_to_events(self, store_path):
        fake = FakeCalendarApp(store_path)
        uid = fake.seed(
            "Work",
            "Standup",
            START + timedelta(hours=9),
            START + timedelta(hours=9, minutes=15),
            location="Room 1",
            notes="daily sync",
        )
        (event,) = query_events(store_path, _filter())
        assert event.id.startswith(f"{uid}@")
        assert event.calendar_id == "CAL-WORK"
        assert event.calendar_name == "Work"
        assert event.location == "Room 1"
        assert event.notes == "daily sync"
        assert event.start == START + timedelta(hours=9)
        assert event.sequence == 0
        assert event.updated_at is not None

    def test_ordering_and_limit(self, store_path):
        fake = FakeCalendarApp(store_path)
        later = fake.seed("Work", "B", START + timedelta(hours=10), START + timedelta(hours=11))
        fake.seed("Home", "A", START + timedelta(hours=8), START + timedelta(hours=9))
        fake.seed("Home", "C", START + timedelta(hours=12), START + timedelta(hours=13))
        events = query_events(store_path, _filter(limit=2))
        assert [e.title for e in events] == ["A", "B"]
        assert events[1].id.startswith(later)

    def test_text_search_by_field(self, store_path):
        fake = FakeCalendarApp(store_path)
        fake.seed("Work", "Lunch", START + timedelta(hours=12), START + timedelta(hours=13))
        fake.seed(
            "Work",
            "Review",
            START + timedelta(hours=14),
            START + timedelta(hours=15),
            location="Lunchroom",
        )
        assert [e.title for e in query_events(store_path, _filter(query="LUNCH"))] == [
            "Lunch",
            "Review",
        ]
        assert [
            e.title for e in query_events(store_path, _filter(query="lunch", field="location"))
        ] == ["Review"]
        assert query_events(store_path, _filter(query="lunch", field="bogus")) == []

    def test_range_bounds_inclusive(self, store_path):
        fake = FakeCalendarApp(store_path)
        fake.seed("Work", "Edge", END, END + timedelta(hours=1))
        assert [e.title for e in query_events(store_path, _filter())] == ["Edge"]

    def test_corrupt_store(self, store_path):
        store_path.write_bytes(b"not a database" * 100)
        with pytest.raises(StoreUnavailableError, match="query failed"):
            query_events(store_path, _filter())


class TestOpenStore:
    def test_engine_cached_per_path(self, store_path):
        FakeCalendarApp(store_path)
        assert open_store(store_path) is open_store(store_path.parent / "." / store_path.name)

    def test_find_store_first_existing(self, tmp_path, store_path):
        FakeCalendarApp(store_path)
        assert find_store([tmp_path / "missing.sqlitedb", store_path]) == store_path

    def test_find_store_missing(self, tmp_path):
        with pytest.raises(StoreUnavailableError, match="calendar database not found"):
            find_store([tmp_path / "missing.sqlitedb"])

    def test_probe(self, store_path):
        FakeCalendarApp(store_path)
        probe_store(store_path)

    def test_probe_unreadable(self, store_path):
        store_path.write_bytes(b"garbage" * 200)
        with pytest.raises(StoreUnavailableError, match="not readable"):
            probe_store(store_path)
