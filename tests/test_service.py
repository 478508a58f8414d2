"""Tests for the calendar service, readiness, registry and command context."""

from __future__ import annotations

from datetime import timedelta

import pytest

from deskcal.backend.apple import AppleCalendarBackend
from deskcal.backend.automation import OsaScriptAutomation
from deskcal.backend.base import BackendRegistry, assess_readiness, default_registry
from deskcal.context import build_context
from deskcal.contract import (
    CheckStatus,
    DoctorCheck,
    EventCreateInput,
    EventFilter,
    EventUpdatePatch,
)
from deskcal.errors import NotFoundError, ValidationError
from tests.conftest import NOW

pytestmark = pytest.mark.unit


def _check(name: str, ok: bool) -> DoctorCheck:
    return DoctorCheck(name=name, status=CheckStatus.ok if ok else CheckStatus.fail, message="m")


def _payload(**overrides) -> EventCreateInput:
    values = dict(
        calendar="Work",
        title="Sync",
        start=NOW + timedelta(hours=1),
        end=NOW + timedelta(hours=2),
    )
    values.update(overrides)
    return EventCreateInput(**values)


# ---------------------------------------------------------------------------
# Doctor and readiness
# ---------------------------------------------------------------------------


class TestDoctor:
    async def test_all_checks_pass(self, service):
        checks = await service.doctor()
        assert [c.name for c in checks] == [
            "osascript",
            "calendar_access",
            "calendar_db",
            "calendar_db_read",
        ]
        assert all(c.ok for c in checks)
        readiness = await service.readiness()
        assert readiness.ready is True
        assert readiness.degraded is False

    async def test_stops_at_access_failure(self, service, fake):
        fake.fail_next("ping", "Not authorized to send Apple events to Calendar. (-1743)")
        checks = await service.doctor()
        assert [c.name for c in checks] == ["osascript", "calendar_access"]
        assert checks[-1].status == CheckStatus.fail

    async def test_missing_store_is_degraded(self, config, fake, tmp_path):
        cfg = config.with_overrides(store_paths=(tmp_path / "absent.sqlitedb",))
        backend = AppleCalendarBackend(cfg, fake)
        readiness = assess_readiness(await backend.doctor())
        assert readiness.ready is True
        assert readiness.degraded is True
        assert "Calendar database path was not detected." in readiness.notes

    async def test_missing_osascript(self, config):
        backend = AppleCalendarBackend(config, OsaScriptAutomation("deskcal-no-such-binary"))
        checks = await backend.doctor()
        assert [(c.name, c.ok) for c in checks] == [("osascript", False)]


class TestReadiness:
    def test_missing_checks_are_not_ready(self):
        readiness = assess_readiness([])
        assert readiness.ready is False
        assert len(readiness.next_steps) == 2

    def test_unreadable_store_degrades(self):
        readiness = assess_readiness(
            [
                _check("osascript", True),
                _check("calendar_access", True),
                _check("calendar_db", True),
                _check("calendar_db_read", False),
            ]
        )
        assert readiness.ready is True
        assert readiness.degraded is True
        assert any("Full Disk Access" in step for step in readiness.next_steps)

    def test_access_denied_not_ready(self):
        readiness = assess_readiness([_check("osascript", True), _check("calendar_access", False)])
        assert readiness.ready is False
        assert "calendar_access: m" in readiness.notes


# ---------------------------------------------------------------------------
# Registry and context
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_default_has_apple(self):
        assert default_registry().names() == ["apple"]

    def test_unknown_backend(self):
        with pytest.raises(ValidationError, match="unsupported backend"):
            BackendRegistry().resolve("outlook")

    def test_register_and_create(self, config, fake):
        registry = BackendRegistry()
        registry.register("Fake", lambda cfg: AppleCalendarBackend(cfg, fake))
        backend = registry.create(config.with_overrides(backend="FAKE"))
        assert backend.automation is fake

    def test_empty_name(self):
        with pytest.raises(ValueError):
            BackendRegistry().register(" ", lambda cfg: None)


class TestBuildContext:
    async def test_wires_supervisor(self, config, backend, fake):
        ctx = build_context(config, lambda cfg: backend, command="list")
        assert ctx.supervisor.timeout_seconds == config.timeout_seconds
        assert ctx.supervisor.backend_name == "apple"
        assert ctx.backend.inner is backend
        assert ctx.journal.directory == config.journal_dir
        async with ctx:
            await ctx.backend.list_calendars()
        assert fake.closed is True

    def test_default_factory_from_config(self, config):
        ctx = build_context(config)
        assert isinstance(ctx.backend.inner, AppleCalendarBackend)

    def test_unknown_backend_in_config(self, config):
        with pytest.raises(ValidationError):
            build_context(config.with_overrides(backend="nope"))


# ---------------------------------------------------------------------------
# Service mutations
# ---------------------------------------------------------------------------


class TestServiceMutations:
    async def test_add_is_journaled(self, service):
        result = await service.add_event(_payload(), tx_id="tx-1", op_id="0001-add")
        (entry,) = service.journal.read_history()
        assert entry.type == "add"
        assert entry.event_id == result.event_id
        assert entry.created.title == "Sync"
        assert (entry.tx_id, entry.op_id) == ("tx-1", "0001-add")

    async def test_preview_add(self, service, fake):
        result = await service.add_event(_payload(), preview=True)
        assert result.preview is True
        assert fake.calls == []
        assert service.journal.read_history() == []

    async def test_preview_update_shows_patched(self, service, fake):
        created = (await service.add_event(_payload())).event
        result = await service.update_event(
            created.id, EventUpdatePatch(title="Later"), preview=True
        )
        assert result.event.title == "Later"
        assert fake.call_count("update_events") == 0
        assert len(service.journal.read_history()) == 1

    async def test_preview_start_only_keeps_length(self, service):
        created = (await service.add_event(_payload())).event
        later = created.start + timedelta(hours=3)
        result = await service.update_event(created.id, EventUpdatePatch(start=later), preview=True)
        assert result.event.end == later + (created.end - created.start)

    async def test_preview_update_validates(self, service):
        created = (await service.add_event(_payload())).event
        with pytest.raises(ValidationError, match="no fields to update"):
            await service.update_event(created.id, EventUpdatePatch(), preview=True)

    async def test_delete_journals_snapshot(self, service):
        created = (await service.add_event(_payload(url="https://example.com"))).event
        await service.delete_event(created.id)
        entry = service.journal.read_history()[-1]
        assert entry.type == "delete"
        assert entry.scope == "this"
        assert entry.deleted.url == "https://example.com"

    async def test_delete_missing(self, service):
        with pytest.raises(NotFoundError):
            await service.delete_event("NOPE@1")
        assert service.journal.read_history() == []

    async def test_reminder_journaled(self, service):
        created = (await service.add_event(_payload())).event
        result = await service.set_reminder(created.id, timedelta(minutes=10))
        assert result.action == "reminder_set"
        entry = service.journal.read_history()[-1]
        assert entry.reminder_changed is True
        assert entry.reminder_after == timedelta(minutes=-10)
        cleared = await service.clear_reminder(created.id)
        assert cleared.action == "reminder_clear"
        assert service.journal.read_history()[-1].reminder_before == timedelta(minutes=-10)

    async def test_history_page(self, service):
        for hour in range(3):
            start = NOW + timedelta(hours=hour)
            await service.add_event(
                _payload(title=f"E{hour}", start=start, end=start + timedelta(minutes=30))
            )
        page = service.history(limit=2)
        assert [e.created.title for e in page.entries] == ["E2", "E1"]
        assert page.has_more is True


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


@pytest.mark.integration
class TestWorkCalendarScenario:
    async def test_week_of_work(self, service, fake):
        standup = await service.add_event(
            _payload(title="Standup", start=NOW, end=NOW + timedelta(minutes=15), location="Zoom")
        )
        await service.add_event(
            _payload(
                title="Lunch",
                calendar="Home",
                start=NOW + timedelta(hours=3),
                end=NOW + timedelta(hours=4),
            )
        )

        week = EventFilter(
            start=NOW - timedelta(hours=1), end=NOW + timedelta(days=7), calendars=("work",)
        )
        listed = await service.list_events(week)
        assert [e.title for e in listed] == ["Standup"]
        assert listed[0].id == standup.event_id

        renamed = await service.update_event(standup.event_id, EventUpdatePatch(title="Daily"))
        assert renamed.event.location == "Zoom"
        await service.set_reminder(standup.event_id, timedelta(minutes=-5))
        assert await service.get_reminder(standup.event_id) == timedelta(minutes=-5)

        await service.delete_event(standup.event_id)
        assert await service.list_events(week) == []

        await service.undo()
        (restored,) = await service.list_events(week)
        assert restored.title == "Daily"
        assert restored.location == "Zoom"

        diagnostics = service.ctx.supervisor.diagnostics()
        assert diagnostics == {}
        assert len(service.journal.read_history()) == 4
