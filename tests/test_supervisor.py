"""Tests for the call supervisor: deadline, cancel, phases and timings."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from deskcal.contract import EventCreateInput
from deskcal.errors import BackendCanceledError, BackendTimeoutError, GenericFailure
from deskcal.supervisor import CallSupervisor, PhaseTimings, SupervisedBackend
from tests.conftest import NOW

pytestmark = pytest.mark.unit


class TestCallSupervisor:
    async def test_returns_result(self):
        supervisor = CallSupervisor(1.0)

        async def work():
            return 42

        assert await supervisor.call("backend.work", work) == 42
        assert supervisor.deadline is not None

    async def test_timeout_abandons_without_cancelling(self):
        supervisor = CallSupervisor(0.05)
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.2)
            finished.set()
            return "late"

        with pytest.raises(BackendTimeoutError) as info:
            await supervisor.call("backend.add_event", slow)
        assert info.value.phase == "backend.add_event"
        assert info.value.deadline == supervisor.deadline
        assert supervisor.abandoned == 1

        await asyncio.wait_for(finished.wait(), timeout=1.0)
        await asyncio.sleep(0.01)
        assert supervisor.abandoned == 0

    async def test_deadline_is_shared_across_calls(self):
        supervisor = CallSupervisor(0.05)
        ran = []

        async def quick():
            ran.append(True)

        await supervisor.call("backend.first", quick)
        await asyncio.sleep(0.08)
        with pytest.raises(BackendTimeoutError):
            await supervisor.call("backend.second", quick)
        assert ran == [True]

    async def test_zero_timeout_disables_deadline(self):
        supervisor = CallSupervisor(0)

        async def work():
            await asyncio.sleep(0.01)
            return "ok"

        assert await supervisor.call("backend.work", work) == "ok"
        assert supervisor.deadline is None

    async def test_cancel_interrupts_wait(self):
        supervisor = CallSupervisor(5.0)

        async def slow():
            await asyncio.sleep(0.5)

        asyncio.get_running_loop().call_later(0.02, supervisor.cancel)
        with pytest.raises(BackendCanceledError) as info:
            await supervisor.call("backend.list_events", slow)
        assert info.value.phase == "backend.list_events"
        assert supervisor.abandoned == 1

    async def test_cancelled_supervisor_refuses_new_calls(self):
        supervisor = CallSupervisor(5.0)
        supervisor.cancel()
        called = []

        async def work():
            called.append(True)

        with pytest.raises(BackendCanceledError):
            await supervisor.call("backend.work", work)
        assert called == []

    async def test_errors_are_annotated(self):
        supervisor = CallSupervisor(1.0)

        async def fail():
            raise GenericFailure("native layer said no")

        with pytest.raises(GenericFailure) as info:
            await supervisor.call("backend.update_event", fail)
        assert info.value.phase == "backend.update_event"

    async def test_foreign_errors_get_note(self):
        supervisor = CallSupervisor(1.0)

        async def fail():
            raise KeyError("x")

        with pytest.raises(KeyError) as info:
            await supervisor.call("backend.doctor", fail)
        assert "phase: backend.doctor" in info.value.__notes__


class TestTimings:
    async def test_diagnostics_only_when_verbose(self):
        quiet = CallSupervisor(1.0)
        verbose = CallSupervisor(1.0, verbose=True)

        async def work():
            return None

        await quiet.call("backend.a", work)
        await verbose.call("backend.a", work)
        await verbose.call("backend.a", work)
        assert quiet.diagnostics() == {}
        timings = verbose.diagnostics()["timings"]
        assert timings["backend.a"]["calls"] == 2
        assert timings["backend.a"]["total_ms"] >= 0

    async def test_failed_calls_are_timed(self):
        supervisor = CallSupervisor(1.0, verbose=True)

        async def fail():
            raise GenericFailure("x")

        with pytest.raises(GenericFailure):
            await supervisor.call("backend.b", fail)
        assert supervisor.diagnostics()["timings"]["backend.b"]["calls"] == 1

    def test_concurrent_records(self):
        timings = PhaseTimings()
        with ThreadPoolExecutor(max_workers=8) as pool:
            for _ in range(400):
                pool.submit(timings.record, "backend.x", 0.001)
        snapshot = timings.snapshot()
        assert snapshot["backend.x"]["calls"] == 400
        assert snapshot["backend.x"]["total_ms"] == pytest.approx(400.0)


class TestSupervisedBackend:
    async def test_routes_through_phases(self, backend):
        supervisor = CallSupervisor(5.0, verbose=True, backend_name="apple")
        supervised = SupervisedBackend(backend, supervisor)
        assert supervised.name == "apple"
        assert supervised.inner is backend
        await supervised.list_calendars()
        await supervised.doctor()
        assert set(supervisor.diagnostics()["timings"]) == {
            "backend.list_calendars",
            "backend.doctor",
        }

    async def test_slow_backend_times_out(self, backend, fake):
        fake.delay("create_event", 0.3)
        supervised = SupervisedBackend(backend, CallSupervisor(0.05))
        payload = EventCreateInput(
            calendar="Work", title="Late", start=NOW, end=NOW + timedelta(hours=1)
        )
        with pytest.raises(BackendTimeoutError, match="backend.add_event timed out"):
            await supervised.add_event(payload)
        # The abandoned write still lands.
        await asyncio.sleep(0.4)
        assert len(fake.instances) == 1
