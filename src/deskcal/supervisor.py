"""Call supervisor: deadline, cancellation and timing for backend calls.

Each supervised call runs as its own :class:`asyncio.Task` raced against the
invocation deadline and an explicit cancel signal. When the deadline or the
cancel signal wins, the task is *abandoned*: it is not cancelled and keeps
running to completion, because the scripted side effect it drives in the
calendar application cannot be retracted. Its eventual result or exception
is retrieved and discarded. A timed-out write may therefore still land.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from deskcal.backend.base import CalendarBackend
from deskcal.contract import (
    Calendar,
    DoctorCheck,
    Event,
    EventCreateInput,
    EventFilter,
    EventUpdatePatch,
    RecurrenceScope,
)
from deskcal.errors import BackendCanceledError, BackendTimeoutError, annotate_phase
from deskcal.telemetry import backend_span
from deskcal.timeutil import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PhaseTimings:
    """Cumulative wall time per phase, safe to update from any thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._totals: dict[str, float] = {}
        self._counts: dict[str, int] = {}

    def record(self, phase: str, seconds: float) -> None:
        with self._lock:
            self._totals[phase] = self._totals.get(phase, 0.0) + seconds
            self._counts[phase] = self._counts.get(phase, 0) + 1

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                phase: {"calls": self._counts[phase], "total_ms": round(total * 1000, 3)}
                for phase, total in sorted(self._totals.items())
            }


class CallSupervisor:
    """Supervises every backend call of one command invocation.

    ``timeout_seconds`` is a single budget for the whole invocation, fixed at
    the first supervised call; ``0`` disables the deadline.
    """

    def __init__(
        self,
        timeout_seconds: float,
        *,
        verbose: bool = False,
        backend_name: str = "",
    ) -> None:
        self.timeout_seconds = max(float(timeout_seconds), 0.0)
        self.verbose = verbose
        self.backend_name = backend_name
        self.timings = PhaseTimings()
        self._cancel = asyncio.Event()
        self._deadline_mono: float | None = None
        self._deadline: datetime | None = None
        self._abandoned: set[asyncio.Task[Any]] = set()

    @property
    def deadline(self) -> datetime | None:
        """Absolute deadline once the first call started, else ``None``."""
        return self._deadline

    @property
    def abandoned(self) -> int:
        """Abandoned calls still running."""
        return len(self._abandoned)

    def cancel(self) -> None:
        """Stop waiting on the in-flight call and refuse new ones."""
        self._cancel.set()

    def _remaining(self) -> float | None:
        if self.timeout_seconds <= 0:
            return None
        now = time.monotonic()
        if self._deadline_mono is None:
            self._deadline_mono = now + self.timeout_seconds
            self._deadline = utc_now() + timedelta(seconds=self.timeout_seconds)
        return self._deadline_mono - now

    def _abandon(self, task: asyncio.Task[Any], phase: str) -> None:
        self._abandoned.add(task)

        def _discard(done: asyncio.Task[Any]) -> None:
            self._abandoned.discard(done)
            if done.cancelled():
                logger.debug("Abandoned %s call was cancelled", phase)
                return
            exc = done.exception()
            if exc is not None:
                logger.debug("Abandoned %s call failed late: %s", phase, exc)
            else:
                logger.debug("Abandoned %s call completed late; result discarded", phase)

        task.add_done_callback(_discard)

    async def call(self, phase: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn()`` under the invocation deadline and cancel signal."""
        if self._cancel.is_set():
            raise BackendCanceledError(phase=phase)
        remaining = self._remaining()
        if remaining is not None and remaining <= 0:
            raise BackendTimeoutError(phase=phase, deadline=self._deadline)

        started = time.perf_counter()
        with backend_span(phase, backend=self.backend_name):
            task = asyncio.ensure_future(fn())
            waiter = asyncio.ensure_future(self._cancel.wait())
            try:
                done, _ = await asyncio.wait(
                    {task, waiter},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            except asyncio.CancelledError:
                self._abandon(task, phase)
                raise
            finally:
                waiter.cancel()
                elapsed = time.perf_counter() - started
                self.timings.record(phase, elapsed)
                if self.verbose:
                    logger.debug("Phase %s took %.1fms", phase, elapsed * 1000)

            if task in done:
                try:
                    return task.result()
                except Exception as exc:
                    annotate_phase(exc, phase)
                    raise

            self._abandon(task, phase)
            if self._cancel.is_set():
                logger.warning("Abandoned %s after cancellation; it may still complete", phase)
                raise BackendCanceledError(phase=phase)
            logger.warning(
                "Abandoned %s after deadline %s; it may still complete",
                phase,
                self._deadline.isoformat() if self._deadline else "?",
            )
            raise BackendTimeoutError(phase=phase, deadline=self._deadline)

    def diagnostics(self) -> dict[str, Any]:
        """Per-phase timings, only when verbose diagnostics are enabled."""
        if not self.verbose:
            return {}
        return {"timings": self.timings.snapshot()}


class SupervisedBackend(CalendarBackend):
    """Routes every backend operation through a :class:`CallSupervisor`."""

    def __init__(self, backend: CalendarBackend, supervisor: CallSupervisor) -> None:
        self._backend = backend
        self._supervisor = supervisor

    @property
    def name(self) -> str:
        return self._backend.name

    @property
    def inner(self) -> CalendarBackend:
        return self._backend

    @property
    def supervisor(self) -> CallSupervisor:
        return self._supervisor

    async def doctor(self) -> list[DoctorCheck]:
        return await self._supervisor.call("backend.doctor", self._backend.doctor)

    async def list_calendars(self) -> list[Calendar]:
        return await self._supervisor.call("backend.list_calendars", self._backend.list_calendars)

    async def list_events(self, filter: EventFilter) -> list[Event]:
        return await self._supervisor.call(
            "backend.list_events", lambda: self._backend.list_events(filter)
        )

    async def get_event_by_id(self, event_id: str) -> Event:
        return await self._supervisor.call(
            "backend.get_event_by_id", lambda: self._backend.get_event_by_id(event_id)
        )

    async def add_event(self, payload: EventCreateInput) -> Event:
        return await self._supervisor.call(
            "backend.add_event", lambda: self._backend.add_event(payload)
        )

    async def update_event(self, event_id: str, patch: EventUpdatePatch) -> Event:
        return await self._supervisor.call(
            "backend.update_event", lambda: self._backend.update_event(event_id, patch)
        )

    async def delete_event(
        self,
        event_id: str,
        scope: RecurrenceScope | str | None = None,
    ) -> None:
        await self._supervisor.call(
            "backend.delete_event", lambda: self._backend.delete_event(event_id, scope)
        )

    async def get_reminder_offset(self, event_id: str) -> timedelta | None:
        return await self._supervisor.call(
            "backend.get_reminder_offset", lambda: self._backend.get_reminder_offset(event_id)
        )

    async def set_reminder_offset(self, event_id: str, offset: timedelta | None) -> None:
        await self._supervisor.call(
            "backend.set_reminder_offset",
            lambda: self._backend.set_reminder_offset(event_id, offset),
        )

    async def close(self) -> None:
        await self._backend.close()
