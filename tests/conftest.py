"""Shared fixtures: a fake calendar application wired into the real backend."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from deskcal.backend.apple import AppleCalendarBackend
from deskcal.backend.store import reset_store_cache
from deskcal.config import DeskcalConfig, RetryPolicy
from deskcal.context import CommandContext, build_context
from deskcal.service import CalendarService
from deskcal.testing import FakeCalendarApp

# A Monday morning; every lookup window is centred here.
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _reset_store_engines():
    """Dispose cached read-only engines so each test opens its own store."""
    reset_store_cache()
    yield
    reset_store_cache()


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "Calendar.sqlitedb"


@pytest.fixture
def config(tmp_path: Path, store_path: Path) -> DeskcalConfig:
    return DeskcalConfig(
        store_paths=(store_path,),
        journal_dir=tmp_path / "journal",
        retry=RetryPolicy(retries=2, backoff_seconds=0.0),
        timeout_seconds=5.0,
    )


@pytest.fixture
def fake(store_path: Path) -> FakeCalendarApp:
    return FakeCalendarApp(store_path)


@pytest.fixture
def backend(config: DeskcalConfig, fake: FakeCalendarApp) -> AppleCalendarBackend:
    return AppleCalendarBackend(config, fake, clock=lambda: NOW)


@pytest.fixture
async def ctx(
    config: DeskcalConfig,
    backend: AppleCalendarBackend,
) -> AsyncIterator[CommandContext]:
    context = build_context(config, lambda cfg: backend, command="test")
    async with context:
        yield context


@pytest.fixture
def service(ctx: CommandContext) -> CalendarService:
    return CalendarService(ctx)
