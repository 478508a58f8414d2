"""Test support utilities for the deskcal package.

:class:`FakeCalendarApp` stands in for the live calendar application and
keeps a structured-store file in sync so the real read and write paths can
run without macOS.
"""

from __future__ import annotations

from deskcal.testing.fake_calendar import FakeCalendarApp, FakeInstance

__all__ = ["FakeCalendarApp", "FakeInstance"]
