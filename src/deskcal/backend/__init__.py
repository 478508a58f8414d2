"""Calendar backends and the contract they implement."""

from deskcal.backend.automation import AutomationClient, AutomationEventRow, with_retry
from deskcal.backend.base import (
    BackendFactory,
    BackendRegistry,
    CalendarBackend,
    Readiness,
    assess_readiness,
    default_registry,
)

__all__ = [
    "AutomationClient",
    "AutomationEventRow",
    "BackendFactory",
    "BackendRegistry",
    "CalendarBackend",
    "Readiness",
    "assess_readiness",
    "default_registry",
    "with_retry",
]
