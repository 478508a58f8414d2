"""Per-invocation command context.

The backend factory is an explicit value: callers (and tests) pass the one
they want instead of swapping module state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from deskcal.backend.base import BackendFactory, default_registry
from deskcal.config import DeskcalConfig
from deskcal.journal import MutationJournal
from deskcal.logging import set_command_context
from deskcal.supervisor import CallSupervisor, SupervisedBackend

logger = logging.getLogger(__name__)


@dataclass
class CommandContext:
    config: DeskcalConfig
    backend: SupervisedBackend
    supervisor: CallSupervisor
    journal: MutationJournal
    command: str | None = None

    async def aclose(self) -> None:
        await self.backend.close()
        if self.supervisor.abandoned:
            logger.warning(
                "%d backend call(s) still running after the command finished",
                self.supervisor.abandoned,
            )

    async def __aenter__(self) -> CommandContext:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.aclose()


def build_context(
    config: DeskcalConfig,
    factory: BackendFactory | None = None,
    *,
    command: str | None = None,
    journal: MutationJournal | None = None,
) -> CommandContext:
    """Construct the backend once and wire it through a fresh supervisor."""
    if command:
        set_command_context(command)
    if factory is None:
        factory = default_registry().resolve(config.backend)
    backend = factory(config)
    supervisor = CallSupervisor(
        config.timeout_seconds,
        verbose=config.verbose,
        backend_name=backend.name,
    )
    return CommandContext(
        config=config,
        backend=SupervisedBackend(backend, supervisor),
        supervisor=supervisor,
        journal=journal or MutationJournal(config.journal_dir),
        command=command,
    )
