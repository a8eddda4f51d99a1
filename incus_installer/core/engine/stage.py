"""
Stage — one ordered, checkable unit of installation work.

A stage is three callables over a shared ``StageContext``:

    precondition(ctx)  -> True if the end state already holds (skip)
    action(ctx)        -> does the work; raises InstallerError on failure
    postcondition(ctx) -> True if the end state now holds (verify)

Stages are assembled once per run and executed exactly once.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from incus_installer.adapters.base import CommandResult, CommandRunner
from incus_installer.core.engine.rollback import RollbackRegistry
from incus_installer.core.models.config import InstallationConfig
from incus_installer.core.services.fetcher import RetryingFetcher
from incus_installer.core.services.mutator import IdempotentMutator


@dataclass
class StageContext:
    """Everything a stage body may touch.

    ``config`` is read-only; the collaborators are the only way a
    stage changes the host.
    """

    config: InstallationConfig
    runner: CommandRunner
    mutator: IdempotentMutator = field(default_factory=IdempotentMutator)
    fetcher: RetryingFetcher | None = None
    rollback: RollbackRegistry = field(default_factory=RollbackRegistry)
    sleep: Callable[[float], None] = time.sleep
    stage_name: str = ""

    def __post_init__(self) -> None:
        if self.fetcher is None:
            self.fetcher = RetryingFetcher(self.runner, sleep=self.sleep)

    def run(self, command: list[str], *, diagnostic: str = "", **kwargs) -> CommandResult:
        """Run a command and raise ``CommandError`` if it fails."""
        return self.runner.run(command, **kwargs).check(diagnostic)

    def probe(self, command: list[str], **kwargs) -> bool:
        """Run a read-only check command; True on success."""
        return self.runner.run(command, **kwargs).ok

    def path(self, host_path: str) -> str:
        """Host path resolved under the configured root, as a string."""
        return str(self.config.host_path(host_path))

    def on_rollback(self, resource: str, undo: Callable[[], None]) -> None:
        """Register an undo action owned by the running stage."""
        self.rollback.register(self.stage_name, resource, undo)


Predicate = Callable[[StageContext], bool]
Action = Callable[[StageContext], None]


@dataclass
class Stage:
    """A named pipeline step with skip and verify predicates."""

    name: str
    action: Action
    precondition: Predicate | None = None
    postcondition: Predicate | None = None
    fatal: bool = True
    description: str = ""
    diagnostic: str = ""
    verify_message: str = ""

    @property
    def intent(self) -> str:
        return self.description or self.name

    def __repr__(self) -> str:
        kind = "fatal" if self.fatal else "warning"
        return f"<Stage {self.name!r} ({kind})>"
