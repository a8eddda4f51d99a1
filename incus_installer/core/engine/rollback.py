"""
Rollback registry — undo actions for resources created in this run.

Stages register an undo only for things they created themselves
(a service they enabled, a unit file they wrote, a build directory
they cloned into). Nothing from a previous run is ever registered,
and installed binaries/libraries are deliberately left alone.
Rollback runs newest-first.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from incus_installer.core.errors import InstallerError

logger = logging.getLogger(__name__)


@dataclass
class RollbackEntry:
    stage: str
    resource: str
    undo: Callable[[], None]


class RollbackRegistry:
    """Ordered collection of undo actions."""

    def __init__(self) -> None:
        self._entries: list[RollbackEntry] = []

    @property
    def entries(self) -> list[RollbackEntry]:
        return list(self._entries)

    def register(self, stage: str, resource: str, undo: Callable[[], None]) -> None:
        self._entries.append(RollbackEntry(stage=stage, resource=resource, undo=undo))
        logger.debug("Rollback registered by %s: %s", stage, resource)

    def rollback(self) -> tuple[list[str], list[str]]:
        """Run every undo action in reverse registration order.

        A failing undo is logged and does not stop the rest.

        Returns:
            ``(undone_resources, error_messages)``
        """
        undone: list[str] = []
        errors: list[str] = []
        for entry in reversed(self._entries):
            try:
                entry.undo()
                undone.append(entry.resource)
                logger.info("Rolled back %s (%s)", entry.resource, entry.stage)
            except (InstallerError, OSError) as e:
                errors.append(f"{entry.resource}: {e}")
                logger.error("Rollback of %s failed: %s", entry.resource, e)
        self._entries.clear()
        return undone, errors
