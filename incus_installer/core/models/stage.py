"""
Stage outcome models — the execution contract of the pipeline.

Stages produce outcomes, the executor accumulates them in order into
a ``PipelineResult``. Failures are captured here, never raised past
the executor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)


class StageOutcome(BaseModel):
    """Result of running one stage."""

    name: str
    ordinal: int
    status: StageStatus = StageStatus.PENDING
    fatal: bool = True

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = ""
    duration_ms: int = 0

    message: str = ""
    error: str | None = None
    error_kind: str | None = None
    diagnostic: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (StageStatus.SUCCEEDED, StageStatus.SKIPPED)

    @property
    def failed(self) -> bool:
        return self.status == StageStatus.FAILED

    @property
    def warning(self) -> bool:
        """A non-fatal stage that failed."""
        return self.failed and not self.fatal


@dataclass
class PipelineResult:
    """Ordered per-stage outcomes of one pipeline run."""

    run_id: str = ""
    outcomes: list[StageOutcome] = field(default_factory=list)
    rolled_back: list[str] = field(default_factory=list)
    rollback_errors: list[str] = field(default_factory=list)

    @property
    def fatal_failure(self) -> StageOutcome | None:
        """The first fatal failure, or None."""
        for outcome in self.outcomes:
            if outcome.failed and outcome.fatal:
                return outcome
        return None

    @property
    def warnings(self) -> list[StageOutcome]:
        return [o for o in self.outcomes if o.warning]

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status == StageStatus.SUCCEEDED)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == StageStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.failed)

    @property
    def status(self) -> str:
        return "failed" if self.fatal_failure else "completed"

    @property
    def exit_code(self) -> int:
        return 1 if self.fatal_failure else 0

    def outcome(self, name: str) -> StageOutcome | None:
        for o in self.outcomes:
            if o.name == name:
                return o
        return None

    def to_dict(self) -> dict[str, Any]:
        failure = self.fatal_failure
        return {
            "run_id": self.run_id,
            "status": self.status,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "failed_stage": failure.name if failure else None,
            "rolled_back": list(self.rolled_back),
            "rollback_errors": list(self.rollback_errors),
            "stages": [o.model_dump(mode="json") for o in self.outcomes],
        }
