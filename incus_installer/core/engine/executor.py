"""
Pipeline executor — the central installation loop.

Runs stages strictly in declared order. For every stage:

    precondition holds  → Skipped
    action raises       → Failed
    postcondition fails → Failed (even if the action reported success)
    otherwise           → Succeeded

A failed fatal stage triggers rollback of everything registered in
this run and ends the pipeline; a failed non-fatal ("warning")
stage is recorded and the pipeline moves on.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from incus_installer.core.engine.stage import Stage, StageContext
from incus_installer.core.errors import InstallerError, VerificationError
from incus_installer.core.observability.logging_config import stage_logging
from incus_installer.core.models.stage import PipelineResult, StageOutcome, StageStatus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Stage, StageOutcome], None]

_MARKERS = {
    StageStatus.SUCCEEDED: "✓",
    StageStatus.SKIPPED: "⊘",
    StageStatus.FAILED: "✗",
}


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return f"run-{now}-{uuid.uuid4().hex[:6]}"


class PipelineExecutor:
    """Runs an ordered list of stages once."""

    def __init__(
        self,
        stages: list[Stage],
        context: StageContext,
        *,
        on_progress: ProgressCallback | None = None,
        run_id: str | None = None,
    ):
        names = [s.name for s in stages]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stage names: {', '.join(duplicates)}")

        self._stages = list(stages)
        self._context = context
        self._on_progress = on_progress
        self._run_id = run_id or generate_run_id()
        self._started = False

    @property
    def stages(self) -> list[Stage]:
        return list(self._stages)

    def run(self) -> PipelineResult:
        """Execute every stage in order until completion or a fatal failure."""
        if self._started:
            raise RuntimeError("A pipeline runs exactly once")
        self._started = True

        result = PipelineResult(run_id=self._run_id)
        total = len(self._stages)

        for ordinal, stage in enumerate(self._stages, start=1):
            outcome = self._run_stage(stage, ordinal, total)
            result.outcomes.append(outcome)

            if outcome.failed and stage.fatal:
                logger.error("Stage %s failed; rolling back this run's changes", stage.name)
                undone, errors = self._context.rollback.rollback()
                result.rolled_back.extend(undone)
                result.rollback_errors.extend(errors)
                break

        logger.info(
            "Pipeline %s %s: %d succeeded, %d skipped, %d failed",
            result.run_id, result.status, result.succeeded, result.skipped, result.failed,
        )
        return result

    def _notify(self, stage: Stage, outcome: StageOutcome) -> None:
        if self._on_progress:
            self._on_progress(stage, outcome)

    def _run_stage(self, stage: Stage, ordinal: int, total: int) -> StageOutcome:
        with stage_logging(stage.name):
            return self._execute(stage, ordinal, total)

    def _execute(self, stage: Stage, ordinal: int, total: int) -> StageOutcome:
        ctx = self._context
        ctx.stage_name = stage.name

        outcome = StageOutcome(
            name=stage.name,
            ordinal=ordinal,
            status=StageStatus.RUNNING,
            fatal=stage.fatal,
            message=stage.intent,
        )
        logger.info("[%d/%d] %s", ordinal, total, stage.intent)
        self._notify(stage, outcome)

        start = time.monotonic()
        try:
            if stage.precondition is not None and stage.precondition(ctx):
                outcome.status = StageStatus.SKIPPED
                outcome.message = "already satisfied"
            else:
                stage.action(ctx)
                if stage.postcondition is not None and not stage.postcondition(ctx):
                    raise VerificationError(
                        stage.verify_message or f"Verification failed after {stage.name}",
                    )
                outcome.status = StageStatus.SUCCEEDED
        except InstallerError as e:
            outcome.status = StageStatus.FAILED
            outcome.error = e.message
            outcome.error_kind = e.kind
            outcome.diagnostic = e.diagnostic or stage.diagnostic
        except Exception as e:
            logger.exception("Unexpected error in stage %s", stage.name)
            outcome.status = StageStatus.FAILED
            outcome.error = f"{type(e).__name__}: {e}"
            outcome.error_kind = "internal"
            outcome.diagnostic = stage.diagnostic

        outcome.duration_ms = int((time.monotonic() - start) * 1000)
        outcome.ended_at = datetime.now(UTC).isoformat()

        log = logger.warning if outcome.warning else logger.info
        log(
            "%s %s → %s%s",
            _MARKERS[outcome.status],
            stage.name,
            outcome.status.value,
            f" ({outcome.error})" if outcome.error else "",
        )
        self._notify(stage, outcome)
        return outcome
