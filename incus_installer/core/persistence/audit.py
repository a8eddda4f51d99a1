"""
Install ledger — append-only record of pipeline runs.

Every install run with a ledger path writes one entry to an NDJSON
(newline-delimited JSON) file: which stages ran, how each ended,
which stage failed and what was rolled back. Useful for answering
"what did the installer do to this host, and when".

The ledger is append-only: entries are never modified or deleted,
and a ledger that cannot be written never fails the install.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from incus_installer.core.models.config import InstallationConfig
from incus_installer.core.models.stage import PipelineResult

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_PATH = "/var/log/incus-installer/ledger.ndjson"


class InstallRecord(BaseModel):
    """A single ledger entry."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    os_family: str = ""
    distro: str = ""

    # Results
    status: str = ""               # completed, failed
    stages: dict[str, str] = Field(default_factory=dict)   # name -> status
    failed_stage: str | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    rolled_back: list[str] = Field(default_factory=list)
    duration_ms: int = 0

    @classmethod
    def from_result(cls, config: InstallationConfig, result: PipelineResult) -> InstallRecord:
        failure = result.fatal_failure
        return cls(
            run_id=result.run_id,
            os_family=config.os_family.value,
            distro=f"{config.distro} {config.distro_version}".strip(),
            status=result.status,
            stages={o.name: o.status.value for o in result.outcomes},
            failed_stage=failure.name if failure else None,
            error=failure.error if failure else None,
            warnings=[o.name for o in result.warnings],
            rolled_back=list(result.rolled_back),
            duration_ms=sum(o.duration_ms for o in result.outcomes),
        )


class AuditWriter:
    """Append-only ledger writer.

    Each call to write() appends a single JSON line to the ledger file.
    The file is created if it doesn't exist.
    """

    def __init__(self, path: Path | str = DEFAULT_LEDGER_PATH):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, record: InstallRecord) -> None:
        """Append a record to the ledger."""
        line = json.dumps(record.model_dump(mode="json"), ensure_ascii=False) + "\n"

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("Ledger entry written: %s (%s)", record.run_id, record.status)
        except OSError as e:
            logger.error("Failed to write ledger entry: %s", e)

    def read_all(self) -> list[InstallRecord]:
        """Read all records, oldest first."""
        if not self._path.is_file():
            return []

        records = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(InstallRecord.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning("Skipping corrupt ledger entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read ledger: %s", e)

        return records

    def read_recent(self, n: int = 20) -> list[InstallRecord]:
        return self.read_all()[-n:]
