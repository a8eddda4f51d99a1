"""
Subprocess command runner — the SINGLE PLACE where ``subprocess.run``
is called on behalf of installation stages.

Commands run with the process's current privilege level (the
installer refuses to start unless it is root, so there is no sudo
handling here). Output is captured and truncated to keep results
small enough for logs and the install ledger.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time

from incus_installer.adapters.base import (
    CommandResult,
    CommandRunner,
    CommandStatus,
    output_matches,
)

logger = logging.getLogger(__name__)

_OUTPUT_LIMIT = 4000


def _tail(text: str | None) -> str:
    return text[-_OUTPUT_LIMIT:] if text else ""


class SubprocessCommandRunner(CommandRunner):
    """Execute commands with ``subprocess.run`` and capture output."""

    @property
    def name(self) -> str:
        return "subprocess"

    def which(self, tool: str) -> bool:
        return shutil.which(tool) is not None

    def run(
        self,
        command: list[str],
        *,
        timeout: int = 300,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        input: str | None = None,
        expect: str | None = None,
    ) -> CommandResult:
        # ── Environment ──
        run_env = None
        if env:
            run_env = os.environ.copy()
            for key, value in env.items():
                run_env[key] = os.path.expandvars(value)

        logger.debug("Executing: %s (cwd=%s)", " ".join(command), cwd)
        start = time.monotonic()

        try:
            proc = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input,
                env=run_env,
                cwd=cwd,
            )
        except FileNotFoundError:
            return CommandResult(
                command=command,
                status=CommandStatus.NOT_FOUND,
                return_code=None,
                error=f"Command not found: {command[0]}",
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                command=command,
                status=CommandStatus.TIMEOUT,
                return_code=None,
                stdout=_tail(e.stdout if isinstance(e.stdout, str) else None),
                error=f"Command timed out ({timeout}s)",
            )
        except OSError as e:
            logger.exception("Subprocess error: %s", command)
            return CommandResult(
                command=command,
                status=CommandStatus.FAILED,
                return_code=None,
                error=str(e),
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        stdout = _tail(proc.stdout)
        stderr = _tail(proc.stderr)

        if proc.returncode != 0:
            return CommandResult.failure(
                command,
                return_code=proc.returncode,
                stderr=stderr,
                stdout=stdout,
                duration_ms=elapsed_ms,
            )

        if expect is not None and not output_matches(proc.stdout or "", expect):
            return CommandResult(
                command=command,
                status=CommandStatus.FAILED,
                return_code=0,
                stdout=stdout,
                stderr=stderr,
                duration_ms=elapsed_ms,
                error=f"Output did not match {expect!r}",
            )

        return CommandResult.success(
            command,
            stdout=stdout,
            stderr=stderr,
            duration_ms=elapsed_ms,
        )
