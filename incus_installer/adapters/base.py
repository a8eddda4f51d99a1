"""
Command runner base — the contract between stages and external tools.

Every external command a stage needs (``apt-get``, ``dnf``, ``make``,
``systemctl``, ``patchelf`` ...) goes through a ``CommandRunner``.
Runners NEVER raise for a failing command: the outcome is captured
in a ``CommandResult`` and the caller decides what a failure means.
"""

from __future__ import annotations

import re
import shlex
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from pydantic import BaseModel

from incus_installer.core.errors import CommandError


class CommandStatus(str, Enum):
    """Classification of a finished command."""

    OK = "ok"
    FAILED = "failed"            # non-zero exit, or output matcher did not match
    NOT_FOUND = "not_found"      # executable does not exist
    TIMEOUT = "timeout"


class CommandResult(BaseModel):
    """Outcome of one external command."""

    command: list[str]
    status: CommandStatus = CommandStatus.OK
    return_code: int | None = 0
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == CommandStatus.OK

    @property
    def display(self) -> str:
        """The command as an operator would type it."""
        return shlex.join(self.command)

    def check(self, diagnostic: str = "") -> CommandResult:
        """Return self on success, raise ``CommandError`` otherwise."""
        if not self.ok:
            raise CommandError(self, diagnostic=diagnostic)
        return self

    @classmethod
    def success(cls, command: list[str], stdout: str = "", **kwargs: Any) -> CommandResult:
        return cls(command=command, status=CommandStatus.OK, stdout=stdout, **kwargs)

    @classmethod
    def failure(
        cls,
        command: list[str],
        return_code: int | None = 1,
        stderr: str = "",
        **kwargs: Any,
    ) -> CommandResult:
        kwargs.setdefault("error", f"Command failed (exit {return_code})")
        return cls(
            command=command,
            status=CommandStatus.FAILED,
            return_code=return_code,
            stderr=stderr,
            **kwargs,
        )


def output_matches(stdout: str, expect: str) -> bool:
    """Whether ``expect`` (a regular expression) occurs in ``stdout``."""
    return re.search(expect, stdout, re.MULTILINE) is not None


class CommandRunner(ABC):
    """Abstract base class for command runners.

    To create a new runner:
        1. Subclass CommandRunner
        2. Implement name, run, which
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The runner identifier (e.g. 'subprocess', 'mock')."""

    @abstractmethod
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
        """Run ``command`` and classify the outcome.

        Args:
            command: Argument vector; never passed through a shell.
            timeout: Seconds before the command is classified as TIMEOUT.
            cwd: Working directory.
            env: Variables layered over the current process environment.
            input: Text piped to the command's stdin.
            expect: Optional output matcher. When given, a zero exit
                status only counts as OK if stdout matches it.

        MUST never raise for command failures.
        """

    @abstractmethod
    def which(self, tool: str) -> bool:
        """Whether ``tool`` resolves to an executable."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
