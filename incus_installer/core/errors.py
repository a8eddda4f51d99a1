"""
Installer error taxonomy.

Every failure the pipeline can report is an ``InstallerError``.
The ``kind`` string is what ends up in a ``StageOutcome`` and in the
install ledger; ``diagnostic`` is a command the operator can run to
investigate (never an automatic remediation).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from incus_installer.adapters.base import CommandResult
    from incus_installer.core.models.fetch import FetchAttempt, FetchSpec


class InstallerError(Exception):
    """Base class for all installer failures."""

    kind = "error"

    def __init__(self, message: str, *, diagnostic: str = ""):
        super().__init__(message)
        self.message = message
        self.diagnostic = diagnostic


class ToolMissing(InstallerError):
    """Required external tools are absent (pre-flight only)."""

    kind = "tool_missing"

    def __init__(self, tools: list[str], *, diagnostic: str = ""):
        self.tools = list(tools)
        super().__init__(
            f"Required tools not found: {', '.join(self.tools)}",
            diagnostic=diagnostic,
        )


class PrivilegeError(InstallerError):
    """Not running with the required privilege."""

    kind = "privilege"


class UnsupportedSystem(InstallerError):
    """The host OS is not one the installer knows how to handle."""

    kind = "unsupported_system"


class ConfigError(InstallerError):
    """Installer configuration is invalid or unreadable."""

    kind = "config"


class NetworkError(InstallerError):
    """A network operation could not be completed."""

    kind = "network"


class FetchError(NetworkError):
    """Every source of a fetch exhausted its retries."""

    kind = "fetch"

    def __init__(self, spec: FetchSpec, attempts: list[FetchAttempt], *, diagnostic: str = ""):
        self.spec = spec
        self.attempts = list(attempts)
        last = self.attempts[-1].error if self.attempts else "no sources"
        super().__init__(
            f"Fetch of {spec.destination} failed after {len(self.attempts)} attempts "
            f"across {len(spec.sources)} sources (last error: {last})",
            diagnostic=diagnostic,
        )


class MutationError(InstallerError):
    """A system resource could not be brought to its desired state."""

    kind = "mutation"

    def __init__(self, resource: str, reason: str, *, diagnostic: str = ""):
        self.resource = resource
        self.reason = reason
        super().__init__(f"Cannot update {resource}: {reason}", diagnostic=diagnostic)


class VerificationError(InstallerError):
    """A postcondition did not hold even though the action reported success."""

    kind = "verification"


class CommandError(InstallerError):
    """An external command failed."""

    kind = "command"

    def __init__(self, result: CommandResult, *, diagnostic: str = ""):
        self.result = result
        detail = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else result.error
        super().__init__(
            f"`{result.display}` {result.status.value}: {detail}",
            diagnostic=diagnostic,
        )


class UserAbort(InstallerError):
    """The operator declined a confirmation. Clean, zero-impact exit."""

    kind = "user_abort"
