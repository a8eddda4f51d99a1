"""
Service unit descriptor and systemd control.

The unit is rendered from a ``ServiceUnit`` model (restart on
failure after 5s, 600s start timeout, 30s stop timeout, unlimited
fd/process/task limits) and managed through ``systemctl`` via the
command runner.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict

from incus_installer.adapters.base import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

SERVICE_NAME = "incus"
UNIT_PATH = "/etc/systemd/system/incus.service"
ADMIN_GROUP = "incus-admin"


class ServiceUnit(BaseModel):
    """systemd unit descriptor for the daemon."""

    model_config = ConfigDict(frozen=True)

    description: str = "Incus - Container and virtual machine manager"
    documentation: str = "https://linuxcontainers.org/incus"
    exec_start: str = f"/usr/local/bin/incusd --group {ADMIN_GROUP}"
    restart: str = "on-failure"
    restart_sec: int = 5
    timeout_start_sec: int = 600
    timeout_stop_sec: int = 30
    limit_nofile: str = "1048576"
    limit_nproc: str = "infinity"
    tasks_max: str = "infinity"
    wanted_by: str = "multi-user.target"

    def render(self) -> str:
        return (
            "[Unit]\n"
            f"Description={self.description}\n"
            f"Documentation={self.documentation}\n"
            "After=network-online.target\n"
            "Wants=network-online.target\n"
            "\n"
            "[Service]\n"
            "Type=simple\n"
            f"ExecStart={self.exec_start}\n"
            f"Restart={self.restart}\n"
            f"RestartSec={self.restart_sec}s\n"
            f"TimeoutStartSec={self.timeout_start_sec}s\n"
            f"TimeoutStopSec={self.timeout_stop_sec}s\n"
            f"LimitNOFILE={self.limit_nofile}\n"
            f"LimitNPROC={self.limit_nproc}\n"
            f"TasksMax={self.tasks_max}\n"
            "\n"
            "[Install]\n"
            f"WantedBy={self.wanted_by}\n"
        )


def unit_for_prefix(install_prefix: str) -> ServiceUnit:
    """Unit whose ExecStart points into ``install_prefix``."""
    return ServiceUnit(
        exec_start=f"{install_prefix.rstrip('/')}/bin/incusd --group {ADMIN_GROUP}",
    )


class SystemdService:
    """Thin ``systemctl`` wrapper for one service."""

    def __init__(self, runner: CommandRunner, name: str = SERVICE_NAME):
        self._runner = runner
        self.name = name

    def _systemctl(self, *args: str) -> CommandResult:
        return self._runner.run(["systemctl", *args], timeout=60)

    def daemon_reload(self) -> CommandResult:
        return self._systemctl("daemon-reload")

    def enable(self) -> CommandResult:
        return self._systemctl("enable", self.name)

    def disable(self) -> CommandResult:
        return self._systemctl("disable", self.name)

    def start(self) -> CommandResult:
        return self._systemctl("start", self.name)

    def stop(self) -> CommandResult:
        return self._systemctl("stop", self.name)

    def is_active(self) -> bool:
        return self._systemctl("is-active", "--quiet", self.name).ok

    def is_enabled(self) -> bool:
        return self._systemctl("is-enabled", "--quiet", self.name).ok

    def stop_and_disable(self, *, disable: bool = True) -> None:
        """Best-effort stop + disable, used by rollback.

        With ``disable=False`` the unit stays enabled, for a service that
        was already enabled before this run.
        """
        results = [self.stop()]
        if disable:
            results.append(self.disable())
        for result in results:
            if not result.ok:
                logger.warning("%s during rollback: %s", result.display, result.error)
