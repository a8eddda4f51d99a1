"""
Host detection and pre-flight checks.

Read-only probes: ``/etc/os-release``, effective UID, tool presence.
These run before any stage and before any prompt that could lead to
a mutation.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from incus_installer.adapters.base import CommandRunner
from incus_installer.core.errors import PrivilegeError, ToolMissing, UnsupportedSystem
from incus_installer.core.models.config import HostInfo, OSFamily

logger = logging.getLogger(__name__)

_DEBIAN_IDS = {"debian", "ubuntu"}
_RHEL_IDS = {"centos", "rhel", "rocky", "almalinux", "fedora", "ol"}

REQUIRED_TOOLS: dict[OSFamily, tuple[str, ...]] = {
    OSFamily.DEBIAN: ("apt-get", "systemctl", "sysctl"),
    OSFamily.RHEL: ("dnf", "systemctl", "sysctl"),
}


def parse_os_release(text: str) -> HostInfo:
    """Parse ``os-release`` ``KEY=value`` lines."""
    values: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"').strip("'")

    return HostInfo(
        id=values.get("ID", "").lower(),
        version_id=values.get("VERSION_ID", ""),
        codename=values.get("VERSION_CODENAME", "") or values.get("UBUNTU_CODENAME", ""),
        id_like=values.get("ID_LIKE", "").lower().split(),
        pretty_name=values.get("PRETTY_NAME", ""),
    )


def detect_host(root: str | Path = "/") -> HostInfo:
    """Read ``<root>/etc/os-release``.

    Raises:
        UnsupportedSystem: the file is missing.
    """
    path = Path(root) / "etc" / "os-release"
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise UnsupportedSystem(
            f"Cannot detect the operating system ({path}: {e.strerror or e})",
        ) from e
    host = parse_os_release(text)
    logger.info("Detected system: %s %s", host.id, host.version_id)
    return host


def os_family_for(host: HostInfo) -> OSFamily:
    """Map a host to the pipeline family that can install on it."""
    if host.id in _DEBIAN_IDS or "debian" in host.id_like or "ubuntu" in host.id_like:
        return OSFamily.DEBIAN
    if host.id in _RHEL_IDS or {"rhel", "fedora", "centos"} & set(host.id_like):
        return OSFamily.RHEL
    raise UnsupportedSystem(
        f"Unsupported operating system: {host.id or 'unknown'} "
        "(supported: Debian/Ubuntu, CentOS/RHEL)",
    )


def check_privilege() -> None:
    """Raise ``PrivilegeError`` unless running as root."""
    if os.geteuid() != 0:
        raise PrivilegeError(
            "This installer must run as root",
            diagnostic="sudo incus-installer install",
        )


def check_tools(runner: CommandRunner, tools: tuple[str, ...] | list[str]) -> None:
    """Raise ``ToolMissing`` naming every tool that does not resolve."""
    missing = [t for t in tools if not runner.which(t)]
    if missing:
        raise ToolMissing(missing, diagnostic=f"command -v {missing[0]}")
