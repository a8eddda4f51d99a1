"""
InstallationConfig — the resolved, immutable installer parameters.

Created once by the configuration-collection phase (CLI flags, YAML
file, prompts) and passed by reference to every stage. Nothing
mutates it afterwards; a stage that needs a variant (e.g. a derived
storage path) builds a copy with ``model_copy``.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path, PurePosixPath

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_STORAGE_PATH = "/var/lib/incus/storage-pools/default"
DEFAULT_BRIDGE = "incusbr0"
DEFAULT_POOL = "default"


def validate_storage_path(value: str) -> str:
    """Normalise a storage pool directory, which must be an absolute path."""
    path = value.strip()
    if not path.startswith("/"):
        raise ValueError(f"storage path must be absolute, got {value!r}")
    return str(PurePosixPath(path))


class OSFamily(str, Enum):
    DEBIAN = "debian"
    RHEL = "rhel"


class HostInfo(BaseModel):
    """Facts parsed from ``/etc/os-release``."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    version_id: str = ""
    codename: str = ""
    id_like: list[str] = Field(default_factory=list)
    pretty_name: str = ""


class InstallationConfig(BaseModel):
    """All parameters the pipeline consumes."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # ── Target system ────────────────────────────────────────────
    os_family: OSFamily = OSFamily.DEBIAN
    distro: str = ""
    distro_version: str = ""
    codename: str = ""

    # ── Post-install initialisation ──────────────────────────────
    run_init: bool = True
    storage_path: str = DEFAULT_STORAGE_PATH
    bridge_name: str = DEFAULT_BRIDGE
    pool_name: str = DEFAULT_POOL

    # ── Operator identity (resolved once, never re-read) ─────────
    sudo_user: str | None = None
    home: str = "/root"

    # ── Layout ───────────────────────────────────────────────────
    root: str = "/"                      # prefix for every host path
    install_prefix: str = "/usr/local"
    build_dir: str = "/tmp/incus-build"
    deps_dir: str | None = None          # default: <home>/go/deps

    # ── Source build housekeeping ────────────────────────────────
    cleanup_build: bool = False
    cleanup_deps: bool = False
    go_version: str | None = None        # pin instead of resolving latest

    # ── Timing ───────────────────────────────────────────────────
    settle_seconds: float = 3.0
    fetch_retries: int = Field(default=3, ge=1)
    fetch_delay: float = Field(default=2.0, ge=0)
    fetch_timeout: int = Field(default=30, ge=1)

    @field_validator("storage_path")
    @classmethod
    def _absolute_storage_path(cls, value: str) -> str:
        return validate_storage_path(value)

    def host_path(self, path: str | Path) -> Path:
        """Resolve an absolute host path under ``root``."""
        return Path(self.root) / str(path).lstrip("/")

    @property
    def go_path(self) -> str:
        return f"{self.home.rstrip('/')}/go"

    @property
    def resolved_deps_dir(self) -> str:
        return self.deps_dir or f"{self.go_path}/deps"

    @property
    def bin_dir(self) -> str:
        return f"{self.install_prefix.rstrip('/')}/bin"

    @property
    def lib_dir(self) -> str:
        return f"{self.install_prefix.rstrip('/')}/lib"

    @property
    def source_dir(self) -> str:
        return f"{self.build_dir.rstrip('/')}/incus"
