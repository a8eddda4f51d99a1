"""
Debian/Ubuntu pipeline — install Incus from the Zabbly package repository.
"""

from __future__ import annotations

import logging
from pathlib import Path

from incus_installer.core.engine.stage import Stage, StageContext
from incus_installer.core.errors import ConfigError
from incus_installer.core.models.config import InstallationConfig
from incus_installer.core.models.fetch import FetchSpec
from incus_installer.core.services.stages.common import configure_sysctl_stage, tail_stages
from incus_installer.core.services.stages.constants import (
    APT_ENV,
    APT_PREREQUISITES,
    KEYRING_DIR,
    KEYRING_PATH,
    SOURCES_LIST_PATH,
    ZABBLY_KEY_URL,
    ZABBLY_REPO_URL,
)

logger = logging.getLogger(__name__)


def dpkg_installed(ctx: StageContext, package: str) -> bool:
    """True if dpkg reports ``package`` as installed."""
    return ctx.probe(
        ["dpkg-query", "-W", "-f=${Status}", package],
        expect="install ok installed",
    )


def _apt(ctx: StageContext, *args: str, diagnostic: str = "") -> None:
    ctx.run(["apt-get", *args], env=APT_ENV, timeout=900, diagnostic=diagnostic)


# ── Prerequisites ───────────────────────────────────────────────


def _prerequisites_installed(ctx: StageContext) -> bool:
    return all(dpkg_installed(ctx, pkg) for pkg in APT_PREREQUISITES)


def _install_prerequisites(ctx: StageContext) -> None:
    _apt(ctx, "update", diagnostic="apt-get update")
    _apt(ctx, "install", "-y", *APT_PREREQUISITES)


# ── Repository ──────────────────────────────────────────────────


def _keyring_present(ctx: StageContext) -> bool:
    path = Path(ctx.path(KEYRING_PATH))
    return path.is_file() and path.stat().st_size > 0


def _add_repository_key(ctx: StageContext) -> None:
    config = ctx.config
    ctx.mutator.ensure_directory(ctx.path(KEYRING_DIR))
    armored = Path(ctx.path(KEYRING_DIR)) / "zabbly.asc"
    ctx.fetcher.fetch(FetchSpec(
        sources=[ZABBLY_KEY_URL],
        destination=armored,
        max_retries=config.fetch_retries,
        timeout=config.fetch_timeout,
        delay=config.fetch_delay,
        label="Zabbly signing key",
    ))
    try:
        ctx.run(
            ["gpg", "--batch", "--yes", "--dearmor", "-o", ctx.path(KEYRING_PATH), str(armored)],
            diagnostic=f"gpg --show-keys {armored}",
        )
    finally:
        armored.unlink(missing_ok=True)


def repository_line(config: InstallationConfig) -> str:
    if not config.codename:
        raise ConfigError(
            "Distribution codename is unknown; cannot add the package repository",
            diagnostic="grep VERSION_CODENAME /etc/os-release",
        )
    return f"deb [signed-by={KEYRING_PATH}] {ZABBLY_REPO_URL} {config.codename} main"


def _repository_listed(ctx: StageContext) -> bool:
    path = Path(ctx.path(SOURCES_LIST_PATH))
    if not path.is_file():
        return False
    return repository_line(ctx.config) in path.read_text(encoding="utf-8").splitlines()


def _add_repository(ctx: StageContext) -> None:
    ctx.mutator.ensure_directory(Path(ctx.path(SOURCES_LIST_PATH)).parent)
    ctx.mutator.ensure_line(ctx.path(SOURCES_LIST_PATH), repository_line(ctx.config))


# ── Package ─────────────────────────────────────────────────────


def _incus_installed(ctx: StageContext) -> bool:
    return dpkg_installed(ctx, "incus")


def _install_incus(ctx: StageContext) -> None:
    _apt(ctx, "update", diagnostic="apt-get update")
    _apt(ctx, "install", "-y", "incus", diagnostic="apt-cache policy incus")


def _incus_resolvable(ctx: StageContext) -> bool:
    return ctx.runner.which("incus") and ctx.probe(["incus", "--version"])


def debian_stages(config: InstallationConfig) -> list[Stage]:
    """Ordered Debian/Ubuntu pipeline for ``config``."""
    return [
        Stage(
            name="install-prerequisites",
            description="Install curl, gnupg2 and software-properties-common",
            action=_install_prerequisites,
            precondition=_prerequisites_installed,
            diagnostic="apt-get update",
        ),
        Stage(
            name="add-repository-key",
            description="Add the Zabbly repository signing key",
            action=_add_repository_key,
            precondition=_keyring_present,
            postcondition=_keyring_present,
            verify_message=f"{KEYRING_PATH} is missing or empty",
        ),
        Stage(
            name="add-repository",
            description="Add the Zabbly Incus stable repository",
            action=_add_repository,
            precondition=_repository_listed,
        ),
        Stage(
            name="install-incus",
            description="Install the incus package",
            action=_install_incus,
            precondition=_incus_installed,
            postcondition=_incus_resolvable,
            diagnostic="apt-cache policy incus",
            verify_message="incus is not on PATH after installation",
        ),
        configure_sysctl_stage(),
        *tail_stages(config.run_init),
    ]
