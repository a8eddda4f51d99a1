"""
Interactive configuration collection.

Walks the operator through the few decisions an install needs and
returns a new InstallationConfig. Declining either confirmation
raises ``UserAbort`` before anything on the host has been touched.
"""

from __future__ import annotations

from collections.abc import Collection

import click
from pydantic import ValidationError

from incus_installer.core.errors import ConfigError, UserAbort
from incus_installer.core.models.config import InstallationConfig, OSFamily, validate_storage_path


def summarize(config: InstallationConfig) -> list[str]:
    """Human-readable lines describing what the install will do."""
    method = (
        "Zabbly package repository" if config.os_family == OSFamily.DEBIAN
        else f"source build into {config.install_prefix}"
    )
    system = f"{config.distro} {config.distro_version}".strip() or config.os_family.value
    lines = [
        f"System:          {system}",
        f"Install method:  {method}",
        f"Initialise:      {'yes' if config.run_init else 'no'}",
    ]
    if config.run_init:
        lines += [
            f"Storage pool:    {config.pool_name} (dir) at {config.storage_path}",
            f"Network bridge:  {config.bridge_name} (IPv4/IPv6 auto)",
        ]
    if config.os_family == OSFamily.RHEL:
        cleanup = "build directory" if config.cleanup_build else "keep"
        if config.cleanup_build and config.cleanup_deps:
            cleanup += " and dependency sources"
        lines.append(f"Cleanup:         {cleanup}")
    if config.sudo_user:
        lines.append(f"Admin user:      {config.sudo_user} (added to incus-admin)")
    return lines


def _storage_path_input(default: str):
    """Prompt converter: blank keeps ``default``, relative paths are re-asked."""

    def convert(value: str) -> str:
        if not value.strip():
            return default
        try:
            return validate_storage_path(value)
        except ValueError as e:
            raise click.BadParameter(str(e)) from e

    return convert


def collect_config(
    config: InstallationConfig,
    *,
    assume_yes: bool = False,
    explicit: Collection[str] = (),
) -> InstallationConfig:
    """Ask the operator to confirm and fill in install options.

    Args:
        config: Starting point (defaults, config file and CLI values).
        assume_yes: Skip every prompt and accept ``config`` as is.
        explicit: Field names already fixed by the operator; never re-asked.

    Raises:
        UserAbort: the operator declined to proceed.
        ConfigError: the collected values do not validate.
    """
    if assume_yes:
        return config

    if not click.confirm("Install Incus on this host?", default=True):
        raise UserAbort("Installation cancelled by operator")

    updates: dict = {}
    run_init = config.run_init
    if "run_init" not in explicit:
        run_init = click.confirm(
            "Initialise Incus after installing (storage pool, bridge, default profile)?",
            default=True,
        )
        updates["run_init"] = run_init

    if run_init and "storage_path" not in explicit:
        updates["storage_path"] = click.prompt(
            "Storage pool directory",
            default=config.storage_path,
            show_default=True,
            value_proc=_storage_path_input(config.storage_path),
        )

    if config.os_family == OSFamily.RHEL and "cleanup_build" not in explicit:
        cleanup = click.confirm(
            "Remove the build directory after a verified install?", default=False,
        )
        updates["cleanup_build"] = cleanup
        if cleanup and "cleanup_deps" not in explicit:
            updates["cleanup_deps"] = click.confirm(
                "Also remove the dependency sources (a rebuild will need a full rerun)?",
                default=False,
            )

    try:
        resolved = InstallationConfig.model_validate({**config.model_dump(), **updates})
    except ValidationError as e:
        raise ConfigError(f"Invalid installer configuration: {e}") from e

    click.echo()
    for line in summarize(resolved):
        click.echo(f"   {line}")
    click.echo()
    if not click.confirm("Proceed?", default=True):
        raise UserAbort("Installation cancelled by operator")
    return resolved
