"""
Configuration loader — builds the InstallationConfig for a run.

Values are layered in precedence order:

    CLI options  >  YAML config file  >  host facts  >  model defaults

Host facts (``/etc/os-release``, ``SUDO_USER``, ``HOME``) are read
here exactly once; no stage reads the process environment.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from incus_installer.core.errors import ConfigError, UnsupportedSystem
from incus_installer.core.models.config import HostInfo, InstallationConfig, OSFamily
from incus_installer.core.services.detection import detect_host, os_family_for

logger = logging.getLogger(__name__)

# Default config filenames
CONFIG_FILE = "incus-installer.yml"
SYSTEM_CONFIG_FILE = "/etc/incus-installer/config.yml"


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Look for a config file in the working directory, then system-wide.

    Returns:
        Path to the config file, or None if not found.
    """
    for candidate in ((start_dir or Path.cwd()) / CONFIG_FILE, Path(SYSTEM_CONFIG_FILE)):
        if candidate.is_file():
            return candidate
    return None


def load_config_file(path: Path) -> dict[str, Any]:
    """Load and validate installer settings from a YAML file.

    The settings may sit at the top level or under an ``installer:`` key.

    Returns:
        The validated settings as a plain dict (only keys present in the file).

    Raises:
        ConfigError: If the file is missing, unreadable or invalid.
    """
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading installer config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    settings = data.get("installer", data)
    if not isinstance(settings, dict):
        raise ConfigError(f"Expected 'installer' to be a mapping in {path}")

    try:
        InstallationConfig.model_validate(settings)
    except ValidationError as e:
        raise ConfigError(f"Invalid installer configuration in {path}: {e}") from e

    logger.info("Loaded %d setting(s) from %s", len(settings), path)
    return dict(settings)


def host_defaults(host: HostInfo, environ: Mapping[str, str]) -> dict[str, Any]:
    """Config values derived from the host and the invoking user."""
    values: dict[str, Any] = {
        "distro": host.id,
        "distro_version": host.version_id,
        "codename": host.codename,
        "home": environ.get("HOME") or "/root",
    }
    sudo_user = environ.get("SUDO_USER")
    if sudo_user and sudo_user != "root":
        values["sudo_user"] = sudo_user
    return values


def resolve_config(
    *,
    config_path: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    detect: bool = True,
) -> InstallationConfig:
    """Build the run's InstallationConfig.

    Args:
        config_path: Optional YAML file (see ``load_config_file``).
        overrides: Values given on the command line; ``None`` entries
            are treated as "not given".
        environ: Process environment snapshot (default: empty).
        detect: Read host facts from os-release. Off for commands that
            only render documents.

    Raises:
        ConfigError: invalid file or values.
        UnsupportedSystem: the OS cannot be detected or is not supported
            and no ``os_family`` was given explicitly.
    """
    given = {k: v for k, v in (overrides or {}).items() if v is not None}
    file_values = load_config_file(config_path) if config_path else {}
    explicit = {**file_values, **given}

    root = explicit.get("root", "/")
    try:
        host = detect_host(root) if detect else HostInfo()
    except UnsupportedSystem:
        if "os_family" not in explicit:
            raise
        logger.warning("Could not read os-release under %s; using os_family=%s",
                       root, explicit["os_family"])
        host = HostInfo()

    values = host_defaults(host, environ or {})
    if "os_family" not in explicit and detect:
        values["os_family"] = os_family_for(host)
    values.update(explicit)

    try:
        config = InstallationConfig.model_validate(values)
    except ValidationError as e:
        raise ConfigError(f"Invalid installer configuration: {e}") from e

    if detect and config.os_family == OSFamily.DEBIAN and not config.codename:
        logger.warning("No distribution codename detected; the repository stage will fail")
    return config
