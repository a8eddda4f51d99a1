"""
Preseed generation for ``incus admin init --preseed``.

``generate()`` is pure: the same config always yields the same
document, and ``render_preseed()`` serialises it with PyYAML in a
fixed key order, so two renders of one config are byte-identical.

Preparing the storage directory is a separate step with side
effects (``prepare_storage_path``): the daemon's ``dir`` driver wants
an empty directory, so a populated target is never used directly.
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath

import yaml

from incus_installer.core.errors import MutationError
from incus_installer.core.models.config import InstallationConfig
from incus_installer.core.models.preseed import (
    PreseedDocument,
    PreseedNetwork,
    PreseedProfile,
    PreseedStoragePool,
)
from incus_installer.core.services.mutator import IdempotentMutator

logger = logging.getLogger(__name__)

STORAGE_SUBDIR = "incus"


def generate(config: InstallationConfig) -> PreseedDocument:
    """Build the preseed document for ``config``."""
    return PreseedDocument(
        networks=[
            PreseedNetwork(
                config={"ipv4.address": "auto", "ipv6.address": "auto"},
                name=config.bridge_name,
            ),
        ],
        storage_pools=[
            PreseedStoragePool(
                config={"source": config.storage_path},
                name=config.pool_name,
            ),
        ],
        profiles=[
            PreseedProfile(
                devices={
                    "eth0": {"name": "eth0", "network": config.bridge_name, "type": "nic"},
                    "root": {"path": "/", "pool": config.pool_name, "type": "disk"},
                },
            ),
        ],
    )


def render_preseed(document: PreseedDocument) -> str:
    """Serialise a preseed document to YAML text."""
    return yaml.safe_dump(
        document.model_dump(mode="json"),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )


def prepare_storage_path(config: InstallationConfig, mutator: IdempotentMutator) -> str:
    """Return an existing, empty storage directory for the pool.

    - missing directory → created and used
    - empty directory → used as-is
    - populated directory → ``<path>/incus`` is created and used instead

    Returns the host path (not prefixed with ``config.root``).

    Raises:
        MutationError: the path is not a directory, or the derived
            subdirectory is itself populated.
    """
    logical = PurePosixPath(config.storage_path)
    target = config.host_path(logical)

    if target.exists() and not target.is_dir():
        raise MutationError(str(logical), "exists and is not a directory")

    if target.is_dir() and any(target.iterdir()):
        logger.warning("Storage directory %s is not empty; using %s/%s",
                       logical, logical, STORAGE_SUBDIR)
        logical = logical / STORAGE_SUBDIR
        target = config.host_path(logical)
        if target.is_dir() and any(target.iterdir()):
            raise MutationError(
                str(logical), "is not empty",
                diagnostic=f"ls -A {logical}",
            )

    mutator.ensure_directory(target)
    return str(logical)
