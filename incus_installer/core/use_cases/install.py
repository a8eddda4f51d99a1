"""
Install use case — pre-flight, pipeline, ledger.

This is the top-level orchestrator: given a resolved
InstallationConfig and a command runner, it assembles the stage
pipeline for the OS family, checks the required tools, runs the
pipeline once and records the outcome.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from incus_installer.adapters.base import CommandRunner
from incus_installer.core.engine.executor import PipelineExecutor, ProgressCallback
from incus_installer.core.engine.stage import Stage, StageContext
from incus_installer.core.models.config import InstallationConfig, OSFamily
from incus_installer.core.models.stage import PipelineResult
from incus_installer.core.persistence.audit import AuditWriter, InstallRecord
from incus_installer.core.services.detection import REQUIRED_TOOLS, check_tools
from incus_installer.core.services.fetcher import Downloader, RetryingFetcher
from incus_installer.core.services.mutator import IdempotentMutator
from incus_installer.core.services.service_unit import ADMIN_GROUP
from incus_installer.core.services.stages.debian import debian_stages
from incus_installer.core.services.stages.rhel import rhel_stages

logger = logging.getLogger(__name__)


def build_pipeline(config: InstallationConfig) -> list[Stage]:
    """Ordered stages for the config's OS family."""
    if config.os_family == OSFamily.RHEL:
        return rhel_stages(config)
    return debian_stages(config)


def run_install(
    config: InstallationConfig,
    runner: CommandRunner,
    *,
    on_progress: ProgressCallback | None = None,
    ledger: Path | None = None,
    sleep: Callable[[float], None] = time.sleep,
    downloader: Downloader | None = None,
    run_id: str | None = None,
) -> PipelineResult:
    """Run the full install for ``config``.

    Raises:
        ToolMissing: a required tool is absent; nothing has run yet.
    """
    check_tools(runner, REQUIRED_TOOLS[config.os_family])

    context = StageContext(
        config=config,
        runner=runner,
        mutator=IdempotentMutator(),
        fetcher=RetryingFetcher(runner, downloader=downloader, sleep=sleep),
        sleep=sleep,
    )
    executor = PipelineExecutor(
        build_pipeline(config), context, on_progress=on_progress, run_id=run_id,
    )
    result = executor.run()

    if ledger is not None:
        AuditWriter(ledger).write(InstallRecord.from_result(config, result))
    return result


def post_install_summary(config: InstallationConfig) -> list[str]:
    """Usage hints printed after a successful install."""
    lines = []
    if config.os_family == OSFamily.RHEL:
        lines += [
            f"Binaries:   {config.bin_dir}/incusd, {config.bin_dir}/incus",
            f"Libraries:  {config.lib_dir}/libraft.so, {config.lib_dir}/libcowsql.so",
        ]
    lines += [
        "Data:       /var/lib/incus",
        "Service:    systemctl status incus",
        "",
        "Get started:",
        "  incus launch images:ubuntu/22.04 mycontainer",
        "  incus list",
        "  incus exec mycontainer -- bash",
        "  incus stop mycontainer",
        "  incus delete mycontainer",
    ]
    if not config.run_init:
        lines += ["", "Initialise later with: incus admin init"]
    if config.sudo_user:
        lines += [
            "",
            f"{config.sudo_user} was added to {ADMIN_GROUP}; log in again or run: newgrp {ADMIN_GROUP}",
        ]
    return lines
