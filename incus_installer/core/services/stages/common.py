"""
Stages shared by every OS family: kernel forwarding, service
activation, group membership, verification and preseed
initialisation.
"""

from __future__ import annotations

import logging

from incus_installer.core.engine.stage import Stage, StageContext
from incus_installer.core.errors import VerificationError
from incus_installer.core.models.config import OSFamily
from incus_installer.core.models.mutation import MutationKind, MutationRecord
from incus_installer.core.services.preseed import generate, prepare_storage_path, render_preseed
from incus_installer.core.services.service_unit import ADMIN_GROUP, SystemdService
from incus_installer.core.services.stages.constants import (
    SERVICE_DIAGNOSTIC,
    SYSCTL_CONF,
    SYSCTL_LINES,
)

logger = logging.getLogger(__name__)


# ── Kernel forwarding ───────────────────────────────────────────


def _sysctl_records(ctx: StageContext) -> list[MutationRecord]:
    return [
        MutationRecord(kind=MutationKind.LINE, resource=ctx.path(SYSCTL_CONF), value=line)
        for line in SYSCTL_LINES
    ]


def _sysctl_satisfied(ctx: StageContext) -> bool:
    return all(ctx.mutator.is_satisfied(r) for r in _sysctl_records(ctx))


def _configure_sysctl(ctx: StageContext) -> None:
    for record in _sysctl_records(ctx):
        ctx.mutator.ensure(record)
    ctx.run(["sysctl", "-p", ctx.path(SYSCTL_CONF)], diagnostic="sysctl -a | grep forwarding")


def configure_sysctl_stage() -> Stage:
    return Stage(
        name="configure-sysctl",
        description="Enable IPv4/IPv6 forwarding",
        action=_configure_sysctl,
        precondition=_sysctl_satisfied,
    )


# ── Service activation ──────────────────────────────────────────


def _service_running(ctx: StageContext) -> bool:
    service = SystemdService(ctx.runner)
    return service.is_enabled() and service.is_active()


def _activate_service(ctx: StageContext) -> None:
    service = SystemdService(ctx.runner)
    # Only undo the enable this run performs
    disable = not service.is_enabled()
    ctx.on_rollback(
        f"{service.name}.service (running)",
        lambda: service.stop_and_disable(disable=disable),
    )
    service.enable().check(SERVICE_DIAGNOSTIC)
    service.start().check(SERVICE_DIAGNOSTIC)
    if ctx.config.settle_seconds:
        ctx.sleep(ctx.config.settle_seconds)


def _service_active(ctx: StageContext) -> bool:
    return SystemdService(ctx.runner).is_active()


def activate_service_stage() -> Stage:
    return Stage(
        name="activate-service",
        description="Enable and start the incus service",
        action=_activate_service,
        precondition=_service_running,
        postcondition=_service_active,
        diagnostic=SERVICE_DIAGNOSTIC,
        verify_message="incus service is not active after start",
    )


# ── Group membership ────────────────────────────────────────────


def _user_in_group(ctx: StageContext) -> bool:
    user = ctx.config.sudo_user
    if not user:
        logger.info("Not invoked through sudo; no user to add to %s", ADMIN_GROUP)
        return True
    result = ctx.runner.run(["id", "-nG", user])
    return result.ok and ADMIN_GROUP in result.stdout.split()


def _add_user_to_group(ctx: StageContext) -> None:
    ctx.run(["usermod", "-aG", ADMIN_GROUP, ctx.config.sudo_user or ""])


def add_user_to_group_stage() -> Stage:
    return Stage(
        name="add-user-to-group",
        description=f"Add the invoking user to {ADMIN_GROUP}",
        action=_add_user_to_group,
        precondition=_user_in_group,
        fatal=False,
        diagnostic=f"getent group {ADMIN_GROUP}",
    )


# ── Verification ────────────────────────────────────────────────


def _verify(ctx: StageContext) -> None:
    config = ctx.config
    if config.os_family == OSFamily.RHEL:
        incusd = ctx.path(f"{config.bin_dir}/incusd")
        version = ctx.run([incusd, "--version"]).stdout.strip()
        linkage = ctx.runner.run(["ldd", incusd], expect="cowsql")
        if not linkage.ok:
            logger.warning("incusd does not appear to link against the installed cowsql library")
    else:
        version = ctx.run(["incus", "version"]).stdout.strip()
    logger.info("Installed Incus version: %s", version or "unknown")


def verify_installation_stage() -> Stage:
    return Stage(
        name="verify-installation",
        description="Verify the installed daemon",
        action=_verify,
        postcondition=_service_active,
        diagnostic=SERVICE_DIAGNOSTIC,
        verify_message="incus service is not active",
    )


# ── Preseed initialisation ──────────────────────────────────────


def _pool_exists(ctx: StageContext) -> bool:
    return ctx.probe(["incus", "storage", "show", ctx.config.pool_name])


def _initialize(ctx: StageContext) -> None:
    storage_path = prepare_storage_path(ctx.config, ctx.mutator)
    document = generate(ctx.config.model_copy(update={"storage_path": storage_path}))
    ctx.run(
        ["incus", "admin", "init", "--preseed"],
        input=render_preseed(document),
        diagnostic="incus admin init --dump",
    )
    logger.info(
        "Initialised: pool %s at %s, bridge %s (auto IPv4/IPv6)",
        ctx.config.pool_name, storage_path, ctx.config.bridge_name,
    )


def _verify_pool(ctx: StageContext) -> bool:
    if not _pool_exists(ctx):
        raise VerificationError(
            f"storage pool {ctx.config.pool_name!r} missing after initialisation",
            diagnostic="incus storage list",
        )
    return True


def initialize_stage() -> Stage:
    return Stage(
        name="initialize",
        description="Initialise storage, network and default profile",
        action=_initialize,
        precondition=_pool_exists,
        postcondition=_verify_pool,
        diagnostic="incus admin init --dump",
    )


def tail_stages(run_init: bool) -> list[Stage]:
    """Stages every pipeline ends with, in order."""
    stages = [
        activate_service_stage(),
        add_user_to_group_stage(),
        verify_installation_stage(),
    ]
    if run_init:
        stages.append(initialize_stage())
    return stages
