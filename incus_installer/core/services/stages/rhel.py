"""
CentOS/RHEL pipeline — build Incus and its native libraries from source.

The build runs in four phases:

    toolchain   build tools, runtime packages, ID mapping, Go
    source      shallow clone, ``make deps``, ``make``
    install     binaries and libraries under the install prefix,
                library registration, RPATH patching
    service     runtime directories, admin group, systemd unit

Artifacts copied under the install prefix are permanent: the build
directory can be removed afterwards without breaking the daemon.
"""

from __future__ import annotations

import logging
import platform
import re
import shutil
from datetime import datetime
from pathlib import Path

from incus_installer.core.engine.stage import Stage, StageContext
from incus_installer.core.errors import FetchError, InstallerError, MutationError, UnsupportedSystem
from incus_installer.core.models.config import InstallationConfig
from incus_installer.core.models.fetch import FetchKind, FetchSpec
from incus_installer.core.models.mutation import MutationKind, MutationRecord
from incus_installer.core.services.service_unit import (
    ADMIN_GROUP,
    UNIT_PATH,
    SystemdService,
    unit_for_prefix,
)
from incus_installer.core.services.stages.common import configure_sysctl_stage, tail_stages
from incus_installer.core.services.stages.constants import (
    BUILD_ENV_MARKER,
    CGO_LDFLAGS_ALLOW,
    DNF_BUILD_TOOLS,
    DNF_DEV_LIBS,
    DNF_LXC,
    DNF_RUNTIME_DEPS,
    DNF_RUNTIME_TOOLS,
    EXTRA_BINARIES,
    GO_ARCH_MAP,
    GO_FALLBACK_VERSION,
    GO_MIRRORS,
    GO_PROFILE,
    GO_PROFILE_PATH,
    GO_ROOT,
    GO_VERSION_URLS,
    ID_MAP_OWNER,
    ID_MAP_RANGE,
    INCUS_REPO,
    LD_CONF_PATH,
    NATIVE_LIBS,
    NETWORK_PROBE,
    REQUIRED_BUILD_TOOLS,
    RUNTIME_DIRS,
    SERVICE_DIAGNOSTIC,
    SUBGID_PATH,
    SUBUID_PATH,
)

logger = logging.getLogger(__name__)


# ── Helpers ─────────────────────────────────────────────────────


def cgo_env(deps_dir: str) -> dict[str, str]:
    """CGO flags that point the Go build at the raft/cowsql build trees."""
    deps = deps_dir.rstrip("/")
    return {
        "CGO_CFLAGS": f"-I{deps}/raft/include/ -I{deps}/cowsql/include/",
        "CGO_LDFLAGS": f"-L{deps}/raft/.libs -L{deps}/cowsql/.libs/",
        "LD_LIBRARY_PATH": f"{deps}/raft/.libs/:{deps}/cowsql/.libs/",
        "CGO_LDFLAGS_ALLOW": CGO_LDFLAGS_ALLOW,
    }


def build_env(ctx: StageContext) -> dict[str, str]:
    """Environment for ``make`` invocations in the source tree."""
    go_root = ctx.path(GO_ROOT)
    go_path = ctx.path(ctx.config.go_path)
    return {
        **cgo_env(ctx.path(ctx.config.resolved_deps_dir)),
        "GOROOT": go_root,
        "GOPATH": go_path,
        "PATH": f"{go_root}/bin:{go_path}/bin:$PATH",
    }


def build_env_block(config: InstallationConfig) -> str:
    """Shell exports persisted for later rebuilds."""
    return "".join(
        f'export {key}="{value}"\n' for key, value in cgo_env(config.resolved_deps_dir).items()
    )


def _dnf_install(ctx: StageContext, packages: tuple[str, ...], *, diagnostic: str = "") -> None:
    ctx.run(["dnf", "install", "-y", *packages], timeout=1800,
            diagnostic=diagnostic or f"dnf info {packages[0]}")


def _rpm_installed(ctx: StageContext, packages: tuple[str, ...]) -> bool:
    return ctx.probe(["rpm", "-q", *packages])


def _lib_sources(ctx: StageContext, lib: str) -> Path:
    deps = Path(ctx.path(ctx.config.resolved_deps_dir))
    return deps / lib.removeprefix("lib") / ".libs"


# ── Toolchain ───────────────────────────────────────────────────


def _check_network(ctx: StageContext) -> None:
    ctx.run(list(NETWORK_PROBE), timeout=15, diagnostic="ip route; cat /etc/resolv.conf")


def _install_build_tools(ctx: StageContext) -> None:
    refresh = ctx.runner.run(["dnf", "makecache", "--refresh"], timeout=600)
    if not refresh.ok:
        logger.warning("Package cache refresh failed: %s", refresh.error)
    _dnf_install(ctx, DNF_BUILD_TOOLS)
    _dnf_install(ctx, DNF_DEV_LIBS)
    _dnf_install(ctx, DNF_RUNTIME_TOOLS)


def _build_tools_resolvable(ctx: StageContext) -> bool:
    missing = [t for t in REQUIRED_BUILD_TOOLS if not ctx.runner.which(t)]
    if missing:
        logger.error("Build tools still missing: %s", ", ".join(missing))
    return not missing


def _install_runtime_deps(ctx: StageContext) -> None:
    _dnf_install(ctx, DNF_RUNTIME_DEPS)
    enabled = SystemdService(ctx.runner, "iptables").enable()
    if not enabled.ok:
        logger.warning("Could not enable iptables: %s", enabled.error)


def _id_map_records(ctx: StageContext) -> list[MutationRecord]:
    return [
        MutationRecord(
            kind=MutationKind.MAPPING,
            resource=ctx.path(path),
            key=ID_MAP_OWNER,
            value=ID_MAP_RANGE,
        )
        for path in (SUBUID_PATH, SUBGID_PATH)
    ]


def _id_mapping_configured(ctx: StageContext) -> bool:
    return all(ctx.mutator.is_satisfied(r) for r in _id_map_records(ctx))


def _configure_id_mapping(ctx: StageContext) -> None:
    for record in _id_map_records(ctx):
        ctx.mutator.ensure(record)


class GoToolchain:
    """Resolves, installs and checks the Go toolchain under ``/usr/local/go``.

    The target version is resolved once per run and shared by the
    precondition, action and postcondition.
    """

    def __init__(self) -> None:
        self._version: str | None = None

    def version(self, ctx: StageContext) -> str:
        if self._version is None:
            self._version = self._resolve(ctx)
        return self._version

    def _resolve(self, ctx: StageContext) -> str:
        if ctx.config.go_version:
            return ctx.config.go_version.removeprefix("go")

        dest = Path(ctx.path("/tmp")) / "go-version.txt"
        try:
            ctx.fetcher.fetch(FetchSpec(
                sources=list(GO_VERSION_URLS),
                destination=dest,
                max_retries=1,
                timeout=ctx.config.fetch_timeout,
                delay=0,
                label="Go release version",
            ))
            first = dest.read_text(encoding="utf-8").splitlines()[:1]
        except (FetchError, OSError) as e:
            logger.warning("Could not resolve the latest Go release (%s); using %s",
                           e, GO_FALLBACK_VERSION)
            return GO_FALLBACK_VERSION
        finally:
            dest.unlink(missing_ok=True)

        version = first[0].strip().removeprefix("go") if first else ""
        if not re.fullmatch(r"\d+(\.\d+)*", version):
            logger.warning("Unexpected Go version string %r; using %s", version, GO_FALLBACK_VERSION)
            return GO_FALLBACK_VERSION
        logger.info("Target Go version: %s", version)
        return version

    def _binary(self, ctx: StageContext) -> str:
        return ctx.path(f"{GO_ROOT}/bin/go")

    def runs(self, ctx: StageContext) -> bool:
        """The installed go binary reports the target version."""
        return ctx.probe(
            [self._binary(ctx), "version"],
            expect=rf"\bgo{re.escape(self.version(ctx))}\b",
        )

    def is_current(self, ctx: StageContext) -> bool:
        return Path(self._binary(ctx)).is_file() and self.runs(ctx)

    def install(self, ctx: StageContext) -> None:
        machine = platform.machine()
        arch = GO_ARCH_MAP.get(machine)
        if arch is None:
            raise UnsupportedSystem(f"Unsupported architecture for Go: {machine}")

        # The existing toolchain is only moved aside once the new tarball is local.
        version = self.version(ctx)
        filename = f"go{version}.linux-{arch}.tar.gz"
        tarball = ctx.fetcher.fetch(FetchSpec(
            sources=[f"{mirror}/{filename}" for mirror in GO_MIRRORS],
            destination=Path(ctx.path("/tmp")) / filename,
            max_retries=ctx.config.fetch_retries,
            timeout=ctx.config.fetch_timeout,
            delay=ctx.config.fetch_delay,
            label=filename,
        ))

        go_root = Path(ctx.path(GO_ROOT))
        backup = None
        try:
            if go_root.exists():
                backup = go_root.with_name(f"go.backup.{datetime.now().strftime('%Y%m%d_%H%M%S')}")
                logger.warning("Moving existing Go installation to %s", backup)
                _rename(go_root, backup)
            ctx.run(
                ["tar", "-C", str(go_root.parent), "-xzf", str(tarball)],
                diagnostic=f"tar -tzf {tarball} | head",
            )
        except InstallerError:
            if backup is not None and backup.exists():
                _restore_go(go_root, backup)
            raise
        finally:
            tarball.unlink(missing_ok=True)

        ctx.mutator.ensure_directory(ctx.path(ctx.config.go_path))
        profile = Path(ctx.path(GO_PROFILE_PATH))
        ctx.mutator.ensure_directory(profile.parent)
        ctx.mutator.ensure_file(profile, GO_PROFILE, mode=0o644)


def _rename(source: Path, dest: Path) -> None:
    try:
        source.rename(dest)
    except OSError as e:
        raise MutationError(str(source), e.strerror or str(e)) from e


def _restore_go(go_root: Path, backup: Path) -> None:
    """Put the previous toolchain back after a failed extraction."""
    logger.warning("Restoring previous Go installation from %s", backup)
    if go_root.exists():
        shutil.rmtree(go_root, ignore_errors=True)
    _rename(backup, go_root)


# ── Source build ────────────────────────────────────────────────


def _source_present(ctx: StageContext) -> bool:
    return (Path(ctx.path(ctx.config.source_dir)) / ".git").is_dir()


def _fetch_source(ctx: StageContext) -> None:
    config = ctx.config
    build_dir = Path(ctx.path(config.build_dir))
    if ctx.mutator.ensure_directory(build_dir).created:
        ctx.on_rollback(str(build_dir), lambda: shutil.rmtree(build_dir))

    ctx.fetcher.fetch(FetchSpec(
        sources=[INCUS_REPO],
        destination=Path(ctx.path(config.source_dir)),
        kind=FetchKind.GIT,
        max_retries=config.fetch_retries,
        timeout=config.fetch_timeout,
        delay=config.fetch_delay,
        label="incus source",
    ))


def _deps_built(ctx: StageContext) -> bool:
    return all((_lib_sources(ctx, lib) / f"{lib}.so").is_file() for lib in NATIVE_LIBS)


def _build_dependencies(ctx: StageContext) -> None:
    ctx.run(
        ["make", "deps"],
        cwd=ctx.path(ctx.config.source_dir),
        env=build_env(ctx),
        timeout=3600,
        diagnostic=f"ls {ctx.config.resolved_deps_dir}",
    )


def _build_env_persisted(ctx: StageContext) -> bool:
    return ctx.mutator.is_satisfied(_build_env_record(ctx))


def _build_env_record(ctx: StageContext) -> MutationRecord:
    return MutationRecord(
        kind=MutationKind.BLOCK,
        resource=ctx.path(f"{ctx.config.home.rstrip('/')}/.bashrc"),
        key=BUILD_ENV_MARKER,
        value=build_env_block(ctx.config),
    )


def _persist_build_env(ctx: StageContext) -> None:
    ctx.mutator.ensure(_build_env_record(ctx))


def _built_incusd(ctx: StageContext) -> Path:
    return Path(ctx.path(ctx.config.go_path)) / "bin" / "incusd"


def _build_incus(ctx: StageContext) -> None:
    ctx.run(
        ["make"],
        cwd=ctx.path(ctx.config.source_dir),
        env=build_env(ctx),
        timeout=3600,
        diagnostic=f"cd {ctx.config.source_dir} && make",
    )


# ── System install ──────────────────────────────────────────────

_VERSIONED_SO = r"^{lib}\.so\.(\d+)\.\d+\.\d+$"


def _install_records(ctx: StageContext) -> list[MutationRecord]:
    """Copy and symlink records for everything placed under the prefix."""
    config = ctx.config
    go_bin = Path(ctx.path(config.go_path)) / "bin"
    bin_dir = Path(ctx.path(config.bin_dir))
    lib_dir = Path(ctx.path(config.lib_dir))
    records: list[MutationRecord] = []

    binaries = sorted(go_bin.glob("incus*")) if go_bin.is_dir() else []
    binaries += [go_bin / name for name in EXTRA_BINARIES if (go_bin / name).is_file()]
    for source in binaries:
        if source.is_file():
            records.append(MutationRecord(
                kind=MutationKind.COPY, resource=str(bin_dir / source.name),
                value=str(source), mode=0o755,
            ))

    for lib in NATIVE_LIBS:
        libs = _lib_sources(ctx, lib)
        if not libs.is_dir():
            continue
        pattern = re.compile(_VERSIONED_SO.format(lib=lib))
        for source in sorted(libs.glob(f"{lib}.so*")):
            if source.is_symlink() or not source.is_file():
                continue
            records.append(MutationRecord(
                kind=MutationKind.COPY, resource=str(lib_dir / source.name),
                value=str(source), mode=0o755,
            ))
            match = pattern.match(source.name)
            if match:
                for alias in (f"{lib}.so.{match.group(1)}", f"{lib}.so"):
                    records.append(MutationRecord(
                        kind=MutationKind.SYMLINK, resource=str(lib_dir / alias),
                        value=source.name,
                    ))
    return records


def _binaries_installed(ctx: StageContext) -> bool:
    records = _install_records(ctx)
    return bool(records) and all(ctx.mutator.is_satisfied(r) for r in records)


def _install_binaries(ctx: StageContext) -> None:
    if not _built_incusd(ctx).is_file():
        raise MutationError(str(_built_incusd(ctx)), "incusd was not built")
    ctx.mutator.ensure_directory(ctx.path(ctx.config.bin_dir))
    ctx.mutator.ensure_directory(ctx.path(ctx.config.lib_dir))
    for record in _install_records(ctx):
        ctx.mutator.ensure(record)


def _incusd_installed(ctx: StageContext) -> bool:
    return Path(ctx.path(f"{ctx.config.bin_dir}/incusd")).is_file()


def _ld_conf_record(ctx: StageContext) -> MutationRecord:
    return MutationRecord(
        kind=MutationKind.FILE,
        resource=ctx.path(LD_CONF_PATH),
        value=f"{ctx.config.lib_dir}\n",
        mode=0o644,
    )


def _cowsql_cached(ctx: StageContext) -> bool:
    return ctx.probe(["ldconfig", "-p"], expect="libcowsql")


def _libraries_registered(ctx: StageContext) -> bool:
    return ctx.mutator.is_satisfied(_ld_conf_record(ctx)) and _cowsql_cached(ctx)


def _register_libraries(ctx: StageContext) -> None:
    ctx.mutator.ensure_directory(str(Path(ctx.path(LD_CONF_PATH)).parent))
    ctx.mutator.ensure(_ld_conf_record(ctx))
    ctx.run(["ldconfig"], diagnostic="ldconfig -p | grep -E 'cowsql|raft'")


def _rpath_targets(ctx: StageContext) -> list[str]:
    config = ctx.config
    targets = [ctx.path(f"{config.bin_dir}/incusd")]
    lib_dir = Path(ctx.path(config.lib_dir))
    pattern = re.compile(_VERSIONED_SO.format(lib="libcowsql"))
    cowsql = sorted(p for p in lib_dir.glob("libcowsql.so.*") if pattern.match(p.name))
    if cowsql:
        targets.append(str(cowsql[0]))
    return targets


def _rpath_set(ctx: StageContext) -> bool:
    lib_dir = ctx.config.lib_dir
    return all(
        ctx.probe(["patchelf", "--print-rpath", target], expect=rf"^{re.escape(lib_dir)}$")
        for target in _rpath_targets(ctx)
    )


def _patch_rpath(ctx: StageContext) -> None:
    for target in _rpath_targets(ctx):
        ctx.runner.run(["patchelf", "--remove-rpath", target])
        ctx.run(
            ["patchelf", "--force-rpath", "--set-rpath", ctx.config.lib_dir, target],
            diagnostic=f"patchelf --print-rpath {target}",
        )


# ── Service ─────────────────────────────────────────────────────


def _group_exists(ctx: StageContext) -> bool:
    return ctx.probe(["getent", "group", ADMIN_GROUP])


def _runtime_prepared(ctx: StageContext) -> bool:
    dirs = all(Path(ctx.path(d)).is_dir() for d in RUNTIME_DIRS)
    return dirs and _group_exists(ctx)


def _prepare_runtime(ctx: StageContext) -> None:
    for directory in RUNTIME_DIRS:
        ctx.mutator.ensure_directory(ctx.path(directory))
    if not _group_exists(ctx):
        ctx.run(["groupadd", "--system", ADMIN_GROUP])
        logger.info("Created group %s", ADMIN_GROUP)


def _unit_record(ctx: StageContext) -> MutationRecord:
    return MutationRecord(
        kind=MutationKind.FILE,
        resource=ctx.path(UNIT_PATH),
        value=unit_for_prefix(ctx.config.install_prefix).render(),
        mode=0o644,
    )


def _unit_installed(ctx: StageContext) -> bool:
    return ctx.mutator.is_satisfied(_unit_record(ctx)) and SystemdService(ctx.runner).is_enabled()


def _write_service_unit(ctx: StageContext) -> None:
    service = SystemdService(ctx.runner)
    unit = Path(ctx.path(UNIT_PATH))
    ctx.mutator.ensure_directory(str(unit.parent))
    if ctx.mutator.ensure(_unit_record(ctx)).created:
        def remove_unit() -> None:
            service.disable()
            unit.unlink(missing_ok=True)
            service.daemon_reload()

        ctx.on_rollback(str(unit), remove_unit)

    service.daemon_reload().check("systemctl status incus")
    service.enable().check(SERVICE_DIAGNOSTIC)


def _unit_file_present(ctx: StageContext) -> bool:
    return ctx.mutator.is_satisfied(_unit_record(ctx))


# ── Cleanup ─────────────────────────────────────────────────────


def _cleanup_targets(ctx: StageContext) -> list[Path]:
    targets = [Path(ctx.path(ctx.config.build_dir))]
    if ctx.config.cleanup_deps:
        targets.append(Path(ctx.path(ctx.config.resolved_deps_dir)))
    return targets


def _build_removed(ctx: StageContext) -> bool:
    return not any(p.exists() for p in _cleanup_targets(ctx))


def _cleanup_build(ctx: StageContext) -> None:
    for target in _cleanup_targets(ctx):
        if target.exists():
            logger.info("Removing %s", target)
            try:
                shutil.rmtree(target)
            except OSError as e:
                raise MutationError(str(target), e.strerror or str(e)) from e
    if ctx.config.cleanup_deps:
        logger.warning("Dependency sources removed; rebuilding Incus requires a full rerun")


def rhel_stages(config: InstallationConfig) -> list[Stage]:
    """Ordered CentOS/RHEL source-build pipeline for ``config``."""
    go = GoToolchain()

    stages = [
        Stage(
            name="check-network",
            description="Check outbound network connectivity",
            action=_check_network,
            fatal=False,
        ),
        Stage(
            name="install-build-tools",
            description="Install compilers, autotools and development libraries",
            action=_install_build_tools,
            precondition=lambda ctx: _rpm_installed(
                ctx, DNF_BUILD_TOOLS + DNF_DEV_LIBS + DNF_RUNTIME_TOOLS),
            postcondition=_build_tools_resolvable,
            verify_message="required build tools are missing after installation",
        ),
        Stage(
            name="install-lxc",
            description="Install optional LXC packages",
            action=lambda ctx: _dnf_install(ctx, DNF_LXC),
            precondition=lambda ctx: _rpm_installed(ctx, DNF_LXC),
            fatal=False,
        ),
        Stage(
            name="install-runtime-deps",
            description="Install networking and firewall runtime dependencies",
            action=_install_runtime_deps,
            precondition=lambda ctx: _rpm_installed(ctx, DNF_RUNTIME_DEPS),
        ),
        Stage(
            name="configure-id-mapping",
            description=f"Map subordinate IDs {ID_MAP_RANGE} to {ID_MAP_OWNER}",
            action=_configure_id_mapping,
            precondition=_id_mapping_configured,
        ),
        configure_sysctl_stage(),
        Stage(
            name="install-go",
            description="Install the Go toolchain",
            action=go.install,
            precondition=go.is_current,
            postcondition=go.runs,
            diagnostic=f"{GO_ROOT}/bin/go version",
            verify_message="the installed go binary does not report the target version",
        ),
        Stage(
            name="fetch-source",
            description=f"Clone {INCUS_REPO}",
            action=_fetch_source,
            precondition=_source_present,
            postcondition=_source_present,
            verify_message="source tree has no git metadata after clone",
        ),
        Stage(
            name="build-dependencies",
            description="Build raft and cowsql",
            action=_build_dependencies,
            precondition=_deps_built,
            postcondition=_deps_built,
            verify_message="libraft.so or libcowsql.so was not produced",
        ),
        Stage(
            name="persist-build-env",
            description="Persist the CGO build environment",
            action=_persist_build_env,
            precondition=_build_env_persisted,
        ),
        Stage(
            name="build-incus",
            description="Build incus",
            action=_build_incus,
            precondition=lambda ctx: _built_incusd(ctx).is_file(),
            postcondition=lambda ctx: _built_incusd(ctx).is_file(),
            verify_message="incusd was not produced by the build",
        ),
        Stage(
            name="install-binaries",
            description=f"Install binaries and libraries under {config.install_prefix}",
            action=_install_binaries,
            precondition=_binaries_installed,
            postcondition=_incusd_installed,
            verify_message=f"{config.bin_dir}/incusd is missing after install",
        ),
        Stage(
            name="register-libraries",
            description=f"Register {config.lib_dir} with the dynamic linker",
            action=_register_libraries,
            precondition=_libraries_registered,
            postcondition=_cowsql_cached,
            diagnostic="ldconfig -p | grep cowsql",
            verify_message="libcowsql is not resolvable after ldconfig",
        ),
        Stage(
            name="patch-rpath",
            description="Point incusd and libcowsql at the installed libraries",
            action=_patch_rpath,
            precondition=_rpath_set,
            postcondition=_rpath_set,
            verify_message="RPATH was not updated",
        ),
        Stage(
            name="prepare-runtime",
            description=f"Create runtime directories and the {ADMIN_GROUP} group",
            action=_prepare_runtime,
            precondition=_runtime_prepared,
            postcondition=_runtime_prepared,
        ),
        Stage(
            name="write-service-unit",
            description="Install and enable the systemd unit",
            action=_write_service_unit,
            precondition=_unit_installed,
            postcondition=_unit_file_present,
            diagnostic="systemctl cat incus",
        ),
        *tail_stages(config.run_init),
    ]

    if config.cleanup_build:
        stages.append(Stage(
            name="cleanup-build",
            description="Remove build artifacts",
            action=_cleanup_build,
            precondition=_build_removed,
            fatal=False,
        ))
    return stages
