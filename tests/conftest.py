"""
Shared test fixtures and configuration.

Every test host lives under ``tmp_path``: ``InstallationConfig.root``
points there, so stages read and write real files without touching
the machine running the tests. External commands go to a
``MockCommandRunner``.
"""

import re
import textwrap
from pathlib import Path

import pytest

from incus_installer.adapters.mock import MockCommandRunner
from incus_installer.core.models.config import InstallationConfig, OSFamily

DEBIAN_OS_RELEASE = textwrap.dedent("""\
    PRETTY_NAME="Debian GNU/Linux 12 (bookworm)"
    NAME="Debian GNU/Linux"
    VERSION_ID="12"
    VERSION_CODENAME=bookworm
    ID=debian
""")

ROCKY_OS_RELEASE = textwrap.dedent("""\
    NAME="Rocky Linux"
    VERSION="8.9 (Green Obsidian)"
    ID="rocky"
    ID_LIKE="rhel centos fedora"
    VERSION_ID="8.9"
    PRETTY_NAME="Rocky Linux 8.9 (Green Obsidian)"
""")


def make_host_root(root: Path, os_release: str = DEBIAN_OS_RELEASE) -> Path:
    """Create a minimal filesystem tree with an os-release file."""
    (root / "etc").mkdir(parents=True, exist_ok=True)
    (root / "etc" / "os-release").write_text(os_release)
    return root


def fresh_host(runner: MockCommandRunner, root: Path) -> MockCommandRunner:
    """Script ``runner`` to behave like a host with nothing installed yet.

    State probes (packages, service, storage pool, linker cache, RPATH)
    report "absent" until the command that creates that state has run,
    and build commands leave their artifacts under ``root``.
    """
    packages: set[str] = set()

    def install_packages(cmd: list[str]) -> None:
        packages.update(a for a in cmd[2:] if not a.startswith("-"))

    def rpm_query(cmd: list[str]) -> None:
        joined = " ".join(cmd)
        if all(p in packages for p in cmd[2:]):
            runner.set_output(joined, "\n".join(cmd[2:]))
        else:
            runner.set_failure(joined, stderr="package is not installed")

    def dpkg_query(cmd: list[str]) -> None:
        joined = " ".join(cmd)
        if cmd[-1] in packages:
            runner.set_output(joined, "install ok installed")
        else:
            runner.set_failure(joined, stderr=f"dpkg-query: no packages found matching {cmd[-1]}")

    runner.on("apt-get install", install_packages)
    runner.on("dnf install", install_packages)
    runner.on("rpm -q", rpm_query)
    runner.on("dpkg-query", dpkg_query)

    # Service manager
    def unit_state(probe: str, active: bool, stderr: str):
        def hook(cmd: list[str]) -> None:
            if cmd[-1] != "incus":
                return
            if active:
                runner.clear(probe)
            else:
                runner.set_failure(probe, stderr=stderr)
        return hook

    runner.set_failure("systemctl is-active", stderr="inactive")
    runner.set_failure("systemctl is-enabled", stderr="disabled")
    runner.on("systemctl enable", unit_state("systemctl is-enabled", True, ""))
    runner.on("systemctl start", unit_state("systemctl is-active", True, ""))
    runner.on("systemctl stop", unit_state("systemctl is-active", False, "inactive"))
    runner.on("systemctl disable", unit_state("systemctl is-enabled", False, "disabled"))

    # Group membership
    runner.on("usermod", lambda cmd: runner.set_output(f"id -nG {cmd[-1]}", f"{cmd[-1]} {cmd[-2]}"))

    # Daemon initialisation
    runner.set_failure("incus storage show", stderr="Storage pool not found")
    runner.on("incus admin init", lambda cmd: runner.clear("incus storage show"))

    def dearmor(cmd: list[str]) -> None:
        out = Path(cmd[cmd.index("-o") + 1])
        out.write_bytes(b"\x99\x01\x0dkeyring")

    runner.on("gpg", dearmor)

    # Toolchain and source build
    def extract_go(cmd: list[str]) -> None:
        tarball = Path(cmd[cmd.index("-xzf") + 1]).name
        version = re.match(r"go([\d.]+)\.linux", tarball).group(1)
        go_bin = Path(cmd[cmd.index("-C") + 1]) / "go" / "bin" / "go"
        go_bin.parent.mkdir(parents=True, exist_ok=True)
        go_bin.write_text("#!/bin/sh\n")
        runner.set_output(f"{go_bin} version", f"go version go{version} linux/amd64")

    def clone(cmd: list[str]) -> None:
        (Path(cmd[-1]) / ".git").mkdir(parents=True)

    def make_deps(cmd: list[str]) -> None:
        deps = root / "root" / "go" / "deps"
        for lib, major in (("raft", "2"), ("cowsql", "0")):
            libs = deps / lib / ".libs"
            libs.mkdir(parents=True, exist_ok=True)
            full = f"lib{lib}.so.{major}.0.0"
            (libs / full).write_bytes(f"ELF {lib}".encode())
            (libs / f"lib{lib}.so.{major}").symlink_to(full)
            (libs / f"lib{lib}.so").symlink_to(full)

    def make(cmd: list[str]) -> None:
        go_bin = root / "root" / "go" / "bin"
        go_bin.mkdir(parents=True, exist_ok=True)
        for name in ("incus", "incusd", "incus-agent", "lxc-to-incus", "lxd-to-incus"):
            (go_bin / name).write_bytes(f"ELF {name}".encode())

    def ldconfig(cmd: list[str]) -> None:
        if cmd == ["ldconfig"]:
            runner.set_output(
                "ldconfig -p",
                "\tlibcowsql.so.0 (libc6,x86-64) => /usr/local/lib/libcowsql.so.0",
            )

    def set_rpath(cmd: list[str]) -> None:
        runner.set_output(f"patchelf --print-rpath {cmd[-1]}", f"{cmd[-2]}\n")

    runner.on("tar", extract_go)
    runner.on("git clone", clone)
    runner.on("make deps", make_deps)
    runner.on("make", make)
    runner.on("ldconfig", ldconfig)
    runner.on("patchelf --force-rpath", set_rpath)
    return runner


def fake_download(url: str, dest: Path, timeout: int) -> None:
    """Downloader that writes a small placeholder file."""
    dest.write_bytes(f"downloaded from {url}".encode())


def no_sleep(seconds: float) -> None:
    pass


@pytest.fixture
def host_root(tmp_path: Path) -> Path:
    """A Debian host filesystem under tmp_path."""
    return make_host_root(tmp_path / "host")


@pytest.fixture
def debian_config(host_root: Path) -> InstallationConfig:
    return InstallationConfig(
        os_family=OSFamily.DEBIAN,
        distro="debian",
        distro_version="12",
        codename="bookworm",
        root=str(host_root),
        sudo_user="alice",
        settle_seconds=0,
        fetch_delay=0,
    )


@pytest.fixture
def rhel_config(tmp_path: Path) -> InstallationConfig:
    root = make_host_root(tmp_path / "rocky", ROCKY_OS_RELEASE)
    return InstallationConfig(
        os_family=OSFamily.RHEL,
        distro="rocky",
        distro_version="8.9",
        root=str(root),
        go_version="1.23.4",
        settle_seconds=0,
        fetch_delay=0,
    )


@pytest.fixture
def mock_runner() -> MockCommandRunner:
    return MockCommandRunner()


@pytest.fixture
def x86_64(monkeypatch):
    """Pin the reported machine architecture."""
    monkeypatch.setattr("platform.machine", lambda: "x86_64")
