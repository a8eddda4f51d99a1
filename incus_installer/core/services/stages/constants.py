"""
Stage data — package names, sources, paths and fixed file contents.

Pure data, no I/O.
"""

from __future__ import annotations

# ── Debian / Ubuntu (Zabbly packages) ───────────────────────────

APT_PREREQUISITES = ("curl", "gnupg2", "software-properties-common")
APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

ZABBLY_KEY_URL = "https://pkgs.zabbly.com/key.asc"
KEYRING_DIR = "/etc/apt/keyrings"
KEYRING_PATH = "/etc/apt/keyrings/zabbly.gpg"
SOURCES_LIST_PATH = "/etc/apt/sources.list.d/zabbly-incus-stable.list"
ZABBLY_REPO_URL = "https://pkgs.zabbly.com/incus/stable"

# ── CentOS / RHEL (source build) ────────────────────────────────

DNF_BUILD_TOOLS = ("git", "make", "gcc", "autoconf", "automake", "libtool", "pkg-config")
DNF_DEV_LIBS = ("libuv-devel", "sqlite-devel", "libacl-devel", "libcap-devel", "libudev-devel")
DNF_RUNTIME_TOOLS = ("attr", "patchelf", "wget", "curl")
DNF_LXC = ("lxc", "lxc-libs", "lxc-devel")
DNF_RUNTIME_DEPS = ("iptables", "iptables-services", "dnsmasq", "ebtables", "iproute", "ipset")

# Verified after the build-tool install; setfattr comes from ``attr``.
REQUIRED_BUILD_TOOLS = ("git", "make", "gcc", "pkg-config", "patchelf", "setfattr", "wget")

NETWORK_PROBE = ("ping", "-c", "1", "-W", "5", "8.8.8.8")

INCUS_REPO = "https://github.com/lxc/incus"

GO_ROOT = "/usr/local/go"
GO_PROFILE_PATH = "/etc/profile.d/go.sh"
GO_FALLBACK_VERSION = "1.23.4"
GO_VERSION_URLS = (
    "https://go.dev/VERSION?m=text",
    "https://golang.org/VERSION?m=text",
)
GO_MIRRORS = (
    "https://go.dev/dl",
    "https://golang.google.cn/dl",
    "https://mirrors.aliyun.com/golang",
)
GO_ARCH_MAP = {"x86_64": "amd64", "amd64": "amd64", "aarch64": "arm64", "arm64": "arm64"}

GO_PROFILE = """\
export GOROOT=/usr/local/go
export GOPATH=$HOME/go
export GOBIN=$GOPATH/bin
export PATH=$PATH:$GOROOT/bin:$GOBIN
export GOPROXY=https://goproxy.cn,direct
export GO111MODULE=on
"""

BUILD_ENV_MARKER = "# Incus build environment"
CGO_LDFLAGS_ALLOW = "(-Wl,-wrap,pthread_create)|(-Wl,-z,now)"

NATIVE_LIBS = ("libraft", "libcowsql")
EXTRA_BINARIES = ("lxc-to-incus", "lxd-to-incus")

LD_CONF_PATH = "/etc/ld.so.conf.d/incus.conf"
RUNTIME_DIRS = ("/var/lib/incus", "/var/log/incus", "/etc/incus")

# ── Shared host configuration ───────────────────────────────────

SYSCTL_CONF = "/etc/sysctl.conf"
SYSCTL_LINES = (
    "net.ipv4.ip_forward=1",
    "net.ipv6.conf.all.forwarding=1",
)

SUBUID_PATH = "/etc/subuid"
SUBGID_PATH = "/etc/subgid"
ID_MAP_OWNER = "root"
ID_MAP_RANGE = "100000:65536"

SERVICE_DIAGNOSTIC = "journalctl -u incus -n 50"
