"""Host environment detection.

``profile()`` inspects the running host once and returns an immutable
:class:`EnvironmentDescriptor`. Every later decision (package installation,
service queries, renewal scheduling) branches on that descriptor instead of
probing the host again.
"""
from __future__ import annotations

import logging
import platform
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence

from .errors import EnvironmentUndetectable

_LOG = logging.getLogger("ipcert.environment")


class OsFamily(str, Enum):
    DEBIAN = "debian"
    REDHAT = "redhat"
    SUSE = "suse"
    ARCH = "arch"
    ALPINE = "alpine"
    GENTOO = "gentoo"
    FREEBSD = "freebsd"
    OPENBSD = "openbsd"
    NETBSD = "netbsd"
    DRAGONFLY = "dragonfly"
    MACOS = "macos"
    UNKNOWN = "unknown"


class PackageManager(str, Enum):
    APT = "apt"
    APT_GET = "apt-get"
    DNF = "dnf"
    YUM = "yum"
    ZYPPER = "zypper"
    PACMAN = "pacman"
    APK = "apk"
    EMERGE = "emerge"
    PKG = "pkg"
    PKG_ADD = "pkg_add"
    PKGIN = "pkgin"
    BREW = "brew"
    UNKNOWN = "unknown"


class InitSystem(str, Enum):
    SYSTEMD = "systemd"
    OPENRC = "openrc"
    SYSV = "sysv"
    BSD_RC = "bsd_rc"
    LAUNCHD = "launchd"
    UNKNOWN = "unknown"


BSD_FAMILIES = frozenset({OsFamily.FREEBSD, OsFamily.OPENBSD, OsFamily.NETBSD, OsFamily.DRAGONFLY})

# Checked in order; the first fragment found in the (lower-cased) OS name wins.
OS_NAME_TABLE: tuple[tuple[str, OsFamily], ...] = (
    ("ubuntu", OsFamily.DEBIAN),
    ("debian", OsFamily.DEBIAN),
    ("mint", OsFamily.DEBIAN),
    ("raspbian", OsFamily.DEBIAN),
    ("kali", OsFamily.DEBIAN),
    ("pop!_os", OsFamily.DEBIAN),
    ("elementary", OsFamily.DEBIAN),
    ("centos", OsFamily.REDHAT),
    ("rhel", OsFamily.REDHAT),
    ("red hat", OsFamily.REDHAT),
    ("redhat", OsFamily.REDHAT),
    ("fedora", OsFamily.REDHAT),
    ("rocky", OsFamily.REDHAT),
    ("alma", OsFamily.REDHAT),
    ("oracle", OsFamily.REDHAT),
    ("amazon", OsFamily.REDHAT),
    ("suse", OsFamily.SUSE),
    ("sles", OsFamily.SUSE),
    ("manjaro", OsFamily.ARCH),
    ("endeavouros", OsFamily.ARCH),
    ("arch", OsFamily.ARCH),
    ("alpine", OsFamily.ALPINE),
    ("gentoo", OsFamily.GENTOO),
    ("freebsd", OsFamily.FREEBSD),
    ("openbsd", OsFamily.OPENBSD),
    ("netbsd", OsFamily.NETBSD),
    ("dragonfly", OsFamily.DRAGONFLY),
    ("darwin", OsFamily.MACOS),
    ("mac os", OsFamily.MACOS),
    ("macos", OsFamily.MACOS),
)

# Probed in this order when the OS name is not recognised.
PACKAGE_MANAGER_PROBES: tuple[tuple[PackageManager, OsFamily], ...] = (
    (PackageManager.APT, OsFamily.DEBIAN),
    (PackageManager.APT_GET, OsFamily.DEBIAN),
    (PackageManager.DNF, OsFamily.REDHAT),
    (PackageManager.YUM, OsFamily.REDHAT),
    (PackageManager.ZYPPER, OsFamily.SUSE),
    (PackageManager.PACMAN, OsFamily.ARCH),
    (PackageManager.APK, OsFamily.ALPINE),
    (PackageManager.EMERGE, OsFamily.GENTOO),
    (PackageManager.PKG, OsFamily.FREEBSD),
    (PackageManager.PKG_ADD, OsFamily.OPENBSD),
    (PackageManager.PKGIN, OsFamily.NETBSD),
    (PackageManager.BREW, OsFamily.MACOS),
)

# Preferred manager first; the second entry is used when the first is absent.
FAMILY_PACKAGE_MANAGERS: Dict[OsFamily, tuple[PackageManager, ...]] = {
    OsFamily.DEBIAN: (PackageManager.APT, PackageManager.APT_GET),
    OsFamily.REDHAT: (PackageManager.DNF, PackageManager.YUM),
    OsFamily.SUSE: (PackageManager.ZYPPER,),
    OsFamily.ARCH: (PackageManager.PACMAN,),
    OsFamily.ALPINE: (PackageManager.APK,),
    OsFamily.GENTOO: (PackageManager.EMERGE,),
    OsFamily.FREEBSD: (PackageManager.PKG,),
    OsFamily.DRAGONFLY: (PackageManager.PKG,),
    OsFamily.OPENBSD: (PackageManager.PKG_ADD,),
    OsFamily.NETBSD: (PackageManager.PKGIN,),
    OsFamily.MACOS: (PackageManager.BREW,),
}

_MARKER_FILES: tuple[tuple[str, str], ...] = (
    ("etc/debian_version", "Debian"),
    ("etc/redhat-release", "RedHat"),
    ("etc/SuSE-release", "SUSE"),
    ("etc/arch-release", "Arch Linux"),
    ("etc/alpine-release", "Alpine Linux"),
    ("etc/gentoo-release", "Gentoo"),
)

_32BIT_ARCHES = frozenset({"i386", "i486", "i586", "i686", "x86", "armv6l", "armv7l", "armhf", "arm"})


@dataclass(frozen=True)
class EnvironmentDescriptor:
    os_family: OsFamily
    package_manager: PackageManager
    init_system: InitSystem
    architecture: str
    os_name: str = ""
    os_version: str = ""

    @property
    def is_bsd(self) -> bool:
        return self.os_family in BSD_FAMILIES

    @property
    def is_32bit(self) -> bool:
        return self.architecture.lower() in _32BIT_ARCHES

    @property
    def is_arm(self) -> bool:
        arch = self.architecture.lower()
        return arch.startswith("arm") or arch.startswith("aarch")

    def summary(self) -> str:
        name = f"{self.os_name} {self.os_version}".strip() or "unknown OS"
        return (
            f"{name} (family: {self.os_family.value}, packages: {self.package_manager.value}, "
            f"init: {self.init_system.value}, arch: {self.architecture or 'unknown'})"
        )


def classify_os_name(name: str) -> OsFamily:
    lowered = (name or "").lower()
    if not lowered:
        return OsFamily.UNKNOWN
    for fragment, family in OS_NAME_TABLE:
        if fragment in lowered:
            return family
    return OsFamily.UNKNOWN


def _parse_os_release(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        try:
            parsed = shlex.split(raw)
        except ValueError:
            parsed = [raw.strip("\"'")]
        values[key.strip()] = parsed[0] if parsed else ""
    return values


def _command_output(argv: Sequence[str]) -> str:
    if shutil.which(argv[0]) is None:
        return ""
    try:
        result = subprocess.run(
            list(argv),
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return ""
    if result.returncode != 0:
        return ""
    return (result.stdout or "").strip()


class EnvironmentProfiler:
    """Detect OS family, package manager, init system and architecture.

    ``root`` lets tests point the file probes at a fake filesystem tree.
    """

    def __init__(self, root: Path | str = "/", which: Optional[Callable[[str], Optional[str]]] = None) -> None:
        self.root = Path(root)
        self._which = which or shutil.which

    def _path(self, relative: str) -> Path:
        return self.root / relative

    def _has(self, binary: str) -> bool:
        return self._which(binary) is not None

    def _probe_os_release(self) -> tuple[str, str, str] | None:
        path = self._path("etc/os-release")
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None
        values = _parse_os_release(text)
        name = values.get("NAME") or values.get("ID") or ""
        if not name:
            return None
        hint = " ".join(filter(None, (values.get("ID", ""), values.get("ID_LIKE", ""))))
        return name, values.get("VERSION_ID", ""), hint

    def _probe_lsb_release(self) -> tuple[str, str, str] | None:
        if not self._has("lsb_release"):
            return None
        name = _command_output(["lsb_release", "-si"])
        if not name:
            return None
        return name, _command_output(["lsb_release", "-sr"]), ""

    def _probe_marker_files(self) -> tuple[str, str, str] | None:
        for relative, name in _MARKER_FILES:
            path = self._path(relative)
            if not path.is_file():
                continue
            try:
                version = path.read_text(encoding="utf-8", errors="replace").strip().splitlines()
            except OSError:
                version = []
            return name, version[0] if version else "", ""
        return None

    def _probe_uname(self) -> tuple[str, str, str] | None:
        system = platform.system()
        if not system:
            return None
        return system, platform.release(), ""

    def detect_os(self) -> tuple[str, str, OsFamily]:
        probes = (
            self._probe_os_release,
            self._probe_lsb_release,
            self._probe_marker_files,
            self._probe_uname,
        )
        for probe in probes:
            found = probe()
            if not found:
                continue
            name, version, hint = found
            family = classify_os_name(name)
            if family is OsFamily.UNKNOWN and hint:
                family = classify_os_name(hint)
            _LOG.debug("OS probe %s matched %r (family %s)", probe.__name__, name, family.value)
            return name, version, family
        raise EnvironmentUndetectable("Unable to detect the operating system")

    def detect_package_manager(self, family: OsFamily) -> tuple[PackageManager, OsFamily]:
        for candidate in FAMILY_PACKAGE_MANAGERS.get(family, ()):
            if self._has(candidate.value):
                return candidate, family
        if family in FAMILY_PACKAGE_MANAGERS:
            return FAMILY_PACKAGE_MANAGERS[family][0], family
        for manager, guessed_family in PACKAGE_MANAGER_PROBES:
            if self._has(manager.value):
                _LOG.warning(
                    "Unrecognised OS; guessing %s family from %s", guessed_family.value, manager.value
                )
                return manager, guessed_family
        return PackageManager.UNKNOWN, family

    def detect_init_system(self, family: OsFamily) -> InitSystem:
        # Supervisor control directories first.
        if self._path("run/systemd/system").is_dir():
            return InitSystem.SYSTEMD
        if self._path("run/openrc").is_dir():
            return InitSystem.OPENRC
        if family is OsFamily.MACOS or self._path("sbin/launchd").exists():
            return InitSystem.LAUNCHD
        # Marker files.
        if family in BSD_FAMILIES and self._path("etc/rc.conf").exists():
            return InitSystem.BSD_RC
        if self._path("sbin/openrc").exists():
            return InitSystem.OPENRC
        if self._path("etc/inittab").exists() and self._path("etc/init.d").is_dir():
            return InitSystem.SYSV
        # Binaries.
        if self._has("systemctl"):
            return InitSystem.SYSTEMD
        if self._has("rc-service") or self._has("openrc"):
            return InitSystem.OPENRC
        if self._has("launchctl"):
            return InitSystem.LAUNCHD
        if family in BSD_FAMILIES and self._has("service"):
            return InitSystem.BSD_RC
        if self._has("update-rc.d") or self._has("chkconfig") or self._has("service"):
            return InitSystem.SYSV
        return InitSystem.UNKNOWN

    def profile(self) -> EnvironmentDescriptor:
        name, version, family = self.detect_os()
        manager, family = self.detect_package_manager(family)
        init_system = self.detect_init_system(family)
        descriptor = EnvironmentDescriptor(
            os_family=family,
            package_manager=manager,
            init_system=init_system,
            architecture=platform.machine() or "",
            os_name=name,
            os_version=version,
        )
        if descriptor.is_32bit:
            _LOG.warning(
                "32-bit architecture detected (%s); recent certbot releases may not be available",
                descriptor.architecture,
            )
        elif descriptor.is_arm:
            _LOG.warning(
                "ARM architecture detected (%s); certbot packages may lag behind x86_64",
                descriptor.architecture,
            )
        if family is OsFamily.UNKNOWN:
            _LOG.warning("Unrecognised operating system %r; continuing with best-effort defaults", name)
        _LOG.info("Detected OS: %s", descriptor.summary())
        return descriptor


def profile(root: Path | str = "/") -> EnvironmentDescriptor:
    return EnvironmentProfiler(root).profile()


__all__ = [
    "EnvironmentDescriptor",
    "EnvironmentProfiler",
    "InitSystem",
    "OsFamily",
    "PackageManager",
    "classify_os_name",
    "profile",
]
