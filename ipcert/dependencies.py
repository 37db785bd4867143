"""Prerequisite checks and installation.

The resolver is idempotent: tools that already pass their self-test are left
alone, and package installation only runs when something is missing.
Installation failures are retried a fixed number of times; anything still
missing afterwards is reported together with OS-specific manual steps.
"""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import socket
import subprocess
import tempfile
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Sequence
from urllib.parse import urlparse

from .certbot import STAGING_ACME_URL, CertbotClient
from .context import RunContext
from .environment import EnvironmentDescriptor, InitSystem, OsFamily, PackageManager
from .errors import NetworkFailure, UnresolvedDependencies

_LOG = logging.getLogger("ipcert.dependencies")

MAX_INSTALL_ATTEMPTS = 3
INSTALL_RETRY_DELAY_SEC = 10.0
MIN_TMP_FREE_BYTES = 100 * 1024 * 1024
MIN_MEMORY_BYTES = 256 * 1024 * 1024
NETWORK_TIMEOUT_SEC = 10.0

# Each critical tool must run its self-test successfully, not merely exist.
CRITICAL_TOOLS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("curl", ("curl", "--version")),
    ("openssl", ("openssl", "version")),
    ("python3", ("python3", "--version")),
)

# Any one of these satisfies the DNS lookup requirement.
DNS_TOOLS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("dig", ("dig", "-v")),
    ("host", ("host", "-V")),
    ("nslookup", ("nslookup", "-version")),
)
DNS_REQUIREMENT = "dns-lookup (dig, host or nslookup)"

_PACKAGES: Dict[OsFamily, tuple[str, ...]] = {
    OsFamily.DEBIAN: ("curl", "openssl", "dnsutils", "python3", "ca-certificates"),
    OsFamily.REDHAT: ("curl", "openssl", "bind-utils", "python3"),
    OsFamily.SUSE: ("curl", "openssl", "bind-utils", "python3"),
    OsFamily.ARCH: ("curl", "openssl", "bind", "python"),
    OsFamily.ALPINE: ("curl", "openssl", "bind-tools", "python3"),
    OsFamily.GENTOO: ("net-misc/curl", "dev-libs/openssl", "net-dns/bind-tools", "dev-lang/python"),
    OsFamily.FREEBSD: ("curl", "openssl", "bind-tools", "python3"),
    OsFamily.DRAGONFLY: ("curl", "openssl", "bind-tools", "python3"),
    OsFamily.OPENBSD: ("curl", "python%3"),
    OsFamily.NETBSD: ("curl", "openssl", "bind", "python311"),
    OsFamily.MACOS: ("curl", "openssl", "bind", "python"),
}

_CERTBOT_NATIVE_PACKAGES: Dict[OsFamily, tuple[str, ...]] = {
    OsFamily.FREEBSD: ("py311-certbot",),
    OsFamily.DRAGONFLY: ("py311-certbot",),
    OsFamily.OPENBSD: ("certbot",),
    OsFamily.NETBSD: ("py311-certbot",),
    OsFamily.MACOS: ("certbot",),
    OsFamily.ALPINE: ("certbot",),
    OsFamily.ARCH: ("certbot",),
    OsFamily.GENTOO: ("app-crypt/certbot",),
}


def install_commands(manager: PackageManager, packages: Sequence[str]) -> list[list[str]]:
    """Package-manager invocations that install ``packages``."""

    pkgs = list(packages)
    table: Dict[PackageManager, list[list[str]]] = {
        PackageManager.APT: [["apt", "update"], ["apt", "install", "-y", *pkgs]],
        PackageManager.APT_GET: [["apt-get", "update"], ["apt-get", "install", "-y", *pkgs]],
        PackageManager.DNF: [["dnf", "install", "-y", *pkgs]],
        PackageManager.YUM: [["yum", "install", "-y", *pkgs]],
        PackageManager.ZYPPER: [["zypper", "--non-interactive", "install", *pkgs]],
        PackageManager.PACMAN: [["pacman", "-Sy", "--noconfirm", "--needed", *pkgs]],
        PackageManager.APK: [["apk", "add", "--no-cache", *pkgs]],
        PackageManager.EMERGE: [["emerge", "--noreplace", *pkgs]],
        PackageManager.PKG: [["pkg", "install", "-y", *pkgs]],
        PackageManager.PKG_ADD: [["pkg_add", "-I", *pkgs]],
        PackageManager.PKGIN: [["pkgin", "-y", "install", *pkgs]],
        PackageManager.BREW: [["brew", "install", *pkgs]],
    }
    return table.get(manager, [])


def manual_instructions(env: EnvironmentDescriptor, missing: Sequence[str]) -> list[str]:
    packages = _PACKAGES.get(env.os_family)
    commands = install_commands(env.package_manager, packages or ())
    lines = [f"Install the missing tools manually: {', '.join(missing)}"]
    if commands:
        lines.append(f"On {env.os_family.value} run:")
        lines.extend(f"  sudo {shlex.join(cmd)}" for cmd in commands)
    else:
        lines.append(
            "No package mapping is known for this system; install curl, openssl, "
            "python3 and one of dig/host/nslookup with your package manager"
        )
    return lines


def _self_test(argv: Sequence[str]) -> bool:
    if shutil.which(argv[0]) is None:
        return False
    try:
        result = subprocess.run(
            list(argv),
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=15,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0


def _available_memory_bytes(meminfo: Path = Path("/proc/meminfo")) -> int | None:
    try:
        text = meminfo.read_text(encoding="utf-8")
    except OSError:
        return None
    for line in text.splitlines():
        if line.startswith("MemAvailable:"):
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                return int(parts[1]) * 1024
    return None


@dataclass
class DependencyReport:
    present: list[str] = field(default_factory=list)
    installed: list[str] = field(default_factory=list)
    dns_tool: str | None = None
    attempts: int = 0


class DependencyResolver:
    def __init__(
        self,
        env: EnvironmentDescriptor,
        *,
        context: RunContext | None = None,
        max_attempts: int = MAX_INSTALL_ATTEMPTS,
        retry_delay: float = INSTALL_RETRY_DELAY_SEC,
        sleep: Callable[[float], None] = time.sleep,
        probe_url: str = STAGING_ACME_URL,
    ) -> None:
        self.env = env
        self.context = context or RunContext()
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay = max(0.0, float(retry_delay))
        self._sleep = sleep
        self.probe_url = probe_url

    # ---- pre-flight -------------------------------------------------------

    def check_disk_space(self) -> None:
        tmp_dir = tempfile.gettempdir()
        try:
            free = shutil.disk_usage(tmp_dir).free
        except OSError as exc:
            self.context.warn(f"Unable to determine free space in {tmp_dir}: {exc}", _LOG)
            return
        if free < MIN_TMP_FREE_BYTES:
            self.context.warn(
                f"Low disk space in {tmp_dir}: {free // (1024 * 1024)} MiB free", _LOG
            )

    def check_memory(self) -> None:
        available = _available_memory_bytes()
        if available is not None and available < MIN_MEMORY_BYTES:
            self.context.warn(
                f"Low available memory: {available // (1024 * 1024)} MiB", _LOG
            )

    def check_network(self) -> None:
        """DNS resolution plus one HTTPS request; any failure is fatal."""

        host = urlparse(self.probe_url).hostname or ""
        try:
            socket.getaddrinfo(host, 443, proto=socket.IPPROTO_TCP)
        except (socket.gaierror, OSError) as exc:
            raise NetworkFailure(
                f"DNS resolution of {host} failed: {exc}",
                remediation=("Check /etc/resolv.conf and outbound DNS access",),
            ) from exc
        try:
            with urllib.request.urlopen(self.probe_url, timeout=NETWORK_TIMEOUT_SEC) as response:
                response.read(1)
        except (urllib.error.URLError, OSError) as exc:
            raise NetworkFailure(
                f"HTTPS request to {self.probe_url} failed: {exc}",
                remediation=("Check outbound HTTPS (port 443) access and proxy settings",),
            ) from exc
        _LOG.debug("Network reachability confirmed via %s", self.probe_url)

    def preflight(self) -> None:
        self.check_disk_space()
        self.check_memory()
        self.check_network()

    # ---- tool checks ------------------------------------------------------

    def find_missing(self, report: DependencyReport | None = None) -> list[str]:
        missing: list[str] = []
        for name, argv in CRITICAL_TOOLS:
            if _self_test(argv):
                if report is not None and name not in report.present:
                    report.present.append(name)
            else:
                _LOG.warning("Missing or broken dependency: %s", name)
                missing.append(name)
        dns_tool = next((name for name, argv in DNS_TOOLS if _self_test(argv)), None)
        if dns_tool is None:
            _LOG.warning("No working DNS lookup tool found (dig, host, nslookup)")
            missing.append(DNS_REQUIREMENT)
        elif report is not None:
            report.dns_tool = dns_tool
        return missing

    def _run_install(self, commands: Sequence[Sequence[str]]) -> bool:
        for cmd in commands:
            _LOG.info("Running: %s", shlex.join(cmd))
            try:
                result = subprocess.run(
                    list(cmd),
                    check=False,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                )
            except OSError as exc:
                _LOG.warning("Package command failed to start: %s", exc)
                return False
            if result.returncode != 0:
                tail = (result.stdout or "").strip().splitlines()[-5:]
                _LOG.warning(
                    "Package command exited with %s%s",
                    result.returncode,
                    (": " + " | ".join(tail)) if tail else "",
                )
                return False
        return True

    def install_packages(self, packages: Sequence[str], report: DependencyReport | None = None) -> bool:
        """Install with bounded retries; returns True once an attempt succeeds."""

        commands = install_commands(self.env.package_manager, packages)
        if not commands:
            _LOG.error("No install command known for package manager %s", self.env.package_manager.value)
            return False
        for attempt in range(1, self.max_attempts + 1):
            if report is not None:
                report.attempts = attempt
            _LOG.info("Installing %s (attempt %d/%d)", ", ".join(packages), attempt, self.max_attempts)
            if self._run_install(commands):
                return True
            if attempt < self.max_attempts:
                _LOG.warning("Install attempt %d failed; retrying in %.0fs", attempt, self.retry_delay)
                self._sleep(self.retry_delay)
        _LOG.error("Package installation failed after %d attempts", self.max_attempts)
        return False

    def ensure(self, *, skip_network: bool = False) -> DependencyReport:
        """Make sure every prerequisite works; raises UnresolvedDependencies otherwise."""

        _LOG.info("Checking system dependencies...")
        if skip_network:
            self.check_disk_space()
            self.check_memory()
        else:
            self.preflight()

        report = DependencyReport()
        missing = self.find_missing(report)
        if missing:
            packages = _PACKAGES.get(self.env.os_family, ())
            if packages:
                self.install_packages(packages, report)
            else:
                _LOG.error("No package list known for %s", self.env.os_family.value)
            still_missing = self.find_missing(report)
            report.installed = [name for name in missing if name not in still_missing]
            if still_missing:
                remediation = manual_instructions(self.env, still_missing)
                self.context.error(f"Unresolved dependencies: {', '.join(still_missing)}")
                raise UnresolvedDependencies(still_missing, remediation=remediation)

        final = self.find_missing()
        if final:
            raise UnresolvedDependencies(final, remediation=manual_instructions(self.env, final))
        _LOG.info("All dependencies satisfied")
        return report

    # ---- certbot ------------------------------------------------------------

    def install_certbot(self, client: CertbotClient, *, min_version: str = "2.0.0") -> str:
        """Install a profile-capable certbot; returns the verified version string."""

        family = self.env.os_family
        if family in _CERTBOT_NATIVE_PACKAGES and family not in (OsFamily.ARCH, OsFamily.ALPINE, OsFamily.GENTOO):
            ok = self.install_packages(_CERTBOT_NATIVE_PACKAGES[family])
        else:
            ok = self._install_certbot_snap()
            if not ok and family in _CERTBOT_NATIVE_PACKAGES:
                ok = self.install_packages(_CERTBOT_NATIVE_PACKAGES[family])

        usable, detail = client.check_version(min_version)
        if not usable:
            remediation = [
                "Install certbot 2.0.0 or newer with ACME profile support",
                "See https://certbot.eff.org/instructions for platform-specific steps",
            ]
            if not ok:
                remediation.insert(0, "Automatic installation failed")
            raise UnresolvedDependencies(["certbot"], remediation=remediation)
        _LOG.info("Certbot installation completed successfully (%s)", detail)
        return detail

    def _install_certbot_snap(self) -> bool:
        manager = self.env.package_manager
        if manager in (PackageManager.APT, PackageManager.APT_GET, PackageManager.DNF, PackageManager.YUM):
            _LOG.info("Removing existing certbot installations...")
            remove = [manager.value, "remove", "-y", "certbot"]
            try:
                subprocess.run(remove, check=False, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            except OSError as exc:
                _LOG.debug("certbot removal skipped: %s", exc)

        if shutil.which("snap") is None:
            _LOG.info("Installing snap package manager...")
            if not self.install_packages(["snapd"]):
                return False
        if self.env.init_system is InitSystem.SYSTEMD:
            subprocess.run(
                ["systemctl", "enable", "--now", "snapd.socket"],
                check=False,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            self._sleep(2)

        _LOG.info("Installing certbot via snap...")
        for attempt in range(1, self.max_attempts + 1):
            result = subprocess.run(
                ["snap", "install", "--classic", "certbot"],
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
            if result.returncode == 0:
                break
            _LOG.warning("snap install attempt %d failed: %s", attempt, (result.stdout or "").strip())
            if attempt < self.max_attempts:
                self._sleep(self.retry_delay)
        else:
            return False

        link = Path("/usr/bin/certbot")
        target = Path("/snap/bin/certbot")
        if target.exists():
            try:
                if link.is_symlink() or link.exists():
                    link.unlink()
                os.symlink(target, link)
            except OSError as exc:
                _LOG.warning("Unable to link %s -> %s: %s", link, target, exc)
        return True


__all__ = [
    "CRITICAL_TOOLS",
    "DNS_TOOLS",
    "DependencyReport",
    "DependencyResolver",
    "install_commands",
    "manual_instructions",
]
