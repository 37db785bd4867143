"""Install the recurring renewal job.

Two independent mechanisms are always written: a primary one matching the
host's service supervisor (systemd timer, init script or launchd daemon) and
a cron fallback. Both run ``ipcert --renew --scheduled``, which reads the
deploy hook and the renewal switches from the persisted configuration.
Re-running the installer rewrites the same files, so jobs are never
duplicated.
"""
from __future__ import annotations

import logging
import os
import plistlib
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Sequence

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .certbot import CERT_VALIDITY_DAYS
from .context import RunContext
from .environment import EnvironmentDescriptor, InitSystem, OsFamily
from .errors import IpCertError, SchedulerUnavailable
from .logs import audit, invoking_user

_LOG = logging.getLogger("ipcert.scheduler")

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

JOB_NAME = "ipcert-renew"
BSD_RC_NAME = "ipcert_renew"
LAUNCHD_LABEL = "org.ipcert.renew"

INTERVAL_DESCRIPTION = "every 4 hours"
RENEWAL_INTERVAL_SEC = 4 * 60 * 60
CRON_SCHEDULE = "0 */4 * * *"
ON_CALENDAR = "*-*-* 00,04,08,12,16,20:00:00"
MAX_JITTER_SEC = 300
BOOT_DELAY_SEC = 60

# Marks runs started by an installed job so they honour renewal_enabled and
# renewal_force.
SCHEDULED_FLAG = "--scheduled"
LOOP_SCRIPT = Path("/usr/local/libexec") / f"{JOB_NAME}-loop"

CRONTAB_BEGIN = f"# BEGIN {JOB_NAME} (managed by ipcert)"
CRONTAB_END = f"# END {JOB_NAME}"


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=False,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )


def render_template(name: str, **context: Any) -> str:
    return _environment().get_template(name).render(**context)


def default_renew_command() -> list[str]:
    executable = shutil.which("ipcert")
    base = [executable] if executable else [sys.executable, "-m", "ipcert.cli"]
    return [*base, "--renew"]


@dataclass(frozen=True)
class RenewalJobSpec:
    deploy_hook: str
    primary_mechanism: str
    interval_description: str = INTERVAL_DESCRIPTION
    fallback_mechanism: str = "periodic-scheduler (cron)"


@dataclass
class InstallResult:
    spec: RenewalJobSpec
    primary_paths: list[Path] = field(default_factory=list)
    primary_installed: bool = False
    fallback_location: str = ""
    smoke_test: object = None


def _strip_block(text: str) -> list[str]:
    kept: list[str] = []
    inside = False
    for line in text.splitlines():
        if line.strip() == CRONTAB_BEGIN:
            inside = True
            continue
        if inside:
            if line.strip() == CRONTAB_END:
                inside = False
            continue
        kept.append(line)
    return kept


class RenewalScheduler:
    def __init__(
        self,
        env: EnvironmentDescriptor,
        *,
        root: Path | str = "/",
        context: RunContext | None = None,
        command: Sequence[str] | None = None,
    ) -> None:
        self.env = env
        self.root = Path(root)
        self.context = context or RunContext()
        self.command = list(command) if command else default_renew_command()

    # ---- locations ---------------------------------------------------------

    @property
    def systemd_service_path(self) -> Path:
        return self.root / "etc/systemd/system" / f"{JOB_NAME}.service"

    @property
    def systemd_timer_path(self) -> Path:
        return self.root / "etc/systemd/system" / f"{JOB_NAME}.timer"

    @property
    def init_script_path(self) -> Path:
        if self.env.init_system is InitSystem.BSD_RC:
            if self.env.os_family is OsFamily.NETBSD:
                return self.root / "etc/rc.d" / BSD_RC_NAME
            return self.root / "usr/local/etc/rc.d" / BSD_RC_NAME
        return self.root / "etc/init.d" / JOB_NAME

    @property
    def loop_script_path(self) -> Path:
        return self.root / LOOP_SCRIPT.relative_to("/")

    @property
    def launchd_path(self) -> Path:
        return self.root / "Library/LaunchDaemons" / f"{LAUNCHD_LABEL}.plist"

    @property
    def cron_file_path(self) -> Path:
        return self.root / "etc/cron.d" / JOB_NAME

    def _scheduled_argv(self, *, jitter: bool) -> list[str]:
        argv = [*self.command, SCHEDULED_FLAG]
        if jitter:
            argv += ["--jitter", str(MAX_JITTER_SEC)]
        return argv

    def _command_text(self, *, jitter: bool) -> str:
        return shlex.join(self._scheduled_argv(jitter=jitter))

    # ---- helpers -----------------------------------------------------------

    def _run(self, argv: Sequence[str], *, input_text: str | None = None) -> subprocess.CompletedProcess | None:
        _LOG.debug("Running: %s", shlex.join(argv))
        try:
            return subprocess.run(
                list(argv),
                check=False,
                input=input_text,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            _LOG.debug("%s failed to start: %s", argv[0], exc)
            return None

    def _require(self, argv: Sequence[str]) -> None:
        result = self._run(argv)
        if result is None or result.returncode != 0:
            detail = "" if result is None else (result.stderr or result.stdout or "").strip()
            raise SchedulerUnavailable(
                f"'{shlex.join(argv)}' failed" + (f": {detail}" if detail else "")
            )

    @staticmethod
    def _write(path: Path, content: str | bytes, mode: int) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        if isinstance(content, bytes):
            tmp_path.write_bytes(content)
        else:
            tmp_path.write_text(content, encoding="utf-8")
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
        _LOG.debug("Wrote %s", path)

    # ---- primary mechanisms -------------------------------------------------

    def install_systemd(self) -> list[Path]:
        _LOG.info("Creating systemd timer for aggressive renewal schedule...")
        try:
            self._write(
                self.systemd_service_path,
                render_template("systemd.service.j2", renew_command=self._command_text(jitter=False)),
                0o644,
            )
            self._write(
                self.systemd_timer_path,
                render_template(
                    "systemd.timer.j2",
                    on_calendar=ON_CALENDAR,
                    jitter_sec=MAX_JITTER_SEC,
                    validity_days=CERT_VALIDITY_DAYS,
                ),
                0o644,
            )
        except OSError as exc:
            raise SchedulerUnavailable(f"Unable to write systemd units: {exc}") from exc
        self._require(["systemctl", "daemon-reload"])
        self._require(["systemctl", "enable", f"{JOB_NAME}.timer"])
        self._require(["systemctl", "restart", f"{JOB_NAME}.timer"])
        _LOG.info("Systemd timer configured and started")
        return [self.systemd_service_path, self.systemd_timer_path]

    def install_init_script(self) -> list[Path]:
        init_system = self.env.init_system
        if init_system is InitSystem.BSD_RC and self.env.os_family is OsFamily.OPENBSD:
            raise SchedulerUnavailable("OpenBSD rc.d scripts are not supported; relying on cron")
        template = {
            InitSystem.OPENRC: "openrc.j2",
            InitSystem.SYSV: "sysv.j2",
            InitSystem.BSD_RC: "bsd_rc.j2",
        }[init_system]
        path = self.init_script_path
        loop_path = self.loop_script_path
        _LOG.info("Creating %s renewal service at %s", init_system.value, path)
        try:
            self._write(
                loop_path,
                render_template(
                    "renew_loop.sh.j2",
                    interval_sec=RENEWAL_INTERVAL_SEC,
                    interval_description=INTERVAL_DESCRIPTION,
                    renew_command=self._command_text(jitter=True),
                ),
                0o755,
            )
            self._write(
                path,
                render_template(
                    template,
                    job_name=JOB_NAME,
                    rc_name=BSD_RC_NAME,
                    loop_script=str(LOOP_SCRIPT),
                ),
                0o755,
            )
        except OSError as exc:
            raise SchedulerUnavailable(f"Unable to write init script {path}: {exc}") from exc

        if init_system is InitSystem.OPENRC:
            self._require(["rc-update", "add", JOB_NAME, "default"])
            self._require(["rc-service", JOB_NAME, "restart"])
        elif init_system is InitSystem.SYSV:
            if shutil.which("update-rc.d"):
                self._require(["update-rc.d", JOB_NAME, "defaults"])
            elif shutil.which("chkconfig"):
                self._require(["chkconfig", "--add", JOB_NAME])
            self._require([str(path), "restart"])
        else:
            self._require(["sysrc", f"{BSD_RC_NAME}_enable=YES"])
            self._require(["service", BSD_RC_NAME, "restart"])
        return [path, loop_path]

    def install_launchd(self) -> list[Path]:
        path = self.launchd_path
        payload = {
            "Label": LAUNCHD_LABEL,
            "ProgramArguments": self._scheduled_argv(jitter=True),
            "StartInterval": RENEWAL_INTERVAL_SEC,
            "RunAtLoad": False,
        }
        try:
            self._write(path, plistlib.dumps(payload), 0o644)
        except OSError as exc:
            raise SchedulerUnavailable(f"Unable to write {path}: {exc}") from exc
        self._run(["launchctl", "unload", str(path)])
        self._require(["launchctl", "load", "-w", str(path)])
        return [path]

    def install_primary(self) -> list[Path]:
        init_system = self.env.init_system
        if init_system is InitSystem.SYSTEMD:
            return self.install_systemd()
        if init_system in (InitSystem.OPENRC, InitSystem.SYSV, InitSystem.BSD_RC):
            return self.install_init_script()
        if init_system is InitSystem.LAUNCHD:
            return self.install_launchd()
        raise SchedulerUnavailable("No supported service supervisor detected")

    # ---- cron fallback ------------------------------------------------------

    def _cron_entries(self, *, system_file: bool) -> str:
        return render_template(
            "cron.j2",
            system_file=system_file,
            cron_schedule=CRON_SCHEDULE,
            renew_command=self._command_text(jitter=True),
            boot_delay_sec=BOOT_DELAY_SEC,
            validity_days=CERT_VALIDITY_DAYS,
        )

    def _read_crontab(self) -> str:
        result = self._run(["crontab", "-l"])
        if result is None or result.returncode != 0:
            return ""
        return result.stdout or ""

    def install_fallback(self) -> str:
        _LOG.info("Creating cron job for renewal fallback...")
        cron_dir = self.cron_file_path.parent
        if cron_dir.is_dir():
            try:
                self._write(self.cron_file_path, self._cron_entries(system_file=True), 0o644)
            except OSError as exc:
                raise SchedulerUnavailable(f"Unable to write {self.cron_file_path}: {exc}") from exc
            return str(self.cron_file_path)

        lines = _strip_block(self._read_crontab())
        while lines and not lines[-1].strip():
            lines.pop()
        block = [CRONTAB_BEGIN, *self._cron_entries(system_file=False).splitlines(), CRONTAB_END]
        text = "\n".join([*lines, *block]) + "\n"
        result = self._run(["crontab", "-"], input_text=text)
        if result is None or result.returncode != 0:
            raise SchedulerUnavailable("Unable to install the renewal crontab entry")
        return "crontab (root)"

    # ---- public API ---------------------------------------------------------

    def install(
        self,
        deploy_hook: str,
        *,
        smoke_test: Callable[[], object] | None = None,
    ) -> InstallResult:
        """Write both renewal mechanisms, then optionally run one renewal check."""

        _LOG.info("Setting up automatic renewal for short-lived IP certificates...")
        audit("Auto-renewal configuration initiated by: %s", invoking_user())
        spec = RenewalJobSpec(deploy_hook=deploy_hook, primary_mechanism=self.env.init_system.value)
        result = InstallResult(spec=spec)

        primary_error: SchedulerUnavailable | None = None
        try:
            result.primary_paths = self.install_primary()
            result.primary_installed = True
        except SchedulerUnavailable as exc:
            primary_error = exc
            self.context.warn(f"Primary renewal mechanism unavailable: {exc}", _LOG)

        try:
            result.fallback_location = self.install_fallback()
        except SchedulerUnavailable as exc:
            if primary_error is not None:
                raise SchedulerUnavailable(
                    f"No renewal mechanism could be installed ({primary_error}; {exc})",
                    remediation=(
                        f"Schedule '{self._command_text(jitter=True)}' {INTERVAL_DESCRIPTION} manually",
                    ),
                ) from exc
            self.context.warn(f"Cron fallback unavailable: {exc}", _LOG)

        _LOG.info("Automatic renewal configured successfully")
        for path in result.primary_paths:
            _LOG.info("  Primary job: %s", path)
        if result.fallback_location:
            _LOG.info("  Cron backup: %s", result.fallback_location)
        _LOG.info("  Schedule: %s (critical for %d-day certificates)", INTERVAL_DESCRIPTION, CERT_VALIDITY_DAYS)
        audit("Automatic renewal configured (%s + cron)", spec.primary_mechanism)

        if smoke_test is not None:
            _LOG.info("Running initial renewal check...")
            try:
                result.smoke_test = smoke_test()
            except IpCertError as exc:
                self.context.warn(f"Initial renewal check failed: {exc}", _LOG)
        return result

    def status(self) -> Dict[str, bool]:
        """Which renewal job definitions are present; read-only."""

        init_system = self.env.init_system
        jobs: Dict[str, bool] = {}
        if init_system is InitSystem.SYSTEMD:
            jobs["systemd timer"] = self.systemd_timer_path.exists()
        elif init_system in (InitSystem.OPENRC, InitSystem.SYSV, InitSystem.BSD_RC):
            jobs["init script"] = self.init_script_path.exists()
        elif init_system is InitSystem.LAUNCHD:
            jobs["launchd daemon"] = self.launchd_path.exists()
        if self.cron_file_path.parent.is_dir():
            jobs["cron"] = self.cron_file_path.exists()
        else:
            jobs["cron"] = CRONTAB_BEGIN in self._read_crontab()
        return jobs

    def stop_jobs(self) -> None:
        """Best-effort stop of running renewal jobs; errors are ignored."""

        if self.env.init_system is InitSystem.SYSTEMD:
            self._run(["systemctl", "stop", f"{JOB_NAME}.service"])
        elif self.env.init_system is InitSystem.OPENRC:
            self._run(["rc-service", JOB_NAME, "stop"])
        elif self.env.init_system is InitSystem.SYSV:
            self._run([str(self.init_script_path), "stop"])
        elif self.env.init_system is InitSystem.BSD_RC:
            self._run(["service", BSD_RC_NAME, "onestop"])
        self._run(["pkill", "-f", "certbot renew"])


__all__ = [
    "CRON_SCHEDULE",
    "InstallResult",
    "JOB_NAME",
    "LOOP_SCRIPT",
    "RenewalJobSpec",
    "RenewalScheduler",
    "SCHEDULED_FLAG",
    "default_renew_command",
    "render_template",
]
