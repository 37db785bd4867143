#!/usr/bin/env python3
"""Command line entry point for ipcert.

Each invocation resolves to exactly one :class:`Command`. Mutating commands
require root and run under the host-wide lock; read-only ones do neither.
Lock release and log flushing are registered on an ``ExitStack`` so they run
on success, on error and when SIGINT/SIGTERM arrive.
"""
from __future__ import annotations

import argparse
import logging
import os
import random
import signal
import sys
import time
from contextlib import ExitStack
from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from typing import Callable, Dict

import yaml

from .acme_directory import fetch_profiles, format_profiles
from .backup import BackupManager, BackupType
from .certbot import CERT_VALIDITY_DAYS, CertbotClient
from .config import (
    KEY_SIZE_CHOICES,
    LOG_LEVEL_CHOICES,
    WEB_SERVER_CHOICES,
    Settings,
    active_config_path,
    default_settings,
    load_settings,
    primary_config_path,
    save_settings,
)
from .context import RunContext
from .dependencies import DependencyResolver
from .environment import EnvironmentDescriptor, profile
from .errors import (
    EXIT_CONFIG,
    EXIT_INTERRUPTED,
    EXIT_OK,
    ConfigCorrupt,
    FilesystemFailure,
    InsufficientPrivilege,
    InvalidInput,
    IpCertError,
)
from .locking import HostLock, lock_status
from .logs import audit, invoking_user, setup_logging, shutdown_logging
from .orchestrator import CertificateOrchestrator
from .recovery import RecoveryManager, integrity_check
from .renewal import DEFAULT_DEPLOY_HOOK, run_renewal
from .scheduler import RenewalScheduler
from .validation import validate_email, validate_ip, validate_number, validate_path

__version__ = "1.0.0"

_LOG = logging.getLogger("ipcert.cli")

EXPIRY_WARNING_DAYS = 2
MAX_JITTER_SEC = 3600


class Command(str, Enum):
    HELP = "help"
    VERSION = "version"
    OBTAIN = "obtain"
    INSTALL = "install"
    RENEW = "renew"
    FORCE_RENEW = "force-renew"
    SETUP_RENEWAL = "setup-renewal"
    LIST = "list"
    CHECK_PROFILES = "check-profiles"
    BACKUP = "backup"
    RESTORE = "restore"
    EMERGENCY = "emergency"
    STATUS = "status"
    INTEGRITY_CHECK = "integrity-check"
    SHOW_CONFIG = "show-config"
    SETUP = "setup"
    CONFIGURE = "configure"


READ_ONLY_COMMANDS = frozenset(
    {
        Command.HELP,
        Command.VERSION,
        Command.STATUS,
        Command.SHOW_CONFIG,
        Command.INTEGRITY_CHECK,
        Command.CHECK_PROFILES,
    }
)
# Commands that still work when the configuration file is damaged.
RECOVERY_COMMANDS = frozenset(
    {Command.EMERGENCY, Command.RESTORE, Command.INTEGRITY_CHECK, Command.STATUS, Command.SHOW_CONFIG}
)
UNLOCKED_COMMANDS = READ_ONLY_COMMANDS | {Command.LIST}
RENEWAL_COMMANDS = frozenset({Command.RENEW, Command.FORCE_RENEW})


class _Signalled(BaseException):
    def __init__(self, signum: int) -> None:
        super().__init__(signum)
        self.signum = signum


def _raise_signalled(signum, frame):  # noqa
    raise _Signalled(signum)


def _jitter_seconds(text: str) -> int:
    try:
        return validate_number(text, minimum=0, maximum=MAX_JITTER_SEC).value
    except InvalidInput as exc:
        raise argparse.ArgumentTypeError(exc.message) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ipcert",
        description=(
            "Obtain and renew Let's Encrypt short-lived (6-day) certificates for public IP "
            "addresses using certbot (staging environment, HTTP-01 challenge)."
        ),
        epilog="Example: ipcert -i 203.0.113.10 -e admin@example.com",
    )

    request = parser.add_argument_group("certificate request")
    request.add_argument("-i", "--ip", help="Public IPv4 or IPv6 address for the certificate")
    request.add_argument("-e", "--email", help="Email address for certificate notifications")
    request.add_argument("-w", "--webroot", help="Webroot path for the HTTP-01 challenge")
    request.add_argument("--key-size", type=int, choices=KEY_SIZE_CHOICES, help="RSA key size")
    request.add_argument("--web-server", choices=WEB_SERVER_CHOICES, help="certbot plugin to use instead of auto-detection")

    actions = parser.add_argument_group("operations").add_mutually_exclusive_group()

    def _action(*flags: str, command: Command, help: str) -> None:
        actions.add_argument(*flags, dest="command", action="store_const", const=command, help=help)

    _action("--install", command=Command.INSTALL, help="Install dependencies and a profile-capable certbot")
    _action("--renew", command=Command.RENEW, help="Renew existing IP certificates")
    _action("--force-renew", command=Command.FORCE_RENEW, help="Force renewal of all certificates")
    _action("--setup-renewal", command=Command.SETUP_RENEWAL, help="Install the automatic renewal job (every 4 hours)")
    _action("--list", command=Command.LIST, help="List certificates and their expiration status")
    _action("--check-profiles", command=Command.CHECK_PROFILES, help="Show the ACME profiles offered by the CA")
    _action("--backup", command=Command.BACKUP, help="Back up configuration and certificates")
    _action("--restore", command=Command.RESTORE, help="Restore the latest (or --backup-name) backup")
    _action("--emergency", command=Command.EMERGENCY, help="Run the interactive emergency recovery")
    _action("--status", command=Command.STATUS, help="Show environment, certbot and renewal status")
    _action("--integrity-check", command=Command.INTEGRITY_CHECK, help="Verify configuration, directories and certbot")
    _action("--show-config", command=Command.SHOW_CONFIG, help="Print the effective configuration")
    _action("--setup", command=Command.SETUP, help="Interactive first-time setup")
    _action("--configure", command=Command.CONFIGURE, help="Interactively edit persisted settings")
    _action("-v", "--version", command=Command.VERSION, help="Show version information")

    extra = parser.add_argument_group("options")
    extra.add_argument(
        "--backup-type",
        choices=[t.value for t in BackupType if t is not BackupType.EMERGENCY],
        default=BackupType.CONFIG.value,
        help="Backup type for --restore (default: config)",
    )
    extra.add_argument("--backup-name", help="Specific backup entry for --restore")
    extra.add_argument("--deploy-hook", help="Command run after a successful renewal (saved for --setup-renewal)")
    extra.add_argument(
        "--jitter",
        type=_jitter_seconds,
        default=0,
        metavar="SECONDS",
        help="Sleep a random 0..SECONDS before renewing (used by scheduled jobs)",
    )
    extra.add_argument(
        "--scheduled",
        action="store_true",
        help="Mark a renewal started by an installed job (honours renewal_enabled and renewal_force)",
    )
    extra.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def resolve_command(args: argparse.Namespace) -> Command:
    if args.command is not None:
        if args.ip and args.command is not Command.SETUP:
            raise InvalidInput(f"-i/--ip cannot be combined with --{args.command.value}")
        return args.command
    if args.ip:
        return Command.OBTAIN
    if args.email or args.webroot:
        raise InvalidInput("-i/--ip is required to request a certificate")
    return Command.HELP


@dataclass
class Runtime:
    args: argparse.Namespace
    command: Command
    settings: Settings
    context: RunContext

    @cached_property
    def env(self) -> EnvironmentDescriptor:
        return profile()

    @cached_property
    def client(self) -> CertbotClient:
        return CertbotClient(self.settings.certbot_path)

    @cached_property
    def backups(self) -> BackupManager:
        return BackupManager(self.settings.backup_dir, max_backups=self.settings.max_backups)

    def prompt(self, text: str) -> str:
        return input(text)

    def scheduler(self) -> RenewalScheduler:
        return RenewalScheduler(self.env, context=self.context)

    def deploy_hook(self) -> str:
        return self.settings.deploy_hook or DEFAULT_DEPLOY_HOOK


# ---- handlers ----------------------------------------------------------------


def _obtain(rt: Runtime, raw_ip: str | None = None) -> int:
    args, settings = rt.args, rt.settings
    email = args.email or settings.email
    if not email:
        raise InvalidInput(
            "An email address is required (-e/--email or 'email' in the configuration)",
            kind="email",
        )
    orchestrator = CertificateOrchestrator(
        rt.env,
        rt.client,
        context=rt.context,
        web_server=args.web_server or settings.web_server,
        min_certbot_version=settings.certbot_min_version,
    )
    request = orchestrator.validate(
        raw_ip or args.ip,
        email,
        args.webroot or str(settings.webroot),
        args.key_size or settings.key_size,
    )
    DependencyResolver(rt.env, context=rt.context).ensure()
    if settings.cert_dir.exists():
        rt.backups.backup(settings.cert_dir, BackupType.CERTIFICATE)
    orchestrator.run(request)
    print("", flush=True)
    print("CRITICAL: Configure automatic renewal immediately!", flush=True)
    print("Run: ipcert --setup-renewal", flush=True)
    print(f"Short-lived certificates expire in just {CERT_VALIDITY_DAYS} days!", flush=True)
    return EXIT_OK


def _install(rt: Runtime) -> int:
    audit("Installation initiated by: %s", invoking_user())
    resolver = DependencyResolver(rt.env, context=rt.context)
    resolver.ensure()
    version = resolver.install_certbot(rt.client, min_version=rt.settings.certbot_min_version)
    audit("certbot %s installed", version)
    return EXIT_OK


def _renewal_skipped(rt: Runtime) -> bool:
    return rt.args.scheduled and not rt.settings.renewal_enabled


def _renewal_delay(rt: Runtime) -> None:
    """Sleep the requested jitter; runs before the host lock is taken."""

    if rt.args.jitter <= 0 or _renewal_skipped(rt):
        return
    delay = random.uniform(0, rt.args.jitter)
    _LOG.debug("Sleeping %.0fs before renewal", delay)
    time.sleep(delay)


def _renew(rt: Runtime) -> int:
    if _renewal_skipped(rt):
        _LOG.info("Automatic renewal is disabled in the configuration; skipping")
        return EXIT_OK
    force = rt.command is Command.FORCE_RENEW or (rt.args.scheduled and rt.settings.renewal_force)
    audit("Certificate renewal initiated by: %s (force=%s)", invoking_user(), force)
    report = run_renewal(rt.client, force=force, deploy_hook=rt.deploy_hook())
    audit("Renewal process completed: %s", report.outcome.value)
    return EXIT_OK


def _setup_renewal(rt: Runtime) -> int:
    if rt.args.deploy_hook:
        rt.settings = save_settings({"deploy_hook": rt.args.deploy_hook}, backup_manager=rt.backups)
    scheduler = rt.scheduler()
    scheduler.install(
        rt.deploy_hook(),
        smoke_test=lambda: run_renewal(rt.client, deploy_hook=rt.deploy_hook()),
    )
    return EXIT_OK


def _list(rt: Runtime) -> int:
    _LOG.info("Listing all certificates...")
    certificates = rt.client.certificates()
    if not certificates:
        print("No certificates found.", flush=True)
        return EXIT_OK
    print("Current Certificates:", flush=True)
    for cert in certificates:
        print(f"  Certificate Name: {cert.name}", flush=True)
        print(f"    Domains: {' '.join(cert.domains)}", flush=True)
        print(f"    Expiry Date: {cert.expiry}", flush=True)
        print(f"    Certificate Path: {cert.certificate_path}", flush=True)

    expired = [cert.name for cert in certificates if cert.expired]
    expiring = [
        cert.name
        for cert in certificates
        if not cert.expired and cert.days_left is not None and cert.days_left <= EXPIRY_WARNING_DAYS
    ]
    if expired:
        rt.context.warn(f"Expired certificates found: {', '.join(expired)}", _LOG)
    if expiring:
        rt.context.warn(f"Certificates expiring within {EXPIRY_WARNING_DAYS} days: {', '.join(expiring)}", _LOG)
    if expired or expiring:
        rt.context.suggest("Run renewal immediately: ipcert --renew")
    else:
        print("All certificates are valid", flush=True)
    return EXIT_OK


def _check_profiles(rt: Runtime) -> int:
    _LOG.info("Checking available ACME profiles in staging environment...")
    for line in format_profiles(fetch_profiles()):
        print(line, flush=True)
    print("Note: IP certificates require the 'shortlived' profile", flush=True)
    return EXIT_OK


def _backup(rt: Runtime) -> int:
    created = 0
    config_path = rt.settings.config_path
    if config_path.exists() and rt.backups.backup(config_path, BackupType.MANUAL):
        created += 1
    if rt.settings.cert_dir.exists() and rt.backups.backup(rt.settings.cert_dir, BackupType.CERTIFICATE):
        created += 1
    if not created:
        rt.context.warn("Nothing was backed up", _LOG)
    else:
        print(f"Created {created} backup(s) under {rt.settings.backup_dir}", flush=True)
        audit("Manual backup created by %s", invoking_user())
    return EXIT_OK


def _restore(rt: Runtime) -> int:
    backup_type = BackupType(rt.args.backup_type)
    target = rt.settings.config_path if backup_type in (BackupType.CONFIG, BackupType.MANUAL) else None
    restored = rt.backups.restore(backup_type, rt.args.backup_name, target=target)
    print(f"Restored {backup_type.value} backup to {restored}", flush=True)
    audit("Restored %s backup to %s (user: %s)", backup_type.value, restored, invoking_user())
    return EXIT_OK


def _emergency(rt: Runtime) -> int:
    scheduler = rt.scheduler()
    manager = RecoveryManager(
        rt.settings,
        rt.backups,
        rt.client,
        stop_jobs=scheduler.stop_jobs,
        context=rt.context,
        prompt=rt.prompt,
    )
    manager.recover()
    return EXIT_OK


def _status(rt: Runtime) -> int:
    settings = rt.settings
    print(f"ipcert {__version__}", flush=True)
    print(f"Environment: {rt.env.summary()}", flush=True)

    version = rt.client.version() if rt.client.installed else ()
    print(f"certbot: {'.'.join(map(str, version)) if version else 'not installed'}", flush=True)

    holder, alive = lock_status(settings.lock_file)
    if holder is None:
        print("Lock: free", flush=True)
    else:
        print(f"Lock: held by PID {holder}{'' if alive else ' (stale)'}", flush=True)

    for name, present in rt.scheduler().status().items():
        print(f"Renewal job ({name}): {'installed' if present else 'missing'}", flush=True)

    if rt.client.installed:
        try:
            count = str(len(rt.client.certificates()))
        except IpCertError as exc:
            _LOG.debug("certificate listing failed: %s", exc)
            count = "unavailable (root required)"
        print(f"Certificates: {count}", flush=True)
    return EXIT_OK


def _integrity_check(rt: Runtime) -> int:
    issues = integrity_check(rt.settings, rt.client, rt.context)
    print(f"Integrity check: {issues} issue(s) found", flush=True)
    return EXIT_OK if issues == 0 else EXIT_CONFIG


def _show_config(rt: Runtime) -> int:
    source = active_config_path()
    print(f"# Configuration file: {source or 'none (defaults)'}", flush=True)
    print(yaml.safe_dump(rt.settings.as_dict(), sort_keys=False).rstrip(), flush=True)
    return EXIT_OK


def _ask(rt: Runtime, label: str, validator: Callable[[str], object], default: str = "") -> str:
    """Prompt until ``validator`` accepts the answer; empty keeps ``default``."""

    suffix = f" [{default}]" if default else ""
    while True:
        answer = rt.prompt(f"{label}{suffix}: ").strip() or default
        try:
            validated = validator(answer)
        except InvalidInput as exc:
            print(f"  {exc.message}", flush=True)
            continue
        return str(validated)


def _confirm(rt: Runtime, question: str, default: bool = True) -> bool:
    hint = "[Y/n]" if default else "[y/N]"
    answer = rt.prompt(f"{question} {hint} ").strip().lower()
    if not answer:
        return default
    return answer in ("y", "yes")


def _setup(rt: Runtime) -> int:
    settings = rt.settings
    print("ipcert interactive setup", flush=True)
    ip_text = _ask(rt, "Public IP address", validate_ip, rt.args.ip or "")
    email = _ask(rt, "Email address", validate_email, rt.args.email or settings.email)
    webroot = _ask(
        rt,
        "Webroot path",
        lambda raw: validate_path(raw, require_absolute=True),
        rt.args.webroot or str(settings.webroot),
    )
    rt.settings = save_settings({"email": email, "webroot": webroot}, backup_manager=rt.backups)
    rt.args.email, rt.args.webroot = email, webroot
    _obtain(rt, ip_text)
    if _confirm(rt, "Set up automatic renewal now?"):
        _setup_renewal(rt)
    return EXIT_OK


def _configure(rt: Runtime) -> int:
    current = rt.settings
    print(f"Editing {current.config_path} (press Enter to keep the current value)", flush=True)

    def _choice(options) -> Callable[[str], str]:
        def _check(raw: str) -> str:
            if raw not in options:
                raise InvalidInput(f"Choose one of: {', '.join(options)}")
            return raw

        return _check

    def _optional(check: Callable[[str], object]) -> Callable[[str], object]:
        return lambda raw: check(raw) if raw else ""

    updates = {
        "email": _ask(rt, "Email address", _optional(validate_email), current.email),
        "webroot": _ask(
            rt, "Webroot path", lambda raw: validate_path(raw, require_absolute=True), str(current.webroot)
        ),
        "key_size": int(_ask(rt, "RSA key size", _choice(["2048", "4096"]), str(current.key_size))),
        "web_server": _ask(
            rt,
            "Web server plugin (empty for auto-detect)",
            _optional(_choice(list(WEB_SERVER_CHOICES))),
            current.web_server,
        ),
        "renewal_enabled": _confirm(rt, "Enable automatic renewal?", current.renewal_enabled),
        "log_level": _ask(rt, "Log level", _choice(list(LOG_LEVEL_CHOICES)), current.log_level),
        "log_retention_days": int(
            _ask(
                rt,
                "Log retention (days)",
                lambda raw: validate_number(raw, minimum=1, maximum=3650),
                str(current.log_retention_days),
            )
        ),
        "deploy_hook": rt.prompt(f"Deploy hook [{current.deploy_hook or 'built-in web server reload'}]: ").strip()
        or current.deploy_hook,
    }
    rt.settings = save_settings(updates, backup_manager=rt.backups)
    audit("Configuration updated by %s", invoking_user())
    print(f"Saved {rt.settings.config_path}", flush=True)
    return EXIT_OK


def _help(rt: Runtime | None) -> int:
    build_parser().print_help()
    return EXIT_OK


def _version(rt: Runtime | None) -> int:
    print(f"ipcert {__version__}", flush=True)
    print("Let's Encrypt IP address certificate manager (staging, shortlived profile, HTTP-01)", flush=True)
    return EXIT_OK


HANDLERS: Dict[Command, Callable[[Runtime], int]] = {
    Command.HELP: _help,
    Command.VERSION: _version,
    Command.OBTAIN: _obtain,
    Command.INSTALL: _install,
    Command.RENEW: _renew,
    Command.FORCE_RENEW: _renew,
    Command.SETUP_RENEWAL: _setup_renewal,
    Command.LIST: _list,
    Command.CHECK_PROFILES: _check_profiles,
    Command.BACKUP: _backup,
    Command.RESTORE: _restore,
    Command.EMERGENCY: _emergency,
    Command.STATUS: _status,
    Command.INTEGRITY_CHECK: _integrity_check,
    Command.SHOW_CONFIG: _show_config,
    Command.SETUP: _setup,
    Command.CONFIGURE: _configure,
}


# ---- process plumbing ------------------------------------------------------------


def _banner() -> None:
    print("=" * 62, flush=True)
    print("    Let's Encrypt IP Address Certificate Manager", flush=True)
    print("         Staging environment, 6-day certificates", flush=True)
    print("=" * 62, flush=True)


def _require_root() -> None:
    if os.geteuid() != 0:
        raise InsufficientPrivilege(
            "This operation must be run as root",
            remediation=("Re-run with sudo",),
        )


def _load_settings(command: Command) -> tuple[Settings, str | None]:
    """Settings plus a deferred warning when recovery commands fall back to defaults."""

    try:
        return load_settings(), None
    except ConfigCorrupt as exc:
        if command not in RECOVERY_COMMANDS:
            raise
        fallback = default_settings(active_config_path() or primary_config_path())
        return fallback, f"Configuration is unusable ({exc}); continuing with defaults"


def _report_error(exc: IpCertError, context: RunContext) -> None:
    context.error(exc.message)
    _LOG.error(exc.message)
    _LOG.debug("Error details", exc_info=exc)
    output = getattr(exc, "output", "")
    if output:
        _LOG.debug("certbot output:\n%s", output)
    for line in exc.remediation:
        print(f"  - {line}", file=sys.stderr, flush=True)


def _print_summary(context: RunContext) -> None:
    for line in context.summary_lines():
        print(line, flush=True)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        command = resolve_command(args)
    except InvalidInput as exc:
        parser.print_usage(sys.stderr)
        print(f"ipcert: error: {exc.message}", file=sys.stderr)
        return exc.exit_code

    context = RunContext(debug=args.debug or os.environ.get("DEBUG", "").lower() in ("1", "true", "yes"))
    # Neither needs configuration or root.
    if command in (Command.HELP, Command.VERSION):
        return HANDLERS[command](None)

    previous = {sig: signal.signal(sig, _raise_signalled) for sig in (signal.SIGINT, signal.SIGTERM)}
    exit_code = EXIT_OK
    logging_ready = False
    with ExitStack() as stack:
        stack.callback(shutdown_logging)
        for sig, handler in previous.items():
            stack.callback(signal.signal, sig, handler)
        try:
            settings, config_problem = _load_settings(command)
            setup_logging(
                settings.log_dir,
                level=settings.log_level,
                debug=context.debug,
                retention_days=settings.log_retention_days,
            )
            logging_ready = True
            if config_problem:
                context.warn(config_problem, _LOG)
            runtime = Runtime(args, command, settings, context)
            if command not in READ_ONLY_COMMANDS:
                _require_root()
                _banner()
            if command in RENEWAL_COMMANDS:
                _renewal_delay(runtime)
            if command not in UNLOCKED_COMMANDS:
                stack.enter_context(
                    HostLock(settings.lock_file, timeout=settings.lock_timeout_sec)
                )
            exit_code = HANDLERS[command](runtime)
            if command not in READ_ONLY_COMMANDS:
                audit("%s completed successfully", command.value)
        except IpCertError as exc:
            if not logging_ready:
                setup_logging(None, debug=context.debug)
            _report_error(exc, context)
            exit_code = exc.exit_code
        except OSError as exc:
            if not logging_ready:
                setup_logging(None, debug=context.debug)
            failure = FilesystemFailure(
                f"Filesystem error: {exc.strerror or exc}" + (f" ({exc.filename})" if exc.filename else ""),
                str(exc.filename or ""),
            )
            failure.__cause__ = exc
            _report_error(failure, context)
            exit_code = failure.exit_code
        except (KeyboardInterrupt, _Signalled):
            context.error("Interrupted")
            _LOG.error("Interrupted; cleaning up")
            exit_code = EXIT_INTERRUPTED
        _print_summary(context)
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
