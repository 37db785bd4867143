"""Integrity check and the interactive emergency recovery procedure."""
from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Callable

from .backup import BackupManager, BackupType
from .certbot import CertbotClient
from .config import Settings, check_config_file, reset_to_defaults
from .context import RunContext
from .errors import ConfigCorrupt, IpCertError
from .logs import audit, invoking_user

_LOG = logging.getLogger("ipcert.recovery")


def integrity_check(settings: Settings, client: CertbotClient, context: RunContext | None = None) -> int:
    """Read-only health check; returns the number of problems found."""

    context = context or RunContext()
    issues = 0

    def _issue(message: str) -> None:
        nonlocal issues
        issues += 1
        context.warn(message, _LOG)

    if settings.config_path.exists():
        try:
            check_config_file(settings.config_path)
            _LOG.info("Configuration file OK: %s", settings.config_path)
        except ConfigCorrupt as exc:
            _issue(f"Configuration file is invalid: {exc}")
            context.suggest("Restore the last configuration backup: ipcert --restore")
    else:
        _LOG.info("No configuration file at %s; defaults in use", settings.config_path)

    cert_dir = settings.cert_dir
    if not cert_dir.is_dir():
        _issue(f"Certificate directory {cert_dir} does not exist")
    elif not os.access(cert_dir, os.R_OK | os.X_OK):
        _issue(f"Certificate directory {cert_dir} is not readable")
    else:
        _LOG.info("Certificate directory readable: %s", cert_dir)

    log_dir = settings.log_dir
    if not log_dir.is_dir():
        _issue(f"Log directory {log_dir} does not exist")
    elif not os.access(log_dir, os.W_OK | os.X_OK):
        _issue(f"Log directory {log_dir} is not writable")
    else:
        _LOG.info("Log directory writable: %s", log_dir)

    if client.installed:
        _LOG.info("certbot found: %s", client.resolve())
    else:
        _issue("certbot is not installed")
        context.suggest("Install certbot: ipcert --install")

    if issues:
        _LOG.warning("Integrity check found %d issue(s)", issues)
    else:
        _LOG.info("Integrity check passed")
    return issues


class RecoveryChoice(str, Enum):
    RESTORE_CONFIG = "1"
    RESET_DEFAULTS = "2"
    INTEGRITY_CHECK = "3"
    EXIT = "4"


MENU = (
    (RecoveryChoice.RESTORE_CONFIG, "Restore configuration from the latest backup"),
    (RecoveryChoice.RESET_DEFAULTS, "Reset configuration to defaults"),
    (RecoveryChoice.INTEGRITY_CHECK, "Run integrity check"),
    (RecoveryChoice.EXIT, "Exit"),
)


class RecoveryManager:
    def __init__(
        self,
        settings: Settings,
        backups: BackupManager,
        client: CertbotClient,
        *,
        stop_jobs: Callable[[], None] | None = None,
        context: RunContext | None = None,
        prompt: Callable[[str], str] = input,
        output: Callable[[str], None] = print,
    ) -> None:
        self.settings = settings
        self.backups = backups
        self.client = client
        self._stop_jobs = stop_jobs
        self.context = context or RunContext()
        self._prompt = prompt
        self._output = output

    def snapshot_sources(self) -> dict[str, Path]:
        return {
            "config": self.settings.config_path,
            "letsencrypt": self.settings.cert_dir,
            "logs": self.settings.log_dir,
        }

    def restore_config(self) -> None:
        path = self.backups.restore(BackupType.CONFIG, target=self.settings.config_path)
        audit("Configuration restored from backup to %s by %s", path, invoking_user())

    def reset_config(self) -> None:
        path = reset_to_defaults(self.settings.config_path)
        audit("Configuration reset to defaults at %s by %s", path, invoking_user())

    def run_integrity_check(self) -> None:
        issues = integrity_check(self.settings, self.client, self.context)
        self._output(f"Integrity check finished: {issues} issue(s) found")

    def recover(self) -> Path:
        """Stop renewal jobs, snapshot state, then offer the recovery menu."""

        _LOG.warning("Starting emergency recovery procedure")
        audit("Emergency recovery initiated by: %s", invoking_user())
        if self._stop_jobs is not None:
            try:
                self._stop_jobs()
            except OSError as exc:
                _LOG.debug("Stopping renewal jobs failed: %s", exc)

        snapshot = self.backups.emergency_snapshot(self.snapshot_sources())
        self._output(f"Emergency snapshot saved to {snapshot}")

        handlers = {
            RecoveryChoice.RESTORE_CONFIG: self.restore_config,
            RecoveryChoice.RESET_DEFAULTS: self.reset_config,
            RecoveryChoice.INTEGRITY_CHECK: self.run_integrity_check,
        }
        while True:
            self._output("")
            self._output("Recovery options:")
            for choice, label in MENU:
                self._output(f"  {choice.value}) {label}")
            try:
                answer = self._prompt("Select an option [1-4]: ").strip()
            except EOFError:
                break
            try:
                choice = RecoveryChoice(answer)
            except ValueError:
                self._output(f"Invalid choice: {answer!r}")
                continue
            if choice is RecoveryChoice.EXIT:
                break
            try:
                handlers[choice]()
            except IpCertError as exc:
                self.context.error(str(exc), _LOG)
            else:
                self._output("Done.")
        audit("Emergency recovery finished")
        return snapshot


__all__ = ["MENU", "RecoveryChoice", "RecoveryManager", "integrity_check"]
