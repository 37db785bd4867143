"""Logging setup for ipcert.

Four append-only files live under the configured log directory:

* ``ipcert.log``   every record
* ``error.log``    ERROR and above
* ``audit.log``    records sent to the ``ipcert.audit`` logger
* ``renewal.log``  records sent to the ``ipcert.renewal`` logger

Each line reads ``[timestamp] [LEVEL] [pid] message``. Files larger than
``MAX_LOG_BYTES`` are renamed with a timestamp suffix when logging starts.
"""
from __future__ import annotations

import logging
import os
import pwd
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Iterable

MAX_LOG_BYTES = 50 * 1024 * 1024

GENERAL_LOG = "ipcert.log"
ERROR_LOG = "error.log"
AUDIT_LOG = "audit.log"
RENEWAL_LOG = "renewal.log"
LOG_FILES = (GENERAL_LOG, ERROR_LOG, AUDIT_LOG, RENEWAL_LOG)

ROOT_LOGGER = "ipcert"
AUDIT_LOGGER = "ipcert.audit"
RENEWAL_LOGGER = "ipcert.renewal"

_FILE_FORMAT = "[%(asctime)s] [%(levelname)s] [%(process)d] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_handlers: list[logging.Handler] = []


class _NameFilter(logging.Filter):
    def __init__(self, prefix: str) -> None:
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        return record.name == self.prefix or record.name.startswith(self.prefix + ".")


class _ConsoleFormatter(logging.Formatter):
    """Short human-readable lines; tracebacks only when ``debug`` is set."""

    MARKERS = {
        logging.DEBUG: "[debug] ",
        logging.INFO: "",
        logging.WARNING: "WARNING: ",
        logging.ERROR: "ERROR: ",
        logging.CRITICAL: "ERROR: ",
    }

    def __init__(self, debug: bool) -> None:
        super().__init__("%(message)s")
        self.debug = debug

    def format(self, record: logging.LogRecord) -> str:
        marker = self.MARKERS.get(record.levelno, "")
        message = record.getMessage()
        if self.debug and record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return f"{marker}{message}"


class _StreamSplitHandler(logging.StreamHandler):
    """Warnings and errors go to stderr, everything else to stdout."""

    def emit(self, record: logging.LogRecord) -> None:
        self.setStream(sys.stderr if record.levelno >= logging.WARNING else sys.stdout)
        super().emit(record)


def rotate_if_large(path: Path, max_bytes: int = MAX_LOG_BYTES) -> Path | None:
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return None
    if size <= max_bytes:
        return None
    target = path.with_name(f"{path.name}.{datetime.now().strftime('%Y%m%d_%H%M%S')}")
    path.rename(target)
    return target


def prune_rotated(log_dir: Path, retention_days: int, *, now: float | None = None) -> list[Path]:
    cutoff = (now if now is not None else time.time()) - retention_days * 86400
    removed: list[Path] = []
    for name in LOG_FILES:
        for candidate in log_dir.glob(f"{name}.*"):
            try:
                if candidate.stat().st_mtime < cutoff:
                    candidate.unlink()
                    removed.append(candidate)
            except OSError:
                continue
    return removed


def _prepare_log_dir(log_dir: Path, retention_days: int) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(log_dir, 0o750)
    except OSError:
        pass
    for name in LOG_FILES:
        path = log_dir / name
        rotate_if_large(path)
        path.touch(exist_ok=True)
        try:
            os.chmod(path, 0o640)
        except OSError:
            pass
    prune_rotated(log_dir, retention_days)


def _file_handler(path: Path, level: int, filters: Iterable[logging.Filter] = ()) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_DATE_FORMAT))
    for flt in filters:
        handler.addFilter(flt)
    return handler


def setup_logging(
    log_dir: Path | None,
    *,
    level: str = "INFO",
    debug: bool = False,
    retention_days: int = 30,
    console: bool = True,
) -> logging.Logger:
    """Configure the ``ipcert`` logger hierarchy; safe to call more than once."""

    shutdown_logging()
    log = logging.getLogger(ROOT_LOGGER)
    log.propagate = False
    numeric_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)
    log.setLevel(numeric_level)
    # Audit and renewal records are kept regardless of the configured level;
    # the console and general handlers still filter at numeric_level.
    logging.getLogger(AUDIT_LOGGER).setLevel(logging.INFO)
    logging.getLogger(RENEWAL_LOGGER).setLevel(logging.DEBUG)

    if console:
        console_handler = _StreamSplitHandler()
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(_ConsoleFormatter(debug))
        _handlers.append(console_handler)

    file_warning: str | None = None
    if log_dir is not None:
        try:
            _prepare_log_dir(log_dir, retention_days)
            _handlers.extend(
                [
                    _file_handler(log_dir / GENERAL_LOG, numeric_level),
                    _file_handler(log_dir / ERROR_LOG, logging.ERROR),
                    _file_handler(log_dir / AUDIT_LOG, logging.INFO, [_NameFilter(AUDIT_LOGGER)]),
                    _file_handler(
                        log_dir / RENEWAL_LOG, logging.DEBUG, [_NameFilter(RENEWAL_LOGGER)]
                    ),
                ]
            )
        except OSError as exc:
            file_warning = f"File logging disabled ({log_dir}: {exc.strerror or exc})"

    for handler in _handlers:
        log.addHandler(handler)
    if file_warning:
        log.warning(file_warning)
    return log


def shutdown_logging() -> None:
    log = logging.getLogger(ROOT_LOGGER)
    while _handlers:
        handler = _handlers.pop()
        try:
            handler.flush()
            handler.close()
        finally:
            log.removeHandler(handler)
    log.propagate = True
    log.setLevel(logging.NOTSET)
    for name in (AUDIT_LOGGER, RENEWAL_LOGGER):
        logging.getLogger(name).setLevel(logging.NOTSET)


def audit(message: str, *args: object) -> None:
    logging.getLogger(AUDIT_LOGGER).info(message, *args)


def invoking_user() -> str:
    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user:
        return sudo_user
    try:
        return pwd.getpwuid(os.geteuid()).pw_name
    except KeyError:
        return os.environ.get("USER", "unknown")


__all__ = [
    "AUDIT_LOGGER",
    "RENEWAL_LOGGER",
    "audit",
    "invoking_user",
    "prune_rotated",
    "rotate_if_large",
    "setup_logging",
    "shutdown_logging",
]
