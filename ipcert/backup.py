"""Rotated snapshots of ipcert configuration and certificate state.

Layout under the backup root::

    <backup_root>/<type>/<entry_id>/<payload>
    <backup_root>/<type>/<entry_id>/metadata.json

``entry_id`` is a UTC timestamp so lexical order equals creation order.
Emergency snapshots live in ``<backup_root>/emergency`` and are never rotated.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Mapping

from .errors import FilesystemFailure, NoBackupFound

METADATA_FILENAME = "metadata.json"
DEFAULT_MAX_BACKUPS = 10

_LOG = logging.getLogger("ipcert.backup")


class BackupType(str, Enum):
    CONFIG = "config"
    CERTIFICATE = "certificate"
    MANUAL = "manual"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class BackupRecord:
    type: BackupType
    name: str
    path: Path
    source: Path
    created_at: str

    @property
    def payload(self) -> Path:
        return self.path / self.source.name


def _generate_entry_id(now: datetime | None = None) -> str:
    timestamp = datetime.now(timezone.utc) if now is None else now
    return timestamp.strftime("%Y%m%dT%H%M%S%f")


def _copy_any(source: Path, dest: Path) -> None:
    if source.is_dir():
        shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)
    else:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)


class BackupManager:
    def __init__(self, backup_root: Path | str, *, max_backups: int = DEFAULT_MAX_BACKUPS) -> None:
        self.backup_root = Path(backup_root)
        self.max_backups = max(1, int(max_backups))

    def _type_dir(self, backup_type: BackupType) -> Path:
        return self.backup_root / backup_type.value

    def _new_entry_dir(self, backup_type: BackupType) -> Path:
        base = self._type_dir(backup_type)
        base.mkdir(parents=True, exist_ok=True, mode=0o700)
        entry_id = _generate_entry_id()
        candidate = base / entry_id
        suffix = 1
        while candidate.exists():
            candidate = base / f"{entry_id}-{suffix}"
            suffix += 1
        candidate.mkdir(mode=0o700)
        return candidate

    def backup(self, source: Path | str, backup_type: BackupType = BackupType.MANUAL) -> BackupRecord | None:
        """Snapshot ``source``; returns ``None`` (after logging) when the copy fails."""

        source = Path(source)
        if backup_type is BackupType.EMERGENCY:
            raise ValueError("use emergency_snapshot() for emergency backups")
        if not source.exists():
            _LOG.warning("Backup skipped: %s does not exist", source)
            return None

        entry_dir: Path | None = None
        try:
            entry_dir = self._new_entry_dir(backup_type)
            _copy_any(source, entry_dir / source.name)
            created_at = datetime.now(timezone.utc).isoformat(timespec="seconds")
            (entry_dir / METADATA_FILENAME).write_text(
                json.dumps(
                    {"type": backup_type.value, "source": str(source), "created_at": created_at},
                    indent=2,
                )
                + "\n",
                encoding="utf-8",
            )
        except OSError as exc:
            _LOG.error("Backup of %s failed: %s", source, exc)
            if entry_dir is not None:
                shutil.rmtree(entry_dir, ignore_errors=True)
            return None

        record = BackupRecord(
            type=backup_type,
            name=entry_dir.name,
            path=entry_dir,
            source=source,
            created_at=created_at,
        )
        _LOG.info("Created %s backup %s", backup_type.value, entry_dir)
        self.rotate(backup_type)
        return record

    def _load_record(self, backup_type: BackupType, entry_dir: Path) -> BackupRecord | None:
        try:
            payload = json.loads((entry_dir / METADATA_FILENAME).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(payload, dict) or not payload.get("source"):
            return None
        return BackupRecord(
            type=backup_type,
            name=entry_dir.name,
            path=entry_dir,
            source=Path(str(payload["source"])),
            created_at=str(payload.get("created_at") or ""),
        )

    def list_backups(self, backup_type: BackupType) -> list[BackupRecord]:
        """Backups of ``backup_type``, newest first."""

        base = self._type_dir(backup_type)
        if not base.is_dir():
            return []
        records: list[BackupRecord] = []
        for entry_dir in sorted((p for p in base.iterdir() if p.is_dir()), key=lambda p: p.name, reverse=True):
            record = self._load_record(backup_type, entry_dir)
            if record is not None:
                records.append(record)
        return records

    def rotate(self, backup_type: BackupType) -> list[Path]:
        removed: list[Path] = []
        if backup_type is BackupType.EMERGENCY:
            return removed
        for record in self.list_backups(backup_type)[self.max_backups :]:
            try:
                shutil.rmtree(record.path)
            except OSError as exc:
                _LOG.warning("Unable to remove old backup %s: %s", record.path, exc)
                continue
            removed.append(record.path)
            _LOG.debug("Rotated out backup %s", record.path)
        return removed

    def restore(
        self,
        backup_type: BackupType,
        name: str | None = None,
        *,
        target: Path | None = None,
    ) -> Path:
        """Copy a backup over its live target; the newest one unless ``name`` is given."""

        records = self.list_backups(backup_type)
        if name:
            records = [record for record in records if record.name == name]
        if not records:
            detail = f" named {name}" if name else ""
            raise NoBackupFound(
                f"No {backup_type.value} backup{detail} found in {self._type_dir(backup_type)}"
            )
        record = records[0]
        destination = Path(target) if target is not None else record.source
        if not record.payload.exists():
            raise NoBackupFound(f"Backup {record.path} is missing its payload")
        try:
            _copy_any(record.payload, destination)
        except OSError as exc:
            raise FilesystemFailure(
                f"Unable to restore backup {record.name} to {destination}: {exc.strerror or exc}",
                str(destination),
                remediation=(
                    f"Check that {destination.parent} exists and is writable",
                    "Pass an explicit target or pick another entry with --backup-name",
                ),
            ) from exc
        _LOG.info("Restored %s backup %s to %s", backup_type.value, record.name, destination)
        return destination

    def emergency_snapshot(self, sources: Mapping[str, Path]) -> Path:
        """Copy every existing source into a fresh emergency folder."""

        base = self._type_dir(BackupType.EMERGENCY)
        base.mkdir(parents=True, exist_ok=True, mode=0o700)
        stem = f"emergency_{_generate_entry_id()}_{os.getpid()}"
        folder = base / stem
        suffix = 1
        while folder.exists():
            folder = base / f"{stem}-{suffix}"
            suffix += 1
        folder.mkdir(mode=0o700)
        for label, source in sources.items():
            source = Path(source)
            if not source.exists():
                _LOG.debug("Emergency snapshot: %s (%s) missing, skipped", label, source)
                continue
            try:
                _copy_any(source, folder / label)
            except OSError as exc:
                _LOG.warning("Emergency snapshot of %s failed: %s", source, exc)
        _LOG.info("Emergency snapshot written to %s", folder)
        return folder


__all__ = ["BackupManager", "BackupRecord", "BackupType", "METADATA_FILENAME"]
