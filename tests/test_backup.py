"""Tests for rotated backups and emergency snapshots."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ipcert.backup import METADATA_FILENAME, BackupManager, BackupType
from ipcert.errors import FilesystemFailure, NoBackupFound


def _config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "etc" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def test_backup_writes_payload_and_metadata(tmp_path: Path) -> None:
    source = _config(tmp_path, "email: ops@example.com\n")
    manager = BackupManager(tmp_path / "backups")

    record = manager.backup(source, BackupType.CONFIG)

    assert record is not None
    assert record.payload.read_text() == "email: ops@example.com\n"
    metadata = json.loads((record.path / METADATA_FILENAME).read_text())
    assert metadata["type"] == "config"
    assert metadata["source"] == str(source)


def test_rotation_keeps_newest_max_backups(tmp_path: Path) -> None:
    source = _config(tmp_path, "v0\n")
    manager = BackupManager(tmp_path / "backups", max_backups=3)

    names = []
    for index in range(4):
        source.write_text(f"v{index}\n")
        names.append(manager.backup(source, BackupType.CONFIG).name)

    remaining = manager.list_backups(BackupType.CONFIG)
    assert [record.name for record in remaining] == list(reversed(names[1:]))
    assert names[0] not in {path.name for path in (tmp_path / "backups" / "config").iterdir()}


def test_missing_source_is_skipped(tmp_path: Path) -> None:
    manager = BackupManager(tmp_path / "backups")

    assert manager.backup(tmp_path / "absent.yaml", BackupType.CONFIG) is None
    assert manager.list_backups(BackupType.CONFIG) == []


def test_restore_newest_and_named(tmp_path: Path) -> None:
    source = _config(tmp_path, "first\n")
    manager = BackupManager(tmp_path / "backups")
    first = manager.backup(source, BackupType.CONFIG)
    source.write_text("second\n")
    manager.backup(source, BackupType.CONFIG)
    source.write_text("broken: [\n")

    manager.restore(BackupType.CONFIG)
    assert source.read_text() == "second\n"

    manager.restore(BackupType.CONFIG, first.name)
    assert source.read_text() == "first\n"


def test_restore_to_explicit_target(tmp_path: Path) -> None:
    source = _config(tmp_path, "email: ops@example.com\n")
    manager = BackupManager(tmp_path / "backups")
    manager.backup(source, BackupType.MANUAL)
    target = tmp_path / "elsewhere.yaml"

    assert manager.restore(BackupType.MANUAL, target=target) == target
    assert target.read_text() == "email: ops@example.com\n"


def test_restore_onto_unwritable_target_is_a_typed_failure(tmp_path: Path) -> None:
    source = _config(tmp_path, "email: ops@example.com\n")
    manager = BackupManager(tmp_path / "backups")
    manager.backup(source, BackupType.CONFIG)
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    with pytest.raises(FilesystemFailure) as excinfo:
        manager.restore(BackupType.CONFIG, target=blocker / "config.yaml")

    assert excinfo.value.path == str(blocker / "config.yaml")
    assert blocker.read_text() == "not a directory"


def test_restore_without_backups_raises(tmp_path: Path) -> None:
    manager = BackupManager(tmp_path / "backups")

    with pytest.raises(NoBackupFound):
        manager.restore(BackupType.CONFIG)

    source = _config(tmp_path, "x\n")
    manager.backup(source, BackupType.CONFIG)
    with pytest.raises(NoBackupFound):
        manager.restore(BackupType.CONFIG, "19700101T000000000000")


def test_directory_backup(tmp_path: Path) -> None:
    live = tmp_path / "letsencrypt" / "live" / "198.51.100.7"
    live.mkdir(parents=True)
    (live / "fullchain.pem").write_text("CERT")
    manager = BackupManager(tmp_path / "backups")

    record = manager.backup(tmp_path / "letsencrypt", BackupType.CERTIFICATE)

    assert (record.payload / "live" / "198.51.100.7" / "fullchain.pem").read_text() == "CERT"


def test_emergency_snapshots_are_never_rotated(tmp_path: Path) -> None:
    source = _config(tmp_path, "x\n")
    manager = BackupManager(tmp_path / "backups", max_backups=1)

    folders = [
        manager.emergency_snapshot({"config": source, "logs": tmp_path / "missing"}) for _ in range(3)
    ]

    assert len(set(folders)) == 3
    assert all(folder.name.startswith("emergency_") for folder in folders)
    assert all((folder / "config").read_text() == "x\n" for folder in folders)
    assert not (folders[0] / "logs").exists()
    assert manager.rotate(BackupType.EMERGENCY) == []


def test_emergency_type_rejected_by_backup(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        BackupManager(tmp_path).backup(tmp_path, BackupType.EMERGENCY)
