"""Tests for command resolution and the main() exit codes."""

from __future__ import annotations

import signal
from functools import partial
from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml

from ipcert import cli as cli_module
from ipcert import config as config_module
from ipcert import locking
from ipcert.certbot import CertbotClient
from ipcert.cli import Command, build_parser, main, resolve_command
from ipcert.environment import EnvironmentDescriptor, InitSystem, OsFamily, PackageManager
from ipcert.errors import (
    EXIT_CERTIFICATE,
    EXIT_CONFIG,
    EXIT_INTERRUPTED,
    EXIT_INVALID_ARGUMENTS,
    EXIT_LOCK,
    EXIT_OK,
    EXIT_PRIVILEGE,
    ExternalClientFailure,
    InvalidInput,
)
from ipcert.orchestrator import CertificateOrchestrator
from ipcert.renewal import RenewalOutcome
from ipcert.scheduler import RenewalScheduler

ENV = EnvironmentDescriptor(
    os_family=OsFamily.DEBIAN,
    package_manager=PackageManager.APT,
    init_system=InitSystem.SYSTEMD,
    architecture="x86_64",
    os_name="Debian GNU/Linux",
    os_version="12",
)


@pytest.fixture
def config_file(monkeypatch, tmp_path: Path) -> Path:
    for key in ("DEBUG", "IPCERT_EMAIL", "IPCERT_LOG_DIR", "IPCERT_LOCK_FILE", "IPCERT_CERTBOT"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    monkeypatch.setattr(config_module, "_primary_config_path", None, raising=False)
    monkeypatch.setattr(cli_module, "profile", lambda: ENV)

    path = tmp_path / "config.yaml"
    path.write_text(
        "email: ops@example.com\n"
        "paths:\n"
        f"  config_dir: {tmp_path}\n"
        f"  log_dir: {tmp_path / 'logs'}\n"
        f"  backup_dir: {tmp_path / 'backups'}\n"
        f"  lock_file: {tmp_path / 'ipcert.lock'}\n"
        f"  cert_dir: {tmp_path / 'letsencrypt'}\n"
        "certbot:\n"
        f"  path: {tmp_path / 'bin' / 'certbot'}\n"
    )
    monkeypatch.setenv("IPCERT_CONFIG", str(path))
    return path


def _resolve(*argv: str) -> Command:
    return resolve_command(build_parser().parse_args(list(argv)))


def test_resolve_command() -> None:
    assert _resolve() is Command.HELP
    assert _resolve("-i", "198.51.100.7") is Command.OBTAIN
    assert _resolve("--renew") is Command.RENEW
    assert _resolve("--setup", "-i", "198.51.100.7") is Command.SETUP
    assert _resolve("-v") is Command.VERSION


@pytest.mark.parametrize("argv", [("-i", "198.51.100.7", "--renew"), ("-e", "ops@example.com")])
def test_resolve_command_rejects_ambiguous_input(argv) -> None:
    with pytest.raises(InvalidInput):
        _resolve(*argv)


def test_actions_are_mutually_exclusive(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        build_parser().parse_args(["--renew", "--list"])
    assert excinfo.value.code == 2


def test_jitter_bounds(capsys) -> None:
    assert build_parser().parse_args(["--renew", "--jitter", "300"]).jitter == 300
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--renew", "--jitter", "-5"])


def test_version_needs_no_configuration(monkeypatch, capsys) -> None:
    monkeypatch.setenv("IPCERT_CONFIG", "/nonexistent/config.yaml")

    assert main(["--version"]) == EXIT_OK
    assert capsys.readouterr().out.startswith(f"ipcert {cli_module.__version__}")


def test_no_arguments_prints_help(capsys) -> None:
    assert main([]) == EXIT_OK
    assert "--setup-renewal" in capsys.readouterr().out


def test_ip_with_other_action_is_exit_2(capsys) -> None:
    assert main(["-i", "198.51.100.7", "--renew"]) == EXIT_INVALID_ARGUMENTS
    assert "cannot be combined" in capsys.readouterr().err


def test_mutating_command_requires_root(config_file, monkeypatch) -> None:
    monkeypatch.setattr(cli_module.os, "geteuid", lambda: 1000)

    assert main(["--renew"]) == EXIT_PRIVILEGE


def test_private_ip_is_rejected_with_exit_2(config_file, monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(cli_module.os, "geteuid", lambda: 0)

    def _no_dependency_checks(*args, **kwargs):
        raise AssertionError("dependency checks must not run for invalid input")

    monkeypatch.setattr(cli_module, "DependencyResolver", _no_dependency_checks)

    code = main(["-i", "192.168.1.50", "-w", str(tmp_path / "www")])

    assert code == EXIT_INVALID_ARGUMENTS
    assert not (tmp_path / "ipcert.lock").exists()
    assert "192.168.1.50" in (tmp_path / "logs" / "error.log").read_text()


def test_show_config_prints_effective_settings(config_file, capsys) -> None:
    assert main(["--show-config"]) == EXIT_OK

    out = capsys.readouterr().out
    assert f"# Configuration file: {config_file.resolve()}" in out
    assert "email: ops@example.com" in out
    assert "key_size: 4096" in out


def test_show_config_survives_corrupt_file(config_file, monkeypatch, tmp_path, capsys) -> None:
    config_file.write_text("key_size: 1234\n")
    monkeypatch.setenv("IPCERT_LOG_DIR", str(tmp_path / "logs"))

    assert main(["--show-config"]) == EXIT_OK
    assert "Configuration is unusable" in capsys.readouterr().err


def test_corrupt_config_blocks_normal_commands(config_file, monkeypatch) -> None:
    config_file.write_text("key_size: 1234\n")
    monkeypatch.setattr(cli_module.os, "geteuid", lambda: 0)

    assert main(["--list"]) == EXIT_CONFIG


def test_integrity_check_counts_issues(config_file, capsys) -> None:
    code = main(["--integrity-check"])

    out = capsys.readouterr().out
    # missing certificate directory and missing certbot
    assert "Integrity check: 2 issue(s) found" in out
    assert code == EXIT_CONFIG


def test_status_is_read_only(config_file, monkeypatch, tmp_path, capsys) -> None:
    monkeypatch.setattr(cli_module.os, "geteuid", lambda: 1000)
    (tmp_path / "etc/cron.d").mkdir(parents=True)
    monkeypatch.setattr(
        cli_module.Runtime,
        "scheduler",
        lambda self: RenewalScheduler(self.env, root=tmp_path, command=["ipcert", "--renew"]),
    )

    assert main(["--status"]) == EXIT_OK

    out = capsys.readouterr().out
    assert "certbot: not installed" in out
    assert "Lock: free" in out
    assert "Renewal job (systemd timer): missing" in out
    assert not (tmp_path / "ipcert.lock").exists()


def test_configure_wizard_saves_validated_answers(config_file, monkeypatch, tmp_path, capsys) -> None:
    monkeypatch.setattr(cli_module.os, "geteuid", lambda: 0)
    answers = iter(
        [
            "",  # keep email
            "",  # keep webroot
            "3072",  # rejected, asked again
            "2048",
            "nginx",
            "n",
            "",  # keep log level
            "",  # keep retention
            "systemctl reload nginx",
        ]
    )
    monkeypatch.setattr(cli_module.Runtime, "prompt", lambda self, text: next(answers))

    assert main(["--configure"]) == EXIT_OK

    saved = yaml.safe_load(config_file.read_text())
    assert saved["email"] == "ops@example.com"
    assert saved["key_size"] == 2048
    assert saved["web_server"] == "nginx"
    assert saved["renewal_enabled"] is False
    assert saved["deploy_hook"] == "systemctl reload nginx"
    assert saved["paths"]["log_dir"] == str(tmp_path / "logs")
    assert "Choose one of: 2048, 4096" in capsys.readouterr().out
    assert len(list((tmp_path / "backups" / "config").iterdir())) == 1
    assert not (tmp_path / "ipcert.lock").exists()


class _UsableCertbot:
    build_certonly_command = staticmethod(CertbotClient.build_certonly_command)

    def __init__(self, certbot_path: str = "certbot") -> None:
        self.certbot_path = certbot_path

    def check_version(self, minimum: str) -> tuple[bool, str]:
        return True, "4.0.0"

    def certonly(self, args):
        raise AssertionError("certbot must not run")


class _NoDependencyChecks:
    def __init__(self, *args, **kwargs) -> None:
        pass

    def ensure(self) -> None:
        return None


def _as_root(monkeypatch) -> None:
    monkeypatch.setattr(cli_module.os, "geteuid", lambda: 0)


def _record_renewals(monkeypatch, lock_path: Path) -> list[dict]:
    calls: list[dict] = []

    def fake_run_renewal(client, *, force=False, deploy_hook=None):
        calls.append({"force": force, "lock_held": lock_path.exists()})
        return SimpleNamespace(outcome=RenewalOutcome.NOTHING_DUE)

    monkeypatch.setattr(cli_module, "run_renewal", fake_run_renewal)
    return calls


def test_webroot_that_is_a_file_exits_cleanly(config_file, monkeypatch, tmp_path, capsys) -> None:
    _as_root(monkeypatch)
    monkeypatch.setattr(cli_module, "CertbotClient", _UsableCertbot)
    monkeypatch.setattr(cli_module, "DependencyResolver", _NoDependencyChecks)
    monkeypatch.setattr(
        cli_module,
        "CertificateOrchestrator",
        partial(
            CertificateOrchestrator,
            port_probe=lambda address: True,
            ping=lambda address: False,
            schedule_removal=lambda path, delay: None,
        ),
    )
    webroot = tmp_path / "notadir"
    webroot.write_text("plain file")

    code = main(["-i", "198.51.100.7", "-w", str(webroot)])

    err = capsys.readouterr().err
    assert code == 1
    assert "Unable to prepare challenge directory" in err
    assert "-w/--webroot" in err
    assert "Traceback" not in err
    assert not (tmp_path / "ipcert.lock").exists()


def test_jitter_sleep_happens_before_the_lock_is_taken(config_file, monkeypatch, tmp_path) -> None:
    _as_root(monkeypatch)
    lock_path = tmp_path / "ipcert.lock"
    sleeps: list[tuple[float, bool]] = []
    monkeypatch.setattr(cli_module.time, "sleep", lambda seconds: sleeps.append((seconds, lock_path.exists())))
    monkeypatch.setattr(cli_module.random, "uniform", lambda low, high: 250.0)
    renewals = _record_renewals(monkeypatch, lock_path)

    assert main(["--renew", "--scheduled", "--jitter", "300"]) == EXIT_OK

    assert sleeps == [(250.0, False)]
    assert renewals == [{"force": False, "lock_held": True}]
    assert not lock_path.exists()


def test_scheduled_run_skips_when_renewal_disabled(config_file, monkeypatch, tmp_path) -> None:
    _as_root(monkeypatch)
    config_file.write_text(config_file.read_text() + "renewal_enabled: false\n")
    monkeypatch.setattr(cli_module.time, "sleep", lambda seconds: pytest.fail("no jitter when disabled"))
    renewals = _record_renewals(monkeypatch, tmp_path / "ipcert.lock")

    # the systemd unit passes --scheduled without --jitter
    assert main(["--renew", "--scheduled"]) == EXIT_OK
    assert main(["--renew", "--scheduled", "--jitter", "300"]) == EXIT_OK
    assert renewals == []

    assert main(["--renew"]) == EXIT_OK
    assert len(renewals) == 1


def test_scheduled_run_honours_renewal_force(config_file, monkeypatch, tmp_path) -> None:
    _as_root(monkeypatch)
    config_file.write_text(config_file.read_text() + "renewal_force: true\n")
    renewals = _record_renewals(monkeypatch, tmp_path / "ipcert.lock")

    assert main(["--renew", "--scheduled"]) == EXIT_OK
    assert main(["--renew"]) == EXIT_OK

    assert [call["force"] for call in renewals] == [True, False]


def test_live_lock_holder_blocks_orchestration(config_file, monkeypatch, tmp_path) -> None:
    _as_root(monkeypatch)
    config_file.write_text(config_file.read_text() + "lock_timeout_sec: 0\n")
    lock_path = tmp_path / "ipcert.lock"
    lock_path.write_text("4242\n")
    monkeypatch.setattr(locking, "_pid_alive", lambda pid: True)

    def _no_dependency_checks(*args, **kwargs):
        raise AssertionError("nothing may run while another instance holds the lock")

    monkeypatch.setattr(cli_module, "DependencyResolver", _no_dependency_checks)
    webroot = tmp_path / "www"

    code = main(["-i", "198.51.100.7", "-w", str(webroot)])

    assert code == EXIT_LOCK
    assert not webroot.exists()
    assert lock_path.read_text().strip() == "4242"


@pytest.mark.parametrize("interrupt", [KeyboardInterrupt(), cli_module._Signalled(signal.SIGTERM)])
def test_interrupt_inside_handler_releases_lock(config_file, monkeypatch, tmp_path, interrupt) -> None:
    _as_root(monkeypatch)
    lock_path = tmp_path / "ipcert.lock"
    seen: list[bool] = []

    def handler(rt):
        seen.append(lock_path.exists())
        raise interrupt

    monkeypatch.setitem(cli_module.HANDLERS, Command.RENEW, handler)
    previous = signal.getsignal(signal.SIGTERM)

    assert main(["--renew"]) == EXIT_INTERRUPTED

    assert seen == [True]
    assert not lock_path.exists()
    assert signal.getsignal(signal.SIGTERM) is previous


def test_handler_error_still_removes_lock(config_file, monkeypatch, tmp_path) -> None:
    _as_root(monkeypatch)
    lock_path = tmp_path / "ipcert.lock"

    def handler(rt):
        assert lock_path.exists()
        raise ExternalClientFailure("certbot exited with status 1")

    monkeypatch.setitem(cli_module.HANDLERS, Command.RENEW, handler)

    assert main(["--renew"]) == EXIT_CERTIFICATE

    assert not lock_path.exists()
    assert "certbot exited with status 1" in (tmp_path / "logs" / "error.log").read_text()
