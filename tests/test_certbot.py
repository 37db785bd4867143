"""Tests for the certbot subprocess wrapper."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from ipcert import certbot as certbot_module
from ipcert.certbot import CertbotClient
from ipcert.errors import ExternalClientFailure
from ipcert.orchestrator import build_request

CERTIFICATES_OUTPUT = """\
Saving debug log to /var/log/letsencrypt/letsencrypt.log

- - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - -
Found the following certs:
  Certificate Name: 198.51.100.7
    Serial Number: 2b1a0f
    Key Type: RSA
    Identifiers: 198.51.100.7
    Expiry Date: 2026-10-25 08:00:00+00:00 (VALID: 5 days)
    Certificate Path: /etc/letsencrypt/live/198.51.100.7/fullchain.pem
    Private Key Path: /etc/letsencrypt/live/198.51.100.7/privkey.pem
  Certificate Name: 203.0.113.9
    Domains: 203.0.113.9
    Expiry Date: 2026-10-01 08:00:00+00:00 (INVALID: EXPIRED)
    Certificate Path: /etc/letsencrypt/live/203.0.113.9/fullchain.pem
    Private Key Path: /etc/letsencrypt/live/203.0.113.9/privkey.pem
"""


def _fake_run(responses):
    calls = []

    def run(cmd, **kwargs):
        calls.append(list(cmd))
        stdout = ""
        for marker, text in responses.items():
            if marker in cmd:
                stdout = text
                break
        return SimpleNamespace(returncode=0, stdout=stdout, stderr="")

    return run, calls


@pytest.fixture
def installed(monkeypatch):
    monkeypatch.setattr(certbot_module.shutil, "which", lambda name: f"/usr/bin/{name}")


@pytest.mark.parametrize(
    "text, expected",
    [
        ("certbot 4.0.0", (4, 0, 0)),
        ("certbot 2.11", (2, 11)),
        ("Certbot 3.2.1\n", (3, 2, 1)),
        ("command not found", ()),
        ("", ()),
    ],
)
def test_parse_version(text, expected) -> None:
    assert certbot_module.parse_version(text) == expected


def test_version_at_least_pads_components() -> None:
    assert certbot_module.version_at_least((4, 0), "4.0.0")
    assert certbot_module.version_at_least((4, 1, 0), "4.0.0")
    assert not certbot_module.version_at_least((3, 9, 9), "4.0.0")


def test_parse_certificates() -> None:
    records = certbot_module.parse_certificates(CERTIFICATES_OUTPUT)

    assert [record.name for record in records] == ["198.51.100.7", "203.0.113.9"]
    first, second = records
    assert first.domains == ("198.51.100.7",)
    assert first.days_left == 5
    assert not first.expired
    assert first.private_key_path.endswith("198.51.100.7/privkey.pem")
    assert second.expired
    assert second.days_left is None


def test_build_certonly_command_webroot() -> None:
    request = build_request("2001:DB8::10", "ops@example.com", "/var/www/html", 2048)

    args = CertbotClient.build_certonly_command(request, "webroot")

    assert args[:4] == ["certonly", "--webroot", "-w", "/var/www/html"]
    assert args[args.index("-d") + 1] == "2001:db8::10"
    assert "--staging" in args
    assert args[args.index("--profile") + 1] == "shortlived"
    assert args[args.index("--preferred-challenges") + 1] == "http-01"
    assert args[args.index("--rsa-key-size") + 1] == "2048"
    assert "--non-interactive" in args and "--agree-tos" in args


def test_build_certonly_command_is_deterministic() -> None:
    request = build_request("198.51.100.7", "ops@example.com", "/var/www/html")

    first = CertbotClient.build_certonly_command(request, "nginx")
    second = CertbotClient.build_certonly_command(request, "nginx")

    assert first == second
    assert first[:2] == ["certonly", "--nginx"]
    assert "-w" not in first


def test_certonly_rejects_foreign_arguments(installed) -> None:
    with pytest.raises(ValueError):
        CertbotClient().certonly(["renew"])


def test_check_version_accepts_profile_capable_certbot(monkeypatch, installed) -> None:
    run, calls = _fake_run({"--version": "certbot 4.1.0", "--help": "  --profile PROFILE  ACME profile"})
    monkeypatch.setattr(certbot_module.subprocess, "run", run)

    usable, reason = CertbotClient().check_version("4.0.0")

    assert usable
    assert reason == "4.1.0"
    assert calls[0] == ["/usr/bin/certbot", "--version"]


def test_check_version_rejects_old_certbot(monkeypatch, installed) -> None:
    run, _ = _fake_run({"--version": "certbot 2.9.0"})
    monkeypatch.setattr(certbot_module.subprocess, "run", run)

    usable, reason = CertbotClient().check_version("4.0.0")

    assert not usable
    assert "older than" in reason


def test_check_version_rejects_missing_profile_flag(monkeypatch, installed) -> None:
    run, _ = _fake_run({"--version": "certbot 4.0.0", "--help": "  --webroot"})
    monkeypatch.setattr(certbot_module.subprocess, "run", run)

    usable, reason = CertbotClient().check_version("4.0.0")

    assert not usable
    assert "--profile" in reason


def test_check_version_when_not_installed(monkeypatch) -> None:
    monkeypatch.setattr(certbot_module.shutil, "which", lambda name: None)

    assert CertbotClient().check_version("4.0.0") == (False, "certbot is not installed")


def test_run_without_executable_raises(monkeypatch) -> None:
    monkeypatch.setattr(certbot_module.shutil, "which", lambda name: None)

    with pytest.raises(ExternalClientFailure) as excinfo:
        CertbotClient().run(["--version"])

    assert excinfo.value.remediation


def test_certificates_failure_raises(monkeypatch, installed) -> None:
    def run(cmd, **kwargs):
        return SimpleNamespace(returncode=1, stdout="", stderr="permission denied")

    monkeypatch.setattr(certbot_module.subprocess, "run", run)

    with pytest.raises(ExternalClientFailure) as excinfo:
        CertbotClient().certificates()

    assert excinfo.value.returncode == 1
    assert "permission denied" in excinfo.value.output


def test_renew_arguments(monkeypatch, installed) -> None:
    run, calls = _fake_run({})
    monkeypatch.setattr(certbot_module.subprocess, "run", run)
    client = CertbotClient()

    client.renew(dry_run=True, deploy_hook="systemctl reload nginx")
    client.renew(force=True, deploy_hook="systemctl reload nginx")

    assert calls[0] == ["/usr/bin/certbot", "renew", "--non-interactive", "--dry-run"]
    assert calls[1] == [
        "/usr/bin/certbot",
        "renew",
        "--non-interactive",
        "--force-renewal",
        "--deploy-hook",
        "systemctl reload nginx",
    ]
