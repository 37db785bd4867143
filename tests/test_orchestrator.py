"""Tests for the certificate request flow."""

from __future__ import annotations

from pathlib import Path

import pytest

from ipcert.certbot import CertbotClient, CertbotResult, CertificateInfo
from ipcert.context import RunContext
from ipcert.environment import EnvironmentDescriptor, InitSystem, OsFamily, PackageManager
from ipcert.errors import (
    ExternalClientFailure,
    FilesystemFailure,
    InvalidInput,
    PortUnreachable,
    PrivateOrReservedAddress,
    UnresolvedDependencies,
)
from ipcert.orchestrator import (
    TROUBLESHOOTING,
    CertificateOrchestrator,
    State,
    build_request,
    detect_web_server,
)

ENV = EnvironmentDescriptor(
    os_family=OsFamily.DEBIAN,
    package_manager=PackageManager.APT,
    init_system=InitSystem.SYSTEMD,
    architecture="x86_64",
)


class FakeClient:
    build_certonly_command = staticmethod(CertbotClient.build_certonly_command)

    def __init__(self, returncode: int = 0, usable: bool = True) -> None:
        self.returncode = returncode
        self.usable = usable
        self.certonly_calls: list[list[str]] = []
        self.seen_tokens: list[bool] = []
        self.token_dir: Path | None = None

    def check_version(self, minimum: str) -> tuple[bool, str]:
        if self.usable:
            return True, "4.0.0"
        return False, "certbot 1.21.0 is older than the required 2.0.0"

    def certonly(self, args):
        self.certonly_calls.append(list(args))
        if self.token_dir is not None:
            self.seen_tokens.append(any(self.token_dir.glob("ipcert-probe-*.txt")))
        return CertbotResult(self.returncode, "", "" if self.returncode == 0 else "Challenge failed")

    def certificates(self, subject=None):
        return [CertificateInfo(name=subject, domains=(subject,), expiry="2026-10-25 (VALID: 5 days)")]


def _orchestrator(client, *, port_open=True, probes=None, context=None, web_server="webroot"):
    def port_probe(address):
        if probes is not None:
            probes.append(address)
        return port_open

    return CertificateOrchestrator(
        ENV,
        client,
        context=context,
        web_server=web_server,
        port_probe=port_probe,
        ping=lambda address: False,
        schedule_removal=lambda path, delay: None,
    )


def test_private_address_rejected_before_any_probe(tmp_path: Path) -> None:
    client = FakeClient()
    probes: list[str] = []
    orchestrator = _orchestrator(client, probes=probes)

    with pytest.raises(PrivateOrReservedAddress) as excinfo:
        orchestrator.request_certificate("192.168.1.50", "ops@example.com", str(tmp_path))

    assert excinfo.value.reason == "private"
    assert probes == []
    assert client.certonly_calls == []
    assert orchestrator.state is State.FAILED


def test_closed_port_stops_before_certbot(tmp_path: Path) -> None:
    client = FakeClient()
    webroot = tmp_path / "www"

    with pytest.raises(PortUnreachable):
        _orchestrator(client, port_open=False).request_certificate(
            "198.51.100.7", "ops@example.com", str(webroot)
        )

    assert client.certonly_calls == []
    assert not webroot.exists()


def test_success_invokes_certbot_exactly_once(tmp_path: Path) -> None:
    client = FakeClient()
    client.token_dir = tmp_path / ".well-known" / "acme-challenge"
    context = RunContext()
    orchestrator = _orchestrator(client, context=context)

    result = orchestrator.request_certificate("198.51.100.7", "Ops@Example.COM", str(tmp_path), 2048)

    assert len(client.certonly_calls) == 1
    command = client.certonly_calls[0]
    assert "--staging" in command
    assert command[command.index("--profile") + 1] == "shortlived"
    assert command[command.index("-d") + 1] == "198.51.100.7"
    assert command[command.index("--email") + 1] == "Ops@example.com"
    assert result.plugin == "webroot"
    assert result.certificates[0].name == "198.51.100.7"
    assert orchestrator.state is State.SUCCEEDED
    assert (tmp_path / ".well-known" / "acme-challenge").is_dir()
    # probe token exists during the call and is gone afterwards
    assert client.seen_tokens == [True]
    assert not any(client.token_dir.glob("ipcert-probe-*.txt"))
    assert any("--setup-renewal" in item for item in context.suggestions)


def test_certbot_failure_carries_troubleshooting(tmp_path: Path) -> None:
    client = FakeClient(returncode=1)
    orchestrator = _orchestrator(client)

    with pytest.raises(ExternalClientFailure) as excinfo:
        orchestrator.request_certificate("198.51.100.7", "ops@example.com", str(tmp_path))

    assert excinfo.value.remediation == TROUBLESHOOTING
    assert "Challenge failed" in excinfo.value.output
    assert len(client.certonly_calls) == 1
    assert orchestrator.state is State.FAILED


def test_outdated_certbot_is_a_dependency_error(tmp_path: Path) -> None:
    client = FakeClient(usable=False)

    with pytest.raises(UnresolvedDependencies) as excinfo:
        _orchestrator(client).request_certificate("198.51.100.7", "ops@example.com", str(tmp_path))

    assert excinfo.value.missing == ("certbot",)
    assert client.certonly_calls == []



def test_webroot_that_is_a_file_is_a_typed_failure(tmp_path: Path) -> None:
    client = FakeClient()
    webroot = tmp_path / "notadir"
    webroot.write_text("plain file")
    orchestrator = _orchestrator(client)

    with pytest.raises(FilesystemFailure) as excinfo:
        orchestrator.request_certificate("198.51.100.7", "ops@example.com", str(webroot))

    assert excinfo.value.path == str(webroot)
    assert excinfo.value.exit_code == 1
    assert any("--webroot" in line for line in excinfo.value.remediation)
    assert client.certonly_calls == []
    assert orchestrator.state is State.FAILED
    assert webroot.read_text() == "plain file"


@pytest.mark.parametrize(
    "ip, email, webroot, key_size",
    [
        ("256.1.1.1", "ops@example.com", "/var/www/html", 4096),
        ("198.51.100.7", "not-an-email", "/var/www/html", 4096),
        ("198.51.100.7", "ops@example.com", "relative/www", 4096),
        ("198.51.100.7", "ops@example.com", "/var/www/html; rm -rf /", 4096),
        ("198.51.100.7", "ops@example.com", "/var/www/html", 1024),
    ],
)
def test_build_request_rejects_bad_input(ip, email, webroot, key_size) -> None:
    with pytest.raises(InvalidInput):
        build_request(ip, email, webroot, key_size)


def test_detect_web_server_honours_preference() -> None:
    def _never(argv):
        raise AssertionError("no probing expected")

    assert detect_web_server(ENV, "Apache", returncode=_never) == "apache"


def test_detect_web_server_queries_service_manager() -> None:
    queries: list[list[str]] = []

    def returncode(argv):
        queries.append(list(argv))
        return 0 if argv[-1] == "httpd" else 3

    assert detect_web_server(ENV, returncode=returncode) == "apache"
    assert queries[0] == ["systemctl", "is-active", "--quiet", "nginx"]


def test_detect_web_server_falls_back_to_standalone(caplog) -> None:
    with caplog.at_level("WARNING", logger="ipcert.orchestrator"):
        plugin = detect_web_server(ENV, "lighttpd", returncode=lambda argv: 1)

    assert plugin == "standalone"
    assert "lighttpd" in caplog.text
