"""Tests for the dry-run-gated renewal run."""

from __future__ import annotations

import pytest

from ipcert import logs
from ipcert.certbot import CertbotResult
from ipcert.errors import ExternalClientFailure
from ipcert.renewal import DEFAULT_DEPLOY_HOOK, RenewalOutcome, classify_output, run_renewal


class RecordingClient:
    def __init__(self, dry_run_rc: int = 0, renew_rc: int = 0, renew_stdout: str = "") -> None:
        self.dry_run_rc = dry_run_rc
        self.renew_rc = renew_rc
        self.renew_stdout = renew_stdout
        self.calls: list[dict] = []

    def renew(self, *, dry_run=False, force=False, deploy_hook=None):
        self.calls.append({"dry_run": dry_run, "force": force, "deploy_hook": deploy_hook})
        if dry_run:
            return CertbotResult(self.dry_run_rc, "dry run output", "")
        return CertbotResult(self.renew_rc, self.renew_stdout, "")


def test_failed_dry_run_skips_real_renewal() -> None:
    client = RecordingClient(dry_run_rc=1)

    with pytest.raises(ExternalClientFailure) as excinfo:
        run_renewal(client)

    assert client.calls == [{"dry_run": True, "force": False, "deploy_hook": None}]
    assert excinfo.value.returncode == 1


def test_successful_renewal_passes_default_hook() -> None:
    client = RecordingClient(renew_stdout="Congratulations, all renewals succeeded:\n  /etc/letsencrypt/live/x")

    report = run_renewal(client)

    assert report.outcome is RenewalOutcome.RENEWED
    assert client.calls[1] == {"dry_run": False, "force": False, "deploy_hook": DEFAULT_DEPLOY_HOOK}


def test_custom_hook_and_force() -> None:
    client = RecordingClient(renew_stdout="Cert not yet due for renewal")

    report = run_renewal(client, force=True, deploy_hook="rc-service nginx reload")

    assert report.outcome is RenewalOutcome.NOTHING_DUE
    assert client.calls[1] == {"dry_run": False, "force": True, "deploy_hook": "rc-service nginx reload"}


def test_real_renewal_failure_raises() -> None:
    with pytest.raises(ExternalClientFailure):
        run_renewal(RecordingClient(renew_rc=1))


@pytest.mark.parametrize(
    "text, outcome",
    [
        ("Cert not yet due for renewal\n", RenewalOutcome.NOTHING_DUE),
        ("Congratulations, all renewals succeeded", RenewalOutcome.RENEWED),
        ("No renewals were attempted.", RenewalOutcome.COMPLETED),
    ],
)
def test_classify_output(text, outcome) -> None:
    assert classify_output(text) is outcome


def test_certbot_output_reaches_renewal_log_at_info_level(tmp_path) -> None:
    logs.setup_logging(tmp_path, level="INFO", console=False)
    client = RecordingClient(
        renew_stdout="Processing /etc/letsencrypt/renewal/198.51.100.7.conf\nCert not yet due for renewal"
    )
    try:
        run_renewal(client)
    finally:
        logs.shutdown_logging()

    renewal = (tmp_path / logs.RENEWAL_LOG).read_text()
    assert "dry-run: dry run output" in renewal
    assert "renew: Processing /etc/letsencrypt/renewal/198.51.100.7.conf" in renewal
    assert "Certificates not yet due for renewal" in renewal
    assert "Processing /etc/letsencrypt" not in (tmp_path / logs.GENERAL_LOG).read_text()
