"""Renewal run shared by the systemd timer, init scripts and cron jobs."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .certbot import ALL_SUCCEEDED_PHRASE, NOT_DUE_PHRASE, CertbotClient, CertbotResult
from .errors import ExternalClientFailure
from .logs import RENEWAL_LOGGER

DEFAULT_DEPLOY_HOOK = (
    "systemctl reload nginx 2>/dev/null || "
    "systemctl reload apache2 2>/dev/null || "
    "systemctl reload httpd 2>/dev/null || true"
)

_LOG = logging.getLogger(RENEWAL_LOGGER)


class RenewalOutcome(str, Enum):
    NOTHING_DUE = "nothing_due"
    RENEWED = "renewed"
    COMPLETED = "completed"


@dataclass(frozen=True)
class RenewalReport:
    outcome: RenewalOutcome
    dry_run: CertbotResult
    result: CertbotResult


def classify_output(text: str) -> RenewalOutcome:
    if NOT_DUE_PHRASE in text:
        return RenewalOutcome.NOTHING_DUE
    if ALL_SUCCEEDED_PHRASE in text:
        return RenewalOutcome.RENEWED
    return RenewalOutcome.COMPLETED


def _log_output(prefix: str, text: str) -> None:
    for line in text.splitlines():
        if line.strip():
            _LOG.debug("%s: %s", prefix, line)


def run_renewal(
    client: CertbotClient,
    *,
    force: bool = False,
    deploy_hook: str | None = None,
) -> RenewalReport:
    """Dry run first; the real renewal only runs when the dry run succeeds.

    certbot invokes the deploy hook itself, and only for certificates it
    actually renewed, so a "not yet due" run never reloads a web server.
    """

    hook = deploy_hook or DEFAULT_DEPLOY_HOOK
    _LOG.info("Starting certificate renewal process...")

    dry_run = client.renew(dry_run=True)
    _log_output("dry-run", dry_run.output)
    if not dry_run.ok:
        _LOG.error("Renewal dry run failed with exit code %s", dry_run.returncode)
        raise ExternalClientFailure(
            "Renewal dry run failed; no real renewal was attempted",
            returncode=dry_run.returncode,
            output=dry_run.output,
            remediation=(
                "Inspect /var/log/letsencrypt/letsencrypt.log for the CA response",
                "Confirm port 80 is still reachable and the webroot is served",
            ),
        )
    _LOG.info("Dry run successful, proceeding with actual renewal...")

    result = client.renew(force=force, deploy_hook=hook)
    _log_output("renew", result.output)
    if not result.ok:
        _LOG.error("Certificate renewal failed with exit code %s", result.returncode)
        raise ExternalClientFailure(
            "Certificate renewal failed",
            returncode=result.returncode,
            output=result.output,
            remediation=("Run 'ipcert --renew --debug' to see certbot's output",),
        )

    outcome = classify_output(result.output)
    if outcome is RenewalOutcome.NOTHING_DUE:
        _LOG.info("Certificates not yet due for renewal")
    elif outcome is RenewalOutcome.RENEWED:
        _LOG.info("Certificates renewed successfully")
    else:
        _LOG.info("Renewal process completed")
    return RenewalReport(outcome=outcome, dry_run=dry_run, result=result)


__all__ = ["DEFAULT_DEPLOY_HOOK", "RenewalOutcome", "RenewalReport", "classify_output", "run_renewal"]
