"""Helpers for driving the ``certbot`` CLI.

ipcert never speaks ACME itself; every issuance, renewal and listing goes
through the subprocess calls in this module.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from .errors import ExternalClientFailure

if TYPE_CHECKING:
    from .orchestrator import CertificateRequest

STAGING_ACME_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"
REQUIRED_PROFILE = "shortlived"
CERT_VALIDITY_DAYS = 6
CERTBOT_LOG = "/var/log/letsencrypt/letsencrypt.log"

NOT_DUE_PHRASE = "Cert not yet due for renewal"
ALL_SUCCEEDED_PHRASE = "Congratulations, all renewals succeeded"

_VERSION_RE = re.compile(r"certbot\s+([0-9]+(?:\.[0-9]+)*)", re.IGNORECASE)


@dataclass(frozen=True)
class CertbotResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass(frozen=True)
class CertificateInfo:
    name: str
    domains: tuple[str, ...] = ()
    expiry: str = ""
    days_left: int | None = None
    expired: bool = False
    certificate_path: str = ""
    private_key_path: str = ""


def parse_version(text: str) -> tuple[int, ...]:
    match = _VERSION_RE.search(text or "")
    if not match:
        return ()
    return tuple(int(part) for part in match.group(1).split("."))


def version_at_least(found: tuple[int, ...], minimum: str) -> bool:
    wanted = tuple(int(part) for part in minimum.split(".") if part.isdigit())
    width = max(len(found), len(wanted))
    return found + (0,) * (width - len(found)) >= wanted + (0,) * (width - len(wanted))


_DAYS_RE = re.compile(r"VALID:\s*(\d+)\s+day", re.IGNORECASE)


def parse_certificates(text: str) -> list[CertificateInfo]:
    """Parse ``certbot certificates`` output into records."""

    records: list[CertificateInfo] = []
    current: dict[str, object] | None = None

    def _flush() -> None:
        if current is not None:
            records.append(CertificateInfo(**current))  # type: ignore[arg-type]

    for raw_line in (text or "").splitlines():
        line = raw_line.strip()
        if line.startswith("Certificate Name:"):
            _flush()
            current = {"name": line.split(":", 1)[1].strip()}
            continue
        if current is None or ":" not in line:
            continue
        key, _, value = line.partition(":")
        value = value.strip()
        if key == "Domains" or key == "Identifiers":
            current["domains"] = tuple(value.split())
        elif key == "Expiry Date":
            current["expiry"] = value
            current["expired"] = "EXPIRED" in value.upper()
            days = _DAYS_RE.search(value)
            if days:
                current["days_left"] = int(days.group(1))
        elif key == "Certificate Path":
            current["certificate_path"] = value
        elif key == "Private Key Path":
            current["private_key_path"] = value
    _flush()
    return records


class CertbotClient:
    """Run ``certbot`` subcommands and capture their output."""

    def __init__(self, certbot_path: str = "certbot", *, logger: logging.Logger | None = None) -> None:
        self._certbot_path = certbot_path.strip() or "certbot"
        self._logger = logger or logging.getLogger("ipcert.certbot")

    def resolve(self) -> str | None:
        candidate = self._certbot_path
        if os.path.sep in candidate or candidate.startswith("."):
            resolved = Path(candidate)
            if resolved.is_file():
                return str(resolved)
            return None
        return shutil.which(candidate)

    @property
    def installed(self) -> bool:
        return self.resolve() is not None

    def _executable(self) -> str:
        resolved = self.resolve()
        if not resolved:
            raise ExternalClientFailure(
                f"certbot executable {self._certbot_path!r} not found",
                remediation=("Install certbot with: ipcert --install",),
            )
        return resolved

    def run(self, args: Sequence[str]) -> CertbotResult:
        cmd = [self._executable(), *args]
        self._logger.debug("Running: %s", " ".join(cmd))
        result = subprocess.run(
            cmd,
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        return CertbotResult(
            returncode=result.returncode,
            stdout=(result.stdout or "").strip(),
            stderr=(result.stderr or "").strip(),
        )

    def version(self) -> tuple[int, ...]:
        if not self.installed:
            return ()
        result = self.run(["--version"])
        return parse_version(result.output)

    def supports_profiles(self) -> bool:
        result = self.run(["--help", "all"])
        return "--profile" in result.output

    def check_version(self, minimum: str) -> tuple[bool, str]:
        """Return ``(usable, reason)`` for the installed certbot."""

        if not self.installed:
            return False, "certbot is not installed"
        found = self.version()
        found_text = ".".join(str(part) for part in found) or "unknown"
        self._logger.info("Current certbot version: %s", found_text)
        if not found or not version_at_least(found, minimum):
            return False, f"certbot {found_text} is older than the required {minimum}"
        if not self.supports_profiles():
            return False, f"certbot {found_text} does not support ACME profiles (--profile)"
        return True, found_text

    @staticmethod
    def build_certonly_command(request: "CertificateRequest", plugin: str) -> list[str]:
        """Arguments for ``certbot certonly``; fully determined by ``request`` and ``plugin``."""

        if plugin == "webroot":
            args = ["certonly", "--webroot", "-w", str(request.webroot)]
        else:
            args = ["certonly", f"--{plugin}"]
        args += [
            "-d",
            request.ip_address.text,
            "--email",
            request.email.value,
            "--agree-tos",
            "--non-interactive",
            "--staging",
            "--profile",
            request.required_profile,
            "--preferred-challenges",
            "http-01",
            "--rsa-key-size",
            str(request.key_size_bits),
        ]
        return args

    def certonly(self, args: Sequence[str]) -> CertbotResult:
        if not args or args[0] != "certonly":
            raise ValueError("certonly() expects arguments from build_certonly_command()")
        self._logger.info("Requesting certificate: certbot %s", " ".join(args[1:]))
        return self.run(args)

    def certificates(self, subject: str | None = None) -> list[CertificateInfo]:
        args = ["certificates"]
        if subject:
            args += ["-d", subject]
        result = self.run(args)
        if not result.ok:
            raise ExternalClientFailure(
                "certbot certificates failed",
                returncode=result.returncode,
                output=result.output,
            )
        return parse_certificates(result.stdout)

    def renew(
        self,
        *,
        dry_run: bool = False,
        force: bool = False,
        deploy_hook: str | None = None,
    ) -> CertbotResult:
        args = ["renew", "--non-interactive"]
        if dry_run:
            args.append("--dry-run")
        if force:
            args.append("--force-renewal")
        if deploy_hook and not dry_run:
            args += ["--deploy-hook", deploy_hook]
        return self.run(args)


__all__ = [
    "ALL_SUCCEEDED_PHRASE",
    "CertbotClient",
    "CertbotResult",
    "CertificateInfo",
    "NOT_DUE_PHRASE",
    "REQUIRED_PROFILE",
    "STAGING_ACME_URL",
    "parse_certificates",
    "parse_version",
    "version_at_least",
]
