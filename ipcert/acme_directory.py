"""Query an ACME directory for the issuance profiles it advertises."""
from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Dict

from .certbot import REQUIRED_PROFILE, STAGING_ACME_URL
from .errors import NetworkFailure

_LOG = logging.getLogger("ipcert.acme")

DIRECTORY_TIMEOUT_SEC = 10.0


def fetch_profiles(url: str = STAGING_ACME_URL, *, timeout: float = DIRECTORY_TIMEOUT_SEC) -> Dict[str, str]:
    request = urllib.request.Request(
        url,
        headers={"Accept": "application/json", "User-Agent": "ipcert"},
        method="GET",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            body = response.read().decode("utf-8")
    except (urllib.error.URLError, OSError) as exc:
        raise NetworkFailure(
            f"Unable to fetch ACME directory {url}: {exc}",
            remediation=("Check outbound HTTPS access to the Let's Encrypt staging API",),
        ) from exc

    try:
        document = json.loads(body)
    except json.JSONDecodeError as exc:
        raise NetworkFailure(f"ACME directory {url} returned invalid JSON: {exc}") from exc

    meta = document.get("meta") if isinstance(document, dict) else None
    profiles = meta.get("profiles") if isinstance(meta, dict) else None
    if not isinstance(profiles, dict):
        _LOG.warning("ACME directory %s does not advertise any profiles", url)
        return {}
    return {str(name): str(description) for name, description in profiles.items()}


def format_profiles(profiles: Dict[str, str]) -> list[str]:
    if not profiles:
        return ["No profiles advertised by the ACME directory"]
    lines = ["Available ACME profiles:"]
    for name in sorted(profiles):
        marker = " (REQUIRED for IP certificates)" if name == REQUIRED_PROFILE else ""
        lines.append(f"  {name}{marker}: {profiles[name]}")
    if REQUIRED_PROFILE not in profiles:
        lines.append(f"WARNING: the '{REQUIRED_PROFILE}' profile is not currently offered")
    return lines


__all__ = ["fetch_profiles", "format_profiles"]
