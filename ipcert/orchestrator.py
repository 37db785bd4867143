"""Certificate request state machine.

    Idle -> Validating -> CheckingReachability -> PreparingChallenge
         -> DetectingServer -> Invoking -> InterpretingResult
         -> Succeeded | Failed

Validation and reachability failures stop the flow before anything is
written to disk or handed to certbot. certbot itself is called at most once
per run and is never retried, to stay clear of CA rate limits.
"""
from __future__ import annotations

import logging
import secrets
import socket
import subprocess
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from .certbot import CERT_VALIDITY_DAYS, CERTBOT_LOG, REQUIRED_PROFILE, CertbotClient, CertificateInfo
from .context import RunContext
from .environment import EnvironmentDescriptor, InitSystem
from .errors import (
    ExternalClientFailure,
    FilesystemFailure,
    InvalidInput,
    PortUnreachable,
    UnresolvedDependencies,
)
from .logs import audit, invoking_user
from .validation import (
    EmailAddress,
    FilesystemPath,
    IPAddress,
    validate_email,
    validate_ip,
    validate_path,
)

_LOG = logging.getLogger("ipcert.orchestrator")

HTTP_PORT = 80
PORT_PROBE_TIMEOUT_SEC = 5.0
PROBE_TOKEN_TTL_SEC = 10.0
CHALLENGE_SUBPATH = Path(".well-known") / "acme-challenge"
CHALLENGE_DIR_MODE = 0o755
KEY_SIZES = (2048, 4096)
DEFAULT_KEY_SIZE = 4096

TROUBLESHOOTING = (
    "Verify the IP address is public (not private or local)",
    "Ensure port 80 is open in the firewall",
    "Check that no other service is using port 80",
    "Verify the IP address is assigned to this server",
    f"Check certbot logs: {CERTBOT_LOG}",
    "Ensure the certbot version supports profiles (2.0.0+)",
)

# Service names probed per plugin, in order.
SERVER_SERVICES: dict[str, tuple[str, ...]] = {
    "nginx": ("nginx",),
    "apache": ("apache2", "httpd"),
}
EXPLICIT_PLUGINS = ("nginx", "apache", "standalone", "webroot")


class State(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    CHECKING_REACHABILITY = "checking_reachability"
    PREPARING_CHALLENGE = "preparing_challenge"
    DETECTING_SERVER = "detecting_server"
    INVOKING = "invoking"
    INTERPRETING_RESULT = "interpreting_result"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class CertificateRequest:
    ip_address: IPAddress
    email: EmailAddress
    webroot: FilesystemPath
    key_size_bits: int = DEFAULT_KEY_SIZE
    required_profile: str = REQUIRED_PROFILE


@dataclass
class OrchestrationResult:
    request: CertificateRequest
    plugin: str
    command: list[str]
    certificates: list[CertificateInfo] = field(default_factory=list)
    state: State = State.SUCCEEDED


def build_request(raw_ip: str, raw_email: str, raw_webroot: str, key_size: int = DEFAULT_KEY_SIZE) -> CertificateRequest:
    """Validate raw operator input; raises InvalidInput before any side effect."""

    ip_address = validate_ip(raw_ip)
    email = validate_email(raw_email)
    webroot = validate_path(raw_webroot, require_absolute=True)
    if key_size not in KEY_SIZES:
        raise InvalidInput(
            f"Unsupported key size {key_size}; choose 2048 or 4096",
            kind="number",
            reason="out_of_range",
        )
    return CertificateRequest(
        ip_address=ip_address,
        email=email,
        webroot=webroot,
        key_size_bits=key_size,
    )


def _ping(address: IPAddress) -> bool:
    argv = ["ping", "-c", "1", address.text]
    if address.version == 6:
        argv.insert(1, "-6")
    try:
        result = subprocess.run(
            argv,
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0


def probe_port(address: str, port: int = HTTP_PORT, timeout: float = PORT_PROBE_TIMEOUT_SEC) -> bool:
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:
        return False


def _quiet_returncode(argv: Sequence[str]) -> int:
    try:
        return subprocess.run(
            list(argv),
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=10,
        ).returncode
    except (OSError, subprocess.SubprocessError):
        return 1


def _service_query(init_system: InitSystem, service: str) -> list[str] | None:
    if init_system is InitSystem.SYSTEMD:
        return ["systemctl", "is-active", "--quiet", service]
    if init_system is InitSystem.OPENRC:
        return ["rc-service", service, "status"]
    if init_system is InitSystem.SYSV:
        return ["service", service, "status"]
    if init_system is InitSystem.BSD_RC:
        return ["service", service, "onestatus"]
    return None


def detect_web_server(
    env: EnvironmentDescriptor,
    preference: str = "",
    *,
    returncode: Callable[[Sequence[str]], int] = _quiet_returncode,
) -> str:
    """Pick the certbot plugin: explicit preference, then a running server, then standalone."""

    preference = (preference or "").strip().lower()
    if preference in EXPLICIT_PLUGINS:
        _LOG.info("Using configured web server plugin: %s", preference)
        return preference
    if preference:
        _LOG.warning("Unknown web server preference %r; falling back to auto-detection", preference)

    for plugin, services in SERVER_SERVICES.items():
        for service in services:
            query = _service_query(env.init_system, service)
            if query is not None and returncode(query) == 0:
                _LOG.info("Detected %s web server", plugin)
                return plugin
    for plugin, services in SERVER_SERVICES.items():
        for service in services:
            if returncode(["pgrep", "-x", service]) == 0:
                _LOG.info("Detected %s web server (process %s)", plugin, service)
                return plugin

    _LOG.warning("No active web server detected")
    _LOG.warning("Using standalone mode - certbot will start its own web server")
    return "standalone"


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except OSError:
        pass


def _schedule_removal(path: Path, delay: float) -> threading.Timer:
    timer = threading.Timer(delay, _remove_quietly, args=(path,))
    timer.daemon = True
    timer.start()
    return timer


class CertificateOrchestrator:
    def __init__(
        self,
        env: EnvironmentDescriptor,
        client: CertbotClient,
        *,
        context: RunContext | None = None,
        web_server: str = "",
        min_certbot_version: str = "2.0.0",
        port_probe: Callable[[str], bool] = probe_port,
        ping: Callable[[IPAddress], bool] = _ping,
        server_detector: Optional[Callable[[EnvironmentDescriptor, str], str]] = None,
        schedule_removal: Callable[[Path, float], object] = _schedule_removal,
    ) -> None:
        self.env = env
        self.client = client
        self.context = context or RunContext()
        self.web_server = web_server
        self.min_certbot_version = min_certbot_version
        self._port_probe = port_probe
        self._ping = ping
        self._detect = server_detector or detect_web_server
        self._schedule_removal = schedule_removal
        self.state = State.IDLE

    def _enter(self, state: State) -> None:
        _LOG.debug("Orchestrator state: %s -> %s", self.state.value, state.value)
        self.state = state

    def _fail(self, exc: BaseException) -> None:
        self._enter(State.FAILED)
        self.context.error(str(exc))

    def check_reachability(self, address: IPAddress) -> None:
        _LOG.info("Checking accessibility of IP: %s", address.text)
        if self._ping(address):
            _LOG.info("IP %s responds to ping", address.text)
        else:
            _LOG.warning("IP %s does not respond to ping (this may be normal if ICMP is blocked)", address.text)
        if not self._port_probe(address.text):
            raise PortUnreachable(address.text, HTTP_PORT)
        _LOG.info("Port %d is accessible on %s", HTTP_PORT, address.text)

    def check_certbot(self) -> None:
        usable, detail = self.client.check_version(self.min_certbot_version)
        if not usable:
            raise UnresolvedDependencies(
                ["certbot"],
                remediation=(detail, "Install or upgrade certbot with: ipcert --install"),
            )

    def prepare_challenge(self, webroot: Path) -> Path:
        """Create the challenge directory and drop a short-lived probe token."""

        challenge_dir = webroot / CHALLENGE_SUBPATH
        token = f"ipcert-probe-{secrets.token_hex(8)}"
        token_path = challenge_dir / f"{token}.txt"
        try:
            challenge_dir.mkdir(parents=True, exist_ok=True)
            for directory in (webroot, webroot / ".well-known", challenge_dir):
                directory.chmod(CHALLENGE_DIR_MODE)
            token_path.write_text(token + "\n", encoding="utf-8")
        except OSError as exc:
            raise FilesystemFailure(
                f"Unable to prepare challenge directory {challenge_dir}: {exc.strerror or exc}",
                str(webroot),
                remediation=(
                    f"Make sure {webroot} is a writable directory served by the web server on port 80",
                    "Pass a different webroot with -w/--webroot",
                ),
            ) from exc
        self._schedule_removal(token_path, PROBE_TOKEN_TTL_SEC)
        _LOG.info("Webroot prepared at: %s", webroot)
        return token_path

    def _describe(self, request: CertificateRequest, plugin: str) -> None:
        _LOG.info("IP Certificate Request Details:")
        _LOG.info("  IP Address: %s", request.ip_address.text)
        _LOG.info("  Environment: STAGING (IP certificates are only available in staging)")
        _LOG.info("  Profile: %s (%d-day validity)", request.required_profile, CERT_VALIDITY_DAYS)
        _LOG.info("  Challenge: HTTP-01 (port 80 required)")
        _LOG.info("  Plugin: %s", plugin)
        _LOG.warning("This certificate will expire in %d days!", CERT_VALIDITY_DAYS)

    def run(self, request: CertificateRequest) -> OrchestrationResult:
        """Drive an already validated request through issuance."""

        try:
            self._enter(State.CHECKING_REACHABILITY)
            self.check_reachability(request.ip_address)
            self.check_certbot()

            self._enter(State.PREPARING_CHALLENGE)
            token_path = self.prepare_challenge(request.webroot.path)

            self._enter(State.DETECTING_SERVER)
            plugin = self._detect(self.env, self.web_server)

            self._enter(State.INVOKING)
            command = self.client.build_certonly_command(request, plugin)
            self._describe(request, plugin)
            audit(
                "Executing certbot for IP certificate: %s (requested by %s)",
                request.ip_address.text,
                invoking_user(),
            )
            try:
                result = self.client.certonly(command)
            finally:
                _remove_quietly(token_path)

            self._enter(State.INTERPRETING_RESULT)
            if not result.ok:
                _LOG.error("Failed to obtain IP certificate")
                raise ExternalClientFailure(
                    f"certbot exited with status {result.returncode}",
                    returncode=result.returncode,
                    output=result.output,
                    remediation=TROUBLESHOOTING,
                )
            certificates = self._certificate_details(request)
        except Exception as exc:
            self._fail(exc)
            raise

        self._enter(State.SUCCEEDED)
        _LOG.info("IP certificate obtained successfully!")
        audit("Certificate issued for IP: %s", request.ip_address.text)
        self.context.suggest(
            f"Configure automatic renewal immediately: ipcert --setup-renewal "
            f"(certificates expire in {CERT_VALIDITY_DAYS} days)"
        )
        return OrchestrationResult(
            request=request,
            plugin=plugin,
            command=command,
            certificates=certificates,
        )

    def validate(self, raw_ip: str, raw_email: str, raw_webroot: str, key_size: int = DEFAULT_KEY_SIZE) -> CertificateRequest:
        self._enter(State.VALIDATING)
        _LOG.info("Starting IP certificate request process...")
        try:
            request = build_request(raw_ip, raw_email, raw_webroot, key_size)
        except InvalidInput as exc:
            self._fail(exc)
            raise
        audit(
            "Requesting certificate for IP: %s, Email: %s (user: %s)",
            request.ip_address.text,
            request.email.value,
            invoking_user(),
        )
        return request

    def request_certificate(self, raw_ip: str, raw_email: str, raw_webroot: str, key_size: int = DEFAULT_KEY_SIZE) -> OrchestrationResult:
        return self.run(self.validate(raw_ip, raw_email, raw_webroot, key_size))

    def _certificate_details(self, request: CertificateRequest) -> list[CertificateInfo]:
        try:
            certificates = self.client.certificates(request.ip_address.text)
        except ExternalClientFailure as exc:
            self.context.warn(f"Unable to read certificate details: {exc}", _LOG)
            return []
        for cert in certificates:
            _LOG.info("Certificate Details:")
            _LOG.info("  Certificate Name: %s", cert.name)
            _LOG.info("  Domains: %s", " ".join(cert.domains))
            _LOG.info("  Expiry Date: %s", cert.expiry)
            _LOG.info("  Certificate Path: %s", cert.certificate_path)
            _LOG.info("  Private Key Path: %s", cert.private_key_path)
        return certificates


__all__ = [
    "CertificateOrchestrator",
    "CertificateRequest",
    "OrchestrationResult",
    "State",
    "TROUBLESHOOTING",
    "build_request",
    "detect_web_server",
    "probe_port",
]
