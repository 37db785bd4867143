"""Error taxonomy shared by every ipcert component.

Each error carries the process exit code the CLI should use and an optional
list of remediation lines printed after the message.
"""
from __future__ import annotations

from typing import Iterable, Sequence

EXIT_OK = 0
EXIT_INVALID_ARGUMENTS = 2
EXIT_PRIVILEGE = 3
EXIT_NETWORK = 4
EXIT_CERTIFICATE = 5
EXIT_CONFIG = 6
EXIT_DEPENDENCY = 7
EXIT_SCHEDULER = 8
EXIT_LOCK = 9
EXIT_INTERRUPTED = 130


class IpCertError(Exception):
    """Base class for all expected, operator-facing failures."""

    exit_code = 1

    def __init__(self, message: str, *, remediation: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.remediation: tuple[str, ...] = tuple(remediation)


class InvalidInput(IpCertError):
    """User-supplied value failed validation."""

    exit_code = EXIT_INVALID_ARGUMENTS

    def __init__(
        self,
        message: str,
        *,
        kind: str = "",
        reason: str = "invalid_format",
        remediation: Iterable[str] = (),
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.kind = kind
        self.reason = reason


class PrivateOrReservedAddress(InvalidInput):
    """The address is syntactically valid but not publicly routable."""

    def __init__(self, address: str) -> None:
        super().__init__(
            f"IP address {address} is private or reserved",
            kind="ip",
            reason="private",
            remediation=("Let's Encrypt only issues certificates for publicly routable addresses",),
        )
        self.address = address


class InsufficientPrivilege(IpCertError):
    exit_code = EXIT_PRIVILEGE


class NetworkFailure(IpCertError):
    exit_code = EXIT_NETWORK


class PortUnreachable(NetworkFailure):
    """Port 80 on the subject address did not accept a TCP connection."""

    def __init__(self, address: str, port: int = 80) -> None:
        super().__init__(
            f"Port {port} is not accessible on {address}",
            remediation=(
                "HTTP-01 validation requires port 80 to be reachable from the internet",
                "Open port 80 in the host and upstream firewalls",
            ),
        )
        self.address = address
        self.port = port


class ExternalClientFailure(IpCertError):
    """certbot exited unsuccessfully; never retried automatically."""

    exit_code = EXIT_CERTIFICATE

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        output: str = "",
        remediation: Iterable[str] = (),
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.returncode = returncode
        self.output = output


class ConfigCorrupt(IpCertError):
    exit_code = EXIT_CONFIG


class ConfigPersistenceError(IpCertError):
    """Raised when configuration changes cannot be persisted."""

    exit_code = EXIT_CONFIG


class NoBackupFound(IpCertError):
    exit_code = EXIT_CONFIG


class FilesystemFailure(IpCertError):
    """A directory or file ipcert manages could not be created, read or written."""

    def __init__(self, message: str, path: str, *, remediation: Iterable[str] = ()) -> None:
        super().__init__(message, remediation=remediation)
        self.path = path


class UnresolvedDependencies(IpCertError):
    exit_code = EXIT_DEPENDENCY

    def __init__(self, missing: Sequence[str], *, remediation: Iterable[str] = ()) -> None:
        names = ", ".join(missing) if missing else "unknown"
        super().__init__(f"Unresolved dependencies: {names}", remediation=remediation)
        self.missing: tuple[str, ...] = tuple(missing)


class EnvironmentUndetectable(IpCertError):
    exit_code = EXIT_DEPENDENCY


class SchedulerUnavailable(IpCertError):
    exit_code = EXIT_SCHEDULER


class LockContention(IpCertError):
    exit_code = EXIT_LOCK

    def __init__(self, path: str, holder: int | None, waited: float) -> None:
        holder_text = f" (held by PID {holder})" if holder else ""
        super().__init__(
            f"Failed to acquire lock {path}{holder_text} after {int(waited)} seconds",
            remediation=("Another ipcert operation is running; retry once it finishes",),
        )
        self.path = path
        self.holder = holder


__all__ = [
    "ConfigCorrupt",
    "ConfigPersistenceError",
    "EnvironmentUndetectable",
    "ExternalClientFailure",
    "FilesystemFailure",
    "IpCertError",
    "InsufficientPrivilege",
    "InvalidInput",
    "LockContention",
    "NetworkFailure",
    "NoBackupFound",
    "PortUnreachable",
    "PrivateOrReservedAddress",
    "SchedulerUnavailable",
    "UnresolvedDependencies",
]
