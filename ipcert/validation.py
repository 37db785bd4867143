"""Validation and normalisation of operator-supplied values.

Nothing the operator types reaches a subprocess without passing through one of
these validators first. Each returns a frozen record carrying the normalised
value or raises :class:`~ipcert.errors.InvalidInput` (or its
``PrivateOrReservedAddress`` subclass) describing why the value was refused.
"""
from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Union

from .errors import InvalidInput, PrivateOrReservedAddress

_LOG = logging.getLogger("ipcert.validation")

MAX_EMAIL_LENGTH = 254
MAX_EMAIL_DOMAIN_LENGTH = 253
MAX_EMAIL_LOCAL_LENGTH = 64
MAX_PATH_LENGTH = 4096
MAX_IP_LENGTH = 64


class InputKind(str, Enum):
    IP = "ip"
    EMAIL = "email"
    PATH = "path"
    NUMBER = "number"


class Rejection(str, Enum):
    INVALID_FORMAT = "invalid_format"
    FORBIDDEN = "forbidden"
    PRIVATE = "private"
    TOO_LONG = "too_long"
    OUT_OF_RANGE = "out_of_range"


@dataclass(frozen=True)
class IPAddress:
    text: str
    version: int
    is_public: bool

    @property
    def acceptable(self) -> bool:
        return self.is_public

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class EmailAddress:
    local: str
    domain: str

    @property
    def value(self) -> str:
        return f"{self.local}@{self.domain}"

    @property
    def acceptable(self) -> bool:
        return True

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class FilesystemPath:
    value: str
    is_absolute: bool
    exists: bool

    @property
    def acceptable(self) -> bool:
        return True

    @property
    def path(self) -> Path:
        return Path(self.value)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class NumericValue:
    value: int
    minimum: int | None = None
    maximum: int | None = None

    @property
    def acceptable(self) -> bool:
        return True

    def __str__(self) -> str:
        return str(self.value)


ValidatedInput = Union[IPAddress, EmailAddress, FilesystemPath, NumericValue]


# Addresses the CA will never issue for. The documentation ranges (TEST-NET-1/2/3
# and 2001:db8::/32) are deliberately absent; they are routable-looking and are
# used in examples and tests.
RESERVED_IPV4_NETWORKS: tuple[ipaddress.IPv4Network, ...] = tuple(
    ipaddress.IPv4Network(net)
    for net in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.0.0.0/24",
        "192.168.0.0/16",
        "198.18.0.0/15",
        "224.0.0.0/4",
        "240.0.0.0/4",
    )
)

RESERVED_IPV6_NETWORKS: tuple[ipaddress.IPv6Network, ...] = tuple(
    ipaddress.IPv6Network(net)
    for net in (
        "::/128",
        "::1/128",
        "fe80::/10",
        "fc00::/7",
        "ff00::/8",
    )
)

_IPV4_MAPPED = ipaddress.IPv6Network("::ffff:0:0/96")

_V4_PART = r"((25[0-5]|(2[0-4]|1?[0-9])?[0-9])\.){3}(25[0-5]|(2[0-4]|1?[0-9])?[0-9])"
_H = r"[0-9a-fA-F]{1,4}"
IPV6_PATTERN = re.compile(
    "^("
    rf"({_H}:){{7}}{_H}"
    rf"|({_H}:){{1,7}}:"
    rf"|({_H}:){{1,6}}:{_H}"
    rf"|({_H}:){{1,5}}(:{_H}){{1,2}}"
    rf"|({_H}:){{1,4}}(:{_H}){{1,3}}"
    rf"|({_H}:){{1,3}}(:{_H}){{1,4}}"
    rf"|({_H}:){{1,2}}(:{_H}){{1,5}}"
    rf"|{_H}:((:{_H}){{1,6}})"
    rf"|:((:{_H}){{1,7}}|:)"
    r"|fe80:(:[0-9a-fA-F]{0,4}){0,4}%[0-9a-zA-Z]+"
    rf"|::(ffff(:0{{1,4}})?:)?{_V4_PART}"
    rf"|({_H}:){{1,4}}:{_V4_PART}"
    ")$"
)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_EMAIL_FORBIDDEN = ("..", "@.", ".@")

_PATH_FORBIDDEN_CHARS = frozenset(";|&$`<>\n\r\0\"'\\")
_PATH_FORBIDDEN_SEQUENCES = ("$(", "${", "`", "&&", "||")

_INTEGER_PATTERN = re.compile(r"^[+-]?[0-9]+$")


def _reject(kind: InputKind, reason: Rejection, message: str) -> InvalidInput:
    return InvalidInput(message, kind=kind.value, reason=reason.value)


def _parse_ipv4(text: str) -> ipaddress.IPv4Address | None:
    parts = text.split(".")
    if len(parts) != 4:
        return None
    octets: list[int] = []
    for part in parts:
        if not part.isdigit() or not part.isascii() or len(part) > 3:
            return None
        if len(part) > 1 and part.startswith("0"):
            return None
        value = int(part)
        if value > 255:
            return None
        octets.append(value)
    return ipaddress.IPv4Address(".".join(str(octet) for octet in octets))


def _is_reserved(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(address, ipaddress.IPv4Address):
        return any(address in network for network in RESERVED_IPV4_NETWORKS)
    if address in _IPV4_MAPPED and address.ipv4_mapped is not None:
        return _is_reserved(address.ipv4_mapped)
    return any(address in network for network in RESERVED_IPV6_NETWORKS)


def validate_ip(raw: str) -> IPAddress:
    """Validate an IPv4/IPv6 literal and require it to be publicly routable."""

    text = (raw or "").strip()
    if not text:
        raise _reject(InputKind.IP, Rejection.INVALID_FORMAT, "IP address is required")
    if len(text) > MAX_IP_LENGTH:
        raise _reject(InputKind.IP, Rejection.TOO_LONG, "IP address is too long")

    address: ipaddress.IPv4Address | ipaddress.IPv6Address | None = _parse_ipv4(text)
    if address is None:
        if not IPV6_PATTERN.match(text):
            raise _reject(InputKind.IP, Rejection.INVALID_FORMAT, f"Invalid IP address: {text}")
        # Zone identifiers only appear on link-local literals.
        base, _, zone = text.partition("%")
        try:
            address = ipaddress.IPv6Address(base)
        except ValueError as exc:
            raise _reject(
                InputKind.IP, Rejection.INVALID_FORMAT, f"Invalid IP address: {text}"
            ) from exc
        if zone:
            _LOG.warning("IPv6 address carries a zone identifier: %s", text)
            raise PrivateOrReservedAddress(text)

    if _is_reserved(address):
        _LOG.warning("IP address appears to be private or reserved: %s", text)
        raise PrivateOrReservedAddress(str(address))

    return IPAddress(text=str(address), version=address.version, is_public=True)


def validate_email(raw: str) -> EmailAddress:
    text = (raw or "").strip()
    if not text:
        raise _reject(InputKind.EMAIL, Rejection.INVALID_FORMAT, "Email address is required")
    if len(text) > MAX_EMAIL_LENGTH:
        raise _reject(
            InputKind.EMAIL,
            Rejection.TOO_LONG,
            f"Email address exceeds {MAX_EMAIL_LENGTH} characters",
        )
    if text.count("@") != 1:
        raise _reject(InputKind.EMAIL, Rejection.FORBIDDEN, f"Invalid email address: {text}")
    if text.startswith(".") or text.endswith(".") or any(token in text for token in _EMAIL_FORBIDDEN):
        raise _reject(InputKind.EMAIL, Rejection.FORBIDDEN, f"Invalid email address: {text}")

    local, _, domain = text.partition("@")
    if len(domain) > MAX_EMAIL_DOMAIN_LENGTH or len(local) > MAX_EMAIL_LOCAL_LENGTH:
        raise _reject(InputKind.EMAIL, Rejection.TOO_LONG, f"Email address is too long: {text}")
    if domain.startswith("-") or "." not in domain:
        raise _reject(InputKind.EMAIL, Rejection.INVALID_FORMAT, f"Invalid email address: {text}")
    if not EMAIL_PATTERN.match(text):
        raise _reject(InputKind.EMAIL, Rejection.INVALID_FORMAT, f"Invalid email address: {text}")

    return EmailAddress(local=local, domain=domain.lower())


def validate_path(raw: str, *, require_absolute: bool = False) -> FilesystemPath:
    """Refuse paths that could alter a shell command line or escape upward.

    Existence is reported but never required; callers decide whether a missing
    directory is created or treated as an error.
    """

    text = (raw or "").strip()
    if not text:
        raise _reject(InputKind.PATH, Rejection.INVALID_FORMAT, "Path is required")
    if len(text) > MAX_PATH_LENGTH:
        raise _reject(
            InputKind.PATH, Rejection.TOO_LONG, f"Path exceeds {MAX_PATH_LENGTH} characters"
        )
    if any(char in _PATH_FORBIDDEN_CHARS for char in text) or any(
        seq in text for seq in _PATH_FORBIDDEN_SEQUENCES
    ):
        raise _reject(
            InputKind.PATH, Rejection.FORBIDDEN, f"Path contains forbidden characters: {text!r}"
        )
    if ".." in Path(text).parts:
        raise _reject(
            InputKind.PATH, Rejection.FORBIDDEN, f"Path contains directory traversal: {text}"
        )

    is_absolute = text.startswith("/")
    if require_absolute and not is_absolute:
        raise _reject(InputKind.PATH, Rejection.FORBIDDEN, f"Path must be absolute: {text}")

    normalized = text.rstrip("/") or "/"
    try:
        exists = Path(normalized).exists()
    except OSError:
        exists = False
    if not exists:
        _LOG.debug("Path does not exist yet: %s", normalized)

    return FilesystemPath(value=normalized, is_absolute=is_absolute, exists=exists)


def validate_number(
    raw: str | int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> NumericValue:
    text = str(raw).strip() if raw is not None else ""
    if isinstance(raw, bool) or not _INTEGER_PATTERN.match(text):
        raise _reject(InputKind.NUMBER, Rejection.INVALID_FORMAT, f"Not an integer: {raw!r}")
    value = int(text, 10)
    if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
        raise _reject(
            InputKind.NUMBER,
            Rejection.OUT_OF_RANGE,
            f"Value {value} outside allowed range {minimum}..{maximum}",
        )
    return NumericValue(value=value, minimum=minimum, maximum=maximum)


_VALIDATORS: Dict[InputKind, Callable[..., ValidatedInput]] = {
    InputKind.IP: validate_ip,
    InputKind.EMAIL: validate_email,
    InputKind.PATH: validate_path,
    InputKind.NUMBER: validate_number,
}


def validate(raw: Any, kind: InputKind | str, **options: Any) -> ValidatedInput:
    """Dispatch ``raw`` to the validator registered for ``kind``."""

    try:
        resolved = InputKind(kind)
    except ValueError as exc:
        raise ValueError(f"Unknown input kind: {kind!r}") from exc
    return _VALIDATORS[resolved](raw, **options)


__all__ = [
    "EmailAddress",
    "FilesystemPath",
    "IPAddress",
    "InputKind",
    "NumericValue",
    "Rejection",
    "ValidatedInput",
    "validate",
    "validate_email",
    "validate_ip",
    "validate_number",
    "validate_path",
]
