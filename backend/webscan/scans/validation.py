# webscan/scans/validation.py
"""
URL validation for scan admission.

Structural parse → protocol policy → network-target policy.
Each check raises the matching AdmissionError; validate_url() runs them
in order and returns the parsed target on success.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from webscan.errors import InvalidProtocol, InvalidUrl, PrivateNetworkTarget

ALLOWED_SCHEMES = ("http", "https")

# Hostnames that always resolve to the scanner itself
LOCAL_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}


@dataclass(frozen=True)
class ParsedTarget:
    url: str
    scheme: str
    domain: str
    port: Optional[int] = None


def parse_url(url: str) -> ParsedTarget:
    """Structural validation. Raises InvalidUrl."""
    if not isinstance(url, str) or not url.strip():
        raise InvalidUrl()

    raw = url.strip()
    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError:
        raise InvalidUrl()

    scheme = parts.scheme.lower()
    if not scheme:
        raise InvalidUrl()

    # Non-web schemes (ftp:, javascript:) parse fine and are left to the
    # protocol policy; web URLs must carry a host.
    host = (parts.hostname or "").lower()
    if scheme in ALLOWED_SCHEMES and not host:
        raise InvalidUrl()

    return ParsedTarget(url=raw, scheme=scheme, domain=host, port=port)


def check_protocol(target: ParsedTarget) -> None:
    if target.scheme not in ALLOWED_SCHEMES:
        raise InvalidProtocol()


def is_private_host(host: str) -> bool:
    """
    True for loopback, link-local and RFC 1918 targets.

    Covers localhost, 127.0.0.0/8, 10.0.0.0/8, 172.16.0.0/12,
    192.168.0.0/16, 169.254.0.0/16 and the IPv6 equivalents.
    Hostnames other than the localhost aliases are not resolved here.
    """
    h = (host or "").strip().lower().strip("[]").rstrip(".")
    if h in LOCAL_HOSTNAMES or h.endswith(".localhost"):
        return True

    try:
        ip = ipaddress.ip_address(h)
    except ValueError:
        return False

    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    return ip.is_loopback or ip.is_private or ip.is_link_local or ip.is_unspecified


def check_network_target(target: ParsedTarget, production: bool) -> None:
    if production and is_private_host(target.domain):
        raise PrivateNetworkTarget()


def validate_url(url: str, production: bool = False) -> ParsedTarget:
    target = parse_url(url)
    check_protocol(target)
    check_network_target(target, production)
    return target
