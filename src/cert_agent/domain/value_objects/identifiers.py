"""Identifiers for the certificate agent (type-safe).

Uses Python's NewType for static type safety without runtime overhead.
"""

from __future__ import annotations

import hashlib
import ipaddress
import re
from typing import NewType

from cert_agent.domain.errors import ConfigurationError

# Key of a managed domain set; also the stem of its certificate files
DomainSetKey = NewType("DomainSetKey", str)

# Lowercase hex SHA-256 digest, no separators
Fingerprint = NewType("Fingerprint", str)


def fingerprint_of(data: bytes) -> Fingerprint:
    """Compute the content fingerprint of certificate material.

    Args:
        data: Raw bytes as stored on disk (PEM) or DER for a CA root.

    Returns:
        SHA-256 hex digest.
    """
    return Fingerprint(hashlib.sha256(data).hexdigest())


def normalize_fingerprint(value: str) -> Fingerprint:
    """Normalize an operator-supplied fingerprint (drops colons, lowercases)."""
    return Fingerprint(value.replace(":", "").strip().lower())


def is_ip_address(value: str) -> bool:
    """Check whether a SAN entry is an IPv4/IPv6 literal rather than a hostname."""
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


def validate_domain(value: str) -> str:
    """Check that a SAN entry is an IP literal or an ASCII (A-label) hostname.

    A leading ``*.`` wildcard label is allowed. Internationalized names must be
    given in their ``xn--`` form.

    Raises:
        ConfigurationError: The entry cannot be put in a certificate.
    """
    if is_ip_address(value):
        return value
    hostname = value[2:] if value.startswith("*.") else value
    labels = hostname.rstrip(".").split(".")
    if len(hostname) > 253 or not all(_HOSTNAME_LABEL.match(label) for label in labels):
        raise ConfigurationError(
            f"invalid domain {value!r}: expected an IP address or an A-label hostname"
        )
    return value


def ordered_unique(domains: list[str] | tuple[str, ...]) -> tuple[str, ...]:
    """Drop duplicate domains, keeping the first occurrence of each."""
    seen: dict[str, None] = {}
    for domain in domains:
        seen.setdefault(domain, None)
    return tuple(seen)
