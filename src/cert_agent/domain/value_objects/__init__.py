"""Value objects for the certificate agent domain."""

from cert_agent.domain.value_objects.identifiers import (
    DomainSetKey,
    Fingerprint,
    fingerprint_of,
    is_ip_address,
    normalize_fingerprint,
    ordered_unique,
    validate_domain,
)

__all__ = [
    "DomainSetKey",
    "Fingerprint",
    "fingerprint_of",
    "is_ip_address",
    "normalize_fingerprint",
    "ordered_unique",
    "validate_domain",
]
