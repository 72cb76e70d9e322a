"""Certificate entities for the renewal agent.

A CertificateRecord tracks the live certificate of one domain set. Records are
created on first successful issuance, mutated in place after every cycle and
never removed while the agent runs; a failed renewal only downgrades status.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from cert_agent.domain.entities.policy import RenewalPolicy
from cert_agent.domain.value_objects.identifiers import (
    DomainSetKey,
    Fingerprint,
    ordered_unique,
    validate_domain,
)


class CertificateStatus(str, Enum):
    """Health of a domain set's live certificate."""
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    RENEWAL_FAILED = "renewal_failed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DomainSet:
    """Group of hostnames/IPs covered by one certificate.

    Domain order is significant: it is the SAN order presented to the CA and
    the first entry becomes the subject common name.
    """
    name: DomainSetKey
    domains: tuple[str, ...]
    policy: Optional[RenewalPolicy] = None  # overrides the process-wide policy

    def __post_init__(self) -> None:
        domains = ordered_unique(tuple(self.domains))
        if not domains:
            raise ValueError(f"domain set {self.name!r} has no domains")
        for domain in domains:
            validate_domain(domain)
        object.__setattr__(self, "domains", domains)

    @property
    def key(self) -> DomainSetKey:
        return self.name

    @property
    def common_name(self) -> str:
        return self.domains[0]


@dataclass
class CertificateRecord:
    """Live certificate material and renewal state for one domain set."""
    domain_set: DomainSet
    cert_path: Path
    key_path: Path
    ca_chain_path: Path
    not_before: Optional[datetime]
    not_after: Optional[datetime]
    fingerprint: Fingerprint
    status: CertificateStatus = CertificateStatus.UNKNOWN
    serial: Optional[str] = None
    requires_intervention: bool = False
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> DomainSetKey:
        return self.domain_set.key

    @property
    def has_validity_window(self) -> bool:
        return self.not_before is not None and self.not_after is not None

    def remaining(self, now: datetime) -> Optional[float]:
        """Seconds until expiry (negative once expired), None if unknown."""
        if self.not_after is None:
            return None
        return (self.not_after - now).total_seconds()

    def is_expired(self, now: datetime) -> bool:
        return self.not_after is not None and now >= self.not_after


@dataclass(frozen=True)
class IssuedCertificate:
    """Material returned by a successful issuance exchange (PEM bytes)."""
    certificate_pem: bytes
    private_key_pem: bytes
    chain_pem: bytes
    not_before: datetime
    not_after: datetime
    serial: str


@dataclass(frozen=True)
class StagedHandle:
    """New material written next to the live files, waiting for commit."""
    domain_set: DomainSet
    staged_cert: Path
    staged_key: Path
    staged_chain: Path
    fingerprint: Fingerprint
