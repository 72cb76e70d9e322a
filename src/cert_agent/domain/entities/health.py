"""Health snapshot entities.

Snapshots are derived from the certificate records and the last CA probe.
They are immutable: the aggregator replaces them wholesale, so concurrent
readers never observe a half-updated snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from cert_agent.domain.entities.certificate import CertificateStatus


class HealthStatus(str, Enum):
    """Overall agent health."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class CAHealth:
    """Result of a CA liveness probe."""
    reachable: bool
    latency_seconds: Optional[float] = None
    checked_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CertificateSummary:
    """Read-only view of one CertificateRecord."""
    domain_set: str
    domains: tuple[str, ...]
    status: CertificateStatus
    not_before: Optional[datetime]
    not_after: Optional[datetime]
    fingerprint: Optional[str]
    requires_intervention: bool = False
    last_error: Optional[str] = None


@dataclass(frozen=True)
class CertificateCounts:
    """Certificates per status category."""
    valid: int = 0
    expiring_soon: int = 0
    expired: int = 0
    failed: int = 0
    unknown: int = 0

    @property
    def total(self) -> int:
        return self.valid + self.expiring_soon + self.expired + self.failed + self.unknown


@dataclass(frozen=True)
class HealthSnapshot:
    """Point-in-time health of the agent."""
    status: HealthStatus
    certificates: tuple[CertificateSummary, ...]
    counts: CertificateCounts
    ca: CAHealth
    uptime_seconds: float
    version: str
    generated_at: datetime

    def to_dict(self) -> dict:
        """Structured form served by the health query interface."""
        return {
            "status": self.status.value,
            "version": self.version,
            "uptime_seconds": round(self.uptime_seconds, 3),
            "generated_at": self.generated_at.isoformat(),
            "counts": {
                "total": self.counts.total,
                "valid": self.counts.valid,
                "expiring_soon": self.counts.expiring_soon,
                "expired": self.counts.expired,
                "failed": self.counts.failed,
                "unknown": self.counts.unknown,
            },
            "ca": {
                "reachable": self.ca.reachable,
                "latency_seconds": self.ca.latency_seconds,
                "checked_at": self.ca.checked_at.isoformat() if self.ca.checked_at else None,
                "error": self.ca.error,
            },
            "certificates": [
                {
                    "domain_set": c.domain_set,
                    "domains": list(c.domains),
                    "status": c.status.value,
                    "not_before": c.not_before.isoformat() if c.not_before else None,
                    "not_after": c.not_after.isoformat() if c.not_after else None,
                    "fingerprint": c.fingerprint,
                    "requires_intervention": c.requires_intervention,
                    "last_error": c.last_error,
                }
                for c in self.certificates
            ],
        }
