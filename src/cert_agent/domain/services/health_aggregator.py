"""Health aggregator.

Builds point-in-time snapshots of certificate and CA health. Writers (the
lifecycle engine and the scheduler's CA probe) build a complete new snapshot
and swap the reference; readers just return the current reference, so a
query served while a renewal is in progress sees the last committed state.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from cert_agent.domain.entities.certificate import CertificateRecord, CertificateStatus, DomainSet
from cert_agent.domain.entities.health import (
    CAHealth,
    CertificateCounts,
    CertificateSummary,
    HealthSnapshot,
    HealthStatus,
)


def summarize(record: CertificateRecord) -> CertificateSummary:
    """Copy a mutable record into an immutable summary."""
    return CertificateSummary(
        domain_set=record.key,
        domains=tuple(record.domain_set.domains),
        status=record.status,
        not_before=record.not_before,
        not_after=record.not_after,
        fingerprint=record.fingerprint or None,
        requires_intervention=record.requires_intervention,
        last_error=record.last_error,
    )


def summarize_unissued(domain_set: DomainSet, error: Optional[str]) -> CertificateSummary:
    """Summary for a domain set that has never been issued a certificate."""
    return CertificateSummary(
        domain_set=domain_set.key,
        domains=tuple(domain_set.domains),
        status=CertificateStatus.RENEWAL_FAILED if error else CertificateStatus.UNKNOWN,
        not_before=None,
        not_after=None,
        fingerprint=None,
        last_error=error,
    )


def count_statuses(summaries: Iterable[CertificateSummary]) -> CertificateCounts:
    counts = {status: 0 for status in CertificateStatus}
    for s in summaries:
        counts[s.status] += 1
    return CertificateCounts(
        valid=counts[CertificateStatus.VALID],
        expiring_soon=counts[CertificateStatus.EXPIRING_SOON],
        expired=counts[CertificateStatus.EXPIRED],
        failed=counts[CertificateStatus.RENEWAL_FAILED],
        unknown=counts[CertificateStatus.UNKNOWN],
    )


def overall_status(
    summaries: tuple[CertificateSummary, ...],
    counts: CertificateCounts,
    ca: CAHealth,
) -> HealthStatus:
    """Fold certificate and CA health into one status."""
    if counts.expired or any(s.requires_intervention for s in summaries):
        return HealthStatus.UNHEALTHY
    if counts.total and counts.valid == counts.total and ca.reachable:
        return HealthStatus.HEALTHY
    if not counts.total and not ca.reachable:
        return HealthStatus.UNHEALTHY
    if not counts.total:
        return HealthStatus.HEALTHY
    return HealthStatus.DEGRADED


class HealthAggregator:
    """Publishes immutable health snapshots."""

    def __init__(
        self,
        version: str,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize aggregator.

        Args:
            version: Version tag reported in every snapshot.
            clock: Wall clock used for `generated_at`.
            monotonic: Monotonic clock used for uptime.
        """
        self._version = version
        self._clock = clock
        self._monotonic = monotonic
        self._started = monotonic()
        self._write_lock = threading.Lock()

        self._summaries: tuple[CertificateSummary, ...] = ()
        self._ca = CAHealth(reachable=False, error="not probed yet")
        self._snapshot = self._build()

    def snapshot(self) -> HealthSnapshot:
        """Return the last published snapshot.

        Reading a single attribute is atomic, so no lock is needed here.
        """
        return self._snapshot

    def publish(
        self,
        records: Iterable[CertificateRecord],
        unissued: Iterable[tuple[DomainSet, Optional[str]]] = (),
    ) -> HealthSnapshot:
        """Replace the certificate part of the snapshot.

        Args:
            records: Live certificate records.
            unissued: Domain sets without a certificate yet, with the last
                issuance error if one occurred.
        """
        summaries = tuple(summarize(r) for r in records)
        summaries += tuple(summarize_unissued(ds, err) for ds, err in unissued)
        with self._write_lock:
            self._summaries = summaries
            self._snapshot = self._build()
            return self._snapshot

    def record_probe(self, ca: CAHealth) -> HealthSnapshot:
        """Replace the CA part of the snapshot."""
        with self._write_lock:
            self._ca = ca
            self._snapshot = self._build()
            return self._snapshot

    def refresh(self) -> HealthSnapshot:
        """Rebuild with the current uptime."""
        with self._write_lock:
            self._snapshot = self._build()
            return self._snapshot

    def _build(self) -> HealthSnapshot:
        counts = count_statuses(self._summaries)
        return HealthSnapshot(
            status=overall_status(self._summaries, counts, self._ca),
            certificates=self._summaries,
            counts=counts,
            ca=self._ca,
            uptime_seconds=self._monotonic() - self._started,
            version=self._version,
            generated_at=self._clock(),
        )
