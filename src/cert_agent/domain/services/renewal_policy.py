"""Renewal decision policy.

Pure functions mapping a certificate's validity window and the configured
threshold to a renew/skip decision. The policy always prefers re-issuance
over serving material it cannot vouch for: a missing record, an unparsable
certificate or a fingerprint that no longer matches the recorded one all
force a renewal regardless of remaining validity.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from cert_agent.domain.entities.certificate import CertificateRecord, CertificateStatus


class RenewalAction(str, Enum):
    """Outcome of the decision policy."""
    RENEW = "renew"
    SKIP = "skip"


class DecisionReason(str, Enum):
    """Why the policy decided what it did."""
    NOT_FOUND = "not_found"
    UNREADABLE = "unreadable"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"
    WITHIN_THRESHOLD = "within_threshold"
    HEALTHY = "healthy"


@dataclass(frozen=True)
class RenewalDecision:
    """Renew or skip, with the reason."""
    action: RenewalAction
    reason: DecisionReason
    remaining: Optional[timedelta] = None

    @property
    def should_renew(self) -> bool:
        return self.action == RenewalAction.RENEW


def decide_renewal(
    now: datetime,
    record: Optional[CertificateRecord],
    renewal_threshold_days: float,
    recorded_fingerprint: Optional[str] = None,
) -> RenewalDecision:
    """Decide whether a domain set needs a new certificate.

    Args:
        now: Current time (timezone-aware).
        record: Record loaded from disk, None if no certificate exists.
        renewal_threshold_days: Renew when this many days or fewer remain.
        recorded_fingerprint: Fingerprint persisted after the last commit.
            None means there is nothing to compare against.

    Returns:
        The renewal decision.
    """
    if record is None:
        return RenewalDecision(RenewalAction.RENEW, DecisionReason.NOT_FOUND)

    if not record.has_validity_window:
        return RenewalDecision(RenewalAction.RENEW, DecisionReason.UNREADABLE)

    remaining = record.not_after - now

    if recorded_fingerprint and recorded_fingerprint != record.fingerprint:
        return RenewalDecision(RenewalAction.RENEW, DecisionReason.FINGERPRINT_MISMATCH, remaining)

    if remaining <= timedelta(days=renewal_threshold_days):
        return RenewalDecision(RenewalAction.RENEW, DecisionReason.WITHIN_THRESHOLD, remaining)

    return RenewalDecision(RenewalAction.SKIP, DecisionReason.HEALTHY, remaining)


def classify_status(
    now: datetime,
    record: CertificateRecord,
    renewal_threshold_days: float,
) -> CertificateStatus:
    """Derive a record's status from its validity window alone."""
    if not record.has_validity_window:
        return CertificateStatus.UNKNOWN
    if now >= record.not_after:
        return CertificateStatus.EXPIRED
    if record.not_after - now <= timedelta(days=renewal_threshold_days):
        return CertificateStatus.EXPIRING_SOON
    return CertificateStatus.VALID
