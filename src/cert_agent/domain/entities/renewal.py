"""Renewal attempt records.

A RenewalAttempt describes one Check -> Notify cycle. It drives rollback and
notification, is written to last_renewal.json and then discarded.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from cert_agent.domain.value_objects.identifiers import DomainSetKey, Fingerprint


class RenewalOutcome(str, Enum):
    """How a cycle ended."""
    SKIPPED = "skipped"
    RENEWED = "renewed"
    FAILED = "failed"


class LifecycleState(str, Enum):
    """Lifecycle state machine states."""
    IDLE = "idle"
    CHECKING = "checking"
    RENEWING = "renewing"
    DEPLOYING = "deploying"
    RELOADING = "reloading"
    VERIFYING = "verifying"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


@dataclass
class RenewalAttempt:
    """One pass of the lifecycle state machine over a domain set."""
    domain_set: DomainSetKey
    started_at: datetime
    outcome: RenewalOutcome = RenewalOutcome.SKIPPED
    error: Optional[str] = None
    previous_fingerprint: Optional[Fingerprint] = None
    new_fingerprint: Optional[Fingerprint] = None
    failed_state: Optional[LifecycleState] = None
    rolled_back: bool = False
    finished_at: Optional[datetime] = None

    @property
    def failed(self) -> bool:
        return self.outcome == RenewalOutcome.FAILED

    def to_dict(self) -> dict:
        """Serialize for last_renewal.json."""
        return {
            "domain_set": self.domain_set,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcome": self.outcome.value,
            "error": self.error,
            "failed_state": self.failed_state.value if self.failed_state else None,
            "previous_fingerprint": self.previous_fingerprint,
            "new_fingerprint": self.new_fingerprint,
            "rolled_back": self.rolled_back,
        }
