"""Lifecycle events handed to the notification dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class EventKind(str, Enum):
    """Outbound alert kinds."""
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    RENEWAL_FAILED = "renewal_failed"
    EXPIRING_SOON_WARNING = "expiring_soon_warning"
    RELOAD_FAILED_CRITICAL = "reload_failed_critical"


class Severity(str, Enum):
    """Alert severity."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


DEFAULT_SEVERITY = {
    EventKind.RENEWAL_SUCCEEDED: Severity.INFO,
    EventKind.RENEWAL_FAILED: Severity.WARNING,
    EventKind.EXPIRING_SOON_WARNING: Severity.WARNING,
    EventKind.RELOAD_FAILED_CRITICAL: Severity.CRITICAL,
}


@dataclass(frozen=True)
class LifecycleEvent:
    """Something an operator should hear about."""
    kind: EventKind
    domain_set: str
    message: str
    severity: Optional[Severity] = None
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.severity is None:
            object.__setattr__(self, "severity", DEFAULT_SEVERITY[self.kind])

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "domain_set": self.domain_set,
            "message": self.message,
            "details": self.details,
            "occurred_at": self.occurred_at.isoformat(),
        }
