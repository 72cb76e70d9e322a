"""Renewal policy and reload settings.

Both are immutable, owned by configuration and shared read-only by the
lifecycle engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class RenewalPolicy:
    """When to renew and what to ask the CA for."""
    renewal_threshold_days: float
    requested_validity: timedelta
    check_interval: timedelta

    def __post_init__(self) -> None:
        if self.renewal_threshold_days <= 0:
            raise ValueError("renewal_threshold_days must be positive")
        if self.requested_validity <= timedelta(0):
            raise ValueError("requested_validity must be positive")
        if self.renewal_threshold >= self.requested_validity:
            raise ValueError("renewal threshold must be shorter than the requested validity")

    @property
    def renewal_threshold(self) -> timedelta:
        return timedelta(days=self.renewal_threshold_days)


@dataclass(frozen=True)
class ReloadSpec:
    """External reload action for the consuming service."""
    command: str
    service_name: str  # label only, never executed
    timeout: float = 60.0
