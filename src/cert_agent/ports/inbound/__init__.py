"""Inbound ports - contracts offered to operators and monitoring systems."""

from __future__ import annotations

from abc import abstractmethod
from typing import Protocol

from cert_agent.domain.entities.health import HealthSnapshot


class HealthQueryPort(Protocol):
    """Read-only access to the agent's health.

    Thread Safety:
        Implementations must be safe to call from any thread while the
        scheduler is renewing; callers see the last published snapshot.
    """

    @abstractmethod
    def snapshot(self) -> HealthSnapshot:
        """Return the last published snapshot."""
        ...

    @abstractmethod
    def refresh(self) -> HealthSnapshot:
        """Return the last published state with a fresh uptime."""
        ...
