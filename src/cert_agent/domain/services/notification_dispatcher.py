"""Notification dispatcher.

Maps lifecycle events to outbound messages. Delivery is best-effort: a sink
failure is logged and dropped, and never feeds back into lifecycle state.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Sequence

from cert_agent.domain.entities.events import EventKind, LifecycleEvent, Severity
from cert_agent.ports.outbound import NotificationSink

logger = logging.getLogger(__name__)


SEVERITY_EMOJI = {
    Severity.INFO: "✅",
    Severity.WARNING: "⚠️",
    Severity.CRITICAL: "❌",
}

EVENT_TITLES = {
    EventKind.RENEWAL_SUCCEEDED: "Certificate renewed",
    EventKind.RENEWAL_FAILED: "Certificate renewal failed",
    EventKind.EXPIRING_SOON_WARNING: "Certificate expiring soon",
    EventKind.RELOAD_FAILED_CRITICAL: "Certificate deployment rolled back",
}

# Critical deploy fault whose rollback could not restore the previous material
NOT_RESTORED_TITLE = "Certificate deployment failed, rollback incomplete"


class NotificationDispatcher:
    """Fans lifecycle events out to the configured sinks."""

    def __init__(self, sinks: Sequence[NotificationSink] = (), service_name: str = "cert-agent"):
        """Initialize dispatcher.

        Args:
            sinks: Delivery targets; an empty sequence only logs.
            service_name: Label of the consuming service, prefixed to messages.
        """
        self._sinks = list(sinks)
        self._service_name = service_name
        self.recent: deque[LifecycleEvent] = deque(maxlen=100)

    def render(self, event: LifecycleEvent) -> str:
        """Human-readable one-line message for an event."""
        emoji = SEVERITY_EMOJI[event.severity]
        title = EVENT_TITLES[event.kind]
        if event.kind == EventKind.RELOAD_FAILED_CRITICAL and event.details.get("restored") is False:
            title = NOT_RESTORED_TITLE
        return f"{emoji} [{self._service_name}] {title} ({event.domain_set}): {event.message}"

    def dispatch(self, event: LifecycleEvent) -> int:
        """Deliver an event to every sink.

        Args:
            event: Event to deliver.

        Returns:
            Number of sinks that accepted the event.
        """
        text = self.render(event)
        self.recent.append(event)

        log = logger.error if event.severity == Severity.CRITICAL else logger.info
        log(f"Notification {event.kind.value}: {text}")

        delivered = 0
        for sink in self._sinks:
            try:
                sink.send(event, text)
                delivered += 1
            except Exception as e:
                logger.warning(f"Notification sink {type(sink).__name__} failed: {e}")
        return delivered
