"""Domain services - renewal decisions, lifecycle orchestration and health."""

from cert_agent.domain.services.health_aggregator import HealthAggregator, overall_status
from cert_agent.domain.services.lifecycle import LifecycleEngine
from cert_agent.domain.services.notification_dispatcher import NotificationDispatcher
from cert_agent.domain.services.renewal_policy import (
    DecisionReason,
    RenewalAction,
    RenewalDecision,
    classify_status,
    decide_renewal,
)
from cert_agent.domain.services.retry import backoff_delays, retry_with_backoff

__all__ = [
    "HealthAggregator",
    "overall_status",
    "LifecycleEngine",
    "NotificationDispatcher",
    "DecisionReason",
    "RenewalAction",
    "RenewalDecision",
    "classify_status",
    "decide_renewal",
    "backoff_delays",
    "retry_with_backoff",
]
