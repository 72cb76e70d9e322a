"""Domain entities for the certificate agent."""

from cert_agent.domain.entities.certificate import (
    CertificateRecord,
    CertificateStatus,
    DomainSet,
    IssuedCertificate,
    StagedHandle,
)
from cert_agent.domain.entities.events import EventKind, LifecycleEvent, Severity
from cert_agent.domain.entities.health import (
    CAHealth,
    CertificateCounts,
    CertificateSummary,
    HealthSnapshot,
    HealthStatus,
)
from cert_agent.domain.entities.policy import ReloadSpec, RenewalPolicy
from cert_agent.domain.entities.renewal import LifecycleState, RenewalAttempt, RenewalOutcome

__all__ = [
    "CertificateRecord",
    "CertificateStatus",
    "DomainSet",
    "IssuedCertificate",
    "StagedHandle",
    "EventKind",
    "LifecycleEvent",
    "Severity",
    "CAHealth",
    "CertificateCounts",
    "CertificateSummary",
    "HealthSnapshot",
    "HealthStatus",
    "ReloadSpec",
    "RenewalPolicy",
    "LifecycleState",
    "RenewalAttempt",
    "RenewalOutcome",
]
