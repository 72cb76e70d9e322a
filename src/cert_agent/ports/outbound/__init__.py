"""Outbound ports - contracts the lifecycle engine depends on.

Each port is a Protocol so the engine can be exercised against in-memory
fakes in tests and against the file store, Step CA client, subprocess reload
executor and webhook sinks in production.

References:
    - Hexagonal Architecture pattern
"""

from __future__ import annotations

from abc import abstractmethod
from datetime import timedelta
from typing import Iterable, Mapping, Optional, Protocol, Sequence

from cert_agent.domain.entities.certificate import (
    CertificateRecord,
    DomainSet,
    IssuedCertificate,
    StagedHandle,
)
from cert_agent.domain.entities.events import LifecycleEvent
from cert_agent.domain.entities.health import CAHealth
from cert_agent.domain.entities.policy import ReloadSpec
from cert_agent.domain.entities.renewal import RenewalAttempt


# =============================================================================
# Certificate Store Port
# =============================================================================


class CertificateStore(Protocol):
    """Protocol for on-disk certificate material.

    Commit writes the `.old` backups first and then swaps key, certificate
    and chain in that order, so a reader never sees a certificate whose key
    is missing.

    Thread Safety:
        Only the lifecycle engine writes; it processes one domain set at a
        time, so implementations need no internal locking.
    """

    @abstractmethod
    def load(self, domain_set: DomainSet) -> Optional[CertificateRecord]:
        """Parse the live certificate/key pair.

        Returns:
            The record, or None when no pair exists yet (first issuance).
        """
        ...

    @abstractmethod
    def stage(
        self,
        domain_set: DomainSet,
        cert_bytes: bytes,
        key_bytes: bytes,
        chain_bytes: bytes,
    ) -> StagedHandle:
        """Write new material next to the live files.

        Raises:
            StorageError: On disk-full or permission failures.
        """
        ...

    @abstractmethod
    def commit(self, handle: StagedHandle) -> None:
        """Atomically replace the live files with the staged ones.

        Raises:
            CommitError: If the swap fails part way.
        """
        ...

    @abstractmethod
    def discard(self, handle: StagedHandle) -> None:
        """Remove staged files that will not be committed."""
        ...

    @abstractmethod
    def rollback(self, domain_set: DomainSet) -> None:
        """Restore the `.old` backups over the live files.

        Raises:
            RollbackError: If no backup exists or the restore fails.
        """
        ...

    @abstractmethod
    def read_status(self) -> dict[str, dict]:
        """Return the persisted per-domain-set metadata (status.json)."""
        ...

    @abstractmethod
    def write_status(
        self,
        records: Iterable[CertificateRecord],
        recorded_fingerprints: Mapping[str, str],
    ) -> None:
        """Persist the current records and trusted fingerprints to status.json."""
        ...

    @abstractmethod
    def write_last_renewal(self, attempt: RenewalAttempt) -> None:
        """Persist a finished attempt to last_renewal.json."""
        ...


# =============================================================================
# CA Client Port
# =============================================================================


class CAClient(Protocol):
    """Protocol for the issuance exchange with the PKI server.

    The server identity is pinned; implementations must fail closed with
    UntrustedServerError rather than fall back to default trust roots.
    """

    @abstractmethod
    def probe(self) -> CAHealth:
        """Lightweight liveness check. Never raises."""
        ...

    @abstractmethod
    def request_certificate(
        self, domains: Sequence[str], validity: timedelta
    ) -> IssuedCertificate:
        """Run the issuance exchange for the given identifiers.

        Raises:
            TransientCAError: Unreachable, rate limited or malformed response.
            PermanentCAError: Authorization failed or untrusted server.
        """
        ...


class AuthorizationStrategy(Protocol):
    """Obtains the proof of authorization the CA requires for an order."""

    @abstractmethod
    def authorize(self, domains: Sequence[str], ca_url: str, root_path: Optional[str]) -> str:
        """Return a one-time token authorizing issuance for `domains`.

        Raises:
            AuthorizationFailedError: If no token can be produced.
        """
        ...


# =============================================================================
# Reload Executor Port
# =============================================================================


class ReloadExecutor(Protocol):
    """Protocol for the external reload action."""

    @abstractmethod
    def execute(self, spec: ReloadSpec) -> None:
        """Run the reload action.

        Raises:
            ReloadTimeoutError, ReloadExitError, ReloadSpawnError
        """
        ...


# =============================================================================
# Notification Sink Port
# =============================================================================


class NotificationSink(Protocol):
    """Delivers rendered lifecycle events to an external transport."""

    @abstractmethod
    def send(self, event: LifecycleEvent, text: str) -> None:
        """Deliver one event. May raise; the dispatcher absorbs failures."""
        ...
