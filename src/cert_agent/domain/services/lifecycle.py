"""Certificate lifecycle state machine.

Drives one domain set at a time through

    Idle -> Checking -> Renewing -> Deploying -> Reloading -> Verifying -> Idle

with RollingBack reachable from Deploying, Reloading and Verifying, and
Failed reachable from any step that runs out of options.

Recovery rules:
    - CA errors are retried with bounded backoff inside the tick; when they
      run out the attempt fails and the live files are never touched.
    - A stage failure leaves the live files untouched; the next tick retries.
    - A commit, reload or verification failure restores the `.old` backups.
      When the service was already reloaded it is reloaded again with the
      restored material.
    - A rollback failure flags the domain set for operator intervention;
      each cycle fails without renewing until the flag is cleared.
    - An unexpected exception is recovered by the state it escaped from.

The engine exclusively owns the per-domain CertificateRecord map; the health
aggregator and notification dispatcher only ever receive copies.
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ContextManager, Iterable, Optional

from cert_agent.domain.entities.certificate import (
    CertificateRecord,
    CertificateStatus,
    DomainSet,
    IssuedCertificate,
)
from cert_agent.domain.entities.events import EventKind, LifecycleEvent, Severity
from cert_agent.domain.entities.policy import ReloadSpec, RenewalPolicy
from cert_agent.domain.entities.renewal import (
    LifecycleState,
    RenewalAttempt,
    RenewalOutcome,
)
from cert_agent.domain.errors import (
    CAError,
    CommitError,
    ReloadError,
    RollbackError,
    StorageError,
    VerificationError,
)
from cert_agent.domain.services.health_aggregator import HealthAggregator
from cert_agent.domain.services.notification_dispatcher import NotificationDispatcher
from cert_agent.domain.services.renewal_policy import classify_status, decide_renewal
from cert_agent.domain.services.retry import retry_with_backoff
from cert_agent.domain.value_objects.identifiers import DomainSetKey, Fingerprint
from cert_agent.ports.outbound import CAClient, CertificateStore, ReloadExecutor

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LifecycleEngine:
    """Renews, deploys, reloads and verifies certificates for domain sets.

    Thread Safety:
        Not thread-safe. A single sequential driver (the scheduler) calls
        run_pass/run_cycle; that is what guarantees at most one attempt in
        flight per domain set. Re-entering a domain set raises RuntimeError.
    """

    def __init__(
        self,
        store: CertificateStore,
        ca_client: CAClient,
        reload_executor: ReloadExecutor,
        reload_spec: ReloadSpec,
        default_policy: RenewalPolicy,
        dispatcher: NotificationDispatcher,
        aggregator: HealthAggregator,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        retry_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        span: Optional[Callable[[str, dict[str, Any]], ContextManager[Any]]] = None,
    ):
        self._store = store
        self._ca = ca_client
        self._reloader = reload_executor
        self._reload_spec = reload_spec
        self._default_policy = default_policy
        self._dispatcher = dispatcher
        self._aggregator = aggregator
        self._clock = clock
        self._sleep = sleep
        self._retry_attempts = retry_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._span = span or (lambda name, attributes: nullcontext())

        self._records: dict[DomainSetKey, CertificateRecord] = {}
        self._states: dict[DomainSetKey, LifecycleState] = {}
        self._in_flight: set[DomainSetKey] = set()
        # Domain sets configured but never successfully issued, with last error
        self._unissued: dict[DomainSetKey, tuple[DomainSet, Optional[str]]] = {}

        # Fingerprints of material this agent wrote or adopted
        self._trusted: dict[DomainSetKey, Fingerprint] = {}
        for key, meta in self._read_status().items():
            if meta.get("recorded_fingerprint"):
                self._trusted[DomainSetKey(key)] = Fingerprint(meta["recorded_fingerprint"])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def policy_for(self, domain_set: DomainSet) -> RenewalPolicy:
        return domain_set.policy or self._default_policy

    def state_of(self, key: str) -> LifecycleState:
        return self._states.get(DomainSetKey(key), LifecycleState.IDLE)

    def record_of(self, key: str) -> Optional[CertificateRecord]:
        return self._records.get(DomainSetKey(key))

    @property
    def records(self) -> tuple[CertificateRecord, ...]:
        return tuple(self._records.values())

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def run_pass(
        self,
        domain_sets: Iterable[DomainSet],
        should_stop: Callable[[], bool] = lambda: False,
    ) -> list[RenewalAttempt]:
        """Run one cycle per domain set, sequentially, in the given order.

        `should_stop` is only consulted between domain sets; a cycle that has
        started always runs to completion.
        """
        attempts = []
        for domain_set in domain_sets:
            if should_stop():
                logger.info(f"Stop requested, ending pass before {domain_set.key}")
                break
            attempts.append(self.run_cycle(domain_set))
        return attempts

    def run_cycle(self, domain_set: DomainSet) -> RenewalAttempt:
        """Run the state machine once for a domain set.

        An unexpected exception is handled by the state it escaped from: one
        raised after the commit rolls back, anything earlier fails the attempt
        without touching the live files.
        """
        key = domain_set.key
        if key in self._in_flight:
            raise RuntimeError(f"renewal already in flight for {key}")

        attempt = RenewalAttempt(domain_set=key, started_at=self._clock())
        self._in_flight.add(key)
        try:
            with self._span("cert_agent.renewal_cycle", {"domain_set": key}):
                self._cycle(domain_set, attempt)
        except Exception as e:
            self._recover_unexpected(domain_set, attempt, e)
        finally:
            self._in_flight.discard(key)
            if self._states.get(key) != LifecycleState.FAILED:
                self._transition(key, LifecycleState.IDLE)

        attempt.finished_at = self._clock()
        self._persist(attempt)
        self._aggregator.publish(self._records.values(), self._unissued.values())
        return attempt

    def clear_intervention(self, name: str) -> bool:
        """Let a domain set flagged after a failed rollback renew again.

        Returns:
            True if the flag was set.
        """
        record = self._records.get(DomainSetKey(name))
        if record is None or not record.requires_intervention:
            return False
        record.requires_intervention = False
        record.last_error = None
        logger.info(f"{name}: intervention flag cleared")
        try:
            self._store.write_status(self._records.values(), self._trusted)
        except StorageError as e:
            logger.error(f"Failed to persist renewal metadata: {e}")
        self._aggregator.publish(self._records.values(), self._unissued.values())
        return True

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def _cycle(self, domain_set: DomainSet, attempt: RenewalAttempt) -> RenewalAttempt:
        key = domain_set.key
        now = attempt.started_at
        policy = self.policy_for(domain_set)

        # Checking
        self._transition(key, LifecycleState.CHECKING)
        meta = self._read_status().get(key, {})
        try:
            record = self._store.load(domain_set)
        except StorageError as e:
            return self._fail_without_touching(
                domain_set, self._records.get(key), attempt, e, LifecycleState.CHECKING
            )

        if record is not None:
            record.requires_intervention = bool(meta.get("requires_intervention"))
            record.status = classify_status(now, record, policy.renewal_threshold_days)
            record.updated_at = now
            self._records[key] = record
            self._unissued.pop(key, None)
        elif key not in self._unissued:
            self._unissued[key] = (domain_set, None)

        if record is not None and record.requires_intervention:
            logger.error(
                f"{key}: rollback previously failed; not renewing until an operator clears the flag"
            )
            self._transition(key, LifecycleState.FAILED)
            record.status = CertificateStatus.RENEWAL_FAILED
            record.last_error = meta.get("last_error") or "operator intervention required"
            attempt.outcome = RenewalOutcome.FAILED
            attempt.error = "operator intervention required"
            attempt.failed_state = LifecycleState.CHECKING
            return attempt

        decision = decide_renewal(now, record, policy.renewal_threshold_days, self._trusted.get(key))
        if record is not None and key not in self._trusted:
            # No prior fingerprint to compare against: adopt what is on disk
            self._trusted[key] = record.fingerprint

        if not decision.should_renew:
            logger.debug(f"{key}: certificate healthy ({decision.remaining} remaining), skipping")
            return attempt

        logger.info(f"{key}: renewal required ({decision.reason.value})")
        attempt.previous_fingerprint = record.fingerprint if record else None

        # Renewing
        self._transition(key, LifecycleState.RENEWING)
        try:
            issued = self._issue(domain_set, policy)
        except CAError as e:
            return self._fail_without_touching(domain_set, record, attempt, e, LifecycleState.RENEWING)

        # Deploying
        self._transition(key, LifecycleState.DEPLOYING)
        try:
            handle = self._store.stage(
                domain_set, issued.certificate_pem, issued.private_key_pem, issued.chain_pem
            )
        except StorageError as e:
            return self._fail_without_touching(domain_set, record, attempt, e, LifecycleState.DEPLOYING)

        attempt.new_fingerprint = handle.fingerprint
        try:
            self._store.commit(handle)
        except CommitError as e:
            self._store.discard(handle)
            return self._roll_back(domain_set, attempt, e, LifecycleState.DEPLOYING, reloaded=False)
        except StorageError as e:
            # Backups could not be written; live files were not touched
            self._store.discard(handle)
            return self._fail_without_touching(domain_set, record, attempt, e, LifecycleState.DEPLOYING)

        # Reloading
        self._transition(key, LifecycleState.RELOADING)
        try:
            self._reloader.execute(self._reload_spec)
        except ReloadError as e:
            return self._roll_back(domain_set, attempt, e, LifecycleState.RELOADING, reloaded=True)

        # Verifying
        self._transition(key, LifecycleState.VERIFYING)
        try:
            live = self._verify(domain_set, handle.fingerprint)
        except VerificationError as e:
            return self._roll_back(domain_set, attempt, e, LifecycleState.VERIFYING, reloaded=True)

        live.status = classify_status(self._clock(), live, policy.renewal_threshold_days)
        live.updated_at = self._clock()
        self._records[key] = live
        self._unissued.pop(key, None)
        self._trusted[key] = live.fingerprint
        attempt.outcome = RenewalOutcome.RENEWED

        logger.info(f"{key}: certificate renewed, valid until {live.not_after.isoformat()}")
        self._dispatcher.dispatch(LifecycleEvent(
            kind=EventKind.RENEWAL_SUCCEEDED,
            domain_set=key,
            message=f"new certificate valid until {live.not_after.isoformat()}",
            details={
                "domains": list(domain_set.domains),
                "not_after": live.not_after.isoformat(),
                "fingerprint": live.fingerprint,
                "previous_fingerprint": attempt.previous_fingerprint,
            },
        ))
        return attempt

    def _issue(self, domain_set: DomainSet, policy: RenewalPolicy) -> IssuedCertificate:
        return retry_with_backoff(
            lambda: self._ca.request_certificate(domain_set.domains, policy.requested_validity),
            attempts=self._retry_attempts,
            base_delay=self._backoff_base,
            max_delay=self._backoff_max,
            sleep=self._sleep,
            description=f"{domain_set.key}: certificate request",
        )

    def _verify(self, domain_set: DomainSet, expected: Fingerprint) -> CertificateRecord:
        """Re-read the live certificate and check it is what was committed."""
        try:
            live = self._store.load(domain_set)
        except StorageError as e:
            raise VerificationError(f"cannot read live certificate: {e}") from e

        if live is None:
            raise VerificationError("live certificate or key missing after commit")
        if live.fingerprint != expected:
            raise VerificationError(
                f"live fingerprint {live.fingerprint[:16]} does not match committed {expected[:16]}"
            )
        if not live.has_validity_window or live.not_after <= self._clock():
            raise VerificationError("live certificate validity window is not in the future")
        return live

    # ------------------------------------------------------------------
    # Failure paths
    # ------------------------------------------------------------------

    def _fail_without_touching(
        self,
        domain_set: DomainSet,
        record: Optional[CertificateRecord],
        attempt: RenewalAttempt,
        error: Exception,
        state: LifecycleState,
    ) -> RenewalAttempt:
        """Fail an attempt that never changed the live files."""
        key = domain_set.key
        self._transition(key, LifecycleState.FAILED)
        self._mark_failed(attempt, error, state)
        now = self._clock()
        logger.error(f"{key}: renewal failed while {state.value}: {error}")

        if record is not None:
            record.status = CertificateStatus.RENEWAL_FAILED
            record.last_error = str(error)
            record.updated_at = now
        else:
            self._unissued[key] = (domain_set, str(error))

        still_valid = record is not None and not record.is_expired(now) and record.not_after is not None
        if still_valid:
            message = f"renewal failed, old certificate still valid until {record.not_after.isoformat()}: {error}"
        else:
            message = f"renewal failed, no valid certificate in place: {error}"

        self._dispatcher.dispatch(LifecycleEvent(
            kind=EventKind.RENEWAL_FAILED,
            domain_set=key,
            message=message,
            details={"state": state.value, "error": str(error), "old_certificate_valid": still_valid},
        ))

        threshold = timedelta(days=self.policy_for(domain_set).renewal_threshold_days)
        if still_valid and record.not_after - now <= threshold:
            days_left = (record.not_after - now).total_seconds() / 86400
            self._dispatcher.dispatch(LifecycleEvent(
                kind=EventKind.EXPIRING_SOON_WARNING,
                domain_set=key,
                message=f"certificate expires in {days_left:.1f} days and could not be renewed",
                details={"not_after": record.not_after.isoformat(), "days_left": round(days_left, 2)},
            ))
        return attempt

    def _recover_unexpected(
        self,
        domain_set: DomainSet,
        attempt: RenewalAttempt,
        error: Exception,
    ) -> None:
        """Route an exception outside the error taxonomy by the state it escaped from."""
        key = domain_set.key
        state = self._states.get(key, LifecycleState.CHECKING)
        logger.exception(f"{key}: unexpected error while {state.value}: {error}")

        if state == LifecycleState.ROLLING_BACK:
            rollback_error = RollbackError(f"{type(error).__name__}: {error}")
            origin = attempt.failed_state or state
            self._rollback_failed(domain_set, attempt, attempt.error or error, origin, rollback_error)
        elif state in (LifecycleState.RELOADING, LifecycleState.VERIFYING):
            try:
                self._roll_back(domain_set, attempt, error, state, reloaded=True)
            except Exception as e:
                self._rollback_failed(
                    domain_set, attempt, error, state, RollbackError(f"{type(e).__name__}: {e}")
                )
        else:
            self._fail_without_touching(domain_set, self._records.get(key), attempt, error, state)

    def _roll_back(
        self,
        domain_set: DomainSet,
        attempt: RenewalAttempt,
        error: Exception,
        origin: LifecycleState,
        reloaded: bool,
    ) -> RenewalAttempt:
        """Restore the previous material after a deploy, reload or verify fault."""
        key = domain_set.key
        self._transition(key, LifecycleState.ROLLING_BACK)
        self._mark_failed(attempt, error, origin)
        logger.error(f"{key}: {origin.value} failed, rolling back: {error}")

        try:
            self._store.rollback(domain_set)
        except RollbackError as rb:
            return self._rollback_failed(domain_set, attempt, error, origin, rb)

        attempt.rolled_back = True

        service_restored = True
        if reloaded:
            try:
                self._reloader.execute(self._reload_spec)
            except ReloadError as e:
                service_restored = False
                logger.error(f"{key}: reload with restored material failed: {e}")

        now = self._clock()
        try:
            restored = self._store.load(domain_set)
        except StorageError as e:
            logger.error(f"{key}: cannot read restored certificate: {e}")
            restored = None

        if restored is not None:
            restored.status = CertificateStatus.RENEWAL_FAILED
            restored.last_error = str(error)
            restored.updated_at = now
            self._records[key] = restored
            self._trusted[key] = restored.fingerprint

        self._transition(key, LifecycleState.FAILED)
        self._dispatcher.dispatch(LifecycleEvent(
            kind=EventKind.RELOAD_FAILED_CRITICAL,
            domain_set=key,
            message=(
                f"renewal failed, old certificate restored after a {origin.value} fault: {error}"
                + ("" if service_restored else " (reload with restored material also failed)")
            ),
            severity=Severity.CRITICAL,
            details={
                "state": origin.value,
                "error": str(error),
                "restored": True,
                "service_reloaded": service_restored if reloaded else None,
            },
        ))
        return attempt

    def _rollback_failed(
        self,
        domain_set: DomainSet,
        attempt: RenewalAttempt,
        error: Exception | str,
        origin: LifecycleState,
        rollback_error: RollbackError,
    ) -> RenewalAttempt:
        key = domain_set.key
        self._transition(key, LifecycleState.FAILED)
        attempt.error = f"{error}; rollback failed: {rollback_error}"
        logger.critical(f"{key}: rollback failed, operator intervention required: {rollback_error}")

        try:
            live = self._store.load(domain_set)
        except StorageError:
            live = None

        record = live or self._records.get(key)
        if record is not None:
            record.status = CertificateStatus.RENEWAL_FAILED
            record.requires_intervention = True
            record.last_error = attempt.error
            record.updated_at = self._clock()
            self._records[key] = record
            self._trusted[key] = record.fingerprint
            self._unissued.pop(key, None)
        else:
            self._unissued[key] = (domain_set, attempt.error)

        self._dispatcher.dispatch(LifecycleEvent(
            kind=EventKind.RELOAD_FAILED_CRITICAL,
            domain_set=key,
            message=(
                f"renewal failed after a {origin.value} fault and the previous certificate "
                f"could not be restored ({rollback_error}); operator intervention required"
            ),
            severity=Severity.CRITICAL,
            details={
                "state": origin.value,
                "error": str(error),
                "rollback_error": str(rollback_error),
                "restored": False,
            },
        ))
        return attempt

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _mark_failed(attempt: RenewalAttempt, error: Exception, state: LifecycleState) -> None:
        attempt.outcome = RenewalOutcome.FAILED
        attempt.error = f"{type(error).__name__}: {error}"
        attempt.failed_state = state

    def _transition(self, key: DomainSetKey, state: LifecycleState) -> None:
        previous = self._states.get(key, LifecycleState.IDLE)
        if previous != state:
            logger.debug(f"{key}: {previous.value} -> {state.value}")
        self._states[key] = state

    def _read_status(self) -> dict[str, dict]:
        try:
            return self._store.read_status()
        except StorageError as e:
            logger.warning(f"Cannot read renewal metadata: {e}")
            return {}

    def _persist(self, attempt: RenewalAttempt) -> None:
        """Write metadata; failures are logged, the on-disk pair is unaffected."""
        try:
            if attempt.outcome != RenewalOutcome.SKIPPED:
                self._store.write_last_renewal(attempt)
            self._store.write_status(self._records.values(), self._trusted)
        except StorageError as e:
            logger.error(f"Failed to persist renewal metadata: {e}")
