"""Certificate agent application.

Wires configuration to adapters and domain services, and exposes the two run
modes: a long-running daemon and a single pass.

Usage:
    agent = CertAgent.from_config(get_config())
    agent.initialize()
    failed = agent.run_once()
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

import httpx
import uvicorn

from cert_agent import __version__
from cert_agent.adapters.inbound.rest_api import create_app
from cert_agent.adapters.outbound.authorizers import StaticTokenAuthorizer, StepCLIAuthorizer
from cert_agent.adapters.outbound.file_certificate_store import FileCertificateStore
from cert_agent.adapters.outbound.step_ca_client import StepCAClient
from cert_agent.adapters.outbound.subprocess_reload_executor import SubprocessReloadExecutor
from cert_agent.adapters.outbound.webhook_notifier import JSONWebhookSink, SlackWebhookSink
from cert_agent.application.scheduler import Scheduler
from cert_agent.domain.entities.certificate import DomainSet
from cert_agent.domain.entities.health import CAHealth
from cert_agent.domain.entities.policy import ReloadSpec, RenewalPolicy
from cert_agent.domain.entities.renewal import RenewalAttempt, RenewalOutcome
from cert_agent.domain.services.health_aggregator import HealthAggregator
from cert_agent.domain.services.lifecycle import LifecycleEngine
from cert_agent.domain.services.notification_dispatcher import NotificationDispatcher
from cert_agent.domain.value_objects.identifiers import DomainSetKey
from cert_agent.infrastructure.config import Config
from cert_agent.infrastructure.logging import get_logger
from cert_agent.infrastructure.metrics import CertAgentMetrics
from cert_agent.infrastructure.tracing import trace_span
from cert_agent.ports.outbound import AuthorizationStrategy, CAClient, NotificationSink

logger = get_logger(__name__)


def build_policy(config: Config) -> RenewalPolicy:
    """Process-wide renewal policy."""
    return RenewalPolicy(
        renewal_threshold_days=config.renewal.renewal_threshold_days,
        requested_validity=timedelta(days=config.renewal.validity_days),
        check_interval=timedelta(seconds=config.renewal.check_interval_seconds),
    )


def build_domain_sets(config: Config) -> list[DomainSet]:
    """Domain sets in configuration order, with per-set policy overrides."""
    default = build_policy(config)
    domain_sets = []
    for ds in config.domain_sets:
        policy = None
        if ds.renewal_threshold_days is not None or ds.validity_days is not None:
            policy = RenewalPolicy(
                renewal_threshold_days=ds.renewal_threshold_days or default.renewal_threshold_days,
                requested_validity=(
                    timedelta(days=ds.validity_days) if ds.validity_days else default.requested_validity
                ),
                check_interval=default.check_interval,
            )
        domain_sets.append(DomainSet(name=DomainSetKey(ds.name), domains=tuple(ds.domains), policy=policy))
    return domain_sets


def build_authorizer(config: Config) -> AuthorizationStrategy:
    if config.ca.authorization == "step-cli":
        return StepCLIAuthorizer(
            provisioner=config.ca.provisioner,
            password_file=config.ca.password_file,
            step_binary=config.ca.step_binary,
            timeout=config.ca.timeout_seconds,
        )
    return StaticTokenAuthorizer(token=config.ca.token, token_file=config.ca.token_file)


def build_sinks(config: Config) -> list[NotificationSink]:
    sinks: list[NotificationSink] = []
    notifications = config.notifications
    if notifications.slack_webhook_url:
        sinks.append(SlackWebhookSink(notifications.slack_webhook_url, timeout=notifications.timeout_seconds))
    if notifications.webhook_url:
        sinks.append(
            JSONWebhookSink(
                notifications.webhook_url,
                service_name=config.reload.service_name,
                timeout=notifications.timeout_seconds,
            )
        )
    return sinks


class CertAgent:
    """Composition root and run modes of the certificate agent."""

    def __init__(
        self,
        config: Config,
        store: FileCertificateStore,
        ca_client: CAClient,
        engine: LifecycleEngine,
        aggregator: HealthAggregator,
        dispatcher: NotificationDispatcher,
        domain_sets: Sequence[DomainSet],
        metrics: Optional[CertAgentMetrics] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config
        self.store = store
        self.ca_client = ca_client
        self.engine = engine
        self.aggregator = aggregator
        self.dispatcher = dispatcher
        self.domain_sets = list(domain_sets)
        self.metrics = metrics
        self._clock = clock

        self.scheduler = Scheduler(self.tick, interval=config.renewal.check_interval_seconds)
        self._server: Optional[uvicorn.Server] = None
        self._server_thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        metrics: Optional[CertAgentMetrics] = None,
        transport: Optional[httpx.BaseTransport] = None,
        reload_executor=None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "CertAgent":
        """Build the agent and its adapters from configuration.

        Args:
            config: Agent configuration.
            metrics: Metrics registry; None disables metrics.
            transport: httpx transport for the CA client (tests inject a mock).
            reload_executor: Override of the subprocess reload executor.
            sleep: Sleep used between CA retries.
        """
        store = FileCertificateStore(config.storage.cert_dir, config.storage.dir_mode)
        ca_client = StepCAClient(
            url=config.ca.url,
            fingerprint=config.ca.fingerprint,
            authorizer=build_authorizer(config),
            timeout=config.ca.timeout_seconds,
            root_path=store.metadata_dir / "root_ca.crt",
            transport=transport,
        )
        dispatcher = NotificationDispatcher(build_sinks(config), service_name=config.reload.service_name)
        aggregator = HealthAggregator(version=__version__)
        engine = LifecycleEngine(
            store=store,
            ca_client=ca_client,
            reload_executor=reload_executor or SubprocessReloadExecutor(signal_dir=config.storage.cert_dir),
            reload_spec=ReloadSpec(
                command=config.reload.command,
                service_name=config.reload.service_name,
                timeout=config.reload.timeout_seconds,
            ),
            default_policy=build_policy(config),
            dispatcher=dispatcher,
            aggregator=aggregator,
            sleep=sleep,
            retry_attempts=config.ca.max_attempts,
            backoff_base=config.ca.backoff_base_seconds,
            backoff_max=config.ca.backoff_max_seconds,
            span=trace_span,
        )
        return cls(
            config=config,
            store=store,
            ca_client=ca_client,
            engine=engine,
            aggregator=aggregator,
            dispatcher=dispatcher,
            domain_sets=build_domain_sets(config),
            metrics=metrics,
        )

    def initialize(self) -> None:
        """Prepare the certificate directory."""
        self.store.initialize()
        logger.info(
            "agent_initialized",
            version=__version__,
            cert_dir=str(self.config.storage.cert_dir),
            domain_sets=[ds.key for ds in self.domain_sets],
            ca_url=self.config.ca.url,
        )

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def probe_ca(self) -> CAHealth:
        ca = self.ca_client.probe()
        self.aggregator.record_probe(ca)
        if self.metrics:
            self.metrics.ca_reachable.set(1 if ca.reachable else 0)
            if ca.latency_seconds is not None:
                self.metrics.ca_probe_latency_seconds.set(ca.latency_seconds)
        if not ca.reachable:
            logger.warning("ca_unreachable", error=ca.error)
        return ca

    def tick(self, should_stop: Callable[[], bool] = lambda: False) -> bool:
        """Probe the CA and run one pass over all domain sets.

        Returns:
            True if any domain set ended in the Failed state.
        """
        with trace_span("cert_agent.tick", {"domain_sets": len(self.domain_sets)}):
            self.probe_ca()
            attempts = self.engine.run_pass(self.domain_sets, should_stop)

        for attempt in attempts:
            self._record_attempt(attempt)
        self._record_expiry()

        failed = [a.domain_set for a in attempts if a.failed]
        renewed = [a.domain_set for a in attempts if a.outcome == RenewalOutcome.RENEWED]
        logger.info("tick_completed", checked=len(attempts), renewed=renewed, failed=failed)
        return bool(failed)

    def _record_attempt(self, attempt: RenewalAttempt) -> None:
        if self.metrics is None or attempt.outcome == RenewalOutcome.SKIPPED:
            return
        self.metrics.renewals_total.labels(
            domain_set=attempt.domain_set, outcome=attempt.outcome.value
        ).inc()
        if attempt.rolled_back:
            self.metrics.rollbacks_total.labels(domain_set=attempt.domain_set).inc()
        if attempt.finished_at:
            self.metrics.renewal_duration_seconds.observe(
                (attempt.finished_at - attempt.started_at).total_seconds()
            )

    def _record_expiry(self) -> None:
        if self.metrics is None:
            return
        now = self._clock()
        for record in self.engine.records:
            remaining = record.remaining(now)
            if remaining is not None:
                self.metrics.cert_expiry_seconds.labels(domain_set=record.key).set(remaining)

    # ------------------------------------------------------------------
    # Run modes
    # ------------------------------------------------------------------

    def run_once(self) -> bool:
        """Single pass. Returns True if any domain set failed."""
        return self.scheduler.run_once()

    def run_daemon(self) -> None:
        """Tick until stop() is called, serving the health API meanwhile."""
        if self.config.server.enable_health_api:
            self.start_health_server()
        try:
            self.scheduler.run_forever()
        finally:
            self.shutdown()

    def stop(self) -> None:
        """Request shutdown; the domain set being processed finishes first."""
        logger.info("shutdown_requested")
        self.scheduler.stop()

    def start_health_server(self) -> None:
        """Serve the health API from a daemon thread."""
        app = create_app(self.aggregator)
        server_config = uvicorn.Config(
            app,
            host=self.config.server.host,
            port=self.config.server.health_port,
            log_level="warning",
        )
        self._server = uvicorn.Server(server_config)
        self._server_thread = threading.Thread(
            target=self._server.run, name="health-api", daemon=True
        )
        self._server_thread.start()
        logger.info(
            "health_api_started",
            host=self.config.server.host,
            port=self.config.server.health_port,
        )

    def shutdown(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
            if self._server_thread is not None:
                self._server_thread.join(timeout=5)
            self._server = None
        if isinstance(self.ca_client, StepCAClient):
            self.ca_client.close()
        logger.info("agent_stopped")
