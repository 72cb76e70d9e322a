"""Prometheus metrics for the certificate agent."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
    REGISTRY,
    CollectorRegistry,
)


class CertAgentMetrics:
    """Registry of all certificate agent metrics."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize metrics registry."""
        self._registry = registry or REGISTRY

        # Lifecycle metrics
        self.renewals_total = Counter(
            "cert_agent_renewals_total",
            "Renewal cycles by outcome",
            ["domain_set", "outcome"],  # renewed, failed
            registry=self._registry,
        )

        self.rollbacks_total = Counter(
            "cert_agent_rollbacks_total",
            "Rollbacks performed after a deploy, reload or verify fault",
            ["domain_set"],
            registry=self._registry,
        )

        self.renewal_duration_seconds = Histogram(
            "cert_agent_renewal_duration_seconds",
            "Duration of non-skipped renewal cycles",
            buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120),
            registry=self._registry,
        )

        # Certificate metrics
        self.cert_expiry_seconds = Gauge(
            "cert_agent_cert_expiry_seconds",
            "Seconds until certificate expiry",
            ["domain_set"],
            registry=self._registry,
        )

        # CA metrics
        self.ca_reachable = Gauge(
            "cert_agent_ca_reachable",
            "1 when the last CA probe succeeded",
            registry=self._registry,
        )

        self.ca_probe_latency_seconds = Gauge(
            "cert_agent_ca_probe_latency_seconds",
            "Latency of the last CA health probe",
            registry=self._registry,
        )

        self.info = Info("cert_agent", "Certificate agent information", registry=self._registry)


_metrics: CertAgentMetrics | None = None


def setup_metrics(port: int = 9102, registry: CollectorRegistry | None = None) -> CertAgentMetrics:
    """Set up Prometheus metrics and expose them over HTTP."""
    global _metrics
    _metrics = CertAgentMetrics(registry)
    from cert_agent import __version__
    _metrics.info.info({"version": __version__})
    start_http_server(port, registry=registry or REGISTRY)
    return _metrics


def get_metrics() -> CertAgentMetrics:
    """Get the metrics registry."""
    global _metrics
    if _metrics is None:
        _metrics = CertAgentMetrics()
    return _metrics
