"""Infrastructure layer - cross-cutting concerns."""

from cert_agent.infrastructure.config import Config, get_config
from cert_agent.infrastructure.logging import setup_logging, get_logger
from cert_agent.infrastructure.metrics import setup_metrics, get_metrics, CertAgentMetrics
from cert_agent.infrastructure.tracing import setup_tracing, shutdown_tracing, get_tracer, trace_span

__all__ = [
    "Config",
    "get_config",
    "setup_logging",
    "get_logger",
    "setup_metrics",
    "get_metrics",
    "CertAgentMetrics",
    "setup_tracing",
    "shutdown_tracing",
    "get_tracer",
    "trace_span",
]
