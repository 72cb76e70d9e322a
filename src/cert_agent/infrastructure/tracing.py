"""OpenTelemetry tracing for renewal ticks and cycles.

Spans:
    cert_agent.tick            one scheduler pass (CA probe + all domain sets)
    cert_agent.renewal_cycle   one domain set through the state machine

Without an OTLP endpoint the provider is still installed so span context is
available to log correlation, but nothing is exported.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Generator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode

TRACER_NAME = "cert_agent"

_tracer: trace.Tracer | None = None
_provider: TracerProvider | None = None


def setup_tracing(
    service_name: str = "cert_agent",
    otlp_endpoint: str | None = None,
    sample_ratio: float = 1.0,
) -> trace.Tracer:
    """Install a tracer provider for the agent.

    Args:
        service_name: `service.name` resource attribute.
        otlp_endpoint: OTLP gRPC collector; None disables export.
        sample_ratio: Fraction of root spans kept.
    """
    global _tracer, _provider
    from cert_agent import __version__

    resource = Resource.create({"service.name": service_name, "service.version": __version__})
    _provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(sample_ratio)))
    if otlp_endpoint:
        _provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
        )

    trace.set_tracer_provider(_provider)
    _tracer = trace.get_tracer(TRACER_NAME, __version__)
    return _tracer


def shutdown_tracing() -> None:
    """Flush pending spans; called when the agent stops."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None


def get_tracer() -> trace.Tracer:
    return _tracer or trace.get_tracer(TRACER_NAME)


@contextmanager
def trace_span(name: str, attributes: dict[str, Any] | None = None) -> Generator[trace.Span, None, None]:
    """Run a block inside a span; an escaping exception marks the span failed."""
    with get_tracer().start_as_current_span(name, record_exception=False) as span:
        for key, value in (attributes or {}).items():
            span.set_attribute(f"cert_agent.{key}", value)
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
