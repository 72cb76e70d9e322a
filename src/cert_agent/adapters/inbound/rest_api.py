"""FastAPI REST adapter for the certificate agent.

Serves the health query interface. Handlers only read the last published
snapshot, so they never wait on a renewal in progress.

Usage:
    from cert_agent.adapters.inbound.rest_api import create_app

    app = create_app(aggregator)
    # Run with: uvicorn module:app --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Response, status
from pydantic import BaseModel

from cert_agent import __version__
from cert_agent.domain.entities.health import HealthStatus
from cert_agent.ports.inbound import HealthQueryPort


class CertificateModel(BaseModel):
    """One domain set's certificate."""

    domain_set: str
    domains: list[str]
    status: str
    not_before: Optional[str] = None
    not_after: Optional[str] = None
    fingerprint: Optional[str] = None
    requires_intervention: bool = False
    last_error: Optional[str] = None


class CountsModel(BaseModel):
    """Certificates per status category."""

    total: int
    valid: int
    expiring_soon: int
    expired: int
    failed: int
    unknown: int


class CAHealthModel(BaseModel):
    """Last CA probe."""

    reachable: bool
    latency_seconds: Optional[float] = None
    checked_at: Optional[str] = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    """Full health snapshot."""

    status: str
    version: str
    uptime_seconds: float
    generated_at: str
    counts: CountsModel
    ca: CAHealthModel
    certificates: list[CertificateModel]


class CertificateListResponse(BaseModel):
    """Per-domain-set certificate summaries."""

    certificates: list[CertificateModel]
    total: int


class LivenessResponse(BaseModel):
    """Process liveness."""

    status: str
    version: str


def create_app(health: HealthQueryPort) -> FastAPI:
    """Create FastAPI application serving the health query interface.

    Args:
        health: Source of health snapshots (the HealthAggregator).

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Certificate Agent API",
        description="Health of certificates managed by the renewal agent",
        version=__version__,
    )

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    def get_health(response: Response):
        """Overall health; 503 when unhealthy."""
        snapshot = health.refresh()
        if snapshot.status == HealthStatus.UNHEALTHY:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(**snapshot.to_dict())

    @app.get("/certificates", response_model=CertificateListResponse, tags=["Certificates"])
    def list_certificates():
        """Per-domain-set certificate status."""
        certificates = health.snapshot().to_dict()["certificates"]
        return CertificateListResponse(
            certificates=[CertificateModel(**c) for c in certificates],
            total=len(certificates),
        )

    @app.get("/livez", response_model=LivenessResponse, tags=["System"])
    def liveness():
        """The process is up and serving requests."""
        return LivenessResponse(status="ok", version=__version__)

    return app
