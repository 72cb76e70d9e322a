"""Configuration management for the certificate agent."""

from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cert_agent.domain.value_objects.identifiers import validate_domain

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class CAConfig(BaseModel):
    """Step CA endpoint configuration."""

    url: str = Field(default="https://step-ca:9000", description="CA base URL")
    fingerprint: str = Field(default="", description="SHA-256 fingerprint of the CA root")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout")
    max_attempts: int = Field(default=3, ge=1, le=10, description="Issuance attempts per tick")
    backoff_base_seconds: float = Field(default=1.0, ge=0, description="First retry delay")
    backoff_max_seconds: float = Field(default=30.0, ge=0, description="Retry delay cap")
    authorization: Literal["token", "step-cli"] = Field(
        default="token", description="How one-time tokens are obtained"
    )
    token: str | None = Field(default=None, description="Static one-time token")
    token_file: Path | None = Field(default=None, description="File holding a one-time token")
    provisioner: str = Field(default="admin", description="Provisioner name for step-cli tokens")
    password_file: Path | None = Field(default=None, description="Provisioner password file")
    step_binary: str = Field(default="step", description="Path to the step CLI")

    @field_validator("fingerprint")
    @classmethod
    def normalize_fingerprint(cls, value: str) -> str:
        return value.replace(":", "").strip().lower()


class StorageConfig(BaseModel):
    """Certificate storage configuration."""

    cert_dir: Path = Field(default=Path("/certs"), description="Certificate directory")
    dir_mode: int = Field(default=0o700, description="Mode applied to the certificate directory")


class RenewalConfig(BaseModel):
    """Default renewal policy shared by all domain sets."""

    renewal_threshold_days: float = Field(default=5, gt=0, description="Renew when this close to expiry")
    validity_days: float = Field(default=15, gt=0, description="Requested certificate validity")
    check_interval_seconds: int = Field(default=86400, ge=1, description="Daemon tick interval")


class ReloadConfig(BaseModel):
    """Reload action configuration."""

    command: str = Field(default="", description="Command that makes the service pick up new material")
    service_name: str = Field(default="cert-agent", description="Service label used in messages")
    timeout_seconds: float = Field(default=60.0, gt=0, description="Reload command timeout")


class DomainSetConfig(BaseModel):
    """One certificate and the names it covers."""

    name: str
    domains: list[str] = Field(min_length=1)
    renewal_threshold_days: float | None = Field(default=None, gt=0)
    validity_days: float | None = Field(default=None, gt=0)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not _NAME_PATTERN.match(value) or value in ("ca", ".metadata"):
            raise ValueError(f"invalid domain set name: {value!r}")
        return value

    @field_validator("domains")
    @classmethod
    def strip_domains(cls, value: list[str]) -> list[str]:
        domains = [d.strip() for d in value if d.strip()]
        if not domains:
            raise ValueError("domain set must contain at least one domain")
        return [validate_domain(d) for d in domains]


class NotificationConfig(BaseModel):
    """Outbound notification targets."""

    slack_webhook_url: str | None = Field(default=None, description="Slack incoming webhook")
    webhook_url: str | None = Field(default=None, description="Generic JSON webhook")
    timeout_seconds: float = Field(default=10.0, gt=0)


class ServerConfig(BaseModel):
    """Health API and metrics server configuration."""

    host: str = Field(default="0.0.0.0", description="Health API bind address")
    health_port: int = Field(default=8080, ge=1, le=65535, description="Health API port")
    metrics_port: int = Field(default=9102, ge=1, le=65535, description="Prometheus metrics port")
    enable_health_api: bool = Field(default=True)
    enable_metrics: bool = Field(default=True)


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level"
    )
    log_format: Literal["json", "console"] = Field(default="json", description="Log format")
    otel_endpoint: str | None = Field(
        default=None, description="OpenTelemetry collector endpoint"
    )
    otel_service_name: str = Field(default="cert_agent", description="Service name for tracing")
    otel_sample_ratio: float = Field(default=1.0, ge=0, le=1, description="Fraction of traces kept")


class Config(BaseSettings):
    """Main configuration for the certificate agent."""

    model_config = SettingsConfigDict(
        env_prefix="CERT_AGENT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    ca: CAConfig = Field(default_factory=CAConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    renewal: RenewalConfig = Field(default_factory=RenewalConfig)
    reload: ReloadConfig = Field(default_factory=ReloadConfig)
    domain_sets: list[DomainSetConfig] = Field(default_factory=list)
    server_ip: str | None = Field(
        default=None, description="Single-service shorthand when no domain sets are given"
    )
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @model_validator(mode="after")
    def resolve_domain_sets(self) -> "Config":
        if not self.domain_sets and self.server_ip:
            self.domain_sets = [
                DomainSetConfig(
                    name=self.reload.service_name,
                    domains=[self.server_ip, "localhost", "127.0.0.1"],
                )
            ]

        names = [ds.name for ds in self.domain_sets]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"duplicate domain set names: {sorted(duplicates)}")

        for ds in self.domain_sets:
            threshold = ds.renewal_threshold_days or self.renewal.renewal_threshold_days
            validity = ds.validity_days or self.renewal.validity_days
            if threshold >= validity:
                raise ValueError(
                    f"domain set {ds.name!r}: renewal threshold ({threshold}d) "
                    f"must be smaller than validity ({validity}d)"
                )
        return self


@lru_cache
def get_config() -> Config:
    """Get the global configuration instance."""
    return Config()
