"""Pytest configuration and shared fixtures for certificate agent tests."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Sequence

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from cert_agent.adapters.outbound.file_certificate_store import FileCertificateStore
from cert_agent.domain.entities.certificate import DomainSet, IssuedCertificate
from cert_agent.domain.entities.health import CAHealth
from cert_agent.domain.entities.policy import ReloadSpec, RenewalPolicy
from cert_agent.domain.services.health_aggregator import HealthAggregator
from cert_agent.domain.services.lifecycle import LifecycleEngine
from cert_agent.domain.services.notification_dispatcher import NotificationDispatcher
from cert_agent.domain.value_objects.identifiers import DomainSetKey, fingerprint_of
from cert_agent.infrastructure.config import Config

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Helpers
# =============================================================================


def pem_key(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


class MiniCA:
    """Self-signed root that issues leaf certificates for tests."""

    def __init__(self) -> None:
        self.key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Root CA")])
        self.root = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(NOW - timedelta(days=365))
            .not_valid_after(NOW + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.key, hashes.SHA256())
        )

    @property
    def root_pem(self) -> str:
        return self.root.public_bytes(serialization.Encoding.PEM).decode()

    @property
    def root_fingerprint(self) -> str:
        return fingerprint_of(self.root.public_bytes(serialization.Encoding.DER))

    def sign(
        self,
        public_key,
        common_name: str,
        not_before: datetime,
        not_after: datetime,
    ) -> x509.Certificate:
        return (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .issuer_name(self.root.subject)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .sign(self.key, hashes.SHA256())
        )

    def issue(
        self,
        common_name: str,
        not_before: datetime,
        not_after: datetime,
    ) -> tuple[bytes, bytes]:
        """Issue a leaf with a fresh key; returns (cert_pem, key_pem)."""
        key = ec.generate_private_key(ec.SECP256R1())
        cert = self.sign(key.public_key(), common_name, not_before, not_after)
        return cert.public_bytes(serialization.Encoding.PEM), pem_key(key)


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class FakeCAClient:
    """CA client that issues from a MiniCA, or raises queued errors first."""

    def __init__(self, ca: MiniCA, clock: FakeClock) -> None:
        self.ca = ca
        self.clock = clock
        self.errors: list[Exception] = []
        self.requests: list[tuple[tuple[str, ...], timedelta]] = []
        self.reachable = True

    def probe(self) -> CAHealth:
        return CAHealth(
            reachable=self.reachable,
            latency_seconds=0.01 if self.reachable else None,
            checked_at=self.clock(),
            error=None if self.reachable else "connection refused",
        )

    def request_certificate(self, domains: Sequence[str], validity: timedelta) -> IssuedCertificate:
        self.requests.append((tuple(domains), validity))
        if self.errors:
            raise self.errors.pop(0)
        now = self.clock()
        cert_pem, key_pem = self.ca.issue(domains[0], now - timedelta(minutes=1), now + validity)
        cert = x509.load_pem_x509_certificate(cert_pem)
        return IssuedCertificate(
            certificate_pem=cert_pem,
            private_key_pem=key_pem,
            chain_pem=self.ca.root_pem.encode(),
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            serial=format(cert.serial_number, "x"),
        )


class FakeReloadExecutor:
    """Records reload calls; raises queued errors or runs queued side effects."""

    def __init__(self) -> None:
        self.calls: list[ReloadSpec] = []
        self.outcomes: list = []

    def execute(self, spec: ReloadSpec) -> None:
        self.calls.append(spec)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            if callable(outcome):
                outcome()


class RecordingSink:
    """Notification sink that keeps everything it receives."""

    def __init__(self) -> None:
        self.events: list = []
        self.texts: list[str] = []

    def send(self, event, text: str) -> None:
        self.events.append(event)
        self.texts.append(text)

    def kinds(self) -> list:
        return [e.kind for e in self.events]


class StepCAStub:
    """Minimal step-ca HTTP API backed by a MiniCA."""

    def __init__(self, mini_ca, root_pem=None, now=NOW):
        self.mini_ca = mini_ca
        self.now = now
        self.root_pem = root_pem or mini_ca.root_pem
        self.sign_response = None
        self.requests: list[httpx.Request] = []
        self.signed_with_other_key = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith("/root/"):
            return httpx.Response(200, json={"ca": self.root_pem})
        if path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        if path == "/1.0/sign":
            if self.sign_response is not None:
                return self.sign_response
            body = json.loads(request.content)
            csr = x509.load_pem_x509_csr(body["csr"].encode())
            public_key = csr.public_key()
            if self.signed_with_other_key:
                public_key = ec.generate_private_key(ec.SECP256R1()).public_key()
            cn = csr.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)[0].value
            cert = self.mini_ca.sign(
                public_key, cn, self.now - timedelta(minutes=1), self.now + timedelta(days=15)
            )
            crt = cert.public_bytes(serialization.Encoding.PEM).decode()
            return httpx.Response(
                200, json={"crt": crt, "ca": self.root_pem, "certChain": [crt, self.root_pem]}
            )
        return httpx.Response(404, json={"message": "not found"})


class EngineHarness:
    """Lifecycle engine wired to fakes over a real file store."""

    def __init__(
        self,
        cert_dir: Path,
        ca: MiniCA,
        threshold_days: float = 5,
        validity_days: float = 15,
    ) -> None:
        self.clock = FakeClock()
        self.ca = ca
        self.store = FileCertificateStore(cert_dir)
        self.store.initialize()
        self.ca_client = FakeCAClient(ca, self.clock)
        self.reloader = FakeReloadExecutor()
        self.sink = RecordingSink()
        self.sleeps: list[float] = []
        self.dispatcher = NotificationDispatcher([self.sink], service_name="web")
        self.aggregator = HealthAggregator(version="test", clock=self.clock)
        self.policy = RenewalPolicy(
            renewal_threshold_days=threshold_days,
            requested_validity=timedelta(days=validity_days),
            check_interval=timedelta(hours=1),
        )
        self.engine = self.build_engine()

    def build_engine(self) -> LifecycleEngine:
        return LifecycleEngine(
            store=self.store,
            ca_client=self.ca_client,
            reload_executor=self.reloader,
            reload_spec=ReloadSpec(command="systemctl reload web", service_name="web"),
            default_policy=self.policy,
            dispatcher=self.dispatcher,
            aggregator=self.aggregator,
            clock=self.clock,
            sleep=self.sleeps.append,
        )

    def install(
        self,
        domain_set: DomainSet,
        remaining: timedelta,
        chain: bool = True,
    ) -> tuple[bytes, bytes]:
        """Write a live pair expiring `remaining` from now; returns (cert, key)."""
        now = self.clock()
        cert_pem, key_pem = self.ca.issue(domain_set.common_name, now - timedelta(days=10), now + remaining)
        self.store.key_path(domain_set).write_bytes(key_pem)
        self.store.cert_path(domain_set).write_bytes(cert_pem)
        if chain:
            self.store.chain_path.write_bytes(self.ca.root_pem.encode())
        return cert_pem, key_pem


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def mini_ca() -> MiniCA:
    """Provide a test certificate authority."""
    return MiniCA()


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a certificate directory."""
    path = tmp_path / "certs"
    path.mkdir()
    return path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def domain_set() -> DomainSet:
    """Provide a domain set with a hostname and an IP literal."""
    return DomainSet(name=DomainSetKey("web"), domains=("web.internal", "10.0.0.5", "localhost"))


@pytest.fixture
def store(temp_dir: Path) -> FileCertificateStore:
    """Provide an initialized file store."""
    s = FileCertificateStore(temp_dir)
    s.initialize()
    return s


@pytest.fixture
def harness(temp_dir: Path, mini_ca: MiniCA) -> EngineHarness:
    """Provide an engine with default policy (5 day threshold, 15 day validity)."""
    return EngineHarness(temp_dir, mini_ca)


@pytest.fixture
def test_config(temp_dir: Path) -> Config:
    """Provide a test configuration."""
    return Config(
        storage={"cert_dir": temp_dir},
        domain_sets=[{"name": "web", "domains": ["web.internal", "10.0.0.5"]}],
        server={"enable_metrics": False, "enable_health_api": False},
    )


# Pytest markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
