"""Unit tests for the Step CA client (HTTP mocked with httpx.MockTransport)."""

import ipaddress
import json
from datetime import timedelta

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from conftest import NOW, FakeClock, StepCAStub
from cert_agent.adapters.outbound.authorizers import StaticTokenAuthorizer, StepCLIAuthorizer
from cert_agent.adapters.outbound.step_ca_client import StepCAClient, build_csr
from cert_agent.domain.errors import (
    AuthorizationFailedError,
    CAUnreachableError,
    MalformedResponseError,
    RateLimitedError,
    UntrustedServerError,
)


def make_client(stub, fingerprint, tmp_path=None) -> StepCAClient:
    return StepCAClient(
        url="https://ca.test:9000",
        fingerprint=fingerprint,
        authorizer=StaticTokenAuthorizer(token="ott-123"),
        root_path=(tmp_path / "root_ca.crt") if tmp_path else None,
        transport=httpx.MockTransport(stub),
        clock=FakeClock(),
    )


@pytest.mark.unit
class TestBuildCSR:
    """Test key and CSR generation."""

    def test_san_order_and_types(self):
        key, csr = build_csr(["web.internal", "10.0.0.5", "localhost"])

        assert isinstance(key.curve, ec.SECP256R1)
        cn = csr.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)[0].value
        assert cn == "web.internal"
        sans = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert list(sans) == [
            x509.DNSName("web.internal"),
            x509.IPAddress(ipaddress.ip_address("10.0.0.5")),
            x509.DNSName("localhost"),
        ]
        assert csr.is_signature_valid


@pytest.mark.unit
class TestTrustPinning:
    """The CA root must match the pinned fingerprint."""

    def test_fingerprint_mismatch_is_untrusted(self, mini_ca):
        client = make_client(StepCAStub(mini_ca), "00" * 32)
        with pytest.raises(UntrustedServerError):
            client.request_certificate(["web.internal"], timedelta(days=15))

    def test_mismatch_never_sends_csr(self, mini_ca):
        stub = StepCAStub(mini_ca)
        client = make_client(stub, "00" * 32)
        with pytest.raises(UntrustedServerError):
            client.request_certificate(["web.internal"], timedelta(days=15))
        assert all(r.url.path != "/1.0/sign" for r in stub.requests)

    def test_missing_fingerprint_is_untrusted(self, mini_ca):
        client = make_client(StepCAStub(mini_ca), "")
        with pytest.raises(UntrustedServerError):
            client.request_certificate(["web.internal"], timedelta(days=15))

    def test_colon_formatted_fingerprint_accepted(self, mini_ca, tmp_path):
        fp = mini_ca.root_fingerprint.upper()
        colons = ":".join(fp[i:i + 2] for i in range(0, len(fp), 2))
        client = make_client(StepCAStub(mini_ca), colons, tmp_path)

        assert client.probe().reachable is True
        assert (tmp_path / "root_ca.crt").read_text() == mini_ca.root_pem

    def test_root_fetched_once(self, mini_ca):
        stub = StepCAStub(mini_ca)
        client = make_client(stub, mini_ca.root_fingerprint)
        client.probe()
        client.probe()
        assert sum(r.url.path.startswith("/root/") for r in stub.requests) == 1


@pytest.mark.unit
class TestIssuance:
    """Test the sign exchange."""

    def test_issue_success(self, mini_ca):
        stub = StepCAStub(mini_ca)
        client = make_client(stub, mini_ca.root_fingerprint)

        issued = client.request_certificate(["web.internal", "10.0.0.5"], timedelta(days=15))

        cert = x509.load_pem_x509_certificate(issued.certificate_pem)
        key = serialization.load_pem_private_key(issued.private_key_pem, password=None)
        assert cert.public_key().public_numbers() == key.public_key().public_numbers()
        assert issued.not_after == NOW + timedelta(days=15)
        assert issued.chain_pem.decode().strip() == mini_ca.root_pem.strip()

        sign = [r for r in stub.requests if r.url.path == "/1.0/sign"][0]
        body = json.loads(sign.content)
        assert body["ott"] == "ott-123"
        assert body["notAfter"] == "2026-03-16T12:00:00Z"

    def test_key_mismatch_is_malformed(self, mini_ca):
        stub = StepCAStub(mini_ca)
        stub.signed_with_other_key = True
        client = make_client(stub, mini_ca.root_fingerprint)
        with pytest.raises(MalformedResponseError):
            client.request_certificate(["web.internal"], timedelta(days=15))

    @pytest.mark.parametrize(
        "response,error",
        [
            (httpx.Response(401, json={"message": "unauthorized"}), AuthorizationFailedError),
            (httpx.Response(403, text="forbidden"), AuthorizationFailedError),
            (httpx.Response(400, json={"message": "bad csr"}), AuthorizationFailedError),
            (httpx.Response(503, text="unavailable"), CAUnreachableError),
            (httpx.Response(200, text="<html>"), MalformedResponseError),
            (httpx.Response(200, json={"ca": "x"}), MalformedResponseError),
            (httpx.Response(404, text="nope"), MalformedResponseError),
        ],
    )
    def test_error_mapping(self, mini_ca, response, error):
        stub = StepCAStub(mini_ca)
        stub.sign_response = response
        client = make_client(stub, mini_ca.root_fingerprint)
        with pytest.raises(error):
            client.request_certificate(["web.internal"], timedelta(days=15))

    def test_rate_limit_carries_retry_after(self, mini_ca):
        stub = StepCAStub(mini_ca)
        stub.sign_response = httpx.Response(429, headers={"Retry-After": "7"}, text="slow down")
        client = make_client(stub, mini_ca.root_fingerprint)
        with pytest.raises(RateLimitedError) as exc:
            client.request_certificate(["web.internal"], timedelta(days=15))
        assert exc.value.retry_after == 7.0
        assert exc.value.retryable is True

    def test_connection_error_is_unreachable(self, mini_ca):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(refuse, mini_ca.root_fingerprint)
        with pytest.raises(CAUnreachableError):
            client.request_certificate(["web.internal"], timedelta(days=15))


@pytest.mark.unit
class TestProbe:
    """probe() never raises."""

    def test_probe_reachable(self, mini_ca):
        health = make_client(StepCAStub(mini_ca), mini_ca.root_fingerprint).probe()
        assert health.reachable is True
        assert health.latency_seconds is not None
        assert health.checked_at == NOW

    def test_probe_unreachable(self, mini_ca):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        health = make_client(refuse, mini_ca.root_fingerprint).probe()
        assert health.reachable is False
        assert "refused" in health.error

    def test_probe_untrusted(self, mini_ca):
        health = make_client(StepCAStub(mini_ca), "00" * 32).probe()
        assert health.reachable is False


@pytest.mark.unit
class TestAuthorizers:
    """Test one-time token strategies."""

    def test_static_token(self):
        assert StaticTokenAuthorizer(token="abc").authorize(["a"], "https://ca", None) == "abc"

    def test_token_file_preferred(self, tmp_path):
        path = tmp_path / "token"
        path.write_text("from-file\n")
        authorizer = StaticTokenAuthorizer(token="inline", token_file=path)
        assert authorizer.authorize(["a"], "https://ca", None) == "from-file"

    def test_no_token_fails(self):
        with pytest.raises(AuthorizationFailedError):
            StaticTokenAuthorizer().authorize(["a"], "https://ca", None)

    def test_step_cli_command(self, tmp_path):
        authorizer = StepCLIAuthorizer("admin", tmp_path / "pw", step_binary="/usr/bin/step")
        cmd = authorizer.command(["web.internal", "10.0.0.5"], "https://ca:9000", "/certs/root.crt")
        assert cmd[:4] == ["/usr/bin/step", "ca", "token", "web.internal"]
        assert cmd[cmd.index("--provisioner") + 1] == "admin"
        assert cmd[cmd.index("--root") + 1] == "/certs/root.crt"
        assert [cmd[i + 1] for i, a in enumerate(cmd) if a == "--san"] == ["web.internal", "10.0.0.5"]

    def test_step_cli_missing_binary(self, tmp_path):
        authorizer = StepCLIAuthorizer("admin", None, step_binary=str(tmp_path / "no-such-step"))
        with pytest.raises(AuthorizationFailedError):
            authorizer.authorize(["a"], "https://ca", None)
