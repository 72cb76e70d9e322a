"""Step CA client.

Talks to a Smallstep CA over its HTTP API:

    GET  /root/{fingerprint}   root certificate, used once to bootstrap trust
    GET  /health               liveness
    POST /1.0/sign             CSR + one-time token -> signed certificate

The root is fetched without TLS verification and accepted only if the SHA-256
of its DER encoding equals the configured fingerprint. Every later request
verifies the server against that root alone.

References:
    - https://smallstep.com/docs/step-ca/
"""

from __future__ import annotations

import ipaddress
import ssl
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from cert_agent.domain.entities.certificate import IssuedCertificate
from cert_agent.domain.entities.health import CAHealth
from cert_agent.domain.errors import (
    AuthorizationFailedError,
    CAUnreachableError,
    CertAgentError,
    MalformedResponseError,
    RateLimitedError,
    UntrustedServerError,
)
from cert_agent.domain.value_objects.identifiers import (
    fingerprint_of,
    is_ip_address,
    normalize_fingerprint,
)
from cert_agent.infrastructure.logging import get_logger
from cert_agent.ports.outbound import AuthorizationStrategy

logger = get_logger(__name__)


def build_csr(
    domains: Sequence[str],
) -> tuple[ec.EllipticCurvePrivateKey, x509.CertificateSigningRequest]:
    """Generate an EC P-256 key and a CSR covering `domains`.

    The first domain becomes the subject common name; every domain is listed
    as a SAN in the given order.
    """
    key = ec.generate_private_key(ec.SECP256R1())

    sans: list[x509.GeneralName] = []
    for domain in domains:
        if is_ip_address(domain):
            sans.append(x509.IPAddress(ipaddress.ip_address(domain)))
        else:
            sans.append(x509.DNSName(domain))

    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
        .add_extension(x509.SubjectAlternativeName(sans), critical=False)
        .sign(key, hashes.SHA256())
    )
    return key, csr


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _raise_for_status(response: httpx.Response, action: str) -> None:
    """Map an HTTP error status onto the CA error taxonomy."""
    code = response.status_code
    if code < 400:
        return

    detail = response.text[:200].strip()
    if code == 429:
        raise RateLimitedError(f"{action}: rate limited by CA", retry_after=_retry_after(response))
    if code in (400, 401, 403):
        raise AuthorizationFailedError(f"{action}: CA rejected request ({code}): {detail}")
    if code >= 500:
        raise CAUnreachableError(f"{action}: CA server error ({code}): {detail}")
    raise MalformedResponseError(f"{action}: unexpected status {code}: {detail}")


def _json(response: httpx.Response, action: str) -> dict:
    try:
        body = response.json()
    except ValueError as e:
        raise MalformedResponseError(f"{action}: response is not JSON") from e
    if not isinstance(body, dict):
        raise MalformedResponseError(f"{action}: response is not a JSON object")
    return body


class StepCAClient:
    """CA client for Smallstep's step-ca."""

    def __init__(
        self,
        url: str,
        fingerprint: str,
        authorizer: AuthorizationStrategy,
        timeout: float = 30.0,
        root_path: Optional[Path] = None,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """Initialize client.

        Args:
            url: CA base URL.
            fingerprint: Pinned SHA-256 fingerprint of the CA root.
            authorizer: Source of one-time tokens.
            timeout: Per-request timeout in seconds.
            root_path: Where the verified root is written for other tools.
            transport: Optional httpx transport (tests inject a mock).
            clock: Time source for the requested notAfter.
        """
        self.url = url.rstrip("/")
        self.fingerprint = normalize_fingerprint(fingerprint)
        self._authorizer = authorizer
        self._timeout = timeout
        self._root_path = root_path
        self._transport = transport
        self._clock = clock

        self._root_pem: Optional[str] = None
        self._client: Optional[httpx.Client] = None

    # ------------------------------------------------------------------
    # Trust bootstrap
    # ------------------------------------------------------------------

    def _bootstrap(self) -> httpx.Client:
        """Fetch and pin the CA root, then build the verifying client."""
        if self._client is not None:
            return self._client

        if not self.fingerprint:
            raise UntrustedServerError("no CA root fingerprint configured")

        try:
            with httpx.Client(
                base_url=self.url, verify=False, timeout=self._timeout, transport=self._transport
            ) as bootstrap:
                response = bootstrap.get(f"/root/{self.fingerprint}")
        except httpx.HTTPError as e:
            raise CAUnreachableError(f"root fetch: {e}") from e

        _raise_for_status(response, "root fetch")
        root_pem = _json(response, "root fetch").get("ca")
        if not isinstance(root_pem, str):
            raise MalformedResponseError("root fetch: missing 'ca' field")

        try:
            root = x509.load_pem_x509_certificate(root_pem.encode())
        except ValueError as e:
            raise MalformedResponseError(f"root fetch: invalid certificate: {e}") from e

        actual = fingerprint_of(root.public_bytes(serialization.Encoding.DER))
        if actual != self.fingerprint:
            logger.error(
                "ca_root_fingerprint_mismatch",
                expected=self.fingerprint,
                actual=actual,
            )
            raise UntrustedServerError(
                f"CA root fingerprint {actual} does not match pinned {self.fingerprint}"
            )

        if self._root_path is not None:
            try:
                self._root_path.parent.mkdir(parents=True, exist_ok=True)
                self._root_path.write_text(root_pem)
            except OSError as e:
                logger.warning("ca_root_write_failed", path=str(self._root_path), error=str(e))

        try:
            context = ssl.create_default_context(cadata=root_pem)
        except ssl.SSLError as e:
            raise MalformedResponseError(f"root fetch: unusable root: {e}") from e
        self._root_pem = root_pem
        self._client = httpx.Client(
            base_url=self.url, verify=context, timeout=self._timeout, transport=self._transport
        )
        logger.info("ca_root_pinned", url=self.url, fingerprint=self.fingerprint[:16])
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # CAClient port
    # ------------------------------------------------------------------

    def probe(self) -> CAHealth:
        started = time.monotonic()
        checked_at = self._clock()
        try:
            client = self._bootstrap()
            response = client.get("/health")
            _raise_for_status(response, "health")
            body = _json(response, "health")
            if body.get("status") != "ok":
                raise MalformedResponseError(f"health: status {body.get('status')!r}")
        except (CertAgentError, httpx.HTTPError, OSError) as e:
            return CAHealth(reachable=False, checked_at=checked_at, error=str(e))

        return CAHealth(
            reachable=True,
            latency_seconds=time.monotonic() - started,
            checked_at=checked_at,
        )

    def request_certificate(
        self, domains: Sequence[str], validity: timedelta
    ) -> IssuedCertificate:
        if not domains:
            raise AuthorizationFailedError("no identifiers to request")

        client = self._bootstrap()
        key, csr = build_csr(domains)
        token = self._authorizer.authorize(
            domains, self.url, str(self._root_path) if self._root_path else None
        )

        not_after = self._clock() + validity
        payload = {
            "csr": csr.public_bytes(serialization.Encoding.PEM).decode(),
            "ott": token,
            "notAfter": not_after.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }

        try:
            response = client.post("/1.0/sign", json=payload)
        except httpx.HTTPError as e:
            raise CAUnreachableError(f"sign: {e}") from e

        _raise_for_status(response, "sign")
        body = _json(response, "sign")
        return self._parse_signed(body, key, domains)

    def _parse_signed(
        self,
        body: dict,
        key: ec.EllipticCurvePrivateKey,
        domains: Sequence[str],
    ) -> IssuedCertificate:
        crt = body.get("crt")
        if not isinstance(crt, str):
            raise MalformedResponseError("sign: missing 'crt' field")

        chain = body.get("certChain") or []
        if isinstance(chain, list) and len(chain) > 1 and all(isinstance(c, str) for c in chain):
            chain_pem = "".join(c if c.endswith("\n") else c + "\n" for c in chain[1:])
        elif isinstance(body.get("ca"), str):
            chain_pem = body["ca"]
        else:
            raise MalformedResponseError("sign: missing CA chain")

        try:
            cert = x509.load_pem_x509_certificate(crt.encode())
        except ValueError as e:
            raise MalformedResponseError(f"sign: invalid certificate: {e}") from e

        issued_key = cert.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        our_key = key.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        if issued_key != our_key:
            raise MalformedResponseError("sign: certificate does not match the generated key")

        key_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )

        logger.info(
            "certificate_issued",
            domains=list(domains),
            serial=format(cert.serial_number, "x"),
            not_after=cert.not_valid_after_utc.isoformat(),
        )
        return IssuedCertificate(
            certificate_pem=crt.encode() if crt.endswith("\n") else (crt + "\n").encode(),
            private_key_pem=key_pem,
            chain_pem=chain_pem.encode(),
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            serial=format(cert.serial_number, "x"),
        )
