"""Authorization strategies for the Step CA sign endpoint.

The sign endpoint needs a one-time token (OTT) that proves the requester may
obtain a certificate for the listed identifiers.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional, Sequence

from cert_agent.domain.errors import AuthorizationFailedError
from cert_agent.infrastructure.logging import get_logger

logger = get_logger(__name__)


class StaticTokenAuthorizer:
    """Returns a token supplied by the operator, inline or from a file.

    The token file is re-read on every call so an external process can rotate
    it between renewals.
    """

    def __init__(self, token: Optional[str] = None, token_file: Optional[Path] = None):
        self._token = token
        self._token_file = Path(token_file) if token_file else None

    def authorize(self, domains: Sequence[str], ca_url: str, root_path: Optional[str]) -> str:
        if self._token_file is not None:
            try:
                token = self._token_file.read_text().strip()
            except OSError as e:
                raise AuthorizationFailedError(f"cannot read token file: {e}") from e
            if token:
                return token
        if self._token:
            return self._token
        raise AuthorizationFailedError("no one-time token configured")


class StepCLIAuthorizer:
    """Mints a token with `step ca token` using a JWK provisioner."""

    def __init__(
        self,
        provisioner: str,
        password_file: Optional[Path],
        step_binary: str = "step",
        timeout: float = 30.0,
    ):
        self._provisioner = provisioner
        self._password_file = password_file
        self._step_binary = step_binary
        self._timeout = timeout

    def command(self, domains: Sequence[str], ca_url: str, root_path: Optional[str]) -> list[str]:
        """Build the `step ca token` argument vector."""
        cmd = [self._step_binary, "ca", "token", domains[0], "--ca-url", ca_url]
        if root_path:
            cmd += ["--root", root_path]
        cmd += ["--provisioner", self._provisioner]
        if self._password_file:
            cmd += ["--password-file", str(self._password_file)]
        for domain in domains:
            cmd += ["--san", domain]
        return cmd

    def authorize(self, domains: Sequence[str], ca_url: str, root_path: Optional[str]) -> str:
        cmd = self.command(domains, ca_url, root_path)
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self._timeout, check=False
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise AuthorizationFailedError(f"step ca token failed: {e}") from e

        if result.returncode != 0:
            logger.warning("step_token_failed", code=result.returncode, stderr=result.stderr.strip())
            raise AuthorizationFailedError(
                f"step ca token exited with status {result.returncode}: {result.stderr.strip()}"
            )

        token = result.stdout.strip()
        if not token:
            raise AuthorizationFailedError("step ca token returned an empty token")
        return token
