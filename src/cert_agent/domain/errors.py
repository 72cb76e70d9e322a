"""Error taxonomy for the certificate agent.

CA errors split into transient (retried with bounded backoff inside one tick)
and permanent (surfaced immediately). Storage errors before commit leave the
live files untouched and are retried on the next tick. Reload and verification
errors trigger a rollback; a rollback error needs an operator.
"""

from __future__ import annotations


class CertAgentError(Exception):
    """Base class for all certificate agent errors."""


class ConfigurationError(CertAgentError, ValueError):
    """The agent was given configuration it cannot act on."""


# =============================================================================
# CA errors
# =============================================================================


class CAError(CertAgentError):
    """Issuance exchange with the CA failed."""

    retryable: bool = False


class TransientCAError(CAError):
    """CA failure that may succeed on a later attempt."""

    retryable = True


class PermanentCAError(CAError):
    """CA failure that will not resolve without operator action."""


class CAUnreachableError(TransientCAError):
    """Network-level failure talking to the CA."""


class RateLimitedError(TransientCAError):
    """The CA asked us to slow down."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class MalformedResponseError(TransientCAError):
    """The CA answered with something that violates the protocol."""


class AuthorizationFailedError(PermanentCAError):
    """The CA rejected the identifiers or the authorization token."""


class UntrustedServerError(PermanentCAError):
    """The CA root does not match the pinned fingerprint."""


# =============================================================================
# Storage errors
# =============================================================================


class StorageError(CertAgentError):
    """Reading or staging certificate material failed."""


class CommitError(StorageError):
    """Swapping staged material over the live files failed part way."""


class RollbackError(CertAgentError):
    """Restoring the previous material failed; no automatic recovery is possible."""


# =============================================================================
# Reload / verification errors
# =============================================================================


class ReloadError(CertAgentError):
    """The reload action did not complete successfully."""


class ReloadTimeoutError(ReloadError):
    """The reload command exceeded its timeout."""


class ReloadExitError(ReloadError):
    """The reload command exited with a non-zero status."""

    def __init__(self, code: int, stderr: str = "") -> None:
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"reload command exited with status {code}{detail}")
        self.code = code
        self.stderr = stderr


class ReloadSpawnError(ReloadError):
    """The reload command could not be started."""


class VerificationError(CertAgentError):
    """The live certificate does not match what was just committed."""
