"""Filesystem certificate store.

Layout under the certificate directory:

    {name}.crt, {name}.key        live pair of a domain set
    ca.crt                         CA chain shared by all domain sets
    *.old                          backups written by commit, read by rollback
    .metadata/status.json          per-domain-set records
    .metadata/last_renewal.json    last non-skipped attempt per domain set

Every write goes to a temporary file in the same directory followed by
os.replace, so readers only ever see complete files.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Mapping, Optional

from cryptography import x509

from cert_agent.domain.entities.certificate import (
    CertificateRecord,
    CertificateStatus,
    DomainSet,
    StagedHandle,
)
from cert_agent.domain.entities.renewal import RenewalAttempt
from cert_agent.domain.errors import CommitError, RollbackError, StorageError
from cert_agent.domain.value_objects.identifiers import fingerprint_of

logger = logging.getLogger(__name__)

KEY_MODE = 0o600
CERT_MODE = 0o644
CHAIN_FILENAME = "ca.crt"
METADATA_DIRNAME = ".metadata"
STATUS_FILENAME = "status.json"
LAST_RENEWAL_FILENAME = "last_renewal.json"


def _backup_path(path: Path) -> Path:
    return path.with_name(path.name + ".old")


def _write_atomic(path: Path, data: bytes, mode: int) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except OSError:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _copy_atomic(src: Path, dst: Path, mode: int) -> None:
    _write_atomic(dst, src.read_bytes(), mode)


class FileCertificateStore:
    """Certificate store backed by a local directory."""

    def __init__(self, cert_dir: Path, dir_mode: int = 0o700):
        """Initialize store.

        Args:
            cert_dir: Directory holding live, staged and backup material.
            dir_mode: Mode applied to directories the store creates.
        """
        self.cert_dir = Path(cert_dir)
        self.dir_mode = dir_mode
        self.metadata_dir = self.cert_dir / METADATA_DIRNAME

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def cert_path(self, domain_set: DomainSet) -> Path:
        return self.cert_dir / f"{domain_set.key}.crt"

    def key_path(self, domain_set: DomainSet) -> Path:
        return self.cert_dir / f"{domain_set.key}.key"

    @property
    def chain_path(self) -> Path:
        return self.cert_dir / CHAIN_FILENAME

    def initialize(self) -> None:
        """Create the certificate and metadata directories."""
        try:
            for path in (self.cert_dir, self.metadata_dir):
                path.mkdir(parents=True, exist_ok=True)
                path.chmod(self.dir_mode)
        except OSError as e:
            raise StorageError(f"cannot prepare {self.cert_dir}: {e}") from e

    # ------------------------------------------------------------------
    # Live material
    # ------------------------------------------------------------------

    def load(self, domain_set: DomainSet) -> Optional[CertificateRecord]:
        cert_path = self.cert_path(domain_set)
        key_path = self.key_path(domain_set)
        if not cert_path.exists() or not key_path.exists():
            return None

        try:
            cert_bytes = cert_path.read_bytes()
        except OSError as e:
            raise StorageError(f"cannot read {cert_path}: {e}") from e

        record = CertificateRecord(
            domain_set=domain_set,
            cert_path=cert_path,
            key_path=key_path,
            ca_chain_path=self.chain_path,
            not_before=None,
            not_after=None,
            fingerprint=fingerprint_of(cert_bytes),
        )

        try:
            cert = x509.load_pem_x509_certificate(cert_bytes)
        except ValueError as e:
            logger.warning(f"Cannot parse {cert_path}: {e}")
            record.status = CertificateStatus.UNKNOWN
            return record

        record.not_before = cert.not_valid_before_utc
        record.not_after = cert.not_valid_after_utc
        record.serial = format(cert.serial_number, "x")
        return record

    def stage(
        self,
        domain_set: DomainSet,
        cert_bytes: bytes,
        key_bytes: bytes,
        chain_bytes: bytes,
    ) -> StagedHandle:
        staged: list[Path] = []
        try:
            for data, mode, suffix in (
                (key_bytes, KEY_MODE, ".key"),
                (cert_bytes, CERT_MODE, ".crt"),
                (chain_bytes, CERT_MODE, ".chain"),
            ):
                fd, tmp = tempfile.mkstemp(
                    dir=self.cert_dir, prefix=f".{domain_set.key}.", suffix=f"{suffix}.staged"
                )
                staged.append(Path(tmp))
                # mkstemp creates the file 0600; the key never exists with wider permissions
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp, mode)
        except OSError as e:
            for path in staged:
                path.unlink(missing_ok=True)
            raise StorageError(f"cannot stage material for {domain_set.key}: {e}") from e

        key, cert, chain = staged
        logger.debug(f"Staged new material for {domain_set.key}")
        return StagedHandle(
            domain_set=domain_set,
            staged_cert=cert,
            staged_key=key,
            staged_chain=chain,
            fingerprint=fingerprint_of(cert_bytes),
        )

    def commit(self, handle: StagedHandle) -> None:
        """Back up the live files, then swap in the staged ones.

        Raises:
            StorageError: Backups could not be written; live files untouched.
            CommitError: The swap failed part way.
        """
        domain_set = handle.domain_set
        live = [
            (self.key_path(domain_set), KEY_MODE),
            (self.cert_path(domain_set), CERT_MODE),
            (self.chain_path, CERT_MODE),
        ]

        try:
            for path, mode in live:
                backup = _backup_path(path)
                if path.exists():
                    _copy_atomic(path, backup, mode)
                elif path != self.chain_path:
                    # First issuance: a stale backup must not be restored later
                    backup.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"cannot back up live material for {domain_set.key}: {e}") from e

        try:
            os.replace(handle.staged_key, self.key_path(domain_set))
            os.replace(handle.staged_cert, self.cert_path(domain_set))
            os.replace(handle.staged_chain, self.chain_path)
        except OSError as e:
            raise CommitError(f"commit failed for {domain_set.key}: {e}") from e

        logger.info(f"Committed new material for {domain_set.key}")

    def discard(self, handle: StagedHandle) -> None:
        for path in (handle.staged_key, handle.staged_cert, handle.staged_chain):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Cannot remove staged file {path}: {e}")

    def rollback(self, domain_set: DomainSet) -> None:
        key_path = self.key_path(domain_set)
        cert_path = self.cert_path(domain_set)
        key_backup = _backup_path(key_path)
        cert_backup = _backup_path(cert_path)
        chain_backup = _backup_path(self.chain_path)

        if not key_backup.exists() or not cert_backup.exists():
            raise RollbackError(f"no backup to restore for {domain_set.key}")

        try:
            _copy_atomic(key_backup, key_path, KEY_MODE)
            _copy_atomic(cert_backup, cert_path, CERT_MODE)
            if chain_backup.exists():
                _copy_atomic(chain_backup, self.chain_path, CERT_MODE)
        except OSError as e:
            raise RollbackError(f"restore failed for {domain_set.key}: {e}") from e

        logger.warning(f"Restored previous material for {domain_set.key}")

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def _read_json(self, name: str) -> dict:
        path = self.metadata_dir / name
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise StorageError(f"cannot read {path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"{path} does not hold a JSON object")
        return data

    def _write_json(self, name: str, data: dict) -> None:
        try:
            self.metadata_dir.mkdir(parents=True, exist_ok=True)
            _write_atomic(
                self.metadata_dir / name,
                json.dumps(data, indent=2, sort_keys=True).encode(),
                CERT_MODE,
            )
        except OSError as e:
            raise StorageError(f"cannot write {name}: {e}") from e

    def read_status(self) -> dict[str, dict]:
        return self._read_json(STATUS_FILENAME)

    def write_status(
        self,
        records: Iterable[CertificateRecord],
        recorded_fingerprints: Mapping[str, str],
    ) -> None:
        status: dict[str, dict] = {}
        for record in records:
            status[record.key] = {
                "domains": list(record.domain_set.domains),
                "status": record.status.value,
                "fingerprint": record.fingerprint,
                "recorded_fingerprint": recorded_fingerprints.get(record.key),
                "serial": record.serial,
                "not_before": record.not_before.isoformat() if record.not_before else None,
                "not_after": record.not_after.isoformat() if record.not_after else None,
                "requires_intervention": record.requires_intervention,
                "last_error": record.last_error,
                "updated_at": record.updated_at.isoformat() if record.updated_at else None,
            }
        for key, fingerprint in recorded_fingerprints.items():
            status.setdefault(key, {"recorded_fingerprint": fingerprint})
        self._write_json(STATUS_FILENAME, status)

    def write_last_renewal(self, attempt: RenewalAttempt) -> None:
        try:
            history = self._read_json(LAST_RENEWAL_FILENAME)
        except StorageError as e:
            logger.warning(f"Replacing unreadable renewal history: {e}")
            history = {}
        history[attempt.domain_set] = attempt.to_dict()
        self._write_json(LAST_RENEWAL_FILENAME, history)

    def clear_intervention(self, name: str) -> bool:
        """Reset the operator-intervention flag of a domain set.

        Returns:
            True if the flag was set and has been cleared.
        """
        status = self.read_status()
        entry = status.get(name)
        if not entry or not entry.get("requires_intervention"):
            return False
        entry["requires_intervention"] = False
        entry["last_error"] = None
        self._write_json(STATUS_FILENAME, status)
        logger.info(f"Cleared intervention flag for {name}")
        return True
