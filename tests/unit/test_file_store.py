"""Unit tests for the filesystem certificate store."""

import os
from datetime import timedelta

import pytest

from conftest import NOW
from cert_agent.domain.entities.certificate import CertificateStatus
from cert_agent.domain.entities.renewal import RenewalAttempt, RenewalOutcome
from cert_agent.domain.errors import CommitError, RollbackError, StorageError
from cert_agent.domain.value_objects.identifiers import DomainSetKey, fingerprint_of


def mode(path) -> int:
    return path.stat().st_mode & 0o777


def install(store, domain_set, mini_ca, days=10):
    cert, key = mini_ca.issue(domain_set.common_name, NOW - timedelta(days=1), NOW + timedelta(days=days))
    store.key_path(domain_set).write_bytes(key)
    store.cert_path(domain_set).write_bytes(cert)
    store.chain_path.write_bytes(mini_ca.root_pem.encode())
    return cert, key


@pytest.mark.unit
class TestLoad:
    """Test reading live material."""

    def test_missing_pair_is_none(self, store, domain_set):
        assert store.load(domain_set) is None

    def test_missing_key_is_none(self, store, domain_set, mini_ca):
        install(store, domain_set, mini_ca)
        store.key_path(domain_set).unlink()
        assert store.load(domain_set) is None

    def test_parses_window_and_fingerprint(self, store, domain_set, mini_ca):
        cert, _ = install(store, domain_set, mini_ca, days=10)

        record = store.load(domain_set)

        assert record.not_after == NOW + timedelta(days=10)
        assert record.not_before == NOW - timedelta(days=1)
        assert record.not_after.tzinfo is not None
        assert record.fingerprint == fingerprint_of(cert)
        assert record.cert_path == store.cert_path(domain_set)
        assert record.serial

    def test_unparsable_certificate_has_no_window(self, store, domain_set, mini_ca):
        install(store, domain_set, mini_ca)
        store.cert_path(domain_set).write_bytes(b"garbage")

        record = store.load(domain_set)

        assert record.status == CertificateStatus.UNKNOWN
        assert record.not_after is None
        assert record.fingerprint == fingerprint_of(b"garbage")


@pytest.mark.unit
class TestStageCommit:
    """Test staging and the atomic swap."""

    def test_stage_permissions(self, store, domain_set):
        handle = store.stage(domain_set, b"cert", b"key", b"chain")

        assert mode(handle.staged_key) == 0o600
        assert mode(handle.staged_cert) == 0o644
        assert mode(handle.staged_chain) == 0o644
        assert handle.staged_key.parent == store.cert_dir
        assert handle.fingerprint == fingerprint_of(b"cert")

    def test_stage_does_not_touch_live(self, store, domain_set, mini_ca):
        cert, key = install(store, domain_set, mini_ca)

        store.stage(domain_set, b"new-cert", b"new-key", b"new-chain")

        assert store.cert_path(domain_set).read_bytes() == cert
        assert store.key_path(domain_set).read_bytes() == key

    def test_stage_failure_raises_storage_error(self, store, domain_set, monkeypatch):
        def boom(*args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr("cert_agent.adapters.outbound.file_certificate_store.tempfile.mkstemp", boom)
        with pytest.raises(StorageError):
            store.stage(domain_set, b"c", b"k", b"ch")

    def test_commit_swaps_and_backs_up(self, store, domain_set, mini_ca):
        cert, key = install(store, domain_set, mini_ca)
        chain = store.chain_path.read_bytes()

        handle = store.stage(domain_set, b"new-cert", b"new-key", b"new-chain")
        store.commit(handle)

        assert store.cert_path(domain_set).read_bytes() == b"new-cert"
        assert store.key_path(domain_set).read_bytes() == b"new-key"
        assert store.chain_path.read_bytes() == b"new-chain"
        assert mode(store.key_path(domain_set)) == 0o600
        assert (store.cert_dir / "web.crt.old").read_bytes() == cert
        assert (store.cert_dir / "web.key.old").read_bytes() == key
        assert (store.cert_dir / "ca.crt.old").read_bytes() == chain
        assert not handle.staged_cert.exists()

    def test_commit_failure_raises_commit_error(self, store, domain_set, mini_ca, monkeypatch):
        install(store, domain_set, mini_ca)
        handle = store.stage(domain_set, b"c", b"k", b"ch")
        real_replace = os.replace

        def flaky_replace(src, dst):
            if str(dst).endswith("web.crt"):
                raise OSError("disk went away")
            return real_replace(src, dst)

        monkeypatch.setattr("cert_agent.adapters.outbound.file_certificate_store.os.replace", flaky_replace)
        with pytest.raises(CommitError):
            store.commit(handle)

    def test_discard_removes_staged(self, store, domain_set):
        handle = store.stage(domain_set, b"c", b"k", b"ch")
        store.discard(handle)
        assert not handle.staged_cert.exists()
        assert not handle.staged_key.exists()
        assert not handle.staged_chain.exists()

    def test_first_commit_drops_stale_backup(self, store, domain_set):
        (store.cert_dir / "web.key.old").write_bytes(b"stale")
        (store.cert_dir / "web.crt.old").write_bytes(b"stale")

        store.commit(store.stage(domain_set, b"c", b"k", b"ch"))

        with pytest.raises(RollbackError):
            store.rollback(domain_set)


@pytest.mark.unit
class TestRollback:
    """Test restoring backups."""

    def test_rollback_restores_byte_identical(self, store, domain_set, mini_ca):
        cert, key = install(store, domain_set, mini_ca)
        chain = store.chain_path.read_bytes()
        store.commit(store.stage(domain_set, b"new-cert", b"new-key", b"new-chain"))

        store.rollback(domain_set)

        assert store.cert_path(domain_set).read_bytes() == cert
        assert store.key_path(domain_set).read_bytes() == key
        assert store.chain_path.read_bytes() == chain
        assert mode(store.key_path(domain_set)) == 0o600

    def test_rollback_without_backup_fails(self, store, domain_set):
        with pytest.raises(RollbackError, match="no backup"):
            store.rollback(domain_set)


@pytest.mark.unit
class TestMetadata:
    """Test status.json and last_renewal.json."""

    def test_read_status_empty(self, store):
        assert store.read_status() == {}

    def test_write_and_read_status(self, store, domain_set, mini_ca):
        install(store, domain_set, mini_ca)
        record = store.load(domain_set)
        record.requires_intervention = True

        store.write_status([record], {DomainSetKey("web"): record.fingerprint, "gone": "ff"})
        status = store.read_status()

        assert status["web"]["recorded_fingerprint"] == record.fingerprint
        assert status["web"]["requires_intervention"] is True
        assert status["web"]["domains"] == list(domain_set.domains)
        assert status["gone"] == {"recorded_fingerprint": "ff"}

    def test_corrupt_status_raises(self, store):
        (store.metadata_dir / "status.json").write_text("{not json")
        with pytest.raises(StorageError):
            store.read_status()

    def test_last_renewal_keyed_by_domain_set(self, store):
        for name in ("a", "b"):
            store.write_last_renewal(
                RenewalAttempt(domain_set=DomainSetKey(name), started_at=NOW, outcome=RenewalOutcome.RENEWED)
            )
        history = store._read_json("last_renewal.json")
        assert set(history) == {"a", "b"}
        assert history["a"]["outcome"] == "renewed"

    def test_clear_intervention(self, store, domain_set, mini_ca):
        install(store, domain_set, mini_ca)
        record = store.load(domain_set)
        record.requires_intervention = True
        record.last_error = "rollback failed"
        store.write_status([record], {})

        assert store.clear_intervention("web") is True
        assert store.read_status()["web"]["requires_intervention"] is False
        assert store.clear_intervention("web") is False
        assert store.clear_intervention("missing") is False

    def test_initialize_sets_directory_mode(self, tmp_path):
        from cert_agent.adapters.outbound.file_certificate_store import FileCertificateStore

        s = FileCertificateStore(tmp_path / "new", dir_mode=0o700)
        s.initialize()
        assert mode(s.cert_dir) == 0o700
        assert mode(s.metadata_dir) == 0o700
