"""Tests for chittydna.vault."""

import pytest

from chittydna.audit import AuditLog
from chittydna.protocols import SnapshotNotFoundError, VaultAuthenticationError, VaultError
from chittydna.storage import FileStorage
from chittydna.types import AuditEvent, ChittyDNA
from chittydna.vault import MANIFEST_KEY, MASTER_KEY, MUTATION_LOG, VAULT_KEY, Vault

from conftest import make_state, make_workflow


@pytest.fixture
def vault(storage, clock):
    return Vault(storage, clock=clock, snapshot_cap=3)


class TestSaveLoad:
    def test_empty_vault(self, vault):
        """An unused vault loads as None and load_or_empty gives a blank state."""
        assert vault.load() is None
        assert vault.exists() is False
        assert vault.load_or_empty() == ChittyDNA()

    def test_round_trip(self, vault):
        """A saved state loads back equal."""
        state = make_state(make_workflow("wf1"), make_workflow("wf2", usage_count=4))
        vault.save(state)
        assert vault.load() == state

    def test_stored_blob_is_not_plaintext(self, vault, storage):
        """Nothing readable reaches storage."""
        vault.save(make_state(make_workflow("wf1", value="git push --force secret-branch")))
        blob = storage.read_bytes(VAULT_KEY)
        assert b"secret-branch" not in blob
        assert b"workflows" not in blob

    def test_key_generated_once_and_private(self, vault, storage):
        """The master key is created on first save and stored owner-only."""
        vault.save(make_state())
        key = storage.read_bytes(MASTER_KEY)
        assert len(key) == 32
        assert storage.is_private(MASTER_KEY)
        vault.save(make_state())
        assert storage.read_bytes(MASTER_KEY) == key

    def test_reopened_vault_reads_state(self, storage, clock):
        """A new Vault over the same storage uses the stored key."""
        state = make_state(make_workflow("wf1"))
        Vault(storage, clock=clock).save(state)
        assert Vault(storage, clock=clock).load() == state

    def test_save_returns_content_hash(self, vault):
        """Equal states hash equally; the hash is recorded in the mutation log."""
        first = vault.save(make_state(make_workflow("wf1")))
        second = vault.save(make_state(make_workflow("wf1")))
        assert first == second
        assert vault.get_mutations()[-1]["content_hash"] == first

    def test_corrupt_key_length(self, storage, clock):
        storage.write_bytes(MASTER_KEY, b"short", private=True)
        with pytest.raises(VaultError, match="corrupt"):
            Vault(storage, clock=clock).save(make_state())


class TestTamperDetection:
    @pytest.mark.parametrize("offset", [16, 20, 31, 32, 40, -1])
    def test_flipped_bit_fails_load(self, vault, storage, offset):
        """Any single flipped bit in tag or ciphertext makes load() fail."""
        vault.save(make_state(make_workflow("wf1")))
        blob = bytearray(storage.read_bytes(VAULT_KEY))
        blob[offset] ^= 0x80
        storage.write_bytes(VAULT_KEY, bytes(blob))
        with pytest.raises(VaultAuthenticationError):
            vault.load()

    def test_foreign_key_fails(self, vault, storage, clock):
        """A blob from another vault does not open under this key."""
        from chittydna.storage import MemoryStorage

        other_storage = MemoryStorage()
        Vault(other_storage, clock=clock).save(make_state())
        vault.save(make_state())
        storage.write_bytes(VAULT_KEY, other_storage.read_bytes(VAULT_KEY))
        with pytest.raises(VaultAuthenticationError):
            vault.load()


class TestSnapshots:
    def test_one_snapshot_per_save(self, vault, clock):
        vault.save(make_state())
        clock.advance(seconds=1)
        vault.save(make_state())
        assert len(vault.get_snapshots()) == 2

    def test_cap_evicts_oldest(self, vault, storage, clock):
        """After cap + k saves exactly cap snapshots remain, the k oldest gone."""
        names = []
        for i in range(5):
            vault.save(make_state(make_workflow(f"wf{i}")))
            names.append(vault.get_snapshots()[-1])
            clock.advance(seconds=1)

        remaining = vault.get_snapshots()
        assert len(remaining) == 3
        assert [s["timestamp"] for s in remaining] == [n["timestamp"] for n in names[2:]]
        for evicted in names[:2]:
            assert not storage.exists(evicted["path"])
        assert len([k for k in storage.list_keys("dna/snapshots/") if k.endswith(".enc")]) == 3

    def test_same_instant_saves_get_distinct_names(self, vault):
        """The clock does not move; snapshot names still never collide."""
        vault.save(make_state())
        vault.save(make_state())
        stamps = [s["timestamp"] for s in vault.get_snapshots()]
        assert len(set(stamps)) == 2

    def test_restore_snapshot(self, vault, clock):
        """Restoring brings back an older state."""
        old = make_state(make_workflow("old"))
        vault.save(old)
        old_stamp = vault.get_snapshots()[-1]["timestamp"]
        clock.advance(minutes=1)
        vault.save(make_state(make_workflow("new")))

        assert vault.restore_snapshot(old_stamp) is True
        assert vault.load() == old

    def test_restore_missing_snapshot(self, vault):
        assert vault.restore_snapshot("2020-01-01T00-00-00-000000Z") is False

    def test_load_snapshot(self, vault, clock):
        state = make_state(make_workflow("wf1"))
        vault.save(state)
        stamp = vault.get_snapshots()[-1]["timestamp"]
        assert vault.load_snapshot(stamp) == state
        with pytest.raises(SnapshotNotFoundError):
            vault.load_snapshot("nope")


class TestManifestAndStats:
    def test_manifest_counts_only(self, vault, storage):
        """The manifest carries counts, never content."""
        vault.save(make_state(make_workflow("wf1", value="kubectl delete pod x")))
        manifest = vault.get_manifest()
        assert manifest["@type"] == "ChittyDNA"
        assert manifest["workflow_count"] == 1
        assert manifest["template_count"] == 1
        assert manifest["integration_count"] == 1
        assert b"kubectl" not in storage.read_bytes(MANIFEST_KEY)

    def test_mutation_log_has_no_content(self, vault, storage):
        vault.save(make_state(make_workflow("wf1", value="docker compose up")))
        assert b"docker" not in storage.read_bytes(MUTATION_LOG)
        assert vault.get_mutations()[0]["action"] == "save"

    def test_stats(self, vault, clock):
        assert vault.get_stats()["size_bytes"] == 0
        vault.save(make_state())
        stats = vault.get_stats()
        assert stats["encrypted"] is True
        assert stats["size_bytes"] > 0
        assert stats["snapshot_count"] == 1
        assert stats["last_modified"] == "2025-03-01T12:00:00Z"


class TestRevoke:
    def test_revoke_removes_everything(self, storage, clock):
        """Revocation deletes vault, keys and snapshots and is audited."""
        audit = AuditLog(storage, clock=clock)
        vault = Vault(storage, audit=audit, clock=clock)
        vault.save(make_state(make_workflow("wf1")))

        removed = vault.revoke()

        assert removed >= 4
        assert storage.list_keys("dna/") == []
        assert vault.load() is None
        assert audit.latest(AuditEvent.DNA_REVOKED) is not None

    def test_new_key_after_revoke(self, storage, clock):
        """A vault used after revocation starts over with a new key."""
        vault = Vault(storage, clock=clock)
        vault.save(make_state())
        old_key = storage.read_bytes(MASTER_KEY)
        vault.revoke()
        vault.save(make_state())
        assert storage.read_bytes(MASTER_KEY) != old_key


class TestFileBackedVault:
    def test_files_are_owner_only(self, tmp_path, clock):
        """On disk the vault blob and key are mode 0o600."""
        storage = FileStorage(tmp_path)
        Vault(storage, clock=clock).save(make_state())
        assert storage.mode(VAULT_KEY) == 0o600
        assert storage.mode(MASTER_KEY) == 0o600

    def test_vault_event_log_written(self, tmp_path, clock):
        """With log_dir set, saves land in the vault events log."""
        storage = FileStorage(tmp_path / "data")
        Vault(storage, clock=clock, log_dir=tmp_path).save(make_state(make_workflow("wf1")))
        logs = list((tmp_path / "logs").glob("vault-events-*.log"))
        assert len(logs) == 1
        assert " | save | workflows=1, hash=" in logs[0].read_text()
