"""
Encrypted vault for the aggregate learning state.

Storage layout (keys relative to the storage root):

- ``dna/vault.enc``               current encrypted state
- ``dna/keys/master.key``         256-bit key, owner-only
- ``dna/snapshots/<ts>.dna.enc``  encrypted history, capped ring
- ``dna/snapshots/index.json``    ``{"snapshots": [{timestamp, path, size}]}``
- ``dna/manifest.json``           counts only, no content
- ``audit/mutations.jsonl``       one hash-only line per save

Losing the master key makes the vault unrecoverable. There is no key
escrow and no plaintext fallback.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from chittydna.audit import AuditLog
from chittydna.crypto import KEY_SIZE, decrypt_blob, encrypt_blob, generate_vault_key
from chittydna.logging_config import log_load, log_save
from chittydna.protocols import (
    Clock,
    SnapshotNotFoundError,
    StoragePort,
    VaultError,
)
from chittydna.types import ChittyDNA, canonical_json, iso, sha256_hex, utc_now

logger = logging.getLogger(__name__)

VAULT_KEY = "dna/vault.enc"
MASTER_KEY = "dna/keys/master.key"
SNAPSHOT_PREFIX = "dna/snapshots"
SNAPSHOT_INDEX = "dna/snapshots/index.json"
MANIFEST_KEY = "dna/manifest.json"
MUTATION_LOG = "audit/mutations.jsonl"

PDX_CONTEXT = "https://foundation.chitty.cc/pdx/v1"
MANIFEST_VERSION = "1.0.0"
DEFAULT_SNAPSHOT_CAP = 30


class Vault:
    """Encrypted-at-rest store for one user's ChittyDNA.

    Args:
        storage: Backing storage port.
        audit: Audit log; revocations are recorded there.
        clock: Time source for snapshot names and the manifest.
        snapshot_cap: Number of snapshots kept (oldest evicted first).
        log_dir: Data directory for vault event logging (None disables it).
    """

    def __init__(
        self,
        storage: StoragePort,
        audit: Optional[AuditLog] = None,
        clock: Clock = utc_now,
        snapshot_cap: int = DEFAULT_SNAPSHOT_CAP,
        log_dir: Optional[Path] = None,
    ):
        if snapshot_cap < 1:
            raise ValueError("snapshot_cap must be at least 1")
        self.storage = storage
        self.audit = audit or AuditLog(storage, clock=clock)
        self.clock = clock
        self.snapshot_cap = snapshot_cap
        self.log_dir = log_dir
        self._key: Optional[bytes] = None
        self._lock = threading.RLock()

    # === Key material ===

    def _encryption_key(self) -> bytes:
        if self._key is not None:
            return self._key
        with self._lock:
            key = self.storage.read_bytes(MASTER_KEY)
            if key is None:
                key = generate_vault_key()
                self.storage.write_bytes(MASTER_KEY, key, private=True)
                logger.info("Vault initialized with a new encryption key")
            elif len(key) != KEY_SIZE:
                raise VaultError(f"Vault key is corrupt ({len(key)} bytes, expected {KEY_SIZE})")
            self._key = key
        return self._key

    # === Save / load ===

    def save(self, state: ChittyDNA) -> str:
        """Encrypt and persist the state.

        Writes the primary blob, pushes a snapshot, refreshes the manifest
        and appends a hash-only mutation record.

        Returns:
            The content hash of the canonical state
        """
        payload = canonical_json(state.to_dict()).encode("utf-8")
        content_hash = sha256_hex(payload)

        with self._lock:
            blob = encrypt_blob(self._encryption_key(), payload)
            self.storage.write_bytes(VAULT_KEY, blob, private=True)
            self._snapshot(blob)
            self._update_manifest(state)
            self._log_mutation("save", state, content_hash)

        logger.debug(f"Vault saved: {len(state.workflows)} workflows, {len(blob)} bytes")
        if self.log_dir is not None:
            log_save(len(state.workflows), content_hash, data_dir=self.log_dir)
        return content_hash

    def load(self) -> Optional[ChittyDNA]:
        """Decrypt and return the stored state, or None when the vault is empty.

        Raises:
            VaultAuthenticationError: If the blob was tampered with or was
                written under another key.
        """
        blob = self.storage.read_bytes(VAULT_KEY)
        if blob is None:
            return None
        state = self._decode(blob)
        if self.log_dir is not None:
            log_load(len(state.workflows), data_dir=self.log_dir)
        return state

    def load_or_empty(self) -> ChittyDNA:
        state = self.load()
        return state if state is not None else ChittyDNA()

    def _decode(self, blob: bytes) -> ChittyDNA:
        plaintext = decrypt_blob(self._encryption_key(), blob)
        try:
            return ChittyDNA.from_dict(json.loads(plaintext.decode("utf-8")))
        except (ValueError, KeyError, TypeError) as e:
            raise VaultError(f"Vault content is not a valid ChittyDNA document: {e}") from e

    def exists(self) -> bool:
        return self.storage.exists(VAULT_KEY)

    # === Snapshots ===

    def _read_index(self) -> Dict[str, List[Dict[str, Any]]]:
        raw = self.storage.read_bytes(SNAPSHOT_INDEX)
        if raw is None:
            return {"snapshots": []}
        try:
            index = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Snapshot index is unreadable; starting a new one")
            return {"snapshots": []}
        index.setdefault("snapshots", [])
        return index

    def _snapshot(self, blob: bytes) -> None:
        base = self.clock().strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        timestamp = base
        counter = 1
        while self.storage.exists(f"{SNAPSHOT_PREFIX}/{timestamp}.dna.enc"):
            counter += 1
            timestamp = f"{base}-{counter}"
        path = f"{SNAPSHOT_PREFIX}/{timestamp}.dna.enc"
        self.storage.write_bytes(path, blob, private=True)

        index = self._read_index()
        index["snapshots"].append({"timestamp": timestamp, "path": path, "size": len(blob)})
        while len(index["snapshots"]) > self.snapshot_cap:
            removed = index["snapshots"].pop(0)
            self.storage.delete(removed["path"])
            logger.debug(f"Evicted snapshot {removed['timestamp']}")

        self.storage.write_bytes(SNAPSHOT_INDEX, json.dumps(index, indent=2).encode("utf-8"))

    def get_snapshots(self) -> List[Dict[str, Any]]:
        """Snapshot index entries, oldest first."""
        return list(self._read_index()["snapshots"])

    def _snapshot_path(self, timestamp: str) -> Optional[str]:
        for entry in self._read_index()["snapshots"]:
            if entry.get("timestamp") == timestamp:
                return entry.get("path")
        return None

    def restore_snapshot(self, timestamp: str) -> bool:
        """Make a snapshot the current vault content.

        The blob is copied as-is; it is authenticated on the next load().

        Returns:
            False if no snapshot with that timestamp exists
        """
        path = self._snapshot_path(timestamp)
        blob = self.storage.read_bytes(path) if path else None
        if blob is None:
            logger.warning(f"Snapshot not found: {timestamp}")
            return False
        with self._lock:
            self.storage.write_bytes(VAULT_KEY, blob, private=True)
        logger.info(f"Restored vault from snapshot {timestamp}")
        return True

    def load_snapshot(self, timestamp: str) -> ChittyDNA:
        """Decrypt one snapshot without touching the current vault.

        Raises:
            SnapshotNotFoundError: If the snapshot does not exist
            VaultAuthenticationError: If it fails authentication
        """
        path = self._snapshot_path(timestamp)
        blob = self.storage.read_bytes(path) if path else None
        if blob is None:
            raise SnapshotNotFoundError(f"No snapshot with timestamp {timestamp!r}")
        return self._decode(blob)

    # === Manifest and mutation log ===

    def _update_manifest(self, state: ChittyDNA) -> None:
        manifest = {
            "@context": PDX_CONTEXT,
            "@type": "ChittyDNA",
            "version": MANIFEST_VERSION,
            "last_modified": iso(self.clock()),
            "workflow_count": len(state.workflows),
            "template_count": len(state.command_templates),
            "integration_count": len(state.integrations),
        }
        self.storage.write_bytes(MANIFEST_KEY, json.dumps(manifest, indent=2).encode("utf-8"))

    def get_manifest(self) -> Optional[Dict[str, Any]]:
        raw = self.storage.read_bytes(MANIFEST_KEY)
        return json.loads(raw) if raw else None

    def _log_mutation(self, action: str, state: ChittyDNA, content_hash: str) -> None:
        entry = {
            "timestamp": iso(self.clock()),
            "action": action,
            "workflow_count": len(state.workflows),
            "content_hash": content_hash,
        }
        self.storage.append_line(MUTATION_LOG, json.dumps(entry, sort_keys=True))

    def get_mutations(self) -> List[Dict[str, Any]]:
        return [json.loads(line) for line in self.storage.read_lines(MUTATION_LOG)]

    # === Lifecycle ===

    def revoke(self) -> int:
        """Delete all vault data and key material.

        Returns:
            Number of stored items removed
        """
        with self._lock:
            removed = self.storage.delete_prefix("dna/")
            self._key = None
        self.audit.log_revocation()
        logger.info(f"Vault revoked; removed {removed} item(s)")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        blob = self.storage.read_bytes(VAULT_KEY)
        if blob is None:
            return {
                "encrypted": True,
                "size_bytes": 0,
                "snapshot_count": 0,
                "last_modified": None,
            }
        manifest = self.get_manifest() or {}
        return {
            "encrypted": True,
            "size_bytes": len(blob),
            "snapshot_count": len(self.get_snapshots()),
            "last_modified": manifest.get("last_modified"),
        }
