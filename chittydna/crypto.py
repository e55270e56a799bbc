"""
Cryptographic utilities for chittydna.

Two concerns:
- Vault blob framing: AES-256-GCM, laid out as nonce(16) || tag(16) || ciphertext
- Ed25519 signing keys for export documents:
  - Key pair generation
  - Message signing and verification
  - Key storage through the storage port
"""

import base64
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from chittydna.protocols import (
    CryptoError,
    KeyNotFoundError,
    SignatureError,
    StoragePort,
    VaultAuthenticationError,
)

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 16
TAG_SIZE = 16


# =============================================================================
# Authenticated encryption
# =============================================================================


def generate_vault_key() -> bytes:
    """Fresh random 256-bit key."""
    return os.urandom(KEY_SIZE)


def encrypt_blob(key: bytes, plaintext: bytes) -> bytes:
    """Encrypt and frame plaintext as nonce || tag || ciphertext.

    A fresh random nonce is drawn on every call.
    """
    if len(key) != KEY_SIZE:
        raise ValueError(f"Vault key must be {KEY_SIZE} bytes, got {len(key)}")
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return nonce + tag + ciphertext


def decrypt_blob(key: bytes, blob: bytes) -> bytes:
    """Reverse encrypt_blob.

    Raises:
        VaultAuthenticationError: If the blob is truncated or fails tag
            verification. No plaintext is ever returned in that case.
    """
    if len(key) != KEY_SIZE:
        raise ValueError(f"Vault key must be {KEY_SIZE} bytes, got {len(key)}")
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise VaultAuthenticationError(f"Vault blob too short ({len(blob)} bytes)")
    nonce = blob[:NONCE_SIZE]
    tag = blob[NONCE_SIZE : NONCE_SIZE + TAG_SIZE]
    ciphertext = blob[NONCE_SIZE + TAG_SIZE :]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as e:
        raise VaultAuthenticationError("Vault authentication failed (tampered or wrong key)") from e


# =============================================================================
# Ed25519 signing
# =============================================================================


@dataclass
class KeyPair:
    """Ed25519 key pair.

    Attributes:
        public_key: Base64-encoded public key
        private_key: Base64-encoded private key (None when only the public half is known)
        created_at: When the key was generated
        key_id: Short identifier derived from the public key
    """

    public_key: str
    private_key: Optional[str] = None
    created_at: Optional[datetime] = None
    key_id: Optional[str] = None


def generate_key_pair() -> KeyPair:
    """Generate a new Ed25519 key pair.

    Raises:
        CryptoError: If key generation fails
    """
    try:
        private_key = Ed25519PrivateKey.generate()
        private_bytes = private_key.private_bytes_raw()
        public_bytes = private_key.public_key().public_bytes_raw()
    except Exception as e:
        logger.error(f"Key generation failed: {e}")
        raise CryptoError(f"Failed to generate key pair: {e}") from e

    return KeyPair(
        public_key=base64.b64encode(public_bytes).decode("ascii"),
        private_key=base64.b64encode(private_bytes).decode("ascii"),
        created_at=datetime.now(timezone.utc),
        key_id=hashlib.sha256(public_bytes).hexdigest()[:8],
    )


def sign_message(message: bytes, private_key_b64: str) -> str:
    """Sign a message with an Ed25519 private key.

    Returns:
        Base64-encoded signature

    Raises:
        CryptoError: If signing fails
    """
    try:
        private_key = Ed25519PrivateKey.from_private_bytes(base64.b64decode(private_key_b64))
        signature = private_key.sign(message)
    except Exception as e:
        logger.error(f"Signing failed: {e}")
        raise CryptoError(f"Failed to sign message: {e}") from e
    return base64.b64encode(signature).decode("ascii")


def verify_signature(message: bytes, signature_b64: str, public_key_b64: str) -> bool:
    """Verify a message signature with an Ed25519 public key.

    Returns:
        True if the signature is valid

    Raises:
        SignatureError: If the signature is invalid or malformed
    """
    try:
        public_key = Ed25519PublicKey.from_public_bytes(base64.b64decode(public_key_b64))
        public_key.verify(base64.b64decode(signature_b64), message)
        return True
    except (InvalidSignature, ValueError, TypeError) as e:
        logger.debug(f"Signature verification failed: {e}")
        raise SignatureError(f"Invalid signature: {e}") from e


class SigningKeyManager:
    """Manages the export signing key through the storage port.

    Layout under ``prefix``:
    - private.key - Private key (base64, owner-only)
    - public.key  - Public key (base64)
    - meta.json   - Key metadata
    """

    def __init__(self, storage: StoragePort, prefix: str = "dna/keys/signing"):
        self.storage = storage
        self.prefix = prefix.rstrip("/")

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}"

    def has_key(self) -> bool:
        return self.storage.exists(self._key("private.key"))

    def generate(self) -> KeyPair:
        """Generate and store a new key pair, replacing any existing one."""
        key_pair = generate_key_pair()
        self.storage.write_bytes(
            self._key("private.key"), key_pair.private_key.encode("ascii"), private=True
        )
        self.storage.write_bytes(self._key("public.key"), key_pair.public_key.encode("ascii"))
        meta = {
            "created_at": key_pair.created_at.isoformat() if key_pair.created_at else None,
            "key_id": key_pair.key_id,
        }
        self.storage.write_bytes(self._key("meta.json"), json.dumps(meta, indent=2).encode())
        logger.info(f"Generated export signing key {key_pair.key_id}")
        return key_pair

    def get_key_pair(self) -> KeyPair:
        """Load the stored key pair.

        Raises:
            KeyNotFoundError: If no key exists
        """
        private = self.storage.read_bytes(self._key("private.key"))
        public = self.storage.read_bytes(self._key("public.key"))
        if private is None or public is None:
            raise KeyNotFoundError("No export signing key found")

        created_at = None
        key_id = None
        meta_raw = self.storage.read_bytes(self._key("meta.json"))
        if meta_raw:
            meta = json.loads(meta_raw)
            if meta.get("created_at"):
                created_at = datetime.fromisoformat(meta["created_at"])
            key_id = meta.get("key_id")

        return KeyPair(
            public_key=public.decode("ascii").strip(),
            private_key=private.decode("ascii").strip(),
            created_at=created_at,
            key_id=key_id,
        )

    def get_or_create(self) -> KeyPair:
        if self.has_key():
            return self.get_key_pair()
        return self.generate()

    def get_public_key(self) -> str:
        return self.get_key_pair().public_key

    def sign(self, message: bytes) -> str:
        """Sign with the stored key, generating one on first use."""
        key_pair = self.get_or_create()
        return sign_message(message, key_pair.private_key)

    def verify(self, message: bytes, signature: str, public_key: Optional[str] = None) -> bool:
        if public_key is None:
            public_key = self.get_public_key()
        return verify_signature(message, signature, public_key)

    def delete(self) -> bool:
        """Delete the key pair. Returns False if there was none."""
        return self.storage.delete_prefix(self.prefix + "/") > 0
