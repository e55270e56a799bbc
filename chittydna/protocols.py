"""
chittydna Protocol Definitions
==============================

Interface contracts and the error hierarchy for chittydna.

Components and their roles:
- Storage port:     Keyed byte storage. The only thing that touches disk.
- Vault:            Encrypted persistence of the aggregate learning state.
- Audit log:        Append-only, hash-only record of learning events.
- Goal synthesizer: Learning goals and their lifecycle.
- Pipeline:         Event capture and the four learning phases.
- Portability:      Signed export/import of the learning state.
- Remote services:  Optional cloud endpoints. Never required.

Error handling philosophy:
- Persistence failures raise StorageError
- Tampered or foreign vault data raises VaultAuthenticationError
- Import validation failures raise a PortabilityError subclass
- Remote failures never raise; they are queued and reported in results
- Invalid arguments raise ValueError
"""

from __future__ import annotations

from datetime import datetime
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

# A clock returns the current time as an aware UTC datetime.
Clock = Callable[[], datetime]


# =============================================================================
# ERRORS
# =============================================================================


class ChittyDNAError(Exception):
    """Base for all chittydna errors."""

    pass


class ConfigError(ChittyDNAError):
    """Raised when configuration values cannot be parsed."""

    pass


class StorageError(ChittyDNAError):
    """Raised by storage implementations when a read or write fails."""

    pass


class GoalNotFoundError(ChittyDNAError):
    """Raised when an operation names a learning goal that does not exist."""

    pass


class VaultError(ChittyDNAError):
    """Base for vault errors."""

    pass


class VaultAuthenticationError(VaultError):
    """Stored ciphertext failed authentication (tampered or foreign key)."""

    pass


class VaultEmptyError(VaultError):
    """An operation needs stored learning state but the vault is empty."""

    pass


class SnapshotNotFoundError(VaultError):
    """A named snapshot does not exist."""

    pass


class CryptoError(ChittyDNAError):
    """Base for signing key errors."""

    pass


class KeyNotFoundError(CryptoError):
    """Signing key not found."""

    pass


class SignatureError(CryptoError):
    """Signature verification failed."""

    pass


class PortabilityError(ChittyDNAError):
    """Base for export/import errors."""

    pass


class InvalidDocumentError(PortabilityError):
    """The import payload is not a ChittyDNA export document."""

    pass


class IntegrityError(PortabilityError):
    """The document's content hash does not match its state."""

    pass


class ConsentError(PortabilityError):
    """The owner did not consent to portability."""

    pass


class UnsupportedPrivacyModeError(PortabilityError):
    """The requested privacy mode is declared but not implemented."""

    pass


# =============================================================================
# STORAGE PORT
# =============================================================================
# Keys are relative, slash-separated names such as "dna/vault.enc".
# Implementations map them onto whatever backing store they use.
# =============================================================================


@runtime_checkable
class StoragePort(Protocol):
    """Keyed byte storage used by every persistent component."""

    def read_bytes(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when the key is absent."""
        ...

    def write_bytes(self, key: str, data: bytes, private: bool = False) -> None:
        """Atomically replace the value stored at key.

        When private is True the value is readable by the owner only.
        """
        ...

    def append_line(self, key: str, line: str) -> None:
        """Append one line (a newline is added) to the value at key."""
        ...

    def read_lines(self, key: str) -> List[str]:
        """Return the non-empty lines stored at key ([] when absent)."""
        ...

    def exists(self, key: str) -> bool: ...

    def delete(self, key: str) -> bool:
        """Remove key. Returns False when it did not exist."""
        ...

    def delete_prefix(self, prefix: str) -> int:
        """Remove every key under prefix. Returns the number removed."""
        ...

    def list_keys(self, prefix: str = "") -> List[str]:
        """Return the sorted keys under prefix."""
        ...


# =============================================================================
# REMOTE SERVICES
# =============================================================================
# Optional cloud endpoints. An implementation returns None (or False) when a
# call fails; callers treat that as "unavailable" and queue the payload.
# =============================================================================


@runtime_checkable
class RemoteServices(Protocol):
    """Narrow interface to the remote learning services. Never raises."""

    def authenticate(self) -> Optional[str]:
        """A valid bearer token, or None when offline or unauthenticated."""
        ...

    def register_learned_items(self, items: List[Dict[str, Any]]) -> bool:
        """Publish learned items (hashes and statistics only)."""
        ...

    def fetch_community_patterns(self) -> Optional[List[Dict[str, Any]]]:
        """Shared patterns from the registry. None when unavailable."""
        ...

    def log_event(self, entry: Dict[str, Any]) -> bool:
        """Record one learning event remotely."""
        ...

    def discover_tools(self) -> Optional[List[Dict[str, Any]]]:
        """Tools offered by the connect service. None when unavailable."""
        ...

    def health_check(self) -> bool:
        """True when at least one service answers."""
        ...

    def service_health(self) -> Dict[str, bool]:
        """Availability of each named service."""
        ...
