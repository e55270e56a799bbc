"""
Portable export and import of the learning state.

Export document layout::

    {
      "@context": "https://foundation.chitty.cc/pdx/v1",
      "type": "ChittyDNA",
      "version": "1.0.0",
      "ownerConsent": {learning, portability, attribution, marketplace, timestamp, signature},
      "license": {type, grant, scope, expires},
      "state": {...ChittyDNA...},
      "attribution": {enabled, contributions},        # optional
      "metadata": {
        created, last_modified, export_timestamp, export_tool,
        format_version, privacy_mode,
        "integrity": {algorithm, hash, signature, public_key}
      }
    }

``integrity.hash`` is the SHA-256 of the canonical JSON of ``state``.
Both signatures are Ed25519 over canonical JSON (the state, and the
consent block without its signature). The public key travels with the
document, so a valid signature proves the document is unmodified since
signing, not who signed it; pass ``trusted_public_keys`` to pin signers.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from chittydna.audit import AuditLog
from chittydna.crypto import SigningKeyManager, verify_signature
from chittydna.logging_config import log_export, log_import
from chittydna.protocols import (
    Clock,
    ConsentError,
    IntegrityError,
    InvalidDocumentError,
    SignatureError,
    StoragePort,
    UnsupportedPrivacyModeError,
    VaultEmptyError,
)
from chittydna.types import (
    AuditEvent,
    ChittyDNA,
    CommandTemplate,
    ConflictPolicy,
    ContextMemory,
    Integration,
    PrivacyMode,
    Workflow,
    canonical_json,
    hash_sensitive,
    iso,
    parse_datetime,
    sha256_hex,
    utc_now,
)
from chittydna.vault import PDX_CONTEXT, Vault

logger = logging.getLogger(__name__)

DOCUMENT_TYPE = "ChittyDNA"
DOCUMENT_VERSION = "1.0.0"
FORMAT_VERSION = "pdx-1.0"
ATTRIBUTION_KEY = "attribution/chains.jsonl"
EXPORT_INTERVAL = timedelta(hours=24)

LICENSE = {"type": "CDCL-1.0", "grant": "revocable", "scope": ["personal"], "expires": None}


def _tool_version() -> str:
    try:
        from importlib.metadata import version

        return version("chittydna")
    except Exception:
        return "0.0.0"


@dataclass
class RateLimitDecision:
    allowed: bool
    next_allowed: Optional[datetime] = None


@dataclass
class ExportResult:
    """Outcome of an export. ``document`` is None when refused by the rate limit."""

    allowed: bool
    document: Optional[Dict[str, Any]] = None
    next_allowed: Optional[datetime] = None


@dataclass
class ImportResult:
    success: bool = False
    patterns: int = 0
    imported: int = 0
    errors: List[str] = field(default_factory=list)


# =============================================================================
# Privacy transforms
# =============================================================================


def apply_privacy_mode(state: ChittyDNA, mode: PrivacyMode) -> ChittyDNA:
    """Return the state as it may leave the machine under ``mode``.

    Raises:
        UnsupportedPrivacyModeError: For ZK, which is not implemented
    """
    mode = PrivacyMode(mode)
    if mode == PrivacyMode.FULL:
        return ChittyDNA.from_dict(state.to_dict())
    if mode == PrivacyMode.HASH_ONLY:
        copy = ChittyDNA.from_dict(state.to_dict())
        for wf in copy.workflows:
            wf.pattern.value = wf.pattern.hash
            wf.reveal_pattern = False
        for ctx in copy.context_memory:
            ctx.hash = ctx.hash or hash_sensitive(ctx.context)
            ctx.context = {}
            ctx.reveal_content = False
        return copy
    raise UnsupportedPrivacyModeError("Zero-knowledge export is not supported")


# =============================================================================
# Merging
# =============================================================================


def _unique(candidate: str, taken: Iterable[str]) -> str:
    taken = set(taken)
    if candidate not in taken:
        return candidate
    n = 2
    while f"{candidate}_{n}" in taken:
        n += 1
    return f"{candidate}_{n}"


def merge_workflows(
    existing: List[Workflow], incoming: List[Workflow], policy: ConflictPolicy
) -> Tuple[List[Workflow], int, List[str]]:
    """Returns (merged list, number imported, errors)."""
    merged = list(existing)
    errors: List[str] = []
    imported = 0
    for wf in incoming:
        index = next((i for i, cur in enumerate(merged) if cur.id == wf.id), None)
        if index is None:
            merged.append(wf)
            imported += 1
            continue
        current = merged[index]
        if policy == ConflictPolicy.MERGE:
            merged[index] = replace(
                wf,
                usage_count=current.usage_count + wf.usage_count,
                confidence=max(current.confidence, wf.confidence),
                time_saved=current.time_saved + wf.time_saved,
            )
            imported += 1
        elif policy == ConflictPolicy.REPLACE:
            merged[index] = wf
            imported += 1
        elif policy == ConflictPolicy.RENAME:
            new_id = _unique(f"{wf.id}_imported", (w.id for w in merged))
            merged.append(replace(wf, id=new_id, name=f"{wf.name} (imported)"))
            imported += 1
        else:
            errors.append(f"Skipped conflicting workflow: {wf.id}")
    return merged, imported, errors


def merge_templates(
    existing: List[CommandTemplate], incoming: List[CommandTemplate], policy: ConflictPolicy
) -> Tuple[List[CommandTemplate], List[str]]:
    merged = list(existing)
    errors: List[str] = []
    for tpl in incoming:
        index = next((i for i, cur in enumerate(merged) if cur.id == tpl.id), None)
        if index is None:
            merged.append(tpl)
        elif policy == ConflictPolicy.REPLACE:
            merged[index] = tpl
        elif policy == ConflictPolicy.RENAME:
            new_id = _unique(f"{tpl.id}_imported", (t.id for t in merged))
            merged.append(replace(tpl, id=new_id, name=f"{tpl.name} (imported)"))
        elif policy == ConflictPolicy.SKIP:
            errors.append(f"Skipped conflicting template: {tpl.id}")
        # MERGE keeps the local template
    return merged, errors


def merge_integrations(
    existing: List[Integration], incoming: List[Integration], policy: ConflictPolicy
) -> Tuple[List[Integration], List[str]]:
    merged = list(existing)
    errors: List[str] = []
    for integ in incoming:
        index = next((i for i, cur in enumerate(merged) if cur.key == integ.key), None)
        if index is None:
            merged.append(integ)
        elif policy == ConflictPolicy.REPLACE:
            merged[index] = integ
        elif policy == ConflictPolicy.RENAME:
            names = [i.name for i in merged if i.type == integ.type]
            merged.append(replace(integ, name=_unique(f"{integ.name} (imported)", names)))
        elif policy == ConflictPolicy.SKIP:
            errors.append(f"Skipped conflicting integration: {integ.type}/{integ.name}")
    return merged, errors


def merge_context_memory(
    existing: List[ContextMemory], incoming: List[ContextMemory]
) -> List[ContextMemory]:
    seen = {c.key for c in existing}
    merged = list(existing)
    for ctx in incoming:
        if ctx.key not in seen:
            merged.append(ctx)
            seen.add(ctx.key)
    return merged


def merge_states(
    local: ChittyDNA, incoming: ChittyDNA, policy: ConflictPolicy
) -> Tuple[ChittyDNA, int, List[str]]:
    """Merge every collection of ``incoming`` into ``local``. Pure function."""
    policy = ConflictPolicy(policy)
    workflows, imported, errors = merge_workflows(local.workflows, incoming.workflows, policy)
    templates, tpl_errors = merge_templates(
        local.command_templates, incoming.command_templates, policy
    )
    integrations, integ_errors = merge_integrations(
        local.integrations, incoming.integrations, policy
    )
    if policy in (ConflictPolicy.MERGE, ConflictPolicy.REPLACE):
        preferences = {**local.preferences, **incoming.preferences}
    else:
        preferences = {**incoming.preferences, **local.preferences}

    merged = ChittyDNA(
        workflows=workflows,
        preferences=preferences,
        command_templates=templates,
        integrations=integrations,
        context_memory=merge_context_memory(local.context_memory, incoming.context_memory),
    )
    return merged, imported, errors + tpl_errors + integ_errors


# =============================================================================
# Export / import
# =============================================================================


class Portability:
    """Signed export and policy-driven import of the vault contents.

    Args:
        vault: The vault to export from and merge into.
        audit: Audit log; exports and imports are recorded, and the export
            rate limit is computed from it.
        signer: Export signing key manager.
        clock: Time source.
        export_interval: Minimum time between two exports.
        log_dir: Data directory for vault event logging (None disables it).
    """

    def __init__(
        self,
        vault: Vault,
        audit: AuditLog,
        signer: Optional[SigningKeyManager] = None,
        clock: Clock = utc_now,
        export_interval: timedelta = EXPORT_INTERVAL,
        log_dir: Optional[Path] = None,
    ):
        self.vault = vault
        self.audit = audit
        self.storage: StoragePort = vault.storage
        self.signer = signer or SigningKeyManager(vault.storage)
        self.clock = clock
        self.export_interval = export_interval
        self.log_dir = log_dir

    def check_export_rate_limit(self) -> RateLimitDecision:
        last = self.audit.latest(AuditEvent.DNA_EXPORTED)
        if last is None:
            return RateLimitDecision(allowed=True)
        last_at = parse_datetime(last.timestamp)
        if last_at is not None and self.clock() - last_at < self.export_interval:
            return RateLimitDecision(allowed=False, next_allowed=last_at + self.export_interval)
        return RateLimitDecision(allowed=True)

    def _load_attribution(self) -> Dict[str, Any]:
        contributions = []
        for line in self.storage.read_lines(ATTRIBUTION_KEY):
            try:
                contributions.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable attribution line")
        return {"enabled": bool(contributions), "contributions": contributions}

    def export(
        self,
        privacy: Union[PrivacyMode, str] = PrivacyMode.FULL,
        include_attribution: bool = False,
    ) -> ExportResult:
        """Build a signed export document.

        Returns:
            ExportResult; ``allowed`` is False (and ``document`` None) when
            an export happened within the rate-limit window.

        Raises:
            UnsupportedPrivacyModeError: For ZK mode
            VaultEmptyError: If there is nothing to export
        """
        mode = PrivacyMode(privacy)
        if mode == PrivacyMode.ZK:
            raise UnsupportedPrivacyModeError("Zero-knowledge export is not supported")

        decision = self.check_export_rate_limit()
        if not decision.allowed:
            logger.info(f"Export refused by rate limit; next allowed at {decision.next_allowed}")
            return ExportResult(allowed=False, next_allowed=decision.next_allowed)

        state = self.vault.load()
        if state is None:
            raise VaultEmptyError("No learning state in the vault to export")

        transformed = apply_privacy_mode(state, mode)
        state_dict = transformed.to_dict()
        state_bytes = canonical_json(state_dict).encode("utf-8")
        content_hash = sha256_hex(state_bytes)

        key_pair = self.signer.get_or_create()
        now = iso(self.clock())
        consent = {
            "learning": True,
            "portability": True,
            "attribution": include_attribution,
            "marketplace": False,
            "timestamp": now,
        }
        consent["signature"] = self.signer.sign(canonical_json(consent).encode("utf-8"))

        document: Dict[str, Any] = {
            "@context": PDX_CONTEXT,
            "type": DOCUMENT_TYPE,
            "version": DOCUMENT_VERSION,
            "ownerConsent": consent,
            "license": dict(LICENSE),
            "state": state_dict,
            "metadata": {
                "created": state.workflows[0].created if state.workflows else now,
                "last_modified": now,
                "export_timestamp": now,
                "export_tool": {"name": "chittydna", "version": _tool_version()},
                "format_version": FORMAT_VERSION,
                "privacy_mode": mode.value,
                "integrity": {
                    "algorithm": "sha256",
                    "hash": content_hash,
                    "signature": self.signer.sign(state_bytes),
                    "public_key": key_pair.public_key,
                },
            },
        }
        if include_attribution:
            document["attribution"] = self._load_attribution()

        self.audit.log_portability(
            AuditEvent.DNA_EXPORTED,
            {
                "privacy_mode": mode.value,
                "workflow_count": len(transformed.workflows),
                "content_hash": content_hash,
            },
        )
        if self.log_dir is not None:
            log_export(mode.value, len(transformed.workflows), content_hash, data_dir=self.log_dir)
        logger.info(f"Exported {len(transformed.workflows)} workflows ({mode.value})")
        return ExportResult(allowed=True, document=document)

    @staticmethod
    def _parse(document: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
        if isinstance(document, (str, bytes)):
            try:
                document = json.loads(document)
            except json.JSONDecodeError as e:
                raise InvalidDocumentError(f"Document is not valid JSON: {e}") from e
        if not isinstance(document, dict):
            raise InvalidDocumentError("Document must be a JSON object")
        return document

    @staticmethod
    def _verify_signatures(
        document: Dict[str, Any],
        state_bytes: bytes,
        trusted_public_keys: Optional[Iterable[str]],
    ) -> None:
        integrity = document["metadata"]["integrity"]
        public_key = integrity.get("public_key")
        signature = integrity.get("signature")
        if not public_key or not signature:
            raise SignatureError("Document is not signed")
        if trusted_public_keys is not None and public_key not in set(trusted_public_keys):
            raise SignatureError("Document was signed by an untrusted key")
        verify_signature(state_bytes, signature, public_key)

        consent = dict(document["ownerConsent"])
        consent_signature = consent.pop("signature", None)
        if not consent_signature:
            raise SignatureError("Owner consent is not signed")
        verify_signature(canonical_json(consent).encode("utf-8"), consent_signature, public_key)

    def import_document(
        self,
        document: Union[str, bytes, Dict[str, Any]],
        policy: Union[ConflictPolicy, str] = ConflictPolicy.MERGE,
        verify_signature: bool = True,
        trusted_public_keys: Optional[Iterable[str]] = None,
    ) -> ImportResult:
        """Validate a document and merge it into the vault.

        Nothing is written unless every check passes. The vault is saved
        once, after all collections are merged.

        Raises:
            InvalidDocumentError: Not a ChittyDNA document
            IntegrityError: Content hash mismatch
            SignatureError: Bad, missing or untrusted signature
            ConsentError: Portability not consented
        """
        policy = ConflictPolicy(policy)
        doc = self._parse(document)

        if doc.get("type") != DOCUMENT_TYPE:
            raise InvalidDocumentError(f"Invalid document: type must be {DOCUMENT_TYPE}")
        state_dict = doc.get("state")
        if not isinstance(state_dict, dict):
            raise InvalidDocumentError("Invalid document: missing state")

        metadata = doc.get("metadata")
        if not isinstance(metadata, dict) or not isinstance(metadata.get("integrity"), dict):
            raise InvalidDocumentError("Invalid document: missing integrity metadata")
        consent = doc.get("ownerConsent") or {}
        if not isinstance(consent, dict):
            raise InvalidDocumentError("Invalid document: missing owner consent")

        state_bytes = canonical_json(state_dict).encode("utf-8")
        expected = metadata["integrity"].get("hash")
        if sha256_hex(state_bytes) != expected:
            raise IntegrityError("Integrity check failed: hash mismatch")

        if verify_signature:
            self._verify_signatures(doc, state_bytes, trusted_public_keys)

        if not consent.get("portability"):
            raise ConsentError("Portability not consented")

        try:
            incoming = ChittyDNA.from_dict(state_dict)
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidDocumentError(f"Invalid document state: {e}") from e

        local = self.vault.load_or_empty()
        merged, imported, errors = merge_states(local, incoming, policy)
        self.vault.save(merged)

        self.audit.log_portability(
            AuditEvent.DNA_IMPORTED,
            {"pattern_count": len(incoming.workflows), "policy": policy.value},
        )
        if self.log_dir is not None:
            log_import(policy.value, imported, len(errors), data_dir=self.log_dir)
        logger.info(
            f"Imported {imported}/{len(incoming.workflows)} workflows ({policy.value}), "
            f"{len(errors)} error(s)"
        )
        return ImportResult(
            success=True, patterns=len(incoming.workflows), imported=imported, errors=errors
        )
