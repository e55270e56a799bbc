"""
Privacy-preserving audit log.

Append-only JSON lines under ``audit/learning-events.jsonl``. Entries carry
hashes of patterns, never the patterns themselves. ``verify_integrity``
re-reads the whole log and reports problems line by line without stopping
at the first one.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from chittydna.protocols import Clock, StoragePort
from chittydna.types import (
    AuditEntry,
    AuditEvent,
    iso,
    parse_datetime,
    sha256_hex,
    utc_now,
)

logger = logging.getLogger(__name__)

AUDIT_LOG_KEY = "audit/learning-events.jsonl"


@dataclass
class IntegrityReport:
    """Result of AuditLog.verify_integrity()."""

    valid: bool = True
    lines_checked: int = 0
    errors: List[str] = field(default_factory=list)


class AuditLog:
    """Append-only, hash-only record of learning events."""

    def __init__(self, storage: StoragePort, clock: Clock = utc_now, key: str = AUDIT_LOG_KEY):
        self.storage = storage
        self.clock = clock
        self.key = key

    @staticmethod
    def hash(data: str) -> str:
        """Hash sensitive data before it is logged."""
        return sha256_hex(data)

    def log(self, entry: AuditEntry) -> AuditEntry:
        """Append an entry, stamping it with the current time if unset."""
        if entry.timestamp is None:
            entry.timestamp = iso(self.clock())
        self.storage.append_line(self.key, json.dumps(entry.to_dict(), sort_keys=True))
        return entry

    # === Typed helpers ===

    def log_pattern_learned(self, pattern: str, confidence: float) -> AuditEntry:
        return self.log(
            AuditEntry(
                event=AuditEvent.PATTERN_LEARNED,
                pattern_hash=self.hash(pattern),
                confidence=confidence,
            )
        )

    def log_pattern_invoked(self, pattern: str, outcome: str, duration_ms: float) -> AuditEntry:
        return self.log(
            AuditEntry(
                event=AuditEvent.PATTERN_INVOKED,
                pattern_hash=self.hash(pattern),
                outcome=outcome,
                duration_ms=duration_ms,
            )
        )

    def log_pattern_evolved(
        self, pattern: str, old_confidence: float, new_confidence: float
    ) -> AuditEntry:
        return self.log(
            AuditEntry(
                event=AuditEvent.PATTERN_EVOLVED,
                pattern_hash=self.hash(pattern),
                metadata={"old_confidence": old_confidence, "new_confidence": new_confidence},
            )
        )

    def log_portability(self, event: AuditEvent, metadata: Dict[str, Any]) -> AuditEntry:
        if event not in (AuditEvent.DNA_EXPORTED, AuditEvent.DNA_IMPORTED):
            raise ValueError(f"Not a portability event: {event}")
        return self.log(AuditEntry(event=event, metadata=metadata))

    def log_revocation(self) -> AuditEntry:
        return self.log(AuditEntry(event=AuditEvent.DNA_REVOKED))

    # === Reading ===

    def get_entries(
        self, event: Optional[AuditEvent] = None, since: Optional[datetime] = None
    ) -> List[AuditEntry]:
        """Parsed entries, optionally filtered. Unparseable lines are skipped."""
        entries = []
        for line in self.storage.read_lines(self.key):
            try:
                entry = AuditEntry.from_dict(json.loads(line))
            except (ValueError, KeyError, TypeError) as e:
                logger.debug(f"Skipping unreadable audit line: {e}")
                continue
            if event is not None and entry.event != event:
                continue
            if since is not None:
                ts = parse_datetime(entry.timestamp)
                if ts is None or ts < since:
                    continue
            entries.append(entry)
        return entries

    def latest(self, event: AuditEvent) -> Optional[AuditEntry]:
        """Most recent entry of a kind, by timestamp."""
        latest_entry = None
        latest_ts = None
        for entry in self.get_entries(event=event):
            ts = parse_datetime(entry.timestamp)
            if ts is None:
                continue
            if latest_ts is None or ts >= latest_ts:
                latest_entry, latest_ts = entry, ts
        return latest_entry

    def get_stats(self) -> Dict[str, Any]:
        entries = self.get_entries()
        invocations = [e for e in entries if e.event == AuditEvent.PATTERN_INVOKED]
        successes = [e for e in invocations if e.outcome == "success"]

        def count(kind: AuditEvent) -> int:
            return sum(1 for e in entries if e.event == kind)

        return {
            "total_events": len(entries),
            "patterns_learned": count(AuditEvent.PATTERN_LEARNED),
            "patterns_invoked": len(invocations),
            "patterns_evolved": count(AuditEvent.PATTERN_EVOLVED),
            "exports": count(AuditEvent.DNA_EXPORTED),
            "imports": count(AuditEvent.DNA_IMPORTED),
            "revocations": count(AuditEvent.DNA_REVOKED),
            "success_rate": len(successes) / len(invocations) if invocations else 1.0,
        }

    def verify_integrity(self) -> IntegrityReport:
        """Check every line of the log.

        Flags missing timestamp/event fields, malformed timestamps, lines
        that are not JSON objects, and any entry exposing a raw ``pattern``
        without a ``pattern_hash``.
        """
        report = IntegrityReport()
        raw = self.storage.read_bytes(self.key)
        if not raw:
            return report

        for line_number, line in enumerate(raw.decode("utf-8", errors="replace").splitlines(), 1):
            if not line.strip():
                continue
            report.lines_checked += 1
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                report.errors.append(f"Line {line_number}: Invalid JSON")
                continue
            if not isinstance(entry, dict):
                report.errors.append(f"Line {line_number}: Invalid JSON")
                continue

            if not entry.get("timestamp"):
                report.errors.append(f"Line {line_number}: Missing timestamp")
            if not entry.get("event"):
                report.errors.append(f"Line {line_number}: Missing event type")
            if entry.get("timestamp") and parse_datetime(entry["timestamp"]) is None:
                report.errors.append(f"Line {line_number}: Invalid timestamp format")
            if entry.get("pattern") and not entry.get("pattern_hash"):
                report.errors.append(
                    f"Line {line_number}: Raw pattern content detected (security violation)"
                )

        report.valid = not report.errors
        if not report.valid:
            logger.warning(f"Audit log integrity check found {len(report.errors)} problem(s)")
        return report

    def clear(self) -> None:
        self.storage.delete(self.key)
