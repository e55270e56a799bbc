"""
Shared record types for chittydna.

All learning-state dataclasses live here. They are the vocabulary shared by
the vault, the audit log, the goal synthesizer, the pipeline and the
portability layer. Every record knows how to turn itself into a plain
JSON-compatible dict and back, which is the form used for encryption,
hashing and export.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    """Render a datetime as an ISO-8601 string (UTC, 'Z' suffix)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string, returning None when it cannot be parsed."""
    if not s or not isinstance(s, str):
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def canonical_json(obj: Any) -> str:
    """Deterministic JSON rendering used for hashing, signing and encryption."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(data) -> str:
    """SHA-256 hex digest of a str or bytes value."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hash_sensitive(value: Any) -> str:
    """Hash an arbitrary value so it can be recorded without its content."""
    return sha256_hex(json.dumps(value, sort_keys=True, default=str))


# === Enums ===


class EventKind(str, Enum):
    """Kinds of interaction events the pipeline observes."""

    TOOL_PRE = "tool_pre"
    TOOL_POST = "tool_post"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    PROMPT = "prompt"
    ERROR = "error"
    SUCCESS = "success"
    NOTIFICATION = "notification"


class GoalStatus(str, Enum):
    ACTIVE = "active"
    MASTERED = "mastered"
    DORMANT = "dormant"


class AuditEvent(str, Enum):
    """Event kinds recorded in the audit log."""

    PATTERN_LEARNED = "pattern_learned"
    PATTERN_INVOKED = "pattern_invoked"
    PATTERN_EVOLVED = "pattern_evolved"
    EVENT_OBSERVED = "event_observed"
    DNA_EXPORTED = "dna_exported"
    DNA_IMPORTED = "dna_imported"
    DNA_REVOKED = "dna_revoked"


class PrivacyMode(str, Enum):
    """Privacy transform applied to an export.

    ZK is declared by the export format but not supported; asking for it
    is always an error.
    """

    FULL = "full"
    HASH_ONLY = "hash-only"
    ZK = "zk"


class ConflictPolicy(str, Enum):
    """How an imported entity is reconciled with a local one of the same id."""

    MERGE = "merge"
    REPLACE = "replace"
    RENAME = "rename"
    SKIP = "skip"


# === Events ===


@dataclass
class EventContext:
    """Snapshot of where an event happened."""

    cwd: str = ""
    git_branch: Optional[str] = None
    git_status: Optional[str] = None  # "clean" | "dirty"
    project_type: Optional[str] = None
    recent_files: List[str] = field(default_factory=list)
    learning_goal_ids: List[str] = field(default_factory=list)
    session_duration: float = 0.0
    platform: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cwd": self.cwd,
            "git_branch": self.git_branch,
            "git_status": self.git_status,
            "project_type": self.project_type,
            "recent_files": list(self.recent_files),
            "learning_goal_ids": list(self.learning_goal_ids),
            "session_duration": self.session_duration,
            "platform": self.platform,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EventContext":
        data = data or {}
        return cls(
            cwd=data.get("cwd", ""),
            git_branch=data.get("git_branch"),
            git_status=data.get("git_status"),
            project_type=data.get("project_type"),
            recent_files=list(data.get("recent_files") or []),
            learning_goal_ids=list(data.get("learning_goal_ids") or []),
            session_duration=data.get("session_duration", 0.0),
            platform=data.get("platform", "unknown"),
        )


@dataclass(frozen=True)
class LearningEvent:
    """One observed interaction. Immutable once appended to the event log."""

    id: str
    kind: EventKind
    timestamp: str
    context: EventContext = field(default_factory=EventContext)
    tool_name: Optional[str] = None
    success: Optional[bool] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.success is False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "tool_name": self.tool_name,
            "context": self.context.to_dict(),
            "timestamp": self.timestamp,
            "success": self.success,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningEvent":
        return cls(
            id=data["id"],
            kind=EventKind(data["kind"]),
            timestamp=data["timestamp"],
            context=EventContext.from_dict(data.get("context")),
            tool_name=data.get("tool_name"),
            success=data.get("success"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class PipelineState:
    """Phase counters for the learning pipeline. Persisted after every change."""

    event_count: int = 0
    last_reflection: Optional[str] = None
    last_synthesis: Optional[str] = None
    last_proposal: Optional[str] = None
    last_sync: Optional[str] = None
    active_proposals: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_count": self.event_count,
            "last_reflection": self.last_reflection,
            "last_synthesis": self.last_synthesis,
            "last_proposal": self.last_proposal,
            "last_sync": self.last_sync,
            "active_proposals": self.active_proposals,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineState":
        return cls(
            event_count=int(data.get("event_count", 0)),
            last_reflection=data.get("last_reflection"),
            last_synthesis=data.get("last_synthesis"),
            last_proposal=data.get("last_proposal"),
            last_sync=data.get("last_sync"),
            active_proposals=int(data.get("active_proposals", 0)),
        )


# === Goals ===


@dataclass
class LearningGoal:
    """A tracked learning topic."""

    id: str
    concept: str
    related_cli: Optional[str]
    created_at: str
    last_reflected_at: str
    reflection_count: int = 0
    insights: List[str] = field(default_factory=list)
    current_focus: str = ""
    status: GoalStatus = GoalStatus.ACTIVE

    def add_insight(self, insight: str) -> bool:
        """Add an insight unless it is already recorded. Returns True if added."""
        if insight in self.insights:
            return False
        self.insights.append(insight)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "concept": self.concept,
            "related_cli": self.related_cli,
            "created_at": self.created_at,
            "last_reflected_at": self.last_reflected_at,
            "reflection_count": self.reflection_count,
            "insights": list(self.insights),
            "current_focus": self.current_focus,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningGoal":
        insights: List[str] = []
        for insight in data.get("insights") or []:
            if insight not in insights:
                insights.append(insight)
        return cls(
            id=data["id"],
            concept=data.get("concept", ""),
            related_cli=data.get("related_cli"),
            created_at=data.get("created_at", ""),
            last_reflected_at=data.get("last_reflected_at", data.get("created_at", "")),
            reflection_count=int(data.get("reflection_count", 0)),
            insights=insights,
            current_focus=data.get("current_focus", ""),
            status=GoalStatus(data.get("status", "active")),
        )


# === Aggregate state (vault contents) ===


@dataclass
class WorkflowPattern:
    type: str  # "regex" | "semantic" | "hybrid"
    value: str
    hash: str


@dataclass
class Workflow:
    """A learned behavioral pattern ("gene")."""

    id: str
    name: str
    pattern: WorkflowPattern
    confidence: float
    usage_count: int
    success_rate: float
    created: str
    last_evolved: str
    time_saved: float = 0.0  # minutes
    tags: List[str] = field(default_factory=list)
    content_hash: str = ""
    reveal_pattern: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "pattern": {
                "type": self.pattern.type,
                "value": self.pattern.value,
                "hash": self.pattern.hash,
            },
            "confidence": self.confidence,
            "usage_count": self.usage_count,
            "success_rate": self.success_rate,
            "created": self.created,
            "last_evolved": self.last_evolved,
            "impact": {"time_saved": self.time_saved},
            "tags": list(self.tags),
            "privacy": {
                "content_hash": self.content_hash,
                "reveal_pattern": self.reveal_pattern,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Workflow":
        pattern = data.get("pattern") or {}
        privacy = data.get("privacy") or {}
        impact = data.get("impact") or {}
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            pattern=WorkflowPattern(
                type=pattern.get("type", "semantic"),
                value=pattern.get("value", ""),
                hash=pattern.get("hash", ""),
            ),
            confidence=data.get("confidence", 0.0),
            usage_count=data.get("usage_count", 0),
            success_rate=data.get("success_rate", 0.0),
            created=data.get("created", ""),
            last_evolved=data.get("last_evolved", ""),
            time_saved=impact.get("time_saved", 0.0),
            tags=list(data.get("tags") or []),
            content_hash=privacy.get("content_hash", ""),
            reveal_pattern=privacy.get("reveal_pattern", False),
        )


@dataclass
class CommandTemplate:
    id: str
    name: str
    pattern: str
    expands_to: str
    description: Optional[str] = None
    usage_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "pattern": self.pattern,
            "expands_to": self.expands_to,
            "description": self.description,
            "usage_count": self.usage_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandTemplate":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            pattern=data.get("pattern", ""),
            expands_to=data.get("expands_to", ""),
            description=data.get("description"),
            usage_count=data.get("usage_count", 0),
        )


@dataclass
class Integration:
    """An external integration. Identified by (type, name)."""

    type: str
    name: str
    endpoint: Optional[str] = None
    enabled: bool = True

    @property
    def key(self) -> tuple:
        return (self.type, self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "endpoint": self.endpoint,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Integration":
        return cls(
            type=data["type"],
            name=data["name"],
            endpoint=data.get("endpoint"),
            enabled=data.get("enabled", True),
        )


@dataclass
class ContextMemory:
    session_id: str
    timestamp: str
    context: Dict[str, Any] = field(default_factory=dict)
    hash: str = ""
    reveal_content: bool = False

    @property
    def key(self) -> tuple:
        return (self.session_id, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "context": dict(self.context),
            "privacy": {"hash": self.hash, "reveal_content": self.reveal_content},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContextMemory":
        privacy = data.get("privacy") or {}
        return cls(
            session_id=data["session_id"],
            timestamp=data.get("timestamp", ""),
            context=dict(data.get("context") or {}),
            hash=privacy.get("hash", ""),
            reveal_content=privacy.get("reveal_content", False),
        )


@dataclass
class ChittyDNA:
    """The aggregate learning state. One logical document per user."""

    workflows: List[Workflow] = field(default_factory=list)
    preferences: Dict[str, Any] = field(default_factory=dict)
    command_templates: List[CommandTemplate] = field(default_factory=list)
    integrations: List[Integration] = field(default_factory=list)
    context_memory: List[ContextMemory] = field(default_factory=list)

    def find_workflow(self, workflow_id: str) -> Optional[Workflow]:
        for wf in self.workflows:
            if wf.id == workflow_id:
                return wf
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflows": [wf.to_dict() for wf in self.workflows],
            "preferences": dict(self.preferences),
            "command_templates": [t.to_dict() for t in self.command_templates],
            "integrations": [i.to_dict() for i in self.integrations],
            "context_memory": [c.to_dict() for c in self.context_memory],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChittyDNA":
        return cls(
            workflows=[Workflow.from_dict(w) for w in data.get("workflows") or []],
            preferences=dict(data.get("preferences") or {}),
            command_templates=[
                CommandTemplate.from_dict(t) for t in data.get("command_templates") or []
            ],
            integrations=[Integration.from_dict(i) for i in data.get("integrations") or []],
            context_memory=[
                ContextMemory.from_dict(c) for c in data.get("context_memory") or []
            ],
        )


# === Audit ===


@dataclass
class AuditEntry:
    """One audit record. Carries hashes, never raw pattern content."""

    event: AuditEvent
    timestamp: Optional[str] = None
    pattern_hash: Optional[str] = None
    confidence: Optional[float] = None
    outcome: Optional[str] = None  # "success" | "failure"
    duration_ms: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"timestamp": self.timestamp, "event": self.event.value}
        for name in ("pattern_hash", "confidence", "outcome", "duration_ms", "metadata"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            event=AuditEvent(data["event"]),
            timestamp=data.get("timestamp"),
            pattern_hash=data.get("pattern_hash"),
            confidence=data.get("confidence"),
            outcome=data.get("outcome"),
            duration_ms=data.get("duration_ms"),
            metadata=data.get("metadata"),
        )
