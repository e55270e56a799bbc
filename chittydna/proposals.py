"""Proposal generation: skills, commands, agents and workers.

Proposals are suggestions derived from learned behavior. They are stored
in ``pipeline/proposals.json`` and move from ``pending`` to ``accepted``
or ``rejected`` only by an explicit caller decision. Proposal records
reference workflows by pattern hash, never by raw pattern text.
"""

import json
import logging
import threading
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from chittydna.protocols import Clock, StoragePort
from chittydna.reflection import find_sequences
from chittydna.types import ChittyDNA, LearningEvent, iso, utc_now

logger = logging.getLogger(__name__)

PROPOSALS_KEY = "pipeline/proposals.json"

# Below this nothing is proposed at all; the pipeline filters higher still.
MIN_CONFIDENCE = 0.7

PROPOSAL_TYPES = ("skill", "command", "agent", "worker")

TOOLS_BY_CATEGORY = {
    "git-operations": ["Bash", "Read", "Write"],
    "container-management": ["Bash"],
    "package-management": ["Bash", "Read", "Write"],
    "testing": ["Bash", "Read"],
    "general": ["Bash", "Read", "Write", "Glob", "Grep"],
}


@dataclass
class Proposal:
    id: str
    type: str  # "skill" | "command" | "agent" | "worker"
    name: str
    description: str
    confidence: float
    created_at: str
    source_patterns: List[str] = field(default_factory=list)
    status: str = "pending"
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "confidence": self.confidence,
            "created_at": self.created_at,
            "source_patterns": list(self.source_patterns),
            "status": self.status,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proposal":
        return cls(
            id=data["id"],
            type=data["type"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            confidence=data.get("confidence", 0.0),
            created_at=data.get("created_at", ""),
            source_patterns=list(data.get("source_patterns") or []),
            status=data.get("status", "pending"),
            details=dict(data.get("details") or {}),
        )


@dataclass
class ProposalSet:
    skills: List[Proposal] = field(default_factory=list)
    commands: List[Proposal] = field(default_factory=list)
    agents: List[Proposal] = field(default_factory=list)
    workers: List[Proposal] = field(default_factory=list)

    def all(self) -> List[Proposal]:
        return self.skills + self.commands + self.agents + self.workers

    @property
    def total_confidence(self) -> float:
        """Average confidence of all proposals (0 when empty)."""
        proposals = self.all()
        if not proposals:
            return 0.0
        return sum(p.confidence for p in proposals) / len(proposals)

    def filtered(self, min_confidence: float) -> "ProposalSet":
        def keep(items: List[Proposal]) -> List[Proposal]:
            return [p for p in items if p.confidence >= min_confidence]

        return ProposalSet(
            skills=keep(self.skills),
            commands=keep(self.commands),
            agents=keep(self.agents),
            workers=keep(self.workers),
        )


def _categorize(tool: str) -> str:
    lowered = tool.lower()
    if "git" in lowered:
        return "git-operations"
    if "docker" in lowered:
        return "container-management"
    if "npm" in lowered or "pip" in lowered:
        return "package-management"
    if "test" in lowered:
        return "testing"
    return "general"


class ProposalGenerator:
    """Derives proposals from the event window and the learned workflows."""

    def __init__(self, clock: Clock = utc_now, min_confidence: float = MIN_CONFIDENCE):
        self.clock = clock
        self.min_confidence = min_confidence

    def _new(self, kind: str, name: str, description: str, confidence: float, **kwargs) -> Proposal:
        return Proposal(
            id=f"{kind}-{uuid.uuid4().hex[:12]}",
            type=kind,
            name=name,
            description=description,
            confidence=confidence,
            created_at=iso(self.clock()),
            **kwargs,
        )

    def generate_skills(self, events: List[LearningEvent]) -> List[Proposal]:
        proposals = []
        for tools, count, _ in find_sequences(events):
            if count < 3:
                continue
            confidence = min(0.95, 0.5 + count * 0.1)
            if confidence < self.min_confidence:
                continue
            description = f"Run {' then '.join(tools)}"
            proposals.append(
                self._new(
                    "skill",
                    "-".join(t.lower() for t in tools) + "-flow",
                    description,
                    confidence,
                    source_patterns=list(tools),
                    details={
                        "trigger": f"When user wants to {description.lower()}",
                        "target_platform": "claude_code",
                    },
                )
            )
        return proposals[:5]

    def generate_commands(self, state: ChittyDNA) -> List[Proposal]:
        proposals = []
        for workflow in sorted(state.workflows, key=lambda w: w.usage_count, reverse=True):
            if workflow.usage_count < 5:
                continue
            confidence = min(0.9, 0.5 + workflow.usage_count * 0.08)
            if confidence < self.min_confidence:
                continue
            name = "".join(ch if ch.isalnum() else "-" for ch in workflow.name.lower()).strip("-")
            proposals.append(
                self._new(
                    "command",
                    name,
                    f"Shortcut for workflow {workflow.id}",
                    confidence,
                    source_patterns=[workflow.pattern.hash],
                    details={"workflow_id": workflow.id, "usage_count": workflow.usage_count},
                )
            )
        return proposals[:5]

    def generate_agents(self, events: List[LearningEvent]) -> List[Proposal]:
        categories: Dict[str, List[LearningEvent]] = {}
        for event in events:
            if event.failed:
                categories.setdefault(_categorize(event.tool_name or ""), []).append(event)

        proposals = []
        for category, failures in sorted(categories.items(), key=lambda kv: len(kv[1]), reverse=True):
            count = len(failures)
            if count < 5:
                continue
            confidence = min(0.9, 0.5 + count * 0.08)
            if confidence < self.min_confidence:
                continue
            kinds = Counter(e.metadata.get("error_kind", "unknown") for e in failures)
            proposals.append(
                self._new(
                    "agent",
                    f"{category}-agent",
                    f"Handle {category.replace('-', ' ')} tasks",
                    confidence,
                    source_patterns=[e.metadata.get("error_hash", e.id) for e in failures],
                    details={
                        "tools": list(TOOLS_BY_CATEGORY[category]),
                        "restrictions": ["Requires user confirmation for destructive operations"],
                        "error_kinds": dict(kinds),
                    },
                )
            )
        return proposals[:3]

    def generate_workers(self, state: ChittyDNA) -> List[Proposal]:
        tag_counts: Counter = Counter()
        tag_hashes: Dict[str, List[str]] = {}
        for workflow in state.workflows:
            for tag in workflow.tags:
                tag_counts[tag] += 1
                tag_hashes.setdefault(tag, []).append(workflow.pattern.hash)

        proposals = []
        for tag, frequency in tag_counts.most_common():
            if frequency < 10:
                continue
            confidence = min(0.85, 0.5 + frequency * 0.05)
            if confidence < self.min_confidence:
                continue
            proposals.append(
                self._new(
                    "worker",
                    f"{tag}-worker",
                    f"Automate {tag} tasks",
                    confidence,
                    source_patterns=tag_hashes[tag],
                    details={"triggers": [{"type": "cron", "config": {"schedule": "0 */6 * * *"}}]},
                )
            )
        return proposals[:2]

    def generate(self, events: List[LearningEvent], state: ChittyDNA) -> ProposalSet:
        return ProposalSet(
            skills=self.generate_skills(events),
            commands=self.generate_commands(state),
            agents=self.generate_agents(events),
            workers=self.generate_workers(state),
        )


class ProposalStore:
    """Persisted proposals and their accept/reject lifecycle."""

    def __init__(self, storage: StoragePort, clock: Clock = utc_now, key: str = PROPOSALS_KEY):
        self.storage = storage
        self.clock = clock
        self.key = key
        self._lock = threading.Lock()

    def load(self) -> List[Proposal]:
        raw = self.storage.read_bytes(self.key)
        if raw is None:
            return []
        try:
            data = json.loads(raw)
            return [Proposal.from_dict(p) for p in data.get("proposals", [])]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Could not parse stored proposals: {e}")
            return []

    def _save(self, proposals: List[Proposal]) -> None:
        payload = {
            "proposals": [p.to_dict() for p in proposals],
            "last_updated": iso(self.clock()),
        }
        self.storage.write_bytes(self.key, json.dumps(payload, indent=2).encode("utf-8"))

    def add(self, proposal_set: ProposalSet) -> List[Proposal]:
        """Store new proposals. One with the same type and name as a stored
        proposal (in any status) is dropped.

        Returns:
            The proposals actually added
        """
        with self._lock:
            existing = self.load()
            seen = {(p.type, p.name) for p in existing}
            added = []
            for proposal in proposal_set.all():
                if (proposal.type, proposal.name) in seen:
                    continue
                seen.add((proposal.type, proposal.name))
                added.append(proposal)
            if added:
                self._save(existing + added)
        return added

    def get(self, proposal_id: str) -> Optional[Proposal]:
        return next((p for p in self.load() if p.id == proposal_id), None)

    def pending(self) -> List[Proposal]:
        return [p for p in self.load() if p.status == "pending"]

    def _decide(self, proposal_id: str, status: str) -> Optional[Proposal]:
        with self._lock:
            proposals = self.load()
            for proposal in proposals:
                if proposal.id == proposal_id:
                    proposal.status = status
                    self._save(proposals)
                    logger.info(f"Proposal {proposal_id} {status}")
                    return proposal
        return None

    def accept(self, proposal_id: str) -> Optional[Proposal]:
        return self._decide(proposal_id, "accepted")

    def reject(self, proposal_id: str) -> Optional[Proposal]:
        return self._decide(proposal_id, "rejected")
