"""The learning pipeline: observe, reflect, synthesize, propose, sync.

``observe()`` is the only ingestion path. It records the sanitized event,
updates the vault and counters, and schedules whichever phases the new
event count triggers. Phases never run inside ``observe()``; they run on
the ``PhaseScheduler`` (a worker thread after ``start()``, or the caller's
thread via ``run_pending()``).
"""

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from chittydna.audit import AuditLog
from chittydna.config import ChittyDNAConfig
from chittydna.events import EventLog, build_event, extract_workflow
from chittydna.goals import CrossPattern, GoalStore, GoalSynthesizer
from chittydna.proposals import ProposalGenerator, ProposalSet, ProposalStore
from chittydna.protocols import Clock, StoragePort
from chittydna.reflection import ReflectionResult, Reflector
from chittydna.scheduler import PhaseScheduler
from chittydna.sync import SyncClient, SyncResult
from chittydna.types import (
    AuditEntry,
    AuditEvent,
    EventContext,
    EventKind,
    LearningEvent,
    PipelineState,
    Workflow,
    WorkflowPattern,
    iso,
    sha256_hex,
    utc_now,
)
from chittydna.vault import Vault

logger = logging.getLogger(__name__)

STATE_KEY = "pipeline/state.json"

# Confidence added to a known workflow each time it is seen again
EVOLVE_STEP = 0.05
MAX_LEARNED_CONFIDENCE = 0.95
AUTO_WORKFLOW_MIN_FREQUENCY = 3


@dataclass
class MergedGoal:
    master_goal_id: str
    merged_goal_ids: List[str]
    new_insights: List[str] = field(default_factory=list)


@dataclass
class SynthesizedWorkflow:
    id: str
    name: str
    steps: List[str]
    trigger: str
    confidence: float


@dataclass
class SynthesisResult:
    merged_goals: List[MergedGoal] = field(default_factory=list)
    new_workflows: List[SynthesizedWorkflow] = field(default_factory=list)
    cross_patterns: List[CrossPattern] = field(default_factory=list)
    stale_dormant_goals: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LearningPipeline:
    """Event ingestion plus the four threshold-gated learning phases.

    Args:
        storage: Storage for the event log and pipeline state.
        vault: Encrypted learning state.
        audit: Audit log.
        goals: Learning goal store.
        synthesizer: Goal synthesizer over ``goals``.
        proposals: Proposal store.
        sync_client: Sync phase client (None disables sync).
        config: Trigger thresholds and window sizes.
        clock: Time source.
        context_provider: Called for events observed without a context.
    """

    def __init__(
        self,
        storage: StoragePort,
        vault: Vault,
        audit: AuditLog,
        goals: GoalStore,
        synthesizer: GoalSynthesizer,
        proposals: ProposalStore,
        sync_client: Optional[SyncClient] = None,
        config: Optional[ChittyDNAConfig] = None,
        clock: Clock = utc_now,
        context_provider: Optional[Callable[[], EventContext]] = None,
    ):
        self.storage = storage
        self.vault = vault
        self.audit = audit
        self.goals = goals
        self.synthesizer = synthesizer
        self.proposals = proposals
        self.sync_client = sync_client
        self.config = config or ChittyDNAConfig()
        self.clock = clock
        self.context_provider = context_provider

        self.events = EventLog(storage)
        self.reflector = Reflector(storage, goals, clock=clock)
        self.generator = ProposalGenerator(clock=clock)

        self._state_lock = threading.RLock()
        self._vault_lock = threading.RLock()
        self._state = self._load_state()

        self.scheduler = PhaseScheduler(
            {
                "reflect": lambda: self.reflect(force=True),
                "synthesize": lambda: self.synthesize(force=True),
                "propose": lambda: self.propose(force=True),
            },
            clock=clock,
        )

    # === State ===

    def _load_state(self) -> PipelineState:
        raw = self.storage.read_bytes(STATE_KEY)
        if raw is None:
            return PipelineState()
        try:
            return PipelineState.from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Pipeline state is unreadable, starting fresh: {e}")
            return PipelineState()

    def _save_state(self) -> None:
        self.storage.write_bytes(
            STATE_KEY, json.dumps(self._state.to_dict(), indent=2).encode("utf-8")
        )

    def _update_state(self, **changes: Any) -> None:
        with self._state_lock:
            for name, value in changes.items():
                setattr(self._state, name, value)
            self._save_state()

    def get_state(self) -> PipelineState:
        with self._state_lock:
            return replace(self._state)

    # === Observe ===

    def observe(
        self,
        kind: EventKind,
        tool_name: Optional[str] = None,
        success: Optional[bool] = None,
        metadata: Optional[Dict[str, Any]] = None,
        context: Optional[EventContext] = None,
        duration_ms: float = 0.0,
    ) -> LearningEvent:
        """Record one event and schedule any phases it triggers.

        Sensitive metadata is hashed before the event is written. Returns
        without running any phase.
        """
        kind = EventKind(kind)
        if context is None and self.context_provider is not None:
            context = self.context_provider()

        event = build_event(kind, tool_name, success, metadata, context, clock=self.clock)
        self.events.append(event)

        if kind == EventKind.TOOL_POST and tool_name:
            outcome = "success" if success else "failure"
            self.audit.log_pattern_invoked(tool_name, outcome, duration_ms)
        else:
            self.audit.log(AuditEntry(event=AuditEvent.EVENT_OBSERVED, metadata={"kind": kind.value}))

        workflow = extract_workflow(kind, tool_name, success, metadata, context, clock=self.clock)
        if workflow is not None:
            self._learn_workflow(workflow)

        with self._state_lock:
            self._state.event_count += 1
            self._save_state()
            count = self._state.event_count

        for phase in self._triggered_phases(count):
            self.scheduler.schedule(phase)
        return event

    def _learn_workflow(self, workflow: Workflow) -> None:
        with self._vault_lock:
            state = self.vault.load_or_empty()
            known = next(
                (wf for wf in state.workflows if wf.pattern.hash == workflow.pattern.hash), None
            )
            if known is None:
                state.workflows.append(workflow)
                self.vault.save(state)
                self.audit.log_pattern_learned(workflow.pattern.value, workflow.confidence)
                logger.info(f"Learned workflow {workflow.id}")
                return

            old_confidence = known.confidence
            known.usage_count += 1
            known.last_evolved = iso(self.clock())
            known.confidence = min(MAX_LEARNED_CONFIDENCE, round(old_confidence + EVOLVE_STEP, 4))
            self.vault.save(state)
            if known.confidence != old_confidence:
                self.audit.log_pattern_evolved(known.pattern.value, old_confidence, known.confidence)

    # === Triggers ===

    def _recent_failures(self) -> int:
        return sum(1 for e in self.events.recent(self.config.failure_window) if e.failed)

    def should_reflect(self, count: Optional[int] = None) -> bool:
        count = self._state.event_count if count is None else count
        if self._recent_failures() > self.config.failure_threshold:
            return True
        return count > 0 and count % self.config.reflect_every == 0

    def should_synthesize(self, count: Optional[int] = None) -> bool:
        count = self._state.event_count if count is None else count
        return count > 0 and count % self.config.synthesize_every == 0

    def should_propose(self, count: Optional[int] = None) -> bool:
        count = self._state.event_count if count is None else count
        return count > 0 and count % self.config.propose_every == 0

    def _triggered_phases(self, count: int) -> List[str]:
        phases = []
        if self.should_reflect(count):
            phases.append("reflect")
        if self.should_synthesize(count):
            phases.append("synthesize")
        if self.should_propose(count):
            phases.append("propose")
        return phases

    # === Scheduling ===

    def start(self) -> None:
        """Run triggered phases on a background worker."""
        self.scheduler.start()

    def run_pending(self):
        """Run queued phases on the calling thread."""
        return self.scheduler.run_pending()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.scheduler.wait_idle(timeout)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        self.scheduler.shutdown(wait=wait, timeout=timeout)

    # === Phases ===

    def _window(self) -> List[LearningEvent]:
        return self.events.recent(self.config.event_window)

    def reflect(self, force: bool = False) -> ReflectionResult:
        if not force and not self.should_reflect():
            return ReflectionResult()
        result = self.reflector.reflect(self._window())
        self._update_state(last_reflection=iso(self.clock()))
        return result

    def synthesize(self, force: bool = False) -> SynthesisResult:
        if not force and not self.should_synthesize():
            return SynthesisResult()

        result = SynthesisResult()
        for cluster in self.synthesizer.analyze_overlap():
            if cluster.merge_recommendation != "merge" or not cluster.related_goals:
                continue
            goal_ids = [cluster.master_goal.id] + [g.id for g in cluster.related_goals]
            merged = self.synthesizer.merge_goals(goal_ids)
            result.merged_goals.append(
                MergedGoal(
                    master_goal_id=merged.id,
                    merged_goal_ids=goal_ids,
                    new_insights=list(merged.insights),
                )
            )

        result.cross_patterns = self.synthesizer.find_cross_patterns()
        result.stale_dormant_goals = self.synthesizer.archive_stale_goals()
        result.new_workflows = self._synthesize_workflows(result.cross_patterns)

        self._update_state(last_synthesis=iso(self.clock()))
        logger.info(
            f"Synthesis: {len(result.merged_goals)} merges, "
            f"{len(result.cross_patterns)} cross patterns, "
            f"{len(result.stale_dormant_goals)} archived"
        )
        return result

    def _synthesize_workflows(self, cross_patterns: List[CrossPattern]) -> List[SynthesizedWorkflow]:
        synthesized = [
            SynthesizedWorkflow(
                id=f"wf_{uuid.uuid4().hex[:12]}",
                name=f"Auto-workflow from {len(cp.goals)} goals",
                steps=[cp.pattern],
                trigger=f"When working on: {', '.join(cp.goals)}",
                confidence=min(cp.frequency / 5, 0.9),
            )
            for cp in cross_patterns
            if cp.frequency >= AUTO_WORKFLOW_MIN_FREQUENCY
        ]
        if not synthesized:
            return []

        now = iso(self.clock())
        with self._vault_lock:
            state = self.vault.load_or_empty()
            known = {wf.pattern.hash for wf in state.workflows}
            added = []
            for item in synthesized:
                value = f"{item.steps[0]} | {item.trigger}"
                pattern_hash = sha256_hex(value)
                if pattern_hash in known:
                    continue
                known.add(pattern_hash)
                added.append(
                    Workflow(
                        id=item.id,
                        name=item.name,
                        pattern=WorkflowPattern(type="semantic", value=value, hash=pattern_hash),
                        confidence=item.confidence,
                        usage_count=0,
                        success_rate=0.0,
                        created=now,
                        last_evolved=now,
                        tags=["synthesized", item.steps[0]],
                        content_hash=pattern_hash,
                    )
                )
            if added:
                state.workflows.extend(added)
                self.vault.save(state)
                for wf in added:
                    self.audit.log_pattern_learned(wf.pattern.value, wf.confidence)
        return synthesized

    def propose(self, force: bool = False) -> ProposalSet:
        """Generate proposals and keep those at or above the pipeline cutoff."""
        if not force and not self.should_propose():
            return ProposalSet()

        state = self.vault.load_or_empty()
        generated = self.generator.generate(self._window(), state)
        kept = generated.filtered(self.config.proposal_min_confidence)
        self.proposals.add(kept)
        self._update_state(
            last_proposal=iso(self.clock()),
            active_proposals=len(self.proposals.pending()),
        )
        logger.info(f"Proposals: {len(kept.all())} of {len(generated.all())} kept")
        return kept

    def sync(self) -> SyncResult:
        """Push learned state to the remote services. Never raises."""
        if self.sync_client is None:
            return SyncResult(
                timestamp=iso(self.clock()), errors=["Sync is not configured"]
            )
        try:
            state = self.vault.load_or_empty()
        except Exception as e:
            logger.error(f"Could not load vault for sync: {e}")
            return SyncResult(timestamp=iso(self.clock()), errors=[f"Vault unavailable: {e}"])

        try:
            result = self.sync_client.sync(state)
        except Exception as e:
            logger.error(f"Sync failed: {e}", exc_info=True)
            result = SyncResult(timestamp=iso(self.clock()), errors=[f"Sync failed: {e}"])
        try:
            self._update_state(last_sync=result.timestamp)
        except Exception as e:
            logger.error(f"Could not record sync time: {e}")
            result.errors.append(f"Could not record sync time: {e}")
        return result

    # === Stats ===

    def get_stats(self) -> Dict[str, Any]:
        state = self.get_state()
        last_activity = max(
            (
                t
                for t in (
                    state.last_reflection,
                    state.last_synthesis,
                    state.last_proposal,
                    state.last_sync,
                )
                if t
            ),
            default=None,
        )
        return {
            "event_count": state.event_count,
            "proposal_count": len(self.proposals.load()),
            "pending_proposals": len(self.proposals.pending()),
            "last_activity": last_activity,
            "goals": self.synthesizer.get_stats(),
            "scheduled": self.scheduler.pending(),
        }
