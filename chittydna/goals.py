"""
Learning goals: persistence and synthesis.

The synthesizer keeps the goal set focused:
- finds overlapping goals (similarity clustering)
- merges redundant goals into one
- detects keywords shared across goals
- archives goals that have not been reflected on for a while
- ranks active goals by activity
"""

import json
import logging
import math
import threading
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from chittydna.protocols import Clock, GoalNotFoundError, StoragePort
from chittydna.types import GoalStatus, LearningGoal, iso, parse_datetime, utc_now

logger = logging.getLogger(__name__)

GOALS_KEY = "learning-goals.json"
SYNTHESIS_LOG = "pipeline/synthesis.jsonl"

MERGE_THRESHOLD = 0.7
LINK_THRESHOLD = 0.4
STALE_DAYS = 30

STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by from is are was were be been
    being have has had do does did will would could should may might must about
    started learning
    """.split()
)


# =============================================================================
# Text helpers
# =============================================================================


def extract_words(text: str) -> List[str]:
    """Distinct significant words of a text, in order of first appearance.

    Lower-cases, strips everything but [a-z0-9], keeps words longer than
    two characters that are not stop words.
    """
    words: Dict[str, None] = {}
    for raw in text.lower().split():
        word = "".join(ch for ch in raw if ("a" <= ch <= "z") or ("0" <= ch <= "9"))
        if len(word) > 2 and word not in STOP_WORDS:
            words[word] = None
    return list(words)


def extract_keywords(text: str, limit: int = 5) -> List[str]:
    return extract_words(text)[:limit]


def jaccard(a: Sequence[str], b: Sequence[str]) -> float:
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def similarity(a: LearningGoal, b: LearningGoal) -> float:
    """Weighted similarity of two goals, in [0, 1].

    0.4 * concept word overlap + 0.3 if both name the same CLI
    + 0.3 * insight word overlap.
    """
    score = 0.4 * jaccard(extract_words(a.concept), extract_words(b.concept))
    if a.related_cli and a.related_cli == b.related_cli:
        score += 0.3
    score += 0.3 * jaccard(extract_words(" ".join(a.insights)), extract_words(" ".join(b.insights)))
    return min(1.0, max(0.0, score))


# =============================================================================
# Result types
# =============================================================================


@dataclass
class GoalCluster:
    master_goal: LearningGoal
    related_goals: List[LearningGoal]
    similarity: float
    merge_recommendation: str  # "merge" | "link"
    reason: str


@dataclass
class CrossPattern:
    goal_ids: List[str]
    goals: List[str]
    pattern: str
    frequency: int
    description: str


@dataclass
class MergeResult:
    id: str
    concept: str
    related_cli: Optional[str]
    insights: List[str] = field(default_factory=list)
    source_goals: List[str] = field(default_factory=list)


# =============================================================================
# Persistence
# =============================================================================


class GoalStore:
    """Learning goals persisted as one JSON document."""

    def __init__(self, storage: StoragePort, clock: Clock = utc_now, key: str = GOALS_KEY):
        self.storage = storage
        self.clock = clock
        self.key = key
        # Held across load() and save() by anything that read-modify-writes goals
        self.lock = threading.RLock()

    def load(self) -> List[LearningGoal]:
        raw = self.storage.read_bytes(self.key)
        if raw is None:
            return []
        try:
            return [LearningGoal.from_dict(g) for g in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Could not parse learning goals: {e}")
            return []

    def save(self, goals: List[LearningGoal]) -> None:
        payload = json.dumps([g.to_dict() for g in goals], indent=2)
        self.storage.write_bytes(self.key, payload.encode("utf-8"))

    def get(self, goal_id: str) -> Optional[LearningGoal]:
        for goal in self.load():
            if goal.id == goal_id:
                return goal
        return None

    def create(
        self,
        concept: str,
        related_cli: Optional[str] = None,
        insights: Optional[List[str]] = None,
    ) -> LearningGoal:
        """Create and persist a new active goal."""
        if not concept or not concept.strip():
            raise ValueError("Goal concept cannot be empty")
        now = iso(self.clock())
        goal = LearningGoal(
            id=f"goal_{uuid.uuid4().hex[:12]}",
            concept=concept.strip(),
            related_cli=related_cli,
            created_at=now,
            last_reflected_at=now,
        )
        for insight in insights or []:
            goal.add_insight(insight)
        with self.lock:
            goals = self.load()
            goals.append(goal)
            self.save(goals)
        logger.info(f"Created learning goal {goal.id}: {goal.concept}")
        return goal

    def record_reflection(self, goal_id: str, insight: Optional[str] = None) -> LearningGoal:
        """Accrue an insight onto a goal and bump its reflection counters.

        Raises:
            GoalNotFoundError: If no goal has that id
        """
        with self.lock:
            goals = self.load()
            for goal in goals:
                if goal.id == goal_id:
                    if insight:
                        goal.add_insight(insight)
                    goal.reflection_count += 1
                    goal.last_reflected_at = iso(self.clock())
                    self.save(goals)
                    return goal
        raise GoalNotFoundError(f"Goal {goal_id!r} not found")


# =============================================================================
# Synthesis
# =============================================================================


class GoalSynthesizer:
    """Clusters, merges, archives and ranks learning goals."""

    def __init__(
        self,
        store: GoalStore,
        clock: Optional[Clock] = None,
        link_threshold: float = LINK_THRESHOLD,
        merge_threshold: float = MERGE_THRESHOLD,
        stale_days: int = STALE_DAYS,
    ):
        if not 0.0 <= link_threshold <= merge_threshold <= 1.0:
            raise ValueError("Thresholds must satisfy 0 <= link <= merge <= 1")
        self.store = store
        self.clock = clock or store.clock
        self.link_threshold = link_threshold
        self.merge_threshold = merge_threshold
        self.stale_days = stale_days

    similarity = staticmethod(similarity)

    def analyze_overlap(self) -> List[GoalCluster]:
        """Greedy single-pass clustering of active goals.

        Each unclustered goal seeds a cluster of every other unclustered
        goal at or above the link threshold. A goal joins at most one
        cluster.
        """
        active = [g for g in self.store.load() if g.status == GoalStatus.ACTIVE]
        clusters: List[GoalCluster] = []
        clustered = set()

        for goal in active:
            if goal.id in clustered:
                continue
            related: List[LearningGoal] = []
            best = 0.0
            for other in active:
                if other.id == goal.id or other.id in clustered:
                    continue
                score = similarity(goal, other)
                if score >= self.link_threshold:
                    related.append(other)
                    clustered.add(other.id)
                    best = max(best, score)

            if related:
                clustered.add(goal.id)
                clusters.append(
                    GoalCluster(
                        master_goal=goal,
                        related_goals=related,
                        similarity=best,
                        merge_recommendation="merge" if best >= self.merge_threshold else "link",
                        reason=self._explain(goal, related[0], best),
                    )
                )
        return clusters

    def _explain(self, a: LearningGoal, b: LearningGoal, score: float) -> str:
        reasons = []
        if a.related_cli and a.related_cli == b.related_cli:
            reasons.append(f"both relate to {a.related_cli} CLI")
        other_words = set(extract_words(b.concept))
        shared = [w for w in extract_words(a.concept) if w in other_words]
        if shared:
            reasons.append(f"shared concepts: {', '.join(shared[:3])}")
        if not reasons:
            reasons.append(f"{score * 100:.0f}% content overlap")
        return "; ".join(reasons)

    def merge_goals(self, goal_ids: List[str]) -> MergeResult:
        """Merge goals into the one with the most reflections.

        Ties go to the goal listed first in ``goal_ids``. Insights are
        unioned, the CLI is the first one set, and the concept is rebuilt
        from the words the input concepts share.

        Raises:
            GoalNotFoundError: If none of the ids exist
        """
        with self.store.lock:
            goals = self.store.load()
            by_id = {g.id: g for g in goals}
            to_merge = []
            for goal_id in goal_ids:
                goal = by_id.get(goal_id)
                if goal is not None and goal not in to_merge:
                    to_merge.append(goal)
            if not to_merge:
                raise GoalNotFoundError(f"No goals found to merge among {goal_ids}")

            master = to_merge[0]
            for goal in to_merge[1:]:
                if goal.reflection_count > master.reflection_count:
                    master = goal

            insights: List[str] = []
            for goal in to_merge:
                for insight in goal.insights:
                    if insight not in insights:
                        insights.append(insight)

            related_cli = next((g.related_cli for g in to_merge if g.related_cli), None)
            concept = self._synthesize_concept([g.concept for g in to_merge], master.concept)

            master.concept = concept
            master.insights = insights
            master.related_cli = related_cli
            master.last_reflected_at = iso(self.clock())

            merged_away = {g.id for g in to_merge if g.id != master.id}
            self.store.save([g for g in goals if g.id not in merged_away])

        result = MergeResult(
            id=master.id,
            concept=concept,
            related_cli=related_cli,
            insights=list(insights),
            source_goals=[g.id for g in to_merge],
        )
        self._log("merge", {"goal_ids": result.source_goals, "result_id": master.id})
        logger.info(f"Merged {len(to_merge)} goals into {master.id}")
        return result

    @staticmethod
    def _synthesize_concept(concepts: List[str], fallback: str) -> str:
        counts: Counter = Counter()
        for concept in concepts:
            counts.update(extract_words(concept))
        # Counter.most_common keeps first-seen order among equal counts
        shared = [word for word, n in counts.most_common() if n >= 2][:4]
        if not shared:
            return fallback
        return " + ".join(shared)

    def find_cross_patterns(self) -> List[CrossPattern]:
        """Insight keywords that appear in two or more active goals."""
        active = [g for g in self.store.load() if g.status == GoalStatus.ACTIVE]
        keyword_goals: Dict[str, List[str]] = {}
        for goal in active:
            for insight in goal.insights:
                for keyword in extract_keywords(insight):
                    ids = keyword_goals.setdefault(keyword, [])
                    if goal.id not in ids:
                        ids.append(goal.id)

        concepts = {g.id: g.concept for g in active}
        patterns = []
        for keyword, ids in keyword_goals.items():
            if len(ids) < 2:
                continue
            names = [concepts.get(i, "unknown") for i in ids]
            patterns.append(
                CrossPattern(
                    goal_ids=ids,
                    goals=names,
                    pattern=keyword,
                    frequency=len(ids),
                    description=f'Pattern "{keyword}" appears in {len(ids)} goals: {", ".join(names)}',
                )
            )
        patterns.sort(key=lambda p: p.frequency, reverse=True)
        return patterns

    def _days_since(self, timestamp: str) -> Optional[int]:
        then = parse_datetime(timestamp)
        if then is None:
            return None
        return math.floor((self.clock() - then).total_seconds() / 86400)

    def prioritize_goals(self) -> List[LearningGoal]:
        """Active goals, most deserving of attention first."""
        scored = []
        for goal in self.store.load():
            if goal.status != GoalStatus.ACTIVE:
                continue
            days = self._days_since(goal.last_reflected_at)
            score = max(0, 30 - days) if days is not None else 0
            score += min(goal.reflection_count * 2, 20)
            score += len(goal.insights)
            if goal.related_cli:
                score += 5
            scored.append((score, goal))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [goal for _, goal in scored]

    def archive_stale_goals(self) -> List[str]:
        """Mark active goals not reflected on for more than stale_days as dormant."""
        with self.store.lock:
            goals = self.store.load()
            archived = []
            for goal in goals:
                if goal.status != GoalStatus.ACTIVE:
                    continue
                days = self._days_since(goal.last_reflected_at)
                if days is None:
                    logger.warning(f"Goal {goal.id} has an unreadable last_reflected_at")
                    continue
                if days > self.stale_days:
                    goal.status = GoalStatus.DORMANT
                    archived.append(goal.id)
            if archived:
                self.store.save(goals)

        if archived:
            self._log("archive", {"archived_ids": archived})
            logger.info(f"Archived {len(archived)} stale goal(s)")
        return archived

    def _set_status(self, goal_id: str, expected: Optional[GoalStatus], new: GoalStatus) -> bool:
        with self.store.lock:
            goals = self.store.load()
            goal = next((g for g in goals if g.id == goal_id), None)
            if goal is None:
                return False
            if expected is not None and goal.status != expected:
                return False
            goal.status = new
            if new == GoalStatus.ACTIVE:
                goal.last_reflected_at = iso(self.clock())
            self.store.save(goals)
        return True

    def reactivate_goal(self, goal_id: str) -> bool:
        """Bring a dormant goal back. Returns False unless it was dormant."""
        ok = self._set_status(goal_id, GoalStatus.DORMANT, GoalStatus.ACTIVE)
        if ok:
            self._log("reactivate", {"goal_id": goal_id})
        return ok

    def mark_mastered(self, goal_id: str) -> bool:
        ok = self._set_status(goal_id, GoalStatus.ACTIVE, GoalStatus.MASTERED)
        if ok:
            self._log("master", {"goal_id": goal_id})
        return ok

    def get_stats(self) -> Dict[str, Any]:
        goals = self.store.load()
        total_insights = sum(len(g.insights) for g in goals)
        return {
            "total": len(goals),
            "active": sum(1 for g in goals if g.status == GoalStatus.ACTIVE),
            "mastered": sum(1 for g in goals if g.status == GoalStatus.MASTERED),
            "dormant": sum(1 for g in goals if g.status == GoalStatus.DORMANT),
            "avg_insights": total_insights / len(goals) if goals else 0,
        }

    def _log(self, action: str, data: Dict[str, Any]) -> None:
        entry = {"timestamp": iso(self.clock()), "action": action}
        entry.update(data)
        self.store.storage.append_line(SYNTHESIS_LOG, json.dumps(entry, sort_keys=True))
