"""Reflection phase: pattern detection over the recent event window.

Looks for repeated tool sequences, heavily used tools and peak activity
hours, analyzes failures, suggests improvements for unreliable tools, and
feeds what it finds back into the learning goals.
"""

import json
import logging
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from chittydna.goals import GoalStore
from chittydna.protocols import Clock, StoragePort
from chittydna.types import (
    EventKind,
    GoalStatus,
    LearningEvent,
    iso,
    parse_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

REFLECTIONS_KEY = "pipeline/reflections.jsonl"

MIN_SEQUENCE_COUNT = 3
MIN_TOOL_FREQUENCY = 10
MAX_FAILURES = 10

FIXES_BY_KIND = {
    "permission": ["Check file/directory permissions", "Try running with elevated privileges"],
    "not_found": ["Verify the path exists", "Check for typos in the command"],
    "timeout": ["Increase timeout value", "Check network connectivity"],
    "network": ["Check network connectivity", "Retry once the service is reachable"],
    "syntax": ["Check the command syntax", "Quote arguments that contain spaces"],
}


@dataclass
class DetectedPattern:
    id: str
    type: str  # "sequence" | "frequency" | "time"
    description: str
    confidence: float
    occurrences: int
    last_seen: str
    tools: List[str] = field(default_factory=list)


@dataclass
class FailureAnalysis:
    command: str
    error_kind: str
    suggested_fixes: List[str] = field(default_factory=list)
    similar_successes: List[str] = field(default_factory=list)


@dataclass
class ImprovementSuggestion:
    area: str
    current: str
    suggested: str
    impact: str  # "medium" | "high"


@dataclass
class ReflectionResult:
    patterns: List[DetectedPattern] = field(default_factory=list)
    failures: List[FailureAnalysis] = field(default_factory=list)
    improvements: List[ImprovementSuggestion] = field(default_factory=list)
    insights: List[str] = field(default_factory=list)
    goals_updated: List[str] = field(default_factory=list)
    goals_created: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _pattern_id() -> str:
    return f"pat_{uuid.uuid4().hex[:12]}"


def _tool_events(events: List[LearningEvent]) -> List[LearningEvent]:
    return [e for e in events if e.kind == EventKind.TOOL_POST and e.tool_name]


def find_sequences(events: List[LearningEvent]) -> List[Tuple[List[str], int, str]]:
    """Repeated 3-tool windows over completed tool runs.

    Returns ``(tools, count, last_seen)`` for every window seen at least
    twice, most frequent first.
    """
    tool_events = _tool_events(events)
    counts: Dict[Tuple[str, ...], int] = {}
    last_seen: Dict[Tuple[str, ...], str] = {}
    for i in range(len(tool_events) - 2):
        window = tuple(e.tool_name for e in tool_events[i : i + 3])
        counts[window] = counts.get(window, 0) + 1
        last_seen[window] = tool_events[i + 2].timestamp
    found = [(list(w), c, last_seen[w]) for w, c in counts.items() if c >= 2]
    found.sort(key=lambda item: item[1], reverse=True)
    return found


def tool_frequencies(events: List[LearningEvent]) -> Dict[str, int]:
    return dict(Counter(e.tool_name for e in _tool_events(events)))


def detect_patterns(events: List[LearningEvent], clock: Clock = utc_now) -> List[DetectedPattern]:
    patterns: List[DetectedPattern] = []
    fallback_seen = events[-1].timestamp if events else iso(clock())

    for tools, count, seen in find_sequences(events):
        if count >= MIN_SEQUENCE_COUNT:
            patterns.append(
                DetectedPattern(
                    id=_pattern_id(),
                    type="sequence",
                    description=f"Repeated sequence: {' -> '.join(tools)}",
                    confidence=min(count / 5, 0.95),
                    occurrences=count,
                    last_seen=seen,
                    tools=tools,
                )
            )

    for tool, count in tool_frequencies(events).items():
        if count >= MIN_TOOL_FREQUENCY:
            patterns.append(
                DetectedPattern(
                    id=_pattern_id(),
                    type="frequency",
                    description=f"High-frequency tool: {tool} ({count} uses)",
                    confidence=0.9,
                    occurrences=count,
                    last_seen=fallback_seen,
                    tools=[tool],
                )
            )

    hours: Counter = Counter()
    for event in events:
        ts = parse_datetime(event.timestamp)
        if ts is not None:
            hours[ts.hour] += 1
    if hours:
        peak_hour, count = hours.most_common(1)[0]
        patterns.append(
            DetectedPattern(
                id=_pattern_id(),
                type="time",
                description=f"Peak activity at {peak_hour}:00 ({count} events)",
                confidence=0.8,
                occurrences=count,
                last_seen=fallback_seen,
            )
        )
    return patterns


def analyze_failures(events: List[LearningEvent]) -> List[FailureAnalysis]:
    """The most recent failures with fixes suggested from their error kind."""
    analyses = []
    for failure in [e for e in events if e.failed][-MAX_FAILURES:]:
        kind = failure.metadata.get("error_kind", "unknown")
        similar = [
            json.dumps(e.metadata, sort_keys=True)
            for e in events
            if e.success is True and e.tool_name == failure.tool_name
        ][:3]
        analyses.append(
            FailureAnalysis(
                command=failure.tool_name or "unknown",
                error_kind=kind,
                suggested_fixes=list(FIXES_BY_KIND.get(kind, [])),
                similar_successes=similar,
            )
        )
    return analyses


def find_improvements(events: List[LearningEvent]) -> List[ImprovementSuggestion]:
    stats: Dict[str, List[int]] = {}
    for event in _tool_events(events):
        entry = stats.setdefault(event.tool_name, [0, 0])
        entry[1] += 1
        if event.success is True:
            entry[0] += 1

    suggestions = []
    for tool, (ok, total) in stats.items():
        rate = ok / total
        if rate < 0.7 and total >= 5:
            suggestions.append(
                ImprovementSuggestion(
                    area=tool,
                    current=f"{rate * 100:.0f}% success rate",
                    suggested="Review common failure patterns and add error handling",
                    impact="high" if rate < 0.5 else "medium",
                )
            )
    return suggestions


def generate_insights(events: List[LearningEvent], patterns: List[DetectedPattern]) -> List[str]:
    insights = []
    outcomes = [e.success for e in events if e.success is not None]
    if outcomes:
        rate = sum(1 for ok in outcomes if ok) / len(outcomes)
        if rate >= 0.9:
            insights.append(f"Excellent performance: {rate * 100:.0f}% success rate")
        elif rate < 0.7:
            insights.append(f"Room for improvement: {rate * 100:.0f}% success rate")
    for pattern in patterns:
        if pattern.confidence > 0.8:
            insights.append(pattern.description)
    return insights


class Reflector:
    """Runs reflection over an event window and updates learning goals."""

    def __init__(self, storage: StoragePort, goals: GoalStore, clock: Clock = utc_now):
        self.storage = storage
        self.goals = goals
        self.clock = clock

    def reflect(self, events: List[LearningEvent]) -> ReflectionResult:
        patterns = detect_patterns(events, clock=self.clock)
        result = ReflectionResult(
            patterns=patterns,
            failures=analyze_failures(events),
            improvements=find_improvements(events),
            insights=generate_insights(events, patterns),
        )
        self._update_goals(patterns, result)

        entry = {"timestamp": iso(self.clock())}
        entry.update(result.to_dict())
        self.storage.append_line(REFLECTIONS_KEY, json.dumps(entry, sort_keys=True))
        logger.info(
            f"Reflection: {len(patterns)} patterns, {len(result.failures)} failures, "
            f"{len(result.goals_created)} new goals"
        )
        return result

    def _update_goals(self, patterns: List[DetectedPattern], result: ReflectionResult) -> None:
        for pattern in patterns:
            if pattern.type not in ("sequence", "frequency") or not pattern.tools:
                continue
            tool = pattern.tools[0]
            concept = (
                f"{' then '.join(pattern.tools)} workflow"
                if pattern.type == "sequence"
                else f"{tool} usage"
            )
            goal_id = self._match_goal(concept, tool)
            if goal_id is not None:
                self.goals.record_reflection(goal_id, pattern.description)
                if goal_id not in result.goals_updated and goal_id not in result.goals_created:
                    result.goals_updated.append(goal_id)
            else:
                goal = self.goals.create(concept, related_cli=tool, insights=[pattern.description])
                result.goals_created.append(goal.id)

    def _match_goal(self, concept: str, tool: str) -> Optional[str]:
        active = [g for g in self.goals.load() if g.status == GoalStatus.ACTIVE]
        for goal in active:
            if goal.concept == concept:
                return goal.id
        for goal in active:
            if goal.related_cli == tool:
                return goal.id
        return None
