"""Event capture for the learning pipeline.

Builds LearningEvent records, strips sensitive content out of their
metadata, captures the working context, and turns successful tool runs
into workflow genes.
"""

import json
import logging
import os
import subprocess
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from chittydna.protocols import Clock, StoragePort
from chittydna.types import (
    EventContext,
    EventKind,
    LearningEvent,
    Workflow,
    WorkflowPattern,
    canonical_json,
    hash_sensitive,
    iso,
    sha256_hex,
    utc_now,
)

logger = logging.getLogger(__name__)

EVENTS_KEY = "pipeline/events.jsonl"

# Metadata keys whose values are replaced by "<key>_hash" before logging.
# Matched as substrings of the lower-cased key.
SENSITIVE_KEY_PARTS = (
    "password",
    "passwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
    "cookie",
)
# Raw user content. Also hashed; only the vault ever sees it.
CONTENT_KEYS = frozenset(
    {
        "command",
        "args",
        "arguments",
        "input",
        "tool_input",
        "output",
        "tool_output",
        "prompt",
        "content",
    }
)
ARGUMENT_KEYS = ("tool_input", "args", "arguments", "command", "input")

PROJECT_INDICATORS = {
    "node": ["package.json"],
    "python": ["requirements.txt", "pyproject.toml", "setup.py"],
    "rust": ["Cargo.toml"],
    "go": ["go.mod"],
    "cloudflare": ["wrangler.toml"],
    "docker": ["Dockerfile", "docker-compose.yml"],
}


def new_event_id(clock: Clock = utc_now) -> str:
    millis = int(clock().timestamp() * 1000)
    return f"evt_{millis}_{uuid.uuid4().hex[:7]}"


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return lowered in CONTENT_KEYS or any(part in lowered for part in SENSITIVE_KEY_PARTS)


def classify_error(message: Any) -> str:
    """Reduce an error message to a coarse category."""
    text = str(message).lower()
    if "permission" in text or "access denied" in text or "eacces" in text:
        return "permission"
    if "not found" in text or "no such file" in text or "enoent" in text:
        return "not_found"
    if "timeout" in text or "timed out" in text:
        return "timeout"
    if "connection" in text or "network" in text or "econnrefused" in text:
        return "network"
    if "syntax" in text or "parse" in text:
        return "syntax"
    return "other"


def sanitize_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Copy of metadata with sensitive values replaced by hashes.

    ``{"token": "abc"}`` becomes ``{"token_hash": "<sha256>"}``. An
    ``error`` string becomes ``error_kind`` plus ``error_hash``.
    """
    clean: Dict[str, Any] = {}
    for key, value in (metadata or {}).items():
        if key == "error" and value is not None:
            clean["error_kind"] = classify_error(value)
            clean["error_hash"] = hash_sensitive(value)
        elif _is_sensitive(key):
            clean[f"{key}_hash"] = hash_sensitive(value)
        elif isinstance(value, dict):
            clean[key] = sanitize_metadata(value)
        else:
            clean[key] = value
    return clean


# === Context capture ===


def _git(cwd: Path, *args: str) -> Optional[str]:
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=2,
            check=False,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip()


def detect_project_type(directory: Path) -> Optional[str]:
    for project_type, files in PROJECT_INDICATORS.items():
        for name in files:
            if (directory / name).exists():
                return project_type
    return None


def detect_platform() -> str:
    if os.environ.get("CLAUDE_CODE"):
        return "claude_code"
    if os.environ.get("CLAUDE_DESKTOP"):
        return "claude_desktop"
    if os.environ.get("CHITTYDNA_CLI"):
        return "cli"
    return "unknown"


def capture_context(
    cwd: Optional[Path] = None,
    learning_goal_ids: Optional[List[str]] = None,
    session_duration: float = 0.0,
) -> EventContext:
    """Snapshot of the current working context."""
    directory = Path(cwd) if cwd is not None else Path.cwd()
    branch = _git(directory, "branch", "--show-current")
    status = None
    if branch is not None:
        porcelain = _git(directory, "status", "--porcelain")
        if porcelain is not None:
            status = "dirty" if porcelain else "clean"
    return EventContext(
        cwd=str(directory),
        git_branch=branch or None,
        git_status=status,
        project_type=detect_project_type(directory),
        learning_goal_ids=list(learning_goal_ids or []),
        session_duration=session_duration,
        platform=detect_platform(),
    )


# === Event construction ===


def build_event(
    kind: EventKind,
    tool_name: Optional[str] = None,
    success: Optional[bool] = None,
    metadata: Optional[Dict[str, Any]] = None,
    context: Optional[EventContext] = None,
    clock: Clock = utc_now,
) -> LearningEvent:
    """Create an immutable event with sanitized metadata."""
    return LearningEvent(
        id=new_event_id(clock),
        kind=EventKind(kind),
        timestamp=iso(clock()),
        context=context if context is not None else EventContext(),
        tool_name=tool_name,
        success=success,
        metadata=sanitize_metadata(metadata),
    )


def extract_workflow(
    kind: EventKind,
    tool_name: Optional[str],
    success: Optional[bool],
    metadata: Optional[Dict[str, Any]],
    context: Optional[EventContext] = None,
    clock: Clock = utc_now,
) -> Optional[Workflow]:
    """Turn a successful tool run into a workflow gene.

    Works on the raw (unsanitized) metadata. Returns None unless the event
    is a successful ``tool_post`` that carries tool arguments.
    """
    if EventKind(kind) != EventKind.TOOL_POST or success is not True or not tool_name:
        return None
    arguments = None
    for key in ARGUMENT_KEYS:
        if (metadata or {}).get(key):
            arguments = metadata[key]
            break
    if arguments is None:
        return None

    if isinstance(arguments, str):
        rendered = arguments
    else:
        rendered = canonical_json(arguments)
    value = f"{tool_name} {rendered}"
    content_hash = sha256_hex(value)
    now = iso(clock())

    tags = [tool_name]
    if context is not None and context.project_type:
        tags.append(context.project_type)

    return Workflow(
        id=f"tool-{tool_name}-{content_hash[:12]}",
        name=f"{tool_name} workflow",
        pattern=WorkflowPattern(type="semantic", value=value, hash=content_hash),
        confidence=0.7,
        usage_count=1,
        success_rate=1.0,
        created=now,
        last_evolved=now,
        tags=tags,
        content_hash=content_hash,
        reveal_pattern=False,
    )


class EventLog:
    """Append-only event log (JSON lines)."""

    def __init__(self, storage: StoragePort, key: str = EVENTS_KEY):
        self.storage = storage
        self.key = key

    def append(self, event: LearningEvent) -> None:
        self.storage.append_line(self.key, json.dumps(event.to_dict(), sort_keys=True))

    def all(self) -> List[LearningEvent]:
        events = []
        for line in self.storage.read_lines(self.key):
            try:
                events.append(LearningEvent.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as e:
                logger.debug(f"Skipping unreadable event line: {e}")
        return events

    def recent(self, limit: int) -> List[LearningEvent]:
        """The last ``limit`` events, oldest first."""
        if limit <= 0:
            return []
        return self.all()[-limit:]
