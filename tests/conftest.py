"""
Pytest fixtures and test configuration for chittydna tests.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from chittydna.config import ChittyDNAConfig
from chittydna.core import LearningCore
from chittydna.storage import MemoryStorage
from chittydna.types import (
    ChittyDNA,
    CommandTemplate,
    ContextMemory,
    Integration,
    Workflow,
    WorkflowPattern,
    sha256_hex,
)

START = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock. Call it for the current time; advance() moves it."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_workflow(
    workflow_id: str = "wf1",
    value: Optional[str] = None,
    usage_count: int = 1,
    confidence: float = 0.7,
    time_saved: float = 0.0,
    tags: Optional[List[str]] = None,
) -> Workflow:
    value = value if value is not None else f"git status {workflow_id}"
    digest = sha256_hex(value)
    return Workflow(
        id=workflow_id,
        name=f"{workflow_id} workflow",
        pattern=WorkflowPattern(type="semantic", value=value, hash=digest),
        confidence=confidence,
        usage_count=usage_count,
        success_rate=1.0,
        created="2025-01-01T00:00:00Z",
        last_evolved="2025-01-01T00:00:00Z",
        time_saved=time_saved,
        tags=list(tags or []),
        content_hash=digest,
    )


def make_state(*workflows: Workflow) -> ChittyDNA:
    return ChittyDNA(
        workflows=list(workflows),
        preferences={"editor": "vim"},
        command_templates=[
            CommandTemplate(id="tpl1", name="status", pattern="st", expands_to="git status")
        ],
        integrations=[Integration(type="mcp", name="github", endpoint="https://example.test")],
        context_memory=[
            ContextMemory(
                session_id="s1",
                timestamp="2025-01-01T00:00:00Z",
                context={"task": "refactor"},
                hash=sha256_hex("refactor"),
            )
        ],
    )


@pytest.fixture
def storage():
    """In-memory storage port."""
    return MemoryStorage()


@pytest.fixture
def clock():
    """Controllable clock starting at 2025-03-01 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return ChittyDNAConfig(data_dir=tmp_path)


@pytest.fixture
def core(storage, clock, config):
    """A fully wired LearningCore over memory storage, offline, no context capture."""
    learning_core = LearningCore(
        config=config, storage=storage, clock=clock, capture_context=False
    )
    yield learning_core
    learning_core.close()
