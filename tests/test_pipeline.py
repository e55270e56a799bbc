"""Tests for chittydna.pipeline: ingestion, triggers and the learning phases."""

import json
from unittest.mock import patch

import pytest

from chittydna.core import LearningCore
from chittydna.events import EVENTS_KEY
from chittydna.pipeline import LearningPipeline
from chittydna.types import AuditEvent, ChittyDNA, EventContext, EventKind

from conftest import make_workflow


@pytest.fixture
def pipeline(core):
    return core.pipeline


def observe_prompts(pipeline, n):
    for _ in range(n):
        pipeline.observe(EventKind.PROMPT)


class TestObserve:
    def test_sensitive_metadata_never_logged(self, pipeline, storage):
        pipeline.observe(
            "tool_post",
            tool_name="Bash",
            success=True,
            metadata={"command": "git push origin main", "api_token": "s3cret", "exit_code": 0},
        )
        raw = "\n".join(storage.read_lines(EVENTS_KEY))
        assert "s3cret" not in raw
        assert "git push" not in raw

        event = pipeline.events.all()[0]
        assert set(event.metadata) == {"command_hash", "api_token_hash", "exit_code"}

    def test_returns_without_running_phases(self, pipeline):
        observe_prompts(pipeline, 10)
        assert pipeline.scheduler.pending() == ["reflect"]
        assert pipeline.get_state().last_reflection is None

    def test_event_count_persisted(self, core, storage, clock, config):
        observe_prompts(core.pipeline, 3)
        with LearningCore(config=config, storage=storage, clock=clock, capture_context=False) as other:
            assert other.pipeline.get_state().event_count == 3

    def test_audit_records(self, pipeline):
        pipeline.observe("tool_post", tool_name="Read", success=False, duration_ms=12.5)
        pipeline.observe("session_start")

        invoked = pipeline.audit.get_entries(event=AuditEvent.PATTERN_INVOKED)
        assert len(invoked) == 1
        assert invoked[0].outcome == "failure"
        assert invoked[0].duration_ms == 12.5
        observed = pipeline.audit.get_entries(event=AuditEvent.EVENT_OBSERVED)
        assert [e.metadata for e in observed] == [{"kind": "session_start"}]

    def test_learns_workflow(self, pipeline):
        """A successful tool run with arguments becomes a vault workflow."""
        pipeline.observe("tool_post", tool_name="Bash", success=True, metadata={"command": "make test"})

        workflows = pipeline.vault.load().workflows
        assert len(workflows) == 1
        assert workflows[0].pattern.value == "Bash make test"
        assert workflows[0].usage_count == 1
        assert len(pipeline.audit.get_entries(event=AuditEvent.PATTERN_LEARNED)) == 1

    def test_known_workflow_evolves(self, pipeline):
        for _ in range(2):
            pipeline.observe("tool_post", tool_name="Bash", success=True, metadata={"command": "make test"})

        workflow = pipeline.vault.load().workflows[0]
        assert workflow.usage_count == 2
        assert workflow.confidence == 0.75
        evolved = pipeline.audit.get_entries(event=AuditEvent.PATTERN_EVOLVED)
        assert evolved[0].metadata == {"old_confidence": 0.7, "new_confidence": 0.75}

    def test_evolution_is_capped(self, pipeline):
        for _ in range(10):
            pipeline.observe("tool_post", tool_name="Bash", success=True, metadata={"command": "ls"})
        assert pipeline.vault.load().workflows[0].confidence == 0.95

    def test_failed_run_learns_nothing(self, pipeline):
        pipeline.observe("tool_post", tool_name="Bash", success=False, metadata={"command": "make"})
        assert pipeline.vault.load() is None

    def test_context_provider(self, core, storage, clock):
        context = EventContext(cwd="/repo", project_type="python")
        pipeline = LearningPipeline(
            storage,
            core.vault,
            core.audit,
            core.goals,
            core.synthesizer,
            core.proposals,
            clock=clock,
            context_provider=lambda: context,
        )
        event = pipeline.observe("tool_post", tool_name="Bash", success=True, metadata={"command": "pytest"})
        assert event.context.cwd == "/repo"
        assert core.vault.load().workflows[0].tags == ["Bash", "python"]

    def test_explicit_context_wins(self, pipeline):
        event = pipeline.observe("prompt", context=EventContext(cwd="/elsewhere"))
        assert event.context.cwd == "/elsewhere"


class TestTriggers:
    def test_counter_thresholds(self, pipeline):
        assert pipeline.should_reflect(10)
        assert not pipeline.should_reflect(9)
        assert pipeline.should_synthesize(25)
        assert not pipeline.should_synthesize(10)
        assert pipeline.should_propose(50)
        assert not pipeline.should_propose(0)

    def test_phases_scheduled_at_fifty(self, pipeline):
        observe_prompts(pipeline, 49)
        pipeline.run_pending()
        pipeline.observe("prompt")
        assert pipeline.scheduler.pending() == ["propose", "reflect", "synthesize"]

    def test_failure_density_overrides_counter(self, pipeline):
        """More than five failures in the last ten events triggers reflection early."""
        for _ in range(5):
            pipeline.observe("tool_post", tool_name="Bash", success=False)
        assert pipeline.scheduler.pending() == []

        pipeline.observe("tool_post", tool_name="Bash", success=False)
        assert pipeline.scheduler.pending() == ["reflect"]

    def test_repeated_trigger_coalesces(self, pipeline):
        observe_prompts(pipeline, 20)
        records = pipeline.run_pending()
        assert [r.phase for r in records] == ["reflect"]


class TestPhases:
    def test_run_pending_executes(self, pipeline):
        observe_prompts(pipeline, 10)
        records = pipeline.run_pending()
        assert records[0].ok
        assert pipeline.get_state().last_reflection == "2025-03-01T12:00:00Z"

    def test_background_worker(self, pipeline):
        pipeline.start()
        observe_prompts(pipeline, 10)
        assert pipeline.wait_idle(timeout=5)
        assert pipeline.get_state().last_reflection is not None

    def test_untriggered_phases_are_noops(self, pipeline):
        assert pipeline.reflect().patterns == []
        assert pipeline.synthesize().merged_goals == []
        assert pipeline.propose().all() == []
        state = pipeline.get_state()
        assert state.last_reflection is None
        assert state.last_synthesis is None
        assert state.last_proposal is None

    def test_forced_reflection_creates_goals(self, pipeline):
        for _ in range(10):
            pipeline.observe("tool_post", tool_name="Grep", success=True)
        result = pipeline.reflect(force=True)
        assert len(result.goals_created) == 1
        assert pipeline.goals.get(result.goals_created[0]).related_cli == "Grep"

    def test_synthesis_merges_similar_goals(self, core, pipeline):
        first = core.goals.create("docker builds", related_cli="docker", insights=["layer caching"])
        second = core.goals.create("docker builds", related_cli="docker", insights=["layer caching"])

        result = pipeline.synthesize(force=True)
        assert len(result.merged_goals) == 1
        assert result.merged_goals[0].merged_goal_ids == [first.id, second.id]
        assert len(core.goals.load()) == 1
        assert pipeline.get_state().last_synthesis == "2025-03-01T12:00:00Z"

    def test_synthesis_creates_workflows(self, core, pipeline):
        """A keyword shared by three goals becomes an auto-workflow in the vault."""
        core.goals.create("release management", related_cli="helm", insights=["kubectl rollout stalled"])
        core.goals.create("cluster access", related_cli="aws", insights=["kubectl context switching"])
        core.goals.create("log analysis", related_cli="stern", insights=["kubectl logs tailing"])

        result = pipeline.synthesize(force=True)
        assert result.merged_goals == []
        [workflow] = result.new_workflows
        assert workflow.name == "Auto-workflow from 3 goals"
        assert workflow.steps == ["kubectl"]
        assert workflow.confidence == pytest.approx(0.6)
        assert workflow.trigger.startswith("When working on: ")

        stored = core.vault.load().workflows
        assert len(stored) == 1
        assert stored[0].tags == ["synthesized", "kubectl"]

        pipeline.synthesize(force=True)
        assert len(core.vault.load().workflows) == 1

    def test_synthesis_archives_stale_goals(self, core, pipeline, clock):
        goal = core.goals.create("vim macros")
        clock.advance(days=31)
        result = pipeline.synthesize(force=True)
        assert result.stale_dormant_goals == [goal.id]

    def test_propose_keeps_confident(self, core, pipeline):
        core.vault.save(ChittyDNA(workflows=[make_workflow("deploy", usage_count=5)]))
        kept = pipeline.propose(force=True)
        assert [p.name for p in kept.commands] == ["deploy-workflow"]
        assert pipeline.get_state().active_proposals == 1

        pipeline.propose(force=True)
        assert len(core.proposals.load()) == 1

    def test_propose_cutoff_from_config(self, core, pipeline):
        core.config.proposal_min_confidence = 0.95
        core.vault.save(ChittyDNA(workflows=[make_workflow("deploy", usage_count=5)]))
        assert pipeline.propose(force=True).all() == []
        assert core.proposals.load() == []


class TestSync:
    def test_offline_sync(self, pipeline, core):
        core.vault.save(ChittyDNA(workflows=[make_workflow("wf1")]))
        result = pipeline.sync()
        assert result.success is False
        assert result.errors == ["Authentication failed - running in offline mode"]
        assert pipeline.get_state().last_sync == result.timestamp
        assert core.sync_client.pending()[0]["service"] == "registry"

    def test_not_configured(self, core, storage, clock):
        pipeline = LearningPipeline(
            storage, core.vault, core.audit, core.goals, core.synthesizer, core.proposals, clock=clock
        )
        assert pipeline.sync().errors == ["Sync is not configured"]

    def test_never_raises(self, pipeline):
        with patch.object(pipeline.vault, "load_or_empty", side_effect=RuntimeError("disk gone")):
            result = pipeline.sync()
        assert result.errors == ["Vault unavailable: disk gone"]

    def test_client_failure_reported(self, pipeline):
        with patch.object(pipeline.sync_client, "sync", side_effect=RuntimeError("boom")):
            result = pipeline.sync()
        assert result.errors == ["Sync failed: boom"]
        assert pipeline.get_state().last_sync == result.timestamp


class TestStats:
    def test_stats(self, pipeline):
        observe_prompts(pipeline, 3)
        stats = pipeline.get_stats()
        assert stats["event_count"] == 3
        assert stats["proposal_count"] == 0
        assert stats["last_activity"] is None
        assert stats["goals"]["total"] == 0
        assert stats["scheduled"] == []

    def test_last_activity(self, pipeline, clock):
        pipeline.reflect(force=True)
        clock.advance(hours=2)
        pipeline.synthesize(force=True)
        assert pipeline.get_stats()["last_activity"] == "2025-03-01T14:00:00Z"

    def test_state_file_is_json(self, pipeline, storage):
        observe_prompts(pipeline, 2)
        assert json.loads(storage.read_bytes("pipeline/state.json"))["event_count"] == 2
