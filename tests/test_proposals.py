"""Tests for chittydna.proposals."""

import pytest

from chittydna.events import build_event
from chittydna.proposals import Proposal, ProposalGenerator, ProposalSet, ProposalStore
from chittydna.types import ChittyDNA, EventKind

from conftest import make_workflow


@pytest.fixture
def generator(clock):
    return ProposalGenerator(clock=clock)


def tool_events(clock, tools, success=True, metadata=None):
    return [build_event(EventKind.TOOL_POST, t, success, metadata, clock=clock) for t in tools]


class TestGenerator:
    def test_skill_from_sequence(self, generator, clock):
        skills = generator.generate_skills(tool_events(clock, ["Read", "Edit", "Bash"] * 3))
        assert len(skills) == 1
        assert skills[0].name == "read-edit-bash-flow"
        assert skills[0].confidence == pytest.approx(0.8)
        assert skills[0].status == "pending"
        assert skills[0].id.startswith("skill-")

    def test_command_from_heavy_workflow(self, generator):
        state = ChittyDNA(workflows=[make_workflow("wf1", usage_count=5), make_workflow("wf2", usage_count=2)])
        commands = generator.generate_commands(state)
        assert len(commands) == 1
        assert commands[0].confidence == pytest.approx(0.9)
        assert commands[0].details["workflow_id"] == "wf1"

    def test_command_references_hash_not_pattern(self, generator):
        workflow = make_workflow("wf1", value="scp secrets.txt prod:", usage_count=9)
        commands = generator.generate_commands(ChittyDNA(workflows=[workflow]))
        assert commands[0].source_patterns == [workflow.pattern.hash]
        assert "secrets" not in str(commands[0].to_dict())

    def test_agent_from_failures(self, generator, clock):
        events = tool_events(clock, ["git-commit"] * 5, success=False, metadata={"error": "timed out"})
        agents = generator.generate_agents(events)
        assert len(agents) == 1
        assert agents[0].name == "git-operations-agent"
        assert agents[0].details["error_kinds"] == {"timeout": 5}

    def test_worker_from_tags(self, generator):
        state = ChittyDNA(
            workflows=[make_workflow(f"wf{i}", tags=["deploy"]) for i in range(10)]
        )
        workers = generator.generate_workers(state)
        assert len(workers) == 1
        assert workers[0].name == "deploy-worker"
        assert workers[0].confidence == pytest.approx(0.85)

    def test_below_minimums_nothing(self, generator, clock):
        proposals = generator.generate(tool_events(clock, ["Bash"] * 2), ChittyDNA())
        assert proposals.all() == []
        assert proposals.total_confidence == 0.0


class TestProposalSet:
    def test_filtered_and_average(self, clock):
        def p(kind, confidence):
            return Proposal(id=f"{kind}-1", type=kind, name=kind, description="", confidence=confidence, created_at="")

        proposals = ProposalSet(skills=[p("skill", 0.8)], commands=[p("command", 0.7)], workers=[p("worker", 0.9)])
        assert proposals.total_confidence == pytest.approx(0.8)
        kept = proposals.filtered(0.75)
        assert [x.type for x in kept.all()] == ["skill", "worker"]


class TestProposalStore:
    def _set(self, generator, clock):
        return ProposalSet(skills=generator.generate_skills(tool_events(clock, ["Read", "Edit", "Bash"] * 3)))

    def test_add_and_dedupe(self, storage, clock, generator):
        store = ProposalStore(storage, clock=clock)
        assert len(store.add(self._set(generator, clock))) == 1
        assert store.add(self._set(generator, clock)) == []
        assert len(store.load()) == 1

    def test_accept_and_reject(self, storage, clock, generator):
        store = ProposalStore(storage, clock=clock)
        added = store.add(self._set(generator, clock))[0]
        assert store.pending()[0].id == added.id

        assert store.accept(added.id).status == "accepted"
        assert store.get(added.id).status == "accepted"
        assert store.pending() == []
        assert store.reject("skill-missing") is None

    def test_corrupt_file(self, storage, clock):
        storage.write_bytes("pipeline/proposals.json", b"[")
        assert ProposalStore(storage, clock=clock).load() == []
