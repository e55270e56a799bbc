"""Tests for chittydna.core.LearningCore wiring."""

import json
from unittest.mock import patch

from chittydna import LearningCore, __version__
from chittydna.config import ChittyDNAConfig
from chittydna.storage import FileStorage
from chittydna.sync import HttpRemoteServices
from chittydna.types import ChittyDNA, EventContext

from conftest import make_workflow


class TestWiring:
    def test_services_share_storage(self, core, storage):
        assert core.vault.storage is storage
        assert core.audit.storage is storage
        assert core.pipeline.vault is core.vault
        assert core.portability.vault is core.vault
        assert core.sync_client.storage is storage

    def test_offline_without_token(self, core):
        assert core.remote is None
        assert core.sync_client.remote is None

    def test_remote_built_from_token(self, tmp_path, clock):
        config = ChittyDNAConfig(data_dir=tmp_path, auth_token="tok")
        with LearningCore(config=config, clock=clock, capture_context=False) as core:
            assert isinstance(core.remote, HttpRemoteServices)

    def test_config_thresholds_applied(self, tmp_path, clock):
        config = ChittyDNAConfig(data_dir=tmp_path, snapshot_cap=2, export_interval_hours=1)
        with LearningCore(config=config, clock=clock, capture_context=False) as core:
            assert core.vault.snapshot_cap == 2
            assert core.portability.export_interval.total_seconds() == 3600

    def test_version_string(self):
        assert isinstance(__version__, str)


class TestFileBacked:
    def test_default_storage_is_data_dir(self, tmp_path, clock):
        """Without an explicit storage the core persists under config.data_dir."""
        config = ChittyDNAConfig(data_dir=tmp_path)
        with LearningCore(config=config, clock=clock, capture_context=False) as core:
            assert isinstance(core.storage, FileStorage)
            core.vault.save(ChittyDNA(workflows=[make_workflow("wf1")]))
            core.pipeline.observe("prompt")

        assert any(tmp_path.rglob("*.jsonl"))
        with LearningCore(config=config, clock=clock, capture_context=False) as reopened:
            assert reopened.vault.load().find_workflow("wf1") is not None
            assert reopened.pipeline.get_state().event_count == 1

    def test_vault_events_logged(self, tmp_path, clock):
        config = ChittyDNAConfig(data_dir=tmp_path)
        with LearningCore(config=config, clock=clock, capture_context=False) as core:
            core.vault.save(ChittyDNA())
        logs = list((tmp_path / "logs").glob("*.log"))
        assert logs
        assert "save" in logs[0].read_text()

    def test_from_config_file(self, tmp_path, clock):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"data_dir": str(tmp_path / "data"), "reflect_every": 3}))
        with LearningCore.from_config_file(path, clock=clock, capture_context=False) as core:
            assert core.config.reflect_every == 3
            for _ in range(3):
                core.pipeline.observe("prompt")
            assert core.pipeline.scheduler.pending() == ["reflect"]


class TestContextCapture:
    def test_goal_ids_attached(self, storage, clock, config):
        with LearningCore(config=config, storage=storage, clock=clock) as core:
            goal = core.goals.create("git rebasing", related_cli="git")
            with patch("chittydna.core.capture_context", return_value=EventContext(cwd="/x")) as capture:
                event = core.pipeline.observe("prompt")
            capture.assert_called_once_with(learning_goal_ids=[goal.id])
            assert event.context.cwd == "/x"
