"""Tests for chittydna.config."""

import json
from pathlib import Path

import pytest

from chittydna.config import DEFAULT_SERVICES, ChittyDNAConfig, get_chittydna_home, load_config
from chittydna.protocols import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Point the data dir at tmp_path and drop other chittydna variables."""
    for name in ("CHITTYDNA_LOG_LEVEL", "CHITTYDNA_TOKEN", "CHITTYDNA_REMOTE_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CHITTYDNA_DATA_DIR", str(tmp_path))


class TestDefaults:
    def test_thresholds(self):
        config = ChittyDNAConfig()
        assert config.reflect_every == 10
        assert config.synthesize_every == 25
        assert config.propose_every == 50
        assert config.proposal_min_confidence == 0.75
        assert config.failure_window == 10
        assert config.failure_threshold == 5
        assert config.event_window == 100
        assert config.snapshot_cap == 30
        assert config.stale_days == 30
        assert config.link_threshold == 0.4
        assert config.merge_threshold == 0.7
        assert config.export_interval_hours == 24
        assert config.remote_timeout == 10
        assert config.services == DEFAULT_SERVICES

    def test_home_from_env(self, tmp_path):
        assert get_chittydna_home() == tmp_path

    def test_home_default(self, monkeypatch):
        monkeypatch.delenv("CHITTYDNA_DATA_DIR")
        assert get_chittydna_home() == Path.home() / ".chittycan"

    def test_to_dict_drops_token(self):
        data = ChittyDNAConfig(auth_token="secret").to_dict()
        assert "auth_token" not in data
        assert isinstance(data["data_dir"], str)


class TestLoadConfig:
    def test_no_file(self, tmp_path):
        config = load_config()
        assert config.data_dir == tmp_path
        assert config.reflect_every == 10

    def test_file_values(self, tmp_path):
        (tmp_path / "config.json").write_text(
            json.dumps({"reflect_every": 5, "services": {"registry": "http://localhost:9000"}})
        )
        config = load_config()
        assert config.reflect_every == 5
        assert config.services["registry"] == "http://localhost:9000"
        assert config.services["auth"] == DEFAULT_SERVICES["auth"]

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "other.json"
        path.write_text(json.dumps({"snapshot_cap": 7}))
        assert load_config(path).snapshot_cap == 7

    def test_env_wins_over_file(self, tmp_path, monkeypatch):
        (tmp_path / "config.json").write_text(json.dumps({"remote_timeout": 3}))
        monkeypatch.setenv("CHITTYDNA_REMOTE_TIMEOUT", "20")
        monkeypatch.setenv("CHITTYDNA_TOKEN", "tok")
        config = load_config()
        assert config.remote_timeout == 20.0
        assert config.auth_token == "tok"

    def test_invalid_json_ignored(self, tmp_path, caplog):
        (tmp_path / "config.json").write_text("{broken")
        config = load_config()
        assert config.reflect_every == 10
        assert "Could not read config file" in caplog.text

    def test_unknown_key_warns(self, tmp_path, caplog):
        (tmp_path / "config.json").write_text(json.dumps({"colour": "blue"}))
        load_config()
        assert "Ignoring unknown config key 'colour'" in caplog.text

    @pytest.mark.parametrize(
        "values",
        [{"reflect_every": "often"}, {"reflect_every": 0}, {"merge_threshold": -1}, {"snapshot_cap": True}],
    )
    def test_invalid_numbers_raise(self, tmp_path, values):
        (tmp_path / "config.json").write_text(json.dumps(values))
        with pytest.raises(ConfigError, match="Invalid value"):
            load_config()

    def test_invalid_env_number_raises(self, monkeypatch):
        monkeypatch.setenv("CHITTYDNA_REMOTE_TIMEOUT", "soon")
        with pytest.raises(ConfigError, match="remote_timeout"):
            load_config()
