"""Tests for robotloop.config."""

import pytest

from robotloop.config import RobotloopConfig


class TestDefaults:
    def test_loop_defaults(self):
        cfg = RobotloopConfig()
        assert cfg.loop.max_cycles == 100
        assert cfg.loop.cycle_interval_seconds == 3.0
        assert cfg.loop.attention_wait_seconds == 300.0
        assert cfg.loop.max_attention_retries == 1
        assert cfg.loop.replan_context_entries == 3

    def test_api_defaults(self):
        cfg = RobotloopConfig()
        assert cfg.api.max_attempts == 3
        assert cfg.api.initial_backoff_seconds == 1.0
        assert cfg.api.max_backoff_seconds == 30.0


class TestLoadSave:
    def test_missing_file_gives_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ROBOTLOOP_API_BASE_URL", raising=False)
        cfg = RobotloopConfig.load(tmp_path / "none.json")
        assert cfg.api.base_url == ""

    def test_round_trip(self, tmp_path):
        path = tmp_path / "config.json"
        cfg = RobotloopConfig()
        cfg.loop.max_cycles = 42
        cfg.escalation.origin = "email"
        cfg.save(path)

        loaded = RobotloopConfig.load(path)
        assert loaded.loop.max_cycles == 42
        assert loaded.escalation.origin == "email"

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        cfg = RobotloopConfig()
        cfg.api.base_url = "https://from-file"
        cfg.save(path)

        monkeypatch.setenv("ROBOTLOOP_API_BASE_URL", "https://from-env")
        monkeypatch.setenv("ROBOTLOOP_API_KEY", "env-key")
        loaded = RobotloopConfig.load(path)
        assert loaded.api.base_url == "https://from-env"
        assert loaded.api.api_key == "env-key"

    def test_load_without_env(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        cfg = RobotloopConfig()
        cfg.api.base_url = "https://from-file"
        cfg.save(path)

        monkeypatch.setenv("ROBOTLOOP_API_BASE_URL", "https://from-env")
        monkeypatch.setenv("ROBOTLOOP_API_KEY", "env-key")
        loaded = RobotloopConfig.load(path, env=False)
        assert loaded.api.base_url == "https://from-file"
        assert loaded.api.api_key == ""


class TestSetValue:
    def test_coerces_to_current_type(self):
        cfg = RobotloopConfig()
        cfg.set_value("loop.max_cycles", "50")
        cfg.set_value("loop.cycle_interval_seconds", "1.5")
        cfg.set_value("api.base_url", "https://api")
        assert cfg.loop.max_cycles == 50
        assert cfg.loop.cycle_interval_seconds == 1.5
        assert cfg.api.base_url == "https://api"

    @pytest.mark.parametrize("key", ["loop", "nope.max_cycles", "loop.nope"])
    def test_unknown_keys(self, key):
        with pytest.raises(ValueError, match="Unknown config key"):
            RobotloopConfig().set_value(key, "1")

    def test_bad_number(self):
        with pytest.raises(ValueError):
            RobotloopConfig().set_value("loop.max_cycles", "many")
