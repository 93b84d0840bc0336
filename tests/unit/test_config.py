"""Unit tests for config loading."""

import pytest

from hivegrid.config import DEFAULT_CONFIG, load_config
from hivegrid.utils import deep_merge, expand_env_vars


@pytest.mark.unit
class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("HIVEGRID_PORT", raising=False)
        monkeypatch.delenv("HIVEGRID_PROJECT_DIR", raising=False)

        cfg = load_config(tmp_path / "missing.yml")

        assert cfg.server.port == 3001
        assert cfg.server.host == "127.0.0.1"
        assert cfg.agents.orchestrator_model == "sonnet"
        assert cfg.agents.worker_model == "haiku"
        assert cfg.git.main_branch == "main"
        assert cfg.git.merge_lock_stale_seconds == 300
        assert cfg.session.output_buffer_max_chunks == 1000

    def test_yaml_overrides_are_deep_merged(self, tmp_path, monkeypatch):
        monkeypatch.delenv("HIVEGRID_PORT", raising=False)
        monkeypatch.setenv("HG_TEST_MODEL", "opus")
        path = tmp_path / "config.yml"
        path.write_text("agents:\n  worker_model: ${HG_TEST_MODEL}\nserver:\n  port: 4000\n")

        cfg = load_config(path)

        assert cfg.agents.worker_model == "opus"
        assert cfg.agents.orchestrator_model == "sonnet"
        assert cfg.server.port == 4000

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HIVEGRID_PORT", "4555")
        monkeypatch.setenv("HIVEGRID_PROJECT_DIR", str(tmp_path))

        cfg = load_config(tmp_path / "missing.yml")

        assert cfg.server.port == 4555
        assert cfg.server.default_project_dir == str(tmp_path)
        assert cfg.server.ws_url == "ws://127.0.0.1:4555/ws"

    def test_non_mapping_file_is_rejected(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError):
            load_config(path)

    def test_defaults_have_every_section(self):
        assert set(DEFAULT_CONFIG) == {"server", "agents", "git", "session"}


@pytest.mark.unit
class TestUtils:
    def test_deep_merge(self):
        base = {"a": {"b": 1, "c": 2}, "d": 3}

        merged = deep_merge(base, {"a": {"c": 5}, "e": 6})

        assert merged == {"a": {"b": 1, "c": 5}, "d": 3, "e": 6}
        assert base["a"]["c"] == 2

    def test_expand_env_vars_leaves_unknown(self, monkeypatch):
        monkeypatch.setenv("HG_KNOWN", "yes")
        monkeypatch.delenv("HG_UNKNOWN", raising=False)

        assert expand_env_vars({"x": ["${HG_KNOWN}", "${HG_UNKNOWN}"], "n": 1}) == {
            "x": ["yes", "${HG_UNKNOWN}"],
            "n": 1,
        }
