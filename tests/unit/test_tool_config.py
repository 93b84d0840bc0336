"""Unit tests for per-agent MCP tool configuration."""

import json
import sys
from pathlib import Path

import pytest

from hivegrid.core.tool_config import (
    cleanup_tool_config,
    generate_tool_config,
    get_tool_config_path,
    write_tool_config,
)


@pytest.mark.unit
class TestGenerateToolConfig:
    def test_dev_mode_runs_module_with_pythonpath(self, monkeypatch, tmp_path):
        monkeypatch.delenv("HIVEGRID_MCP_BIN", raising=False)

        cfg = generate_tool_config(tmp_path, "agent-1", "worker", "ws://127.0.0.1:3001/ws")

        entry = cfg["mcpServers"]["hivegrid"]
        assert entry["command"] == sys.executable
        assert entry["args"] == ["-m", "hivegrid.mcp_server"]
        assert entry["env"]["HIVEGRID_AGENT_ID"] == "agent-1"
        assert entry["env"]["HIVEGRID_CELL_TYPE"] == "worker"
        assert entry["env"]["HIVEGRID_WS_URL"] == "ws://127.0.0.1:3001/ws"
        assert entry["env"]["PYTHONPATH"] == str(tmp_path.resolve())

    def test_installed_binary(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HIVEGRID_MCP_BIN", "/usr/local/bin/hivegrid-mcp")

        entry = generate_tool_config(tmp_path, "a", "orchestrator", "ws://x/ws")["mcpServers"]["hivegrid"]

        assert entry["command"] == "/usr/local/bin/hivegrid-mcp"
        assert entry["args"] == []
        assert "PYTHONPATH" not in entry["env"]


@pytest.mark.unit
class TestToolConfigFiles:
    def test_write_and_cleanup(self, tmp_path):
        cfg = generate_tool_config(tmp_path, "agent-1", "worker", "ws://x/ws")

        path = write_tool_config("agent-1", cfg, tmp_path)

        assert Path(path) == get_tool_config_path("agent-1", tmp_path)
        assert json.loads(Path(path).read_text()) == cfg

        cleanup_tool_config("agent-1", tmp_path)
        cleanup_tool_config("agent-1", tmp_path)
        assert not Path(path).exists()
