"""Per-agent MCP tool configuration.

The agent CLI is started with `--mcp-config <path>`. The file points at the
hivegrid tool-call process with absolute paths and carries the agent's
identity plus the hub address it must connect back to.

Files live in the system temp directory, outside any workspace, so they are
never committed and survive the workspace being torn down.

Dev vs installed:
- Installed: HIVEGRID_MCP_BIN points at a `hivegrid-mcp` executable.
- Dev: the current interpreter runs `-m hivegrid.mcp_server` with the install
  directory on PYTHONPATH.
"""

from __future__ import annotations

import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Optional, TypedDict

from hivegrid.constants import (
    ENV_AGENT_ID,
    ENV_CELL_TYPE,
    ENV_MCP_BIN,
    ENV_WS_URL,
    MCP_SERVER_NAME,
    TOOL_CONFIG_FILE_PREFIX,
)
from hivegrid.logging_config import get_logger

logger = get_logger(__name__)


class McpServerEntry(TypedDict):
    command: str
    args: list[str]
    env: dict[str, str]


class ToolConfig(TypedDict):
    mcpServers: dict[str, McpServerEntry]


def generate_tool_config(tool_dir: str | Path, agent_id: str, cell_type: str, ws_url: str) -> ToolConfig:
    """Build the MCP config for one agent.

    Args:
        tool_dir: Where hivegrid is installed (NOT the target project)
        agent_id: Unique agent identifier
        cell_type: Agent type; decides which tools the process exposes
        ws_url: Hub websocket URL the tool process connects back to
    """
    env = {
        ENV_AGENT_ID: agent_id,
        ENV_CELL_TYPE: cell_type,
        ENV_WS_URL: ws_url,
    }
    mcp_bin = os.getenv(ENV_MCP_BIN)
    if mcp_bin:
        command, args = mcp_bin, []
    else:
        command, args = sys.executable, ["-m", "hivegrid.mcp_server"]
        env["PYTHONPATH"] = str(Path(tool_dir).resolve())

    return {"mcpServers": {MCP_SERVER_NAME: {"command": command, "args": args, "env": env}}}


def get_tool_config_path(agent_id: str, directory: Optional[str | Path] = None) -> Path:
    base = Path(directory) if directory else Path(tempfile.gettempdir())
    return base / f"{TOOL_CONFIG_FILE_PREFIX}{agent_id}.json"


def write_tool_config(agent_id: str, tool_config: ToolConfig, directory: Optional[str | Path] = None) -> str:
    """Write the config for `agent_id` and return its absolute path."""
    path = get_tool_config_path(agent_id, directory)
    path.write_text(json.dumps(tool_config, indent=2) + "\n", encoding="utf-8")
    logger.debug("Wrote tool config %s", path)
    return str(path)


def cleanup_tool_config(agent_id: str, directory: Optional[str | Path] = None) -> None:
    path = get_tool_config_path(agent_id, directory)
    try:
        path.unlink()
        logger.debug("Removed tool config %s", path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove tool config %s: %s", path, e)
