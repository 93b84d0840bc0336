"""Constants used across hivegrid.

This module defines shared names and thresholds to ensure consistency.
"""

# Workspace layout
WORKTREES_DIR = ".worktrees"  # Under the repository root
BRANCH_PREFIX = "hivegrid"
MAIN_BRANCH = "main"
BRANCH_COLLISION_ATTEMPTS = 10  # Numeric suffixes -2..-N before falling back to a timestamp

# Directories linked (read-only) from the project root into each worktree
PROJECT_LINK_DIRS = (".claude", ".beads-lite")
DEPENDENCY_LINK_DIRS = ("node_modules", ".venv")

# Merge coordination
MERGE_LOCK_FILENAME = "hivegrid-merge.lock"  # Lives in the git metadata directory
MERGE_LOCK_STALE_SECONDS = 300

# Context
DEFAULT_MAX_DISTANCE = 3
MAX_CHILDREN = 5
CONTEXT_FILE_PREFIX = "hivegrid-context-"
TOOL_CONFIG_FILE_PREFIX = "hivegrid-mcp-"
LEGACY_SESSION_DIR_PREFIX = "hivegrid-agent-"

# Sessions
OUTPUT_BUFFER_MAX_CHUNKS = 1000
DEFAULT_COLS = 80
DEFAULT_ROWS = 24
ACTIVITY_INTERVAL_S = 5.0
ACTIVITY_RECENT_COMMITS = 3

# Hub
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3001
WS_PATH = "/ws"
MCP_REQUEST_TIMEOUT_S = 30.0
MCP_CONNECT_TIMEOUT_S = 10.0

# Agent launch
AGENT_COMMAND = "claude"
ORCHESTRATOR_MODEL = "sonnet"
WORKER_MODEL = "haiku"
MCP_SERVER_NAME = "hivegrid"
ALLOWED_TOOLS_PATTERN = f"mcp__{MCP_SERVER_NAME}__*"

# Environment variables handed to agent processes
ENV_AGENT_ID = "HIVEGRID_AGENT_ID"
ENV_CELL_TYPE = "HIVEGRID_CELL_TYPE"
ENV_WS_URL = "HIVEGRID_WS_URL"
ENV_CONTEXT = "HIVEGRID_CONTEXT"
ENV_WORKTREE = "HIVEGRID_WORKTREE"
ENV_PARENT_ID = "HIVEGRID_PARENT_ID"
ENV_TOOL_CONFIG = "HIVEGRID_TOOL_CONFIG"
ENV_MCP_BIN = "HIVEGRID_MCP_BIN"
