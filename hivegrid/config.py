"""Global configuration management.

Config is loaded at module import time and available globally via:
    from hivegrid.config import config

Defaults live in DEFAULT_CONFIG. An optional YAML file (HIVEGRID_CONFIG_PATH,
default ~/.hivegrid/config.yml) is deep-merged over them. A handful of
environment variables override the merged result.
"""

import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv

from hivegrid.constants import (
    ACTIVITY_INTERVAL_S,
    AGENT_COMMAND,
    ALLOWED_TOOLS_PATTERN,
    DEFAULT_HOST,
    DEFAULT_MAX_DISTANCE,
    DEFAULT_PORT,
    MAIN_BRANCH,
    MAX_CHILDREN,
    MERGE_LOCK_STALE_SECONDS,
    ORCHESTRATOR_MODEL,
    OUTPUT_BUFFER_MAX_CHUNKS,
    WORKER_MODEL,
)
from hivegrid.utils import deep_merge, expand_env_vars

# Install directory (where hivegrid itself lives, used for tool binaries)
TOOL_DIR = Path(__file__).resolve().parent.parent

# Load .env (allow override for tests)
_env_path = os.getenv("HIVEGRID_ENV_PATH")
_dotenv_path = Path(_env_path).expanduser() if _env_path else TOOL_DIR / ".env"
load_dotenv(_dotenv_path)


@dataclass
class ServerConfig:
    host: str
    port: int
    default_project_dir: str

    @property
    def ws_url(self) -> str:
        return f"ws://{self.host}:{self.port}/ws"


@dataclass
class AgentsConfig:
    """Settings for launching orchestrator and worker processes."""

    command: str
    orchestrator_model: str
    worker_model: str
    allowed_tools: str
    max_distance: int
    max_children: int


@dataclass
class GitConfig:
    main_branch: str
    merge_lock_stale_seconds: int


@dataclass
class SessionConfig:
    output_buffer_max_chunks: int
    activity_interval_s: float


@dataclass
class Config:
    server: ServerConfig
    agents: AgentsConfig
    git: GitConfig
    session: SessionConfig


# Default configuration values (single source of truth)
DEFAULT_CONFIG: dict[str, object] = {
    "server": {
        "host": DEFAULT_HOST,
        "port": DEFAULT_PORT,
        "default_project_dir": "${PWD}",
    },
    "agents": {
        "command": AGENT_COMMAND,
        "orchestrator_model": ORCHESTRATOR_MODEL,
        "worker_model": WORKER_MODEL,
        "allowed_tools": ALLOWED_TOOLS_PATTERN,
        "max_distance": DEFAULT_MAX_DISTANCE,
        "max_children": MAX_CHILDREN,
    },
    "git": {
        "main_branch": MAIN_BRANCH,
        "merge_lock_stale_seconds": MERGE_LOCK_STALE_SECONDS,
    },
    "session": {
        "output_buffer_max_chunks": OUTPUT_BUFFER_MAX_CHUNKS,
        "activity_interval_s": ACTIVITY_INTERVAL_S,
    },
}


def _config_path() -> Path:
    env_path = os.getenv("HIVEGRID_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return Path("~/.hivegrid/config.yml").expanduser()


def _read_user_config(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(raw).__name__}")
    return raw


def _apply_env_overrides(raw: dict[str, object]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    port = os.getenv("HIVEGRID_PORT")
    if port:
        overrides.setdefault("server", {})["port"] = int(port)  # type: ignore[index]
    project_dir = os.getenv("HIVEGRID_PROJECT_DIR")
    if project_dir:
        overrides.setdefault("server", {})["default_project_dir"] = project_dir  # type: ignore[index]
    return deep_merge(raw, overrides)


def _build_config(raw: dict[str, object]) -> Config:
    """Build typed Config from raw dict with proper type conversion."""
    server_raw = raw["server"]
    agents_raw = raw["agents"]
    git_raw = raw["git"]
    session_raw = raw["session"]

    default_project_dir = str(server_raw["default_project_dir"])  # type: ignore[index]
    if "${" in default_project_dir:
        default_project_dir = os.getcwd()

    return Config(
        server=ServerConfig(
            host=str(server_raw["host"]),  # type: ignore[index]
            port=int(server_raw["port"]),  # type: ignore[index]
            default_project_dir=str(Path(default_project_dir).expanduser()),
        ),
        agents=AgentsConfig(
            command=str(agents_raw["command"]),  # type: ignore[index]
            orchestrator_model=str(agents_raw["orchestrator_model"]),  # type: ignore[index]
            worker_model=str(agents_raw["worker_model"]),  # type: ignore[index]
            allowed_tools=str(agents_raw["allowed_tools"]),  # type: ignore[index]
            max_distance=int(agents_raw["max_distance"]),  # type: ignore[index]
            max_children=int(agents_raw["max_children"]),  # type: ignore[index]
        ),
        git=GitConfig(
            main_branch=str(git_raw["main_branch"]),  # type: ignore[index]
            merge_lock_stale_seconds=int(git_raw["merge_lock_stale_seconds"]),  # type: ignore[index]
        ),
        session=SessionConfig(
            output_buffer_max_chunks=int(session_raw["output_buffer_max_chunks"]),  # type: ignore[index]
            activity_interval_s=float(session_raw["activity_interval_s"]),  # type: ignore[index]
        ),
    )


def load_config(path: Path | None = None) -> Config:
    """Load configuration from defaults, the optional YAML file and env overrides."""
    user_config = _read_user_config(path or _config_path())
    user_config = expand_env_vars(user_config)  # type: ignore[assignment]
    merged = deep_merge(expand_env_vars(DEFAULT_CONFIG), user_config)  # type: ignore[arg-type]
    merged = _apply_env_overrides(merged)
    return _build_config(merged)


config = load_config()
