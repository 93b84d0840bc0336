"""Startup prerequisite checks.

git is required (worktree isolation, merges). The agent CLI is only needed to
spawn orchestrators and workers, so its absence is a warning.
"""

from __future__ import annotations

import platform
import shutil
from dataclasses import dataclass
from typing import Optional

from git.cmd import Git
from git.exc import GitCommandError, GitCommandNotFound

from hivegrid.logging_config import get_logger

logger = get_logger(__name__)


class PreflightError(RuntimeError):
    """A prerequisite the hub cannot run without is missing."""


@dataclass(frozen=True)
class PreflightReport:
    python_version: str
    git_version: str
    agent_cli_path: Optional[str]


def _git_version() -> str:
    try:
        raw = Git().execute(["git", "--version"])
    except (GitCommandNotFound, GitCommandError, OSError) as e:
        raise PreflightError(
            "git not found. Install it (brew install git / apt install git); "
            "required for agent worktree isolation and merge operations"
        ) from e
    # "git version 2.50.1" -> "2.50.1"
    return str(raw).strip().removeprefix("git version").strip()


def run_preflight(agent_command: str) -> PreflightReport:
    """Check prerequisites and log a one-line summary.

    Raises:
        PreflightError: git is missing
    """
    git_version = _git_version()

    agent_cli_path = shutil.which(agent_command)
    if agent_cli_path is None:
        logger.warning(
            "%s CLI not found on PATH; orchestrator/worker spawning will fail, terminal cells still work",
            agent_command,
        )

    report = PreflightReport(
        python_version=platform.python_version(),
        git_version=git_version,
        agent_cli_path=agent_cli_path,
    )
    logger.info(
        "Preflight OK: python %s, git %s, %s %s",
        report.python_version,
        report.git_version,
        agent_command,
        "found" if agent_cli_path else "not found",
    )
    return report
