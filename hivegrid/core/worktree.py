"""Agent workspace isolation.

Two strategies depending on whether the target directory is a git repo:

1. Git worktree (preferred): each agent gets `{git_root}/.worktrees/{agent_id}/`
   checked out on its own branch. Agents can commit, diff and merge without
   touching each other's working tree.

2. Direct directory (non-git fallback): the agent works in the target
   directory itself. Without git there is nothing to isolate, and an empty
   temp directory would hold no project files. The tool-call channel still
   works; git-backed tools fail at call time with git's own error.

Both paths produce a WorkspaceResult, so the caller does not need to know
which strategy was used.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from hivegrid.config import TOOL_DIR, config
from hivegrid.constants import (
    BRANCH_COLLISION_ATTEMPTS,
    BRANCH_PREFIX,
    DEPENDENCY_LINK_DIRS,
    LEGACY_SESSION_DIR_PREFIX,
    PROJECT_LINK_DIRS,
    WORKTREES_DIR,
)
from hivegrid.core.git import (
    branch_exists,
    count_unmerged_commits,
    get_branch_name,
    get_git_common_dir,
    get_git_root,
    get_worktree_path,
    resolve_agent_branch,
    run_git,
)
from hivegrid.core.tool_config import generate_tool_config, write_tool_config
from hivegrid.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class WorkspaceResult:
    """Result of creating or removing an agent workspace.

    Attributes:
        success: False only for hard failures (spawn must abort)
        workspace_path: Directory the agent process runs in
        branch_name: Owning branch; None in direct-directory mode
        tool_config_path: MCP config file handed to the agent CLI
        kept: Removal skipped because the branch still has unmerged commits
    """

    success: bool
    workspace_path: Optional[str] = None
    branch_name: Optional[str] = None
    tool_config_path: Optional[str] = None
    error: Optional[str] = None
    kept: bool = False
    message: Optional[str] = None


def generate_branch_name(agent_id: str, cwd: str | Path, prefix: str = BRANCH_PREFIX) -> str:
    """Return `prefix/agent_id`, suffixed with -2..-N (then a timestamp) on collision."""
    base_name = get_branch_name(agent_id, prefix)
    if not branch_exists(base_name, cwd):
        return base_name
    for i in range(2, BRANCH_COLLISION_ATTEMPTS + 1):
        name = f"{base_name}-{i}"
        if not branch_exists(name, cwd):
            return name
    return f"{base_name}-{int(time.time() * 1000)}"


def _write_agent_tool_config(
    agent_id: str,
    cell_type: str,
    ws_url: str,
    tool_dir: str | Path,
    config_dir: Optional[str | Path],
) -> str:
    tool_config = generate_tool_config(tool_dir, agent_id, cell_type, ws_url)
    return write_tool_config(agent_id, tool_config, config_dir)


def _ensure_excluded(git_root: str | Path, patterns: list[str]) -> None:
    """Append patterns to the repository's shared info/exclude file.

    Keeps the worktrees directory and linked context dirs out of `git status`,
    so they never count as uncommitted changes.
    """
    common_dir = get_git_common_dir(git_root)
    if common_dir is None:
        return
    exclude_path = common_dir / "info" / "exclude"
    try:
        existing = exclude_path.read_text(encoding="utf-8").splitlines() if exclude_path.exists() else []
        missing = [p for p in patterns if p not in existing]
        if not missing:
            return
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        with open(exclude_path, "a", encoding="utf-8") as f:
            if existing and existing[-1] != "":
                f.write("\n")
            f.write("\n".join(missing) + "\n")
    except OSError as e:
        logger.warning("Failed to update %s: %s", exclude_path, e)


def _link_project_dirs(git_root: str | Path, worktree_path: Path) -> list[str]:
    """Symlink project context and installed dependencies into the worktree.

    Links point at the project's root. Agents treat them as read-only and must
    never install or remove dependencies through them.
    """
    linked: list[str] = []
    for name in (*PROJECT_LINK_DIRS, *DEPENDENCY_LINK_DIRS):
        source = Path(git_root) / name
        if not source.exists():
            continue
        target = worktree_path / name
        if os.path.lexists(target):
            continue
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.symlink_to(source, target_is_directory=source.is_dir())
            linked.append(name)
            logger.debug("Symlinked %s/ into %s", name, worktree_path)
        except OSError as e:
            logger.warning("Failed to symlink %s/: %s", name, e)
    return linked


def create_workspace(
    target_dir: str | Path,
    agent_id: str,
    cell_type: str = "orchestrator",
    ws_url: Optional[str] = None,
    tool_dir: Optional[str | Path] = None,
    config_dir: Optional[str | Path] = None,
) -> WorkspaceResult:
    """Create (or reuse) the isolated workspace for an agent.

    Args:
        target_dir: Project directory the agent works on
        agent_id: Unique agent identifier
        cell_type: orchestrator or worker
        ws_url: Hub websocket URL for the tool-call process (default from config)
        tool_dir: Where hivegrid is installed (default: this checkout)
        config_dir: Where to write the tool config (default: system temp dir)
    """
    ws_url = ws_url or config.server.ws_url
    tool_dir = tool_dir or TOOL_DIR

    git_root = get_git_root(target_dir)
    if not git_root:
        try:
            tool_config_path = _write_agent_tool_config(agent_id, cell_type, ws_url, tool_dir, config_dir)
        except OSError as e:
            return WorkspaceResult(success=False, error=f"Failed to write tool config for {agent_id}: {e}")
        logger.info("Non-git %s %s: using project dir %s directly", cell_type, agent_id, target_dir)
        return WorkspaceResult(success=True, workspace_path=str(target_dir), tool_config_path=tool_config_path)

    return _create_git_worktree(git_root, agent_id, cell_type, ws_url, tool_dir, config_dir)


def _create_git_worktree(
    git_root: str,
    agent_id: str,
    cell_type: str,
    ws_url: str,
    tool_dir: str | Path,
    config_dir: Optional[str | Path],
) -> WorkspaceResult:
    worktrees_dir = Path(git_root) / WORKTREES_DIR
    worktree_path = get_worktree_path(git_root, agent_id)

    # Reconnect/retry: keep the worktree, but the temp tool config may be gone.
    if worktree_path.exists():
        logger.info("Worktree already exists: %s", worktree_path)
        try:
            tool_config_path = _write_agent_tool_config(agent_id, cell_type, ws_url, tool_dir, config_dir)
        except OSError as e:
            return WorkspaceResult(success=False, error=f"Failed to write tool config for {agent_id}: {e}")
        return WorkspaceResult(
            success=True,
            workspace_path=str(worktree_path),
            branch_name=resolve_agent_branch(git_root, agent_id),
            tool_config_path=tool_config_path,
        )

    try:
        worktrees_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return WorkspaceResult(success=False, error=f"Failed to create worktrees directory: {e}")
    _ensure_excluded(git_root, [f"/{WORKTREES_DIR}"])

    branch_name = generate_branch_name(agent_id, git_root)

    result = run_git(["worktree", "add", str(worktree_path), "-b", branch_name], git_root)
    if not result.ok:
        # Branch may have been created by a concurrent process
        fallback = run_git(["worktree", "add", str(worktree_path), branch_name], git_root)
        if not fallback.ok:
            return WorkspaceResult(
                success=False,
                error=f"Failed to create worktree for {agent_id}: {fallback.error or result.error}",
            )

    linked = _link_project_dirs(git_root, worktree_path)
    if linked:
        _ensure_excluded(git_root, [f"/{name}" for name in linked])

    try:
        tool_config_path = _write_agent_tool_config(agent_id, cell_type, ws_url, tool_dir, config_dir)
    except OSError as e:
        # Roll back the fresh worktree and branch
        run_git(["worktree", "remove", "--force", str(worktree_path)], git_root)
        run_git(["branch", "-D", branch_name], git_root)
        logger.error("Rolled back worktree %s: %s", worktree_path, e)
        return WorkspaceResult(success=False, error=f"Failed to write tool config for {agent_id}: {e}")
    logger.info("Created worktree %s on branch %s", worktree_path, branch_name)
    return WorkspaceResult(
        success=True,
        workspace_path=str(worktree_path),
        branch_name=branch_name,
        tool_config_path=tool_config_path,
    )


def _remove_legacy_session_dir(agent_id: str) -> None:
    session_dir = Path(tempfile.gettempdir()) / f"{LEGACY_SESSION_DIR_PREFIX}{agent_id}"
    if not session_dir.exists():
        return
    try:
        shutil.rmtree(session_dir)
        logger.info("Removed legacy session dir %s", session_dir)
    except OSError as e:
        logger.warning("Failed to remove legacy session dir %s: %s", session_dir, e)


def remove_workspace(
    target_dir: str | Path,
    agent_id: str,
    force: bool = False,
    main_branch: Optional[str] = None,
) -> WorkspaceResult:
    """Tear down an agent's worktree and branch.

    Without `force`, a worktree whose branch still has commits not in main is
    left in place for inspection. Every step is best-effort and logged on its
    own; a failing step does not stop the ones after it.
    """
    main_branch = main_branch or config.git.main_branch
    _remove_legacy_session_dir(agent_id)

    git_root = get_git_root(target_dir)
    if not git_root:
        return WorkspaceResult(success=True, message="No git repository; nothing to remove")

    worktree_path = get_worktree_path(git_root, agent_id)
    if not worktree_path.exists():
        logger.info("Worktree already removed: %s", worktree_path)
        return WorkspaceResult(success=True, message=f"Worktree already removed: {worktree_path}")

    branch_name = resolve_agent_branch(git_root, agent_id)

    if not force:
        unmerged = count_unmerged_commits(git_root, branch_name, main_branch)
        if unmerged is None and branch_exists(branch_name, git_root):
            logger.warning("Keeping %s: cannot compare %s with %s", worktree_path, branch_name, main_branch)
            return WorkspaceResult(
                success=True,
                workspace_path=str(worktree_path),
                branch_name=branch_name,
                kept=True,
                message=(
                    f"Kept {worktree_path}: could not count commits on {branch_name} not in {main_branch}. "
                    "Use force to discard them."
                ),
            )
        if unmerged:
            logger.info("Keeping %s: %d unmerged commit(s) on %s", worktree_path, unmerged, branch_name)
            return WorkspaceResult(
                success=True,
                workspace_path=str(worktree_path),
                branch_name=branch_name,
                kept=True,
                message=(
                    f"Kept {worktree_path}: branch {branch_name} has {unmerged} commit(s) not in "
                    f"{main_branch}. Use force to discard them."
                ),
            )

    remove_result = run_git(["worktree", "remove", "--force", str(worktree_path)], git_root)
    if not remove_result.ok:
        logger.warning("git worktree remove failed, deleting %s directly", worktree_path)
        try:
            shutil.rmtree(worktree_path)
        except OSError as e:
            logger.error("Manual cleanup of %s failed: %s", worktree_path, e)

    if not run_git(["branch", "-D", branch_name], git_root).ok:
        logger.warning("Failed to delete branch %s, may not exist", branch_name)

    run_git(["worktree", "prune"], git_root)

    logger.info("Removed worktree %s", worktree_path)
    return WorkspaceResult(
        success=True,
        workspace_path=str(worktree_path),
        branch_name=branch_name,
        message=f"Removed worktree {worktree_path} and branch {branch_name}",
    )
