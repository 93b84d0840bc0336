"""Tool calls executed by the hub itself.

Each handler takes the project's git root plus the request fields and returns
the `payload` of the `mcp.<kind>.result` response. Git errors are returned in
`error` verbatim: the calling agent reads them and decides what to do.
"""

from __future__ import annotations

from typing import Optional

from hivegrid.config import config
from hivegrid.core import merge as merge_ops
from hivegrid.core.git import (
    branch_exists,
    diff_against_main,
    list_commits,
    list_files_changed,
    resolve_agent_branch,
)
from hivegrid.core.models import StoredAgentMetadata
from hivegrid.core.worktree import remove_workspace
from hivegrid.logging_config import get_logger

logger = get_logger(__name__)

ToolResult = dict[str, object]


def _failure(error: str) -> ToolResult:
    return {"success": False, "error": error}


def _worker_branch(git_root: str, worker_id: str) -> tuple[Optional[str], Optional[str]]:
    branch = resolve_agent_branch(git_root, worker_id)
    if not branch_exists(branch, git_root):
        return None, f"No branch found for worker {worker_id} (expected {branch})"
    return branch, None


def handle_get_worker_diff(git_root: str, worker_id: str, main_branch: Optional[str] = None) -> ToolResult:
    main_branch = main_branch or config.git.main_branch
    branch, error = _worker_branch(git_root, worker_id)
    if branch is None:
        return _failure(error or "unknown worker")
    result = diff_against_main(git_root, branch, main_branch)
    if result is None:
        return _failure(f"Failed to diff {branch} against {main_branch}")
    return {
        "success": True,
        "diff": result.diff,
        "stats": {
            "files": result.stats.files,
            "insertions": result.stats.insertions,
            "deletions": result.stats.deletions,
        },
    }


def handle_list_worker_files(git_root: str, worker_id: str, main_branch: Optional[str] = None) -> ToolResult:
    branch, error = _worker_branch(git_root, worker_id)
    if branch is None:
        return _failure(error or "unknown worker")
    output = list_files_changed(git_root, branch, main_branch or config.git.main_branch)
    if output is None:
        return _failure(f"Failed to list files changed on {branch}")
    return {"success": True, "output": output}


def handle_list_worker_commits(git_root: str, worker_id: str, main_branch: Optional[str] = None) -> ToolResult:
    branch, error = _worker_branch(git_root, worker_id)
    if branch is None:
        return _failure(error or "unknown worker")
    output = list_commits(git_root, branch, main_branch or config.git.main_branch)
    if output is None:
        return _failure(f"Failed to list commits on {branch}")
    return {"success": True, "output": output}


def handle_check_merge_conflicts(git_root: str, orchestrator_id: str, worker_id: str) -> ToolResult:
    result = merge_ops.check_merge_conflicts(git_root, orchestrator_id, worker_id)
    return {"success": True, "canMerge": result.can_merge, "output": result.output}


def handle_merge_worker_to_staging(git_root: str, orchestrator_id: str, worker_id: str) -> ToolResult:
    result = merge_ops.merge_worker_to_staging(git_root, orchestrator_id, worker_id)
    payload: ToolResult = {"success": result.success, "output": result.output}
    if result.error:
        payload["error"] = result.error
    return payload


def handle_merge_staging_to_main(git_root: str, orchestrator_id: str, main_branch: Optional[str] = None) -> ToolResult:
    result = merge_ops.merge_staging_to_main(git_root, orchestrator_id, main_branch)
    payload: ToolResult = {"success": result.success, "output": result.output}
    if result.error:
        payload["error"] = result.error
    return payload


def handle_cleanup_worker_worktree(
    git_root: str, worker_id: str, force: bool = False, main_branch: Optional[str] = None
) -> ToolResult:
    """Remove a worker's worktree and branch.

    Refuses while the branch holds commits not in main unless `force` is set.
    """
    result = remove_workspace(git_root, worker_id, force=force, main_branch=main_branch)
    if not result.success:
        return _failure(result.error or f"Failed to clean up worktree for {worker_id}")
    if result.kept:
        return {"success": False, "message": result.message, "error": result.message}
    return {"success": True, "message": result.message}


def check_kill_permission(caller_id: str, worker: Optional[StoredAgentMetadata], force: bool) -> Optional[str]:
    """Return an error message if `caller_id` may not kill `worker`, else None."""
    if worker is None:
        return None
    if worker.cell_type != "worker":
        return f"{worker.agent_id} is not a worker"
    if force:
        return None
    if worker.parent_id != caller_id:
        return f"{worker.agent_id} belongs to {worker.parent_id or 'no parent'}, not {caller_id}. Use force to override."
    return None
