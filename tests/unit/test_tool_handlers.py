"""Unit tests for hub-executed tool handlers (git layer mocked)."""

from unittest.mock import patch

import pytest

from hivegrid.core.git import BranchDiff, DiffStats, MergeConflictResult, MergeResult
from hivegrid.core.models import HexCoordinate, StoredAgentMetadata
from hivegrid.core.tool_handlers import (
    check_kill_permission,
    handle_check_merge_conflicts,
    handle_cleanup_worker_worktree,
    handle_get_worker_diff,
    handle_list_worker_commits,
    handle_merge_staging_to_main,
    handle_merge_worker_to_staging,
)
from hivegrid.core.worktree import WorkspaceResult

MODULE = "hivegrid.core.tool_handlers"


def _worker(agent_id="w-1", parent_id="orch-1", cell_type="worker"):
    return StoredAgentMetadata(
        agent_id=agent_id,
        cell_type=cell_type,
        hex=HexCoordinate(q=1, r=0),
        parent_id=parent_id,
    )


@pytest.mark.unit
class TestInspection:
    def test_diff_payload(self):
        diff = BranchDiff(diff="diff --git a/x b/x", stats=DiffStats(files=1, insertions=2, deletions=3))
        with (
            patch(f"{MODULE}.branch_exists", return_value=True),
            patch(f"{MODULE}.diff_against_main", return_value=diff),
        ):
            result = handle_get_worker_diff("/repo", "w-1")

        assert result == {
            "success": True,
            "diff": "diff --git a/x b/x",
            "stats": {"files": 1, "insertions": 2, "deletions": 3},
        }

    def test_unknown_worker_branch(self):
        with patch(f"{MODULE}.branch_exists", return_value=False):
            result = handle_list_worker_commits("/repo", "ghost")

        assert result["success"] is False
        assert "hivegrid/ghost" in str(result["error"])


@pytest.mark.unit
class TestMergeHandlers:
    def test_check_conflicts_payload(self):
        with patch(f"{MODULE}.merge_ops.check_merge_conflicts", return_value=MergeConflictResult(False, "CONFLICT")):
            result = handle_check_merge_conflicts("/repo", "orch-1", "w-1")

        assert result == {"success": True, "canMerge": False, "output": "CONFLICT"}

    def test_merge_failure_carries_error(self):
        with patch(
            f"{MODULE}.merge_ops.merge_worker_to_staging",
            return_value=MergeResult(success=False, output="status...", error="conflict in a.py"),
        ):
            result = handle_merge_worker_to_staging("/repo", "orch-1", "w-1")

        assert result == {"success": False, "output": "status...", "error": "conflict in a.py"}

    def test_merge_success_has_no_error_key(self):
        with patch(f"{MODULE}.merge_ops.merge_staging_to_main", return_value=MergeResult(True, "Merge successful")):
            result = handle_merge_staging_to_main("/repo", "orch-1")

        assert result == {"success": True, "output": "Merge successful"}


@pytest.mark.unit
class TestCleanup:
    def test_kept_branch_is_reported_as_failure(self):
        kept = WorkspaceResult(success=True, kept=True, message="Kept ... Use force to discard them.")
        with patch(f"{MODULE}.remove_workspace", return_value=kept) as remove:
            result = handle_cleanup_worker_worktree("/repo", "w-1")

        remove.assert_called_once_with("/repo", "w-1", force=False, main_branch=None)
        assert result["success"] is False
        assert "force" in str(result["error"])

    def test_removed(self):
        with patch(f"{MODULE}.remove_workspace", return_value=WorkspaceResult(success=True, message="Removed")):
            result = handle_cleanup_worker_worktree("/repo", "w-1", force=True)

        assert result == {"success": True, "message": "Removed"}


@pytest.mark.unit
class TestKillPermission:
    def test_parent_may_kill(self):
        assert check_kill_permission("orch-1", _worker(), force=False) is None

    def test_other_orchestrator_needs_force(self):
        error = check_kill_permission("orch-2", _worker(), force=False)

        assert error is not None
        assert "orch-1" in error
        assert check_kill_permission("orch-2", _worker(), force=True) is None

    def test_only_workers_can_be_killed(self):
        error = check_kill_permission("orch-1", _worker(agent_id="orch-9", cell_type="orchestrator"), force=True)

        assert error == "orch-9 is not a worker"
