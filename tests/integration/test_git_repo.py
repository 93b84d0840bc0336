"""Integration tests for git inspection helpers and hub-executed tools on real repositories."""

from pathlib import Path

import pytest
from git import Repo

from hivegrid.core.git import (
    count_commits_async,
    count_unmerged_commits,
    diff_against_main,
    get_git_common_dir,
    get_git_root,
    list_commits,
    list_files_changed,
    recent_commits_async,
    resolve_agent_branch,
)
from hivegrid.core.models import HexCoordinate, StoredAgentMetadata
from hivegrid.core.tool_handlers import handle_get_worker_diff, handle_list_worker_commits
from hivegrid.core.worktree import create_workspace
from hivegrid.hub_server import HubServer, _AgentActivity


def _worker(repo_dir, runtime_dir, agent_id="w-1"):
    result = create_workspace(repo_dir, agent_id, "worker", ws_url="ws://x/ws", tool_dir="/opt", config_dir=runtime_dir)
    assert result.success, result.error
    return result


@pytest.mark.integration
class TestRepositoryLayout:
    def test_git_root_from_worktree_is_the_worktree(self, git_repo, runtime_dir):
        workspace = _worker(git_repo, runtime_dir)

        assert Path(get_git_root(workspace.workspace_path)).resolve() == Path(workspace.workspace_path).resolve()
        assert get_git_common_dir(workspace.workspace_path) == (git_repo / ".git").resolve()

    def test_resolve_branch_follows_collision_suffix(self, git_repo, runtime_dir):
        Repo(git_repo).git.branch("hivegrid/w-1")
        _worker(git_repo, runtime_dir)

        assert resolve_agent_branch(git_repo, "w-1") == "hivegrid/w-1-2"


@pytest.mark.integration
class TestInspection:
    def test_diff_and_stats(self, git_repo, runtime_dir, commit):
        workspace = _worker(git_repo, runtime_dir)
        commit(Path(workspace.workspace_path), "app.py", "a = 1\nb = 2\n")

        diff = diff_against_main(git_repo, "hivegrid/w-1")

        assert "+a = 1" in diff.diff
        assert (diff.stats.files, diff.stats.insertions, diff.stats.deletions) == (1, 2, 0)

    def test_files_and_commits(self, git_repo, runtime_dir, commit):
        workspace = _worker(git_repo, runtime_dir)
        commit(Path(workspace.workspace_path), "app.py", "a = 1\n", "add app")
        commit(Path(workspace.workspace_path), "lib.py", "b = 2\n", "add lib")

        assert "app.py" in list_files_changed(git_repo, "hivegrid/w-1")
        commits = list_commits(git_repo, "hivegrid/w-1")
        assert "add app" in commits
        assert "add lib" in commits
        assert count_unmerged_commits(git_repo, "hivegrid/w-1") == 2

    def test_unknown_branch_is_none(self, git_repo):
        assert diff_against_main(git_repo, "hivegrid/ghost") is None
        assert count_unmerged_commits(git_repo, "hivegrid/ghost") is None

    @pytest.mark.asyncio
    async def test_async_counts(self, git_repo, runtime_dir, commit):
        workspace = _worker(git_repo, runtime_dir)
        commit(Path(workspace.workspace_path), "app.py", "a = 1\n", "add app")

        assert await count_commits_async(git_repo, "hivegrid/w-1") == 1
        recent = await recent_commits_async(git_repo, "hivegrid/w-1", limit=3)
        assert len(recent) == 1
        assert recent[0].endswith("add app")
        assert await count_commits_async(git_repo, "hivegrid/ghost") == 0

    def test_handlers_on_real_branch(self, git_repo, runtime_dir, commit):
        workspace = _worker(git_repo, runtime_dir)
        commit(Path(workspace.workspace_path), "app.py", "a = 1\n", "add app")

        diff = handle_get_worker_diff(str(git_repo), "w-1")
        commits = handle_list_worker_commits(str(git_repo), "w-1")

        assert diff["success"] is True
        assert diff["stats"] == {"files": 1, "insertions": 1, "deletions": 0}
        assert "add app" in commits["output"]


@pytest.mark.integration
class TestHubActivity:
    @pytest.mark.asyncio
    async def test_collect_activity_counts_branch_commits(self, git_repo, runtime_dir, commit):
        workspace = _worker(git_repo, runtime_dir)
        commit(Path(workspace.workspace_path), "app.py", "a = 1\n", "add app")
        hub = HubServer(default_project_dir=str(git_repo), runtime_dir=runtime_dir, activity_interval_s=60)
        hub.session_metadata["term-001"] = StoredAgentMetadata(
            agent_id="w-1",
            cell_type="worker",
            hex=HexCoordinate(q=0, r=1),
            project_dir=str(git_repo),
            workspace_path=workspace.workspace_path,
            branch_name=workspace.branch_name,
            created_at=1,
        )
        hub.status.register("w-1")
        hub._activity["w-1"] = _AgentActivity(created_at=1)
        hub._on_session_data("term-001", "$ ")

        agents = await hub.collect_activity()

        assert len(agents) == 1
        assert agents[0]["agentId"] == "w-1"
        assert agents[0]["gitCommitCount"] == 1
        assert agents[0]["gitRecentCommits"][0].endswith("add app")
        assert agents[0]["lastActivityAt"] > 0


@pytest.mark.integration
class TestConfiguredMainBranch:
    def _master_repo(self, tmp_path, make_repo):
        repo_dir = tmp_path / "legacy"
        make_repo(repo_dir)
        Repo(repo_dir).git.branch("-m", "main", "master")
        return repo_dir

    def test_handlers_compare_against_configured_branch(self, tmp_path, runtime_dir, make_repo, commit):
        repo_dir = self._master_repo(tmp_path, make_repo)
        workspace = _worker(repo_dir, runtime_dir)
        commit(Path(workspace.workspace_path), "app.py", "a = 1\n", "add app")

        diff = handle_get_worker_diff(str(repo_dir), "w-1", main_branch="master")
        commits = handle_list_worker_commits(str(repo_dir), "w-1", main_branch="master")

        assert diff["success"] is True
        assert diff["stats"] == {"files": 1, "insertions": 1, "deletions": 0}
        assert "add app" in commits["output"]
        assert handle_get_worker_diff(str(repo_dir), "w-1", main_branch="main")["success"] is False

    @pytest.mark.asyncio
    async def test_activity_counts_against_configured_branch(self, tmp_path, runtime_dir, make_repo, commit):
        repo_dir = self._master_repo(tmp_path, make_repo)
        workspace = _worker(repo_dir, runtime_dir)
        commit(Path(workspace.workspace_path), "app.py", "a = 1\n", "add app")
        hub = HubServer(
            default_project_dir=str(repo_dir), runtime_dir=runtime_dir, activity_interval_s=60, main_branch="master"
        )
        hub.session_metadata["term-001"] = StoredAgentMetadata(
            agent_id="w-1",
            cell_type="worker",
            hex=HexCoordinate(q=0, r=1),
            project_dir=str(repo_dir),
            workspace_path=workspace.workspace_path,
            branch_name=workspace.branch_name,
            created_at=1,
        )
        hub._activity["w-1"] = _AgentActivity(created_at=1)

        agents = await hub.collect_activity()

        assert agents[0]["gitCommitCount"] == 1
