"""Git command layer.

Every git invocation goes through `run_git` (blocking) or `run_git_async`
(non-blocking) with an argument vector; nothing is ever passed through a
shell. Failures never raise: they come back as a `GitResult` carrying the
captured stderr, and are logged with the exact command and working directory.

The derived helpers (diffs, commit lists, dry-run merges, merges) are the
operations agents reach through the tool-call channel.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from git.cmd import Git
from git.exc import GitCommandNotFound

from hivegrid.constants import BRANCH_PREFIX, MAIN_BRANCH, WORKTREES_DIR
from hivegrid.logging_config import get_logger

logger = get_logger(__name__)

_STAT_SUMMARY_RE = re.compile(
    r"(\d+) files? changed(?:, (\d+) insertions?\(\+\))?(?:, (\d+) deletions?\(-\))?"
)


@dataclass(frozen=True)
class GitResult:
    """Outcome of a single git invocation."""

    ok: bool
    output: str = ""
    error: str = ""


@dataclass(frozen=True)
class DiffStats:
    files: int = 0
    insertions: int = 0
    deletions: int = 0


@dataclass(frozen=True)
class BranchDiff:
    diff: str
    stats: DiffStats = field(default_factory=DiffStats)


@dataclass(frozen=True)
class MergeConflictResult:
    can_merge: bool
    output: str


@dataclass(frozen=True)
class MergeResult:
    """Outcome of a real merge.

    On failure `output` carries the raw `git status` so the caller can
    diagnose without another round trip.
    """

    success: bool
    output: str
    error: Optional[str] = None


def _log_failure(args: Sequence[str], cwd: str | Path, error: str) -> None:
    logger.warning("Git command failed: git %s in %s", " ".join(args), cwd)
    if error:
        logger.warning("Git stderr: %s", error)


def run_git(args: Sequence[str], cwd: str | Path) -> GitResult:
    """Run a git subcommand and wait for it.

    Meant for one-shot operations where a short stall is acceptable
    (workspace setup, tool-call handlers).
    """
    command = ["git", *args]
    try:
        status, stdout, stderr = Git(str(cwd)).execute(
            command,
            with_extended_output=True,
            with_exceptions=False,
        )
    except (GitCommandNotFound, OSError) as exc:
        error = str(exc)
        _log_failure(args, cwd, error)
        return GitResult(ok=False, error=error)

    stdout_text = stdout.strip() if isinstance(stdout, str) else stdout.decode("utf-8", "replace").strip()
    stderr_text = stderr.strip() if isinstance(stderr, str) else stderr.decode("utf-8", "replace").strip()
    if status != 0:
        error = stderr_text or stdout_text or f"git exited with status {status}"
        _log_failure(args, cwd, error)
        return GitResult(ok=False, output=stdout_text, error=error)
    return GitResult(ok=True, output=stdout_text)


async def run_git_async(args: Sequence[str], cwd: str | Path) -> GitResult:
    """Run a git subcommand without blocking the event loop.

    Used by periodic background queries (activity polling).
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        error = str(exc)
        _log_failure(args, cwd, error)
        return GitResult(ok=False, error=error)

    stdout, stderr = await proc.communicate()
    stdout_text = stdout.decode("utf-8", "replace").strip()
    stderr_text = stderr.decode("utf-8", "replace").strip()
    if proc.returncode != 0:
        error = stderr_text or stdout_text or f"git exited with status {proc.returncode}"
        _log_failure(args, cwd, error)
        return GitResult(ok=False, output=stdout_text, error=error)
    return GitResult(ok=True, output=stdout_text)


def git_output(args: Sequence[str], cwd: str | Path) -> Optional[str]:
    """Convenience wrapper: stdout on success, None on any failure."""
    result = run_git(args, cwd)
    return result.output if result.ok else None


# ---------------------------------------------------------------------------
# Repository layout
# ---------------------------------------------------------------------------


def get_git_root(directory: str | Path) -> Optional[str]:
    """Return the top-level directory of the repository containing `directory`."""
    if not Path(directory).is_dir():
        return None
    return git_output(["rev-parse", "--show-toplevel"], directory)


def get_git_common_dir(directory: str | Path) -> Optional[Path]:
    """Return the shared git metadata directory (the main `.git`, even from a worktree)."""
    output = git_output(["rev-parse", "--git-common-dir"], directory)
    if output is None:
        return None
    path = Path(output)
    if not path.is_absolute():
        path = (Path(directory) / path).resolve()
    return path


def get_worktree_path(git_root: str | Path, agent_id: str, worktrees_dir: str = WORKTREES_DIR) -> Path:
    return Path(git_root) / worktrees_dir / agent_id


def get_branch_name(agent_id: str, prefix: str = BRANCH_PREFIX) -> str:
    return f"{prefix}/{agent_id}"


def branch_exists(branch_name: str, cwd: str | Path) -> bool:
    return run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}"], cwd).ok


def current_branch(cwd: str | Path) -> Optional[str]:
    return git_output(["rev-parse", "--abbrev-ref", "HEAD"], cwd)


def working_tree_status(cwd: str | Path) -> GitResult:
    """Porcelain status; empty output means a clean working tree."""
    return run_git(["status", "--porcelain"], cwd)


def resolve_agent_branch(git_root: str | Path, agent_id: str, prefix: str = BRANCH_PREFIX) -> str:
    """Branch an agent's worktree is on.

    Branch names may carry a collision suffix, so the live worktree is the
    source of truth; the unsuffixed name is the fallback.
    """
    worktree_path = get_worktree_path(git_root, agent_id)
    if worktree_path.exists():
        branch = current_branch(worktree_path)
        if branch and branch != "HEAD":
            return branch
    return get_branch_name(agent_id, prefix)


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------


def parse_diff_stats(stat_output: str) -> DiffStats:
    """Parse the summary line of `git diff --stat`.

    A missing or unparseable summary yields zero stats.
    """
    for line in reversed(stat_output.splitlines()):
        match = _STAT_SUMMARY_RE.search(line)
        if match:
            return DiffStats(
                files=int(match.group(1) or 0),
                insertions=int(match.group(2) or 0),
                deletions=int(match.group(3) or 0),
            )
    return DiffStats()


def diff_against_main(git_root: str | Path, branch: str, main_branch: str = MAIN_BRANCH) -> Optional[BranchDiff]:
    """Unified diff of `branch` since it forked from main, with parsed stats."""
    diff = git_output(["diff", f"{main_branch}...{branch}", "--"], git_root)
    if diff is None:
        logger.warning("Failed to get diff for %s", branch)
        return None

    stat_output = git_output(["diff", f"{main_branch}...{branch}", "--stat"], git_root)
    if stat_output is None:
        logger.warning("Failed to get diff stats for %s", branch)
        return BranchDiff(diff=diff)
    return BranchDiff(diff=diff, stats=parse_diff_stats(stat_output))


def list_files_changed(git_root: str | Path, branch: str, main_branch: str = MAIN_BRANCH) -> Optional[str]:
    """Raw `git diff --stat` output; interpretation is left to the reader."""
    return git_output(["diff", f"{main_branch}...{branch}", "--stat"], git_root)


def list_commits(git_root: str | Path, branch: str, main_branch: str = MAIN_BRANCH) -> Optional[str]:
    """Raw `git log --oneline --stat` of commits on `branch` not in main."""
    return git_output(["log", f"{main_branch}..{branch}", "--oneline", "--stat"], git_root)


def count_unmerged_commits(git_root: str | Path, branch: str, main_branch: str = MAIN_BRANCH) -> Optional[int]:
    output = git_output(["rev-list", "--count", f"{main_branch}..{branch}"], git_root)
    if output is None:
        return None
    try:
        return int(output)
    except ValueError:
        return None


async def count_commits_async(git_root: str | Path, branch: str, main_branch: str = MAIN_BRANCH) -> int:
    result = await run_git_async(["rev-list", "--count", f"{main_branch}..{branch}"], git_root)
    if not result.ok:
        return 0
    try:
        return int(result.output)
    except ValueError:
        return 0


async def recent_commits_async(
    git_root: str | Path, branch: str, limit: int, main_branch: str = MAIN_BRANCH
) -> list[str]:
    result = await run_git_async(["log", f"{main_branch}..{branch}", "--oneline", f"-{limit}"], git_root)
    if not result.ok:
        return []
    return [line for line in result.output.splitlines() if line]


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def dry_run_merge(source_branch: str, target_path: str | Path) -> MergeConflictResult:
    """Check whether `source_branch` merges cleanly into the checkout at `target_path`.

    The merge is always aborted and the checkout hard-reset afterwards, so the
    target is left exactly as found whatever the outcome.
    """
    head = current_branch(target_path)
    if head is None:
        return MergeConflictResult(can_merge=False, output=f"Target workspace not found at {target_path}")

    status = working_tree_status(target_path)
    if not status.ok:
        return MergeConflictResult(can_merge=False, output=f"Cannot check merge: {status.error}")
    if status.output:
        return MergeConflictResult(
            can_merge=False,
            output=f"Cannot check merge: target has uncommitted changes:\n{status.output}",
        )

    merge_result = run_git(["merge", "--no-commit", "--no-ff", source_branch], target_path)
    merge_status = git_output(["status"], target_path) or ""

    # A clean --no-commit merge leaves MERGE_HEAD too, so abort unconditionally.
    run_git(["merge", "--abort"], target_path)
    run_git(["reset", "--hard", "HEAD"], target_path)

    if not merge_result.ok:
        return MergeConflictResult(can_merge=False, output=f"Merge would have conflicts:\n{merge_status}")
    return MergeConflictResult(can_merge=True, output=f"Merge would succeed cleanly:\n{merge_status}")


def merge(source_branch: str, target_path: str | Path, message: str) -> MergeResult:
    """Ordinary merge preserving the source history.

    On failure the checkout is left as git left it (possibly conflicted).
    """
    result = run_git(["merge", source_branch, "-m", message], target_path)
    if not result.ok:
        status = git_output(["status"], target_path) or ""
        logger.warning("Merge failed: %s into %s", source_branch, target_path)
        return MergeResult(success=False, output=f"Merge failed ({result.error}):\n{status}", error=result.error)

    log = git_output(["log", "--oneline", "-5"], target_path) or ""
    return MergeResult(success=True, output=f"Merge successful:\n{log}")
