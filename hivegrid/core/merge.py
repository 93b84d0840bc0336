"""Merge coordination: worker branch -> staging workspace -> main.

Staging is the orchestrator's own worktree. Workers' branches are merged into
it first; the orchestrator then promotes its branch into `main`.

Promotion to `main` is the only step that touches a checkout shared by every
orchestrator, so it runs under an exclusive lock. The lock is a record file in
the repository's git metadata directory, created with O_CREAT | O_EXCL. All
hubs and agents on the machine share that filesystem, so no lock server is
needed.
"""

from __future__ import annotations

import json
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from hivegrid.config import config
from hivegrid.constants import MERGE_LOCK_FILENAME
from hivegrid.core.git import (
    MergeConflictResult,
    MergeResult,
    branch_exists,
    current_branch,
    dry_run_merge,
    get_git_common_dir,
    get_worktree_path,
    merge,
    resolve_agent_branch,
    run_git,
    working_tree_status,
)
from hivegrid.logging_config import get_logger

logger = get_logger(__name__)


class MergeLockError(RuntimeError):
    """Raised when the merge lock is held by someone else (or by the caller already)."""

    def __init__(self, message: str, holder: Optional[str] = None, branch: Optional[str] = None) -> None:
        super().__init__(message)
        self.holder = holder
        self.branch = branch


@dataclass(frozen=True)
class MergeLock:
    holder: str
    branch: str
    acquired_at: int  # Epoch ms

    def to_record(self) -> dict[str, object]:
        return {"holder": self.holder, "branch": self.branch, "acquiredAt": self.acquired_at}

    @classmethod
    def from_record(cls, record: object) -> Optional["MergeLock"]:
        if not isinstance(record, dict):
            return None
        holder = record.get("holder")
        branch = record.get("branch")
        acquired_at = record.get("acquiredAt")
        if not isinstance(holder, str) or not isinstance(branch, str) or not isinstance(acquired_at, (int, float)):
            return None
        return cls(holder=holder, branch=branch, acquired_at=int(acquired_at))


def get_merge_lock_path(git_root: str | Path) -> Path:
    """Lock file lives in the shared git dir so every worktree sees the same one."""
    common_dir = get_git_common_dir(git_root)
    base = common_dir if common_dir is not None else Path(git_root) / ".git"
    return base / MERGE_LOCK_FILENAME


def read_merge_lock(lock_path: Path) -> Optional[MergeLock]:
    try:
        return MergeLock.from_record(json.loads(lock_path.read_text(encoding="utf-8")))
    except (OSError, ValueError):
        return None


def _lock_age_seconds(lock_path: Path, lock: Optional[MergeLock]) -> Optional[float]:
    if lock is not None:
        return time.time() - lock.acquired_at / 1000
    # Unreadable or half-written record: judge by file age instead
    try:
        return time.time() - lock_path.stat().st_mtime
    except OSError:
        return None


def _try_create(lock_path: Path, lock: MergeLock) -> bool:
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(lock.to_record(), f)
    return True


def _contention_error(lock_path: Path, holder: str) -> MergeLockError:
    existing = read_merge_lock(lock_path)
    age = _lock_age_seconds(lock_path, existing)
    elapsed = f"{int(age)}s ago" if age is not None else "at an unknown time"
    if existing is None:
        return MergeLockError(f"Merge to main is locked (lock acquired {elapsed}, holder unknown). Retry later.")
    owner = "you" if existing.holder == holder else existing.holder
    return MergeLockError(
        f"Merge to main is locked by {owner} merging {existing.branch} (acquired {elapsed}). Retry later.",
        holder=existing.holder,
        branch=existing.branch,
    )


def acquire_merge_lock(
    git_root: str | Path,
    holder: str,
    branch: str,
    stale_seconds: Optional[float] = None,
) -> MergeLock:
    """Take the exclusive merge-to-main lock.

    A lock older than `stale_seconds` is treated as abandoned and reclaimed.
    Acquisition is not re-entrant: a holder asking twice before releasing
    gets the same MergeLockError a foreign holder would.

    Raises:
        MergeLockError: the lock is held and not stale
    """
    if stale_seconds is None:
        stale_seconds = config.git.merge_lock_stale_seconds
    lock_path = get_merge_lock_path(git_root)
    lock = MergeLock(holder=holder, branch=branch, acquired_at=int(time.time() * 1000))

    if _try_create(lock_path, lock):
        logger.info("Merge lock acquired by %s for %s", holder, branch)
        return lock

    existing = read_merge_lock(lock_path)
    age = _lock_age_seconds(lock_path, existing)
    if age is None or age < stale_seconds:
        raise _contention_error(lock_path, holder)

    logger.warning(
        "Reclaiming stale merge lock held by %s (%ds old)",
        existing.holder if existing else "unknown",
        int(age),
    )
    try:
        lock_path.unlink()
    except FileNotFoundError:
        pass

    if _try_create(lock_path, lock):
        logger.info("Merge lock acquired by %s for %s", holder, branch)
        return lock
    # Someone else reclaimed it between our unlink and create
    raise _contention_error(lock_path, holder)


def release_merge_lock(git_root: str | Path, holder: str) -> bool:
    """Release the lock if `holder` owns it. Returns True when a lock was removed."""
    lock_path = get_merge_lock_path(git_root)
    existing = read_merge_lock(lock_path)
    if existing is None:
        if lock_path.exists():
            logger.warning("Merge lock at %s is unreadable; leaving it for stale reclaim", lock_path)
        return False
    if existing.holder != holder:
        logger.warning("Not releasing merge lock: held by %s, not %s", existing.holder, holder)
        return False
    try:
        lock_path.unlink()
    except FileNotFoundError:
        return False
    logger.info("Merge lock released by %s", holder)
    return True


@contextmanager
def merge_lock(
    git_root: str | Path,
    holder: str,
    branch: str,
    stale_seconds: Optional[float] = None,
) -> Iterator[MergeLock]:
    lock = acquire_merge_lock(git_root, holder, branch, stale_seconds)
    try:
        yield lock
    finally:
        release_merge_lock(git_root, holder)


def check_merge_conflicts(git_root: str | Path, orchestrator_id: str, worker_id: str) -> MergeConflictResult:
    """Dry-run the worker's branch into the orchestrator's staging workspace."""
    staging_path = get_worktree_path(git_root, orchestrator_id)
    if not staging_path.exists():
        return MergeConflictResult(
            can_merge=False,
            output=f"Staging workspace for {orchestrator_id} not found at {staging_path}",
        )
    worker_branch = resolve_agent_branch(git_root, worker_id)
    if not branch_exists(worker_branch, git_root):
        return MergeConflictResult(can_merge=False, output=f"Worker branch {worker_branch} does not exist")
    return dry_run_merge(worker_branch, staging_path)


def merge_worker_to_staging(git_root: str | Path, orchestrator_id: str, worker_id: str) -> MergeResult:
    """Merge a worker's branch into its orchestrator's staging workspace.

    A conflicted merge is NOT aborted: the staging workspace stays conflicted
    so the orchestrator (or a human) can resolve it.
    """
    staging_path = get_worktree_path(git_root, orchestrator_id)
    if not staging_path.exists():
        error = f"Staging workspace for {orchestrator_id} not found at {staging_path}"
        return MergeResult(success=False, output=error, error=error)

    status = working_tree_status(staging_path)
    if not status.ok:
        return MergeResult(success=False, output=status.error, error=status.error)
    if status.output:
        error = "Staging workspace has uncommitted changes"
        return MergeResult(success=False, output=f"{error}:\n{status.output}", error=error)

    worker_branch = resolve_agent_branch(git_root, worker_id)
    if not branch_exists(worker_branch, git_root):
        error = f"Worker branch {worker_branch} does not exist"
        return MergeResult(success=False, output=error, error=error)

    logger.info("Merging %s into staging %s", worker_branch, staging_path)
    return merge(worker_branch, staging_path, f"Merge worker {worker_id} into staging")


def merge_staging_to_main(
    git_root: str | Path,
    orchestrator_id: str,
    main_branch: Optional[str] = None,
    stale_seconds: Optional[float] = None,
) -> MergeResult:
    """Promote the orchestrator's staging branch into `main` under the merge lock.

    The lock is released on every path out, including a failed merge.
    """
    main_branch = main_branch or config.git.main_branch
    staging_branch = resolve_agent_branch(git_root, orchestrator_id)
    if not branch_exists(staging_branch, git_root):
        error = f"Staging branch {staging_branch} does not exist"
        return MergeResult(success=False, output=error, error=error)

    try:
        acquire_merge_lock(git_root, orchestrator_id, staging_branch, stale_seconds)
    except MergeLockError as e:
        return MergeResult(success=False, output=str(e), error=str(e))

    try:
        head = current_branch(git_root)
        if head != main_branch:
            logger.warning("Main checkout is on %s, switching to %s before merge", head, main_branch)
            checkout = run_git(["checkout", main_branch], git_root)
            if not checkout.ok:
                error = f"Failed to check out {main_branch}: {checkout.error}"
                return MergeResult(success=False, output=error, error=error)

        status = working_tree_status(git_root)
        if not status.ok:
            return MergeResult(success=False, output=status.error, error=status.error)
        if status.output:
            error = f"{main_branch} has uncommitted changes; refusing to merge"
            return MergeResult(success=False, output=f"{error}:\n{status.output}", error=error)

        logger.info("Merging staging %s into %s", staging_branch, main_branch)
        return merge(staging_branch, git_root, f"Merge {staging_branch} into {main_branch}")
    finally:
        release_merge_lock(git_root, orchestrator_id)
