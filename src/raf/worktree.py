"""Worktree lifecycle: isolated checkouts for out-of-place project execution.

A project's worktree lives at ``<root>/<repo-basename>/<project-folder>`` on a
branch named after the project folder. Nothing about worktrees is recorded by
RAF; every question ("does it exist?", "is it valid?") is answered by asking
the filesystem and git again.

Merging and removal must run against the main repository: the merge target
branch cannot be checked out from inside the worktree being merged.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from raf import log
from raf.git_ops import Git, output_of
from raf.paths import plans_dir


class WorktreeError(RuntimeError):
    """A worktree operation that needs manual intervention."""


def default_worktree_root() -> Path:
    override = os.environ.get("RAF_WORKTREE_ROOT")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".raf" / "worktrees"


def compute_worktree_base_dir(repo_basename: str, root: Path | None = None) -> Path:
    return (root or default_worktree_root()) / repo_basename


def compute_worktree_path(repo_basename: str, project_folder: str, root: Path | None = None) -> Path:
    """Deterministic worktree location. Does not touch the filesystem."""
    return compute_worktree_base_dir(repo_basename, root) / project_folder


def branch_exists(branch: str, repo: Git | None = None) -> bool:
    return (repo or Git()).branch_exists(branch)


def get_repo_root(repo: Git | None = None) -> Path | None:
    return (repo or Git()).repo_root()


def get_repo_basename(repo: Git | None = None) -> str | None:
    root = get_repo_root(repo)
    return root.name if root else None


# ── results ──────────────────────────────────────────────────────────


@dataclass
class WorktreeCreateResult:
    success: bool
    worktree_path: Path
    branch: str
    error: str = ""


class ValidationStage(str, Enum):
    EXISTS = "exists"
    LISTED = "listed"
    PROJECT_FOLDER = "project_folder"
    PLANS = "plans"


@dataclass
class WorktreeValidation:
    exists: bool = False
    is_valid_worktree: bool = False
    has_project_folder: bool = False
    has_plans: bool = False
    project_path: Path | None = None
    failed_stage: ValidationStage | None = None

    @property
    def valid(self) -> bool:
        return self.failed_stage is None


@dataclass
class WorktreeMergeResult:
    success: bool
    merged: bool = False
    fast_forward: bool = False
    error: str = ""


@dataclass
class RemoveResult:
    success: bool
    error: str = ""


@dataclass
class SyncResult:
    success: bool
    main_branch: str | None = None
    had_changes: bool = False
    error: str = ""


# ── create ───────────────────────────────────────────────────────────


def _add_worktree(
    repo_basename: str,
    project_folder: str,
    *,
    new_branch: bool,
    repo: Git | None,
    root: Path | None,
    logger: log.Logger | None,
) -> WorktreeCreateResult:
    repo = repo or Git()
    logger = logger or log.default_logger()
    path = compute_worktree_path(repo_basename, project_folder, root)
    branch = project_folder

    if not new_branch and not repo.branch_exists(branch):
        return WorktreeCreateResult(False, path, branch, f'Branch "{branch}" does not exist locally')

    base_dir = path.parent
    try:
        base_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return WorktreeCreateResult(False, path, branch, f"Failed to create parent directory {base_dir}: {e}")

    r = repo.worktree_add(path, branch, new_branch=new_branch)
    if r.returncode != 0:
        return WorktreeCreateResult(False, path, branch, f"Failed to create worktree: {output_of(r)}")

    logger.debug(f"Created worktree {path} on branch {branch}")
    return WorktreeCreateResult(True, path, branch)


def create_worktree(
    repo_basename: str,
    project_folder: str,
    *,
    repo: Git | None = None,
    root: Path | None = None,
    logger: log.Logger | None = None,
) -> WorktreeCreateResult:
    """``git worktree add <path> -b <project-folder>``: a new branch from HEAD."""
    return _add_worktree(repo_basename, project_folder, new_branch=True, repo=repo, root=root, logger=logger)


def create_worktree_from_branch(
    repo_basename: str,
    project_folder: str,
    *,
    repo: Git | None = None,
    root: Path | None = None,
    logger: log.Logger | None = None,
) -> WorktreeCreateResult:
    """Re-attach a worktree to an existing ``<project-folder>`` branch."""
    return _add_worktree(repo_basename, project_folder, new_branch=False, repo=repo, root=root, logger=logger)


# ── validate ─────────────────────────────────────────────────────────


def validate_worktree(
    worktree_path: Path,
    project_rel_path: Path | str,
    *,
    repo: Git | None = None,
) -> WorktreeValidation:
    """Check, in order, that the worktree directory exists, is registered
    with git, contains the project folder, and that folder has ``plans/``.

    Stops at the first failing check and records it in ``failed_stage``.
    """
    repo = repo or Git()
    result = WorktreeValidation()

    if not worktree_path.is_dir():
        result.failed_stage = ValidationStage.EXISTS
        return result
    result.exists = True

    listed = repo.worktree_list()
    target = worktree_path.resolve()
    if not listed or not any(p.resolve() == target for p in listed):
        result.failed_stage = ValidationStage.LISTED
        return result
    result.is_valid_worktree = True

    project_path = worktree_path / project_rel_path
    if not project_path.is_dir():
        result.failed_stage = ValidationStage.PROJECT_FOLDER
        return result
    result.has_project_folder = True
    result.project_path = project_path

    if not plans_dir(project_path).is_dir():
        result.failed_stage = ValidationStage.PLANS
        return result
    result.has_plans = True
    return result


# ── merge / remove ───────────────────────────────────────────────────


def merge_worktree_branch(
    branch: str,
    target_branch: str,
    *,
    repo: Git | None = None,
    logger: log.Logger | None = None,
) -> WorktreeMergeResult:
    """Merge *branch* into *target_branch*: fast-forward, else merge commit.

    A conflicting merge is aborted so the repository is never left
    mid-merge; the caller gets an error asking for a manual merge.
    """
    repo = repo or Git()
    logger = logger or log.default_logger()

    if repo.current_branch() == branch and repo.repo_root() != get_main_worktree(repo):
        return WorktreeMergeResult(
            False,
            error=f'Cannot merge "{branch}" from inside its own worktree; run from the main repository.',
        )

    r = repo.checkout(target_branch)
    if r.returncode != 0:
        return WorktreeMergeResult(False, error=f"Failed to checkout {target_branch}: {output_of(r)}")

    if repo.merge_ff_only(branch).returncode == 0:
        return WorktreeMergeResult(True, merged=True, fast_forward=True)

    r = repo.merge(branch)
    if r.returncode == 0:
        return WorktreeMergeResult(True, merged=True, fast_forward=False)

    logger.debug(f"Merge of {branch} failed: {output_of(r)}")
    if not repo.merge_in_progress():
        # Refused before starting, e.g. local changes the merge would overwrite.
        return WorktreeMergeResult(
            False, error=f'Failed to merge "{branch}" into "{target_branch}": {output_of(r)}'
        )

    abort = repo.merge_abort()
    if abort.returncode != 0:
        logger.warn("Failed to abort merge - repo may be in an inconsistent state")
    return WorktreeMergeResult(
        False,
        error=f'Merge conflicts detected. Please merge branch "{branch}" into "{target_branch}" manually.',
    )


def get_main_worktree(repo: Git) -> Path | None:
    """First entry of ``git worktree list``, the main working tree."""
    listed = repo.worktree_list()
    return listed[0] if listed else None


def remove_worktree(
    worktree_path: Path,
    *,
    repo: Git | None = None,
    logger: log.Logger | None = None,
) -> RemoveResult:
    """Remove the worktree directory. The branch is kept for later re-attachment."""
    repo = repo or Git()
    r = repo.worktree_remove(worktree_path)
    if r.returncode != 0:
        return RemoveResult(False, f"Failed to remove worktree at {worktree_path}: {output_of(r)}")
    (logger or log.default_logger()).debug(f"Removed worktree {worktree_path}")
    return RemoveResult(True)


def list_worktree_projects(repo_basename: str, root: Path | None = None) -> list[str]:
    """Project folder names that have a worktree directory for this repo."""
    base = compute_worktree_base_dir(repo_basename, root)
    if not base.is_dir():
        return []
    return sorted(p.name for p in base.iterdir() if p.is_dir())


# ── main branch sync ─────────────────────────────────────────────────


def detect_main_branch(repo: Git | None = None, remote: str = "origin") -> str | None:
    """Remote HEAD branch, else a local ``main`` or ``master``."""
    repo = repo or Git()
    branch = repo.remote_head_branch(remote)
    if branch:
        return branch
    for candidate in ("main", "master"):
        if repo.branch_exists(candidate):
            return candidate
    return None


def pull_main_branch(repo: Git | None = None, remote: str = "origin") -> SyncResult:
    """Fast-forward the local main branch from *remote*. Never forces.

    Fails when the histories diverged or, while main is checked out, when
    uncommitted changes would block the fast-forward.
    """
    repo = repo or Git()
    main = detect_main_branch(repo, remote)
    if not main:
        return SyncResult(False, None, error="Could not detect main branch")

    before = _rev(repo, main)

    if repo.current_branch() != main:
        r = repo.fetch(remote, f"{main}:{main}")
        if r.returncode != 0:
            text = output_of(r)
            if "non-fast-forward" in text or "[rejected]" in text:
                return SyncResult(
                    False, main, error=f'Local "{main}" has diverged from {remote}/{main}; resolve manually'
                )
            return SyncResult(False, main, error=f"Failed to fetch {remote}/{main}: {text}")
        return SyncResult(True, main, had_changes=_rev(repo, main) != before)

    status = repo.status_porcelain()
    if status and status.strip():
        return SyncResult(False, main, error=f'Cannot pull "{main}": uncommitted changes in working tree')

    r = repo.fetch(remote, main)
    if r.returncode != 0:
        return SyncResult(False, main, error=f"Failed to fetch {remote}/{main}: {output_of(r)}")

    r = repo.merge_ff_only(f"{remote}/{main}")
    if r.returncode != 0:
        return SyncResult(
            False,
            main,
            error=f'Local "{main}" has diverged from {remote}/{main}; resolve manually',
        )
    return SyncResult(True, main, had_changes=_rev(repo, main) != before)


def push_main_branch(repo: Git | None = None, remote: str = "origin") -> SyncResult:
    """Push main to *remote*; a rejected (non-fast-forward) push is an error."""
    repo = repo or Git()
    main = detect_main_branch(repo, remote)
    if not main:
        return SyncResult(False, None, error="Could not detect main branch")

    r = repo.push(remote, main)
    text = output_of(r)
    if r.returncode != 0:
        return SyncResult(False, main, error=f"Failed to push {main}: {text}")
    return SyncResult(True, main, had_changes="everything up-to-date" not in text.lower())


def _rev(repo: Git, branch: str) -> str | None:
    r = repo.run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
    return r.stdout.strip() if r.returncode == 0 else None
