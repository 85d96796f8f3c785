"""Git operations behind a narrow interface.

Everything RAF does to a repository goes through :class:`VersionControl`, so
orchestration code can be exercised against a fake. :class:`Git` is the real
implementation: synchronous ``git`` subprocess calls, one working directory
per instance. Paths handed to ``add``/``commit`` are repository-relative, as
``git status --porcelain`` reports them, so instances should be rooted at the
repository (or worktree) top level.
"""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol


def _git(*args: str, cwd: Path | None = None, check: bool = False) -> subprocess.CompletedProcess[str]:
    """Run a git command, capturing stdout/stderr."""
    return subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        cwd=cwd,
        check=check,
    )


def output_of(r: subprocess.CompletedProcess[str]) -> str:
    """Combined stdout/stderr of a finished git call, stripped."""
    return "\n".join(s.strip() for s in (r.stdout, r.stderr) if s and s.strip())


class VersionControl(Protocol):
    """The git surface RAF depends on."""

    cwd: Path | None

    def is_repo(self) -> bool: ...

    def status_porcelain(self) -> str | None: ...

    def add(self, path: str) -> subprocess.CompletedProcess[str]: ...

    def staged_files(self) -> list[str]: ...

    def commit(self, message: str, paths: Sequence[str] = ()) -> subprocess.CompletedProcess[str]: ...

    def stash_push(self, message: str, paths: Sequence[str] = ()) -> subprocess.CompletedProcess[str]: ...

    def head(self) -> str | None: ...

    def current_branch(self) -> str | None: ...

    def repo_root(self) -> Path | None: ...


class Git:
    """:class:`VersionControl` implementation backed by the ``git`` binary."""

    def __init__(self, cwd: Path | str | None = None) -> None:
        self.cwd = Path(cwd) if cwd is not None else None

    def run(self, *args: str) -> subprocess.CompletedProcess[str]:
        return _git(*args, cwd=self.cwd)

    # ── repository info ──────────────────────────────────────────

    def is_repo(self) -> bool:
        try:
            r = self.run("rev-parse", "--is-inside-work-tree")
        except (FileNotFoundError, NotADirectoryError):
            return False
        return r.returncode == 0 and r.stdout.strip() == "true"

    def repo_root(self) -> Path | None:
        r = self.run("rev-parse", "--show-toplevel")
        if r.returncode != 0 or not r.stdout.strip():
            return None
        return Path(r.stdout.strip())

    def head(self) -> str | None:
        r = self.run("rev-parse", "HEAD")
        return (r.stdout.strip() or None) if r.returncode == 0 else None

    def head_message(self) -> str | None:
        r = self.run("log", "-1", "--format=%s")
        return (r.stdout.strip() or None) if r.returncode == 0 else None

    def current_branch(self) -> str | None:
        r = self.run("branch", "--show-current")
        return (r.stdout.strip() or None) if r.returncode == 0 else None

    def branch_exists(self, name: str) -> bool:
        r = self.run("show-ref", "--verify", "--quiet", f"refs/heads/{name}")
        return r.returncode == 0

    def ref_exists(self, ref: str) -> bool:
        r = self.run("rev-parse", "--verify", "--quiet", ref)
        return r.returncode == 0

    # ── working tree ─────────────────────────────────────────────

    def status_porcelain(self) -> str | None:
        """Raw ``git status --porcelain`` output, or ``None`` if git failed."""
        r = self.run("status", "--porcelain", "--untracked-files=all")
        return r.stdout if r.returncode == 0 else None

    def add(self, path: str) -> subprocess.CompletedProcess[str]:
        return self.run("add", "--", path)

    def staged_files(self) -> list[str]:
        r = self.run("diff", "--cached", "--name-only")
        if r.returncode != 0:
            return []
        return [f for f in r.stdout.splitlines() if f.strip()]

    def commit(self, message: str, paths: Sequence[str] = ()) -> subprocess.CompletedProcess[str]:
        """Commit the index, or only *paths* when given (``git commit -- <paths>``)."""
        if paths:
            return self.run("commit", "-m", message, "--", *paths)
        return self.run("commit", "-m", message)

    def stash_push(self, message: str, paths: Sequence[str] = ()) -> subprocess.CompletedProcess[str]:
        """Stash tracked and untracked changes, limited to *paths* when given."""
        if paths:
            return self.run("stash", "push", "--include-untracked", "-m", message, "--", *paths)
        return self.run("stash", "push", "--include-untracked", "-m", message)

    def stash_list(self) -> list[str]:
        r = self.run("stash", "list")
        return r.stdout.splitlines() if r.returncode == 0 else []

    # ── branches & merges ────────────────────────────────────────

    def checkout(self, branch: str) -> subprocess.CompletedProcess[str]:
        return self.run("checkout", branch)

    def merge_ff_only(self, branch: str) -> subprocess.CompletedProcess[str]:
        return self.run("merge", "--ff-only", branch)

    def merge(self, branch: str) -> subprocess.CompletedProcess[str]:
        return self.run("merge", "--no-edit", branch)

    def merge_abort(self) -> subprocess.CompletedProcess[str]:
        return self.run("merge", "--abort")

    def merge_in_progress(self) -> bool:
        return self.ref_exists("MERGE_HEAD")

    # ── worktrees ────────────────────────────────────────────────

    def worktree_add(self, path: Path, branch: str, *, new_branch: bool) -> subprocess.CompletedProcess[str]:
        if new_branch:
            return self.run("worktree", "add", str(path), "-b", branch)
        return self.run("worktree", "add", str(path), branch)

    def worktree_remove(self, path: Path) -> subprocess.CompletedProcess[str]:
        return self.run("worktree", "remove", str(path))

    def worktree_list(self) -> list[Path] | None:
        """Paths from ``git worktree list --porcelain``; ``None`` if git failed."""
        r = self.run("worktree", "list", "--porcelain")
        if r.returncode != 0:
            return None
        paths = []
        for line in r.stdout.splitlines():
            if line.startswith("worktree "):
                paths.append(Path(line[len("worktree "):].strip()))
        return paths

    # ── remotes ──────────────────────────────────────────────────

    def remote_head_branch(self, remote: str = "origin") -> str | None:
        r = self.run("symbolic-ref", f"refs/remotes/{remote}/HEAD")
        if r.returncode != 0 or not r.stdout.strip():
            return None
        return r.stdout.strip().rsplit("/", 1)[-1]

    def fetch(self, remote: str, refspec: str) -> subprocess.CompletedProcess[str]:
        return self.run("fetch", remote, refspec)

    def push(self, remote: str, branch: str) -> subprocess.CompletedProcess[str]:
        return self.run("push", remote, branch)
