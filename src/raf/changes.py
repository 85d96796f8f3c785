"""Change tracking: attribute working-tree changes to the task that made them."""

from __future__ import annotations

import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from raf import log
from raf.git_ops import Git, VersionControl, output_of
from raf.paths import (
    decisions_path,
    extract_project_name,
    extract_project_number,
    input_path,
    outcomes_dir,
)

_SIMPLE_ESCAPES = {
    "a": b"\a",
    "b": b"\b",
    "f": b"\f",
    "n": b"\n",
    "r": b"\r",
    "t": b"\t",
    "v": b"\v",
    "\\": b"\\",
    '"': b'"',
}


def _unquote(path: str) -> str:
    """Undo git's C-style quoting (``"caf\\303\\251.txt"`` -> ``café.txt``)."""
    if len(path) < 2 or not (path.startswith('"') and path.endswith('"')):
        return path
    body = path[1:-1]
    out = bytearray()
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != "\\" or i + 1 >= len(body):
            out += ch.encode("utf-8")
            i += 1
            continue
        nxt = body[i + 1]
        octal = body[i + 1:i + 4]
        if len(octal) == 3 and all(c in "01234567" for c in octal):
            out.append(int(octal, 8) & 0xFF)
            i += 4
        elif nxt in _SIMPLE_ESCAPES:
            out += _SIMPLE_ESCAPES[nxt]
            i += 2
        else:
            out += nxt.encode("utf-8")
            i += 2
    return out.decode("utf-8", errors="replace")


def parse_git_status(output: str) -> list[str]:
    """Paths from ``git status --porcelain`` output.

    Each line is ``XY <path>``; the two status columns may be spaces, so lines
    are never stripped. Renames and copies (``old -> new``) yield the new path.
    """
    files: list[str] = []
    for line in output.split("\n"):
        line = line.rstrip("\r")
        if len(line) < 4:
            continue
        code, path = line[:2], line[3:]
        if "R" in code or "C" in code:
            arrow = path.find(" -> ")
            if arrow != -1:
                path = path[arrow + 4:]
        files.append(_unquote(path))
    return files


def compute_delta(current: Iterable[str], baseline: Iterable[str]) -> list[str]:
    """Files in *current* that were not already changed in *baseline*, in order."""
    before = set(baseline)
    return [f for f in current if f not in before]


@dataclass
class CommitResult:
    commit_hash: str | None = None
    files: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.commit_hash is not None


class ChangeTracker:
    """Baseline snapshots, attributed commits and failure stashes for one working tree."""

    def __init__(self, vcs: VersionControl | None = None, logger: log.Logger | None = None) -> None:
        self.vcs = vcs if vcs is not None else Git()
        self.log = logger or log.default_logger()

    def get_changed_files(self) -> list[str]:
        if not self.vcs.is_repo():
            return []
        raw = self.vcs.status_porcelain()
        return parse_git_status(raw) if raw else []

    def has_uncommitted_changes(self) -> bool:
        if not self.vcs.is_repo():
            return False
        raw = self.vcs.status_porcelain()
        return bool(raw and raw.strip())

    def snapshot_baseline(self) -> tuple[str, ...] | None:
        """Changed files right now, or ``None`` outside a repository."""
        if not self.vcs.is_repo():
            return None
        return tuple(self.get_changed_files())

    def stage_files(self, files: Sequence[str]) -> tuple[list[str], list[str]]:
        """``git add`` each file separately; returns ``(staged, skipped)``."""
        staged: list[str] = []
        skipped: list[str] = []
        for f in files:
            r = self.vcs.add(f)
            if r.returncode == 0:
                staged.append(f)
            else:
                skipped.append(f)
                self.log.warn(f"Could not stage {f}: {output_of(r) or f'exit code {r.returncode}'}")
        return staged, skipped

    def commit_task_changes(self, message: str, baseline: Sequence[str] | None) -> CommitResult:
        """Commit the files changed since *baseline*.

        With no baseline every currently changed file is committed.
        """
        if not self.vcs.is_repo():
            self.log.warn("Not in a git repository, skipping commit")
            return CommitResult()

        current = self.get_changed_files()
        if baseline is None:
            self.log.warn("No baseline snapshot for this task; committing all changed files")
            files = current
        else:
            files = compute_delta(current, baseline)

        if not files:
            self.log.debug("No task changes to commit")
            return CommitResult()
        return self.commit_files(message, files)

    def commit_files(self, message: str, files: Sequence[str]) -> CommitResult:
        """Stage *files* one by one and commit exactly those that staged."""
        staged, skipped = self.stage_files(files)
        if not staged:
            self.log.warn("None of the changed files could be staged")
            return CommitResult(skipped=skipped)

        r = self.vcs.commit(message, staged)
        if r.returncode != 0:
            text = output_of(r)
            if "nothing to commit" in text.lower():
                self.log.debug("Nothing to commit")
            else:
                self.log.warn(f"Commit failed: {text or f'exit code {r.returncode}'}")
            return CommitResult(files=staged, skipped=skipped)

        commit_hash = self.vcs.head()
        self.log.debug(f"Committed {len(staged)} file(s): {message}")
        return CommitResult(commit_hash=commit_hash, files=staged, skipped=skipped)

    def stash(self, name: str, baseline: Sequence[str] | None = None) -> bool:
        """Stash uncommitted changes (untracked included) under *name*.

        With a *baseline* only the files changed since it are stashed, so
        edits that predate the task stay in the working tree.
        """
        if not self.vcs.is_repo():
            self.log.warn("Not in a git repository, skipping stash")
            return False

        paths: list[str] = []
        if baseline is not None:
            paths = compute_delta(self.get_changed_files(), baseline)
            if not paths:
                self.log.debug("No task changes to stash")
                return False
        elif not self.has_uncommitted_changes():
            self.log.debug("No uncommitted changes to stash")
            return False

        r = self.vcs.stash_push(name, paths)
        if r.returncode != 0:
            self.log.warn(f"Failed to stash changes: {output_of(r)}")
            return False
        return True

    def commit_outcomes(self, project_path: Path, prefix: str = "RAF") -> CommitResult:
        """Commit pending changes under the project's ``outcomes/`` directory.

        Outcome files are written after the task commit they describe, so a
        run records them in one bookkeeping commit at the end.
        """
        root = self.vcs.repo_root()
        number = extract_project_number(project_path)
        name = extract_project_name(project_path)
        if root is None or not number or not name:
            return CommitResult()

        rel = Path(os.path.relpath(outcomes_dir(project_path).resolve(), root.resolve())).as_posix()
        files = [f for f in self.get_changed_files() if f.startswith(f"{rel}/")]
        if not files:
            self.log.debug("No outcome changes to commit")
            return CommitResult()
        return self.commit_files(f"{prefix}[{number}] Outcomes: {name}", files)


def failed_stash_name(project_number: str, task_id: str) -> str:
    return f"raf-{project_number}-task-{task_id}-failed"


def task_commit_message(project_id: str, task_id: str, description: str, prefix: str = "RAF") -> str:
    return f"{prefix}[{project_id}:{task_id}] {description}"


def _artifact_path(path: Path, cwd: Path | None) -> str:
    if cwd is None:
        return str(path.resolve())
    return os.path.relpath(path.resolve(), cwd.resolve())


def commit_planning_artifacts(
    project_path: Path | str,
    *,
    cwd: Path | str | None = None,
    extra_files: Iterable[Path | str] = (),
    amend: bool = False,
    prefix: str = "RAF",
    logger: log.Logger | None = None,
) -> bool:
    """Commit ``input.md``, ``decisions.md`` and *extra_files* for a project.

    Paths are made relative to *cwd* when one is given (worktree mode) and
    left absolute otherwise. Returns ``True`` if a commit was created.
    """
    logger = logger or log.default_logger()
    project_path = Path(project_path)
    work_dir = Path(cwd) if cwd is not None else None
    vcs = Git(work_dir)

    if not vcs.is_repo():
        logger.warn("Not in a git repository, skipping planning artifacts commit")
        return False

    number = extract_project_number(project_path)
    name = extract_project_name(project_path)
    if not number or not name:
        logger.warn("Could not extract project number or name from path, skipping commit")
        return False

    candidates = [input_path(project_path), decisions_path(project_path)]
    candidates.extend(Path(p) for p in extra_files)

    files = []
    for path in candidates:
        if not path.exists():
            logger.debug(f"Planning artifact missing, skipped: {path}")
            continue
        files.append(_artifact_path(path, work_dir))

    tracker = ChangeTracker(vcs, logger)
    staged, _ = tracker.stage_files(files)
    if not staged or not vcs.staged_files():
        logger.debug("No changes to planning artifacts to commit")
        return False

    kind = "Amend" if amend else "Plan"
    message = f"{prefix}[{number}] {kind}: {name}"
    r = vcs.commit(message, staged)
    if r.returncode != 0:
        text = output_of(r)
        if "nothing to commit" in text.lower() or "no changes added" in text.lower():
            logger.debug("Planning artifacts already committed or no changes")
        else:
            logger.warn(f"Failed to commit planning artifacts: {text}")
        return False

    logger.debug(f"Committed planning artifacts: {message}")
    return True
