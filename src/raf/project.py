"""Project files: plans, outcomes, logs and the summary report."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from raf import log
from raf.io_utils import list_markdown, read_text, read_text_if_exists, write_text
from raf.paths import (
    SUMMARY_FILE,
    extract_project_name,
    logs_dir,
    outcome_file_path,
    outcomes_dir,
    parse_task_file_name,
)
from raf.state import get_derived_stats
from raf.tasks.model import ProjectState, Task, TaskStatus


@dataclass
class Outcome:
    task_id: str
    content: str


def read_plan(project_path: Path, task: Task) -> str:
    plan_path = project_path / task.plan_file
    if not plan_path.is_file():
        raise FileNotFoundError(f"Plan file not found: {plan_path}")
    return read_text(plan_path, errors="replace")


def outcome_path_for(project_path: Path, task: Task) -> Path:
    """Outcome file mirrors the plan file name."""
    return outcome_file_path(project_path, task.id, task.name)


def read_outcome(project_path: Path, task: Task) -> str | None:
    return read_text_if_exists(outcome_path_for(project_path, task))


def save_outcome(project_path: Path, task: Task, content: str, *, logger: log.Logger | None = None) -> Path:
    path = outcome_path_for(project_path, task)
    write_text(path, content)
    (logger or log.default_logger()).debug(f"Saved outcome to {path}")
    return path


def remove_outcome(project_path: Path, task: Task) -> bool:
    path = outcome_path_for(project_path, task)
    if not path.is_file():
        return False
    path.unlink()
    return True


def read_outcomes(project_path: Path) -> list[Outcome]:
    """Every task outcome in id order. ``SUMMARY.md`` is not a task outcome."""
    directory = outcomes_dir(project_path)
    outcomes = []
    for name in list_markdown(directory):
        if name == SUMMARY_FILE:
            continue
        parsed = parse_task_file_name(name)
        if parsed:
            outcomes.append(Outcome(parsed[0], read_text(directory / name, errors="replace")))
    return outcomes


def save_log(project_path: Path, task_id: str, content: str, *, logger: log.Logger | None = None) -> Path:
    """Write an agent log under ``logs/``. The directory ignores itself in git,
    so logs never show up as changes or block worktree removal.
    """
    directory = logs_dir(project_path)
    ignore = directory / ".gitignore"
    if not ignore.is_file():
        write_text(ignore, "*\n")
    path = directory / f"{task_id}-task.log"
    write_text(path, content)
    (logger or log.default_logger()).debug(f"Saved log to {path}")
    return path


# ── outcome documents ────────────────────────────────────────────────


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _details(attempts: int, elapsed: str, extra: list[str]) -> list[str]:
    lines = ["## Details", f"- Attempts: {attempts}", f"- Elapsed time: {elapsed}"]
    lines.extend(extra)
    return lines


def render_completed_outcome(
    task: Task,
    *,
    summary: str,
    attempts: int,
    elapsed: str,
    commit_hash: str | None = None,
) -> str:
    extra = [f"- Commit: {commit_hash}"] if commit_hash else []
    lines = [
        "## Status: SUCCESS",
        "",
        f"# Task {task.id} - Completed",
        "",
        summary.strip() or "Task completed. No detailed report provided.",
        "",
        *_details(attempts, elapsed, extra),
        "",
        "<promise>COMPLETE</promise>",
        "",
    ]
    return "\n".join(lines)


def append_completion_details(
    existing: str,
    *,
    attempts: int,
    elapsed: str,
    commit_hash: str | None = None,
) -> str:
    """Keep an agent-written outcome; add run details and a final marker."""
    extra = [f"- Commit: {commit_hash}"] if commit_hash else []
    lines = [existing.rstrip(), "", *_details(attempts, elapsed, extra), "", "<promise>COMPLETE</promise>", ""]
    return "\n".join(lines)


def render_failed_outcome(
    task: Task,
    *,
    reason: str,
    attempts: int,
    elapsed: str,
    stash_name: str | None = None,
    output_summary: str = "",
) -> str:
    extra = [f"- Failed at: {_now_iso()}"]
    if stash_name:
        extra.append(f"- Stash: {stash_name}")
    lines = [
        "## Status: FAILED",
        "",
        f"# Task {task.id} - Failed",
        "",
        "## Failure Reason",
        "",
        reason,
        "",
    ]
    if output_summary:
        lines += ["## Agent Output (excerpt)", "", output_summary, ""]
    lines += [*_details(attempts, elapsed, extra), "", "<promise>FAILED</promise>", ""]
    return "\n".join(lines)


def render_blocked_outcome(task: Task, failed_deps: list[str], blocked_deps: list[str]) -> str:
    lines = [
        f"# Outcome: Task {task.id} Blocked",
        "",
        "## Summary",
        "",
        "This task was automatically blocked because one or more of its dependencies failed or are blocked.",
        "",
        "## Blocking Dependencies",
        "",
    ]
    if failed_deps:
        lines.append(f"**Failed dependencies**: {', '.join(failed_deps)}")
    if blocked_deps:
        lines.append(f"**Blocked dependencies**: {', '.join(blocked_deps)}")
    lines += [
        "",
        f"**Task dependencies**: {', '.join(task.dependencies)}",
        "",
        "## Resolution",
        "",
        "To unblock this task:",
        "1. Fix the failed dependency task(s)",
        "2. Re-run the project with `raf do`",
        "",
        "<promise>BLOCKED</promise>",
        "",
    ]
    return "\n".join(lines)


# ── summary ──────────────────────────────────────────────────────────

_BADGES = {
    TaskStatus.PENDING: "[ ]",
    TaskStatus.COMPLETED: "[x]",
    TaskStatus.FAILED: "[!]",
    TaskStatus.BLOCKED: "[-]",
}


def save_summary(project_path: Path, state: ProjectState, *, logger: log.Logger | None = None) -> Path:
    """Write ``outcomes/SUMMARY.md``; state derivation ignores this file."""
    stats = get_derived_stats(state)
    name = extract_project_name(project_path) or "Unknown"
    lines = [
        f"# Project Summary: {name}",
        "",
        f"**Generated:** {_now_iso()}",
        "",
        "## Statistics",
        "",
        f"- Total: {stats.total}",
        f"- Completed: {stats.completed}",
        f"- Failed: {stats.failed}",
        f"- Blocked: {stats.blocked}",
        f"- Pending: {stats.pending}",
        "",
        "## Tasks",
        "",
    ]
    for task in state.tasks:
        lines += [
            f"### {_BADGES.get(task.status, '[?]')} Task {task.id}",
            "",
            f"- **Plan:** {task.plan_file}",
            f"- **Status:** {task.status.value}",
            "",
        ]
    path = outcomes_dir(project_path) / SUMMARY_FILE
    write_text(path, "\n".join(lines))
    (logger or log.default_logger()).debug(f"Saved summary to {path}")
    return path
