"""State derivation: rebuild the task graph from plan and outcome files.

Nothing here is cached or persisted. Every call re-reads the project folder,
so the on-disk plans/ and outcomes/ directories are the only source of truth::

    state = derive_project_state(project_path)
    task = get_next_executable_task(state)   # first pending, else first failed
    stats = get_derived_stats(state)
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import Path

from raf import log
from raf.io_utils import list_markdown, read_text
from raf.paths import (
    SUMMARY_FILE,
    TASK_ID_RE,
    ProjectFolder,
    list_project_folders,
    outcomes_dir,
    parse_task_file_name,
    plans_dir,
)
from raf.tasks.model import DerivedStats, ProjectState, ProjectStatus, Task, TaskStatus

_DEPENDENCIES_HEADING_RE = re.compile(r"^##\s+Dependencies\s*$", re.IGNORECASE)
_PROMISE_RE = re.compile(r"<promise>(COMPLETE|FAILED|BLOCKED)</promise>", re.IGNORECASE)

_MARKER_STATUS = {
    "COMPLETE": TaskStatus.COMPLETED,
    "FAILED": TaskStatus.FAILED,
    "BLOCKED": TaskStatus.BLOCKED,
}

_BLOCKING = (TaskStatus.FAILED, TaskStatus.BLOCKED)


# ── parsers ──────────────────────────────────────────────────────────


def parse_dependencies(plan_text: str) -> list[str]:
    """Return the task ids listed under the plan's ``## Dependencies`` heading.

    Only the first non-empty line of the section is read. Tokens that are
    not task ids (``none``, ``task 1``, ``#3``…) are dropped without error.
    """
    lines = plan_text.splitlines()
    for i, line in enumerate(lines):
        if not _DEPENDENCIES_HEADING_RE.match(line.strip()):
            continue
        for body in lines[i + 1:]:
            stripped = body.strip()
            if not stripped:
                continue
            if stripped.startswith("#"):
                return []
            deps = []
            for token in stripped.split(","):
                token = token.strip()
                if TASK_ID_RE.match(token) and token not in deps:
                    deps.append(token)
            return deps
        return []
    return []


def parse_outcome_status(outcome_text: str) -> TaskStatus | None:
    """Status from the last ``<promise>…</promise>`` marker, or ``None``."""
    matches = _PROMISE_RE.findall(outcome_text)
    if not matches:
        return None
    return _MARKER_STATUS[matches[-1].upper()]


# ── derivation ───────────────────────────────────────────────────────


def _read_outcome_statuses(project_path: Path) -> dict[str, TaskStatus]:
    statuses: dict[str, TaskStatus] = {}
    directory = outcomes_dir(project_path)
    for name in list_markdown(directory):
        if name == SUMMARY_FILE:
            continue
        parsed = parse_task_file_name(name)
        if not parsed:
            continue
        status = parse_outcome_status(read_text(directory / name, errors="replace"))
        if status is not None:
            statuses[parsed[0]] = status
    return statuses


def _project_status(tasks: tuple[Task, ...]) -> ProjectStatus:
    if not tasks:
        return ProjectStatus.PLANNING
    statuses = [t.status for t in tasks]
    if all(s == TaskStatus.PENDING for s in statuses):
        return ProjectStatus.READY
    if all(s == TaskStatus.COMPLETED for s in statuses):
        return ProjectStatus.COMPLETED
    if any(s == TaskStatus.FAILED for s in statuses):
        return ProjectStatus.FAILED
    return ProjectStatus.EXECUTING


def derive_project_state(project_path: Path | str) -> ProjectState:
    """Build the full task list for *project_path* from its files.

    Blocking is applied in a single ascending sweep: each pending task looks
    only at statuses already computed for lower ids, so references to
    missing, self or later ids never block and the pass always terminates.
    """
    project_path = Path(project_path)
    directory = plans_dir(project_path)

    plans: list[tuple[str, str]] = []
    for name in list_markdown(directory):
        parsed = parse_task_file_name(name)
        if parsed:
            plans.append((parsed[0], name))
    plans.sort(key=lambda p: p[0])

    outcome_statuses = _read_outcome_statuses(project_path)

    tasks: list[Task] = []
    for task_id, name in plans:
        deps = parse_dependencies(read_text(directory / name, errors="replace"))
        tasks.append(
            Task(
                id=task_id,
                plan_file=f"plans/{name}",
                dependencies=tuple(deps),
                status=outcome_statuses.get(task_id, TaskStatus.PENDING),
            )
        )

    resolved: dict[str, TaskStatus] = {}
    for i, task in enumerate(tasks):
        if task.status == TaskStatus.PENDING and any(
            resolved.get(dep) in _BLOCKING for dep in task.dependencies
        ):
            task = Task(task.id, task.plan_file, task.dependencies, TaskStatus.BLOCKED)
            tasks[i] = task
        resolved[task.id] = task.status

    frozen = tuple(tasks)
    return ProjectState(tasks=frozen, status=_project_status(frozen))


def discover_projects(raf_dir: Path) -> list[ProjectFolder]:
    """Project folders under *raf_dir* in project-number order."""
    projects = list_project_folders(raf_dir)
    log.debug(f"Discovered {len(projects)} project(s) in {raf_dir}")
    return projects


# ── queries ──────────────────────────────────────────────────────────


def get_next_pending_task(state: ProjectState) -> Task | None:
    for task in state.tasks:
        if task.status == TaskStatus.PENDING:
            return task
    return None


def get_next_executable_task(state: ProjectState) -> Task | None:
    """First pending task; otherwise the first failed task (retry candidate)."""
    task = get_next_pending_task(state)
    if task:
        return task
    for task in state.tasks:
        if task.status == TaskStatus.FAILED:
            return task
    return None


def _count(tasks: Iterable[Task]) -> DerivedStats:
    stats = DerivedStats()
    for task in tasks:
        stats.total += 1
        match task.status:
            case TaskStatus.PENDING:
                stats.pending += 1
            case TaskStatus.IN_PROGRESS:
                stats.in_progress += 1
            case TaskStatus.COMPLETED:
                stats.completed += 1
            case TaskStatus.FAILED:
                stats.failed += 1
            case TaskStatus.BLOCKED:
                stats.blocked += 1
    return stats


def get_derived_stats(state: ProjectState) -> DerivedStats:
    return _count(state.tasks)


def get_derived_stats_for_tasks(state: ProjectState, task_ids: Iterable[str]) -> DerivedStats:
    """Stats restricted to *task_ids*; ``total`` counts only matched tasks."""
    wanted = set(task_ids)
    return _count(t for t in state.tasks if t.id in wanted)


def is_project_complete(state: ProjectState) -> bool:
    return all(t.status == TaskStatus.COMPLETED for t in state.tasks)


def has_project_failed(state: ProjectState) -> bool:
    return any(t.status == TaskStatus.FAILED for t in state.tasks)


def blocking_dependencies(task: Task, state: ProjectState) -> tuple[list[str], list[str]]:
    """Split *task*'s dependencies into ``(failed, blocked)`` id lists."""
    failed: list[str] = []
    blocked: list[str] = []
    for dep_id in task.dependencies:
        dep = state.get_task(dep_id)
        if dep is None:
            continue
        if dep.status == TaskStatus.FAILED:
            failed.append(dep_id)
        elif dep.status == TaskStatus.BLOCKED:
            blocked.append(dep_id)
    return failed, blocked
