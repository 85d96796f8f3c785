"""Derived task and project state models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class ProjectStatus(str, Enum):
    PLANNING = "planning"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Task:
    id: str
    plan_file: str
    dependencies: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.PENDING

    @property
    def name(self) -> str:
        """Slug after the id prefix in the plan file name."""
        stem = self.plan_file.rsplit("/", 1)[-1].removesuffix(".md")
        _, _, slug = stem.partition("-")
        return slug or self.id


@dataclass(frozen=True)
class ProjectState:
    tasks: tuple[Task, ...] = ()
    status: ProjectStatus = ProjectStatus.PLANNING

    def get_task(self, task_id: str) -> Task | None:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    def index_of(self, task_id: str) -> int:
        for i, t in enumerate(self.tasks):
            if t.id == task_id:
                return i
        return -1


@dataclass
class DerivedStats:
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    blocked: int = 0
    total: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "in_progress": self.in_progress,
            "completed": self.completed,
            "failed": self.failed,
            "blocked": self.blocked,
            "total": self.total,
        }


@dataclass
class FailedAttempt:
    attempt: int
    reason: str


@dataclass
class TaskRetryHistory:
    task_id: str
    task_name: str
    failures: list[FailedAttempt] = field(default_factory=list)
    final_attempt: int = 0
    success: bool = False
