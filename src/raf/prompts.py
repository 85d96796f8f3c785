"""Execution prompt for a single task."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from raf.project import Outcome

MAX_DEPENDENCY_OUTCOME_CHARS = 4000

_SUMMARY_SECTION_RE = re.compile(r"^## Summary\s*\n(.*?)(?=\n## |\Z)", re.MULTILINE | re.DOTALL)
_TRUNCATED = "\n\n*[Outcome truncated for context size]*"


@dataclass
class PromptContext:
    project_path: Path
    plan_path: Path
    plan_text: str
    task_id: str
    task_number: int
    total_tasks: int
    outcome_path: Path
    project_id: str
    attempt: int = 1
    previous_outcomes: list[Outcome] = field(default_factory=list)
    dependency_ids: tuple[str, ...] = ()
    dependency_outcomes: list[Outcome] = field(default_factory=list)


class PromptBuilder(Protocol):
    def __call__(self, ctx: PromptContext) -> str: ...


def summarize_outcome(content: str, limit: int = MAX_DEPENDENCY_OUTCOME_CHARS) -> str:
    """Shorten a dependency outcome: its ``## Summary`` section, else a clean cut."""
    if len(content) <= limit:
        return content

    m = _SUMMARY_SECTION_RE.search(content)
    if m:
        summary = m.group(1).strip()
        if summary and len(summary) <= limit:
            return f"## Summary\n\n{summary}{_TRUNCATED}"

    truncated = content[:limit]
    cut = max(truncated.rfind("\n"), truncated.rfind(". "))
    if cut > limit // 2:
        return truncated[:cut + 1] + _TRUNCATED
    return truncated + _TRUNCATED


def _section(title: str, body: str) -> str:
    return f"\n## {title}\n\n{body}\n"


def build_execution_prompt(ctx: PromptContext) -> str:
    retry = ""
    if ctx.attempt > 1:
        retry = _section(
            "Retry Context",
            f"This is attempt {ctx.attempt} at executing this task. If an outcome file exists at "
            f"{ctx.outcome_path}, read it first and avoid repeating the previous failure.",
        )

    deps = ""
    if ctx.dependency_ids and ctx.dependency_outcomes:
        rendered = "\n\n".join(
            f"### Task {o.task_id}\n{summarize_outcome(o.content)}" for o in ctx.dependency_outcomes
        )
        deps = _section(
            "Dependency Context",
            f"This task builds on: {', '.join(ctx.dependency_ids)}\n\n{rendered}",
        )

    previous = ""
    if ctx.previous_outcomes:
        rendered = "\n\n".join(f"### Task {o.task_id}\n{o.content}" for o in ctx.previous_outcomes)
        previous = _section(
            "Previous Task Outcomes",
            f"Review these to avoid duplicating work:\n\n{rendered}",
        )

    return f"""You are executing a planned task for RAF.

## Task Information

- Task: {ctx.task_number} of {ctx.total_tasks}
- Task ID: {ctx.task_id}
- Project: {ctx.project_id}
- Project folder: {ctx.project_path}
- Plan file: {ctx.plan_path}
{retry}
## Plan

{ctx.plan_text.strip()}
{deps}{previous}
## Rules

- Follow the plan and existing code patterns; verify the acceptance criteria.
- Do NOT commit. RAF commits the files you change when the task succeeds.

## Outcome

Write an outcome file at `{ctx.outcome_path}` summarizing what was done.
It must end with exactly one of these markers as the last line:

<promise>COMPLETE</promise>
<promise>FAILED</promise>

On failure add a line `Reason: <why>` before the marker.
Print the same marker as the last line of your response.
"""
