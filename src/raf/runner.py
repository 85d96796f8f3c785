"""Runner: executes a project's tasks one at a time, in dependency order.

Each loop iteration re-derives the project state from disk, so the runner
holds no task state of its own beyond the current run's bookkeeping
(retry history, tasks that already failed in this run).
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from raf.changes import ChangeTracker, failed_stash_name, task_commit_message
from raf.config import Config
from raf.context import ExecutionContext
from raf.engines.base import ExecutionAgent, RunResult
from raf.git_ops import Git, VersionControl
from raf.log import format_elapsed
from raf.output_parser import AgentResult, extract_summary, is_retryable_failure, parse_output
from raf.paths import extract_project_number
from raf.project import (
    append_completion_details,
    outcome_path_for,
    read_outcome,
    read_outcomes,
    read_plan,
    remove_outcome,
    render_blocked_outcome,
    render_completed_outcome,
    render_failed_outcome,
    save_log,
    save_outcome,
    save_summary,
)
from raf.prompts import PromptBuilder, PromptContext, build_execution_prompt
from raf.state import (
    blocking_dependencies,
    derive_project_state,
    get_derived_stats,
    has_project_failed,
    is_project_complete,
    parse_outcome_status,
)
from raf.tasks.model import (
    FailedAttempt,
    ProjectState,
    ProjectStatus,
    Task,
    TaskRetryHistory,
    TaskStatus,
)

_HEADING_RE = re.compile(r"^#\s+(?:Task(?:\s+\w+)?:\s*)?(.+?)\s*$", re.MULTILINE)


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    TERMINAL = "terminal"


@dataclass
class TaskRunResult:
    task_id: str
    status: TaskStatus
    attempts: int = 0
    commit_hash: str | None = None
    stash_name: str | None = None
    reason: str = ""


@dataclass
class ProjectExecutionResult:
    success: bool
    status: ProjectStatus
    completed: int = 0
    total: int = 0
    interrupted: bool = False
    retry_history: list[TaskRetryHistory] = field(default_factory=list)
    task_results: list[TaskRunResult] = field(default_factory=list)


def classify_attempt(result: RunResult, fallback_status: TaskStatus | None = None) -> tuple[AttemptOutcome, str]:
    """Decide what one agent attempt means for the task.

    *fallback_status* is the status of an outcome file the agent wrote during
    the attempt; it is consulted only when the output carries no marker.
    Returns the verdict and, for anything but success, the failure reason.
    """
    parsed = parse_output(result.output)

    if result.timed_out:
        terminal = parsed.context_overflow or (
            parsed.result == AgentResult.FAILED and not is_retryable_failure(parsed)
        )
        return (AttemptOutcome.TERMINAL if terminal else AttemptOutcome.RETRY), "Task timed out"

    if result.context_overflow or parsed.context_overflow:
        return AttemptOutcome.TERMINAL, "Context overflow - task too large"

    if parsed.result == AgentResult.COMPLETE:
        return AttemptOutcome.SUCCESS, ""

    if parsed.result == AgentResult.FAILED:
        verdict = AttemptOutcome.RETRY if is_retryable_failure(parsed) else AttemptOutcome.TERMINAL
        return verdict, parsed.failure_reason

    match fallback_status:
        case TaskStatus.COMPLETED:
            return AttemptOutcome.SUCCESS, ""
        case TaskStatus.FAILED:
            return AttemptOutcome.RETRY, "Task failed (from outcome file)"
        case None:
            return AttemptOutcome.RETRY, "No completion marker found"
        case _:
            return AttemptOutcome.RETRY, "No completion marker found in output or outcome file"


def task_description(plan_text: str, task: Task) -> str:
    """One-line commit description: the plan's title, else the task name."""
    m = _HEADING_RE.search(plan_text)
    if m and m.group(1).strip():
        return m.group(1).strip()
    return task.name.replace("-", " ")


class Runner:
    """Drives one project to completion.

    ``vcs`` must be rooted at the top level of the working tree the agent
    edits: the repository itself, or the project's worktree.
    """

    def __init__(
        self,
        cfg: Config,
        project_path: Path,
        agent: ExecutionAgent,
        *,
        ctx: ExecutionContext | None = None,
        vcs: VersionControl | None = None,
        prompt_builder: PromptBuilder = build_execution_prompt,
    ) -> None:
        self.cfg = cfg
        self.project_path = Path(project_path)
        self.agent = agent
        self.ctx = ctx or ExecutionContext()
        self.log = self.ctx.logger
        if vcs is None:
            vcs = Git(Git(self.project_path).repo_root() or self.project_path)
        self.tracker = ChangeTracker(vcs, self.log)
        self.build_prompt = prompt_builder
        self.project_number = extract_project_number(self.project_path) or "000000"
        self.retry_history: list[TaskRetryHistory] = []
        self.task_results: list[TaskRunResult] = []
        self._failed_this_run: set[str] = set()

    # ── public ───────────────────────────────────────────────────

    def run(self, *, install_signals: bool = True) -> ProjectExecutionResult:
        """Execute every runnable task. Returns the final project result."""
        if install_signals:
            self.ctx.install_signal_handlers()
        start = time.monotonic()
        try:
            state = self._main_loop()
        finally:
            if install_signals:
                self.ctx.restore_signal_handlers()
            self.log.clear_context()

        self._finish(state)
        stats = get_derived_stats(state)
        complete = bool(state.tasks) and is_project_complete(state)
        success = complete and not self.ctx.shutdown_requested
        if complete:
            status = ProjectStatus.COMPLETED
        elif has_project_failed(state):
            status = ProjectStatus.FAILED
        else:
            status = state.status

        elapsed = format_elapsed((time.monotonic() - start) * 1000)
        if success:
            self.log.success(f"All {stats.total} task(s) completed ({elapsed})")
        elif self.ctx.shutdown_requested:
            self.log.warn(f"Interrupted: {stats.completed}/{stats.total} task(s) completed ({elapsed})")
        else:
            self.log.error(
                f"Project {status.value}: {stats.completed}/{stats.total} completed, "
                f"{stats.failed} failed, {stats.blocked} blocked ({elapsed})"
            )
        self._log_retry_history()

        return ProjectExecutionResult(
            success=success,
            status=status,
            completed=stats.completed,
            total=stats.total,
            interrupted=self.ctx.shutdown_requested,
            retry_history=self.retry_history,
            task_results=self.task_results,
        )

    # ── loop ─────────────────────────────────────────────────────

    def _main_loop(self) -> ProjectState:
        state = derive_project_state(self.project_path)
        if not state.tasks:
            self.log.warn(f"No plan files found in {self.project_path}")
            return state

        while not self.ctx.shutdown_requested:
            state = self._settle_blocked(state)
            task = self._select_next(state)
            if task is None:
                break
            self._execute_task(task, state)
            state = derive_project_state(self.project_path)
        return state

    def _select_next(self, state: ProjectState) -> Task | None:
        """First pending task, else the first failed task not yet tried in this run."""
        for task in state.tasks:
            if task.status == TaskStatus.PENDING:
                return task
        for task in state.tasks:
            if task.status == TaskStatus.FAILED and task.id not in self._failed_this_run:
                return task
        return None

    def _settle_blocked(self, state: ProjectState) -> ProjectState:
        """Bring BLOCKED outcome files in line with the dependency graph.

        A recorded block whose dependencies are no longer failed or blocked is
        removed so the task can run; a derived block without an outcome file
        gets one. Repeats until the state stops changing.
        """
        while True:
            changed = False
            for task in state.tasks:
                if task.status != TaskStatus.BLOCKED:
                    continue
                failed, blocked = blocking_dependencies(task, state)
                existing = read_outcome(self.project_path, task)
                if not failed and not blocked:
                    if existing is not None and parse_outcome_status(existing) == TaskStatus.BLOCKED:
                        remove_outcome(self.project_path, task)
                        self.log.info(f"Task {task.id} is no longer blocked")
                        changed = True
                        break
                    continue
                if existing is None:
                    deps = ", ".join(failed + blocked)
                    self.log.warn(f"Task {task.id} ({task.name}) blocked by: {deps}")
                    save_outcome(
                        self.project_path, task, render_blocked_outcome(task, failed, blocked), logger=self.log
                    )
                    self.task_results.append(TaskRunResult(task.id, TaskStatus.BLOCKED))
            if not changed:
                return state
            state = derive_project_state(self.project_path)

    # ── one task ─────────────────────────────────────────────────

    def _execute_task(self, task: Task, state: ProjectState) -> None:
        number = state.index_of(task.id) + 1
        total = len(state.tasks)
        self.log.set_context(f"[Task {number}/{total}: {task.name}]")
        verb = "Retrying" if task.status == TaskStatus.FAILED else "Running"
        self.log.info(f"{verb} task {task.id} ({task.name})")
        self.log.debug(f"Task {task.id} -> {TaskStatus.IN_PROGRESS.value}")

        baseline = self.tracker.snapshot_baseline()
        plan_text = read_plan(self.project_path, task)
        outcome_path = outcome_path_for(self.project_path, task)
        max_attempts = max(1, self.cfg.max_retries)

        start = time.monotonic()
        attempts = 0
        success = False
        reason = ""
        last_output = ""
        failures: list[FailedAttempt] = []

        while attempts < max_attempts and not self.ctx.shutdown_requested:
            attempts += 1
            if attempts > 1:
                self.log.info(f"Retry {attempts}/{max_attempts} for task {task.id}")

            before = read_outcome(self.project_path, task)
            prompt = self.build_prompt(self._prompt_context(task, state, plan_text, attempts))

            self.ctx.active_agent = self.agent
            try:
                result = self.agent.run(prompt, self.cfg.timeout_seconds)
            finally:
                self.ctx.active_agent = None
            last_output = result.output

            if self.ctx.shutdown_requested:
                reason = "Interrupted"
                break

            after = read_outcome(self.project_path, task)
            fallback = parse_outcome_status(after) if after is not None and after != before else None
            verdict, reason = classify_attempt(result, fallback)
            if verdict == AttemptOutcome.SUCCESS:
                success = True
                break

            failures.append(FailedAttempt(attempts, reason))
            self.log.warn(f"Attempt {attempts} failed: {reason}")
            if verdict == AttemptOutcome.TERMINAL:
                break

        elapsed_ms = (time.monotonic() - start) * 1000
        elapsed = format_elapsed(elapsed_ms)

        if failures:
            self.retry_history.append(
                TaskRetryHistory(task.id, task.name, failures, final_attempt=attempts, success=success)
            )

        if self.ctx.shutdown_requested and not success:
            save_log(self.project_path, task.id, last_output, logger=self.log)
            self.log.warn(f"Task {task.id} interrupted after {elapsed}; its changes are left in place")
            self.log.clear_context()
            return

        # Logs are written after the commit/stash so they never count as task changes.
        if success:
            self._on_success(task, plan_text, baseline, attempts, elapsed, last_output)
        else:
            self._on_failure(task, baseline, attempts, elapsed, reason, last_output)
        if self.cfg.debug or not success:
            save_log(self.project_path, task.id, last_output, logger=self.log)
        self.log.clear_context()

    def _prompt_context(self, task: Task, state: ProjectState, plan_text: str, attempt: int) -> PromptContext:
        outcomes = read_outcomes(self.project_path)
        completed = {t.id for t in state.tasks if t.status == TaskStatus.COMPLETED}
        previous = [o for o in outcomes if o.task_id in completed]
        deps = [o for o in previous if o.task_id in task.dependencies]
        return PromptContext(
            project_path=self.project_path,
            plan_path=self.project_path / task.plan_file,
            plan_text=plan_text,
            task_id=task.id,
            task_number=state.index_of(task.id) + 1,
            total_tasks=len(state.tasks),
            outcome_path=outcome_path_for(self.project_path, task),
            project_id=self.project_number,
            attempt=attempt,
            previous_outcomes=previous,
            dependency_ids=task.dependencies,
            dependency_outcomes=deps,
        )

    def _on_success(
        self,
        task: Task,
        plan_text: str,
        baseline: tuple[str, ...] | None,
        attempts: int,
        elapsed: str,
        output: str,
    ) -> None:
        commit_hash = None
        if self.cfg.auto_commit and self.tracker.vcs.is_repo():
            message = task_commit_message(
                self.project_number, task.id, task_description(plan_text, task), self.cfg.commit_prefix
            )
            commit_hash = self.tracker.commit_task_changes(message, baseline).commit_hash

        existing = read_outcome(self.project_path, task)
        if existing is not None and parse_outcome_status(existing) == TaskStatus.COMPLETED:
            content = append_completion_details(
                existing, attempts=attempts, elapsed=elapsed, commit_hash=commit_hash
            )
        else:
            content = render_completed_outcome(
                task,
                summary=extract_summary(output),
                attempts=attempts,
                elapsed=elapsed,
                commit_hash=commit_hash,
            )
        save_outcome(self.project_path, task, content, logger=self.log)

        suffix = f" [{commit_hash[:8]}]" if commit_hash else ""
        self.log.success(f"Task {task.id} completed ({elapsed}){suffix}")
        self.task_results.append(
            TaskRunResult(task.id, TaskStatus.COMPLETED, attempts=attempts, commit_hash=commit_hash)
        )

    def _on_failure(
        self,
        task: Task,
        baseline: tuple[str, ...] | None,
        attempts: int,
        elapsed: str,
        reason: str,
        output: str,
    ) -> None:
        self._failed_this_run.add(task.id)

        stash_name = None
        if self.tracker.vcs.is_repo():
            name = failed_stash_name(self.project_number, task.id)
            if self.tracker.stash(name, baseline):
                stash_name = name
                self.log.info(f"Changes for task {task.id} stashed as: {stash_name}")

        save_outcome(
            self.project_path,
            task,
            render_failed_outcome(
                task,
                reason=reason,
                attempts=attempts,
                elapsed=elapsed,
                stash_name=stash_name,
                output_summary=extract_summary(output, max_lines=20) if output else "",
            ),
            logger=self.log,
        )
        self.log.error(f"Task {task.id} failed: {reason} ({elapsed})")
        self.task_results.append(
            TaskRunResult(task.id, TaskStatus.FAILED, attempts=attempts, stash_name=stash_name, reason=reason)
        )

    # ── wrap-up ──────────────────────────────────────────────────

    def _finish(self, state: ProjectState) -> None:
        if not state.tasks:
            return
        save_summary(self.project_path, state, logger=self.log)
        if self.cfg.auto_commit and self.tracker.vcs.is_repo():
            self.tracker.commit_outcomes(self.project_path, self.cfg.commit_prefix)

    def _log_retry_history(self) -> None:
        if not self.retry_history:
            return
        self.log.newline()
        self.log.info("Retry history:")
        for entry in self.retry_history:
            verdict = f"succeeded on attempt {entry.final_attempt}" if entry.success else "failed"
            self.log.info(f"  {entry.task_id} ({entry.task_name}): {verdict}")
            for failure in entry.failures:
                self.log.info(f"    attempt {failure.attempt}: {failure.reason}")
