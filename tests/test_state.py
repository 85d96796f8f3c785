"""Tests for raf.state: deriving task and project state from plan/outcome files."""

from __future__ import annotations

from pathlib import Path

import pytest

from raf.io_utils import write_text
from raf.state import (
    blocking_dependencies,
    derive_project_state,
    get_derived_stats,
    get_derived_stats_for_tasks,
    get_next_executable_task,
    get_next_pending_task,
    has_project_failed,
    is_project_complete,
    parse_dependencies,
    parse_outcome_status,
)
from raf.tasks.model import ProjectStatus, TaskStatus


def _plan(title: str, deps: str = "") -> str:
    text = f"# Task: {title}\n\n## Objective\n{title}\n"
    if deps:
        text += f"\n## Dependencies\n{deps}\n"
    return text


def _statuses(project: Path) -> dict[str, TaskStatus]:
    return {t.id: t.status for t in derive_project_state(project).tasks}


# ── Parsers ──────────────────────────────────────────────────────────


class TestParseDependencies:
    def test_comma_separated(self) -> None:
        assert parse_dependencies(_plan("x", "01, 02,03")) == ["01", "02", "03"]

    def test_no_section(self) -> None:
        assert parse_dependencies(_plan("x")) == []

    def test_heading_is_case_insensitive(self) -> None:
        assert parse_dependencies("# T\n\n## dependencies\n0a\n") == ["0a"]

    def test_only_first_line_is_read(self) -> None:
        assert parse_dependencies("## Dependencies\n01\n02\n") == ["01"]

    def test_next_heading_ends_section(self) -> None:
        assert parse_dependencies("## Dependencies\n\n## Notes\n01\n") == []

    def test_malformed_tokens_are_ignored(self) -> None:
        assert parse_dependencies("## Dependencies\nnone, task 1, #3, 02, 1\n") == ["02"]

    def test_duplicates_collapse(self) -> None:
        assert parse_dependencies("## Dependencies\n01, 01\n") == ["01"]


class TestParseOutcomeStatus:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("done\n<promise>COMPLETE</promise>", TaskStatus.COMPLETED),
            ("<promise>FAILED</promise>", TaskStatus.FAILED),
            ("<promise>BLOCKED</promise>", TaskStatus.BLOCKED),
            ("<promise>complete</promise>", TaskStatus.COMPLETED),
            ("no marker here", None),
        ],
    )
    def test_marker(self, text: str, expected: TaskStatus | None) -> None:
        assert parse_outcome_status(text) == expected

    def test_last_marker_wins(self) -> None:
        text = "<promise>FAILED</promise>\nretried\n<promise>COMPLETE</promise>"
        assert parse_outcome_status(text) == TaskStatus.COMPLETED
        text = "<promise>COMPLETE</promise>\nlater broke\n<promise>FAILED</promise>"
        assert parse_outcome_status(text) == TaskStatus.FAILED


# ── Derivation ───────────────────────────────────────────────────────


class TestDeriveProjectState:
    def test_no_plans_is_planning(self, tmp_path: Path, make_project) -> None:
        project = make_project(tmp_path)
        state = derive_project_state(project)
        assert state.tasks == ()
        assert state.status == ProjectStatus.PLANNING

    def test_all_pending_is_ready(self, tmp_path: Path, make_project) -> None:
        project = make_project(tmp_path, plans={"01-a": _plan("a"), "02-b": _plan("b", "01")})
        state = derive_project_state(project)
        assert [t.id for t in state.tasks] == ["01", "02"]
        assert state.tasks[1].dependencies == ("01",)
        assert state.tasks[1].plan_file == "plans/02-b.md"
        assert state.tasks[1].name == "b"
        assert state.status == ProjectStatus.READY

    def test_tasks_ordered_by_id(self, tmp_path: Path, make_project) -> None:
        project = make_project(tmp_path, plans={"0a-ten": _plan("t"), "02-two": _plan("t"), "09-nine": _plan("n")})
        assert [t.id for t in derive_project_state(project).tasks] == ["02", "09", "0a"]

    def test_non_task_files_ignored(self, tmp_path: Path, make_project) -> None:
        project = make_project(
            tmp_path,
            plans={"01-a": _plan("a"), "notes": "scratch"},
            outcomes={"SUMMARY": "<promise>FAILED</promise>", "01-a": "<promise>COMPLETE</promise>"},
        )
        state = derive_project_state(project)
        assert [t.id for t in state.tasks] == ["01"]
        assert state.status == ProjectStatus.COMPLETED

    def test_outcome_without_marker_stays_pending(self, tmp_path: Path, make_project) -> None:
        project = make_project(tmp_path, plans={"01-a": _plan("a")}, outcomes={"01-a": "in progress notes"})
        assert _statuses(project) == {"01": TaskStatus.PENDING}

    def test_outcome_matched_by_id(self, tmp_path: Path, make_project) -> None:
        project = make_project(
            tmp_path,
            plans={"01-a": _plan("a")},
            outcomes={"01-renamed": "<promise>COMPLETE</promise>"},
        )
        assert _statuses(project) == {"01": TaskStatus.COMPLETED}

    def test_failed_blocks_dependents(self, tmp_path: Path, make_project) -> None:
        project = make_project(
            tmp_path,
            plans={"01-a": _plan("a"), "02-b": _plan("b", "01"), "03-c": _plan("c")},
            outcomes={"01-a": "Reason: broke\n<promise>FAILED</promise>"},
        )
        state = derive_project_state(project)
        assert _statuses(project) == {
            "01": TaskStatus.FAILED,
            "02": TaskStatus.BLOCKED,
            "03": TaskStatus.PENDING,
        }
        assert state.status == ProjectStatus.FAILED
        assert get_next_executable_task(state).id == "03"

    def test_block_cascades_along_chain(self, tmp_path: Path, make_project) -> None:
        plans = {"01-a": _plan("a")}
        for n in range(2, 9):
            plans[f"0{n}-t{n}"] = _plan(f"t{n}", f"0{n - 1}")
        project = make_project(tmp_path, plans=plans, outcomes={"01-a": "<promise>FAILED</promise>"})
        statuses = _statuses(project)
        assert statuses["01"] == TaskStatus.FAILED
        assert all(statuses[f"0{n}"] == TaskStatus.BLOCKED for n in range(2, 9))

    def test_completed_dependency_does_not_block(self, tmp_path: Path, make_project) -> None:
        project = make_project(
            tmp_path,
            plans={"01-a": _plan("a"), "02-b": _plan("b", "01")},
            outcomes={"01-a": "<promise>COMPLETE</promise>"},
        )
        state = derive_project_state(project)
        assert _statuses(project)["02"] == TaskStatus.PENDING
        assert state.status == ProjectStatus.EXECUTING
        assert get_next_pending_task(state).id == "02"

    def test_explicit_outcome_beats_derived_block(self, tmp_path: Path, make_project) -> None:
        project = make_project(
            tmp_path,
            plans={"01-a": _plan("a"), "02-b": _plan("b", "01")},
            outcomes={"01-a": "<promise>FAILED</promise>", "02-b": "<promise>COMPLETE</promise>"},
        )
        assert _statuses(project)["02"] == TaskStatus.COMPLETED

    @pytest.mark.parametrize(
        "deps",
        ["05", "02", "99"],
        ids=["forward-reference", "self-reference", "missing-task"],
    )
    def test_unresolvable_references_never_block(self, tmp_path: Path, make_project, deps: str) -> None:
        project = make_project(
            tmp_path,
            plans={"01-a": _plan("a"), "02-b": _plan("b", deps), "05-e": _plan("e")},
            outcomes={"05-e": "<promise>FAILED</promise>"},
        )
        assert _statuses(project)["02"] == TaskStatus.PENDING

    def test_derivation_is_idempotent(self, tmp_path: Path, make_project) -> None:
        project = make_project(
            tmp_path,
            plans={"01-a": _plan("a"), "02-b": _plan("b", "01"), "03-c": _plan("c", "02")},
            outcomes={"01-a": "<promise>FAILED</promise>"},
        )
        assert derive_project_state(project) == derive_project_state(project)

    def test_rederives_after_outcome_change(self, tmp_path: Path, make_project) -> None:
        project = make_project(
            tmp_path,
            plans={"01-a": _plan("a"), "02-b": _plan("b", "01")},
            outcomes={"01-a": "<promise>FAILED</promise>"},
        )
        assert _statuses(project)["02"] == TaskStatus.BLOCKED
        write_text(project / "outcomes" / "01-a.md", "<promise>COMPLETE</promise>")
        assert _statuses(project)["02"] == TaskStatus.PENDING


class TestScenarios:
    PLANS = {"01-a": _plan("a"), "02-b": _plan("b", "01"), "03-c": _plan("c", "01, 02")}

    def test_first_task_failed(self, tmp_path: Path, make_project) -> None:
        project = make_project(tmp_path, plans=self.PLANS, outcomes={"01-a": "<promise>FAILED</promise>"})
        state = derive_project_state(project)
        assert [t.status for t in state.tasks] == [TaskStatus.FAILED, TaskStatus.BLOCKED, TaskStatus.BLOCKED]
        assert get_next_executable_task(state).id == "01"

    def test_first_two_complete(self, tmp_path: Path, make_project) -> None:
        project = make_project(
            tmp_path,
            plans=self.PLANS,
            outcomes={"01-a": "<promise>COMPLETE</promise>", "02-b": "<promise>COMPLETE</promise>"},
        )
        state = derive_project_state(project)
        assert [t.status for t in state.tasks] == [TaskStatus.COMPLETED, TaskStatus.COMPLETED, TaskStatus.PENDING]
        assert get_next_executable_task(state).id == "03"

    def test_failure_then_independent_work(self, tmp_path: Path, make_project) -> None:
        """01 fails, 02 and 04 depend on it, 03 is independent."""
        project = make_project(
            tmp_path,
            plans={
                "01-setup": _plan("setup"),
                "02-api": _plan("api", "01"),
                "03-docs": _plan("docs"),
                "04-ui": _plan("ui", "02, 03"),
            },
            outcomes={"01-setup": "<promise>FAILED</promise>", "03-docs": "<promise>COMPLETE</promise>"},
        )
        state = derive_project_state(project)
        assert _statuses(project) == {
            "01": TaskStatus.FAILED,
            "02": TaskStatus.BLOCKED,
            "03": TaskStatus.COMPLETED,
            "04": TaskStatus.BLOCKED,
        }
        # No pending work left; the failed task is the retry candidate.
        assert get_next_pending_task(state) is None
        assert get_next_executable_task(state).id == "01"
        assert blocking_dependencies(state.get_task("04"), state) == ([], ["02"])
        assert has_project_failed(state)
        assert not is_project_complete(state)

    def test_all_complete(self, tmp_path: Path, make_project) -> None:
        project = make_project(
            tmp_path,
            plans={"01-a": _plan("a"), "02-b": _plan("b", "01")},
            outcomes={"01-a": "<promise>COMPLETE</promise>", "02-b": "<promise>COMPLETE</promise>"},
        )
        state = derive_project_state(project)
        assert state.status == ProjectStatus.COMPLETED
        assert is_project_complete(state)
        assert get_next_executable_task(state) is None


class TestStats:
    def test_counts(self, tmp_path: Path, make_project) -> None:
        project = make_project(
            tmp_path,
            plans={
                "01-a": _plan("a"),
                "02-b": _plan("b", "01"),
                "03-c": _plan("c"),
                "04-d": _plan("d"),
            },
            outcomes={"01-a": "<promise>FAILED</promise>", "03-c": "<promise>COMPLETE</promise>"},
        )
        state = derive_project_state(project)
        stats = get_derived_stats(state)
        assert stats.as_dict() == {
            "pending": 1,
            "in_progress": 0,
            "completed": 1,
            "failed": 1,
            "blocked": 1,
            "total": 4,
        }

    def test_counts_for_subset(self, tmp_path: Path, make_project) -> None:
        project = make_project(
            tmp_path,
            plans={"01-a": _plan("a"), "02-b": _plan("b")},
            outcomes={"01-a": "<promise>COMPLETE</promise>"},
        )
        stats = get_derived_stats_for_tasks(derive_project_state(project), ["01", "zz"])
        assert stats.total == 1
        assert stats.completed == 1
