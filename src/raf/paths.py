"""Project layout: base-36 ids, project folders, plan/outcome locations."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from pathlib import Path

RAF_DIR = "RAF"

# 2026-01-01T00:00:00Z
RAF_EPOCH = 1767225600

PROJECT_ID_WIDTH = 6
TASK_ID_WIDTH = 2

TASK_ID_PATTERN = "[0-9a-z]{2}"
TASK_ID_RE = re.compile(rf"^{TASK_ID_PATTERN}$")

_PROJECT_FOLDER_RE = re.compile(r"^([0-9a-z]{6})-(.+)$", re.IGNORECASE)
_TASK_FILE_RE = re.compile(rf"^({TASK_ID_PATTERN})-(.+)\.md$")

SUMMARY_FILE = "SUMMARY.md"

_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(num: int) -> str:
    if num == 0:
        return "0"
    out = []
    while num:
        num, rem = divmod(num, 36)
        out.append(_DIGITS[rem])
    return "".join(reversed(out))


# ── ids ──────────────────────────────────────────────────────────────


def encode_task_id(num: int) -> str:
    """Encode 0..1295 as a zero-padded 2-char base-36 id (``10`` -> ``"0a"``)."""
    if num < 0:
        raise ValueError(f"encode_task_id only accepts non-negative integers, got {num}")
    if num > 36**TASK_ID_WIDTH - 1:
        raise ValueError(f"encode_task_id: value {num} exceeds max 2-char base36 (1295)")
    return _to_base36(num).rjust(TASK_ID_WIDTH, "0")


def decode_task_id(value: str) -> int | None:
    value = value.lower()
    if not TASK_ID_RE.match(value):
        return None
    return int(value, 36)


def is_task_id(value: str) -> bool:
    return bool(TASK_ID_RE.match(value))


def encode_project_id(num: int) -> str:
    if num < 0:
        raise ValueError(f"encode_project_id only accepts non-negative integers, got {num}")
    return _to_base36(num).rjust(PROJECT_ID_WIDTH, "0")


def decode_project_id(value: str) -> int | None:
    value = value.lower()
    if not re.fullmatch(r"[0-9a-z]{6}", value):
        return None
    return int(value, 36)


def next_project_number(raf_dir: Path, now: float | None = None) -> int:
    """Seconds since the RAF epoch, bumped past any id already in *raf_dir*."""
    candidate = int(now if now is not None else time.time()) - RAF_EPOCH
    existing = {p.number for p in list_project_folders(raf_dir)}
    while candidate in existing:
        candidate += 1
    return candidate


# ── project folders ──────────────────────────────────────────────────


@dataclass(frozen=True)
class ProjectFolder:
    number: int
    name: str
    path: Path

    @property
    def folder(self) -> str:
        return self.path.name

    @property
    def prefix(self) -> str:
        return encode_project_id(self.number)


def parse_project_folder(path: Path) -> ProjectFolder | None:
    m = _PROJECT_FOLDER_RE.match(path.name)
    if not m:
        return None
    number = decode_project_id(m.group(1))
    if number is None:
        return None
    return ProjectFolder(number=number, name=m.group(2), path=path)


def list_project_folders(raf_dir: Path) -> list[ProjectFolder]:
    """Project folders under *raf_dir*, sorted by project number."""
    if not raf_dir.is_dir():
        return []
    projects = []
    for entry in raf_dir.iterdir():
        if not entry.is_dir():
            continue
        project = parse_project_folder(entry)
        if project:
            projects.append(project)
    return sorted(projects, key=lambda p: p.number)


def extract_project_number(project_path: Path | str) -> str | None:
    """``.../RAF/00abc0-my-project`` -> ``"00abc0"``."""
    m = _PROJECT_FOLDER_RE.match(Path(project_path).name)
    return m.group(1).lower() if m else None


def extract_project_name(project_path: Path | str) -> str | None:
    """``.../RAF/00abc0-my-project`` -> ``"my-project"``."""
    m = _PROJECT_FOLDER_RE.match(Path(project_path).name)
    return m.group(2) if m else None


def resolve_project(raf_dir: Path, identifier: str) -> Path | None:
    """Resolve a full folder name, a 6-char prefix, or a unique project name.

    Raises ``LookupError`` when a bare name matches more than one project.
    """
    projects = list_project_folders(raf_dir)
    ident = identifier.lower()

    for p in projects:
        if p.folder.lower() == ident:
            return p.path

    number = decode_project_id(ident)
    if number is not None:
        for p in projects:
            if p.number == number:
                return p.path

    matches = [p for p in projects if p.name.lower() == ident]
    if len(matches) > 1:
        folders = ", ".join(p.folder for p in matches)
        raise LookupError(f"Ambiguous project name '{identifier}': {folders}")
    return matches[0].path if matches else None


# ── task files ───────────────────────────────────────────────────────


def parse_task_file_name(file_name: str) -> tuple[str, str] | None:
    """``"02-fix-login.md"`` -> ``("02", "fix-login")``."""
    m = _TASK_FILE_RE.match(Path(file_name).name)
    if not m:
        return None
    return m.group(1), m.group(2)


def task_name_from_plan_file(plan_file: str) -> str | None:
    parsed = parse_task_file_name(plan_file)
    return parsed[1] if parsed else None


def plans_dir(project_path: Path) -> Path:
    return project_path / "plans"


def outcomes_dir(project_path: Path) -> Path:
    return project_path / "outcomes"


def logs_dir(project_path: Path) -> Path:
    return project_path / "logs"


def input_path(project_path: Path) -> Path:
    return project_path / "input.md"


def decisions_path(project_path: Path) -> Path:
    return project_path / "decisions.md"


def outcome_file_path(project_path: Path, task_id: str, task_name: str) -> Path:
    return outcomes_dir(project_path) / f"{task_id}-{task_name}.md"
