"""Shared fixtures for raf tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use raf.io_utils read_text/write_text for consistent UTF-8 I/O.
"""

from __future__ import annotations

import io
import subprocess
from pathlib import Path

import pytest
from rich.console import Console

from raf.io_utils import write_text
from raf.log import Logger


def _git(repo: Path, *args: str) -> subprocess.CompletedProcess[str]:
    """Run git in *repo*, failing the test on error."""
    return subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=True)


def _init_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    _git(path, "init")
    # Pin the initial branch so tests do not depend on init.defaultBranch.
    _git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(path, "config", "user.name", "Test")
    _git(path, "config", "user.email", "test@test")
    _git(path, "config", "commit.gpgsign", "false")
    write_text(path / "README.md", "# Test")
    _git(path, "add", "README.md")
    _git(path, "commit", "-m", "Initial")
    return path


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo (branch ``main``) for testing."""
    return _init_repo(tmp_path / "repo")


@pytest.fixture
def make_repo():
    """Factory fixture: ``make_repo(path)`` initialises a repo at *path*."""
    return _init_repo


def _make_project(
    root: Path,
    folder: str = "00abc0-demo",
    plans: dict[str, str] | None = None,
    outcomes: dict[str, str] | None = None,
) -> Path:
    """Create ``<root>/RAF/<folder>`` with plan and outcome files.

    Keys are file stems (``"01-setup"``); values are file contents.
    """
    project = root / "RAF" / folder
    (project / "plans").mkdir(parents=True, exist_ok=True)
    (project / "outcomes").mkdir(parents=True, exist_ok=True)
    write_text(project / "input.md", "Build the demo.\n")
    for stem, text in (plans or {}).items():
        write_text(project / "plans" / f"{stem}.md", text)
    for stem, text in (outcomes or {}).items():
        write_text(project / "outcomes" / f"{stem}.md", text)
    return project


@pytest.fixture
def make_project():
    """Factory fixture that lays out a RAF project folder."""
    return _make_project


@pytest.fixture
def captured_logger() -> tuple[Logger, io.StringIO]:
    """Verbose logger whose stdout and stderr consoles both write to one buffer."""
    buffer = io.StringIO()
    console = Console(file=buffer, width=200, highlight=False, color_system=None)
    return Logger(verbose=True, out=console, err=console), buffer
