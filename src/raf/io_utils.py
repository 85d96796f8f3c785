"""UTF-8 text helpers for plan, outcome and log files."""

from __future__ import annotations

from pathlib import Path

PathLike = Path | str


def read_text(path: PathLike, errors: str = "strict") -> str:
    """Read path as UTF-8 text."""
    return Path(path).read_text(encoding="utf-8", errors=errors)


def read_text_if_exists(path: PathLike) -> str | None:
    """Return the file's text, or ``None`` when it is missing or unreadable."""
    p = Path(path)
    if not p.is_file():
        return None
    try:
        return p.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def write_text(path: PathLike, text: str) -> None:
    """Write UTF-8 text, creating parent directories as needed."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")


def list_markdown(directory: PathLike) -> list[str]:
    """Sorted ``*.md`` file names in *directory* (empty if it does not exist)."""
    d = Path(directory)
    if not d.is_dir():
        return []
    return sorted(p.name for p in d.iterdir() if p.is_file() and p.suffix == ".md")
