"""Engine registry: get the right adapter by name."""

from __future__ import annotations

from pathlib import Path

from raf import log
from raf.engines.base import EngineBase
from raf.engines.claude import ClaudeEngine


def get_engine(
    name: str,
    *,
    model: str = "opus",
    cwd: Path | None = None,
    logger: log.Logger | None = None,
) -> EngineBase:
    """Return an engine adapter for *name*."""
    match name:
        case "claude":
            return ClaudeEngine(model=model, cwd=cwd, logger=logger)
        case _:
            raise ValueError(f"Unknown engine: {name}")


ENGINE_NAMES = ("claude",)
