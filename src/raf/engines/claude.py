"""Claude Code engine adapter."""

from __future__ import annotations

import shutil
from pathlib import Path

from raf import log
from raf.engines.base import EngineBase

EXECUTE_INSTRUCTION = "Execute the task as described in the system prompt."


class ClaudeEngine(EngineBase):
    name = "claude"

    def __init__(self, model: str = "opus", cwd: Path | None = None, logger: log.Logger | None = None) -> None:
        super().__init__(cwd=cwd, logger=logger)
        self.model = model

    def build_cmd(self, prompt: str) -> list[str]:
        # Resolved path: the child may see a different PATH.
        claude = shutil.which("claude") or "claude"
        return [
            claude,
            "--dangerously-skip-permissions",
            "--model",
            self.model,
            "--append-system-prompt",
            prompt,
            "-p",
            EXECUTE_INSTRUCTION,
        ]

    def check_available(self) -> str | None:
        if not shutil.which("claude"):
            return "Claude Code CLI not found. Install from https://github.com/anthropics/claude-code"
        return None
