"""Tests for the engine layer: child-process runs, timeouts, kill and adapters."""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from raf.engines.base import INTERRUPTED_EXIT_CODE, EngineBase
from raf.engines.claude import EXECUTE_INSTRUCTION, ClaudeEngine
from raf.engines.registry import ENGINE_NAMES, get_engine
from raf.log import Logger


class ScriptEngine(EngineBase):
    """Runs an inline Python script; the prompt is passed as ``argv[1]``."""

    name = "script"

    def __init__(self, script: str, cwd: Path | None = None, logger: Logger | None = None) -> None:
        super().__init__(cwd=cwd, logger=logger)
        self.script = script

    def build_cmd(self, prompt: str) -> list[str]:
        return [sys.executable, "-c", self.script, prompt]


class MissingEngine(EngineBase):
    name = "missing"

    def build_cmd(self, prompt: str) -> list[str]:
        return ["raf-no-such-binary-4b1d", prompt]


# ── EngineBase.run ───────────────────────────────────────────────────


class TestRun:
    def test_captures_output_and_exit_code(self) -> None:
        engine = ScriptEngine("import sys; print('got', sys.argv[1]); sys.exit(3)")
        result = engine.run("hello", timeout=30)
        assert result.output.strip() == "got hello"
        assert result.exit_code == 3
        assert not result.timed_out
        assert not result.context_overflow

    def test_stderr_is_appended(self) -> None:
        engine = ScriptEngine("import sys; print('out'); print('err', file=sys.stderr)")
        result = engine.run("x", timeout=30)
        assert "out" in result.output
        assert "err" in result.output

    def test_runs_in_cwd(self, tmp_path: Path) -> None:
        engine = ScriptEngine("import os; print(os.getcwd())", cwd=tmp_path)
        result = engine.run("x", timeout=30)
        assert Path(result.output.strip()).resolve() == tmp_path.resolve()

    def test_detects_context_overflow(self) -> None:
        engine = ScriptEngine("print('Error: context length exceeded')")
        assert engine.run("x", timeout=30).context_overflow

    def test_missing_binary(self) -> None:
        result = MissingEngine().run("x", timeout=5)
        assert result.exit_code == 127
        assert "not found" in result.output


class TestTimeout:
    def test_timeout_keeps_partial_output(self) -> None:
        engine = ScriptEngine("import time; print('partial', flush=True); time.sleep(30)")
        start = time.monotonic()
        result = engine.run("x", timeout=1)
        assert result.timed_out
        assert "partial" in result.output
        assert time.monotonic() - start < 15
        assert not engine.is_running

    def test_timeout_is_logged_to_the_engine_logger(self, captured_logger) -> None:
        logger, buffer = captured_logger
        engine = ScriptEngine("import time; time.sleep(30)", logger=logger)
        assert engine.run("x", timeout=1).timed_out
        text = buffer.getvalue()
        assert "Starting script" in text
        assert "script timed out after 1s" in text

    def test_each_run_gets_its_own_deadline(self) -> None:
        engine = ScriptEngine("import time; time.sleep(0.6); print('done')")
        for _ in range(3):
            result = engine.run("x", timeout=2)
            assert not result.timed_out
            assert result.output.strip() == "done"


class TestKill:
    def test_kill_stops_running_child(self) -> None:
        engine = ScriptEngine("import time; time.sleep(30)")
        timer = threading.Timer(0.5, engine.kill)
        timer.start()
        start = time.monotonic()
        try:
            result = engine.run("x", timeout=60)
        finally:
            timer.cancel()
        assert time.monotonic() - start < 15
        assert result.exit_code == INTERRUPTED_EXIT_CODE
        assert not result.timed_out

    def test_kill_when_idle_is_harmless(self) -> None:
        engine = ScriptEngine("print('ok')")
        engine.kill()
        result = engine.run("x", timeout=30)
        assert result.exit_code == 0


# ── Availability and adapters ────────────────────────────────────────


class TestCheckAvailable:
    def test_available(self) -> None:
        assert ScriptEngine("pass").check_available() is None

    def test_missing(self) -> None:
        assert "not found in PATH" in MissingEngine().check_available()

    def test_claude_missing(self) -> None:
        with patch("raf.engines.claude.shutil.which", return_value=None):
            assert "Claude Code CLI not found" in ClaudeEngine().check_available()


class TestClaudeEngine:
    def test_build_cmd(self) -> None:
        with patch("raf.engines.claude.shutil.which", return_value="/usr/bin/claude"):
            cmd = ClaudeEngine(model="sonnet").build_cmd("the prompt")
        assert cmd[0] == "/usr/bin/claude"
        assert "--dangerously-skip-permissions" in cmd
        assert cmd[cmd.index("--model") + 1] == "sonnet"
        assert cmd[cmd.index("--append-system-prompt") + 1] == "the prompt"
        assert cmd[cmd.index("-p") + 1] == EXECUTE_INSTRUCTION


class TestRegistry:
    def test_get_claude(self, tmp_path: Path) -> None:
        engine = get_engine("claude", model="haiku", cwd=tmp_path)
        assert isinstance(engine, ClaudeEngine)
        assert engine.model == "haiku"
        assert engine.cwd == tmp_path

    def test_logger_is_passed_through(self, captured_logger) -> None:
        logger, _ = captured_logger
        assert get_engine("claude", logger=logger).log is logger

    def test_names(self) -> None:
        assert ENGINE_NAMES == ("claude",)

    def test_unknown(self) -> None:
        with pytest.raises(ValueError, match="Unknown engine"):
            get_engine("nope")
