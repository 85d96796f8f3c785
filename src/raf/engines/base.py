"""Execution agents: run one prompt to completion in a child process."""

from __future__ import annotations

import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from raf import log
from raf.output_parser import looks_like_context_overflow

# Exit code reported when the child was stopped by a shutdown request.
INTERRUPTED_EXIT_CODE = 130


@dataclass
class RunResult:
    """What a single agent invocation produced."""

    output: str = ""
    exit_code: int = 0
    timed_out: bool = False
    context_overflow: bool = False


class ExecutionAgent(Protocol):
    """Anything that can run a prompt under a wall-clock timeout (seconds)."""

    def run(self, prompt: str, timeout: float | None = None) -> RunResult: ...

    def kill(self) -> None: ...


class EngineBase(ABC):
    """Child-process agent. Subclasses implement ``build_cmd``.

    Every ``run`` call arms its own deadline; nothing carries over between
    calls, so each retry attempt gets the full timeout.
    """

    name: str = "base"

    def __init__(self, cwd: Path | None = None, logger: log.Logger | None = None) -> None:
        self.cwd = cwd
        self.log = logger or log.default_logger()
        self._proc: subprocess.Popen[str] | None = None
        self._killed = False

    @abstractmethod
    def build_cmd(self, prompt: str) -> list[str]:
        """Return the CLI command list for the given prompt."""
        ...

    def check_available(self) -> str | None:
        """Return an error message if the engine CLI is not available, else None."""
        cmd_name = self.build_cmd("test")[0]
        if not shutil.which(cmd_name):
            return f"{cmd_name} not found in PATH"
        return None

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def kill(self) -> None:
        """Stop the in-flight child, if any. Safe to call from a signal handler."""
        self._killed = True
        proc = self._proc
        if proc is not None and proc.poll() is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass

    def run(self, prompt: str, timeout: float | None = None) -> RunResult:
        cmd = self.build_cmd(prompt)
        self._killed = False
        start = time.monotonic()
        self.log.debug(f"Starting {self.name} (timeout={timeout}s)")

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=self.cwd,
            )
        except FileNotFoundError:
            return RunResult(output=f"{cmd[0]} not found", exit_code=127)

        self._proc = proc
        timed_out = False
        try:
            stdout, stderr = self._communicate_with_interrupts(proc, timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            self.log.warn(f"{self.name} timed out after {timeout}s")
            self._terminate_process(proc)
            stdout, stderr = self._drain(proc)
        except KeyboardInterrupt:
            self._terminate_process(proc)
            raise
        finally:
            self._proc = None

        output = stdout or ""
        if stderr and stderr.strip():
            self.log.debug(f"{self.name} stderr: {stderr.strip()}")
            output = f"{output}\n{stderr}" if output else stderr

        exit_code = proc.returncode
        if exit_code is None or (self._killed and exit_code < 0):
            exit_code = INTERRUPTED_EXIT_CODE

        elapsed = time.monotonic() - start
        self.log.debug(f"{self.name} exited with {exit_code} after {elapsed:.1f}s")
        return RunResult(
            output=output,
            exit_code=exit_code,
            timed_out=timed_out,
            context_overflow=looks_like_context_overflow(output),
        )

    @staticmethod
    def _communicate_with_interrupts(
        proc: subprocess.Popen[str],
        *,
        timeout: float | None,
    ) -> tuple[str, str]:
        """Read process output while remaining responsive to KeyboardInterrupt."""
        if timeout is None:
            return proc.communicate()

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise subprocess.TimeoutExpired(proc.args, timeout)

            wait_timeout = min(0.2, remaining)
            try:
                return proc.communicate(timeout=wait_timeout)
            except subprocess.TimeoutExpired:
                continue

    @staticmethod
    def _drain(proc: subprocess.Popen[str]) -> tuple[str, str]:
        """Output buffered so far by a terminated process."""
        try:
            return proc.communicate(timeout=2)
        except subprocess.TimeoutExpired:
            return "", ""

    def _terminate_process(self, proc: subprocess.Popen[str]) -> None:
        """Terminate, then kill if the child ignores SIGTERM."""
        try:
            if proc.poll() is None:
                proc.terminate()
        except ProcessLookupError:
            return

        try:
            proc.wait(timeout=2)
            return
        except subprocess.TimeoutExpired:
            pass

        try:
            if proc.poll() is None:
                proc.kill()
        except ProcessLookupError:
            return

        try:
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            self.log.warn(f"Process {proc.pid} did not exit after kill")
