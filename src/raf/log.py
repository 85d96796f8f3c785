"""Logging utilities with colored output via Rich."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape

console = Console(highlight=False)
_err_console = Console(highlight=False, stderr=True)


class Logger:
    """Leveled console logger that can travel inside an execution context.

    ``context`` is an optional prefix (e.g. ``[Task 2/5: add-api]``) printed
    before every message while a task is running.
    """

    def __init__(
        self,
        *,
        verbose: bool = False,
        out: Console | None = None,
        err: Console | None = None,
    ) -> None:
        self.verbose = verbose
        self.context = ""
        self._out = out or console
        self._err = err or _err_console

    def set_context(self, context: str) -> None:
        self.context = context

    def clear_context(self) -> None:
        self.context = ""

    def _fmt(self, msg: str) -> str:
        text = escape(msg)
        if self.context:
            return f"{escape(self.context)} {text}"
        return text

    def info(self, msg: str) -> None:
        self._out.print(f"[blue]\\[INFO][/blue] {self._fmt(msg)}")

    def success(self, msg: str) -> None:
        self._out.print(f"[green]\\[OK][/green] {self._fmt(msg)}")

    def warn(self, msg: str) -> None:
        self._out.print(f"[yellow]\\[WARN][/yellow] {self._fmt(msg)}")

    def error(self, msg: str) -> None:
        self._err.print(f"[red]\\[ERROR][/red] {self._fmt(msg)}")

    def debug(self, msg: str) -> None:
        if self.verbose:
            self._out.print(f"[dim]\\[DEBUG] {self._fmt(msg)}[/dim]")

    def newline(self) -> None:
        self._out.print("")


_default = Logger()


def default_logger() -> Logger:
    return _default


def set_verbose(enabled: bool) -> None:
    _default.verbose = enabled


def info(msg: str) -> None:
    _default.info(msg)


def success(msg: str) -> None:
    _default.success(msg)


def warn(msg: str) -> None:
    _default.warn(msg)


def error(msg: str) -> None:
    _default.error(msg)


def debug(msg: str) -> None:
    _default.debug(msg)


def format_elapsed(ms: float) -> str:
    """Render a duration as ``1h 2m 3s`` / ``2m 3s`` / ``3s``."""
    total = int(ms // 1000)
    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"
