"""Execution context: the logger and cancellation state one run carries around."""

from __future__ import annotations

import signal
from dataclasses import dataclass, field

from raf import log
from raf.engines.base import ExecutionAgent


@dataclass
class ExecutionContext:
    """Passed explicitly to the runner instead of process-wide singletons.

    ``request_shutdown`` sets the cancellation flag and stops the agent that
    is currently running, if any. The runner checks the flag between
    attempts and between tasks.
    """

    logger: log.Logger = field(default_factory=log.default_logger)
    shutdown_requested: bool = False
    active_agent: ExecutionAgent | None = None
    interrupt_count: int = 0
    _orig_signal_handlers: dict[int, object] = field(default_factory=dict, repr=False)

    def request_shutdown(self) -> None:
        self.shutdown_requested = True
        agent = self.active_agent
        if agent is not None:
            agent.kill()

    # ── signals ──────────────────────────────────────────────────

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to :meth:`request_shutdown`."""
        self._orig_signal_handlers = {}
        signals_to_handle = [signal.SIGINT]
        if hasattr(signal, "SIGBREAK"):
            signals_to_handle.append(signal.SIGBREAK)
        if hasattr(signal, "SIGTERM"):
            signals_to_handle.append(signal.SIGTERM)

        for sig in signals_to_handle:
            try:
                self._orig_signal_handlers[sig] = signal.getsignal(sig)
                signal.signal(sig, self._on_signal)
            except (OSError, RuntimeError, ValueError):
                continue

    def restore_signal_handlers(self) -> None:
        for sig, handler in self._orig_signal_handlers.items():
            try:
                signal.signal(sig, handler)
            except (OSError, RuntimeError, ValueError):
                continue
        self._orig_signal_handlers = {}

    def _on_signal(self, signum: int, _frame: object) -> None:
        self.interrupt_count += 1
        if self.interrupt_count == 1:
            self.logger.warn(f"Interrupt received (signal {signum}). Stopping after the current attempt...")
        else:
            self.logger.warn(f"Interrupt received again (signal {signum}). Forcing stop...")
        self.request_shutdown()
