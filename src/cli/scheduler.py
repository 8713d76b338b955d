"""
Relay scheduler: runs the reconciliation tick every N seconds until cancelled.

The tick itself is a plain callable, so tests and the `reconcile` command
drive it synchronously. The loop runs either in the foreground
(run_forever, Ctrl+C to stop) or on a daemon thread (start/stop).
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

import click

logger = logging.getLogger("escrow.scheduler")

DEFAULT_INTERVAL_SECONDS = 30.0


class CancellationToken:
    """Set once to stop a running loop; wait() doubles as an interruptible sleep."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)


class RelayScheduler:
    def __init__(
        self,
        tick: Callable[[], Any],
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        *,
        token: CancellationToken | None = None,
        events: Any = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._tick = tick
        self._interval = interval_seconds
        self.token = token or CancellationToken()
        self._events = events
        self._thread: threading.Thread | None = None
        self.ticks = 0
        self.errors = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Any:
        """One tick. Errors are logged and counted; the loop keeps going."""
        try:
            result = self._tick()
        except Exception as exc:
            self.errors += 1
            logger.exception("Relay tick failed")
            if self._events:
                self._events.error("relay tick failed", detail=str(exc))
            return None
        self.ticks += 1
        return result

    def run_forever(self) -> int:
        """Tick, then sleep the interval, until the token is cancelled. Returns ticks run."""
        while not self.token.cancelled:
            self.run_once()
            if self.token.wait(self._interval):
                break
        if self._events:
            self._events.shutdown(self.ticks)
        return self.ticks

    def start(self) -> threading.Thread:
        if self.running:
            raise RuntimeError("Scheduler already running")
        self._thread = threading.Thread(target=self.run_forever, name="escrow-relay", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = None) -> None:
        self.token.cancel()
        if self._thread is not None:
            self._thread.join(timeout)


def run_relay_loop(tick: Callable[[], Any], interval_seconds: float, *, events: Any = None) -> int:
    """
    Foreground loop for the `relay` command.
    Ctrl+C for graceful shutdown.
    """
    scheduler = RelayScheduler(tick, interval_seconds, events=events)
    click.echo(f"Relay started: tick every {interval_seconds:g}s  |  Ctrl+C to stop\n")
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        scheduler.token.cancel()
        if events:
            events.shutdown(scheduler.ticks)
    click.echo(f"\nShutting down after {scheduler.ticks} tick(s). Goodbye.")
    return scheduler.ticks
