"""Tests for the relay scheduler: cancellation token, single ticks, background loop (no real waits)."""

import threading

import pytest

from cli.scheduler import CancellationToken, RelayScheduler, run_relay_loop

# ---------------------------------------------------------------------------
# CancellationToken
# ---------------------------------------------------------------------------


def test_token_starts_uncancelled() -> None:
    assert CancellationToken().cancelled is False


def test_token_cancel() -> None:
    token = CancellationToken()
    token.cancel()
    assert token.cancelled is True
    assert token.wait(10) is True


def test_token_wait_times_out() -> None:
    assert CancellationToken().wait(0.01) is False


# ---------------------------------------------------------------------------
# RelayScheduler
# ---------------------------------------------------------------------------


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        RelayScheduler(lambda: None, 0)


def test_run_once_returns_tick_result() -> None:
    scheduler = RelayScheduler(lambda: "report", 1)
    assert scheduler.run_once() == "report"
    assert scheduler.ticks == 1


def test_run_once_counts_errors() -> None:
    class Events:
        def __init__(self):
            self.errors = []

        def error(self, message, detail=""):
            self.errors.append(detail)

    events = Events()

    def boom():
        raise RuntimeError("db locked")

    scheduler = RelayScheduler(boom, 1, events=events)
    assert scheduler.run_once() is None
    assert scheduler.errors == 1
    assert scheduler.ticks == 0
    assert events.errors == ["db locked"]


def test_run_forever_stops_when_tick_cancels() -> None:
    token = CancellationToken()
    calls = []

    def tick():
        calls.append(1)
        if len(calls) == 3:
            token.cancel()

    scheduler = RelayScheduler(tick, 0.001, token=token)
    assert scheduler.run_forever() == 3


def test_pre_cancelled_token_runs_nothing() -> None:
    token = CancellationToken()
    token.cancel()
    scheduler = RelayScheduler(lambda: None, 1, token=token)
    assert scheduler.run_forever() == 0


def test_start_and_stop_background_thread() -> None:
    ticked = threading.Event()
    scheduler = RelayScheduler(ticked.set, 60)
    scheduler.start()
    assert ticked.wait(5)
    assert scheduler.running
    with pytest.raises(RuntimeError):
        scheduler.start()
    scheduler.stop(timeout=5)
    assert not scheduler.running
    assert scheduler.ticks == 1


def test_shutdown_event_emitted() -> None:
    seen = []

    class Events:
        def shutdown(self, ticks):
            seen.append(ticks)

    token = CancellationToken()
    scheduler = RelayScheduler(token.cancel, 1, token=token, events=Events())
    scheduler.run_forever()
    assert seen == [1]


def test_run_relay_loop_handles_ctrl_c(capsys: pytest.CaptureFixture) -> None:
    calls = []

    def tick():
        calls.append(1)
        if len(calls) == 2:
            raise KeyboardInterrupt

    assert run_relay_loop(tick, 0.001) == 1
    out = capsys.readouterr().out
    assert "Relay started" in out
    assert "Shutting down after 1 tick(s)" in out
