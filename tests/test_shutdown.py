from __future__ import annotations

import os
import signal
import threading
import time

import allure
import pytest

from notion_sd_runner.queue.shutdown import ShutdownSignal

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("Shutdown"),
]


def _request_later(action, delay: float = 0.2) -> threading.Thread:
    thread = threading.Thread(target=lambda: (time.sleep(delay), action()), daemon=True)
    thread.start()
    return thread


def test_sleep_runs_full_interval_without_request() -> None:
    shutdown = ShutdownSignal()

    assert shutdown.sleep(0.05) is True
    assert shutdown.requested is False


def test_request_from_another_thread_cuts_sleep_short() -> None:
    shutdown = ShutdownSignal()
    thread = _request_later(lambda: shutdown.request(reason="test"))

    started = time.monotonic()
    completed = shutdown.sleep(30)
    elapsed = time.monotonic() - started
    thread.join(timeout=5)

    assert completed is False
    assert elapsed < 5
    assert shutdown.reason == "test"


def test_first_request_reason_wins() -> None:
    shutdown = ShutdownSignal()
    shutdown.request(reason="SIGTERM")
    shutdown.request(reason="SIGINT")

    assert shutdown.reason == "SIGTERM"


def test_sigterm_during_sleep_requests_shutdown() -> None:
    shutdown = ShutdownSignal()

    with shutdown.signal_handlers():
        thread = _request_later(lambda: os.kill(os.getpid(), signal.SIGTERM))
        started = time.monotonic()
        completed = shutdown.sleep(30)
        elapsed = time.monotonic() - started
        thread.join(timeout=5)

    assert completed is False
    assert elapsed < 5
    assert shutdown.reason == "SIGTERM"


def test_second_signal_forces_exit() -> None:
    shutdown = ShutdownSignal()

    with shutdown.signal_handlers():
        os.kill(os.getpid(), signal.SIGTERM)
        assert shutdown.requested
        with pytest.raises(KeyboardInterrupt):
            os.kill(os.getpid(), signal.SIGTERM)
            # Handlers run between bytecodes; give the interpreter a chance.
            time.sleep(1)


def test_signal_handlers_restore_previous_handlers() -> None:
    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)
    shutdown = ShutdownSignal()

    with shutdown.signal_handlers():
        assert signal.getsignal(signal.SIGTERM) is not original_sigterm

    assert signal.getsignal(signal.SIGINT) == original_sigint
    assert signal.getsignal(signal.SIGTERM) == original_sigterm


def test_signal_handlers_outside_main_thread_are_a_no_op() -> None:
    shutdown = ShutdownSignal()
    entered: list[bool] = []

    def target() -> None:
        with shutdown.signal_handlers():
            entered.append(True)

    thread = threading.Thread(target=target)
    thread.start()
    thread.join(timeout=5)

    assert entered == [True]
    assert shutdown.requested is False
