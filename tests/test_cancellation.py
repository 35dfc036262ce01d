"""Cancellation token: callbacks and the guarded write window."""
from __future__ import annotations

import threading

import pytest

from bookmind.cancellation import CancellationToken
from bookmind.errors import Cancelled


# ---------------------------------------------------------------------------
#  Callbacks
# ---------------------------------------------------------------------------


class TestCallbacks:
    def test_run_once_on_cancel(self):
        token = CancellationToken()
        calls = []
        token.on_cancel(lambda: calls.append("closed"))

        token.cancel()
        token.cancel()

        assert calls == ["closed"]
        assert token.cancelled

    def test_removed_callback_does_not_run(self):
        token = CancellationToken()
        calls = []
        remove = token.on_cancel(lambda: calls.append("closed"))
        remove()

        token.cancel()
        assert calls == []

    def test_registered_after_cancel_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []

        token.on_cancel(lambda: calls.append("closed"))
        assert calls == ["closed"]

    def test_failing_callback_does_not_stop_the_rest(self):
        token = CancellationToken()
        calls = []

        def broken():
            raise OSError("socket already gone")

        token.on_cancel(broken)
        token.on_cancel(lambda: calls.append("closed"))

        token.cancel()
        assert calls == ["closed"]


# ---------------------------------------------------------------------------
#  Guarded block
# ---------------------------------------------------------------------------


class TestUnlessCancelled:
    def test_raises_when_already_cancelled(self):
        token = CancellationToken()
        token.cancel()
        ran = []

        with pytest.raises(Cancelled):
            with token.unless_cancelled():
                ran.append(True)
        assert ran == []

    def test_cancel_waits_for_the_block(self):
        token = CancellationToken()
        entered = threading.Event()
        finished = threading.Event()

        def cancel_from_elsewhere():
            entered.wait(5)
            token.cancel()
            finished.set()

        canceller = threading.Thread(target=cancel_from_elsewhere)
        canceller.start()
        with token.unless_cancelled():
            entered.set()
            assert not finished.wait(0.2)
            assert not token.cancelled
        canceller.join(5)

        assert finished.is_set()
        assert token.cancelled
