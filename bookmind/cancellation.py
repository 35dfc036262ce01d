"""Cooperative cancellation shared by the orchestrator and the HTTP layer."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List

from .errors import Cancelled

log = logging.getLogger(__name__)


class CancellationToken:
    """A one-shot cancel signal.

    ``cancel()`` may be called from any thread. Callbacks registered with
    ``on_cancel`` run once, on the cancelling thread; the provider layer uses
    them to close a live HTTP response so a request in flight is torn down
    immediately instead of at the next stage boundary.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # a failing teardown must not stop the others
                log.debug("cancel callback %r failed", callback, exc_info=True)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("Processing was cancelled")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it.

        If the token is already cancelled the callback runs right away.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return remove
        callback()
        return lambda: None

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    @contextmanager
    def unless_cancelled(self) -> Iterator[None]:
        """Run the block only if not cancelled; ``cancel()`` waits until the block has finished."""
        with self._lock:
            self.raise_if_cancelled()
            yield
