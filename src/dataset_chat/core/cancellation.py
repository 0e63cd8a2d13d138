"""Thread-safe cancellation for in-flight query streams."""

import threading
from collections.abc import Callable

__all__ = ["CancellationToken", "QueryCancelledError", "raise_if_cancelled"]


class QueryCancelledError(RuntimeError):
    """Raised inside the read loop when the caller abandoned the query."""


class CancellationToken:
    """Wrapper around threading.Event shared between the caller and the stream read loop."""

    __slots__ = ("_event", "_lock", "_callbacks")

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        """Return True once cancellation has been requested."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation and run registered callbacks. Only the first call has an effect."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """
        Run callback when cancel() is called.

        Used to close a blocked HTTP response so the read loop wakes up.
        Runs immediately if cancellation already happened.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancellation occurs or timeout elapses."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        """Raise QueryCancelledError if cancellation occurred."""
        if self._event.is_set():
            raise QueryCancelledError()


def raise_if_cancelled(token: CancellationToken | None) -> None:
    """Convenience helper raising when token has been signalled."""
    if token is not None:
        token.raise_if_cancelled()
