from __future__ import annotations

from collections.abc import Callable
import threading
import time

from txnsync.errors import SyncCancelledError


class CancelToken:
    """Cooperative cancellation with an optional deadline.

    Backoff and poll waits go through ``wait`` so a caller can interrupt a
    sync from another thread, and a deadline bounds the total time a sync may
    spend waiting.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event = threading.Event()
        self._clock = clock
        self._deadline = None if timeout_seconds is None else clock() + timeout_seconds

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self._expired()

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelledError("Sync cancelled by caller")
        if self._expired():
            raise SyncCancelledError("Sync deadline exceeded")

    def wait(self, seconds: float) -> None:
        """Block up to ``seconds``; raise SyncCancelledError if interrupted."""
        self.raise_if_cancelled()
        remaining = self.remaining()
        if remaining is not None and seconds > remaining:
            self._event.wait(remaining)
            self.raise_if_cancelled()
            # Deadline reached mid-wait
            raise SyncCancelledError("Sync deadline exceeded")
        self._event.wait(seconds)
        self.raise_if_cancelled()

    def _expired(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline
