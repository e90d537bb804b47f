"""Cancellable waits and request spacing for RSS Digest Bot."""

import threading
import time
from collections.abc import Callable, Sequence
from typing import TypeVar

from .errors import RunCancelledError

T = TypeVar("T")


def wait_or_cancel(cancel: threading.Event | None, seconds: float) -> None:
    """Sleep for `seconds`, returning early with an error if `cancel` is set.

    Raises:
        RunCancelledError: If the cancel event is (or becomes) set
    """
    if cancel is None:
        if seconds > 0:
            time.sleep(seconds)
        return
    if cancel.is_set():
        raise RunCancelledError("run cancelled")
    if seconds > 0 and cancel.wait(seconds):
        raise RunCancelledError(f"run cancelled during {seconds:.0f}s wait")


def check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise RunCancelledError("run cancelled")


def split_batches(items: Sequence[T], batch_size: int) -> list[list[T]]:
    """Partition items into consecutive batches.

    Input that fits in one batch is returned as a single batch.
    """
    if not items:
        return []
    if batch_size <= 0 or len(items) <= batch_size:
        return [list(items)]
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


class RequestPacer:
    """Keeps a minimum interval between consecutive requests.

    The first call to `wait` never sleeps.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Callable[[threading.Event | None, float], None] = wait_or_cancel,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleeper = sleeper
        self._last_request: float | None = None
        self.requests = 0

    def wait(self, cancel: threading.Event | None = None) -> float:
        """Block until the next request may start. Returns the seconds waited."""
        waited = 0.0
        if self._last_request is not None:
            elapsed = self._clock() - self._last_request
            if elapsed < self.min_interval:
                waited = self.min_interval - elapsed
                self._sleeper(cancel, waited)
        else:
            check_cancelled(cancel)
        return waited

    def mark(self) -> None:
        """Record that a request just finished."""
        self._last_request = self._clock()
        self.requests += 1
