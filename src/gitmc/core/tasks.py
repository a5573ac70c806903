"""Cancellation, per-save locking and background task handles."""

import threading
from concurrent.futures import CancelledError, Future
from contextlib import contextmanager
from typing import Any, Callable, Optional

from .errors import OperationCancelled


class CancellationToken:
    """Cooperative cancellation flag checked between pipeline stages."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")


class SaveLocks:
    """One mutex per save id.

    Commands for the same save run one at a time; different saves proceed
    in parallel. Locks are created on first use and never removed, so the
    table grows with the number of saves ever touched.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, save_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(save_id)
            if lock is None:
                lock = self._locks[save_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, save_id: str):
        lock = self._lock_for(save_id)
        with lock:
            yield

    def is_locked(self, save_id: str) -> bool:
        return self._lock_for(save_id).locked()


class SyncTask:
    """Handle for a command running in the background."""

    def __init__(self, future: Future, token: CancellationToken, description: str = ""):
        self._future = future
        self.token = token
        self.description = description

    def cancel(self) -> None:
        """Request cancellation; a task that has not started is dropped."""
        self.token.cancel()
        self._future.cancel()

    def done(self) -> bool:
        return self._future.done()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def result(self, timeout: Optional[float] = None) -> Any:
        """Wait for the command and return its result or raise its error.

        A task dropped before it started raises OperationCancelled.
        """
        try:
            return self._future.result(timeout)
        except CancelledError:
            raise OperationCancelled(f"{self.description or 'task'} was cancelled before it started") from None

    def add_done_callback(self, callback: Callable[["SyncTask"], None]) -> None:
        self._future.add_done_callback(lambda _: callback(self))

    def __repr__(self) -> str:
        state = "done" if self.done() else "running"
        return f"SyncTask({self.description!r}, {state})"
