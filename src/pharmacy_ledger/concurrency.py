"""Locking and retry helpers used by the transaction coordinator."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Tuple, Type, TypeVar

from . import log


T = TypeVar("T")


class KeyedLockTable:
    """Hand out one mutex per key, creating it on first use.

    Two callers asking for the same key always receive the same lock, so
    writes against one product serialize while different products proceed
    in parallel.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                log.debug("Creating lock for key '%s'", key)
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.get(key)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def discard(self, key: str) -> None:
        """Forget the lock for ``key``; the next ``get`` creates a fresh one."""
        with self._guard:
            if self._locks.pop(key, None) is not None:
                log.debug("Dropped lock for key '%s'", key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def run_with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_base: float = 0.05,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
) -> T:
    """Execute ``func`` and retry it on the listed failures.

    Sleeps ``backoff_base * 2**attempt`` between tries; the final attempt runs
    unguarded so its error propagates as is. Errors matching ``give_up_on``
    are re-raised immediately even when they also match ``retry_on``.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for attempt in range(attempts - 1):
        try:
            return func()
        except retry_on as exc:
            if isinstance(exc, give_up_on):
                raise
            log.warning(
                "Attempt %d/%d failed (%s); retrying",
                attempt + 1,
                attempts,
                exc,
            )
            time.sleep(backoff_base * (2 ** attempt))
    return func()
