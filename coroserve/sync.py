"""Synchronisation primitives: counting semaphore, read/write lock and a no-op lock."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class Semaphore:
    """Counting semaphore with ``wait`` (take) and ``notify`` (give back)."""

    def __init__(self, count: int = 0) -> None:
        if count < 0:
            raise ValueError(f"semaphore count must be non-negative, got {count}")
        self._sem = threading.Semaphore(count)

    def wait(self) -> None:
        """Block until the count is positive, then decrement it."""
        self._sem.acquire()

    def notify(self) -> None:
        """Increment the count, waking one waiter if any."""
        self._sem.release()


class RWLock:
    """Lock that admits many readers at once or a single writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self) -> None:
        """Take a shared lock, waiting while a writer holds the lock."""
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        """Give back a shared lock."""
        with self._cond:
            if self._readers == 0:
                raise RuntimeError("release_read() called without a held read lock")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        """Take the exclusive lock, waiting for readers and writers to leave."""
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True

    def release_write(self) -> None:
        """Give back the exclusive lock."""
        with self._cond:
            if not self._writer:
                raise RuntimeError("release_write() called without a held write lock")
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[RWLock]:
        """Hold a shared lock for the duration of a ``with`` block."""
        self.acquire_read()
        try:
            yield self
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[RWLock]:
        """Hold the exclusive lock for the duration of a ``with`` block."""
        self.acquire_write()
        try:
            yield self
        finally:
            self.release_write()


class NullLock:
    """Lock that never blocks; stands in where locking is not wanted.

    It only counts how many times it is currently held.
    """

    def __init__(self) -> None:
        self.depth = 0

    def acquire(self) -> bool:
        """Take the lock; always succeeds at once."""
        self.depth += 1
        return True

    def release(self) -> None:
        """Give the lock back; releasing an unheld lock is harmless."""
        if self.depth > 0:
            self.depth -= 1

    def __enter__(self) -> NullLock:
        self.acquire()
        return self

    def __exit__(self, *args: object) -> None:
        self.release()