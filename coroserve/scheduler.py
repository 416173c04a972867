"""N-to-M task scheduler: a pool of threads running callbacks and generator fibers.

A *fiber* is a generator.  Resuming it runs it up to its next ``yield``.
A fiber that yields is suspended, and it runs again only when someone
schedules it again.  Inside a running fiber, ``current_fiber()`` returns it,
so the fiber can hand itself to whatever will wake it.
"""

from __future__ import annotations

import inspect
import threading
from dataclasses import dataclass
from typing import Any, Callable, Generator, Optional, Union

from coroserve.formatter import LogLevel
from coroserve.logger import Logger

Fiber = Generator[Any, Any, Any]
Task = Union[Fiber, Callable[[], Any]]

ANY_THREAD = -1
IDLE_WAIT_SECONDS = 0.05

_log = Logger("system")
_local = threading.local()


def current_fiber() -> Optional[Fiber]:
    """The fiber being resumed on this thread, or ``None`` outside a fiber."""
    return getattr(_local, "fiber", None)


def _resume(fiber: Fiber) -> None:
    previous = current_fiber()
    _local.fiber = fiber
    try:
        next(fiber)
    except StopIteration:
        pass
    finally:
        _local.fiber = previous


@dataclass
class ScheduleTask:
    """A queued unit of work: a fiber or a callback, optionally pinned to a thread."""

    fiber: Optional[Fiber] = None
    callback: Optional[Callable[[], Any]] = None
    thread: int = ANY_THREAD

    def run(self) -> None:
        if self.fiber is not None:
            _resume(self.fiber)
        elif self.callback is not None:
            result = self.callback()
            if inspect.isgenerator(result):
                _resume(result)

    @property
    def is_running_fiber(self) -> bool:
        return self.fiber is not None and bool(self.fiber.gi_running)


class Scheduler:
    """Scheduler that runs tasks on a pool of threads.

    With ``use_caller`` the creating thread counts as one of the threads.
    That thread runs queued tasks when it calls ``stop()``.
    """

    def __init__(self, threads: int = 1, use_caller: bool = True, name: str = "Scheduler") -> None:
        if threads <= 0:
            raise ValueError(f"thread count must be positive, got {threads}")
        self.name = name
        self.use_caller = use_caller
        self._lock = threading.RLock()
        self._wakeup = threading.Condition(self._lock)
        self._tasks: list[ScheduleTask] = []
        self._threads: list[threading.Thread] = []
        self._thread_ids: list[int] = []
        self._active_count = 0
        self._idle_count = 0
        self._stopping = False
        if use_caller:
            threads -= 1
            if Scheduler.current() is not None:
                raise RuntimeError("this thread already belongs to a scheduler")
            _local.scheduler = self
            threading.current_thread().name = name
            self.root_thread = threading.get_native_id()
            self._thread_ids.append(self.root_thread)
        else:
            self.root_thread = ANY_THREAD
        self.thread_count = threads

    @classmethod
    def current(cls) -> Optional[Scheduler]:
        """The scheduler the calling thread works for, if any."""
        return getattr(_local, "scheduler", None)

    @property
    def thread_ids(self) -> list[int]:
        with self._lock:
            return list(self._thread_ids)

    def schedule(self, task: Optional[Task], thread: int = ANY_THREAD) -> None:
        """Queue a fiber or a callback; ``thread`` pins it to one native thread id."""
        if task is None:
            return
        if inspect.isgenerator(task):
            entry = ScheduleTask(fiber=task, thread=thread)
        elif callable(task):
            entry = ScheduleTask(callback=task, thread=thread)
        else:
            raise TypeError(f"expected a generator or a callable, got {type(task).__name__}")
        with self._lock:
            need_tickle = not self._tasks
            self._tasks.append(entry)
        if need_tickle:
            self.tickle()

    def start(self) -> None:
        """Start the worker threads."""
        _log.emit(LogLevel.DEBUG, "start")
        with self._lock:
            if self._stopping:
                _log.emit(LogLevel.ERROR, "Scheduler is stopped")
                return
            if self._threads:
                raise RuntimeError("scheduler already started")
            for index in range(self.thread_count):
                worker = threading.Thread(
                    target=self.run, name=f"{self.name}_{index}", daemon=True
                )
                worker.start()
                self._threads.append(worker)
                self._thread_ids.append(worker.native_id or 0)

    def stop(self) -> None:
        """Stop the scheduler.

        Returns only after every queued task has run.
        """
        _log.emit(LogLevel.DEBUG, "stop")
        if self.stopping():
            return
        if self.use_caller:
            if Scheduler.current() is not self:
                raise RuntimeError("a caller-thread scheduler must be stopped from its caller thread")
        elif Scheduler.current() is self:
            raise RuntimeError("a scheduler cannot be stopped from one of its own threads")
        with self._lock:
            self._stopping = True
        for _ in range(self.thread_count):
            self.tickle()
        if self.use_caller:
            self.tickle()
            self.run()
            _log.emit(LogLevel.DEBUG, "root run end")
        with self._lock:
            workers, self._threads = self._threads, []
        for worker in workers:
            worker.join()
        if self.use_caller and Scheduler.current() is self:
            _local.scheduler = None

    def tickle(self) -> None:
        """Wake idle threads so they look for work."""
        _log.emit(LogLevel.DEBUG, "tickle")
        with self._wakeup:
            self._wakeup.notify_all()

    def idle(self) -> None:
        """Wait briefly for work while there is nothing to run."""
        _log.emit(LogLevel.DEBUG, "idle")
        with self._wakeup:
            if not self._tasks and not self.stopping():
                self._wakeup.wait(IDLE_WAIT_SECONDS)

    def stopping(self) -> bool:
        """Whether stop was requested, the queue is empty and no task is running."""
        with self._lock:
            return self._stopping and not self._tasks and self._active_count == 0

    def has_idle_threads(self) -> bool:
        with self._lock:
            return self._idle_count > 0

    def _take_task(self) -> tuple[Optional[ScheduleTask], bool]:
        me = threading.get_native_id()
        tickle_others = False
        with self._lock:
            for index, candidate in enumerate(self._tasks):
                if candidate.thread != ANY_THREAD and candidate.thread != me:
                    tickle_others = True
                    continue
                if candidate.is_running_fiber:
                    continue
                del self._tasks[index]
                self._active_count += 1
                return candidate, tickle_others or index < len(self._tasks)
        return None, tickle_others

    def run(self) -> None:
        """Scheduling loop run by every thread of the scheduler."""
        _log.emit(LogLevel.DEBUG, "run")
        _local.scheduler = self
        while True:
            task, tickle_others = self._take_task()
            if tickle_others:
                self.tickle()
            if task is not None:
                try:
                    task.run()
                except Exception as exc:
                    _log.emit(LogLevel.ERROR, f"task raised {exc!r}")
                finally:
                    with self._lock:
                        self._active_count -= 1
                continue
            if self.stopping():
                _log.emit(LogLevel.DEBUG, "idle fiber term")
                break
            with self._lock:
                self._idle_count += 1
            try:
                self.idle()
            finally:
                with self._lock:
                    self._idle_count -= 1
        _log.emit(LogLevel.DEBUG, "Scheduler.run() exit")