"""I/O scheduler: runs callbacks or resumes fibers when file descriptors become ready.

Registered events are one-shot.  Once an event fires, or is cancelled, its
callback or fiber is queued on the scheduler and the registration is dropped.
To keep watching a descriptor, register the event again after it fires.
"""

from __future__ import annotations

import os
import selectors
import threading
from dataclasses import dataclass, field
from enum import IntFlag
from typing import Any, Callable, Optional

from coroserve.formatter import LogLevel
from coroserve.logger import Logger
from coroserve.scheduler import Fiber, Scheduler, current_fiber
from coroserve.sync import RWLock

MAX_TIMEOUT_MS = 5000

_log = Logger("system")


class Event(IntFlag):
    """I/O events a descriptor can be watched for (values follow epoll)."""

    NONE = 0x0
    READ = 0x1
    WRITE = 0x4


class EpollEvent(IntFlag):
    """epoll event bits, in the order they are printed."""

    EPOLLIN = 0x001
    EPOLLPRI = 0x002
    EPOLLOUT = 0x004
    EPOLLRDNORM = 0x040
    EPOLLRDBAND = 0x080
    EPOLLWRNORM = 0x100
    EPOLLWRBAND = 0x200
    EPOLLMSG = 0x400
    EPOLLERR = 0x008
    EPOLLHUP = 0x010
    EPOLLRDHUP = 0x2000
    EPOLLONESHOT = 1 << 30
    EPOLLET = 1 << 31


def format_epoll_events(events: int) -> str:
    """Render an epoll event mask as ``NAME|NAME``; an empty mask gives ``"0"``."""
    if not events:
        return "0"
    return "|".join(flag.name for flag in EpollEvent if events & flag)


def _selector_mask(events: Event) -> int:
    mask = 0
    if events & Event.READ:
        mask |= selectors.EVENT_READ
    if events & Event.WRITE:
        mask |= selectors.EVENT_WRITE
    return mask


@dataclass
class _EventContext:
    scheduler: Optional[Scheduler] = None
    fiber: Optional[Fiber] = None
    callback: Optional[Callable[[], Any]] = None

    def reset(self) -> None:
        self.scheduler = None
        self.fiber = None
        self.callback = None

    @property
    def empty(self) -> bool:
        return self.scheduler is None and self.fiber is None and self.callback is None


@dataclass(eq=False)
class _FdContext:
    fd: int
    events: Event = Event.NONE
    read: _EventContext = field(default_factory=_EventContext)
    write: _EventContext = field(default_factory=_EventContext)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def event_context(self, event: Event) -> _EventContext:
        if event == Event.READ:
            return self.read
        if event == Event.WRITE:
            return self.write
        raise ValueError(f"invalid event: {event!r}")

    def trigger(self, event: Event) -> None:
        """Queue the event's callback or fiber and drop the registration."""
        if not self.events & event:
            raise RuntimeError(f"event {event!r} is not registered on fd {self.fd}")
        self.events = Event(self.events & ~event)
        ctx = self.event_context(event)
        scheduler = ctx.scheduler
        task = ctx.callback if ctx.callback is not None else ctx.fiber
        ctx.reset()
        if scheduler is not None:
            scheduler.schedule(task)


def _check_event(event: Event) -> Event:
    event = Event(event)
    if event not in (Event.READ, Event.WRITE):
        raise ValueError(f"event must be READ or WRITE, got {event!r}")
    return event


class IOManager(Scheduler):
    """Scheduler whose idle threads wait for I/O readiness on registered descriptors."""

    def __init__(self, threads: int = 1, use_caller: bool = True, name: str = "IOManager") -> None:
        super().__init__(threads, use_caller, name)
        self._selector = selectors.DefaultSelector()
        self._tickle_r, self._tickle_w = os.pipe()
        os.set_blocking(self._tickle_r, False)
        os.set_blocking(self._tickle_w, False)
        self._selector.register(self._tickle_r, selectors.EVENT_READ, None)
        self._contexts_lock = RWLock()
        self._contexts: dict[int, _FdContext] = {}
        self._pending_lock = threading.Lock()
        self._pending = 0
        self._closed = False
        self.start()

    @classmethod
    def current(cls) -> Optional[IOManager]:
        """The I/O manager the calling thread works for, if any."""
        scheduler = Scheduler.current()
        return scheduler if isinstance(scheduler, IOManager) else None

    @property
    def pending_event_count(self) -> int:
        """Number of registered events that have not fired yet."""
        with self._pending_lock:
            return self._pending

    def _add_pending(self, delta: int) -> None:
        with self._pending_lock:
            self._pending += delta

    def _find_context(self, fd: int) -> Optional[_FdContext]:
        with self._contexts_lock.read_locked():
            return self._contexts.get(fd)

    def _context(self, fd: int) -> _FdContext:
        ctx = self._find_context(fd)
        if ctx is not None:
            return ctx
        with self._contexts_lock.write_locked():
            return self._contexts.setdefault(fd, _FdContext(fd))

    def _apply(self, ctx: _FdContext, old: Event, new: Event) -> None:
        if new and old:
            self._selector.modify(ctx.fd, _selector_mask(new), ctx)
        elif new:
            self._selector.register(ctx.fd, _selector_mask(new), ctx)
        else:
            self._selector.unregister(ctx.fd)

    def add_event(
        self, fd: int, event: Event, callback: Optional[Callable[[], Any]] = None
    ) -> None:
        """Run ``callback`` (or resume the current fiber) once ``fd`` is ready for ``event``.

        Raises ``ValueError`` if the event is already registered on ``fd``,
        ``RuntimeError`` if no callback is given outside a fiber, and
        ``OSError`` if the descriptor cannot be watched.
        """
        event = _check_event(event)
        fiber = None
        if callback is None:
            fiber = current_fiber()
            if fiber is None:
                raise RuntimeError("add_event without a callback must be called from a fiber")
        ctx = self._context(fd)
        with ctx.lock:
            if ctx.events & event:
                _log.emit(
                    LogLevel.ERROR,
                    f"add_event assert fd={fd} event={format_epoll_events(event)}"
                    f" fd_ctx.event={format_epoll_events(ctx.events)}",
                )
                raise ValueError(f"event {event.name} already registered on fd {fd}")
            new_events = Event(ctx.events | event)
            try:
                self._apply(ctx, ctx.events, new_events)
            except (OSError, ValueError, KeyError) as exc:
                _log.emit(
                    LogLevel.ERROR,
                    f"watch fd={fd} events={format_epoll_events(new_events)} failed: {exc}",
                )
                raise OSError(f"cannot watch fd {fd}: {exc}") from exc
            self._add_pending(1)
            ctx.events = new_events
            event_ctx = ctx.event_context(event)
            if not event_ctx.empty:
                raise RuntimeError(f"stale context for {event.name} on fd {fd}")
            event_ctx.scheduler = Scheduler.current() or self
            if callback is not None:
                event_ctx.callback = callback
            else:
                event_ctx.fiber = fiber

    def _remove(self, fd: int, event: Event) -> Optional[_FdContext]:
        """Stop watching ``event``; return the context (still locked) or ``None``."""
        ctx = self._find_context(fd)
        if ctx is None:
            return None
        ctx.lock.acquire()
        if not ctx.events & event:
            ctx.lock.release()
            return None
        new_events = Event(ctx.events & ~event)
        try:
            self._apply(ctx, ctx.events, new_events)
        except (OSError, ValueError, KeyError) as exc:
            _log.emit(
                LogLevel.ERROR,
                f"unwatch fd={fd} events={format_epoll_events(new_events)} failed: {exc}",
            )
            ctx.lock.release()
            return None
        return ctx

    def del_event(self, fd: int, event: Event) -> bool:
        """Drop a registered event without running it; return whether one was dropped."""
        event = _check_event(event)
        ctx = self._remove(fd, event)
        if ctx is None:
            return False
        try:
            self._add_pending(-1)
            ctx.events = Event(ctx.events & ~event)
            ctx.event_context(event).reset()
        finally:
            ctx.lock.release()
        return True

    def cancel_event(self, fd: int, event: Event) -> bool:
        """Drop a registered event, running its callback once; return whether it existed."""
        event = _check_event(event)
        ctx = self._remove(fd, event)
        if ctx is None:
            return False
        try:
            ctx.trigger(event)
            self._add_pending(-1)
        finally:
            ctx.lock.release()
        return True

    def cancel_all(self, fd: int) -> bool:
        """Drop every event on ``fd``, running each callback once."""
        ctx = self._find_context(fd)
        if ctx is None:
            return False
        with ctx.lock:
            if not ctx.events:
                return False
            try:
                self._selector.unregister(fd)
            except (OSError, ValueError, KeyError) as exc:
                _log.emit(LogLevel.ERROR, f"unwatch fd={fd} failed: {exc}")
                return False
            for event in (Event.READ, Event.WRITE):
                if ctx.events & event:
                    ctx.trigger(event)
                    self._add_pending(-1)
            if ctx.events:
                raise RuntimeError(f"events left on fd {fd} after cancel_all")
        return True

    def tickle(self) -> None:
        """Wake a thread waiting for I/O so it looks at the task queue."""
        _log.emit(LogLevel.DEBUG, "tickle")
        if not self.has_idle_threads():
            return
        try:
            os.write(self._tickle_w, b"T")
        except BlockingIOError:
            pass  # the pipe is full, so a wake-up is already pending

    def stopping(self) -> bool:
        """Whether the scheduler may stop and no registered event is left."""
        return self.pending_event_count == 0 and super().stopping()

    def _drain_tickle(self) -> None:
        while True:
            try:
                if not os.read(self._tickle_r, 256):
                    return
            except BlockingIOError:
                return

    def idle(self) -> None:
        """Wait for I/O or a wake-up, then queue the work of the events that fired."""
        _log.emit(LogLevel.DEBUG, "idle")
        if self.stopping():
            return
        ready = self._selector.select(MAX_TIMEOUT_MS / 1000)
        for key, mask in ready:
            if key.fd == self._tickle_r:
                # While stopping, leave the pipe readable so every waiting thread wakes.
                if not self.stopping():
                    self._drain_tickle()
                continue
            self._handle_ready(key.data, mask)

    def _handle_ready(self, ctx: _FdContext, mask: int) -> None:
        with ctx.lock:
            real = Event.NONE
            if mask & selectors.EVENT_READ:
                real |= Event.READ
            if mask & selectors.EVENT_WRITE:
                real |= Event.WRITE
            real = Event(real & ctx.events)
            if not real:
                return
            left = Event(ctx.events & ~real)
            try:
                self._apply(ctx, ctx.events, left)
            except (OSError, ValueError, KeyError) as exc:
                _log.emit(
                    LogLevel.ERROR,
                    f"rewatch fd={ctx.fd} events={format_epoll_events(left)} failed: {exc}",
                )
                return
            for event in (Event.READ, Event.WRITE):
                if real & event:
                    ctx.trigger(event)
                    self._add_pending(-1)

    def close(self) -> None:
        """Stop the scheduler and release the selector and the wake-up pipe."""
        if self._closed:
            return
        self.stop()
        self._closed = True
        self._selector.close()
        os.close(self._tickle_r)
        os.close(self._tickle_w)

    def __enter__(self) -> IOManager:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()