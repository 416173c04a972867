# coroserve

Building blocks for small network servers.

- **`coroserve.sync`** provides three locks. `Semaphore` is a counting semaphore with `wait`
  and `notify`. `RWLock` is a reader/writer lock, with the context managers
  `read_locked()` and `write_locked()`. `NullLock` never blocks.
- **`coroserve.formatter`** provides log levels (`LogLevel`), log events (`LogEvent`) and
  pattern-based formatting (`LogFormatter`).
- **`coroserve.logger`** provides loggers, the stdout and file appenders, and a
  `LoggerManager`. It also reads logger configuration from YAML with
  `parse_log_define`, `dump_log_define` and `apply_log_defines`.
- **`coroserve.scheduler`** provides a `Scheduler`. It runs callbacks and generator
  "fibers" on a pool of threads.
- **`coroserve.iomanager`** provides an `IOManager`. This is a scheduler that runs a
  callback, or resumes a fiber, when a file descriptor becomes readable or writable.
  It is built on `selectors` and a wake-up pipe, and needs a POSIX system.
- **`coroserve.servlet`** provides `ServletDispatch`, which routes request paths to
  servlets by exact match or glob. Unmatched paths go to a default `NotFoundServlet`,
  which answers 404.

## Installation

```
pip install coroserve
```

The package needs Python 3.10 or later, and PyYAML.

## Logging

```python
from coroserve.formatter import LogLevel, LogFormatter
from coroserve.logger import LoggerManager, StdoutLogAppender

manager = LoggerManager()
log = manager.get_logger("app")
appender = StdoutLogAppender()
appender.formatter = LogFormatter("%d{%H:%M:%S} [%p] %c %m%n")
log.add_appender(appender)

log.emit(LogLevel.INFO, "server started")
print(manager.to_yaml())
```

The pattern items are:

| Item | Meaning |
|------|---------|
| `%m` | message |
| `%p` | level |
| `%c` | logger name |
| `%d{fmt}` | date and time, in `strftime` format |
| `%r` | milliseconds since the logger was created |
| `%f` | file name |
| `%l` | line number |
| `%t` | thread id |
| `%F` | fiber id |
| `%N` | thread name |
| `%T` | tab |
| `%n` | newline |
| `%%` | literal percent sign |

A pattern that is malformed or uses an unknown item raises `ValueError`.

A logger writes an event only if the event's level is at or below the logger's
level. `FATAL` (0) is the most severe level and `DEBUG` (700) the least severe.

`FileLogAppender(path)` appends to a file. If an event comes three seconds or more
after the previous reopen, the appender reopens the file first.

### Configuration from YAML

```python
from coroserve.logger import parse_log_define, apply_log_defines, LoggerManager

define = parse_log_define("""
name: app
level: debug
appenders:
  - type: StdoutLogAppender
    pattern: "%p %m%n"
""")
manager = LoggerManager()
apply_log_defines(manager, [], [define])
```

`apply_log_defines` treats definitions in three ways:

- New or changed definitions replace the logger's level and appenders.
- Loggers that no longer have a definition are set to `NOTSET` and lose their appenders.
- With `daemon=True`, stdout appenders are left out.

## Scheduling tasks

```python
from coroserve.scheduler import Scheduler

sched = Scheduler(threads=2, use_caller=False, name="workers")
sched.start()
sched.schedule(lambda: print("hello from a worker"))
sched.stop()  # returns once every queued task has run
```

A task can be a callable or a generator.

- Scheduling a generator resumes it up to its next `yield`.
- Inside a running generator, `coroserve.scheduler.current_fiber()` returns it.
- A task can be pinned to one thread by passing that thread's native id as `thread`.

With `use_caller=True` the creating thread counts as one of the scheduler's threads.
That thread runs queued work when it calls `stop()`.

## Waiting for I/O

```python
import os
from coroserve.iomanager import IOManager, Event

r, w = os.pipe()
with IOManager(threads=1, use_caller=False) as iom:
    iom.add_event(r, Event.READ, lambda: print("readable:", os.read(r, 16)))
    os.write(w, b"ping")
```

Events are one-shot. When an event fires, its callback is queued on the scheduler,
and the registration is dropped.

- `del_event` drops a registration without running it.
- `cancel_event` and `cancel_all` drop a registration and run its callback once.
- `add_event` with no callback must be called from inside a fiber. It resumes that
  fiber when the descriptor is ready.

## Routing requests

```python
from coroserve.servlet import ServletDispatch, FunctionServlet

dispatch = ServletDispatch()
dispatch.add_servlet("/ping", FunctionServlet(lambda req, rsp, sess: 0))
dispatch.add_glob_servlet("/static/*", lambda req, rsp, sess: 0)

servlet = dispatch.get_matched_servlet("/static/app.js")
```

`get_matched_servlet` looks for a servlet in this order:

1. the exact routes;
2. the glob routes, in the order they were added;
3. the default `NotFoundServlet`.

`ClassServletCreator(factory)` builds a new servlet for every lookup.

## What is not included

The package has no HTTP parser, sockets, HTTP server, HTTP client or timers.

Servlets work with any request object that has a `path` attribute. The response
object needs:

- writable `status` and `body` attributes;
- a `headers` mapping.

The code that reads requests and writes responses must come from elsewhere.

## Running the tests

```
pip install "coroserve[test]"
pytest
```