"""Loggers, log appenders, the logger registry and YAML log configuration."""

from __future__ import annotations

import sys
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Iterable, TextIO

import yaml

from coroserve.formatter import LogEvent, LogFormatter, LogLevel, level_to_string

REOPEN_INTERVAL_SECONDS = 3


def _dump(node: Any) -> str:
    return yaml.safe_dump(node, sort_keys=False, default_flow_style=False)


def _elapsed_ms() -> int:
    return int(time.monotonic() * 1000)


class LogAppender:
    """Destination for log events, with its own optional formatter."""

    def __init__(self, default_formatter: LogFormatter) -> None:
        self._lock = threading.Lock()
        self._formatter: LogFormatter | None = None
        self.default_formatter = default_formatter

    @property
    def formatter(self) -> LogFormatter:
        """The formatter set on the appender, or the default one."""
        with self._lock:
            return self._formatter or self.default_formatter

    @formatter.setter
    def formatter(self, value: LogFormatter | None) -> None:
        with self._lock:
            self._formatter = value

    def log(self, event: LogEvent) -> None:
        raise NotImplementedError

    def to_yaml(self) -> str:
        raise NotImplementedError


class StdoutLogAppender(LogAppender):
    """Appender writing to a text stream, standard output unless given one."""

    def __init__(self, stream: TextIO | None = None) -> None:
        super().__init__(LogFormatter())
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def log(self, event: LogEvent) -> None:
        formatter = self.formatter
        with self._lock:
            formatter.write(self.stream, event)

    def to_yaml(self) -> str:
        return _dump({"type": "StdoutLogAppender", "pattern": self.formatter.pattern})


class FileLogAppender(LogAppender):
    """Appender writing to a file, reopened when events are a few seconds apart."""

    def __init__(self, path: str) -> None:
        super().__init__(LogFormatter())
        self.path = str(path)
        self._file: TextIO | None = None
        self._last_time = 0
        self.reopen_error = False
        if not self.reopen():
            print(f"reopen file {self.path} error")

    def log(self, event: LogEvent) -> None:
        now = event.time
        if now >= self._last_time + REOPEN_INTERVAL_SECONDS:
            if not self.reopen():
                print(f"reopen file {self.path} error")
            self._last_time = now
        if self.reopen_error:
            return
        formatter = self.formatter
        with self._lock:
            if self._file is None:
                return
            formatter.write(self._file, event)
            self._file.flush()

    def reopen(self) -> bool:
        """Close and reopen the file for appending; return whether it opened."""
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
            try:
                self._file = open(self.path, "a", encoding="utf-8")
            except OSError:
                self.reopen_error = True
            else:
                self.reopen_error = False
            return not self.reopen_error

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def to_yaml(self) -> str:
        return _dump(
            {"type": "FileLogAppender", "file": self.path, "pattern": self.formatter.pattern}
        )


class Logger:
    """Named logger that passes events at or above its level to its appenders."""

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self.level = LogLevel.INFO
        self.create_time = _elapsed_ms()
        self._lock = threading.Lock()
        self._appenders: list[LogAppender] = []

    @property
    def appenders(self) -> tuple[LogAppender, ...]:
        with self._lock:
            return tuple(self._appenders)

    def add_appender(self, appender: LogAppender) -> None:
        with self._lock:
            self._appenders.append(appender)

    def remove_appender(self, appender: LogAppender) -> None:
        with self._lock:
            for position, existing in enumerate(self._appenders):
                if existing is appender:
                    del self._appenders[position]
                    break

    def clear_appenders(self) -> None:
        with self._lock:
            self._appenders.clear()

    def log(self, event: LogEvent) -> None:
        """Write the event to every appender if its level passes."""
        if event.level <= self.level:
            for appender in self.appenders:
                appender.log(event)

    def emit(self, level: LogLevel, message: object) -> LogEvent | None:
        """Build an event for the caller's location and log it.

        Returns the event, or ``None`` when the level is filtered out.
        """
        if level > self.level:
            return None
        caller = sys._getframe(1)
        current = threading.current_thread()
        event = LogEvent(
            logger_name=self.name,
            level=LogLevel(level),
            file=caller.f_code.co_filename,
            line=caller.f_lineno,
            elapse=_elapsed_ms() - self.create_time,
            thread_id=threading.get_native_id(),
            fiber_id=0,
            time=int(time.time()),
            thread_name=current.name,
        )
        event.write(message)
        self.log(event)
        return event

    def to_yaml(self) -> str:
        node: dict[str, Any] = {"name": self.name, "level": level_to_string(self.level)}
        appenders = [yaml.safe_load(a.to_yaml()) for a in self.appenders]
        if appenders:
            node["appenders"] = appenders
        return _dump(node)


class LoggerManager:
    """Registry of loggers by name, with a root logger that writes to stdout."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.root = Logger("root")
        self.root.add_appender(StdoutLogAppender())
        self._loggers: dict[str, Logger] = {self.root.name: self.root}

    def get_logger(self, name: str) -> Logger:
        """Return the named logger, creating one without appenders if needed."""
        with self._lock:
            logger = self._loggers.get(name)
            if logger is None:
                logger = Logger(name)
                self._loggers[name] = logger
            return logger

    def to_yaml(self) -> str:
        with self._lock:
            loggers = sorted(self._loggers.items())
        return _dump([yaml.safe_load(logger.to_yaml()) for _, logger in loggers])


class AppenderType(IntEnum):
    FILE = 1
    STDOUT = 2


@dataclass(frozen=True)
class LogAppenderDefine:
    """Configuration of one appender."""

    type: AppenderType
    pattern: str = ""
    file: str = ""


@dataclass(frozen=True)
class LogDefine:
    """Configuration of one logger."""

    name: str
    level: LogLevel = LogLevel.NOTSET
    appenders: tuple[LogAppenderDefine, ...] = field(default_factory=tuple)


def _parse_appender(node: Any) -> LogAppenderDefine | None:
    if not isinstance(node, dict) or node.get("type") is None:
        return None
    kind = str(node["type"])
    pattern = str(node["pattern"]) if node.get("pattern") is not None else ""
    if kind == "FileLogAppender":
        if node.get("file") is None:
            return None
        return LogAppenderDefine(AppenderType.FILE, pattern, str(node["file"]))
    if kind == "StdoutLogAppender":
        return LogAppenderDefine(AppenderType.STDOUT, pattern)
    return None


def parse_log_define(text: str) -> LogDefine:
    """Read a logger definition from YAML; invalid appenders are skipped."""
    node = yaml.safe_load(text)
    if not isinstance(node, dict) or node.get("name") is None:
        raise ValueError("log config name is null")
    level_text = str(node["level"]) if node.get("level") is not None else ""
    appenders = []
    for entry in node.get("appenders") or []:
        appender = _parse_appender(entry)
        if appender is not None:
            appenders.append(appender)
    return LogDefine(str(node["name"]), LogLevel.from_string(level_text), tuple(appenders))


def dump_log_define(define: LogDefine) -> str:
    """Write a logger definition as YAML."""
    node: dict[str, Any] = {"name": define.name, "level": level_to_string(define.level)}
    appenders = []
    for appender in define.appenders:
        entry: dict[str, Any] = {}
        if appender.type is AppenderType.FILE:
            entry["type"] = "FileLogAppender"
            entry["file"] = appender.file
        elif appender.type is AppenderType.STDOUT:
            entry["type"] = "StdoutLogAppender"
        if appender.pattern:
            entry["pattern"] = appender.pattern
        appenders.append(entry)
    if appenders:
        node["appenders"] = appenders
    return _dump(node)


def _build_appender(define: LogAppenderDefine, daemon: bool) -> LogAppender | None:
    appender: LogAppender
    if define.type is AppenderType.FILE:
        appender = FileLogAppender(define.file)
    elif define.type is AppenderType.STDOUT:
        if daemon:
            return None
        appender = StdoutLogAppender()
    else:
        return None
    appender.formatter = LogFormatter(define.pattern) if define.pattern else LogFormatter()
    return appender


def apply_log_defines(
    manager: LoggerManager,
    old_defines: Iterable[LogDefine],
    new_defines: Iterable[LogDefine],
    daemon: bool = False,
) -> None:
    """Reconfigure loggers after the log configuration changed.

    New or changed definitions are applied; loggers whose definition
    disappeared are switched off.  Stdout appenders are left out in daemon mode.
    """
    manager.root.emit(LogLevel.INFO, "on log config changed")
    old = {define.name: define for define in old_defines}
    new = {define.name: define for define in new_defines}
    for name, define in new.items():
        if old.get(name) == define:
            continue
        logger = manager.get_logger(name)
        logger.level = define.level
        logger.clear_appenders()
        for appender_define in define.appenders:
            appender = _build_appender(appender_define, daemon)
            if appender is not None:
                logger.add_appender(appender)
    for name in old:
        if name not in new:
            logger = manager.get_logger(name)
            logger.level = LogLevel.NOTSET
            logger.clear_appenders()