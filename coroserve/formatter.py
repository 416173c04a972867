"""Log levels, log events and the pattern-driven log formatter."""

from __future__ import annotations

import io
import time as _time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, TextIO

DEFAULT_PATTERN = "%d{%Y-%m-%d %H:%M:%S} [%rms]%T%t%T%N%T%F%T[%p]%T[%c]%T%f:%l%T%m%n"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class LogLevel(IntEnum):
    """Severity of a log event; a smaller value is more severe."""

    FATAL = 0
    ALERT = 100
    CRIT = 200
    ERROR = 300
    WARN = 400
    NOTICE = 500
    INFO = 600
    DEBUG = 700
    NOTSET = 800

    @classmethod
    def from_string(cls, text: str) -> LogLevel:
        """Parse an all-lower or all-upper level name; anything else is NOTSET."""
        for level in cls:
            if level is cls.NOTSET:
                continue
            if text == level.name or text == level.name.lower():
                return level
        return cls.NOTSET


def level_to_string(level: int) -> str:
    """Name of a level; unknown values and NOTSET give ``"NOTSET"``."""
    try:
        return LogLevel(level).name
    except ValueError:
        return "NOTSET"


@dataclass
class LogEvent:
    """A single log record whose message text is built up incrementally."""

    logger_name: str
    level: LogLevel
    file: str = ""
    line: int = 0
    elapse: int = 0
    thread_id: int = 0
    fiber_id: int = 0
    time: int = field(default_factory=lambda: int(_time.time()))
    thread_name: str = ""
    _parts: list[str] = field(default_factory=list, init=False, repr=False, compare=False)

    @property
    def content(self) -> str:
        """The message text written so far."""
        return "".join(self._parts)

    def write(self, text: object) -> LogEvent:
        """Append text to the message; returns the event for chaining."""
        self._parts.append(str(text))
        return self

    def printf(self, fmt: str, *args: object) -> LogEvent:
        """Append ``fmt % args`` to the message."""
        return self.write(fmt % args)


_Item = Callable[[LogEvent], str]

_SIMPLE_ITEMS: dict[str, _Item] = {
    "m": lambda e: e.content,
    "p": lambda e: level_to_string(e.level),
    "c": lambda e: e.logger_name,
    "r": lambda e: str(e.elapse),
    "f": lambda e: e.file,
    "l": lambda e: str(e.line),
    "t": lambda e: str(e.thread_id),
    "F": lambda e: str(e.fiber_id),
    "N": lambda e: e.thread_name,
    "%": lambda e: "%",
    "T": lambda e: "\t",
    "n": lambda e: "\n",
}


def _literal(text: str) -> _Item:
    return lambda event: text


def _date_item(date_format: str) -> _Item:
    fmt = date_format or DEFAULT_DATE_FORMAT

    def render(event: LogEvent) -> str:
        return _time.strftime(fmt, _time.localtime(event.time))

    return render


class LogFormatter:
    """Turns a log event into text according to a ``%``-item pattern.

    Items: ``%m`` message, ``%p`` level, ``%c`` logger name, ``%d{fmt}`` date
    (strftime format, optional), ``%r`` elapsed ms, ``%f`` file, ``%l`` line,
    ``%t`` thread id, ``%F`` fiber id, ``%N`` thread name, ``%%`` percent sign,
    ``%T`` tab, ``%n`` newline.  A malformed pattern raises ``ValueError``.
    """

    def __init__(self, pattern: str = DEFAULT_PATTERN) -> None:
        self.pattern = pattern
        self._items = self._parse(pattern)

    @staticmethod
    def _parse(pattern: str) -> list[_Item]:
        tokens: list[tuple[bool, str]] = []
        literal: list[str] = []
        date_format = ""
        in_literal = True
        i = 0
        size = len(pattern)
        while i < size:
            char = pattern[i]
            i += 1
            if in_literal:
                if char == "%":
                    if literal:
                        tokens.append((False, "".join(literal)))
                        literal.clear()
                    in_literal = False
                else:
                    literal.append(char)
                continue
            tokens.append((True, char))
            in_literal = True
            if char != "d" or i >= size or pattern[i] != "{":
                continue
            close = pattern.find("}", i + 1)
            if close < 0:
                raise ValueError(f"pattern [{pattern}]: '{{' not closed")
            date_format += pattern[i + 1 : close]
            i = close + 1
        if literal:
            tokens.append((False, "".join(literal)))

        items: list[_Item] = []
        for is_item, value in tokens:
            if not is_item:
                items.append(_literal(value))
            elif value == "d":
                items.append(_date_item(date_format))
            elif value in _SIMPLE_ITEMS:
                items.append(_SIMPLE_ITEMS[value])
            else:
                raise ValueError(f"pattern [{pattern}]: unknown format item: {value}")
        return items

    def format(self, event: LogEvent) -> str:
        """Render the event as a string."""
        return "".join(item(event) for item in self._items)

    def write(self, stream: TextIO, event: LogEvent) -> TextIO:
        """Render the event onto ``stream`` and return the stream."""
        for item in self._items:
            stream.write(item(event))
        return stream

    def __repr__(self) -> str:
        return f"LogFormatter({self.pattern!r})"


def format_to_string(formatter: LogFormatter, event: LogEvent) -> str:
    """Render through ``write`` into a fresh buffer; equivalent to ``format``."""
    return formatter.write(io.StringIO(), event).getvalue()