"""Adapters that route the consensus library's logging into standard loggers."""

from __future__ import annotations

import enum
import logging
import sys
from typing import Any, TextIO


class LogLevel(enum.IntEnum):
    """Levels used by the consensus library's logger."""

    NO_LEVEL = 0
    TRACE = 1
    DEBUG = 2
    INFO = 3
    WARN = 4
    ERROR = 5
    OFF = 6


_LEVEL_MAP = {
    LogLevel.TRACE: logging.DEBUG,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def _render(msg: str, args: tuple[Any, ...]) -> str:
    """Append key-value pairs from ``args`` to ``msg``."""
    parts = [msg]
    pairs = list(args)
    while pairs:
        if len(pairs) == 1:
            parts.append(f"!BADKEY={pairs.pop()}")
            break
        key, value = pairs.pop(0), pairs.pop(0)
        parts.append(f"{key}={value}")
    return " ".join(parts)


class LoggerWriter:
    """A writable stream that logs each write at INFO level."""

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def write(self, data: bytes | str) -> int:
        """Log ``data`` and return its length."""
        text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
        self.logger.info(text)
        return len(data)


class LoggerAdapter:
    """Presents a standard logger through the consensus library's logger interface."""

    def __init__(self, logger: logging.Logger, name: str) -> None:
        self.logger = logger
        self.name = name

    def log(self, level: LogLevel, msg: str, *args: Any) -> None:
        """Log ``msg`` with key-value ``args``; NO_LEVEL and OFF log nothing."""
        mapped = _LEVEL_MAP.get(LogLevel(level))
        if mapped is not None:
            self.logger.log(mapped, _render(msg, args))

    def trace(self, msg: str, *args: Any) -> None:
        self.log(LogLevel.TRACE, msg, *args)

    def debug(self, msg: str, *args: Any) -> None:
        self.log(LogLevel.DEBUG, msg, *args)

    def info(self, msg: str, *args: Any) -> None:
        self.log(LogLevel.INFO, msg, *args)

    def warn(self, msg: str, *args: Any) -> None:
        self.log(LogLevel.WARN, msg, *args)

    def error(self, msg: str, *args: Any) -> None:
        self.log(LogLevel.ERROR, msg, *args)

    @property
    def level(self) -> LogLevel:
        """Every level is passed on, so the effective level is DEBUG."""
        return LogLevel.DEBUG

    def implied_args(self) -> list[Any]:
        """No arguments are attached implicitly."""
        return []

    def with_args(self, *args: Any) -> LoggerAdapter:
        """An adapter over the same logger and name; extra arguments are not kept."""
        return LoggerAdapter(self.logger, self.name)

    def named(self, name: str) -> LoggerAdapter:
        """An adapter over the same logger under a new name."""
        return LoggerAdapter(self.logger, name)

    def reset_named(self, name: str) -> LoggerAdapter:
        """An adapter over the same logger under a new name."""
        return LoggerAdapter(self.logger, name)

    def standard_writer(self) -> TextIO:
        """The stream used for output outside the logger."""
        return sys.stderr