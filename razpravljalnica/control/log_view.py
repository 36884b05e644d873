"""A logging handler that writes colour-marked lines to a text view in batches."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

_LEVEL_LABELS = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
}

_LEVEL_COLORS = {
    logging.DEBUG: "gray",
    logging.INFO: "green",
    logging.WARNING: "yellow",
    logging.ERROR: "red",
}

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def level_label(levelno: int) -> str:
    """Short name of a log level."""
    return _LEVEL_LABELS.get(levelno, logging.getLevelName(levelno))


def level_color(levelno: int) -> str:
    """Display colour of a log level."""
    return _LEVEL_COLORS.get(levelno, "white")


class MarkupLogHandler(logging.Handler):
    """Buffers formatted lines and hands them to ``sink`` periodically.

    The buffer is flushed every ``flush_interval`` seconds, and at once
    when it grows to ``max_buffer_len`` characters. Extra attributes of a
    record are shown as ``key=value`` pairs after the message.
    """

    def __init__(
        self,
        sink: Callable[[str], None],
        flush_interval: float | None = 0.1,
        max_buffer_len: int = 8192,
    ) -> None:
        super().__init__()
        self.sink = sink
        self.flush_interval = flush_interval
        self.max_buffer_len = max_buffer_len
        self._buffer: list[str] = []
        self._size = 0
        self._buffer_lock = threading.Lock()
        self._stop = threading.Event()
        self._closed = False
        self._thread: threading.Thread | None = None
        if flush_interval is not None and flush_interval > 0:
            self._thread = threading.Thread(
                target=self._periodic_flush, name="log-view-flush", daemon=True
            )
            self._thread.start()

    def format_line(self, record: logging.LogRecord) -> str:
        """One marked-up line for ``record``, without the newline."""
        timestamp = time.strftime("%H:%M:%S", time.localtime(record.created))
        line = (
            f"[darkgray]{timestamp}[-] [{level_color(record.levelno)}] "
            f"{level_label(record.levelno)} [-] {record.getMessage()}"
        )
        attrs = [(k, v) for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS]
        if attrs:
            line += " [darkgray]|[-] " + ", ".join(f"[cyan]{k}[-]={v}" for k, v in attrs)
        return line

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format_line(record) + "\n"
        except Exception:
            self.handleError(record)
            return
        with self._buffer_lock:
            self._buffer.append(line)
            self._size += len(line)
            should_flush = self._size >= self.max_buffer_len
        if should_flush:
            self.flush()

    def flush(self) -> None:
        """Hand the buffered text to the sink."""
        with self._buffer_lock:
            if not self._buffer:
                return
            content = "".join(self._buffer)
            self._buffer.clear()
            self._size = 0
        self.sink(content)

    def _periodic_flush(self) -> None:
        while not self._stop.wait(self.flush_interval):
            self.flush()

    def close(self) -> None:
        """Stop the periodic flusher and flush what remains."""
        if not self._closed:
            self._closed = True
            self._stop.set()
            if self._thread is not None:
                self._thread.join()
                self._thread = None
            self.flush()
        super().close()