"""Leveled logging used by the replicated log."""

from __future__ import annotations

import sys
import threading
import time
from typing import Optional, Protocol, TextIO, runtime_checkable


class RaftPanic(RuntimeError):
    """Raised when the log detects a broken invariant."""


@runtime_checkable
class Logger(Protocol):
    """The interface every logger handed to the log must provide."""

    def debug(self, msg: str, *args: object) -> None: ...

    def info(self, msg: str, *args: object) -> None: ...

    def warning(self, msg: str, *args: object) -> None: ...

    def error(self, msg: str, *args: object) -> None: ...

    def fatal(self, msg: str, *args: object) -> None: ...

    def panic(self, msg: str, *args: object) -> None: ...


def _render(msg: str, args: tuple) -> str:
    return msg % args if args else str(msg)


def _header(level: str, msg: str) -> str:
    return f"{level}: {msg}"


class _DiscardStream:
    def write(self, text: str) -> int:
        return len(text)

    def flush(self) -> None:
        pass


class DefaultLogger:
    """Writes leveled lines to a text stream (standard error by default)."""

    def __init__(self, stream: Optional[TextIO] = None, prefix: str = "") -> None:
        self._stream = stream
        self.prefix = prefix
        self._timestamps = False
        self._debug = False
        self._lock = threading.Lock()

    def enable_timestamps(self) -> None:
        """Prefix every line with the local date and time."""
        self._timestamps = True

    def enable_debug(self) -> None:
        """Let debug messages through."""
        self._debug = True

    def _output(self, text: str) -> None:
        parts = [self.prefix]
        if self._timestamps:
            parts.append(time.strftime("%Y/%m/%d %H:%M:%S "))
        parts.append(text)
        if not text.endswith("\n"):
            parts.append("\n")
        stream = self._stream if self._stream is not None else sys.stderr
        with self._lock:
            stream.write("".join(parts))

    def debug(self, msg: str, *args: object) -> None:
        if self._debug:
            self._output(_header("DEBUG", _render(msg, args)))

    def info(self, msg: str, *args: object) -> None:
        self._output(_header("INFO", _render(msg, args)))

    def warning(self, msg: str, *args: object) -> None:
        self._output(_header("WARN", _render(msg, args)))

    def error(self, msg: str, *args: object) -> None:
        self._output(_header("ERROR", _render(msg, args)))

    def fatal(self, msg: str, *args: object) -> None:
        """Log the message and exit the process with status 1."""
        self._output(_header("FATAL", _render(msg, args)))
        raise SystemExit(1)

    def panic(self, msg: str, *args: object) -> None:
        """Log the message and raise RaftPanic carrying it."""
        text = _render(msg, args)
        self._output(text)
        raise RaftPanic(text)


_default_logger = DefaultLogger(None, "raft")
_default_logger.enable_timestamps()
_discard_logger = DefaultLogger(_DiscardStream(), "")

_logger_lock = threading.Lock()
_current_logger: Logger = _default_logger


def set_logger(logger: Logger) -> None:
    """Install the logger used by newly created logs."""
    global _current_logger
    with _logger_lock:
        _current_logger = logger


def reset_default_logger() -> None:
    """Restore the standard-error logger."""
    set_logger(_default_logger)


def get_logger() -> Logger:
    """Return the currently installed logger."""
    with _logger_lock:
        return _current_logger


def discard_logger() -> DefaultLogger:
    """Return a logger that drops all output but still raises on panic."""
    return _discard_logger