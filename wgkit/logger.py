"""Printf-style loggers for devices."""

from __future__ import annotations

import logging
import sys
import threading
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Optional, TextIO


class LogLevel(IntEnum):
    SILENT = 0
    ERROR = 1
    VERBOSE = 2


def _render(format_: str, args: tuple) -> str:
    return format_ % args if args else format_


def discard_logf(format_: str, *args: Any) -> str:
    """Render a log line and write it nowhere; the text is returned."""
    return _render(format_, args)


@dataclass
class Logger:
    verbosef: Callable[..., Any] = discard_logf
    errorf: Callable[..., Any] = discard_logf


def new_logger(level: int, prepend: str, stream: Optional[TextIO] = None) -> Logger:
    """A logger writing dated lines to stream (stdout by default) at level and above."""
    lock = threading.Lock()

    def make(prefix: str) -> Callable[..., None]:
        def logf(format_: str, *args: Any) -> None:
            out = stream if stream is not None else sys.stdout
            stamp = time.strftime("%Y/%m/%d %H:%M:%S")
            line = f"{prefix}: {prepend}{stamp} {_render(format_, args)}"
            if not line.endswith("\n"):
                line += "\n"
            with lock:
                out.write(line)

        return logf

    logger = Logger()
    if level >= LogLevel.VERBOSE:
        logger.verbosef = make("DEBUG")
    if level >= LogLevel.ERROR:
        logger.errorf = make("ERROR")
    return logger


def logger_from_logging(log: logging.Logger) -> Logger:
    """A logger forwarding to a standard library logger."""
    return Logger(
        verbosef=lambda format_, *args: log.debug(_render(format_, args)),
        errorf=lambda format_, *args: log.error(_render(format_, args)),
    )