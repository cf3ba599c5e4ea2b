"""ANSI color helpers and the stderr log formatter used by the CLI."""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_RESET = "\x1b[0m"
_CODES = {
    "dim": "\x1b[2m",
    "red": "\x1b[31m",
    "green": "\x1b[32m",
    "yellow": "\x1b[33m",
    "cyan": "\x1b[36m",
}


def colors_enabled(stream: IO[str] | None = None) -> bool:
    """Colors are on for TTYs unless ``NO_COLOR`` is set."""
    if os.environ.get("NO_COLOR"):
        return False
    stream = stream if stream is not None else sys.stdout
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def _paint(code: str, text: str, enabled: bool | None) -> str:
    if enabled is None:
        enabled = colors_enabled()
    if not enabled:
        return text
    return f"{_CODES[code]}{text}{_RESET}"


def dim(text: str, enabled: bool | None = None) -> str:
    return _paint("dim", text, enabled)


def red(text: str, enabled: bool | None = None) -> str:
    return _paint("red", text, enabled)


def green(text: str, enabled: bool | None = None) -> str:
    return _paint("green", text, enabled)


def yellow(text: str, enabled: bool | None = None) -> str:
    return _paint("yellow", text, enabled)


def cyan(text: str, enabled: bool | None = None) -> str:
    return _paint("cyan", text, enabled)


class ColorFormatter(logging.Formatter):
    """Colors the level name and dims debug records.

    ``WARNING`` and above are red, ``INFO`` green, ``DEBUG`` dim.
    """

    def __init__(self, use_color: bool = True) -> None:
        super().__init__("%(levelname)s %(message)s")
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            message = f"{message}\n{record.exc_text}"

        level = record.levelname.lower()
        if record.levelno >= logging.WARNING:
            level = red(level, self._use_color)
        elif record.levelno >= logging.INFO:
            level = green(level, self._use_color)
        else:
            return dim(f"{level} {message}", self._use_color)
        return f"{level} {message}"


def configure_logging(verbose: bool = False, stream: IO[str] | None = None) -> None:
    """Attach a colorizing stderr handler to the ``mcp_guard`` logger."""
    stream = stream if stream is not None else sys.stderr
    handler = logging.StreamHandler(stream)
    handler.setFormatter(ColorFormatter(use_color=colors_enabled(stream)))

    root = logging.getLogger("mcp_guard")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False
