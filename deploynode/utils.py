"""Shared utility functions."""

import logging
import sys
from typing import Callable

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("deploynode")


class LineStream:
    """File-like stream that hands output to a callback line by line.

    Use as out_stream/err_stream in fabric c.run() calls so remote output is
    seen as whole lines instead of arbitrary chunks.
    """

    def __init__(self, on_line: Callable[[str], None]) -> None:
        self._on_line = on_line
        self._buf = ""
        self.lines: list[str] = []

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            self._emit(line.rstrip("\r"))

    def flush(self) -> None:
        if self._buf:
            line, self._buf = self._buf, ""
            self._emit(line.rstrip("\r"))

    def _emit(self, line: str) -> None:
        if line.strip():
            self.lines.append(line)
            self._on_line(line)


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=False,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl in [
        ("boto3", logging.INFO),
        ("botocore", logging.WARNING),
        ("urllib3", logging.WARNING),
        ("httpx", logging.WARNING),
        ("httpcore", logging.WARNING),
        ("paramiko", logging.WARNING),
        ("fabric", logging.WARNING),
        ("invoke", logging.WARNING),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = True


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def debug(msg: str) -> None:
    logger.debug(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def mask_secret(text: str, *secrets: str | None) -> str:
    """Replace every occurrence of each non-empty secret with ``***``."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text
