"""Logging setup for Memoir AI.

Console output goes through Rich; an optional plain-text file handler keeps a
persistent log. Story text, prompts and model responses are never logged by
the package, only sizes, timings and error class names.

Example:
    >>> from memoirai.utils.logging import setup_logging, LogContext
    >>> setup_logging(level="DEBUG")
    >>> with LogContext("Analyzing story"):
    ...     pass
    # Logs: "Analyzing story completed in 0.01s"
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_NAME = "memoirai"

NOISY_LOGGERS = [
    "google",
    "google.auth",
    "google.api_core",
    "google.generativeai",
    "grpc",
    "urllib3",
    "httpx",
    "httpcore",
    "asyncio",
]

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_console = Console(stderr=True)


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Configure the ``memoirai`` logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional log file; its directory is created if needed.
        quiet_third_party: Raise noisy SDK loggers to WARNING.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    package_logger = logging.getLogger(PACKAGE_NAME)
    package_logger.setLevel(numeric_level)
    package_logger.handlers = []

    console_handler = RichHandler(
        console=_console,
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_show_locals=numeric_level == logging.DEBUG,
        markup=False,
    )
    console_handler.setLevel(numeric_level)
    package_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
        package_logger.addHandler(file_handler)

    if quiet_third_party:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    package_logger.propagate = False
    package_logger.debug(f"Logging configured: level={level}, file={log_file}")


class LogContext:
    """Times a block and logs its start and completion.

    Attributes:
        message: Description of the operation.
        elapsed: Seconds spent in the block, set on exit.

    Example:
        >>> with LogContext("Calling assistant") as ctx:
        ...     pass
        >>> ctx.elapsed >= 0
        True
    """

    def __init__(
        self,
        message: str,
        level: int = logging.INFO,
        logger: logging.Logger | None = None,
    ) -> None:
        self.message = message
        self.level = level
        self.logger = logger or logging.getLogger(PACKAGE_NAME)
        self.elapsed: float = 0.0
        self._start_time: float = 0.0

    def __enter__(self) -> "LogContext":
        self._start_time = time.perf_counter()
        self.logger.log(self.level, f"{self.message}...")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.elapsed = time.perf_counter() - self._start_time
        if exc_type is not None:
            self.logger.error(
                f"{self.message} failed after {self.elapsed:.2f}s: {exc_type.__name__}"
            )
        else:
            self.logger.log(self.level, f"{self.message} completed in {self.elapsed:.2f}s")
