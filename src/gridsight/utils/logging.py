"""Logging configuration for GridSight.

Provides centralized logging setup with Rich console formatting, optional
file logging, and a redacting filter that keeps API keys out of log output.

Security Rules:
- NEVER log API keys (ever, in any form)
- NEVER log prompts or model responses
- NEVER log image bytes; ids, counts, sizes and timings only

Example:
    >>> from gridsight.utils.logging import setup_logging, LogContext
    >>> setup_logging(level="DEBUG")
    >>> with LogContext("Building atlas"):
    ...     pass
    # Logs: "Building atlas completed in 0.42s"
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_NAME = "gridsight"

NOISY_LOGGERS = [
    "google",
    "google.auth",
    "google.api_core",
    "google.generativeai",
    "urllib3",
    "httpx",
    "httpcore",
    "PIL",
    "asyncio",
]

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_console = Console(stderr=True)


class RedactingFilter(logging.Filter):
    """Logging filter that redacts sensitive information.

    Scans log messages for patterns that look like API keys or tokens and
    replaces them with [REDACTED].

    Example:
        >>> logger.addFilter(RedactingFilter())
        >>> logger.info("Using api_key=AIzaSy123456789...")
        # Output: "Using api_key=[REDACTED]"
    """

    KEY_VALUE_PATTERNS = [
        re.compile(r'(api_key\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        re.compile(r'(key\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        re.compile(r'(token\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        re.compile(r"(bearer\s+)([a-zA-Z0-9_\-]{20,})", re.IGNORECASE),
    ]
    STANDALONE_PATTERNS = [
        # Gemini keys start with AIza
        re.compile(r"\bAIza[a-zA-Z0-9_\-]{30,}\b"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        # Format first so a key split across msg and args is still caught.
        if record.args:
            record.msg = self.redact(record.getMessage())
            record.args = None
        elif isinstance(record.msg, str):
            record.msg = self.redact(record.msg)
        return True

    @classmethod
    def redact(cls, text: str) -> str:
        """Replace key-like substrings in ``text`` with [REDACTED]."""
        for pattern in cls.KEY_VALUE_PATTERNS:
            text = pattern.sub(r"\1[REDACTED]", text)
        for pattern in cls.STANDALONE_PATTERNS:
            text = pattern.sub("[REDACTED]", text)
        return text


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Configure logging for the gridsight package.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path to log file.
        quiet_third_party: If True, suppress noisy third-party loggers.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger(PACKAGE_NAME)
    root_logger.setLevel(numeric_level)
    root_logger.handlers = []

    console_handler = RichHandler(
        console=_console,
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_show_locals=numeric_level == logging.DEBUG,
        markup=False,
    )
    console_handler.setLevel(numeric_level)
    console_handler.addFilter(RedactingFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
        file_handler.addFilter(RedactingFilter())
        root_logger.addHandler(file_handler)

    if quiet_third_party:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    root_logger.propagate = False
    root_logger.debug(f"Logging configured: level={level}, file={log_file}")


class LogContext:
    """Context manager for timing and logging a named stage.

    Attributes:
        message: Description of the operation.
        elapsed: Elapsed time in seconds (after exit).
    """

    def __init__(
        self,
        message: str,
        level: int = logging.DEBUG,
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
        if exc_type is None:
            self.logger.log(self.level, f"{self.message} completed in {self.elapsed:.2f}s")
        else:
            self.logger.warning(
                f"{self.message} failed after {self.elapsed:.2f}s: {exc_type.__name__}"
            )
