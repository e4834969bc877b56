"""
Logging Configuration Module
============================

Rich console logging on stderr (reports on stdout stay clean), an optional
log file, and run correlation: every record emitted while an audit runs
carries that run's id, so file logs can be joined with the run history.

Functions
---------
setup_logging
    Configure application-wide logging once at CLI start.
bind_run
    Context manager stamping records with the current run id.
quiet_third_party
    Lower the SDK loggers that are too chatty at INFO.

Example
-------
>>> from cloudsweep.core.logging import bind_run, setup_logging
>>>
>>> setup_logging(level="INFO", log_file="cloudsweep.log")
>>> with bind_run(run.run_id):
...     logger.info("Listing volumes")

Notes
-----
Worker threads of the listing and action pools don't inherit context
variables, so the bound run id is process-wide. One audit runs at a time
per process.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Union

from rich.console import Console
from rich.logging import RichHandler

CONSOLE_FORMAT = "%(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | run=%(run_id)s | %(threadName)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Placeholder when no run is bound
NO_RUN = "-"

# SDK loggers that are too chatty at INFO
NOISY_LOGGERS = (
    "boto3",
    "botocore",
    "urllib3",
    "google",
    "google.auth",
    "azure",
    "azure.core.pipeline.policies.http_logging_policy",
)

_run_lock = threading.Lock()
_run_id: str = NO_RUN


class RunIdFilter(logging.Filter):
    """Set ``record.run_id`` to the bound run id (never drops a record)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = _run_id
        return True


def current_run_id() -> str:
    """Return the bound run id, or ``"-"`` outside a run."""
    return _run_id


@contextmanager
def bind_run(run_id: str) -> Iterator[str]:
    """
    Bind ``run_id`` to every log record until the block exits.

    Nested bindings restore the outer id on exit.
    """
    global _run_id
    with _run_lock:
        previous, _run_id = _run_id, run_id
    try:
        yield run_id
    finally:
        with _run_lock:
            _run_id = previous


def parse_level(level: Union[str, int]) -> int:
    """
    Convert a level name to its numeric value.

    Unknown names fall back to INFO.
    """
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return level


def quiet_third_party(level: int = logging.WARNING) -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def setup_logging(
    level: Union[str, int] = "INFO",
    log_file: Optional[str] = None,
    rich_tracebacks: bool = True,
    console: Optional[Console] = None,
) -> None:
    """
    Configure application-wide logging.

    Parameters
    ----------
    level : str or int, default="INFO"
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    log_file : str, optional
        Also append records here, with timestamps, thread and run id.
    rich_tracebacks : bool, default=True
        Whether to use Rich for exception tracebacks.
    console : Console, optional
        Rich Console for log output. Defaults to a new stderr console.

    Notes
    -----
    Existing root handlers are replaced, so calling this twice does not
    duplicate output. SDK debug output needs ``level="DEBUG"``; even then
    the SDK loggers stay at WARNING unless raised explicitly.
    """
    level = parse_level(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=True,
        show_path=False,
        rich_tracebacks=rich_tracebacks,
        tracebacks_show_locals=False,
        markup=False,
    )
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.addFilter(RunIdFilter())
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    quiet_third_party()

    root_logger.debug(
        "Logging configured: level=%s, file=%s",
        logging.getLevelName(level),
        log_file or "None",
    )
