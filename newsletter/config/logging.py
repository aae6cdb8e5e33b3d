"""Logging configuration for the HTTP service and its test suite.

Logging is process-wide state, so setup runs at most once no matter how many callers (request
handlers, concurrently scheduled test cases) ask for it.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
from typing import TextIO

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_SILENT_LEVEL = logging.CRITICAL + 10

_init_lock = threading.Lock()
_initialized = False


def configure_logging(
        level: str | int | None = None,
        *,
        stream: TextIO | None = None,
) -> bool:
    """Configure Python logging for the process, exactly once.

    Returns:
        `True` if this call performed the setup, `False` if logging was already configured (in
        which case nothing is changed).
    """

    global _initialized

    with _init_lock:
        if _initialized:
            return False

        log_level = level if level is not None else (os.getenv("LOG_LEVEL") or "INFO")
        if isinstance(log_level, str):
            log_level = log_level.upper()

        logging.basicConfig(
            level=log_level,
            format=_LOG_FORMAT,
            stream=stream,
            force=True,
        )

        # Reduce noisy third-party logs by default.
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
        logging.getLogger("psycopg.pool").setLevel(logging.WARNING)

        _initialized = True
        return True


def configure_test_logging() -> bool:
    """Configure logging for test runs.

    Output is suppressed unless `TEST_LOG` is set, in which case everything down to DEBUG goes to
    stdout.
    """

    if os.getenv("TEST_LOG"):
        return configure_logging(logging.DEBUG, stream=sys.stdout)
    return configure_logging(_SILENT_LEVEL)
