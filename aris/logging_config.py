"""
ARIS Structured Logging Configuration
=====================================

Configures logging for the RAG services with support for:
- JSON structured output (for production / log aggregation)
- Human-readable output (for development)
- File rotation

Also hosts SuppressedErrorLog, the single sink for errors the RAG core
deliberately swallows (bookkeeping writes, degraded backend calls).

Usage:
    from aris.logging_config import setup_logging

    setup_logging(json_output=True, log_file="logs/rag.log")
"""

import json
import logging
import logging.handlers
import os
import sys
import threading
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Extra record attributes promoted to top-level JSON fields
EXTRA_FIELDS = (
    "organization_id",
    "user_id",
    "source_type",
    "source_id",
    "component",
    "duration_ms",
    "error_type",
)


class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    Output format:
        {"ts": "2025-...", "level": "INFO", "logger": "aris.rag", "msg": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry, default=str)


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
):
    """
    Configure application logging.

    Args:
        level: Root log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Use JSON structured format
        log_file: Optional file path for log output (with rotation)
        max_bytes: Max file size before rotation
        backup_count: Number of rotated files to keep
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    root.handlers.clear()

    if json_output:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)-8s] %(name)-30s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # Quiet noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

    root.info(
        "Logging configured: level=%s json=%s file=%s",
        level, json_output, log_file or "none",
    )


class SuppressedErrorLog:
    """
    Records errors that are intentionally not propagated.

    Every suppressed error is logged as a structured warning and counted
    per component, so a silently failing bookkeeping write still shows up
    in logs and can be asserted on in tests.
    """

    def __init__(self, logger_name: str = "aris.suppressed"):
        self._logger = logging.getLogger(logger_name)
        self._counts: Counter = Counter()
        self._lock = threading.Lock()

    def record(self, component: str, error: BaseException, **context: Any) -> None:
        """Log and count one suppressed error for a component."""
        with self._lock:
            self._counts[component] += 1

        extra: Dict[str, Any] = {
            "component": component,
            "error_type": type(error).__name__,
        }
        for key in ("organization_id", "user_id", "source_type", "source_id"):
            if key in context and context[key] is not None:
                extra[key] = context[key]

        self._logger.warning(f"[{component}] suppressed error: {error}", extra=extra)

    def count(self, component: Optional[str] = None) -> int:
        """Number of suppressed errors, optionally for one component."""
        with self._lock:
            if component is None:
                return sum(self._counts.values())
            return self._counts[component]

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
