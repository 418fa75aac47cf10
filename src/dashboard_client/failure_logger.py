# src/dashboard_client/failure_logger.py

"""
Failure log for the request pipeline.

Each failed call becomes one JSON line in `<data_dir>/logs/failures.log`
(rotated at 5 MB, two backups) and one summary line on the
"dashboard_client" logger. Session-lifecycle failures (401 redirects,
caller cancellations) are summarized at INFO, everything else at ERROR.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .error_handler import ApiError
from .utils.paths import get_logs_dir

lib_logger = logging.getLogger("dashboard_client")

FAILURE_LOG_NAME = "failures.log"
MAX_LOG_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 2
MAX_MESSAGE_CHARS = 5000
MAX_BODY_CHARS = 10000

_records = logging.getLogger("dashboard_client.failures")
_records.propagate = False
_logs_dir: Optional[Path] = None
_handler_dir: Optional[Path] = None


class FailureRecordFormatter(logging.Formatter):
    """Writes the record's dict message as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(record.msg, default=str)


def configure_failure_logger(logs_dir: Optional[Union[Path, str]] = None) -> None:
    """
    Point the failure log at `logs_dir` (the default logs/ directory when
    None). The file is opened on the next failure.
    """
    global _logs_dir
    _logs_dir = Path(logs_dir) if logs_dir else None


def _ensure_handler() -> None:
    global _handler_dir
    target = _logs_dir or get_logs_dir()
    if _handler_dir == target and _records.handlers:
        return

    for handler in list(_records.handlers):
        _records.removeHandler(handler)
        handler.close()
    _handler_dir = target

    try:
        target.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            target / FAILURE_LOG_NAME,
            maxBytes=MAX_LOG_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as e:
        lib_logger.warning(f"Failure log unavailable in '{target}': {e}")
        _records.addHandler(logging.NullHandler())
        return
    handler.setFormatter(FailureRecordFormatter())
    _records.addHandler(handler)
    _records.setLevel(logging.INFO)


def failure_record(error: ApiError, attempt: int = 1) -> Dict[str, Any]:
    """The JSON document written for one failed call."""
    body = error.payload
    if body is not None and not isinstance(body, (dict, list)):
        body = str(body)[:MAX_BODY_CHARS]
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "kind": error.kind.value,
        "status_code": error.status_code,
        "method": error.method,
        "url": error.url,
        "attempt": attempt,
        "duration_ms": None if error.duration_ms is None else round(error.duration_ms, 1),
        "message": error.message[:MAX_MESSAGE_CHARS],
        "errors": error.errors,
        "response": body,
        "cause": repr(error.__cause__) if error.__cause__ else None,
    }


def log_failure(error: ApiError, attempt: int = 1) -> None:
    try:
        _ensure_handler()
        _records.error(failure_record(error, attempt))
    except OSError as e:
        lib_logger.warning(f"Could not write to {FAILURE_LOG_NAME}: {e}")

    summary = (
        f"{error.method or '?'} {error.url or '?'} -> {error.kind.value}"
        f" (status={error.status_code}): {error.message}"
    )
    if error.should_notify:
        lib_logger.error(summary)
    else:
        lib_logger.info(summary)
