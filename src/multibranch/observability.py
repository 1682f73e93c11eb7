from __future__ import annotations

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO


LOGGER_NAME = "multibranch"

# Environment variables for configuration
ENV_LOG_DIR = "MULTIBRANCH_LOG_DIR"
ENV_LOG_LEVEL = "MULTIBRANCH_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "MULTIBRANCH_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "MULTIBRANCH_LOG_BACKUP_COUNT"
ENV_LOG_DISABLE_FILE = "MULTIBRANCH_LOG_DISABLE_FILE"

# Defaults
DEFAULT_LOG_DIR = Path.home() / ".multibranch" / "logs"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5

_logger_initialized = False
_logger_lock = threading.Lock()
_session_start = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _get_log_level() -> int:
    """Get log level from environment, defaulting to INFO."""
    level_name = os.getenv(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL).upper()
    return getattr(logging, level_name, logging.INFO)


def _get_log_file_path() -> Optional[Path]:
    """Get the log file path, creating directories if needed.

    Returns None if file logging is disabled via MULTIBRANCH_LOG_DISABLE_FILE=1.
    """
    if os.getenv(ENV_LOG_DISABLE_FILE, "").lower() in ("1", "true", "yes"):
        return None

    log_dir = Path(os.getenv(ENV_LOG_DIR, DEFAULT_LOG_DIR))
    log_dir.mkdir(parents=True, exist_ok=True)

    # Session-based filename: multibranch_2024-01-15_143022.log
    return log_dir / f"multibranch_{_session_start}.log"


def _get_logger() -> logging.Logger:
    """Get or initialize the package logger.

    By default, logs to ~/.multibranch/logs/multibranch_<session>.log

    Configuration via environment variables:
    - MULTIBRANCH_LOG_DIR: Directory for log files (default: ~/.multibranch/logs/)
    - MULTIBRANCH_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    - MULTIBRANCH_LOG_MAX_BYTES: Max log file size before rotation (default: 10MB)
    - MULTIBRANCH_LOG_BACKUP_COUNT: Number of backup files to keep (default: 5)
    - MULTIBRANCH_LOG_DISABLE_FILE: Set to 1 to disable file logging (stderr only)
    """
    global _logger_initialized
    logger = logging.getLogger(LOGGER_NAME)

    with _logger_lock:
        if _logger_initialized:
            return logger
        _logger_initialized = True
        logger.handlers.clear()

        log_level = _get_log_level()
        logger.setLevel(log_level)

        formatter = logging.Formatter(
            "[%(levelname)s %(asctime)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S"
        )

        log_file = _get_log_file_path()
        if log_file:
            max_bytes = int(os.getenv(ENV_LOG_MAX_BYTES, DEFAULT_MAX_BYTES))
            backup_count = int(os.getenv(ENV_LOG_BACKUP_COUNT, DEFAULT_BACKUP_COUNT))

            file_handler = RotatingFileHandler(
                str(log_file),
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(log_level)
            logger.addHandler(file_handler)

        # Also log to stderr for visibility (only warnings and above by default)
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(max(log_level, logging.WARNING))
        logger.addHandler(stream_handler)

    return logger


def reset_logging() -> None:
    """Drop handlers so the next log call re-reads the environment."""
    global _logger_initialized
    with _logger_lock:
        logger = logging.getLogger(LOGGER_NAME)
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()
        _logger_initialized = False


def apply_logging_config(logging_config: Any) -> None:
    """Export a ``LoggingConfig`` to the environment and reinitialize logging.

    Values already present in the environment win.
    """
    env = {
        ENV_LOG_LEVEL: logging_config.level,
        ENV_LOG_MAX_BYTES: str(logging_config.max_bytes),
        ENV_LOG_BACKUP_COUNT: str(logging_config.backup_count),
    }
    if logging_config.dir:
        env[ENV_LOG_DIR] = str(Path(logging_config.dir).expanduser())
    if logging_config.disable_file:
        env[ENV_LOG_DISABLE_FILE] = "1"
    for key, value in env.items():
        os.environ.setdefault(key, value)
    reset_logging()


def _with_fields(message: str, fields: Dict[str, Any]) -> str:
    if not fields:
        return message
    return f"{message} " + json.dumps(fields, separators=(",", ":"), sort_keys=True, default=str)


def log_action(
    action: str,
    *,
    outcome: str = "ok",
    duration_ms: Optional[float] = None,
    **fields: Any,
) -> None:
    """Emit a structured log line for an action.

    Fields are serialized to JSON for safety. Keep schema lightweight.
    """
    payload: Dict[str, Any] = {
        "ts": utcnow_iso(),
        "action": action,
        "outcome": outcome,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    if fields:
        payload.update(fields)

    _get_logger().info(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


def log_debug(message: str, **fields: Any) -> None:
    """Log a debug message with optional structured fields.

    Only emitted when log level is DEBUG.
    """
    logger = _get_logger()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(_with_fields(message, fields))


def log_warning(message: str, **fields: Any) -> None:
    """Log a warning message with optional structured fields."""
    _get_logger().warning(_with_fields(message, fields))


def log_error(message: str, **fields: Any) -> None:
    """Log an error message with optional structured fields."""
    _get_logger().error(_with_fields(message, fields))


@contextmanager
def timeit(action: str, **fields: Any):
    """Time a block and emit a structured log on exit.

    On exception, logs outcome="error" and re-raises.

    Yields:
        A dict that can be updated with extra fields to log on success
    """
    start = time.perf_counter()
    result_info: Dict[str, Any] = {}
    try:
        yield result_info
        duration_ms = (time.perf_counter() - start) * 1000.0
        log_action(action, outcome="ok", duration_ms=duration_ms, **fields, **result_info)
    except Exception as e:
        duration_ms = (time.perf_counter() - start) * 1000.0
        log_action(action, outcome="error", duration_ms=duration_ms, error=type(e).__name__, **fields)
        raise


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes < 60:
        return f"{minutes}m {secs:.0f}s"
    hours = minutes // 60
    return f"{hours}h {minutes % 60}m"


class TaskLog:
    """Append-only, line-oriented progress log for one reconciliation pass.

    Lines are kept in memory and optionally mirrored to a stream. Phase
    boundaries are timestamped.
    """

    def __init__(self, stream: Optional[TextIO] = None, *, run_id: Optional[str] = None):
        self._lines: List[str] = []
        self._stream = stream
        self._lock = threading.Lock()
        self.run_id = run_id

    def println(self, message: str) -> None:
        with self._lock:
            self._lines.append(message)
            if self._stream is not None:
                self._stream.write(message + "\n")
                self._stream.flush()

    def error(self, message: str) -> None:
        self.println(f"ERROR: {message}")

    def phase(self, message: str) -> None:
        self.println(f"[{utcnow_iso()}] {message}")

    @property
    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        return "\n".join(self.lines)

    def __contains__(self, fragment: str) -> bool:
        return any(fragment in line for line in self.lines)
