"""Process logging for gdm.

One ``gdm`` logger per process, set up on first use. Every run gets its own
session file under ``GDM_LOG_DIR`` (default ``~/.gdm/logs``), rotated by
size; stderr only shows warnings and errors so release summaries printed by
the CLI stay readable.

Environment:
    GDM_LOG_DIR, GDM_LOG_LEVEL, GDM_LOG_MAX_BYTES, GDM_LOG_BACKUP_COUNT,
    GDM_LOG_DISABLE_FILE (``1`` keeps logging on stderr only)

Components receive a ``StructuredLogger`` and use ``action()`` to emit one
JSON line per finished operation (fetch, push, pipeline stage), which is
what ``timeit`` builds on.
"""

from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional


LOGGER_NAME = "gdm"

ENV_LOG_DIR = "GDM_LOG_DIR"
ENV_LOG_LEVEL = "GDM_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "GDM_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "GDM_LOG_BACKUP_COUNT"
ENV_LOG_DISABLE_FILE = "GDM_LOG_DISABLE_FILE"

DEFAULT_LOG_DIR = Path.home() / ".gdm" / "logs"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5

LOG_FORMAT = "[%(levelname)s %(asctime)s] %(message)s"

_logger_initialized = False
_session_start: Optional[str] = None


def _get_log_level() -> int:
    level_name = os.getenv(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL).upper()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.INFO


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _get_log_file_path() -> Optional[Path]:
    """Session log file for this process, or None when file logging is off."""
    global _session_start
    if os.getenv(ENV_LOG_DISABLE_FILE, "").lower() in ("1", "true", "yes"):
        return None

    if _session_start is None:
        _session_start = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")

    log_dir = Path(os.getenv(ENV_LOG_DIR, DEFAULT_LOG_DIR))
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"gdm_{_session_start}.log"


def _build_handlers(level: int) -> List[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    handlers: List[logging.Handler] = []

    log_file = _get_log_file_path()
    if log_file:
        file_handler = RotatingFileHandler(
            str(log_file),
            maxBytes=_env_int(ENV_LOG_MAX_BYTES, DEFAULT_MAX_BYTES),
            backupCount=_env_int(ENV_LOG_BACKUP_COUNT, DEFAULT_BACKUP_COUNT),
        )
        file_handler.setLevel(level)
        handlers.append(file_handler)

    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(max(level, logging.WARNING))
    handlers.append(stderr_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def _get_logger() -> logging.Logger:
    """The process-wide ``gdm`` logger, configured from the environment once."""
    global _logger_initialized
    logger = logging.getLogger(LOGGER_NAME)

    if not _logger_initialized:
        _logger_initialized = True
        level = _get_log_level()
        logger.handlers.clear()
        logger.setLevel(level)
        for handler in _build_handlers(level):
            logger.addHandler(handler)

    return logger


def _format_fields(fields: Dict[str, Any]) -> str:
    if not fields:
        return ""
    return " " + json.dumps(fields, separators=(",", ":"), sort_keys=True, default=str)


class StructuredLogger:
    """Logger handed to each component at construction time.

    Wraps a stdlib logger and renders keyword fields as compact JSON so
    that log lines stay greppable. Components never reach for a module
    level logger; the composition root builds one with ``get_logger()``
    and passes it down.
    """

    def __init__(self, logger: logging.Logger, component: Optional[str] = None):
        self._logger = logger
        self.component = component

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def child(self, component: str) -> "StructuredLogger":
        """Return a logger that tags messages with ``component``."""
        return StructuredLogger(self._logger, component)

    def _prefix(self, message: str) -> str:
        if self.component:
            return f"[{self.component.upper()}] {message}"
        return message

    def debug(self, message: str, **fields: Any) -> None:
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(self._prefix(message) + _format_fields(fields))

    def info(self, message: str, **fields: Any) -> None:
        self._logger.info(self._prefix(message) + _format_fields(fields))

    def warning(self, message: str, **fields: Any) -> None:
        self._logger.warning(self._prefix(message) + _format_fields(fields))

    def error(self, message: str, **fields: Any) -> None:
        self._logger.error(self._prefix(message) + _format_fields(fields))

    def action(
        self,
        action: str,
        *,
        outcome: str = "ok",
        duration_ms: Optional[float] = None,
        **fields: Any,
    ) -> None:
        """One JSON line for a finished operation; unknown field types go through ``str``."""
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "action": action,
            "outcome": outcome,
        }
        if self.component:
            payload["component"] = self.component
        if duration_ms is not None:
            payload["duration_ms"] = round(duration_ms, 2)
        if fields:
            payload.update(fields)

        self._logger.info(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


def get_logger(component: Optional[str] = None) -> StructuredLogger:
    """Build a StructuredLogger over the process logger.

    Only the pipeline and the CLI call this; everything else receives the
    result through its constructor.
    """
    return StructuredLogger(_get_logger(), component)


@contextmanager
def timeit(action: str, *, logger: StructuredLogger, **fields: Any):
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
        logger.action(action, outcome="ok", duration_ms=duration_ms, **{**fields, **result_info})
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000.0
        logger.action(
            action,
            outcome="error",
            duration_ms=duration_ms,
            error=type(exc).__name__,
            **fields,
        )
        raise
