#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""
Logging setup for ROM Curator.

Library modules only create module loggers (``logging.getLogger(__name__)``);
handlers are installed once by the command surface through
:func:`setup_logging`. Two formatters are available:

- FastFormatter: compact level-specific lines, optional ANSI colours
- JsonFormatter: one JSON object per record for log shippers
"""

import json
import logging
import logging.handlers
import os
import re
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

MAIN_LOG_NAME = "romcurator.log"
ERROR_LOG_NAME = "errors.log"
DEFAULT_MAX_LOG_BYTES = 10 * 1024 * 1024

# Attributes every LogRecord carries; anything else was passed through ``extra=``.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

# =====================================================================================================
# Formatters
# =====================================================================================================

_LEVEL_LAYOUTS = {
    logging.DEBUG: "[{asctime}] DEBUG   {name}:{lineno} - {message}",
    logging.INFO: "[{asctime}] INFO    {message}",
    logging.WARNING: "[{asctime}] WARNING [{name}] {message}",
    logging.ERROR: "[{asctime}] ERROR   [{name}] {message}",
}

_ANSI = {
    logging.DEBUG: '\033[94m',
    logging.INFO: '\033[92m',
    logging.WARNING: '\033[93m',
    logging.ERROR: '\033[91m',
}
_ANSI_RESET = '\033[0m'


class FastFormatter(logging.Formatter):
    """Formatter with one pre-built layout per level."""

    def __init__(self, enable_colors: bool = False):
        super().__init__()
        self.enable_colors = enable_colors
        self._by_level = {
            level: logging.Formatter(layout, style='{', datefmt='%H:%M:%S')
            for level, layout in _LEVEL_LAYOUTS.items()
        }

    def _bucket(self, levelno: int) -> int:
        if levelno >= logging.ERROR:
            return logging.ERROR
        return levelno if levelno in self._by_level else logging.INFO

    def format(self, record):
        bucket = self._bucket(record.levelno)
        text = self._by_level[bucket].format(record)
        if not self.enable_colors:
            return text
        return f"{_ANSI[bucket]}{text}{_ANSI_RESET}"


class JsonFormatter(logging.Formatter):
    """One JSON object per record. Values given via ``extra=`` are kept under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "pathname": record.pathname,
            "lineno": record.lineno,
            "thread": record.threadName,
            "process": record.process,
        }
        context = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)

# =====================================================================================================
# Operation timings
# =====================================================================================================

class OperationTimings:
    """Running totals per operation name; operations slower than the threshold are logged."""

    def __init__(self, slow_threshold: float = 1.0):
        self.slow_threshold = slow_threshold
        self._log = logging.getLogger("romcurator.performance")
        self._totals: Dict[str, list] = {}
        self._lock = threading.Lock()

    def record(self, operation: str, seconds: float) -> None:
        with self._lock:
            bucket = self._totals.setdefault(operation, [0, 0.0])
            bucket[0] += 1
            bucket[1] += seconds
        if seconds > self.slow_threshold:
            self._log.warning("SLOW: %s took %.2fs", operation, seconds)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                name: {'count': count, 'total_time': total, 'avg_time': total / count if count else 0.0}
                for name, (count, total) in self._totals.items()
            }

    def reset(self) -> None:
        with self._lock:
            self._totals.clear()


_timings = OperationTimings()


def get_performance_stats() -> Dict[str, Any]:
    return _timings.snapshot()


class LoggingTimer:
    """Times a block and adds it to the shared operation timings."""

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        self._started: Optional[float] = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._started is not None:
            _timings.record(self.operation_name, time.perf_counter() - self._started)

# =====================================================================================================
# Setup
# =====================================================================================================

_SIZE_RE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*([KMG]?B)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {None: 1, 'B': 1, 'KB': 1024, 'MB': 1024 ** 2, 'GB': 1024 ** 3}


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_size_string(size_str: str) -> int:
    """Parse '10MB' style sizes into bytes; unparseable input means 10 MB."""
    match = _SIZE_RE.match(str(size_str))
    if not match:
        return DEFAULT_MAX_LOG_BYTES
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[unit.upper() if unit else None])


def _rotating_handler(path: Path, level: int, max_bytes: int, backup_count: int,
                      formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        str(path), maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _detach_root_handlers(root_logger: logging.Logger) -> None:
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    enable_file_logging: bool = False,
    enable_console_logging: bool = True,
    max_log_size: str = "10MB",
    backup_count: int = 3,
    structured_json: Optional[bool] = None,
) -> Dict[str, Any]:
    """Install console and rotating file handlers on the root logger.

    ``structured_json`` falls back to the ``ROMCURATOR_LOG_JSON`` environment
    variable when not given. Console output goes to stderr so that command
    reports on stdout stay machine readable.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    use_json = structured_json if structured_json is not None else _env_bool("ROMCURATOR_LOG_JSON")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    _detach_root_handlers(root_logger)

    handlers: Dict[str, logging.Handler] = {}

    if enable_console_logging:
        colors = sys.stderr.isatty() and os.environ.get('TERM') != 'dumb'
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(level)
        console.setFormatter(JsonFormatter() if use_json else FastFormatter(enable_colors=colors))
        handlers['console'] = console

    target_dir = Path(log_dir) if log_dir else Path("logs")
    if enable_file_logging:
        target_dir.mkdir(parents=True, exist_ok=True)
        max_bytes = _parse_size_string(max_log_size)
        handlers['main_file'] = _rotating_handler(
            target_dir / MAIN_LOG_NAME, level, max_bytes, backup_count,
            JsonFormatter() if use_json else FastFormatter(),
        )
        # errors.log rotates at half the size of the main log
        handlers['error_file'] = _rotating_handler(
            target_dir / ERROR_LOG_NAME, logging.WARNING, max(max_bytes // 2, 1), backup_count,
            JsonFormatter() if use_json else FastFormatter(),
        )

    for handler in handlers.values():
        root_logger.addHandler(handler)

    logging.getLogger("romcurator").debug(
        "Logging initialized (level=%s, file=%s, json=%s)", log_level, enable_file_logging, use_json
    )
    return {'handlers': handlers, 'log_dir': target_dir}


def cleanup_logging() -> None:
    """Close and detach every root handler."""
    _detach_root_handlers(logging.getLogger())
