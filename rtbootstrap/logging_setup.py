# -*- coding: utf-8 -*-
"""
Logging setup for the container bootstrap.

- JSON or text lines on stdout (container log collectors read stdout)
- Optional size-rotated file next to the daemon logs
- Structured fields via ``extra={...}``
- Idempotent: calling setup_logging() twice replaces the handlers
"""
from __future__ import annotations

import datetime as _dt
import json
import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

__all__ = ["setup_logging", "JSONFormatter", "TextFormatter"]

SERVICE_NAME = "rtbootstrap"
DEFAULT_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEFAULT_FILE_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_FILE_BACKUP_COUNT = 3

_STD_ATTRS = frozenset(
    [
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "asctime",
        "taskName",
        "message",
    ]
)


def _ts(record: logging.LogRecord) -> str:
    dt = _dt.datetime.fromtimestamp(record.created, tz=_dt.timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _clean_extras(record: logging.LogRecord) -> Dict[str, Any]:
    extras = {k: v for k, v in record.__dict__.items() if k not in _STD_ATTRS and not k.startswith("_")}

    def _safe(obj: Any) -> Any:
        try:
            json.dumps(obj)
            return obj
        except (TypeError, ValueError):
            return repr(obj)

    return {k: _safe(v) for k, v in extras.items()}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "ts": _ts(record),
            "level": record.levelname,
            "logger": record.name,
            "service": SERVICE_NAME,
            "pid": record.process,
            "message": record.getMessage(),
        }
        extras = _clean_extras(record)
        if extras:
            base["extra"] = extras
        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = f"{_ts(record)} {record.levelname:<8} {record.name}: {record.getMessage()}"
        extras = _clean_extras(record)
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in sorted(extras.items()))
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: Optional[str] = None,
    *,
    json_output: bool = True,
    log_file: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """Configure the root logger. Safe to call more than once."""
    lvl = (level or DEFAULT_LEVEL).upper()
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    root.setLevel(getattr(logging, lvl, logging.INFO))

    formatter: logging.Formatter = JSONFormatter() if json_output else TextFormatter()

    sh = logging.StreamHandler(stream=sys.stdout)
    sh.setFormatter(formatter)
    root.addHandler(sh)

    if log_file:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.handlers.RotatingFileHandler(
                path,
                maxBytes=DEFAULT_FILE_MAX_BYTES,
                backupCount=DEFAULT_FILE_BACKUP_COUNT,
                encoding="utf-8",
            )
            fh.setFormatter(formatter)
            root.addHandler(fh)
        except OSError as e:
            root.warning("log_file_setup_failed", extra={"error": str(e), "path": str(path)})

    root.debug("logging_initialized", extra={"level": lvl, "json": json_output})
    return root
