"""Process-wide logging setup for the ingestion runtime."""

from __future__ import annotations

import logging
import os
import sys
import threading
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import orjson

from .util.env import env_flag, env_int

DEFAULT_LOG_FILE = Path("logs") / "mint_catalog.log"
LOG_FORMAT = "%(asctime)sZ [%(levelname)s] %(name)s:%(lineno)d | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Libraries that log every frame or statement at DEBUG.
_QUIET_LOGGERS = ("asyncio", "websockets", "aiosqlite", "sqlalchemy.engine")
_CONSOLE_TAG = "_mint_catalog_console"

_warn_once_lock = threading.Lock()
_warn_once_last_emit: dict[str, float] = {}

_RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message"}


class UTCFormatter(logging.Formatter):
    converter = time.gmtime


class JsonFormatter(logging.Formatter):
    """One orjson object per record; ``extra=`` fields are copied through."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "ts": stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_") and key not in payload:
                payload[key] = value
        return orjson.dumps(payload, default=str).decode()


def warn_once_per(
    minutes: float,
    key: str,
    message: str,
    *args: Any,
    logger: logging.Logger | None = None,
    **kwargs: Any,
) -> bool:
    """Emit ``logger.warning`` for *message* at most once per *minutes* interval.

    Returns ``True`` when the warning was emitted.
    """
    interval = max(0.0, minutes) * 60.0
    now = time.monotonic()
    with _warn_once_lock:
        last = _warn_once_last_emit.get(key)
        if last is not None and interval > 0 and now - last < interval:
            return False
        _warn_once_last_emit[key] = now
    (logger or logging.getLogger()).warning(message, *args, **kwargs)
    return True


def reset_warn_once_cache() -> None:
    with _warn_once_lock:
        _warn_once_last_emit.clear()


def _level(value: str | int | None) -> int:
    if isinstance(value, int):
        return value
    name = (value or "INFO").strip().upper()
    if name.isdigit():
        return int(name)
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def _console_handler(root: logging.Logger) -> logging.StreamHandler:
    for handler in root.handlers:
        if getattr(handler, _CONSOLE_TAG, False):
            return handler  # type: ignore[return-value]
    handler = logging.StreamHandler(sys.stdout)
    setattr(handler, _CONSOLE_TAG, True)
    root.addHandler(handler)
    return handler


def _file_handler(root: logging.Logger, path: Path, max_bytes: int, backups: int) -> logging.Handler:
    for handler in root.handlers:
        if isinstance(handler, RotatingFileHandler) and Path(handler.baseFilename) == path:
            return handler
    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
    root.addHandler(handler)
    return handler


def configure_runtime_logging(
    *,
    level: str | int | None = None,
    console: bool | None = None,
    logfile: str | Path | None = None,
    json_logs: bool | None = None,
) -> Path:
    """Attach a rotating file handler and, unless disabled, a stdout handler.

    Unset arguments fall back to ``LOG_LEVEL``, ``LOG_CONSOLE``, ``LOG_FILE``
    and ``LOG_JSON``. Calling this again reuses the handlers already installed.
    Returns the resolved log file path.
    """
    resolved_level = _level(level or os.getenv("LOG_LEVEL"))
    if console is None:
        console = env_flag("LOG_CONSOLE", True)
    if json_logs is None:
        json_logs = env_flag("LOG_JSON", False)

    log_path = Path(logfile or os.getenv("LOG_FILE") or DEFAULT_LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path = log_path.resolve()

    formatter: logging.Formatter
    if json_logs:
        formatter = JsonFormatter()
    else:
        formatter = UTCFormatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    root = logging.getLogger()
    root.setLevel(resolved_level)
    handlers = [
        _file_handler(
            root,
            log_path,
            env_int("LOG_MAX_BYTES", 5_000_000, minimum=1024),
            env_int("LOG_BACKUP_COUNT", 3, minimum=0),
        )
    ]
    if console:
        handlers.append(_console_handler(root))
    for handler in handlers:
        handler.setLevel(resolved_level)
        handler.setFormatter(formatter)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))

    root.debug("Logging initialised", extra={"log_file": str(log_path)})
    return log_path


__all__ = [
    "JsonFormatter",
    "UTCFormatter",
    "configure_runtime_logging",
    "reset_warn_once_cache",
    "warn_once_per",
]
