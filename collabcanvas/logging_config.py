from __future__ import annotations

import json
import logging
import os
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_LOG_FILE = "collabcanvas.log"
_REQUEST_ID_VAR: ContextVar[str | None] = ContextVar("collabcanvas_request_id", default=None)
_CONTEXT_FILTER: logging.Filter | None = None

_RESERVED_ATTRS: frozenset[str] = frozenset(
    set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__)
    | {"message", "request_id", "asctime", "taskName"}
)


class StructuredJsonFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            payload["request_id"] = request_id
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        extras = {
            key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS
        }
        if extras:
            payload["extra"] = _serialise_extra(extras)
        return json.dumps(payload, ensure_ascii=True)


class RequestContextFilter(logging.Filter):
    """Stamp each record with the request id of the HTTP call that produced it."""

    def filter(self, record: logging.LogRecord) -> bool:
        rid = get_request_id()
        if rid:
            record.request_id = rid
        elif not hasattr(record, "request_id"):
            record.request_id = None
        return True


def _serialise_extra(data: Dict[str, Any]) -> Dict[str, Any]:
    serialised: Dict[str, Any] = {}
    for key, value in data.items():
        try:
            json.dumps(value)
            serialised[key] = value
        except (TypeError, ValueError):
            serialised[key] = repr(value)
    return serialised


def set_request_id(value: str | None) -> Token:
    return _REQUEST_ID_VAR.set(value)


def get_request_id() -> str | None:
    return _REQUEST_ID_VAR.get()


def reset_request_id(token: Token) -> None:
    try:
        _REQUEST_ID_VAR.reset(token)
    except (RuntimeError, ValueError):
        # Token minted in another context; leave the current value in place.
        pass


def _coerce_level(level: str) -> int:
    value = getattr(logging, str(level).upper(), None)
    return value if isinstance(value, int) else logging.INFO


def default_log_dir() -> Path:
    override = os.getenv("COLLABCANVAS_LOG_DIR") or os.getenv("LOG_DIR")
    if override:
        return Path(override).expanduser().resolve()
    return Path("logs").resolve()


def _apply_context_filter(logger: logging.Logger) -> None:
    global _CONTEXT_FILTER
    if _CONTEXT_FILTER is None:
        _CONTEXT_FILTER = RequestContextFilter()
    if _CONTEXT_FILTER not in logger.filters:
        logger.addFilter(_CONTEXT_FILTER)


def init_logging(
    log_dir: str | os.PathLike[str] | None = None,
    *,
    level: str = "INFO",
    filename: str = DEFAULT_LOG_FILE,
    to_file: bool = True,
) -> Optional[Path]:
    """Route the root logger through the JSON formatter; returns the log file path."""
    root_logger = logging.getLogger()
    root_logger.setLevel(_coerce_level(level))
    _apply_context_filter(root_logger)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = StructuredJsonFormatter()
    log_path: Optional[Path] = None
    if to_file:
        base = Path(log_dir).expanduser().resolve() if log_dir else default_log_dir()
        base.mkdir(parents=True, exist_ok=True)
        log_path = base / filename
        file_handler = RotatingFileHandler(
            str(log_path),
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(RequestContextFilter())
        root_logger.addHandler(file_handler)
        os.environ.setdefault("COLLABCANVAS_LOG_FILE", str(log_path))

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(RequestContextFilter())
    root_logger.addHandler(stream_handler)
    return log_path


__all__ = [
    "RequestContextFilter",
    "StructuredJsonFormatter",
    "get_request_id",
    "init_logging",
    "reset_request_id",
    "set_request_id",
]
