from __future__ import annotations

import json
import logging
import logging.config
import os
import re
from typing import Any, Dict, Optional

from pixsettle.utils.correlation import get_correlation_id


# ================= Sensitive Data Masking ================= #
_BEARER_RE = re.compile(r"(Authorization\s*:\s*Bearer\s+)([A-Za-z0-9._-]+)", re.IGNORECASE)
# Mercado Pago credentials: APP_USR-<...> (production) and TEST-<...> (sandbox)
_MP_TOKEN_RE = re.compile(r"\b(APP_USR|TEST)-[A-Za-z0-9-]{8,}")
_ACCESS_TOKEN_KV_RE = re.compile(r"(access_token\"?\s*[:=]\s*\"?)([A-Za-z0-9._-]+)", re.IGNORECASE)
# PIX key embedded in a BR Code merchant account field: 0014BR.GOV.BCB.PIX01<len><key>
_BRCODE_KEY_RE = re.compile(r"(BR\.GOV\.BCB\.PIX01)(\d{2})(\S*)")

_SECRET_KEYS = {"token", "access_token", "mercado_pago_access_token", "telegram_bot_token"}
_MASKED_KEYS = {"pix_key", "payer_contact", "email"}
_HEADER_KEYS = {"authorization", "auth"}

_NOISY_LOGGERS = ("aiogram", "httpx", "sqlalchemy.engine", "uvicorn.access")


def _mask_tail(val: str, keep: int = 4) -> str:
    if len(val) <= keep:
        return "[REDACTED]"
    return "***" + val[-keep:]


def _mask_brcode_key(m: re.Match[str]) -> str:
    size = int(m.group(2))
    key, rest = m.group(3)[:size], m.group(3)[size:]
    return f"{m.group(1)}{m.group(2)}{_mask_tail(key)}{rest}"


def _sanitize_str(s: str) -> str:
    if not isinstance(s, str) or not s:
        return s
    s = _BEARER_RE.sub(lambda m: m.group(1) + "[REDACTED]", s)
    s = _MP_TOKEN_RE.sub(lambda m: m.group(1) + "-[REDACTED]", s)
    s = _ACCESS_TOKEN_KV_RE.sub(lambda m: m.group(1) + "[REDACTED]", s)
    return _BRCODE_KEY_RE.sub(_mask_brcode_key, s)


def _sanitize_value(key: str, value: Any) -> Any:
    lk = key.lower()
    if lk in _SECRET_KEYS:
        return "[REDACTED]"
    if lk in _MASKED_KEYS and isinstance(value, str):
        return _mask_tail(value)
    if lk in _HEADER_KEYS:
        return _sanitize_str(str(value))
    return _sanitize_obj(value)


def _sanitize_obj(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _sanitize_value(str(k), v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return type(obj)(_sanitize_obj(v) for v in obj)
    if isinstance(obj, str):
        return _sanitize_str(obj)
    return obj


class SensitiveDataFilter(logging.Filter):
    """Masks credentials and PIX keys in record message, args, and extra."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = _sanitize_str(record.msg)
        if isinstance(record.args, (tuple, dict)):
            record.args = _sanitize_obj(record.args)
        if isinstance(getattr(record, "extra", None), dict):
            record.extra = _sanitize_obj(record.extra)
        return True


class CorrelationFilter(logging.Filter):
    """Stamps the task's correlation id on the record (``-`` outside any scope)."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        record.correlation_id = get_correlation_id() or "-"
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        cid = getattr(record, "correlation_id", "-")
        if cid != "-":
            payload["correlation_id"] = cid
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if isinstance(getattr(record, "extra", None), dict):
            payload.update(record.extra)
        return json.dumps(_sanitize_obj(payload), ensure_ascii=False, default=str)


def _bool(val: str | None, default: bool) -> bool:
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


def _file_is_writable(path: str) -> bool:
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "a", encoding="utf-8"):
            pass
    except OSError:
        return False
    return True


def _build_handlers(level: str, formatter: str, file_path: Optional[str]) -> Dict[str, Dict[str, Any]]:
    common = {"level": level, "formatter": formatter, "filters": ["correlation", "sensitive"]}
    handlers: Dict[str, Dict[str, Any]] = {
        "console": {"class": "logging.StreamHandler", "stream": "ext://sys.stdout", **common},
    }
    if file_path:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": file_path,
            "maxBytes": 5 * 1024 * 1024,  # 5MB
            "backupCount": 3,
            "encoding": "utf-8",
            "delay": True,
            **common,
        }
    return handlers


def setup_logging() -> None:
    """Configure structured logging with sensitive data masking.

    ENV:
      - APP_ENV: production|staging|development (default: production)
      - LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default: INFO in prod, DEBUG otherwise)
      - LOG_FORMAT: json|text (default: json in prod, text otherwise)
      - LOG_TO_FILE: 1/0 (default: 1 if the log file is writable)
      - LOG_FILE_PATH: path to log file (default: ./logs/pixsettle.log)
    """
    app_env = os.getenv("APP_ENV", "production").lower()
    production = app_env == "production"
    log_level = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    log_format = os.getenv("LOG_FORMAT", "json" if production else "text").lower()
    file_path = os.getenv("LOG_FILE_PATH", os.path.join(os.getcwd(), "logs", "pixsettle.log"))

    raw_to_file = os.getenv("LOG_TO_FILE")
    to_file = _bool(raw_to_file, False) if raw_to_file is not None else _file_is_writable(file_path)
    handlers = _build_handlers(log_level, "json" if log_format == "json" else "plain", file_path if to_file else None)

    # httpx logs every request line at INFO; uvicorn.access likewise
    chatty_level = "WARNING" if production else "INFO"
    levels = {"aiogram": log_level, "httpx": chatty_level, "sqlalchemy.engine": "WARNING", "uvicorn.access": chatty_level}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "sensitive": {"()": SensitiveDataFilter},
                "correlation": {"()": CorrelationFilter},
            },
            "formatters": {
                "json": {"()": JsonFormatter},
                "plain": {"format": "%(asctime)s %(levelname)s [%(name)s] [%(correlation_id)s] %(message)s"},
            },
            "handlers": handlers,
            "root": {"level": log_level, "handlers": list(handlers)},
            "loggers": {name: {"level": levels[name]} for name in _NOISY_LOGGERS},
        }
    )

    logging.getLogger(__name__).info(
        "logging configured",
        extra={
            "extra": {
                "env": app_env,
                "level": log_level,
                "format": log_format,
                "to_file": to_file,
                "file": file_path if to_file else None,
            }
        },
    )
