"""
Structured Logging Infrastructure

JSON log lines carrying the correlation id of the delivery or task being
handled, with every registered secret masked before a record reaches a
sink. Secrets are held in a reference-counted registry so rotated tokens
can be forgotten again.
"""
import json
import logging
import re
import sys
import threading
import time
import uuid
from collections import Counter
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

_REDACTED = "****"
_MIN_SECRET_LENGTH = 4
_MIN_KEY_LINE_LENGTH = 16

_THIRD_PARTY_LEVELS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "celery": logging.INFO,
    "kombu": logging.WARNING,
}


def _secret_fragments(value: str | bytes) -> set[str]:
    """The value itself plus, for PEM/armored keys, each body line on its own"""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    value = value.strip()
    if len(value) < _MIN_SECRET_LENGTH:
        return set()
    fragments = {value}
    for line in value.splitlines():
        line = line.strip()
        if len(line) >= _MIN_KEY_LINE_LENGTH and not line.startswith("-----"):
            fragments.add(line)
    return fragments


class SecretRegistry:
    """Secret fragments to mask, compiled into one pattern on demand"""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()
        self._pattern: re.Pattern | None = None
        self._lock = threading.Lock()

    def add(self, value: str | bytes) -> None:
        with self._lock:
            for fragment in _secret_fragments(value):
                self._counts[fragment] += 1
            self._pattern = None

    def discard(self, value: str | bytes) -> None:
        with self._lock:
            for fragment in _secret_fragments(value):
                if self._counts[fragment] <= 1:
                    self._counts.pop(fragment, None)
                else:
                    self._counts[fragment] -= 1
            self._pattern = None

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()
            self._pattern = None

    def __len__(self) -> int:
        return len(self._counts)

    def pattern(self) -> re.Pattern | None:
        with self._lock:
            if self._pattern is None and self._counts:
                # longest first so a key line never leaves part of the full key behind
                ordered = sorted(self._counts, key=len, reverse=True)
                self._pattern = re.compile("|".join(re.escape(s) for s in ordered))
            return self._pattern


_secrets = SecretRegistry()


def register_secret(value: str | bytes) -> None:
    """Mask value in every log record from now on."""
    _secrets.add(value)


def unregister_secret(value: str | bytes) -> None:
    """Undo one register_secret(value), e.g. for a token that was rotated out."""
    _secrets.discard(value)


def registered_secret_count() -> int:
    return len(_secrets)


def clear_registered_secrets() -> None:
    _secrets.clear()


def redact(text: str) -> str:
    """Replace every registered secret occurring in text."""
    if not text:
        return text
    pattern = _secrets.pattern()
    return pattern.sub(_REDACTED, text) if pattern else text


def _redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, dict):
        return {k: _redact_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact_value(v) for v in value]
    return value


class SecretRedactionFilter(logging.Filter):
    """Masks secrets in the rendered message and extra data; also stamps the correlation id"""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        if hasattr(record, "extra_data"):
            record.extra_data = _redact_value(record.extra_data)
        record.correlation_id = correlation_id_var.get() or "-"
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        correlation_id = correlation_id_var.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id
        if record.exc_info:
            entry["exception"] = redact(self.formatException(record.exc_info))
        if hasattr(record, "extra_data"):
            entry["extra"] = record.extra_data
        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Logger whose methods take extra_data={...}, rendered as "extra" """

    def _log(
        self,
        level,
        msg,
        args,
        exc_info=None,
        extra=None,
        stack_info=False,
        stacklevel=1,
        extra_data: dict[str, Any] | None = None,
    ):
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        super()._log(
            level, msg, args,
            exc_info=exc_info, extra=extra, stack_info=stack_info, stacklevel=stacklevel,
        )


logging.setLoggerClass(StructuredLogger)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Route every logger through one redacting stdout handler (JSON in production)"""
    numeric_level = getattr(logging, level.upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(SecretRedactionFilter())
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s] | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name, library_level in _THIRD_PARTY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind correlation_id (or a fresh one) to the current context and return it"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    return correlation_id_var.get() or set_correlation_id()


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore


def log_async_operation(operation_name: str):
    """Log duration and outcome of an async call (handlers use it around upstream work)"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.warning(
                    f"{operation_name} failed",
                    extra_data={
                        "operation": operation_name,
                        "duration_seconds": round(time.perf_counter() - started, 4),
                        "error_type": type(e).__name__,
                        "error": str(e),
                    },
                )
                raise
            logger.info(
                f"{operation_name} done",
                extra_data={
                    "operation": operation_name,
                    "duration_seconds": round(time.perf_counter() - started, 4),
                },
            )
            return result

        return wrapper
    return decorator
