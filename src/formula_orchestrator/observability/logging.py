"""
formula-orchestrator — structured logging

File: src/formula_orchestrator/observability/logging.py

Purpose
- Emit one canonical JSON object per log line for every component logger,
  with secrets redacted and formula/backend correlation fields attached.

What is included in this file
- ``setup_logging``: configure the package logger from the ``[observability]``
  config section and route structlog through it.
- ``correlation_scope``: bind correlation fields (``formula_id``, ``backend``,
  ...) for the current context; they appear on every record logged inside.
- ``default_log_redactor``: deep redaction of secret-looking keys, bearer
  tokens, and credentials embedded in URLs.

Functional requirements
- Logging is queue-backed; a full queue drops records instead of blocking a
  formula execution.
- Calling ``setup_logging`` again replaces the previous handle.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

PACKAGE_LOGGER_NAME: Final[str] = "formula_orchestrator"
_REDACTED_VALUE: Final[str] = "***REDACTED***"
_DEFAULT_LOG_FILENAME: Final[str] = "formula-orchestrator.jsonl"
_DEFAULT_QUEUE_SIZE: Final[int] = 4096

_CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "correlation_id",
    "formula_id",
    "backend",
    "version",
)

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*((?:bearer\s+)?[^\s,;&]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_URL_CREDENTIALS_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?P<scheme>\b[a-z][a-z0-9+.-]*://)(?P<userinfo>[^/\s:@]+(?::[^/\s@]*)?)@", re.IGNORECASE
)

_STANDARD_LOG_RECORD_FIELDS: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}

_CorrelationState = tuple[tuple[str, str], ...]
_CORRELATION_CONTEXT: contextvars.ContextVar[_CorrelationState] = contextvars.ContextVar(
    "formula_observability_correlation", default=()
)

_ACTIVE_HANDLE_LOCK = threading.Lock()
_ACTIVE_HANDLE: LoggingHandle | None = None
_ATEXIT_REGISTERED = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    base_log_dir: Path | str | None = Path("logs")
    logger_name: str = PACKAGE_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = _DEFAULT_QUEUE_SIZE
    log_filename: str = _DEFAULT_LOG_FILENAME
    log_to_stdout: bool = True
    redactor: LogRedactor | None = None


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    """Capture correlation context at enqueue time; drop when the queue is full."""

    def __init__(self, log_queue: queue.Queue[object]) -> None:
        super().__init__(log_queue)
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        context = get_correlation_context()
        if context:
            record.correlation = context
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1


class JsonLineFormatter(logging.Formatter):
    """Canonical JSON object per record, redacted."""

    def __init__(self, *, redactor: LogRedactor) -> None:
        super().__init__()
        self._redactor = redactor

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": _as_text(self._redactor(record.getMessage())),
        }
        for key, value in sorted(_record_correlation(record).items()):
            event[key] = value

        fields = {
            key: _normalize_json_value(value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_LOG_RECORD_FIELDS
            and key not in _CORRELATION_KEYS
            and key != "correlation"
            and not key.startswith("_")
        }
        if fields:
            event["fields"] = self._redactor(fields)
        if record.exc_info is not None:
            event["exception"] = _as_text(self._redactor(self.formatException(record.exc_info)))
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class LoggingHandle:
    """Active logging setup; ``shutdown`` stops the listener and closes sinks."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        log_path: Path | None,
        queue_handler: _CorrelatingQueueHandler,
        sinks: tuple[logging.Handler, ...],
        listener: logging.handlers.QueueListener,
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._sinks = sinks
        self._listener = listener
        self._lock = threading.Lock()
        self._is_shutdown = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def shutdown(self) -> None:
        with self._lock:
            if self._is_shutdown:
                return
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.flush()
                sink.close()
            self._is_shutdown = True


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    log_dir: Path | str | None = None,
) -> LoggingHandle:
    """Configure logging from an ``[observability]`` mapping."""

    cfg = dict(observability_config or {})
    raw_level = cfg.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else cfg.get("log_dir", "logs")
    return setup_structured_logging(
        LoggingConfig(
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else None,
            level=raw_level if isinstance(raw_level, (int, str)) else "INFO",
            log_to_stdout=bool(cfg.get("log_to_stdout", True)),
            redactor=None if cfg.get("redact_secrets", True) else _identity_redactor,
        )
    )


def setup_structured_logging(config: LoggingConfig) -> LoggingHandle:
    shutdown_logging()
    level = _parse_log_level(config.level)
    formatter = JsonLineFormatter(redactor=config.redactor or default_log_redactor)

    sinks: list[logging.Handler] = []
    log_path: Path | None = None
    if config.base_log_dir is not None:
        base_dir = Path(config.base_log_dir)
        base_dir.mkdir(parents=True, exist_ok=True)
        log_path = base_dir / config.log_filename
        sinks.append(logging.FileHandler(log_path, encoding="utf-8"))
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    log_queue: queue.Queue[object] = queue.Queue(maxsize=max(config.queue_size, 1))
    queue_handler = _CorrelatingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    configure_structlog()
    handle = LoggingHandle(
        logger=logger,
        log_path=log_path,
        queue_handler=queue_handler,
        sinks=tuple(sinks),
        listener=listener,
    )
    global _ACTIVE_HANDLE, _ATEXIT_REGISTERED
    with _ACTIVE_HANDLE_LOCK:
        _ACTIVE_HANDLE = handle
        if not _ATEXIT_REGISTERED:
            atexit.register(shutdown_logging)
            _ATEXIT_REGISTERED = True
    return handle


def configure_structlog() -> None:
    """Send structlog events through stdlib logging as ``event`` plus extra fields."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def shutdown_logging() -> None:
    global _ACTIVE_HANDLE
    with _ACTIVE_HANDLE_LOCK:
        handle = _ACTIVE_HANDLE
        _ACTIVE_HANDLE = None
    if handle is not None:
        handle.shutdown()


def get_active_logging_handle() -> LoggingHandle | None:
    with _ACTIVE_HANDLE_LOCK:
        return _ACTIVE_HANDLE


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION_CONTEXT.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for records logged inside the block.

    ``None`` removes a previously bound field for the duration of the scope.
    """

    state = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            state.pop(key, None)
        elif str(value).strip():
            state[key] = str(value).strip()
    token = _CORRELATION_CONTEXT.set(tuple(state.items()))
    try:
        yield
    finally:
        _CORRELATION_CONTEXT.reset(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    return _redact_value(value, key_context=None)


def _record_correlation(record: logging.LogRecord) -> dict[str, str]:
    merged = get_correlation_context()
    captured = getattr(record, "correlation", None)
    if isinstance(captured, Mapping):
        merged.update({str(key): str(value) for key, value in captured.items()})
    for key in _CORRELATION_KEYS:
        value = getattr(record, key, None)
        if isinstance(value, str) and value.strip():
            merged[key] = value.strip()
    return merged


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    parsed = logging.getLevelName(str(value).strip().upper())
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _as_text(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _normalize_json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _normalize_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize_json_value(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=lambda item: json.dumps(item, sort_keys=True))
        return items
    return repr(value)


def _identity_redactor(value: JSONValue) -> JSONValue:
    return value


def _redact_value(value: JSONValue, *, key_context: str | None) -> JSONValue:
    if key_context is not None and any(term in key_context.lower() for term in _SENSITIVE_KEY_TERMS):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, dict):
        return {key: _redact_value(item, key_context=key) for key, item in value.items()}
    return value


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)
    return _URL_CREDENTIALS_PATTERN.sub(
        lambda match: f"{match.group('scheme')}{_REDACTED_VALUE}@", redacted
    )


__all__ = [
    "PACKAGE_LOGGER_NAME",
    "JsonLineFormatter",
    "LogRedactor",
    "LoggingConfig",
    "LoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
