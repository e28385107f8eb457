"""Structured logging setup with JSON-lines output, correlation context and redaction.

Two layers share one stdlib logger hierarchy rooted at ``policy_orchestrator``:

- plain ``logging`` records, formatted as canonical JSON objects per line;
- ``structlog`` decision logs (classification, transitions, scoring), rendered
  into stdlib ``extra`` fields so they land in the same sinks.

Each workflow run writes ``<log_dir>/<workflow_id>/workflow.jsonl`` through a
queue listener so checks running on worker threads never block on file I/O.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import queue
import re
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

JSONValue = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]

LOG_FILENAME: Final[str] = "workflow.jsonl"
ROOT_LOGGER_NAME: Final[str] = "policy_orchestrator"

_REDACTED_VALUE: Final[str] = "***REDACTED***"
_QUEUE_SIZE: Final[int] = 4096

_SENSITIVE_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)(secret|token|password|passphrase|api_?key|authorization|credential|cookie|private_key)"
)
_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_FIELDS: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "correlation"}

_CORRELATION: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "policy_orchestrator_correlation", default=()
)

_ACTIVE_LOCK = threading.Lock()
_ACTIVE_HANDLE: StructuredLoggingHandle | None = None
_STRUCTLOG_LOCK = threading.Lock()


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Sink settings for one workflow run."""

    workflow_id: str
    base_log_dir: Path | str = Path("logs")
    level: int | str = "INFO"
    log_format: str = "json"
    log_to_stderr: bool = False
    redact_secrets: bool = True


def setup_logging(
    config: Mapping[str, object] | None = None,
    *,
    workflow_id: str,
    log_dir: Path | str | None = None,
) -> logging.Logger:
    """Configure structured logging from an effective config mapping.

    ``observability`` supplies level, format, stderr mirroring and redaction;
    ``paths.log_dir`` supplies the base directory unless ``log_dir`` overrides it.
    """

    cfg = config or {}
    obs = cfg.get("observability")
    obs = obs if isinstance(obs, Mapping) else {}
    paths = cfg.get("paths")
    paths = paths if isinstance(paths, Mapping) else {}

    handle = setup_structured_logging(
        LoggingConfig(
            workflow_id=workflow_id,
            base_log_dir=log_dir if log_dir is not None else str(paths.get("log_dir", "logs")),
            level=str(obs.get("log_level", "INFO")),
            log_format=str(obs.get("log_format", "json")),
            log_to_stderr=bool(obs.get("log_to_stderr", False)),
            redact_secrets=bool(obs.get("redact_secrets", True)),
        )
    )
    return handle.logger


def configure_structlog() -> None:
    """Route structlog decision logs into the stdlib logger hierarchy (idempotent)."""

    with _STRUCTLOG_LOCK:
        if structlog.is_configured():
            return
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.format_exc_info,
                structlog.stdlib.render_to_log_kwargs,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )


def get_decision_logger(name: str) -> Any:
    """Return a structlog logger bound to the stdlib logger ``name``."""

    configure_structlog()
    return structlog.get_logger(name)


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    """Snapshots the caller's correlation context; drops records when the queue is full."""

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        context = get_correlation_context()
        if context:
            record.correlation = context
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            pass


class _JsonLineFormatter(logging.Formatter):
    def __init__(self, *, workflow_id: str, redact: bool) -> None:
        super().__init__()
        self._workflow_id = workflow_id
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(
            self.build_event(record), sort_keys=True, separators=(",", ":"), ensure_ascii=False
        )

    def build_event(self, record: logging.LogRecord) -> dict[str, JSONValue]:
        event: dict[str, JSONValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": self._scrub_text(record.getMessage()),
            "workflow_id": self._workflow_id,
        }
        correlation = getattr(record, "correlation", None)
        if isinstance(correlation, Mapping):
            event.update({str(key): str(value) for key, value in correlation.items()})

        extras = {
            key: _json_value(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_FIELDS and not key.startswith("_")
        }
        if extras:
            event["fields"] = self._scrub(extras)
        if record.exc_info is not None:
            event["exception"] = self._scrub_text(self.formatException(record.exc_info))
        return event

    def _scrub_text(self, text: str) -> str:
        return _redact_string(text) if self._redact else text

    def _scrub(self, value: JSONValue, key: str | None = None) -> JSONValue:
        if not self._redact:
            return value
        if key is not None and _SENSITIVE_KEY_PATTERN.search(key):
            return _REDACTED_VALUE
        if isinstance(value, str):
            return _redact_string(value)
        if isinstance(value, list):
            return [self._scrub(item) for item in value]
        if isinstance(value, dict):
            return {name: self._scrub(item, name) for name, item in value.items()}
        return value


class _TextFormatter(_JsonLineFormatter):
    """Single-line human rendering of the same event, for ``--verbose`` stderr output."""

    def format(self, record: logging.LogRecord) -> str:
        event = self.build_event(record)
        head = f"{event.pop('timestamp')} {event.pop('level'):<7} {event.pop('logger')}"
        message = event.pop("message")
        tail = " ".join(
            f"{key}={value if isinstance(value, str) else json.dumps(value, sort_keys=True)}"
            for key, value in sorted(event.items())
        )
        return f"{head}: {message}" + (f" [{tail}]" if tail else "")


class StructuredLoggingHandle:
    """Runtime handle for an active structured logging setup."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        log_path: Path,
        queue_handler: logging.Handler,
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
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def shutdown(self) -> None:
        """Drain the queue, detach the handler and close every sink (idempotent)."""

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


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Configure queue-backed structured logging for a single workflow run.

    Any previously active run's handle is shut down first.
    """

    global _ACTIVE_HANDLE
    shutdown_logging()

    workflow_id = config.workflow_id.strip()
    if not workflow_id:
        raise ValueError("workflow_id must not be empty")
    level = _parse_log_level(config.level)

    run_dir = Path(config.base_log_dir) / workflow_id
    run_dir.mkdir(parents=True, exist_ok=True)
    log_path = run_dir / LOG_FILENAME

    json_formatter = _JsonLineFormatter(workflow_id=workflow_id, redact=config.redact_secrets)
    file_sink = logging.FileHandler(log_path, encoding="utf-8")
    file_sink.setFormatter(json_formatter)
    sinks: list[logging.Handler] = [file_sink]
    if config.log_to_stderr:
        stderr_sink = logging.StreamHandler()
        stderr_sink.setFormatter(
            _TextFormatter(workflow_id=workflow_id, redact=config.redact_secrets)
            if config.log_format == "text"
            else json_formatter
        )
        sinks.append(stderr_sink)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_SIZE)
    queue_handler = _CorrelatingQueueHandler(log_queue)
    listener = logging.handlers.QueueListener(log_queue, *sinks)
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        log_path=log_path,
        queue_handler=queue_handler,
        sinks=tuple(sinks),
        listener=listener,
    )
    with _ACTIVE_LOCK:
        _ACTIVE_HANDLE = handle
    return handle


def shutdown_logging(handle: StructuredLoggingHandle | None = None) -> None:
    """Shut down ``handle`` (default: the active one) and close all sinks."""

    global _ACTIVE_HANDLE
    resolved = handle if handle is not None else get_active_logging_handle()
    if resolved is None:
        return
    resolved.shutdown()
    with _ACTIVE_LOCK:
        if _ACTIVE_HANDLE is resolved:
            _ACTIVE_HANDLE = None


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _ACTIVE_LOCK:
        return _ACTIVE_HANDLE


def get_correlation_context() -> dict[str, str]:
    """Return the current correlation context as a plain dictionary."""
    return dict(_CORRELATION.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields (``workflow_id``, ``task_id``, ``check_name``...) in scope.

    A ``None`` value removes the field for the duration of the scope.
    """
    state = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            state.pop(key, None)
        else:
            state[key] = str(value)
    token = _CORRELATION.set(tuple(state.items()))
    try:
        yield
    finally:
        _CORRELATION.reset(token)


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    parsed = logging.getLevelName(value.strip().upper())
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_value(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    return _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)


atexit.register(shutdown_logging)


__all__ = [
    "JSONValue",
    "LOG_FILENAME",
    "LoggingConfig",
    "ROOT_LOGGER_NAME",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "get_active_logging_handle",
    "get_correlation_context",
    "get_decision_logger",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
