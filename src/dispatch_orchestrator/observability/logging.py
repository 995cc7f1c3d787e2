"""
dispatch-orchestrator — structured logging.

File: src/dispatch_orchestrator/observability/logging.py
Last updated: 2026-10-16

Purpose
- Write one JSON object per log line to ``<log_dir>/<run_id>/orchestrator.jsonl``
  (and optionally stdout) for every stdlib or structlog event of a run.

Functional requirements
- Logging never blocks the event loop: records go through a bounded queue to a
  listener thread; overflow drops records and counts them.
- Correlation fields (project, work item, session, trigger key) bound with
  ``correlation_scope`` travel with every record logged inside the scope.
- Secret-looking keys and credential patterns are redacted before a line is written.
- ``structlog.get_logger(__name__)`` events land in the same file; keyword
  arguments appear under ``fields``.
"""

from __future__ import annotations

import atexit
import copy
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "run_id",
    "project_id",
    "work_item",
    "session_ref",
    "event_key",
)

_LOG_FILENAME: Final[str] = "orchestrator.jsonl"
_ROOT_LOGGER_NAME: Final[str] = "dispatch_orchestrator"

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "correlation",
}


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = _ROOT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = _LOG_FILENAME
    log_to_stdout: bool = True
    redact_secrets: bool = True


# ---------------------------------------------------------------------------
# Correlation context
# ---------------------------------------------------------------------------


def get_correlation_context() -> dict[str, str]:
    """Correlation fields bound in the current context (thread or asyncio task)."""

    return {
        key: value
        for key, value in structlog.contextvars.get_contextvars().items()
        if isinstance(value, str)
    }


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """
    Bind correlation fields for everything logged inside the block.

    A ``None`` value hides an outer binding of that key. The previous context is
    restored on exit, including on exceptions and cancellation.
    """

    bound = {key: _require_text(value, key) for key, value in fields.items() if value is not None}
    hidden = [key for key, value in fields.items() if value is None]
    previous = structlog.contextvars.get_contextvars()
    structlog.contextvars.unbind_contextvars(*hidden)
    structlog.contextvars.bind_contextvars(**bound)
    try:
        yield
    finally:
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**previous)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


class SecretRedactor:
    """Replace values under secret-looking keys and credentials embedded in text."""

    DEFAULT_KEY_FRAGMENTS: Final[tuple[str, ...]] = (
        "secret",
        "token",
        "password",
        "api_key",
        "apikey",
        "authorization",
        "credential",
        "cookie",
        "private_key",
    )
    DEFAULT_PATTERNS: Final[tuple[tuple[str, str], ...]] = (
        (
            r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b(\s*[:=]\s*)[^\s,;]+",
            rf"\1\2{REDACTED}",
        ),
        (r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*", f"Bearer {REDACTED}"),
        (r"\b(?:lin_api|ghp|gho)_[A-Za-z0-9_]{16,}\b", REDACTED),
    )

    def __init__(
        self,
        key_fragments: Sequence[str] = DEFAULT_KEY_FRAGMENTS,
        patterns: Sequence[tuple[str, str]] = DEFAULT_PATTERNS,
    ) -> None:
        self._key_fragments = tuple(fragment.lower() for fragment in key_fragments)
        self._patterns = tuple((re.compile(pattern), repl) for pattern, repl in patterns)

    def __call__(self, value: JSONValue) -> JSONValue:
        if isinstance(value, str):
            return self.scrub(value)
        if isinstance(value, list):
            return [self(item) for item in value]
        if isinstance(value, dict):
            return {
                key: REDACTED if self.is_sensitive_key(key) else self(item)
                for key, item in value.items()
            }
        return value

    def is_sensitive_key(self, key: str) -> bool:
        lowered = key.lower()
        return any(fragment in lowered for fragment in self._key_fragments)

    def scrub(self, text: str) -> str:
        for pattern, replacement in self._patterns:
            text = pattern.sub(replacement, text)
        return text


default_log_redactor: Final[SecretRedactor] = SecretRedactor()


def _keep(value: JSONValue) -> JSONValue:
    return value


def to_json_value(value: object) -> JSONValue:
    """Convert an arbitrary ``extra`` value into something ``json.dumps`` accepts."""

    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): to_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((to_json_value(item) for item in value), key=lambda item: json.dumps(item))
    return repr(value)


# ---------------------------------------------------------------------------
# Handlers and formatter
# ---------------------------------------------------------------------------


class JsonLineFormatter(logging.Formatter):
    """Render a prepared record as one canonical JSON object."""

    def __init__(self, *, redactor: LogRedactor, run_id: str) -> None:
        super().__init__()
        self._redactor = redactor
        self._run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, JSONValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": self._text(record.getMessage()),
        }
        line.update(self._correlation(record))

        extras = {
            key: to_json_value(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES
            and key not in CORRELATION_KEYS
            and not key.startswith("_")
        }
        if extras:
            line["fields"] = self._redactor(extras)
        if record.exc_text:
            line["exception"] = self._text(record.exc_text)
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _text(self, text: str) -> str:
        redacted = self._redactor(text)
        return redacted if isinstance(redacted, str) else json.dumps(redacted)

    def _correlation(self, record: logging.LogRecord) -> dict[str, str]:
        merged = {"run_id": self._run_id}
        captured = getattr(record, "correlation", None)
        if isinstance(captured, Mapping):
            merged.update(
                (key, value.strip())
                for key, value in captured.items()
                if isinstance(value, str) and value.strip()
            )
        for key in CORRELATION_KEYS:
            value = getattr(record, key, None)
            if isinstance(value, str) and value.strip():
                merged[key] = value.strip()
        return merged


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Hands records to the listener thread; drops them when the queue is full."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Runs on the logging thread: correlation and exception text must be captured here.
        prepared = copy.copy(record)
        prepared.msg = record.getMessage()
        prepared.args = None
        if record.exc_info:
            prepared.exc_text = logging.Formatter().formatException(record.exc_info)
            prepared.exc_info = None
        prepared.correlation = get_correlation_context()
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class StructuredLoggingHandle:
    """A running logging setup: queue, listener thread and file/stdout sinks."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        run_id: str,
        log_path: Path,
        log_queue: queue.Queue[logging.LogRecord],
        queue_handler: _DroppingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_registered = False


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Start queue-backed JSON logging for one run, replacing any active setup."""

    global _active, _atexit_registered

    run_id = _require_text(config.run_id, "run_id")
    logger_name = _require_text(config.logger_name, "logger_name")
    filename = _require_text(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if isinstance(config.queue_size, bool) or not isinstance(config.queue_size, int):
        raise ValueError("queue_size must be an integer")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _parse_level(config.level)

    shutdown_logging()

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = JsonLineFormatter(
        redactor=default_log_redactor if config.redact_secrets else _keep,
        run_id=run_id,
    )
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False
    logger.addHandler(queue_handler)
    listener.start()

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        log_queue=log_queue,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    with _active_lock:
        _active = handle
        if not _atexit_registered:
            atexit.register(shutdown_logging)
            _atexit_registered = True
    return handle


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
) -> StructuredLoggingHandle:
    """
    Start logging from the ``[observability]`` config section and route structlog into it.

    ``log_dir`` overrides ``observability.log_dir``.
    """

    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else section.get("log_dir", "logs")
    handle = setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else "logs",
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(section.get("log_to_stdout", True)),
        )
    )
    configure_structlog()
    return handle


def configure_structlog() -> None:
    """Make ``structlog.get_logger`` events stdlib records: event name as message, kwargs as extra."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def flush_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    target = handle if handle is not None else get_active_logging_handle()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Drain the queue, stop the listener and close sinks of ``handle`` (default: the active one)."""

    global _active

    target = handle if handle is not None else get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None


def _require_text(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string")
    return value.strip()


def _parse_level(value: int | str) -> int:
    if isinstance(value, bool):
        raise ValueError("level must be int or str")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        level = logging.getLevelNamesMapping().get(value.strip().upper())
        if level is not None:
            return level
    raise ValueError(f"unsupported logging level {value!r}")


__all__ = [
    "CORRELATION_KEYS",
    "JSONScalar",
    "JSONValue",
    "JsonLineFormatter",
    "LogRedactor",
    "LoggingConfig",
    "REDACTED",
    "SecretRedactor",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
    "to_json_value",
]
