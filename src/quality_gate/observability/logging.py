"""
Per-run JSON-lines logging.

Each run writes ``<log_dir>/<run_id>/run.jsonl``. Records travel through a
:class:`~logging.handlers.QueueListener` thread, so stage tasks never block on
file IO. Stage, job and requirement correlation comes from
:func:`correlation_scope` and is written as top-level keys. Anything passed via
``extra`` (or as structlog key/values) lands under ``fields``. Secrets are
masked before a line is written unless ``redact_secrets`` is off.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import queue
import re
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Final, cast

import structlog

from quality_gate.constants import DEFAULT_LOG_DIR

LOG_FILENAME: Final[str] = "run.jsonl"
ROOT_LOGGER: Final[str] = "quality_gate"
CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "job", "stage", "requirement")

_REDACTED: Final[str] = "***REDACTED***"
_SECRET_KEY: Final[re.Pattern[str]] = re.compile(
    r"(?i)secret|token|password|passphrase|api_?key|authorization|credential|cookie|private_key"
)
_INLINE_SECRET: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b"
    r"\s*([:=])\s*([^\s,;]+)"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_GITHUB_TOKEN: Final[re.Pattern[str]] = re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b")

# Attributes every LogRecord carries; the rest came from ``extra``.
_RECORD_ATTRS: Final[frozenset[str]] = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "correlation",
    "taskName",
}

_correlation: contextvars.ContextVar[Mapping[str, str]] = contextvars.ContextVar(
    "quality_gate_correlation", default=MappingProxyType({})
)
_active: RunLog | None = None
_atexit_registered = False


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation keys for every record logged inside the block.

    ``None`` unbinds a key inherited from an enclosing scope.
    """

    merged = dict(_correlation.get())
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
        elif not value.strip():
            raise ValueError(f"correlation value for {key} must not be empty")
        else:
            merged[key] = value.strip()
    token = _correlation.set(MappingProxyType(merged))
    try:
        yield
    finally:
        _correlation.reset(token)


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


def default_log_redactor(value: object) -> object:
    """Mask values under secret-looking keys and inline credentials, recursively."""

    if isinstance(value, str):
        masked = _INLINE_SECRET.sub(lambda m: f"{m.group(1)}{m.group(2)}{_REDACTED}", value)
        masked = _BEARER.sub(f"Bearer {_REDACTED}", masked)
        return _GITHUB_TOKEN.sub(_REDACTED, masked)
    if isinstance(value, Mapping):
        return {
            str(key): _REDACTED if _SECRET_KEY.search(str(key)) else default_log_redactor(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [default_log_redactor(item) for item in value]
    return value


class JsonLinesFormatter(logging.Formatter):
    """One sorted JSON object per record."""

    def __init__(self, *, run_id: str, redact: bool = True) -> None:
        super().__init__()
        self._run_id = run_id
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        correlation: dict[str, str] = {"run_id": self._run_id}
        correlation.update(getattr(record, "correlation", {}))
        fields: dict[str, object] = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            if key in CORRELATION_KEYS and isinstance(value, str) and value:
                correlation[key] = value
            else:
                fields[key] = value

        event: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": self._mask(record.getMessage()),
            **correlation,
        }
        if fields:
            event["fields"] = self._mask(fields)
        return json.dumps(event, sort_keys=True, default=_json_default, ensure_ascii=False)

    def _mask(self, value: object) -> object:
        return default_log_redactor(value) if self._redact else value


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener thread cannot see the caller's contextvar.
        record.correlation = get_correlation_context()
        return cast("logging.LogRecord", super().prepare(record))


@dataclass(slots=True)
class RunLog:
    """The log sink of one pipeline run."""

    run_id: str
    log_path: Path
    logger: logging.Logger
    _handler: logging.Handler
    _listener: logging.handlers.QueueListener
    _sinks: tuple[logging.Handler, ...]
    closed: bool = False

    def close(self) -> None:
        """Write out every queued record and release the sinks."""

        if self.closed:
            return
        self._listener.stop()
        self.logger.removeHandler(self._handler)
        for sink in self._sinks:
            sink.close()
        self.closed = True


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = ROOT_LOGGER,
) -> RunLog:
    """Start the JSON-lines sink for ``run_id`` from an ``[observability]`` section.

    A previously active run log is closed first.
    """

    global _active, _atexit_registered
    cfg = observability_config or {}
    run_id = run_id.strip()
    if not run_id:
        raise ValueError("run_id must not be empty")
    level = _parse_level(cfg.get("log_level", "INFO"))

    run_dir = Path(log_dir if log_dir is not None else DEFAULT_LOG_DIR) / run_id
    run_dir.mkdir(parents=True, exist_ok=True)
    formatter = JsonLinesFormatter(run_id=run_id, redact=bool(cfg.get("redact_secrets", True)))
    sinks: list[logging.Handler] = [logging.FileHandler(run_dir / LOG_FILENAME, encoding="utf-8")]
    if cfg.get("log_to_stdout", False):
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setFormatter(formatter)

    shutdown_logging()
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    log_queue: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
    handler = _CorrelatingQueueHandler(log_queue)
    listener = logging.handlers.QueueListener(log_queue, *sinks)
    listener.start()
    logger.addHandler(handler)
    configure_structlog()

    _active = RunLog(
        run_id=run_id,
        log_path=run_dir / LOG_FILENAME,
        logger=logger,
        _handler=handler,
        _listener=listener,
        _sinks=tuple(sinks),
    )
    if not _atexit_registered:
        atexit.register(shutdown_logging)
        _atexit_registered = True
    return _active


def configure_structlog() -> None:
    """Send structlog events through the stdlib loggers configured above."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def shutdown_logging(run_log: RunLog | None = None) -> None:
    """Close ``run_log``, or the active run log when none is given."""

    global _active
    target = run_log if run_log is not None else _active
    if target is None:
        return
    target.close()
    if _active is target:
        _active = None


def active_run_log() -> RunLog | None:
    return _active


def _parse_level(value: object) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        parsed = logging.getLevelName(value.strip().upper())
        if isinstance(parsed, int):
            return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _json_default(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(str(item) for item in value)
    return str(value)


__all__ = [
    "CORRELATION_KEYS",
    "LOG_FILENAME",
    "JsonLinesFormatter",
    "RunLog",
    "active_run_log",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "setup_logging",
    "shutdown_logging",
]
