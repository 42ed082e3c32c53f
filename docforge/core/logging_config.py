"""Structured logging configuration for DocForge.

Log lines carry the context they were emitted in. ``bind_log_context`` pushes
fields onto a contextvar for the duration of a ``with`` block:

- ``request_id``: the HTTP request (request context middleware)
- ``repo_id``: the normalized repository key, i.e. the cache key
- ``run_id``: one pipeline run, including its worker threads
- ``unit_key``: the chapter a writer thread is generating

The JSON formatter emits them as top-level fields; the text formatter appends
them as ``[key=value ...]``.
"""

import contextvars
import json
import logging
import re
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, Optional, TextIO


LOG_CONTEXT_FIELDS = ("request_id", "run_id", "repo_id", "unit_key")

_log_context: contextvars.ContextVar[Dict[str, str]] = contextvars.ContextVar("log_context")


def current_log_context() -> Dict[str, str]:
    """The fields bound in the current context, in ``LOG_CONTEXT_FIELDS`` order."""
    bound = _log_context.get({})
    return {key: bound[key] for key in LOG_CONTEXT_FIELDS if key in bound}


@contextmanager
def bind_log_context(**fields: Optional[str]) -> Iterator[None]:
    """Bind context fields for log records emitted inside the block.

    Empty values are ignored so callers can pass optional ids unconditionally.
    Bindings nest; the outer context is restored on exit.
    """
    unknown = set(fields) - set(LOG_CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log context field(s): {', '.join(sorted(unknown))}")
    merged = dict(_log_context.get({}))
    merged.update({key: str(value) for key, value in fields.items() if value})
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


class _JsonFormatter(logging.Formatter):
    """Emit each log record as a single JSON line.

    Bound context fields come first, then any ``extra`` fields from the record.
    An ``extra`` key never overrides a bound one.
    """

    # Keys that belong to the LogRecord itself and should not leak into output.
    _RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys())

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(current_log_context())

        for key, value in record.__dict__.items():
            if key not in self._RESERVED and key not in payload:
                payload[key] = value

        if record.exc_info and "exc_info" not in payload:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class _TextFormatter(logging.Formatter):
    """Human-readable lines with the bound context appended."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = current_log_context()
        if not context:
            return line
        return line + " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"


# ---------------------------------------------------------------------------
# Secret redaction: keeps provider API keys out of log output
# ---------------------------------------------------------------------------

_SECRET_PATTERNS = [
    re.compile(r'\b(sk-[a-zA-Z0-9_\-]{20,})\b'),         # OpenAI / Anthropic keys
    re.compile(r'\b(or-[a-zA-Z0-9]{20,})\b'),            # OpenRouter keys
    re.compile(r'\b(key-[a-zA-Z0-9]{20,})\b'),           # Generic API keys
    re.compile(r'(?i)(bearer\s+)[a-zA-Z0-9._\-]{20,}'),  # Bearer tokens
    re.compile(                                            # key=value secrets
        r'(?i)((?:api_key|secret|password|token|authorization)[=:]\s*)[^\s,\'"]{8,}'
    ),
]

_REDACTED = "***REDACTED***"


class _SecretFilter(logging.Filter):
    """Redact provider keys from the rendered message and exception text.

    ``known_secrets`` are redacted verbatim (the configured generation key
    need not match any pattern). Messages are rendered before redaction so
    secrets passed as ``%`` arguments are caught too.
    """

    def __init__(self, known_secrets: Iterable[str] = ()):
        super().__init__()
        self._known = tuple(s for s in known_secrets if s and len(s) >= 8)

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._redact(record.getMessage())
        record.args = ()
        if record.exc_text:
            record.exc_text = self._redact(record.exc_text)
        return True

    def _redact(self, text: str) -> str:
        for secret in self._known:
            text = text.replace(secret, _REDACTED)
        for pattern in _SECRET_PATTERNS:
            text = pattern.sub(
                lambda m: m.group(1) + _REDACTED if m.lastindex else _REDACTED,
                text,
            )
        return text


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    stream: Optional[TextIO] = None,
    secrets: Iterable[str] = (),
) -> None:
    """Configure application-wide logging.

    Args:
        log_level: One of DEBUG, INFO, WARNING, ERROR, CRITICAL. Defaults to INFO.
        log_format: ``"json"`` for structured output, ``"text"`` for human-readable.
                    Defaults to ``"json"``.
        stream: Output stream (defaults to stdout; the CLI logs to stderr).
        secrets: Values to redact verbatim, e.g. the configured generation API key.
    """
    level = (log_level or "INFO").upper()
    fmt = (log_format or "json").lower()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(_SecretFilter(secrets))
    handler.setFormatter(_JsonFormatter() if fmt == "json" else _TextFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Reduce noise from third-party libraries.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info("Logging configured", extra={"level": level, "format": fmt})
