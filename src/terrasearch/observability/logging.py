"""Log formatting for hosts embedding terrasearch and for the CLI.

Records render as one JSON object per line (``JsonFormatter``) or as plain
text (``PlainFormatter``). Both show the index bound to the current context,
so lines from a host searching several indices can be told apart.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
import logging
from pathlib import Path
import sys
from typing import IO, TYPE_CHECKING, Any

import orjson

from terrasearch.observability.context import get_trace_context


if TYPE_CHECKING:
    from terrasearch.config import Settings


PLAIN_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def _level(name: str) -> int:
    resolved = logging.getLevelName(name.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


class JsonFormatter(logging.Formatter):
    """One JSON line per record with trace ids, the bound index and ``extra`` fields.

    Sensitive ``extra`` keys are masked and long values clipped, since
    queries and document excerpts end up in log fields.
    """

    sensitive_keys = frozenset({"password", "token", "api_key", "secret", "authorization"})
    message_limit = 2000
    field_limit = 500

    def format(self, record: logging.LogRecord) -> str:
        context = get_trace_context()
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": _clip(record.getMessage(), self.message_limit),
            "trace_id": context.get("trace_id", ""),
            "span_id": context.get("span_id", ""),
        }
        parent, _, component = record.name.rpartition(".")
        if parent:
            entry["component"] = component
        for key in ("index", "operation"):
            if context.get(key):
                entry[key] = context[key]
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(self._extra_fields(record))
        return orjson.dumps(entry, default=self._json_default).decode()

    def _extra_fields(self, record: logging.LogRecord) -> dict[str, Any]:
        fields = {}
        for key, value in vars(record).items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            if key.lower() in self.sensitive_keys:
                value = "[REDACTED]"
            elif isinstance(value, str):
                value = _clip(value, self.field_limit)
            fields[key] = value
        return fields

    @staticmethod
    def _json_default(value: Any) -> Any:
        if isinstance(value, (set, frozenset)):
            try:
                return sorted(value)
            except TypeError:
                return list(value)
        if isinstance(value, (bytes, bytearray)):
            return value.decode("utf-8", errors="replace")
        if isinstance(value, (Path, Exception)):
            return str(value)
        return repr(value)


class PlainFormatter(logging.Formatter):
    """Human readable lines; appends ``index=<name>`` while an index is bound."""

    def __init__(self) -> None:
        super().__init__(PLAIN_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        index = get_trace_context().get("index")
        return f"{line} index={index}" if index else line


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    *,
    logger_levels: Mapping[str, str] | None = None,
    stream: IO[str] | None = None,
) -> logging.Handler:
    """Replace the root handlers with a single stream handler and return it.

    Args:
        level: Root log level name, case-insensitive.
        json_output: JSON lines when True, plain text otherwise.
        logger_levels: Per-logger level overrides, e.g. ``{"terrasearch.services": "DEBUG"}``.
        stream: Destination, stdout by default.
    """
    root = logging.getLogger()
    root.setLevel(_level(level))
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter() if json_output else PlainFormatter())
    root.addHandler(handler)

    for name, name_level in (logger_levels or {}).items():
        logging.getLogger(name).setLevel(_level(name_level))
    return handler


def configure_logging_from_settings(settings: Settings, *, stream: IO[str] | None = None) -> logging.Handler:
    """``configure_logging`` driven by ``TERRASEARCH_LOG_LEVEL`` and ``TERRASEARCH_LOG_JSON``."""
    return configure_logging(settings.get_log_level(), settings.log_json, stream=stream)
