"""Logging setup for the gateway.

Records are written to stdout, one JSON object per line. Structured data is
passed as ``extra={"context": {...}}``; the routing identifiers (instance,
event id, sink, chatbot kind, remote jid) are lifted out of the context to
top-level keys so log search can filter on them directly.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

ROUTING_KEYS = ("instance", "event_id", "sink", "kind", "remote_jid")

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "websockets")


class GatewayJSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        context = dict(getattr(record, "context", None) or {})
        for key in ROUTING_KEYS:
            if key in context:
                entry[key] = context.pop(key)
        if context:
            entry["context"] = context

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        # payload fragments can hold bytes or datetimes
        return json.dumps(entry, ensure_ascii=False, default=str)


class GatewayTextFormatter(logging.Formatter):
    """Single-line text output for local runs: ``LEVEL logger [A/evt] msg``."""

    def format(self, record: logging.LogRecord) -> str:
        context = getattr(record, "context", None) or {}
        tags = "/".join(str(context[key]) for key in ROUTING_KEYS if context.get(key))
        line = f"{record.levelname:<7} {record.name}"
        if tags:
            line += f" [{tags}]"
        line += f" {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(GatewayTextFormatter() if fmt == "text" else GatewayJSONFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"evogate.{name}")


class ContextAdapter(logging.LoggerAdapter):
    """Merges identifiers bound at creation with a per-call ``context=`` kwarg."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        merged = {**self.extra, **(kwargs.pop("context", None) or {})}
        if merged:
            kwargs["extra"] = {"context": merged}
        return msg, kwargs


def bind_logger(name: str, **context: Any) -> ContextAdapter:
    return ContextAdapter(get_logger(name), context)
