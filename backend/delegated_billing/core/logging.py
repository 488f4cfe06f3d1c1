"""Logging setup and per-pass context binding."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import Any

from delegated_billing.core.config import settings

# Attributes every LogRecord carries; anything else was passed via ``extra``.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_entry[key] = value
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


class ContextAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """LoggerAdapter that merges its context into each record's ``extra``
    and prefixes the message so the context is visible in plain-text output.
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        context = dict(self.extra or {})
        kwargs["extra"] = {**context, **kwargs.get("extra", {})}
        if context:
            prefix = " ".join(f"{key}={value}" for key, value in context.items())
            msg = f"[{prefix}] {msg}"
        return msg, kwargs


def bind_logger(
    logger: logging.Logger | logging.LoggerAdapter,  # type: ignore[type-arg]
    **context: Any,
) -> ContextAdapter:
    """Return an adapter that stamps ``context`` on every record.

    Binding an already-bound adapter extends its context instead of nesting
    prefixes.
    """
    if isinstance(logger, ContextAdapter):
        merged = {**(logger.extra or {}), **context}
        return ContextAdapter(logger.logger, merged)
    if isinstance(logger, logging.LoggerAdapter):
        logger = logger.logger
    return ContextAdapter(logger, context)


def setup_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure the root logger for the scheduler and worker processes."""
    resolved_level = (level or ("DEBUG" if settings.DEBUG else settings.LOG_LEVEL)).upper()
    use_json = settings.LOG_JSON if json_output is None else json_output

    handler = logging.StreamHandler(sys.stdout)
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root = logging.getLogger()
    root.setLevel(resolved_level)
    root.handlers.clear()
    root.addHandler(handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
