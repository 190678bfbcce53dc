"""
Logging configuration with correlation-id stamping.

Every module keeps the usual `logger = logging.getLogger(__name__)`.
Code that runs on behalf of one ingest wraps it with `bind_logger()` so each
record carries the correlation id (and tenant) of that run:

    log = bind_logger(logger, correlation_id, tenant_id=tenant_id)
    log.info("Chunked | doc=%s chunks=%d", asset_id, len(chunks))

    → 2025-08-22 14:30:15,101 INFO ragtime.services.ingestion [AUTO-20250822143015-K3X9QZ] Chunked | ...
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"


class CorrelationIdFilter(logging.Filter):
    """Fill in `correlation_id` for records logged outside a bound adapter."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        return True


class CorrelationLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges the bound fields into each record's `extra`."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def bind_logger(
    logger: logging.Logger | logging.LoggerAdapter,
    correlation_id: str,
    **fields: Any,
) -> CorrelationLoggerAdapter:
    """Return an adapter that stamps `correlation_id` (and `fields`) on every record."""
    base = logger.logger if isinstance(logger, logging.LoggerAdapter) else logger
    return CorrelationLoggerAdapter(base, {"correlation_id": correlation_id, **fields})


def configure_logging(level: str = "INFO") -> None:
    """Install a single stdout handler on the root logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())

    root_logger.setLevel(level.upper())
    root_logger.addHandler(handler)

    # Reduce noise from verbose third-party libraries
    for noisy in ("botocore", "aiobotocore", "urllib3", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
