"""
Correlation IDs — one trace identifier per ingest

Format:  PREFIX-YYYYMMDDHHMMSS-RANDOM6
         e.g. AUTO-20250822143015-K3X9QZ

The identifier is generated once per pipeline invocation (or lifted from the
inbound request) and then passed by value to every stage, every collaborator
call and every log record. It is never regenerated mid-pipeline.

Extraction order (first hit wins):
  1. Explicit header        X-Correlation-ID, then X-Request-ID (any case)
  2. Direct field           correlationId / correlation_id
  3. SNS message attribute  Records[0].Sns.MessageAttributes["X-Correlation-ID"].Value
  4. SQS message attribute  Records[0].messageAttributes["X-Correlation-ID"].stringValue
  5. DynamoDB stream image  Records[0].dynamodb.NewImage.correlation_id.S

Inbound values must match `[A-Za-z0-9_.:-]{1,64}` (the width of the
documents.correlation_id column). A malformed value is treated as absent and
the next source is tried.
"""

from __future__ import annotations

import re
import secrets
import string
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

CORRELATION_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER  = "X-Request-ID"

DEFAULT_PREFIX = "PROC"
AUTO_PREFIX    = "AUTO"

_RANDOM_ALPHABET = string.ascii_uppercase + string.digits
_RANDOM_LENGTH   = 6

MAX_CORRELATION_ID_LENGTH = 64
_VALID_ID = re.compile(r"^[A-Za-z0-9_.:-]{1,64}$")


def new_correlation_id(prefix: str = DEFAULT_PREFIX) -> str:
    """Generate a fresh `PREFIX-YYYYMMDDHHMMSS-RANDOM6` identifier (UTC)."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    suffix = "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(_RANDOM_LENGTH))
    return f"{prefix}-{timestamp}-{suffix}"


def is_valid_correlation_id(value: Any) -> bool:
    return isinstance(value, str) and _VALID_ID.fullmatch(value) is not None


def resolve_correlation_id(candidate: str | None, prefix: str = AUTO_PREFIX) -> str:
    """`candidate` when it is well formed, otherwise a freshly generated id."""
    if is_valid_correlation_id(candidate):
        return candidate
    return new_correlation_id(prefix)


def correlation_headers(correlation_id: str) -> dict[str, str]:
    """Outbound headers that carry the id to downstream services."""
    return {
        CORRELATION_HEADER: correlation_id,
        REQUEST_ID_HEADER:  correlation_id,
    }


def extract_correlation_id(source: Mapping[str, Any] | None) -> str | None:
    """
    Pull a correlation id out of inbound headers or an event payload.

    `source` may be a plain header mapping (dict, Starlette Headers) or an
    event dict that nests its headers under "headers". Returns None when no
    well-formed id is present.
    """
    if not source:
        return None

    headers = source.get("headers")
    if isinstance(headers, Mapping):
        found = _from_headers(headers)
        if found:
            return found

    found = _from_headers(source)
    if found:
        return found

    for field in ("correlationId", "correlation_id"):
        value = source.get(field)
        if is_valid_correlation_id(value):
            return value

    return _from_records(source.get("Records"))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _from_headers(headers: Mapping[str, Any]) -> str | None:
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in (CORRELATION_HEADER, REQUEST_ID_HEADER):
        value = lowered.get(name.lower())
        if is_valid_correlation_id(value):
            return value
    return None


def _from_records(records: Any) -> str | None:
    if not isinstance(records, list) or not records:
        return None
    first = records[0]
    if not isinstance(first, Mapping):
        return None

    sns = first.get("Sns")
    if isinstance(sns, Mapping):
        attr = (sns.get("MessageAttributes") or {}).get(CORRELATION_HEADER)
        if isinstance(attr, Mapping) and is_valid_correlation_id(attr.get("Value")):
            return attr["Value"]

    sqs_attrs = first.get("messageAttributes")
    if isinstance(sqs_attrs, Mapping):
        attr = sqs_attrs.get(CORRELATION_HEADER)
        if isinstance(attr, Mapping) and is_valid_correlation_id(attr.get("stringValue")):
            return attr["stringValue"]

    stream = first.get("dynamodb")
    if isinstance(stream, Mapping):
        image = stream.get("NewImage") or {}
        attr = image.get("correlation_id")
        if isinstance(attr, Mapping) and is_valid_correlation_id(attr.get("S")):
            return attr["S"]

    return None
