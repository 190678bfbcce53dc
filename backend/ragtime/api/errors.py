"""
PipelineError → HTTP response

Body (camelCase, see ErrorResponse):

    {
      "error": {
        "code": "VALIDATION_FAILED",
        "message": "...",
        "category": "VALIDATION",
        "retryable": false,
        "context": {"correlationId": "...", "timestamp": "...", "operation": "..."}
      },
      "details": {...},          # only when debug detail is enabled
      "timestamp": "..."
    }

`error.message` is the caller-facing user_message; the raw internal message
only appears as `details.originalMessage`.

Headers: X-Correlation-ID always; Retry-After on 429 when a hint exists.
"""

from __future__ import annotations

import traceback
from datetime import datetime, timezone

from fastapi.responses import JSONResponse

from ragtime.core.correlation import CORRELATION_HEADER
from ragtime.core.errors import PipelineError
from ragtime.schemas.documents import (
    ErrorBody,
    ErrorContextBody,
    ErrorResponse,
)


def error_response(error: PipelineError, *, include_details: bool = False) -> JSONResponse:
    ctx = error.context
    details = None
    if include_details:
        original = error.original or error.__cause__
        details = {
            "originalMessage": str(original) if original is not None else error.message,
            "severity":        error.severity.value,
            "userMessage":     error.user_message,
            "stack":           "".join(traceback.format_exception(original)) if original is not None else None,
            "metadata":        dict(ctx.metadata),
        }

    body = ErrorResponse(
        error=ErrorBody(
            code=error.code,
            message=error.user_message or error.message,
            category=error.category.value,
            retryable=error.retryable,
            context=ErrorContextBody(
                correlation_id=ctx.correlation_id,
                timestamp=ctx.timestamp,
                operation=ctx.operation,
            ),
        ),
        details=details,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )

    headers: dict[str, str] = {}
    if ctx.correlation_id:
        headers[CORRELATION_HEADER] = ctx.correlation_id
    if error.http_status_code == 429 and error.retry_after:
        headers["Retry-After"] = str(error.retry_after)

    return JSONResponse(
        status_code=error.http_status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=headers,
    )
