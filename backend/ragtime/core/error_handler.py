"""
Error classification — raw fault → PipelineError

The classifier is a pure, deterministic policy. Given the same fault and the
same context it always produces the same category, code and retry flag.

Policy (first match wins):
  1. PipelineError          → unchanged, context merged in
  2. CollaboratorError      → the category the adapter decided
  3. storage / connection   → INFRASTRUCTURE, retryable
  4. external service + HTTP status (attrs or "<Service> API error: <n>")
                            → EXTERNAL_API, retryable iff status >= 500
     bare timeout           → EXTERNAL_API, status 504
  5. malformed input words  → VALIDATION
  6. anything else          → INFRASTRUCTURE, not retryable

Steps 3–5 inspect message text and are only reached for faults that did not
come through an adapter, e.g. a bug surfacing as a plain exception.
"""

from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from typing import AsyncIterator

from ragtime.core.errors import (
    CollaboratorError,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    PipelineError,
    authentication_error,
    authorization_error,
    business_logic_error,
    external_api_error,
    infrastructure_error,
    not_found_error,
    rate_limit_error,
    validation_error,
)

logger = logging.getLogger(__name__)

_STORAGE_KEYWORDS = (
    "database", "dynamodb", "s3", "bucket", "connection", "postgres", "sql",
    "storage",
)
_VALIDATION_KEYWORDS = (
    "required", "invalid", "must be", "missing", "too large", "too small",
)
_EXTERNAL_SERVICES = ("openai", "stripe", "twilio", "sendgrid")

_API_ERROR_RE = re.compile(r"(?P<service>[A-Za-z][\w .-]*?) API error: (?P<status>\d{3})")


class ErrorClassifier:
    """Map any fault raised during ingestion to a `PipelineError`."""

    def classify(self, fault: BaseException, context: ErrorContext) -> PipelineError:
        if isinstance(fault, PipelineError):
            return fault.with_context(context)

        if isinstance(fault, CollaboratorError):
            return self._from_collaborator(fault, context)

        message = str(fault) or type(fault).__name__
        lowered = message.lower()

        if isinstance(fault, ConnectionError) or any(k in lowered for k in _STORAGE_KEYWORDS):
            return infrastructure_error(
                f"Infrastructure error: {message}", context, original=fault, retryable=True,
            )

        service, status_code = _external_status(fault, message)
        if service is not None and status_code is not None:
            return external_api_error(service, status_code, message, context, original=fault)

        if isinstance(fault, TimeoutError):
            return external_api_error(
                service or "HTTP", 504, f"Request timed out: {message}", context, original=fault,
            )

        if any(k in lowered for k in _VALIDATION_KEYWORDS):
            return validation_error(message, context)

        return infrastructure_error(
            f"Unexpected error: {message}", context, original=fault, retryable=False,
        )

    def _from_collaborator(self, fault: CollaboratorError, context: ErrorContext) -> PipelineError:
        category = fault.category
        context = context.with_metadata(service=fault.service)
        message = str(fault)

        if category is ErrorCategory.EXTERNAL_API:
            return external_api_error(
                fault.service, fault.status_code or 500, message, context, original=fault,
            )
        if category is ErrorCategory.RATE_LIMIT:
            return rate_limit_error(context, retry_after=fault.retry_after)
        if category is ErrorCategory.VALIDATION:
            return validation_error(message, context)
        if category is ErrorCategory.BUSINESS_LOGIC:
            code = fault.code or "BUSINESS_RULE_VIOLATION"
            return business_logic_error(code, message, context, original=fault)
        if category is ErrorCategory.NOT_FOUND:
            return not_found_error(fault.service, fault.detail, context)
        if category is ErrorCategory.AUTHENTICATION:
            return authentication_error(message, context)
        if category is ErrorCategory.AUTHORIZATION:
            return authorization_error(message, context, resource=fault.service)

        retryable = True if fault.retryable is None else fault.retryable
        return infrastructure_error(message, context, original=fault, retryable=retryable)

    # ------------------------------------------------------------------
    # Logging policy
    # ------------------------------------------------------------------

    @staticmethod
    def should_log(error: PipelineError) -> bool:
        return not (
            error.category is ErrorCategory.VALIDATION
            and error.severity is ErrorSeverity.LOW
        )

    def log_error(self, error: PipelineError, log: logging.Logger | logging.LoggerAdapter = logger) -> None:
        if not self.should_log(error):
            return

        if error.severity is ErrorSeverity.CRITICAL:
            emit = log.critical
        elif error.severity is ErrorSeverity.HIGH:
            emit = log.error
        else:
            emit = log.warning

        emit(
            "Pipeline error | code=%s category=%s operation=%s retryable=%s message=%s",
            error.code,
            error.category.value,
            error.context.operation,
            error.retryable,
            error.message,
            extra={"correlation_id": error.context.correlation_id or "-"},
            exc_info=error.original if error.severity is not ErrorSeverity.LOW else None,
        )

    @staticmethod
    def is_retryable(error: PipelineError) -> bool:
        return error.retryable

    # ------------------------------------------------------------------
    # Collaborator call sites
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def translate(
        self,
        context:  ErrorContext,
        fallback: ErrorCategory,
        service:  str,
    ) -> AsyncIterator[ErrorContext]:
        """
        Re-raise anything raised inside the block as a classified PipelineError.

        Faults the adapters did not already type are wrapped as a
        CollaboratorError of the `fallback` category first.
        """
        try:
            yield context
        except (PipelineError, CollaboratorError) as exc:
            raise self.classify(exc, context) from exc
        except Exception as exc:
            wrapped = CollaboratorError(
                fallback,
                service,
                str(exc) or type(exc).__name__,
                status_code=504 if isinstance(exc, TimeoutError) else None,
                code=f"{context.operation.upper()}_FAILED",
            )
            raise self.classify(wrapped, context) from exc


def _external_status(fault: BaseException, message: str) -> tuple[str | None, int | None]:
    """Service name and HTTP status for faults raised by an external client."""
    status_code = getattr(fault, "status_code", None) or getattr(fault, "status", None)
    service = getattr(fault, "service", None)

    if service is None:
        lowered = message.lower()
        service = next((s.capitalize() for s in _EXTERNAL_SERVICES if s in lowered), None)
        if service == "Openai":
            service = "OpenAI"

    match = _API_ERROR_RE.search(message)
    if match:
        service = service or match.group("service").strip()
        status_code = status_code or int(match.group("status"))

    if not isinstance(status_code, int):
        status_code = None
    return service, status_code
