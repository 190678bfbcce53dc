"""
Pipeline Error Taxonomy
═══════════════════════

Every fault that crosses a collaborator boundary ends up as exactly one
`PipelineError`: a single exception type tagged with a category. There is no
subclass per category; the factory functions below are the only intended
constructors, and each one fixes the category's HTTP status, severity and
retry policy:

  Category         HTTP   Severity        Retryable
  ───────────────  ─────  ──────────────  ─────────────────────────────
  VALIDATION       400    LOW             no
  BUSINESS_LOGIC   422    MEDIUM          no
  INFRASTRUCTURE   500    HIGH            yes (unless told otherwise)
  EXTERNAL_API     502    MEDIUM          yes   (remote answered 5xx)
                   400    HIGH            no    (remote answered 4xx)
  AUTHENTICATION   401    MEDIUM          no
  AUTHORIZATION    403    MEDIUM          no
  NOT_FOUND        404    LOW             no
  RATE_LIMIT       429    LOW             yes   (carries retry_after)

`CollaboratorError` is what adapters (S3, SQL, pgvector, OpenAI) raise at
their call sites: the library exception is wrapped with the category and the
service name right where it is caught, so the classifier never has to guess
from message text.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    VALIDATION     = "VALIDATION"
    BUSINESS_LOGIC = "BUSINESS_LOGIC"
    INFRASTRUCTURE = "INFRASTRUCTURE"
    EXTERNAL_API   = "EXTERNAL_API"
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION  = "AUTHORIZATION"
    RATE_LIMIT     = "RATE_LIMIT"
    NOT_FOUND      = "NOT_FOUND"


class ErrorSeverity(str, Enum):
    LOW      = "LOW"
    MEDIUM   = "MEDIUM"
    HIGH     = "HIGH"
    CRITICAL = "CRITICAL"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ErrorContext:
    """Where and for whom a fault happened."""
    operation:      str
    correlation_id: str | None = None
    tenant_id:      str | None = None
    timestamp:      str = field(default_factory=_utcnow_iso)
    metadata:       dict[str, Any] = field(default_factory=dict)

    def with_metadata(self, **extra: Any) -> "ErrorContext":
        return replace(self, metadata={**self.metadata, **extra})

    def merged(self, other: "ErrorContext") -> "ErrorContext":
        """Fill ids from `other` where missing here; `other` metadata wins."""
        return replace(
            self,
            correlation_id=other.correlation_id or self.correlation_id,
            tenant_id=other.tenant_id or self.tenant_id,
            metadata={**self.metadata, **other.metadata},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlationId": self.correlation_id,
            "operation":     self.operation,
            "timestamp":     self.timestamp,
            "tenantId":      self.tenant_id,
            "metadata":      dict(self.metadata),
        }


# ---------------------------------------------------------------------------
# PipelineError — the classified fault
# ---------------------------------------------------------------------------

class PipelineError(Exception):
    """
    Typed, categorized fault returned to callers.

    Read-only after construction. Use the module-level factories
    (`validation_error`, `infrastructure_error`, …) rather than calling
    this constructor directly.
    """

    def __init__(
        self,
        *,
        code:             str,
        category:         ErrorCategory,
        severity:         ErrorSeverity,
        message:          str,
        context:          ErrorContext,
        http_status_code: int,
        retryable:        bool,
        user_message:     str | None = None,
        original:         BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self._code             = code
        self._category         = category
        self._severity         = severity
        self._message          = message
        self._context          = context
        self._http_status_code = http_status_code
        self._retryable        = retryable
        self._user_message     = user_message
        self._original         = original

    @property
    def code(self) -> str:
        return self._code

    @property
    def category(self) -> ErrorCategory:
        return self._category

    @property
    def severity(self) -> ErrorSeverity:
        return self._severity

    @property
    def message(self) -> str:
        return self._message

    @property
    def context(self) -> ErrorContext:
        return self._context

    @property
    def http_status_code(self) -> int:
        return self._http_status_code

    @property
    def retryable(self) -> bool:
        return self._retryable

    @property
    def user_message(self) -> str | None:
        return self._user_message

    @property
    def original(self) -> BaseException | None:
        return self._original

    @property
    def retry_after(self) -> int | None:
        return self._context.metadata.get("retry_after")

    def with_context(self, context: ErrorContext) -> "PipelineError":
        """Copy of this error whose context is merged with `context`."""
        clone = PipelineError(
            code=self._code,
            category=self._category,
            severity=self._severity,
            message=self._message,
            context=self._context.merged(context),
            http_status_code=self._http_status_code,
            retryable=self._retryable,
            user_message=self._user_message,
            original=self._original,
        )
        clone.__cause__ = self.__cause__
        clone.__traceback__ = self.__traceback__
        return clone

    def to_dict(self) -> dict[str, Any]:
        return {
            "code":           self._code,
            "category":       self._category.value,
            "severity":       self._severity.value,
            "message":        self._message,
            "userMessage":    self._user_message,
            "httpStatusCode": self._http_status_code,
            "retryable":      self._retryable,
            "context":        self._context.to_dict(),
        }

    def __repr__(self) -> str:
        return (
            f"<PipelineError code={self._code} category={self._category.value} "
            f"status={self._http_status_code} retryable={self._retryable}>"
        )


# ---------------------------------------------------------------------------
# CollaboratorError — typed wrap raised by adapters at the call site
# ---------------------------------------------------------------------------

class CollaboratorError(Exception):
    """
    A collaborator call failed.

    Raised by adapters with the category already decided. `status_code` is
    the remote's HTTP-like status where one exists; `retryable=None` lets the
    category default decide.
    """

    def __init__(
        self,
        category:    ErrorCategory,
        service:     str,
        detail:      str,
        *,
        status_code: int | None = None,
        retryable:   bool | None = None,
        retry_after: int | None = None,
        code:        str | None = None,
    ) -> None:
        super().__init__(f"{service}: {detail}")
        self.code        = code
        self.category    = category
        self.service     = service
        self.detail      = detail
        self.status_code = status_code
        self.retryable   = retryable
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Factories — one per category
# ---------------------------------------------------------------------------

def validation_error(
    message: str,
    context: ErrorContext,
    details: dict[str, Any] | None = None,
    user_message: str | None = None,
) -> PipelineError:
    """`user_message` names the input problem when the caller wrote `message` itself."""
    if details:
        context = context.with_metadata(validation_details=details)
    return PipelineError(
        code="VALIDATION_FAILED",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.LOW,
        message=message,
        context=context,
        http_status_code=400,
        retryable=False,
        user_message=user_message or "Please check your input and try again",
    )


def business_logic_error(
    code: str,
    message: str,
    context: ErrorContext,
    user_message: str | None = None,
    original: BaseException | None = None,
) -> PipelineError:
    return PipelineError(
        code=code,
        category=ErrorCategory.BUSINESS_LOGIC,
        severity=ErrorSeverity.MEDIUM,
        message=message,
        context=context,
        http_status_code=422,
        retryable=False,
        user_message=user_message or "Unable to complete the requested operation",
        original=original,
    )


def infrastructure_error(
    message: str,
    context: ErrorContext,
    original: BaseException | None = None,
    retryable: bool = True,
) -> PipelineError:
    return PipelineError(
        code="INFRASTRUCTURE_ERROR",
        category=ErrorCategory.INFRASTRUCTURE,
        severity=ErrorSeverity.HIGH,
        message=message,
        context=context,
        http_status_code=500,
        retryable=retryable,
        user_message="A temporary system error occurred. Please try again later",
        original=original,
    )


def external_api_error(
    service: str,
    status_code: int,
    message: str,
    context: ErrorContext,
    original: BaseException | None = None,
) -> PipelineError:
    retryable = status_code >= 500
    return PipelineError(
        code=f"EXTERNAL_API_ERROR_{_code_token(service)}",
        category=ErrorCategory.EXTERNAL_API,
        severity=ErrorSeverity.MEDIUM if retryable else ErrorSeverity.HIGH,
        message=message,
        context=context.with_metadata(service=service, external_status_code=status_code),
        http_status_code=400 if 400 <= status_code < 500 else 502,
        retryable=retryable,
        user_message=(
            "External service temporarily unavailable. Please try again later"
            if retryable
            else "External service request failed. Please check your request"
        ),
        original=original,
    )


def authentication_error(message: str, context: ErrorContext) -> PipelineError:
    return PipelineError(
        code="AUTHENTICATION_FAILED",
        category=ErrorCategory.AUTHENTICATION,
        severity=ErrorSeverity.MEDIUM,
        message=message,
        context=context,
        http_status_code=401,
        retryable=False,
        user_message="Authentication failed. Please check your credentials",
    )


def authorization_error(
    message: str,
    context: ErrorContext,
    resource: str | None = None,
) -> PipelineError:
    return PipelineError(
        code="AUTHORIZATION_FAILED",
        category=ErrorCategory.AUTHORIZATION,
        severity=ErrorSeverity.MEDIUM,
        message=message,
        context=context.with_metadata(resource=resource),
        http_status_code=403,
        retryable=False,
        user_message="Access denied. You do not have permission to perform this action",
    )


def not_found_error(resource: str, identifier: str, context: ErrorContext) -> PipelineError:
    return PipelineError(
        code="RESOURCE_NOT_FOUND",
        category=ErrorCategory.NOT_FOUND,
        severity=ErrorSeverity.LOW,
        message=f"{resource} with identifier '{identifier}' was not found",
        context=context.with_metadata(resource=resource, identifier=identifier),
        http_status_code=404,
        retryable=False,
        user_message=f"The requested {resource.lower()} could not be found",
    )


def rate_limit_error(context: ErrorContext, retry_after: int | None = None) -> PipelineError:
    when = f"after {retry_after} seconds" if retry_after else "later"
    return PipelineError(
        code="RATE_LIMIT_EXCEEDED",
        category=ErrorCategory.RATE_LIMIT,
        severity=ErrorSeverity.LOW,
        message="Rate limit exceeded",
        context=context.with_metadata(retry_after=retry_after),
        http_status_code=429,
        retryable=True,
        user_message=f"Too many requests. Please try again {when}",
    )


def _code_token(service: str) -> str:
    token = "".join(ch if ch.isalnum() else "_" for ch in service.upper())
    return token.strip("_") or "UNKNOWN"
