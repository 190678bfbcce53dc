"""
Embedding Client  —  One Batch Call per Document
══════════════════════════════════════════════════

The pipeline embeds every chunk of a document in a single request:

    texts  = [chunk.content for chunk in chunks]
    result = await embedder.embed(texts, correlation_id=cid)
    # → list[Embedding] in the same order, one per text

There is no retry loop here. A failed call is wrapped as a
`CollaboratorError` and the pipeline marks the document FAILED; callers
decide whether to retry from `PipelineError.retryable`.

Error mapping (openai v1 exceptions → CollaboratorError):
  RateLimitError      → RATE_LIMIT        (retry-after header forwarded)
  APITimeoutError     → EXTERNAL_API 504
  APIConnectionError  → EXTERNAL_API 503
  APIStatusError      → EXTERNAL_API <status>   (4xx not retryable)
  malformed response  → EXTERNAL_API 502

Token accounting:
  OpenAI reports one total for the batch. It is spread across the inputs
  as floor(total / n), with the remainder going to the first inputs, so the
  per-chunk counts always add up to the reported total.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from ragtime.core.correlation import correlation_headers
from ragtime.core.errors import CollaboratorError, ErrorCategory

logger = logging.getLogger(__name__)

SERVICE_NAME = "OpenAI"


@dataclass(frozen=True)
class Embedding:
    vector: list[float]
    tokens: int


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class EmbeddingClientBase(ABC):
    """Batch text → vector collaborator."""

    service_name: str = "embedding"
    model:        str = ""
    dimensions:   int = 0

    @abstractmethod
    async def embed(self, texts: Sequence[str], *, correlation_id: str) -> list[Embedding]:
        """
        Embed `texts` in one call, preserving order.
        Raises CollaboratorError on any failure.
        """


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------

class OpenAIEmbeddingClient(EmbeddingClientBase):
    """
    AsyncOpenAI-backed embedder.

    The AsyncOpenAI client is built once at startup (ragtime.main) and
    shared; this class only holds a reference to it.
    """

    service_name = SERVICE_NAME

    def __init__(
        self,
        client:     AsyncOpenAI,
        model:      str   = "text-embedding-3-small",
        dimensions: int   = 1536,
        timeout:    float = 60.0,
    ) -> None:
        self._client    = client
        self.model      = model
        self.dimensions = dimensions
        self._timeout   = timeout

    async def embed(self, texts: Sequence[str], *, correlation_id: str) -> list[Embedding]:
        if not texts:
            return []

        kwargs: dict = {
            "model":         self.model,
            "input":         list(texts),
            "timeout":       self._timeout,
            "extra_headers": correlation_headers(correlation_id),
        }
        # dimensions is only accepted by the text-embedding-3 family
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dimensions

        t0 = time.monotonic()
        try:
            response = await self._client.embeddings.create(**kwargs)
        except RateLimitError as exc:
            raise CollaboratorError(
                ErrorCategory.RATE_LIMIT,
                SERVICE_NAME,
                "rate limit exceeded",
                status_code=429,
                retryable=True,
                retry_after=_retry_after(exc),
            ) from exc
        except APITimeoutError as exc:
            raise CollaboratorError(
                ErrorCategory.EXTERNAL_API, SERVICE_NAME,
                f"request timed out after {self._timeout}s", status_code=504,
            ) from exc
        except APIConnectionError as exc:
            raise CollaboratorError(
                ErrorCategory.EXTERNAL_API, SERVICE_NAME,
                f"connection failed: {exc}", status_code=503,
            ) from exc
        except APIStatusError as exc:
            raise CollaboratorError(
                ErrorCategory.EXTERNAL_API, SERVICE_NAME,
                f"API error: {exc.status_code}", status_code=exc.status_code,
            ) from exc

        api_ms = (time.monotonic() - t0) * 1000
        vectors = [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
        self._check_response(vectors, len(texts))

        total_tokens = response.usage.total_tokens if response.usage else 0
        token_counts = distribute_tokens(total_tokens, len(vectors))

        logger.info(
            "OpenAI embeddings | model=%s inputs=%d tokens=%d api_ms=%.0f",
            self.model, len(texts), total_tokens, api_ms,
            extra={"correlation_id": correlation_id},
        )

        return [Embedding(vector=v, tokens=t) for v, t in zip(vectors, token_counts)]

    def _check_response(self, vectors: list[list[float]], expected: int) -> None:
        if len(vectors) != expected:
            raise CollaboratorError(
                ErrorCategory.EXTERNAL_API, SERVICE_NAME,
                f"malformed response: expected {expected} embeddings, got {len(vectors)}",
                status_code=502,
            )
        bad = next((i for i, v in enumerate(vectors) if len(v) != self.dimensions), None)
        if bad is not None:
            raise CollaboratorError(
                ErrorCategory.EXTERNAL_API, SERVICE_NAME,
                f"malformed response: embedding {bad} has {len(vectors[bad])} "
                f"dimensions, expected {self.dimensions}",
                status_code=502,
            )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def distribute_tokens(total: int, count: int) -> list[int]:
    """Split `total` across `count` inputs; remainder goes to the first ones."""
    if count <= 0:
        return []
    base, remainder = divmod(max(total, 0), count)
    return [base + (1 if i < remainder else 0) for i in range(count)]


def _retry_after(exc: APIStatusError) -> int | None:
    value = exc.response.headers.get("retry-after") if exc.response is not None else None
    try:
        return int(float(value)) if value is not None else None
    except ValueError:
        return None
