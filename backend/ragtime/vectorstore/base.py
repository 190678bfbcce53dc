"""
Vector Store — Abstract Base

The ingestion pipeline only needs `replace_chunks`. search serves retrieval;
list_chunks, chunk_stats and delete_document serve the document
inspection and deletion routes. Concrete stores:
  PgVectorStore   PostgreSQL + pgvector (production)
  in-memory fake  tests

Tenant scope: every record carries tenant_id and every read can be filtered
by it. Chunks of one document are always replaced as a unit.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """A single chunk + embedding to persist."""
    document_id: str
    tenant_id:   str
    chunk_index: int
    content:     str
    embedding:   list[float]
    token_count: int
    start_char:  int
    end_char:    int
    metadata:    dict = field(default_factory=dict)
    # metadata keys written by the pipeline:
    # - word_count: int
    # - embedding_model: str
    # - processing_duration_ms: int
    # - correlation_id: str


@dataclass
class QueryResult:
    """One result returned from a similarity search."""
    document_id: str
    tenant_id:   str
    chunk_index: int
    content:     str
    distance:    float          # lower is closer for every metric
    metadata:    dict = field(default_factory=dict)


@dataclass
class ChunkStats:
    """Aggregate view of one document's stored chunks."""
    total_chunks:       int
    total_tokens:       int
    avg_content_length: float


class DistanceMetric(str, Enum):
    COSINE        = "cosine"
    L2            = "l2"
    INNER_PRODUCT = "inner_product"


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorStoreBase(ABC):

    @abstractmethod
    async def replace_chunks(
        self,
        tenant_id:      str,
        document_id:    str,
        records:        list[VectorRecord],
        correlation_id: str,
    ) -> int:
        """
        Delete every chunk of the document and insert `records`, atomically.
        Returns the number of chunks written. Raises CollaboratorError.
        """

    @abstractmethod
    async def search(
        self,
        vector:       list[float],
        top_k:        int = 5,
        metric:       DistanceMetric = DistanceMetric.COSINE,
        tenant_id:    str | None = None,
        max_distance: float | None = None,
    ) -> list[QueryResult]:
        """Nearest neighbours, closest first."""

    @abstractmethod
    async def delete_document(self, tenant_id: str, document_id: str) -> int:
        """Delete ALL chunks belonging to a document; returns rows removed."""

    @abstractmethod
    async def list_chunks(
        self,
        tenant_id:   str,
        document_id: str,
        limit:       int = 50,
        offset:      int = 0,
    ) -> list[VectorRecord]:
        """Chunks of one document in chunk_index order."""

    @abstractmethod
    async def chunk_stats(self, tenant_id: str, document_id: str) -> ChunkStats:
        """Totals over every chunk of the document (zeros when it has none)."""
