"""
pgvector Store — chunks and embeddings in PostgreSQL

Table: document_chunks (see ragtime.models.documents.DocumentChunk)

replace_chunks() runs DELETE + INSERT inside one transaction, so readers see
either the previous chunk set or the new one, never a mix. Re-running an
ingest for the same document therefore never duplicates chunks.

Search operators (pgvector):
  cosine         <=>   cosine_distance
  l2             <->   l2_distance
  inner_product  <#>   max_inner_product  (negative inner product)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ragtime.core.errors import CollaboratorError, ErrorCategory
from ragtime.models.documents import DocumentChunk
from ragtime.vectorstore.base import (
    ChunkStats,
    DistanceMetric,
    QueryResult,
    VectorRecord,
    VectorStoreBase,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "pgvector"


def distance_expression(metric: DistanceMetric, vector: list[float]):
    column = DocumentChunk.embedding
    if metric is DistanceMetric.L2:
        return column.l2_distance(vector)
    if metric is DistanceMetric.INNER_PRODUCT:
        return column.max_inner_product(vector)
    return column.cosine_distance(vector)


class PgVectorStore(VectorStoreBase):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except IntegrityError as exc:
            raise CollaboratorError(
                ErrorCategory.INFRASTRUCTURE, SERVICE_NAME,
                f"{operation} violated a constraint: {exc.orig}", retryable=False,
            ) from exc
        except SQLAlchemyError as exc:
            raise CollaboratorError(
                ErrorCategory.INFRASTRUCTURE, SERVICE_NAME,
                f"{operation} failed: {exc}", retryable=True,
            ) from exc

    async def replace_chunks(
        self,
        tenant_id:      str,
        document_id:    str,
        records:        list[VectorRecord],
        correlation_id: str,
    ) -> int:
        foreign = [r.chunk_index for r in records
                   if r.tenant_id != tenant_id or r.document_id != document_id]
        if foreign:
            raise CollaboratorError(
                ErrorCategory.VALIDATION, SERVICE_NAME,
                f"records {foreign} do not belong to {tenant_id}/{document_id}",
            )

        rows = [
            DocumentChunk(
                tenant_id=r.tenant_id,
                document_id=r.document_id,
                chunk_index=r.chunk_index,
                content=r.content,
                embedding=r.embedding,
                token_count=r.token_count,
                start_char=r.start_char,
                end_char=r.end_char,
                chunk_metadata=dict(r.metadata),
            )
            for r in records
        ]

        async with self._transaction("replace_chunks") as session:
            result = await session.execute(
                delete(DocumentChunk).where(
                    DocumentChunk.tenant_id == tenant_id,
                    DocumentChunk.document_id == document_id,
                )
            )
            session.add_all(rows)
            await session.flush()

        logger.info(
            "Chunks replaced | tenant=%s doc=%s removed=%d inserted=%d",
            tenant_id, document_id, result.rowcount or 0, len(rows),
            extra={"correlation_id": correlation_id},
        )
        return len(rows)

    async def search(
        self,
        vector:       list[float],
        top_k:        int = 5,
        metric:       DistanceMetric = DistanceMetric.COSINE,
        tenant_id:    str | None = None,
        max_distance: float | None = None,
    ) -> list[QueryResult]:
        stmt = build_search_query(vector, top_k, metric, tenant_id, max_distance)

        async with self._transaction("search") as session:
            rows = (await session.execute(stmt)).all()

        return [
            QueryResult(
                document_id=chunk.document_id,
                tenant_id=chunk.tenant_id,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                distance=float(distance),
                metadata=dict(chunk.chunk_metadata or {}),
            )
            for chunk, distance in rows
        ]

    async def delete_document(self, tenant_id: str, document_id: str) -> int:
        async with self._transaction("delete_document") as session:
            result = await session.execute(
                delete(DocumentChunk).where(
                    DocumentChunk.tenant_id == tenant_id,
                    DocumentChunk.document_id == document_id,
                )
            )

        removed = result.rowcount or 0
        logger.info("Chunks deleted | tenant=%s doc=%s removed=%d", tenant_id, document_id, removed)
        return removed

    async def list_chunks(
        self,
        tenant_id:   str,
        document_id: str,
        limit:       int = 50,
        offset:      int = 0,
    ) -> list[VectorRecord]:
        stmt = (
            select(DocumentChunk)
            .where(
                DocumentChunk.tenant_id == tenant_id,
                DocumentChunk.document_id == document_id,
            )
            .order_by(DocumentChunk.chunk_index)
            .limit(limit)
            .offset(offset)
        )

        async with self._transaction("list_chunks") as session:
            rows = (await session.scalars(stmt)).all()
            return [_to_record(row) for row in rows]

    async def chunk_stats(self, tenant_id: str, document_id: str) -> ChunkStats:
        stmt = select(
            func.count(),
            func.coalesce(func.sum(DocumentChunk.token_count), 0),
            func.coalesce(func.avg(func.length(DocumentChunk.content)), 0),
        ).select_from(DocumentChunk).where(
            DocumentChunk.tenant_id == tenant_id,
            DocumentChunk.document_id == document_id,
        )

        async with self._transaction("chunk_stats") as session:
            total, tokens, avg_length = (await session.execute(stmt)).one()

        return ChunkStats(
            total_chunks=int(total),
            total_tokens=int(tokens),
            avg_content_length=round(float(avg_length), 1),
        )


def build_search_query(
    vector:       list[float],
    top_k:        int,
    metric:       DistanceMetric,
    tenant_id:    str | None = None,
    max_distance: float | None = None,
):
    distance = distance_expression(metric, vector).label("distance")
    stmt = select(DocumentChunk, distance)
    if tenant_id is not None:
        stmt = stmt.where(DocumentChunk.tenant_id == tenant_id)
    if max_distance is not None:
        stmt = stmt.where(distance_expression(metric, vector) <= max_distance)
    return stmt.order_by(distance).limit(top_k)


def _to_record(chunk: DocumentChunk) -> VectorRecord:
    return VectorRecord(
        document_id=chunk.document_id,
        tenant_id=chunk.tenant_id,
        chunk_index=chunk.chunk_index,
        content=chunk.content,
        embedding=[float(x) for x in chunk.embedding] if chunk.embedding is not None else [],
        token_count=chunk.token_count,
        start_char=chunk.start_char,
        end_char=chunk.end_char,
        metadata=dict(chunk.chunk_metadata or {}),
    )
