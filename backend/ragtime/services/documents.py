"""
Document Service

Operations on already-ingested documents:

  list_chunks()   stored chunks of one document plus aggregate stats
  delete()        chunks → stored object → metadata record

Delete removes the metadata record last, so a failure part-way leaves the
record in place and the same delete can simply be issued again. An object
that is already missing from the store does not fail the delete.

Faults are classified exactly as in the ingestion pipeline: every
collaborator call runs inside ErrorClassifier.translate().
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from ragtime.core.correlation import resolve_correlation_id
from ragtime.core.error_handler import ErrorClassifier
from ragtime.core.errors import ErrorCategory, ErrorContext, PipelineError, not_found_error
from ragtime.core.logger import bind_logger
from ragtime.db.metadata_store import MetadataStoreBase
from ragtime.schemas.documents import DocumentRecord
from ragtime.storage.base import ObjectStoreBase
from ragtime.vectorstore.base import ChunkStats, VectorRecord, VectorStoreBase

logger = logging.getLogger(__name__)


@dataclass
class ChunkListing:
    document: DocumentRecord
    stats:    ChunkStats
    chunks:   list[VectorRecord]


@dataclass
class DeletionResult:
    tenant_id:      str
    asset_id:       str
    chunks_deleted: int
    object_deleted: bool


class DocumentService:

    def __init__(
        self,
        *,
        metadata_store: MetadataStoreBase,
        object_store:   ObjectStoreBase,
        vector_store:   VectorStoreBase,
        classifier:     ErrorClassifier | None = None,
    ) -> None:
        self._metadata_store = metadata_store
        self._object_store   = object_store
        self._vector_store   = vector_store
        self._classifier     = classifier or ErrorClassifier()

    async def list_chunks(
        self,
        tenant_id:      str,
        asset_id:       str,
        *,
        correlation_id: str | None = None,
        limit:          int = 50,
        offset:         int = 0,
    ) -> ChunkListing:
        cid = resolve_correlation_id(correlation_id)
        log = bind_logger(logger, cid, tenant_id=tenant_id)

        try:
            document = await self._require(tenant_id, asset_id, cid)
            async with self._call("list_chunks", "vector store", cid, tenant_id):
                stats = await self._vector_store.chunk_stats(tenant_id, asset_id)
                chunks = await self._vector_store.list_chunks(
                    tenant_id, asset_id, limit=limit, offset=offset,
                )
        except PipelineError as error:
            self._classifier.log_error(error, log)
            raise

        return ChunkListing(document=document, stats=stats, chunks=chunks)

    async def delete(
        self,
        tenant_id:      str,
        asset_id:       str,
        *,
        correlation_id: str | None = None,
    ) -> DeletionResult:
        cid = resolve_correlation_id(correlation_id)
        log = bind_logger(logger, cid, tenant_id=tenant_id)

        try:
            document = await self._require(tenant_id, asset_id, cid)

            async with self._call("delete_chunks", "vector store", cid, tenant_id):
                chunks_deleted = await self._vector_store.delete_document(tenant_id, asset_id)

            async with self._call("delete_object", "S3", cid, tenant_id):
                object_deleted = await self._object_store.delete_object(
                    bucket=document.s3_bucket, key=document.s3_key, correlation_id=cid,
                )

            async with self._call("delete_metadata", "metadata store", cid, tenant_id):
                await self._metadata_store.delete(tenant_id, asset_id)
        except PipelineError as error:
            self._classifier.log_error(error, log)
            raise

        log.info(
            "Document deleted | asset=%s chunks=%d object_deleted=%s",
            asset_id, chunks_deleted, object_deleted,
        )
        return DeletionResult(
            tenant_id=tenant_id,
            asset_id=asset_id,
            chunks_deleted=chunks_deleted,
            object_deleted=object_deleted,
        )

    async def _require(self, tenant_id: str, asset_id: str, cid: str) -> DocumentRecord:
        async with self._call("get_document", "metadata store", cid, tenant_id) as context:
            record = await self._metadata_store.get(tenant_id, asset_id)
            if record is None:
                raise not_found_error("Document", f"{tenant_id}/{asset_id}", context)
        return record

    @asynccontextmanager
    async def _call(
        self,
        operation: str,
        service:   str,
        cid:       str,
        tenant_id: str,
    ) -> AsyncIterator[ErrorContext]:
        context = ErrorContext(operation=operation, correlation_id=cid, tenant_id=tenant_id)
        async with self._classifier.translate(context, ErrorCategory.INFRASTRUCTURE, service):
            yield context
