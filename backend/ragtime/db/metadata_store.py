"""
Document metadata store.

One row per (tenant_id, asset_id) in `documents`. The pipeline calls:

    save()           stage 2, upsert back to UPLOADED (the commit point)
    update_status()  stage 6 / failure path, UPLOADED → PROCESSED | FAILED

The document routes read through get() / list_documents() and remove rows
with delete(); the chunk rows go with it (ON DELETE CASCADE).

update_status() is a guarded UPDATE (`WHERE status = 'UPLOADED'`), so a
terminal row can never be moved again within the same attempt. Every
SQLAlchemy failure is re-raised as a CollaboratorError tagged
INFRASTRUCTURE; constraint violations are marked non-retryable.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ragtime.core.errors import CollaboratorError, ErrorCategory
from ragtime.models.documents import Document
from ragtime.schemas.documents import DocumentRecord, DocumentStatus

logger = logging.getLogger(__name__)

SERVICE_NAME = "metadata store"

_TERMINAL_STATUSES = (DocumentStatus.PROCESSED, DocumentStatus.FAILED)


class MetadataStoreBase(ABC):

    @abstractmethod
    async def save(self, record: DocumentRecord) -> DocumentRecord:
        """Insert or reset the record to UPLOADED; returns the stored row."""

    @abstractmethod
    async def update_status(
        self,
        tenant_id:      str,
        asset_id:       str,
        status:         DocumentStatus,
        correlation_id: str,
        *,
        error_message:  str | None = None,
        chunk_count:    int | None = None,
        total_tokens:   int | None = None,
    ) -> DocumentRecord:
        """Move an UPLOADED record to PROCESSED or FAILED."""

    @abstractmethod
    async def get(self, tenant_id: str, asset_id: str) -> DocumentRecord | None:
        ...

    @abstractmethod
    async def list_documents(
        self,
        tenant_id: str,
        *,
        status:    DocumentStatus | None = None,
        limit:     int = 50,
        before:    datetime | None = None,
    ) -> list[DocumentRecord]:
        """Newest first; `before` pages on created_at."""

    @abstractmethod
    async def delete(self, tenant_id: str, asset_id: str) -> bool:
        """Remove the record; False when there was none."""


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

class SqlMetadataStore(MetadataStoreBase):

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

    async def save(self, record: DocumentRecord) -> DocumentRecord:
        values = record.model_dump(exclude={"updated_at"})
        values["status"] = DocumentStatus.UPLOADED.value

        stmt = pg_insert(Document).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Document.tenant_id, Document.asset_id],
            set_={
                "file_name":         stmt.excluded.file_name,
                "file_size":         stmt.excluded.file_size,
                "content_type":      stmt.excluded.content_type,
                "s3_bucket":         stmt.excluded.s3_bucket,
                "s3_key":            stmt.excluded.s3_key,
                "status":            DocumentStatus.UPLOADED.value,
                "error_message":     None,
                "correlation_id":    stmt.excluded.correlation_id,
                "extraction_method": stmt.excluded.extraction_method,
                "word_count":        stmt.excluded.word_count,
                "character_count":   stmt.excluded.character_count,
                "chunk_count":       None,
                "total_tokens":      None,
                "updated_at":        func.now(),
            },
        ).returning(Document)

        async with self._transaction("save") as session:
            row = (
                await session.scalars(stmt, execution_options={"populate_existing": True})
            ).one()
            saved = DocumentRecord.model_validate(row)

        logger.info(
            "Metadata saved | tenant=%s asset=%s status=%s",
            saved.tenant_id, saved.asset_id, saved.status.value,
            extra={"correlation_id": saved.correlation_id},
        )
        return saved

    async def update_status(
        self,
        tenant_id:      str,
        asset_id:       str,
        status:         DocumentStatus,
        correlation_id: str,
        *,
        error_message:  str | None = None,
        chunk_count:    int | None = None,
        total_tokens:   int | None = None,
    ) -> DocumentRecord:
        if status not in _TERMINAL_STATUSES:
            raise CollaboratorError(
                ErrorCategory.BUSINESS_LOGIC, SERVICE_NAME,
                f"cannot transition document to {status.value}",
                code="INVALID_STATUS_TRANSITION",
            )

        values: dict = {"status": status.value, "updated_at": func.now()}
        if status is DocumentStatus.FAILED:
            values["error_message"] = error_message
        else:
            values["chunk_count"] = chunk_count
            values["total_tokens"] = total_tokens

        stmt = (
            update(Document)
            .where(
                Document.tenant_id == tenant_id,
                Document.asset_id == asset_id,
                Document.status == DocumentStatus.UPLOADED.value,
            )
            .values(**values)
            .returning(Document)
        )

        async with self._transaction("update_status") as session:
            row = (
                await session.scalars(stmt, execution_options={"populate_existing": True})
            ).one_or_none()
            if row is None:
                current = await session.get(Document, (tenant_id, asset_id))
                current_status = current.status if current is not None else None
            else:
                updated = DocumentRecord.model_validate(row)

        if row is None:
            if current_status is None:
                raise CollaboratorError(
                    ErrorCategory.NOT_FOUND, "Document", f"{tenant_id}/{asset_id}",
                )
            raise CollaboratorError(
                ErrorCategory.BUSINESS_LOGIC, SERVICE_NAME,
                f"cannot transition document from {current_status} to {status.value}",
                code="INVALID_STATUS_TRANSITION",
            )

        logger.info(
            "Status updated | tenant=%s asset=%s status=%s",
            tenant_id, asset_id, status.value,
            extra={"correlation_id": correlation_id},
        )
        return updated

    async def get(self, tenant_id: str, asset_id: str) -> DocumentRecord | None:
        async with self._transaction("get") as session:
            row = await session.get(Document, (tenant_id, asset_id))
            return DocumentRecord.model_validate(row) if row is not None else None

    async def list_documents(
        self,
        tenant_id: str,
        *,
        status:    DocumentStatus | None = None,
        limit:     int = 50,
        before:    datetime | None = None,
    ) -> list[DocumentRecord]:
        stmt = select(Document).where(Document.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(Document.status == status.value)
        if before is not None:
            stmt = stmt.where(Document.created_at < before)
        stmt = stmt.order_by(Document.created_at.desc()).limit(limit)

        async with self._transaction("list_documents") as session:
            rows = (await session.scalars(stmt)).all()
            return [DocumentRecord.model_validate(r) for r in rows]

    async def delete(self, tenant_id: str, asset_id: str) -> bool:
        stmt = (
            delete(Document)
            .where(Document.tenant_id == tenant_id, Document.asset_id == asset_id)
            .returning(Document.asset_id)
        )
        async with self._transaction("delete") as session:
            removed = (await session.scalars(stmt)).one_or_none()

        if removed is not None:
            logger.info("Metadata deleted | tenant=%s asset=%s", tenant_id, asset_id)
        return removed is not None
