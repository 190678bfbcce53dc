"""
SQLAlchemy ORM Models — Documents & Chunks

Two tables back the ingestion pipeline:

  documents         one row per (tenant_id, asset_id); the ingest state machine
  document_chunks   one row per (tenant_id, document_id, chunk_index); text,
                    offsets and the pgvector embedding

Chunks for a document are replaced wholesale on reprocessing (delete then
insert in one transaction), so there is never a mix of old and new chunks.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

EMBEDDING_DIMENSIONS = 1536


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks one uploaded file through a single ingest attempt.

    State machine (status column):
        UPLOADED   : object stored, metadata written; chunking not finished
        PROCESSED  : chunks and vectors persisted
        FAILED     : a stage after the commit point failed (see error_message)

    Transitions are UPLOADED → PROCESSED or UPLOADED → FAILED only.
    Re-ingesting the same (tenant_id, asset_id) upserts the row back to
    UPLOADED and starts a new attempt.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('UPLOADED', 'PROCESSED', 'FAILED')",
            name="documents_status_check",
        ),
        Index("idx_documents_tenant_created",        "tenant_id", "created_at"),
        Index("idx_documents_tenant_status_created", "tenant_id", "status", "created_at"),
    )

    tenant_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    asset_id:  Mapped[str] = mapped_column(String(64), primary_key=True)

    file_name:    Mapped[str] = mapped_column(String(255), nullable=False)
    file_size:    Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_type: Mapped[str] = mapped_column(Text, nullable=False)

    # Object location
    s3_bucket: Mapped[str] = mapped_column(Text, nullable=False)
    s3_key:    Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="UPLOADED",
        server_default="UPLOADED",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='FAILED'",
    )
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Source metadata
    extraction_method: Mapped[str]           = mapped_column(String(32), nullable=False, default="direct")
    word_count:        Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    character_count:   Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Filled on PROCESSED
    chunk_count:  Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document tenant={self.tenant_id} asset={self.asset_id} "
            f"status={self.status} file={self.file_name!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model — document_chunks
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """One chunk of a Document with its embedding."""

    __tablename__ = "document_chunks"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "document_id"],
            ["documents.tenant_id", "documents.asset_id"],
            ondelete="CASCADE",
        ),
        UniqueConstraint("tenant_id", "document_id", "chunk_index", name="uq_document_chunks_position"),
        Index("idx_document_chunks_document", "tenant_id", "document_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)

    tenant_id:   Mapped[str] = mapped_column(String(50), nullable=False)
    document_id: Mapped[str] = mapped_column(String(64), nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)

    content:     Mapped[str]         = mapped_column(Text, nullable=False)
    embedding:   Mapped[list[float]] = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=False)
    token_count: Mapped[int]         = mapped_column(Integer, nullable=False, default=0)
    start_char:  Mapped[int]         = mapped_column(Integer, nullable=False)
    end_char:    Mapped[int]         = mapped_column(Integer, nullable=False)

    chunk_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="word_count, embedding_model, processing_duration_ms, correlation_id",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<DocumentChunk doc={self.document_id} index={self.chunk_index}>"
