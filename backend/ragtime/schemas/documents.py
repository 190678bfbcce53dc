"""
Document Ingestion — Pydantic Request/Response Schemas

Covers:
  - Ingest request validation (tenant id, filename, size, content type)
  - DocumentRecord, the metadata row as the rest of the code sees it
  - camelCase HTTP bodies for success, error, list, chunk and delete responses

Design decisions:
  - asset_id is server-generated (UUID4) unless the caller is reprocessing
    an existing asset.
  - Filenames are sanitized, never rejected, for reserved characters.
  - Size limits are supplied through the validation context so the
    configured limit (Settings.max_file_size_bytes) applies.
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Upload rules
# ---------------------------------------------------------------------------

SUPPORTED_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "text/plain",
        "application/pdf",
        "application/msword",                    # legacy .doc
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",  # .docx
    }
)

# Only these are turned into chunks; the rest are stored and then FAILED
CHUNKABLE_CONTENT_TYPES: frozenset[str] = frozenset({"text/plain"})

MAX_FILE_SIZE_BYTES: int = 50 * 1024 * 1024  # 50 MB
MAX_FILENAME_LENGTH: int = 255
MAX_TENANT_ID_LENGTH: int = 50

_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')


def sanitize_filename(filename: str) -> str:
    """Replace filesystem/URL-reserved characters with underscores."""
    return _UNSAFE_FILENAME_CHARS.sub("_", filename.strip())


# ---------------------------------------------------------------------------
# Document state machine
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status.
    Transitions: UPLOADED → PROCESSED | FAILED
    """
    UPLOADED  = "UPLOADED"
    PROCESSED = "PROCESSED"
    FAILED    = "FAILED"


# ---------------------------------------------------------------------------
# Ingest request
# ---------------------------------------------------------------------------

class IngestFile(BaseModel):
    filename:     str
    content_type: str
    data:         bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @field_validator("filename")
    @classmethod
    def _clean_filename(cls, v: str) -> str:
        cleaned = sanitize_filename(v)
        if not cleaned:
            raise ValueError("filename is required")
        if len(cleaned) > MAX_FILENAME_LENGTH:
            raise ValueError(f"filename must be at most {MAX_FILENAME_LENGTH} characters")
        return cleaned

    @field_validator("content_type")
    @classmethod
    def _normalise_content_type(cls, v: str) -> str:
        # "text/plain; charset=utf-8" → "text/plain"
        return v.split(";", 1)[0].strip().lower()

    @model_validator(mode="after")
    def _check_body(self, info: ValidationInfo) -> "IngestFile":
        limit = (info.context or {}).get("max_file_size_bytes", MAX_FILE_SIZE_BYTES)
        if self.size > limit:
            raise ValueError(f"file is too large: {self.size} bytes exceeds limit of {limit} bytes")
        if self.size == 0:
            raise ValueError("file must not be empty")
        if self.content_type not in SUPPORTED_CONTENT_TYPES:
            raise ValueError(
                f"content type '{self.content_type}' is invalid; supported types: "
                + ", ".join(sorted(SUPPORTED_CONTENT_TYPES))
            )
        return self


class IngestRequest(BaseModel):
    tenant_id: str
    file:      Optional[IngestFile]
    asset_id:  Optional[str] = Field(None, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")

    @field_validator("tenant_id")
    @classmethod
    def _check_tenant_id(cls, v: str) -> str:
        if not v:
            raise ValueError("tenant_id is required")
        if len(v) > MAX_TENANT_ID_LENGTH:
            raise ValueError(f"tenant_id must be at most {MAX_TENANT_ID_LENGTH} characters")
        if not _TENANT_ID_RE.match(v):
            raise ValueError("tenant_id is invalid: only letters, digits, '_' and '-' are allowed")
        return v

    @field_validator("file")
    @classmethod
    def _require_file(cls, v: Optional[IngestFile]) -> IngestFile:
        if v is None:
            raise ValueError("file is required")
        return v


# ---------------------------------------------------------------------------
# Metadata record
# ---------------------------------------------------------------------------

class DocumentRecord(BaseModel):
    """Metadata for one ingested document, as stored in `documents`."""
    model_config = ConfigDict(from_attributes=True)

    tenant_id:         str
    asset_id:          str
    file_name:         str
    file_size:         int
    content_type:      str
    s3_bucket:         str
    s3_key:            str
    status:            DocumentStatus = DocumentStatus.UPLOADED
    correlation_id:    str
    error_message:     Optional[str] = None
    extraction_method: str = "direct"
    word_count:        Optional[int] = None
    character_count:   Optional[int] = None
    chunk_count:       Optional[int] = None
    total_tokens:      Optional[int] = None
    created_at:        datetime
    updated_at:        datetime


# ---------------------------------------------------------------------------
# HTTP bodies (camelCase on the wire)
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DocumentSummary(_CamelModel):
    tenant_id:      str
    asset_id:       str
    file_name:      str
    file_size:      int
    content_type:   str
    status:         DocumentStatus
    created_at:     datetime
    correlation_id: str
    error_message:  Optional[str] = None
    chunk_count:    Optional[int] = None
    total_tokens:   Optional[int] = None

    @classmethod
    def from_record(cls, record: DocumentRecord) -> "DocumentSummary":
        return cls(
            tenant_id=record.tenant_id,
            asset_id=record.asset_id,
            file_name=record.file_name,
            file_size=record.file_size,
            content_type=record.content_type,
            status=record.status,
            created_at=record.created_at,
            correlation_id=record.correlation_id,
            error_message=record.error_message,
            chunk_count=record.chunk_count,
            total_tokens=record.total_tokens,
        )


class IngestResponse(_CamelModel):
    """Returned by POST /api/v1/documents (201)."""
    success:            bool = True
    document:           DocumentSummary
    chunk_count:        int
    total_tokens:       int
    processing_time_ms: int


class DocumentListResponse(_CamelModel):
    documents:   list[DocumentSummary]
    count:       int
    # created_at of the last row when the page is full; pass back as `before`
    next_before: Optional[datetime] = None


class ChunkSummary(_CamelModel):
    chunk_index: int
    content:     str
    start_char:  int
    end_char:    int
    token_count: int
    metadata:    dict[str, Any] = Field(default_factory=dict)


class ChunkListResponse(_CamelModel):
    """Returned by GET /api/v1/documents/{tenant_id}/{asset_id}/chunks."""
    tenant_id:            str
    asset_id:             str
    status:               DocumentStatus
    total_chunks:         int
    total_tokens:         int
    avg_content_length:   float
    embedding_dimensions: Optional[int] = None
    chunks:               list[ChunkSummary]


class DeleteResponse(_CamelModel):
    """Returned by DELETE /api/v1/documents/{tenant_id}/{asset_id}."""
    success:        bool = True
    tenant_id:      str
    asset_id:       str
    chunks_deleted: int
    object_deleted: bool


class ErrorContextBody(_CamelModel):
    correlation_id: Optional[str] = None
    timestamp:      str
    operation:      str


class ErrorBody(_CamelModel):
    code:      str
    message:   str
    category:  str
    retryable: bool
    context:   ErrorContextBody


class ErrorResponse(_CamelModel):
    """Every non-2xx body produced by the API."""
    error:     ErrorBody
    details:   Optional[dict[str, Any]] = None
    timestamp: str
