"""
Document Ingestion API Router

  POST   /api/v1/documents                                 ingest one file (201)
  GET    /api/v1/documents?tenant_id=&status=&before=     list, newest first
  GET    /api/v1/documents/{tenant_id}/{asset_id}          one record (404 if missing)
  GET    /api/v1/documents/{tenant_id}/{asset_id}/chunks   stored chunks + stats
  DELETE /api/v1/documents/{tenant_id}/{asset_id}          chunks, object and record

The router is thin: it turns the multipart form into a
FileUpload, hands it to the shared IngestionPipeline and renders the result.
Chunk inspection and deletion go through DocumentService.
Validation, classification and status handling all live in the pipeline;
PipelineErrors are rendered by the exception handler in ragtime.main.

Collaborators are taken from app.state (built in the lifespan), so tests can
swap any of them for a fake without dependency overrides.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status

from ragtime.core.correlation import AUTO_PREFIX, new_correlation_id
from ragtime.core.errors import ErrorContext, not_found_error
from ragtime.db.metadata_store import MetadataStoreBase
from ragtime.schemas.documents import (
    ChunkListResponse,
    ChunkSummary,
    DeleteResponse,
    DocumentListResponse,
    DocumentStatus,
    DocumentSummary,
    ErrorResponse,
    IngestResponse,
)
from ragtime.services.documents import DocumentService
from ragtime.services.ingestion import FileUpload, IngestionPipeline

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Ingestion"],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


def get_metadata_store(request: Request) -> MetadataStoreBase:
    return request.app.state.metadata_store


def get_document_service(request: Request) -> DocumentService:
    return request.app.state.documents


def get_correlation_id(request: Request) -> str:
    """Set by the correlation middleware; generated here if it did not run."""
    cid = getattr(request.state, "correlation_id", None)
    return cid or new_correlation_id(AUTO_PREFIX)


Pipeline      = Annotated[IngestionPipeline, Depends(get_pipeline)]
MetadataStore = Annotated[MetadataStoreBase, Depends(get_metadata_store)]
Documents     = Annotated[DocumentService, Depends(get_document_service)]
CorrelationId = Annotated[str, Depends(get_correlation_id)]


# ---------------------------------------------------------------------------
# POST /documents
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=IngestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Ingest a document",
    description=(
        "Stores the file, records its metadata, chunks and embeds text/plain "
        "content and persists the vectors. PDF and Word files are stored and "
        "then rejected at the chunking stage."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Invalid upload or unsupported content"},
        422: {"model": ErrorResponse, "description": "Document produced no chunks"},
        429: {"model": ErrorResponse, "description": "Embedding provider rate limit"},
        500: {"model": ErrorResponse, "description": "Storage or database failure"},
        502: {"model": ErrorResponse, "description": "Embedding provider failure"},
    },
)
async def ingest_document(
    pipeline:       Pipeline,
    correlation_id: CorrelationId,
    tenant_id:      str                  = Form("", description="Tenant identifier"),
    file:           Optional[UploadFile] = File(None, description="Document (TXT, PDF, DOC, DOCX, max 50 MB)"),
    asset_id:       Optional[str]        = Form(None, description="Existing asset id to reprocess"),
) -> IngestResponse:
    upload = None
    if file is not None:
        upload = FileUpload(
            filename=file.filename or "",
            content_type=file.content_type or "application/octet-stream",
            data=await file.read(),
        )

    result = await pipeline.ingest(
        tenant_id,
        upload,
        correlation_id=correlation_id,
        asset_id=asset_id or None,
    )

    return IngestResponse(
        success=True,
        document=DocumentSummary.from_record(result.document),
        chunk_count=result.chunk_count,
        total_tokens=result.total_tokens,
        processing_time_ms=result.processing_time_ms,
    )


# ---------------------------------------------------------------------------
# GET /documents
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=DocumentListResponse,
    summary="List a tenant's documents, newest first",
)
async def list_documents(
    store:         MetadataStore,
    tenant_id:     str                      = Query(..., min_length=1, max_length=50, pattern=r"^[a-zA-Z0-9_-]+$"),
    status_filter: Optional[DocumentStatus] = Query(None, alias="status"),
    limit:         int                      = Query(50, ge=1, le=200),
    before:        Optional[datetime]       = Query(None, description="Return documents created before this instant (nextBefore of the previous page)"),
) -> DocumentListResponse:
    records = await store.list_documents(tenant_id, status=status_filter, limit=limit, before=before)
    return DocumentListResponse(
        documents=[DocumentSummary.from_record(r) for r in records],
        count=len(records),
        next_before=records[-1].created_at if len(records) == limit else None,
    )


# ---------------------------------------------------------------------------
# GET /documents/{tenant_id}/{asset_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{tenant_id}/{asset_id}",
    response_model=DocumentSummary,
    summary="Fetch one document's metadata",
    responses={404: {"model": ErrorResponse, "description": "Unknown document"}},
)
async def get_document(
    tenant_id:      str,
    asset_id:       str,
    store:          MetadataStore,
    correlation_id: CorrelationId,
) -> DocumentSummary:
    record = await store.get(tenant_id, asset_id)
    if record is None:
        raise not_found_error(
            "Document",
            f"{tenant_id}/{asset_id}",
            ErrorContext(operation="get_document", correlation_id=correlation_id, tenant_id=tenant_id),
        )
    return DocumentSummary.from_record(record)


# ---------------------------------------------------------------------------
# GET /documents/{tenant_id}/{asset_id}/chunks
# ---------------------------------------------------------------------------

@router.get(
    "/{tenant_id}/{asset_id}/chunks",
    response_model=ChunkListResponse,
    summary="Inspect a document's stored chunks and embedding stats",
    responses={404: {"model": ErrorResponse, "description": "Unknown document"}},
)
async def list_document_chunks(
    tenant_id:      str,
    asset_id:       str,
    documents:      Documents,
    correlation_id: CorrelationId,
    limit:          int = Query(50, ge=1, le=200),
    offset:         int = Query(0, ge=0),
) -> ChunkListResponse:
    listing = await documents.list_chunks(
        tenant_id, asset_id, correlation_id=correlation_id, limit=limit, offset=offset,
    )
    return ChunkListResponse(
        tenant_id=listing.document.tenant_id,
        asset_id=listing.document.asset_id,
        status=listing.document.status,
        total_chunks=listing.stats.total_chunks,
        total_tokens=listing.stats.total_tokens,
        avg_content_length=listing.stats.avg_content_length,
        embedding_dimensions=len(listing.chunks[0].embedding) if listing.chunks else None,
        chunks=[
            ChunkSummary(
                chunk_index=c.chunk_index,
                content=c.content,
                start_char=c.start_char,
                end_char=c.end_char,
                token_count=c.token_count,
                metadata=c.metadata,
            )
            for c in listing.chunks
        ],
    )


# ---------------------------------------------------------------------------
# DELETE /documents/{tenant_id}/{asset_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/{tenant_id}/{asset_id}",
    response_model=DeleteResponse,
    summary="Delete a document, its chunks and its stored object",
    responses={
        404: {"model": ErrorResponse, "description": "Unknown document"},
        500: {"model": ErrorResponse, "description": "Storage or database failure; safe to repeat"},
    },
)
async def delete_document(
    tenant_id:      str,
    asset_id:       str,
    documents:      Documents,
    correlation_id: CorrelationId,
) -> DeleteResponse:
    result = await documents.delete(tenant_id, asset_id, correlation_id=correlation_id)
    return DeleteResponse(
        tenant_id=result.tenant_id,
        asset_id=result.asset_id,
        chunks_deleted=result.chunks_deleted,
        object_deleted=result.object_deleted,
    )
