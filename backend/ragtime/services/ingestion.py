"""
Document Ingestion Pipeline

Orchestrates one ingest, strictly in sequence:

  0. Resolve correlation id, validate the upload        (no collaborator call)
  1. Store the raw object                  S3           INFRASTRUCTURE on failure
  2. Write metadata, status=UPLOADED       PostgreSQL   INFRASTRUCTURE on failure
     ── commit point: from here on, failures leave a FAILED record ──
  3. Chunk the text                        in-process   VALIDATION / BUSINESS_LOGIC
  4. Embed all chunks in one call          OpenAI       EXTERNAL_API / RATE_LIMIT
  5. Replace chunks + vectors              pgvector     INFRASTRUCTURE
  6. Mark PROCESSED                        PostgreSQL   warning only, never fails

Failure handling:
  Stages 1–2 abort with the classified error; nothing needs undoing.
  Stages 3–5 classify the fault, mark the document FAILED (best effort) and
  re-raise the classified error. If even the FAILED update fails, that is
  logged at CRITICAL (the record is stranded in UPLOADED) and the original
  error is still what the caller sees.

The pipeline never retries. `PipelineError.retryable` tells the caller
whether running the same ingest again can succeed; re-ingesting an asset id
upserts its metadata and replaces its chunks.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import AsyncIterator

from pydantic import ValidationError

from ragtime.core.correlation import resolve_correlation_id
from ragtime.core.error_handler import ErrorClassifier
from ragtime.core.errors import (
    CollaboratorError,
    ErrorCategory,
    ErrorContext,
    PipelineError,
    business_logic_error,
    validation_error,
)
from ragtime.core.logger import bind_logger
from ragtime.db.metadata_store import MetadataStoreBase
from ragtime.processing.chunking import TextChunk, chunk_text
from ragtime.processing.embeddings import Embedding, EmbeddingClientBase
from ragtime.schemas.documents import (
    CHUNKABLE_CONTENT_TYPES,
    MAX_FILE_SIZE_BYTES,
    DocumentRecord,
    DocumentStatus,
    IngestRequest,
)
from ragtime.storage.base import ObjectStoreBase, UploadedFile
from ragtime.vectorstore.base import VectorRecord, VectorStoreBase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileUpload:
    """Raw upload as received; validated by the pipeline."""
    filename:     str
    content_type: str
    data:         bytes


@dataclass
class ProcessingResult:
    status:             DocumentStatus
    document:           DocumentRecord
    uploaded_file:      UploadedFile
    chunk_count:        int
    total_tokens:       int
    processing_time_ms: int


class IngestionPipeline:
    """
    Stateless orchestrator; one instance is shared by all requests.
    All collaborators are injected.
    """

    def __init__(
        self,
        *,
        object_store:        ObjectStoreBase,
        metadata_store:      MetadataStoreBase,
        embedder:            EmbeddingClientBase,
        vector_store:        VectorStoreBase,
        classifier:          ErrorClassifier | None = None,
        chunk_size:          int = 1000,
        chunk_overlap:       int = 200,
        max_file_size_bytes: int = MAX_FILE_SIZE_BYTES,
    ) -> None:
        if chunk_size <= 0 or not 0 <= chunk_overlap < chunk_size:
            raise ValueError(
                f"invalid chunking parameters: chunk_size={chunk_size} overlap={chunk_overlap}"
            )
        self._object_store   = object_store
        self._metadata_store = metadata_store
        self._embedder       = embedder
        self._vector_store   = vector_store
        self._classifier     = classifier or ErrorClassifier()
        self._chunk_size     = chunk_size
        self._chunk_overlap  = chunk_overlap
        self._max_file_size  = max_file_size_bytes

    @property
    def classifier(self) -> ErrorClassifier:
        return self._classifier

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def ingest(
        self,
        tenant_id:      str,
        file:           FileUpload | None,
        correlation_id: str | None = None,
        asset_id:       str | None = None,
    ) -> ProcessingResult:
        """
        Run the full pipeline for one upload.

        Returns ProcessingResult (status PROCESSED) or raises PipelineError.
        """
        cid = resolve_correlation_id(correlation_id)
        log = bind_logger(logger, cid, tenant_id=tenant_id)
        t0 = time.monotonic()

        try:
            return await self._run(tenant_id, file, cid, asset_id, log, t0)
        except PipelineError as error:
            self._classifier.log_error(error, log)
            raise

    async def _run(
        self,
        tenant_id: str,
        file:      FileUpload | None,
        cid:       str,
        asset_id:  str | None,
        log:       logging.LoggerAdapter,
        t0:        float,
    ) -> ProcessingResult:
        # ── Step 0: validate ──────────────────────────────────────────
        request = self._validate(tenant_id, file, asset_id, cid)
        tenant_id = request.tenant_id
        upload = request.file
        asset_id = request.asset_id or str(uuid.uuid4())

        text: str | None = None
        if upload.content_type in CHUNKABLE_CONTENT_TYPES:
            text = _decode_text(upload.data)

        log.info(
            "Ingest started | asset=%s file=%r size=%d type=%s",
            asset_id, upload.filename, upload.size, upload.content_type,
        )

        # ── Step 1: object store ──────────────────────────────────────
        async with self._stage("store_object", ErrorCategory.INFRASTRUCTURE, "S3", cid, tenant_id):
            stored = await self._object_store.put_document(
                tenant_id=tenant_id,
                asset_id=asset_id,
                filename=upload.filename,
                body=upload.data,
                content_type=upload.content_type,
                correlation_id=cid,
            )

        # ── Step 2: initial metadata (commit point) ───────────────────
        now = datetime.now(timezone.utc)
        draft = DocumentRecord(
            tenant_id=tenant_id,
            asset_id=asset_id,
            file_name=upload.filename,
            file_size=upload.size,
            content_type=upload.content_type,
            s3_bucket=stored.bucket,
            s3_key=stored.key,
            status=DocumentStatus.UPLOADED,
            correlation_id=cid,
            extraction_method="direct",
            word_count=len(text.split()) if text is not None else None,
            character_count=len(text) if text is not None else None,
            created_at=now,
            updated_at=now,
        )
        async with self._stage("save_metadata", ErrorCategory.INFRASTRUCTURE, "metadata store", cid, tenant_id):
            document = await self._metadata_store.save(draft)

        # ── Steps 3–5: chunk, embed, persist ──────────────────────────
        try:
            chunks = await self._chunk(upload.content_type, text, cid, tenant_id)
            embeddings = await self._embed(chunks, cid, tenant_id)
            total_tokens = sum(e.tokens for e in embeddings)
            await self._persist(document, chunks, embeddings, cid, t0)
        except PipelineError as error:
            await self._mark_failed(document, error, log)
            raise

        log.info(
            "Chunks indexed | asset=%s chunks=%d tokens=%d",
            asset_id, len(chunks), total_tokens,
        )

        # ── Step 6: PROCESSED (non-fatal) ─────────────────────────────
        try:
            document = await self._metadata_store.update_status(
                tenant_id,
                asset_id,
                DocumentStatus.PROCESSED,
                cid,
                chunk_count=len(chunks),
                total_tokens=total_tokens,
            )
        except Exception as exc:
            # Chunks are already searchable; the record stays UPLOADED.
            log.warning(
                "PROCESSED status update failed | asset=%s error=%s",
                asset_id, exc,
            )

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        log.info(
            "Ingest complete | asset=%s chunks=%d tokens=%d elapsed_ms=%d",
            asset_id, len(chunks), total_tokens, elapsed_ms,
        )

        return ProcessingResult(
            status=DocumentStatus.PROCESSED,
            document=document,
            uploaded_file=stored,
            chunk_count=len(chunks),
            total_tokens=total_tokens,
            processing_time_ms=elapsed_ms,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _validate(
        self,
        tenant_id: str,
        file:      FileUpload | None,
        asset_id:  str | None,
        cid:       str,
    ) -> IngestRequest:
        context = ErrorContext(operation="validate_upload", correlation_id=cid, tenant_id=tenant_id or None)
        try:
            return IngestRequest.model_validate(
                {
                    "tenant_id": tenant_id or "",
                    "file":      asdict(file) if file is not None else None,
                    "asset_id":  asset_id,
                },
                context={"max_file_size_bytes": self._max_file_size},
            )
        except ValidationError as exc:
            problems = [
                {
                    "field":   ".".join(str(part) for part in err["loc"]) or "request",
                    "message": _clean_pydantic_message(err["msg"]),
                }
                for err in exc.errors()
            ]
            message = problems[0]["message"]
            raise validation_error(message, context, {"errors": problems}, user_message=message) from None

    async def _chunk(
        self,
        content_type: str,
        text:         str | None,
        cid:          str,
        tenant_id:    str,
    ) -> list[TextChunk]:
        async with self._stage("chunk_text", ErrorCategory.BUSINESS_LOGIC, "chunker", cid, tenant_id) as context:
            if text is None:
                message = (
                    f"Content type '{content_type}' is not supported for text processing; "
                    "only text/plain can be chunked"
                )
                raise validation_error(message, context, user_message=message)
            chunks = chunk_text(text, self._chunk_size, self._chunk_overlap)
            if not chunks:
                raise business_logic_error(
                    "NO_CHUNKS_PRODUCED",
                    "Document produced no chunks; it contains no text",
                    context,
                    user_message="The document contains no text to process",
                )
        return chunks

    async def _embed(
        self,
        chunks:    list[TextChunk],
        cid:       str,
        tenant_id: str,
    ) -> list[Embedding]:
        service = self._embedder.service_name
        async with self._stage("generate_embeddings", ErrorCategory.EXTERNAL_API, service, cid, tenant_id):
            embeddings = await self._embedder.embed(
                [chunk.content for chunk in chunks], correlation_id=cid,
            )
            if len(embeddings) != len(chunks):
                raise CollaboratorError(
                    ErrorCategory.EXTERNAL_API, service,
                    f"malformed response: {len(embeddings)} embeddings for {len(chunks)} chunks",
                    status_code=502,
                )
            expected = self._embedder.dimensions
            if expected and any(len(e.vector) != expected for e in embeddings):
                raise CollaboratorError(
                    ErrorCategory.EXTERNAL_API, service,
                    f"malformed response: embedding dimensionality is not {expected}",
                    status_code=502,
                )
        return embeddings

    async def _persist(
        self,
        document:   DocumentRecord,
        chunks:     list[TextChunk],
        embeddings: list[Embedding],
        cid:        str,
        t0:         float,
    ) -> None:
        duration_ms = int((time.monotonic() - t0) * 1000)
        records = [
            VectorRecord(
                document_id=document.asset_id,
                tenant_id=document.tenant_id,
                chunk_index=chunk.index,
                content=chunk.content,
                embedding=embedding.vector,
                token_count=embedding.tokens,
                start_char=chunk.start_char,
                end_char=chunk.end_char,
                metadata={
                    "word_count":             len(chunk.content.split()),
                    "embedding_model":        self._embedder.model,
                    "processing_duration_ms": duration_ms,
                    "correlation_id":         cid,
                },
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]
        async with self._stage("store_chunks", ErrorCategory.INFRASTRUCTURE, "vector store", cid, document.tenant_id):
            await self._vector_store.replace_chunks(
                document.tenant_id, document.asset_id, records, cid,
            )

    async def _mark_failed(
        self,
        document: DocumentRecord,
        error:    PipelineError,
        log:      logging.LoggerAdapter,
    ) -> None:
        """Best effort: record the failure. Never raises."""
        try:
            await self._metadata_store.update_status(
                document.tenant_id,
                document.asset_id,
                DocumentStatus.FAILED,
                document.correlation_id,
                error_message=f"{error.context.operation} failed: {error.message}",
            )
        except Exception as exc:
            log.critical(
                "FAILED status update failed; document stranded in UPLOADED | "
                "asset=%s original_code=%s error=%s",
                document.asset_id, error.code, exc,
                exc_info=exc,
            )

    # ------------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _stage(
        self,
        operation: str,
        fallback:  ErrorCategory,
        service:   str,
        cid:       str,
        tenant_id: str,
    ) -> AsyncIterator[ErrorContext]:
        """Translate anything raised inside the block into a PipelineError."""
        context = ErrorContext(operation=operation, correlation_id=cid, tenant_id=tenant_id)
        async with self._classifier.translate(context, fallback, service):
            yield context


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _clean_pydantic_message(msg: str) -> str:
    return msg.removeprefix("Value error, ")
