"""
Unit Tests — IngestionPipeline
═══════════════════════════════
Every branch of the six-stage pipeline, driven against the in-memory fakes
from conftest.py. Nothing here touches PostgreSQL, S3 or OpenAI.

Coverage targets:
  ✅ Valid TXT        → PROCESSED, 3 chunks, tokens summed, one embed call
  ✅ Missing file     → 400 VALIDATION, nothing stored
  ✅ Empty file       → 400 VALIDATION, nothing stored
  ✅ Oversized        → 400 VALIDATION
  ✅ Bad MIME / tenant→ 400 VALIDATION
  ✅ PDF              → stored, then FAILED with VALIDATION
  ✅ Whitespace text  → FAILED with NO_CHUNKS_PRODUCED
  ✅ S3 / DB failure  → INFRASTRUCTURE, no metadata / no chunking
  ✅ Embed timeout    → FAILED, EXTERNAL_API retryable
  ✅ Rate limit       → FAILED, RATE_LIMIT with retry_after
  ✅ Malformed embed  → FAILED, EXTERNAL_API
  ✅ Persist failure  → FAILED, INFRASTRUCTURE retryable
  ✅ FAILED update fails → original error still raised, CRITICAL logged
  ✅ PROCESSED update fails → success, warning logged
  ✅ Re-ingest        → upsert, chunks replaced, created_at kept
  ✅ Correlation id   → generated once, passed to every collaborator;
                       malformed inbound ids replaced
"""

from __future__ import annotations

import logging
import re
import uuid

import pytest

from ragtime.core.errors import CollaboratorError, ErrorCategory, PipelineError
from ragtime.processing.embeddings import Embedding
from ragtime.schemas.documents import DocumentStatus
from ragtime.services.ingestion import FileUpload, IngestionPipeline
from tests.conftest import TEST_DIMENSIONS, TEST_TENANT, THREE_CHUNK_TEXT

ASSET_ID = "asset-001"
CID      = "PROC-20250822143015-K3X9QZ"


def _upload(data: bytes, filename: str = "notes.txt", content_type: str = "text/plain") -> FileUpload:
    return FileUpload(filename=filename, content_type=content_type, data=data)


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestIngestionHappyPath:

    async def test_valid_txt_is_processed(self, make_pipeline, txt_upload, metadata_store, vector_store):
        result = await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        assert result.status is DocumentStatus.PROCESSED
        assert result.chunk_count == 3
        assert result.total_tokens == 30
        assert result.processing_time_ms >= 0

        record = metadata_store.records[(TEST_TENANT, ASSET_ID)]
        assert record.status is DocumentStatus.PROCESSED
        assert record.chunk_count == 3
        assert record.total_tokens == 30
        assert result.document == record

        stored = vector_store.chunks[(TEST_TENANT, ASSET_ID)]
        assert [r.chunk_index for r in stored] == [0, 1, 2]
        assert [r.content for r in stored] == [
            "The quick brown fox jumps.",
            "umps. The lazy dog sleeps.",
            "eeps. The end is near now.",
        ]
        assert sum(r.token_count for r in stored) == 30

    async def test_all_chunks_embedded_in_one_call(self, make_pipeline, txt_upload, embedder):
        await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)
        assert len(embedder.calls) == 1
        assert len(embedder.calls[0]) == 3

    async def test_object_key_and_metadata_fields(self, make_pipeline, txt_upload, object_store, metadata_store):
        result = await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        key = f"documents/{TEST_TENANT}/{ASSET_ID}/notes.txt"
        assert key in object_store.objects
        assert result.uploaded_file.key == key

        record = metadata_store.records[(TEST_TENANT, ASSET_ID)]
        assert record.s3_key == key
        assert record.file_size == len(THREE_CHUNK_TEXT)
        assert record.content_type == "text/plain"
        assert record.word_count == 14
        assert record.character_count == len(THREE_CHUNK_TEXT)
        assert record.extraction_method == "direct"

    async def test_chunk_metadata(self, make_pipeline, txt_upload, vector_store):
        await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        first = vector_store.chunks[(TEST_TENANT, ASSET_ID)][0]
        assert first.document_id == ASSET_ID
        assert first.tenant_id == TEST_TENANT
        assert len(first.embedding) == TEST_DIMENSIONS
        assert (first.start_char, first.end_char) == (0, 26)
        assert first.metadata["word_count"] == 5
        assert first.metadata["embedding_model"] == "text-embedding-3-small"
        assert first.metadata["correlation_id"] == CID
        assert first.metadata["processing_duration_ms"] >= 0

    async def test_status_moves_uploaded_to_processed_once(self, make_pipeline, txt_upload, metadata_store):
        await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)
        assert metadata_store.status_calls == [(TEST_TENANT, ASSET_ID, DocumentStatus.PROCESSED)]

    async def test_asset_id_generated_when_absent(self, make_pipeline, txt_upload):
        result = await make_pipeline().ingest(TEST_TENANT, txt_upload, CID)
        assert uuid.UUID(result.document.asset_id).version == 4

    async def test_content_type_parameters_are_dropped(self, make_pipeline, sample_txt_bytes):
        upload = _upload(sample_txt_bytes, content_type="Text/Plain; charset=utf-8")
        result = await make_pipeline().ingest(TEST_TENANT, upload, CID, ASSET_ID)

        assert result.document.content_type == "text/plain"
        assert result.status is DocumentStatus.PROCESSED

    async def test_latin1_text_is_decoded(self, make_pipeline, vector_store):
        upload = _upload("Caf\xe9 au lait.".encode("latin-1"))
        await make_pipeline().ingest(TEST_TENANT, upload, CID, ASSET_ID)

        assert vector_store.chunks[(TEST_TENANT, ASSET_ID)][0].content == "Caf\xe9 au lait."

    async def test_filename_is_sanitized(self, make_pipeline, sample_txt_bytes, object_store):
        upload = _upload(sample_txt_bytes, filename="../etc/pass?wd.txt")
        result = await make_pipeline().ingest(TEST_TENANT, upload, CID, ASSET_ID)

        assert result.document.file_name == ".._etc_pass_wd.txt"
        assert object_store.calls[0]["filename"] == ".._etc_pass_wd.txt"


# ─────────────────────────────────────────────────────────────────────────────
# Validation (stage 0): nothing reaches a collaborator
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestIngestionValidation:

    @pytest.mark.parametrize(
        "tenant, data, content_type, fragment",
        [
            ("tenant-acme",  None,           "text/plain", "file is required"),
            ("tenant-acme",  b"",            "text/plain", "file must not be empty"),
            ("tenant-acme",  b"\x89PNG....", "image/png",  "content type 'image/png' is invalid"),
            ("",             b"hello.",      "text/plain", "tenant_id is required"),
            ("bad tenant!",  b"hello.",      "text/plain", "tenant_id is invalid"),
            ("t" * 51,       b"hello.",      "text/plain", "tenant_id must be at most 50"),
        ],
    )
    async def test_rejected_before_any_side_effect(
        self, make_pipeline, object_store, metadata_store, embedder,
        tenant, data, content_type, fragment,
    ):
        upload = _upload(data, content_type=content_type) if data is not None else None

        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(tenant, upload, CID, ASSET_ID)

        error = exc_info.value
        assert error.category is ErrorCategory.VALIDATION
        assert error.code == "VALIDATION_FAILED"
        assert error.http_status_code == 400
        assert error.retryable is False
        assert fragment in error.message
        assert error.context.correlation_id == CID
        assert error.context.operation == "validate_upload"

        assert object_store.calls == []
        assert metadata_store.records == {}
        assert embedder.calls == []

    async def test_oversized_file(self, make_pipeline, sample_txt_bytes, object_store):
        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline(max_file_size_bytes=10).ingest(
                TEST_TENANT, _upload(sample_txt_bytes), CID, ASSET_ID,
            )

        assert exc_info.value.category is ErrorCategory.VALIDATION
        assert "too large" in exc_info.value.message
        assert object_store.calls == []

    async def test_validation_details_list_every_problem(self, make_pipeline):
        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest("", None, CID)

        errors = exc_info.value.context.metadata["validation_details"]["errors"]
        assert {e["field"] for e in errors} == {"tenant_id", "file"}

    @pytest.mark.parametrize("size, overlap", [(0, 0), (10, 10), (10, -1)])
    def test_bad_chunk_parameters_rejected_at_construction(
        self, object_store, metadata_store, embedder, vector_store, size, overlap,
    ):
        with pytest.raises(ValueError):
            IngestionPipeline(
                object_store=object_store,
                metadata_store=metadata_store,
                embedder=embedder,
                vector_store=vector_store,
                chunk_size=size,
                chunk_overlap=overlap,
            )


# ─────────────────────────────────────────────────────────────────────────────
# Stages 1–2: abort without a FAILED record
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestIngestionBeforeCommit:

    async def test_object_store_failure(self, make_pipeline, txt_upload, object_store, metadata_store):
        object_store.error = CollaboratorError(
            ErrorCategory.INFRASTRUCTURE, "S3", "AccessDenied", status_code=403, retryable=False,
        )

        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        error = exc_info.value
        assert error.category is ErrorCategory.INFRASTRUCTURE
        assert error.retryable is False
        assert error.context.operation == "store_object"
        assert metadata_store.records == {}
        assert metadata_store.status_calls == []

    async def test_untyped_object_store_fault_is_infrastructure(self, make_pipeline, txt_upload, object_store):
        object_store.error = OSError("disk on fire")

        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        assert exc_info.value.category is ErrorCategory.INFRASTRUCTURE
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, OSError)

    async def test_metadata_save_failure(self, make_pipeline, txt_upload, metadata_store, embedder):
        metadata_store.save_error = CollaboratorError(
            ErrorCategory.INFRASTRUCTURE, "metadata store", "connection refused",
        )

        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        assert exc_info.value.category is ErrorCategory.INFRASTRUCTURE
        assert exc_info.value.retryable is True
        assert exc_info.value.context.operation == "save_metadata"
        assert metadata_store.status_calls == []
        assert embedder.calls == []


# ─────────────────────────────────────────────────────────────────────────────
# Stages 3–5: classified error + FAILED record
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestIngestionAfterCommit:

    async def test_pdf_is_stored_then_failed(
        self, make_pipeline, sample_pdf_bytes, object_store, metadata_store, embedder,
    ):
        upload = _upload(sample_pdf_bytes, filename="report.pdf", content_type="application/pdf")

        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, upload, CID, ASSET_ID)

        error = exc_info.value
        assert error.category is ErrorCategory.VALIDATION
        assert error.http_status_code == 400
        assert error.context.operation == "chunk_text"

        assert len(object_store.calls) == 1
        record = metadata_store.records[(TEST_TENANT, ASSET_ID)]
        assert record.status is DocumentStatus.FAILED
        assert record.error_message.startswith("chunk_text failed: ")
        assert "application/pdf" in record.error_message
        assert record.word_count is None
        assert embedder.calls == []

    async def test_whitespace_only_text_produces_no_chunks(self, make_pipeline, metadata_store, embedder):
        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, _upload(b"  \n\n \t "), CID, ASSET_ID)

        error = exc_info.value
        assert error.category is ErrorCategory.BUSINESS_LOGIC
        assert error.code == "NO_CHUNKS_PRODUCED"
        assert error.http_status_code == 422
        assert metadata_store.records[(TEST_TENANT, ASSET_ID)].status is DocumentStatus.FAILED
        assert embedder.calls == []

    async def test_embedding_timeout(self, make_pipeline, txt_upload, embedder, metadata_store, vector_store):
        embedder.error = TimeoutError("read timed out")

        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        error = exc_info.value
        assert error.category is ErrorCategory.EXTERNAL_API
        assert error.code == "EXTERNAL_API_ERROR_OPENAI"
        assert error.retryable is True
        assert error.context.operation == "generate_embeddings"
        assert error.context.correlation_id == CID

        record = metadata_store.records[(TEST_TENANT, ASSET_ID)]
        assert record.status is DocumentStatus.FAILED
        assert record.error_message.startswith("generate_embeddings failed: ")
        assert vector_store.replace_calls == 0

    async def test_embedding_rate_limited(self, make_pipeline, txt_upload, embedder, metadata_store):
        embedder.error = CollaboratorError(
            ErrorCategory.RATE_LIMIT, "OpenAI", "rate limited", status_code=429, retry_after=7,
        )

        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        error = exc_info.value
        assert error.category is ErrorCategory.RATE_LIMIT
        assert error.http_status_code == 429
        assert error.retry_after == 7
        assert error.retryable is True
        assert metadata_store.records[(TEST_TENANT, ASSET_ID)].status is DocumentStatus.FAILED

    async def test_embedding_client_error_not_retryable(self, make_pipeline, txt_upload, embedder):
        embedder.error = CollaboratorError(ErrorCategory.EXTERNAL_API, "OpenAI", "bad request", status_code=400)

        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        assert exc_info.value.retryable is False
        assert exc_info.value.http_status_code == 400

    async def test_embedding_count_mismatch(self, make_pipeline, txt_upload, embedder, vector_store):
        embedder.result = [Embedding(vector=[0.1] * TEST_DIMENSIONS, tokens=10)]

        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        assert exc_info.value.category is ErrorCategory.EXTERNAL_API
        assert "malformed response" in exc_info.value.message
        assert vector_store.replace_calls == 0

    async def test_embedding_dimension_mismatch(self, make_pipeline, txt_upload, embedder):
        embedder.result = [Embedding(vector=[0.1] * 4, tokens=10) for _ in range(3)]

        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        assert "dimensionality" in exc_info.value.message

    async def test_vector_store_failure(self, make_pipeline, txt_upload, vector_store, metadata_store):
        vector_store.error = RuntimeError("pool exhausted")

        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        error = exc_info.value
        assert error.category is ErrorCategory.INFRASTRUCTURE
        assert error.retryable is True
        assert error.context.operation == "store_chunks"

        record = metadata_store.records[(TEST_TENANT, ASSET_ID)]
        assert record.status is DocumentStatus.FAILED
        assert record.error_message == "store_chunks failed: vector store: pool exhausted"

    async def test_failed_update_failure_keeps_original_error(
        self, make_pipeline, txt_upload, embedder, metadata_store, caplog,
    ):
        caplog.set_level(logging.DEBUG, logger="ragtime")
        embedder.error = TimeoutError("read timed out")
        metadata_store.update_errors[DocumentStatus.FAILED] = RuntimeError("db gone")

        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        assert exc_info.value.category is ErrorCategory.EXTERNAL_API
        assert metadata_store.records[(TEST_TENANT, ASSET_ID)].status is DocumentStatus.UPLOADED

        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 1
        assert "stranded" in critical[0].getMessage()
        assert critical[0].correlation_id == CID

    async def test_failure_is_logged_with_correlation_id(self, make_pipeline, txt_upload, vector_store, caplog):
        caplog.set_level(logging.DEBUG, logger="ragtime")
        vector_store.error = RuntimeError("pool exhausted")

        with pytest.raises(PipelineError):
            await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert errors[0].correlation_id == CID
        assert "INFRASTRUCTURE_ERROR" in errors[0].getMessage()


# ─────────────────────────────────────────────────────────────────────────────
# Stage 6 and re-ingest
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestIngestionCompletion:

    async def test_processed_update_failure_is_not_fatal(
        self, make_pipeline, txt_upload, metadata_store, vector_store, caplog,
    ):
        caplog.set_level(logging.DEBUG, logger="ragtime")
        metadata_store.update_errors[DocumentStatus.PROCESSED] = RuntimeError("db blip")

        result = await make_pipeline().ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        assert result.status is DocumentStatus.PROCESSED
        assert result.chunk_count == 3
        assert result.document.status is DocumentStatus.UPLOADED
        assert len(vector_store.chunks[(TEST_TENANT, ASSET_ID)]) == 3
        assert any(
            r.levelno == logging.WARNING and "PROCESSED status update failed" in r.getMessage()
            for r in caplog.records
        )

    async def test_reingest_replaces_chunks(self, make_pipeline, txt_upload, metadata_store, vector_store):
        pipeline = make_pipeline()
        first = await pipeline.ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)
        second = await pipeline.ingest(TEST_TENANT, _upload(b"Short note."), CID, ASSET_ID)

        assert second.status is DocumentStatus.PROCESSED
        assert second.chunk_count == 1
        assert [r.content for r in vector_store.chunks[(TEST_TENANT, ASSET_ID)]] == ["Short note."]
        assert vector_store.replace_calls == 2

        record = metadata_store.records[(TEST_TENANT, ASSET_ID)]
        assert record.status is DocumentStatus.PROCESSED
        assert record.created_at == first.document.created_at
        assert len(metadata_store.records) == 1

    async def test_reingest_after_failure_recovers(self, make_pipeline, txt_upload, embedder, metadata_store):
        pipeline = make_pipeline()
        embedder.error = TimeoutError("read timed out")
        with pytest.raises(PipelineError):
            await pipeline.ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)
        assert metadata_store.records[(TEST_TENANT, ASSET_ID)].status is DocumentStatus.FAILED

        embedder.error = None
        result = await pipeline.ingest(TEST_TENANT, txt_upload, CID, ASSET_ID)

        record = metadata_store.records[(TEST_TENANT, ASSET_ID)]
        assert result.status is DocumentStatus.PROCESSED
        assert record.status is DocumentStatus.PROCESSED
        assert record.error_message is None


# ─────────────────────────────────────────────────────────────────────────────
# Correlation id propagation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestIngestionCorrelation:

    async def test_generated_id_is_auto_prefixed(self, make_pipeline, txt_upload):
        result = await make_pipeline().ingest(TEST_TENANT, txt_upload)
        assert re.match(r"^AUTO-\d{14}-[A-Z0-9]{6}$", result.document.correlation_id)

    async def test_one_id_reaches_every_collaborator(
        self, make_pipeline, txt_upload, object_store, metadata_store, vector_store,
    ):
        result = await make_pipeline().ingest(TEST_TENANT, txt_upload)
        cid = result.document.correlation_id

        assert object_store.calls[0]["correlation_id"] == cid
        assert metadata_store.records[(TEST_TENANT, result.document.asset_id)].correlation_id == cid
        records = vector_store.chunks[(TEST_TENANT, result.document.asset_id)]
        assert {r.metadata["correlation_id"] for r in records} == {cid}

    async def test_generated_id_is_on_the_error(self, make_pipeline):
        with pytest.raises(PipelineError) as exc_info:
            await make_pipeline().ingest(TEST_TENANT, None)
        assert exc_info.value.context.correlation_id.startswith("AUTO-")

    async def test_oversized_inbound_id_is_replaced(self, make_pipeline, txt_upload, object_store, metadata_store):
        result = await make_pipeline().ingest(TEST_TENANT, txt_upload, correlation_id="X" * 200, asset_id=ASSET_ID)

        saved = metadata_store.records[(TEST_TENANT, ASSET_ID)].correlation_id
        assert saved.startswith("AUTO-")
        assert len(saved) <= 64
        assert object_store.calls[0]["correlation_id"] == saved
        assert result.document.correlation_id == saved

    async def test_inbound_id_with_illegal_characters_is_replaced(self, make_pipeline, txt_upload):
        result = await make_pipeline().ingest(TEST_TENANT, txt_upload, correlation_id="trace id\r\n")
        assert result.document.correlation_id.startswith("AUTO-")
