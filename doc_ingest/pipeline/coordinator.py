"""
Pipeline Coordinator  —  Stage 1 / Stage 2 and the document state machine
═════════════════════════════════════════════════════════════════════════

Stage 1  run_stage1(document_id, file_bytes, file_type)
  pending → processing → [extract → summarize → chunk] → extracted
  Text, stats and chunks are written in one store transaction. Any failure
  moves the document to failed (error_message set) and re-raises.
  Re-running on an extracted/completed document returns its existing counts.

Stage 2  run_stage2(document_id, max_batches)
  One bounded EmbeddingBatcher call.
    remaining == 0                  → completed
    EmbeddingBatchError, progress   → stays extracted, error recorded, re-raised
    EmbeddingBatchError, none       → failed, re-raised
  A completed document is a no-op returning (0, 0, 0).

The coordinator holds no state between calls; an external driver (Celery
task, cron, manual retry) loops run_stage2 until remaining_count == 0.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from doc_ingest.core.exceptions import (
    EmbeddingBatchError,
    InvalidTransitionError,
    PipelineError,
)
from doc_ingest.observability.tracing import traced
from doc_ingest.pipeline.state import DocumentStatus, ensure_transition
from doc_ingest.processing.batcher import EMBED_MAX_BATCHES, EmbeddingBatcher, EmbedProgress
from doc_ingest.processing.chunking import ChunkConfig, chunk_text
from doc_ingest.processing.extractor import FileType, TextExtractor, summarize_text
from doc_ingest.storage.blob import BlobStore
from doc_ingest.storage.status_store import StatusStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Stage1Result:
    chunk_count:       int
    word_count:        int
    page_count:        Optional[int]
    already_processed: bool = False


class PipelineCoordinator:
    """
    Usage:
        coordinator = PipelineCoordinator(store, batcher)
        await coordinator.run_stage1(doc_id, data, "pdf")
        while not (await coordinator.run_stage2(doc_id)).done:
            ...
    """

    def __init__(
        self,
        store:        StatusStore,
        batcher:      EmbeddingBatcher,
        *,
        extractor:    TextExtractor | None = None,
        chunk_config: ChunkConfig | None = None,
    ) -> None:
        self._store        = store
        self._batcher      = batcher
        self._extractor    = extractor or TextExtractor()
        self._chunk_config = chunk_config or ChunkConfig()

    # ------------------------------------------------------------------
    # Stage 1
    # ------------------------------------------------------------------

    @traced("stage1")
    async def run_stage1(
        self,
        document_id: uuid.UUID,
        file_bytes:  bytes,
        file_type:   FileType | str,
    ) -> Stage1Result:
        existing = await self._begin_stage1(document_id)
        if existing is not None:
            return existing

        try:
            extracted = self._extractor.extract(file_bytes, file_type)
            chunks    = chunk_text(extracted.text, self._chunk_config)
            await self._store.save_extraction(
                document_id, extracted, summarize_text(extracted.text), chunks,
            )
        except Exception as exc:
            await self._fail_stage1(document_id, exc)
            raise

        logger.info(
            "Stage 1 done | doc=%s words=%d pages=%s chunks=%d",
            document_id, extracted.word_count, extracted.page_count, len(chunks),
        )
        return Stage1Result(
            chunk_count=len(chunks),
            word_count=extracted.word_count,
            page_count=extracted.page_count,
        )

    @traced("stage1_from_blob")
    async def run_stage1_from_blob(
        self,
        document_id: uuid.UUID,
        blob_store:  BlobStore,
        path:        str,
        file_type:   FileType | str,
    ) -> Stage1Result:
        """Download the raw upload, then run Stage 1. A download failure fails the document."""
        record = await self._store.get_document(document_id)
        if record.status in (DocumentStatus.EXTRACTED, DocumentStatus.COMPLETED):
            return self._already_processed(record)

        ensure_transition(record.status, DocumentStatus.PROCESSING, document_id=document_id)

        try:
            data = await blob_store.download(path)
        except PipelineError as exc:
            await self._store.transition(
                document_id, DocumentStatus.PENDING, DocumentStatus.PROCESSING,
            )
            await self._fail_stage1(document_id, exc)
            raise

        return await self.run_stage1(document_id, data, file_type)

    async def _begin_stage1(self, document_id: uuid.UUID) -> Optional[Stage1Result]:
        record = await self._store.get_document(document_id)
        if record.status in (DocumentStatus.EXTRACTED, DocumentStatus.COMPLETED):
            return self._already_processed(record)

        ensure_transition(record.status, DocumentStatus.PROCESSING, document_id=document_id)
        await self._store.transition(document_id, DocumentStatus.PENDING, DocumentStatus.PROCESSING)
        return None

    @staticmethod
    def _already_processed(record) -> Stage1Result:
        logger.info("Stage 1 skipped | doc=%s status=%s", record.id, record.status.value)
        return Stage1Result(
            chunk_count=record.chunk_count,
            word_count=record.word_count or 0,
            page_count=record.page_count,
            already_processed=True,
        )

    async def _fail_stage1(self, document_id: uuid.UUID, exc: Exception) -> None:
        message = exc.message if isinstance(exc, PipelineError) else str(exc)
        logger.error("Stage 1 failed | doc=%s error=%s", document_id, message)
        try:
            await self._store.transition(
                document_id,
                DocumentStatus.PROCESSING,
                DocumentStatus.FAILED,
                error_message=message or type(exc).__name__,
            )
        except PipelineError as mark_exc:
            # the original error still propagates
            logger.error("Could not mark document failed | doc=%s error=%s", document_id, mark_exc)

    # ------------------------------------------------------------------
    # Stage 2
    # ------------------------------------------------------------------

    @traced("stage2")
    async def run_stage2(
        self,
        document_id: uuid.UUID,
        max_batches: int = EMBED_MAX_BATCHES,
    ) -> EmbedProgress:
        record = await self._store.get_document(document_id)

        if record.status is DocumentStatus.COMPLETED:
            logger.info("Stage 2 skipped | doc=%s already completed", document_id)
            return EmbedProgress(embedded_count=0, remaining_count=0, total_chunks=0)

        if record.status is not DocumentStatus.EXTRACTED:
            raise InvalidTransitionError(
                record.status.value, DocumentStatus.COMPLETED.value, document_id=document_id,
            )

        try:
            progress = await self._batcher.embed_pending(document_id, max_batches=max_batches)
        except EmbeddingBatchError as exc:
            await self._handle_stage2_failure(document_id, exc)
            raise

        if progress.remaining_count == 0:
            # Overlapping calls can leave rows in flight; complete only on an empty set
            still_pending = await self._store.count_unembedded(document_id)
            if still_pending:
                return EmbedProgress(
                    embedded_count=progress.embedded_count,
                    remaining_count=still_pending,
                    total_chunks=progress.total_chunks,
                )
            await self._store.transition(
                document_id, DocumentStatus.EXTRACTED, DocumentStatus.COMPLETED,
            )
            logger.info("Stage 2 complete | doc=%s", document_id)

        return progress

    async def _handle_stage2_failure(self, document_id: uuid.UUID, exc: EmbeddingBatchError) -> None:
        if exc.made_progress:
            # Partial progress: stays extracted so the next call resumes
            await self._store.record_error(document_id, exc.message)
            logger.warning(
                "Stage 2 partial | doc=%s embedded=%d remaining=%d",
                document_id, exc.embedded_count, exc.remaining_count,
            )
            return

        await self._store.transition(
            document_id,
            DocumentStatus.EXTRACTED,
            DocumentStatus.FAILED,
            error_message=exc.message,
        )
        logger.error("Stage 2 failed | doc=%s error=%s", document_id, exc.message)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def resubmit(self, document_id: uuid.UUID) -> None:
        """
        Return a failed document to pending so Stage 1 can run from scratch.
        Its chunks, extracted text and counters are discarded.
        """
        record = await self._store.get_document(document_id)
        ensure_transition(record.status, DocumentStatus.PENDING, document_id=document_id)
        await self._store.reset_document(document_id)
        logger.info("Document resubmitted | doc=%s", document_id)
