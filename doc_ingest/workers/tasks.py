"""
Celery Tasks — Two-Stage Ingestion Driver

Task: extract_document   (documents.extract)
  1. Download the raw upload from S3
  2. Stage 1: extract text, chunk, persist (document → extracted)
  3. Enqueue embed_document

Task: embed_document     (documents.embed)
  One bounded Stage 2 call (≤ max_batches × 50 chunks). While chunks remain
  it re-enqueues itself. A call that failed after partial progress is
  retried later; one that failed with no progress leaves the document
  failed and stops.

Task: resume_extracted_documents   (beat, every 60 s)
  Re-enqueues Stage 2 for documents left in `extracted` for over 5 minutes,
  covering drivers that died between calls. Duplicate Stage 2 calls are
  harmless: embeddings are only written to chunks that still have none.

Each task builds its collaborators, runs one coroutine and disposes the
engine, so no connection outlives the event loop it was created on.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from celery import Task

from doc_ingest.core.config import settings
from doc_ingest.core.exceptions import (
    EmbeddingBatchError,
    InvalidTransitionError,
    PersistenceError,
    PipelineError,
)
from doc_ingest.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

# An extracted document untouched for this long has lost its driver
STALE_EXTRACTED_AFTER = timedelta(minutes=5)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


def _build_coordinator(usage=None):
    from doc_ingest.db.session import get_session_factory
    from doc_ingest.pipeline.coordinator import PipelineCoordinator
    from doc_ingest.processing.batcher import EmbeddingBatcher
    from doc_ingest.processing.chunking import ChunkConfig
    from doc_ingest.processing.embeddings import OpenAIEmbeddingProvider
    from doc_ingest.storage.status_store import SqlAlchemyStatusStore

    store   = SqlAlchemyStatusStore(get_session_factory())
    batcher = EmbeddingBatcher.from_settings(store, OpenAIEmbeddingProvider.from_settings(), usage=usage)
    return PipelineCoordinator(store, batcher, chunk_config=ChunkConfig.from_settings())


# ---------------------------------------------------------------------------
# Stage 1
# ---------------------------------------------------------------------------

@celery_app.task(
    name="doc_ingest.workers.tasks.extract_document",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
)
def extract_document(
    self: Task,
    *,
    document_id:  str,
    storage_path: str,
    file_type:    str,
) -> dict[str, Any]:
    try:
        result = run_async(_extract_document_async(uuid.UUID(document_id), storage_path, file_type))
    except InvalidTransitionError as exc:
        logger.warning("Stage 1 not applicable | doc=%s %s", document_id, exc.message)
        return {"status": "skipped", "document_id": document_id, "reason": exc.message}
    except PersistenceError as exc:
        # Database unavailable before the document could be marked; try again later
        raise self.retry(exc=exc)
    except PipelineError as exc:
        return {"status": "failed", **exc.to_dict()}

    embed_document.apply_async(kwargs={"document_id": document_id})
    return {
        "status":            "extracted",
        "document_id":       document_id,
        "chunk_count":       result.chunk_count,
        "word_count":        result.word_count,
        "page_count":        result.page_count,
        "already_processed": result.already_processed,
    }


async def _extract_document_async(document_id: uuid.UUID, storage_path: str, file_type: str):
    from doc_ingest.db.session import dispose_engine
    from doc_ingest.storage.blob import S3BlobStore

    try:
        coordinator = _build_coordinator()
        return await coordinator.run_stage1_from_blob(
            document_id, S3BlobStore.from_settings(), storage_path, file_type,
        )
    finally:
        await dispose_engine()


# ---------------------------------------------------------------------------
# Stage 2
# ---------------------------------------------------------------------------

@celery_app.task(
    name="doc_ingest.workers.tasks.embed_document",
    bind=True,
    max_retries=10,
    acks_late=True,
    reject_on_worker_lost=True,
)
def embed_document(
    self: Task,
    *,
    document_id: str,
    max_batches: Optional[int] = None,
) -> dict[str, Any]:
    batches = max_batches or settings.embed_max_batches
    try:
        progress, usage = run_async(_embed_document_async(uuid.UUID(document_id), batches))
    except InvalidTransitionError as exc:
        logger.warning("Stage 2 not applicable | doc=%s %s", document_id, exc.message)
        return {"status": "skipped", "document_id": document_id, "reason": exc.message}
    except EmbeddingBatchError as exc:
        if exc.made_progress:
            raise self.retry(exc=exc, countdown=settings.stage2_requeue_delay * (self.request.retries + 1))
        return {"status": "failed", **exc.to_dict()}

    if progress.remaining_count > 0:
        embed_document.apply_async(
            kwargs={"document_id": document_id, "max_batches": batches},
            countdown=settings.stage2_requeue_delay,
        )

    logger.info(
        "Stage 2 task | doc=%s embedded=%d remaining=%d tokens=%d cost_usd=%s",
        document_id, progress.embedded_count, progress.remaining_count,
        usage.total_tokens, usage.total_cost_usd,
    )
    return {
        "status":          "completed" if progress.done else "extracted",
        "document_id":     document_id,
        "embedded_count":  progress.embedded_count,
        "remaining_count": progress.remaining_count,
        "total_chunks":    progress.total_chunks,
        "tokens":          usage.total_tokens,
        "cost_usd":        str(usage.total_cost_usd),
    }


async def _embed_document_async(document_id: uuid.UUID, max_batches: int):
    from doc_ingest.db.session import dispose_engine
    from doc_ingest.observability.usage import UsageAccumulator

    usage = UsageAccumulator()
    try:
        coordinator = _build_coordinator(usage=usage)
        progress = await coordinator.run_stage2(document_id, max_batches=max_batches)
        return progress, usage
    finally:
        await dispose_engine()


# ---------------------------------------------------------------------------
# Sweep — runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="doc_ingest.workers.tasks.resume_extracted_documents",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def resume_extracted_documents(limit: int = 50) -> dict[str, int]:
    document_ids = run_async(_list_extracted_async(limit))
    for document_id in document_ids:
        embed_document.apply_async(kwargs={"document_id": str(document_id)}, countdown=5)
        logger.info("Re-queued extracted document | doc=%s", document_id)
    return {"requeued": len(document_ids)}


async def _list_extracted_async(limit: int) -> list[uuid.UUID]:
    from doc_ingest.db.session import dispose_engine, get_session_factory
    from doc_ingest.pipeline.state import DocumentStatus
    from doc_ingest.storage.status_store import SqlAlchemyStatusStore

    try:
        store = SqlAlchemyStatusStore(get_session_factory())
        return await store.list_documents_by_status(
            DocumentStatus.EXTRACTED,
            limit=limit,
            updated_before=datetime.now(timezone.utc) - STALE_EXTRACTED_AFTER,
        )
    finally:
        await dispose_engine()
