"""
Embedding Batcher  —  bounded, resumable Stage 2 work
═════════════════════════════════════════════════════

One call to `embed_pending()` does a bounded amount of work and returns:

  1. Select the document's chunks with embedding IS NULL, ordered by
     chunk_index. total_chunks = size of that set.
  2. plan_batches(): sub-batches of batch_size (50), at most max_batches (5)
     per call ⇒ ≤ 250 chunks per invocation. The rest is deferred.
  3. For each sub-batch, strictly in order:
       a. one provider call, wrapped in with_retry (1 s, then 2 s)
       b. persist that sub-batch's vectors before touching the next one
  4. Return EmbedProgress(embedded_count, remaining_count, total_chunks).

Failure policy:
  Any exception from a sub-batch stops the call, PipelineError or not.
  Sub-batches already persisted stay persisted; EmbeddingBatchError carries
  the counts and chains the original error as __cause__.

Calling again after any outcome resumes from the remaining NULL rows, so a
driver can simply loop until remaining_count == 0.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Sequence

from doc_ingest.core.exceptions import EmbeddingBatchError, EmbeddingProviderError, PipelineError
from doc_ingest.observability.usage import UsageAccumulator
from doc_ingest.processing.embeddings import EmbeddingProvider
from doc_ingest.processing.retry import with_retry
from doc_ingest.storage.status_store import PendingChunk, StatusStore

logger = logging.getLogger(__name__)

EMBED_BATCH_SIZE  = 50
EMBED_MAX_BATCHES = 5


# ---------------------------------------------------------------------------
# Planning (pure)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BatchPlan:
    """
    batches  : sub-batches to run in this call, in chunk_index order
    deferred : pending chunks left for a later call
    """
    batches:  list[list[PendingChunk]]
    deferred: int

    @property
    def planned(self) -> int:
        return sum(len(b) for b in self.batches)


def plan_batches(
    pending:     Sequence[PendingChunk],
    batch_size:  int = EMBED_BATCH_SIZE,
    max_batches: int = EMBED_MAX_BATCHES,
) -> BatchPlan:
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    if max_batches <= 0:
        raise ValueError(f"max_batches must be positive, got {max_batches}")

    limit   = batch_size * max_batches
    planned = list(pending[:limit])
    batches = [planned[i : i + batch_size] for i in range(0, len(planned), batch_size)]
    return BatchPlan(batches=batches, deferred=len(pending) - len(planned))


@dataclass(frozen=True)
class EmbedProgress:
    """
    embedded_count  : chunks embedded and persisted by this call
    remaining_count : chunks still without an embedding after this call
    total_chunks    : chunks that were pending when the call started
    """
    embedded_count:  int
    remaining_count: int
    total_chunks:    int

    @property
    def done(self) -> bool:
        return self.remaining_count == 0


# ---------------------------------------------------------------------------
# Batcher
# ---------------------------------------------------------------------------

class EmbeddingBatcher:
    """
    Usage:
        batcher  = EmbeddingBatcher(store, OpenAIEmbeddingProvider.from_settings())
        progress = await batcher.embed_pending(doc_id, max_batches=5)
    """

    def __init__(
        self,
        store:       StatusStore,
        provider:    EmbeddingProvider,
        *,
        batch_size:  int   = EMBED_BATCH_SIZE,
        max_retries: int   = 2,
        base_delay:  float = 1.0,
        usage:       UsageAccumulator | None = None,
        sleep=None,
    ) -> None:
        self._store       = store
        self._provider    = provider
        self._batch_size  = batch_size
        self._max_retries = max_retries
        self._base_delay  = base_delay
        self._usage       = usage
        self._sleep       = sleep

    @classmethod
    def from_settings(
        cls,
        store:    StatusStore,
        provider: EmbeddingProvider,
        usage:    UsageAccumulator | None = None,
    ) -> "EmbeddingBatcher":
        from doc_ingest.core.config import settings
        return cls(
            store,
            provider,
            batch_size=settings.embed_batch_size,
            max_retries=settings.embed_max_retries,
            base_delay=settings.embed_retry_base_delay,
            usage=usage,
        )

    async def embed_pending(
        self,
        document_id: uuid.UUID,
        max_batches: int = EMBED_MAX_BATCHES,
    ) -> EmbedProgress:
        t0 = time.monotonic()
        pending = await self._store.list_unembedded(document_id)
        total   = len(pending)
        plan    = plan_batches(pending, self._batch_size, max_batches)

        logger.info(
            "Stage 2 plan | doc=%s pending=%d batches=%d deferred=%d",
            document_id, total, len(plan.batches), plan.deferred,
        )

        embedded = 0
        for batch_idx, batch in enumerate(plan.batches):
            try:
                await self._embed_and_persist(document_id, batch, batch_idx)
            except Exception as exc:
                raise self._batch_error(document_id, exc, embedded, total, batch_idx) from exc

            embedded += len(batch)
            logger.info(
                "Stage 2 sub-batch | doc=%s batch=%d size=%d embedded=%d/%d",
                document_id, batch_idx, len(batch), embedded, total,
            )

        progress = EmbedProgress(
            embedded_count=embedded,
            remaining_count=total - embedded,
            total_chunks=total,
        )
        logger.info(
            "Stage 2 call done | doc=%s embedded=%d remaining=%d elapsed_ms=%.0f",
            document_id, progress.embedded_count, progress.remaining_count,
            (time.monotonic() - t0) * 1000,
        )
        return progress

    async def _embed_and_persist(
        self,
        document_id: uuid.UUID,
        batch:       list[PendingChunk],
        batch_idx:   int,
    ) -> None:
        texts = [chunk.content for chunk in batch]

        retry_kwargs = {}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep

        result = await with_retry(
            lambda: self._provider.embed_batch(texts),
            max_retries=self._max_retries,
            base_delay=self._base_delay,
            label=f"embed doc={document_id} batch={batch_idx}",
            **retry_kwargs,
        )

        if self._usage is not None:
            self._usage.record(result.model, len(texts), result.total_tokens)

        if len(result.vectors) != len(batch):
            raise EmbeddingProviderError(
                f"Provider returned {len(result.vectors)} vectors for {len(batch)} texts",
                document_id=document_id,
            )

        await self._store.save_embeddings(
            document_id,
            [(chunk.id, vector) for chunk, vector in zip(batch, result.vectors)],
            result.model,
        )

    @staticmethod
    def _batch_error(
        document_id: uuid.UUID,
        cause:       Exception,
        embedded:    int,
        total:       int,
        batch_idx:   int,
    ) -> EmbeddingBatchError:
        logger.error(
            "Stage 2 sub-batch failed | doc=%s batch=%d embedded=%d remaining=%d error=%s",
            document_id, batch_idx, embedded, total - embedded, cause,
        )
        reason = cause.message if isinstance(cause, PipelineError) else f"{type(cause).__name__}: {cause}"
        return EmbeddingBatchError(
            f"Embedding stopped at sub-batch {batch_idx}: {reason}",
            embedded_count=embedded,
            remaining_count=total - embedded,
            total_chunks=total,
            document_id=document_id,
        )
