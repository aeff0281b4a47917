"""
Integration Tests — EmbeddingBatcher against the SQLite store

Coverage targets:
  ✅ plan_batches(): 5 × 50 per call, remainder deferred
  ✅ 600 pending chunks drain in three calls (250/350, 250/100, 100/0)
  ✅ Sub-batches are sent to the provider in chunk_index order
  ✅ Transient provider failures retried after 1 s, then 2 s
  ✅ Failure on sub-batch 2 keeps sub-batch 1 persisted
  ✅ Next call resumes from the remaining NULL rows
  ✅ Usage accumulator records one entry per successful sub-batch
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from doc_ingest.core.exceptions import EmbeddingBatchError, EmbeddingProviderError
from doc_ingest.observability.usage import UsageAccumulator
from doc_ingest.processing.batcher import EmbedProgress, plan_batches
from doc_ingest.processing.embeddings import EmbeddingBatch
from doc_ingest.storage.status_store import PendingChunk


def _pending(n: int) -> list[PendingChunk]:
    return [PendingChunk(id=uuid.uuid4(), chunk_index=i, content=f"c{i}") for i in range(n)]


# ─────────────────────────────────────────────────────────────────────────────
# Planning
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestPlanBatches:

    def test_caps_at_max_batches(self):
        plan = plan_batches(_pending(600), batch_size=50, max_batches=5)

        assert [len(b) for b in plan.batches] == [50] * 5
        assert plan.planned == 250
        assert plan.deferred == 350

    def test_short_final_batch(self):
        plan = plan_batches(_pending(120), batch_size=50, max_batches=5)

        assert [len(b) for b in plan.batches] == [50, 50, 20]
        assert plan.deferred == 0

    def test_preserves_order(self):
        pending = _pending(7)
        plan = plan_batches(pending, batch_size=3, max_batches=5)

        flattened = [c.chunk_index for batch in plan.batches for c in batch]
        assert flattened == list(range(7))

    def test_nothing_pending(self):
        plan = plan_batches([], batch_size=50, max_batches=5)
        assert plan.batches == []
        assert plan.deferred == 0

    @pytest.mark.parametrize("batch_size, max_batches", [(0, 5), (50, 0), (-1, 1)])
    def test_rejects_non_positive_limits(self, batch_size, max_batches):
        with pytest.raises(ValueError):
            plan_batches(_pending(3), batch_size=batch_size, max_batches=max_batches)


# ─────────────────────────────────────────────────────────────────────────────
# Bounded calls
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.ingestion
class TestEmbedPending:

    async def test_drains_in_bounded_calls(self, batcher, fake_provider, seed_chunks, store):
        doc_id = await seed_chunks(600)

        first  = await batcher.embed_pending(doc_id, max_batches=5)
        second = await batcher.embed_pending(doc_id, max_batches=5)
        third  = await batcher.embed_pending(doc_id, max_batches=5)

        assert first  == EmbedProgress(embedded_count=250, remaining_count=350, total_chunks=600)
        assert second == EmbedProgress(embedded_count=250, remaining_count=100, total_chunks=350)
        assert third  == EmbedProgress(embedded_count=100, remaining_count=0,   total_chunks=100)
        assert third.done

        assert len(fake_provider.calls) == 12
        assert all(len(call) <= 50 for call in fake_provider.calls)
        assert await store.count_unembedded(doc_id) == 0
        assert (await store.get_document(doc_id)).embedded_count == 600

    async def test_sub_batches_follow_chunk_order(self, batcher, fake_provider, seed_chunks):
        doc_id = await seed_chunks(120)
        await batcher.embed_pending(doc_id)

        sent = [text for call in fake_provider.calls for text in call]
        assert sent == [f"chunk number {i} of the seeded document" for i in range(120)]

    async def test_nothing_pending_is_a_no_op(self, batcher, fake_provider, make_document):
        doc_id = await make_document(status="extracted")

        progress = await batcher.embed_pending(doc_id)

        assert progress == EmbedProgress(0, 0, 0)
        assert fake_provider.calls == []

    async def test_smaller_max_batches(self, batcher, seed_chunks):
        doc_id = await seed_chunks(120)
        progress = await batcher.embed_pending(doc_id, max_batches=1)

        assert (progress.embedded_count, progress.remaining_count) == (50, 70)


# ─────────────────────────────────────────────────────────────────────────────
# Retry and failure
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.ingestion
class TestFailures:

    async def test_transient_failures_retried_with_backoff(self, make_batcher, no_sleep, seed_chunks, store):
        doc_id = await seed_chunks(3)
        provider = MagicMock()
        provider.embed_batch = AsyncMock(side_effect=[
            EmbeddingProviderError("rate limited"),
            EmbeddingProviderError("timeout"),
            EmbeddingBatch(vectors=[[0.1], [0.2], [0.3]], total_tokens=9, model="m"),
        ])

        progress = await make_batcher(provider).embed_pending(doc_id)

        assert progress.embedded_count == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]
        assert await store.count_unembedded(doc_id) == 0

    async def test_failure_after_first_sub_batch(self, make_batcher, make_provider, seed_chunks, store):
        doc_id = await seed_chunks(600)
        provider = make_provider(fail_after=1)

        with pytest.raises(EmbeddingBatchError) as exc_info:
            await make_batcher(provider).embed_pending(doc_id)

        err = exc_info.value
        assert (err.embedded_count, err.remaining_count, err.total_chunks) == (50, 550, 600)
        assert err.made_progress
        assert isinstance(err.__cause__, EmbeddingProviderError)
        # one success, then three attempts on sub-batch 2
        assert len(provider.calls) == 4

        assert await store.count_unembedded(doc_id) == 550
        assert (await store.get_document(doc_id)).embedded_count == 50

    async def test_first_sub_batch_failure_has_no_progress(self, make_batcher, make_provider, seed_chunks, store):
        doc_id = await seed_chunks(10)

        with pytest.raises(EmbeddingBatchError) as exc_info:
            await make_batcher(make_provider(fail_after=0)).embed_pending(doc_id)

        assert not exc_info.value.made_progress
        assert await store.count_unembedded(doc_id) == 10

    async def test_non_retryable_failure_is_not_retried(self, make_batcher, make_provider, no_sleep, seed_chunks):
        doc_id = await seed_chunks(10)
        provider = make_provider(fail_after=0, retryable=False)

        with pytest.raises(EmbeddingBatchError):
            await make_batcher(provider).embed_pending(doc_id)

        assert len(provider.calls) == 1
        no_sleep.assert_not_awaited()

    async def test_unexpected_provider_exception_carries_progress(self, make_batcher, fake_provider, no_sleep, seed_chunks, store):
        doc_id = await seed_chunks(120)
        bug = ValueError("malformed response")
        provider = MagicMock()
        provider.embed_batch = AsyncMock(side_effect=[
            await fake_provider.embed_batch([f"c{i}" for i in range(50)]),
            bug,
        ])

        with pytest.raises(EmbeddingBatchError) as exc_info:
            await make_batcher(provider).embed_pending(doc_id)

        err = exc_info.value
        assert (err.embedded_count, err.remaining_count, err.total_chunks) == (50, 70, 120)
        assert err.document_id == str(doc_id)
        assert err.__cause__ is bug
        assert "ValueError" in err.message
        # only EmbeddingProviderError is retried
        assert provider.embed_batch.await_count == 2
        no_sleep.assert_not_awaited()
        assert (await store.get_document(doc_id)).embedded_count == 50

    async def test_short_vector_list_is_rejected(self, make_batcher, seed_chunks, store):
        doc_id = await seed_chunks(3)
        provider = MagicMock()
        provider.embed_batch = AsyncMock(
            return_value=EmbeddingBatch(vectors=[[0.1]], total_tokens=3, model="m"),
        )

        with pytest.raises(EmbeddingBatchError) as exc_info:
            await make_batcher(provider, max_retries=0).embed_pending(doc_id)

        assert isinstance(exc_info.value.__cause__, EmbeddingProviderError)
        assert await store.count_unembedded(doc_id) == 3

    async def test_resume_after_failure(self, make_batcher, make_provider, seed_chunks, store):
        doc_id = await seed_chunks(120)

        with pytest.raises(EmbeddingBatchError):
            await make_batcher(make_provider(fail_after=1)).embed_pending(doc_id)

        healthy = make_provider()
        progress = await make_batcher(healthy).embed_pending(doc_id)

        assert progress == EmbedProgress(embedded_count=70, remaining_count=0, total_chunks=70)
        # already-embedded chunks are never sent again
        assert healthy.texts_embedded == 70
        assert (await store.get_document(doc_id)).embedded_count == 120


# ─────────────────────────────────────────────────────────────────────────────
# Usage accounting
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestUsage:

    async def test_records_each_sub_batch(self, make_batcher, fake_provider, seed_chunks):
        doc_id = await seed_chunks(120)
        usage = UsageAccumulator()

        await make_batcher(fake_provider, usage=usage).embed_pending(doc_id)

        assert usage.calls == 3
        assert usage.total_texts == 120
        assert usage.total_tokens > 0
        assert list(usage.by_model()) == ["fake-embed-3"]
