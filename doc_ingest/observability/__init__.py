"""
Observability Package — Tracing + Usage Accounting

Provides:
  traced            — decorator logging timing / errors of async entry points
  UsageAccumulator  — request-scoped token and cost totals

Usage::

    usage = UsageAccumulator()
    batcher = EmbeddingBatcher(store, provider, usage=usage)
    await batcher.embed_pending(doc_id)
    logger.info("tokens=%d cost=%s", usage.total_tokens, usage.total_cost_usd)
"""

from doc_ingest.observability.tracing import traced
from doc_ingest.observability.usage import UsageAccumulator, compute_cost

__all__ = ["traced", "UsageAccumulator", "compute_cost"]
