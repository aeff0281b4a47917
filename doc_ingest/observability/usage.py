"""
Usage Accounting  —  request-scoped token / cost totals for embedding calls
═══════════════════════════════════════════════════════════════════════════

A `UsageAccumulator` is created by whoever drives a pipeline call (a worker
task, a script) and passed into the batcher explicitly. There is no
process-wide cost log: two concurrent calls never share an accumulator.

Embedding pricing catalogue (USD per 1 000 tokens, public list prices).
Update EMBEDDING_PRICING when rates change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pricing catalogue
# ---------------------------------------------------------------------------

EMBEDDING_PRICING: dict[str, float] = {
    "text-embedding-3-small": 0.00002,
    "text-embedding-3-large": 0.00013,
    "text-embedding-ada-002": 0.00010,
}

_DEFAULT_PRICE_PER_1K = 0.0001   # fallback for unknown models


def compute_cost(model: str, tokens: int) -> Decimal:
    """USD cost of `tokens` embedding tokens, as an exact Decimal."""
    price = EMBEDDING_PRICING.get(model, _DEFAULT_PRICE_PER_1K)
    return Decimal(str(round(tokens / 1000.0 * price, 9)))


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UsageRecord:
    model:    str
    texts:    int
    tokens:   int
    cost_usd: Decimal


@dataclass
class UsageAccumulator:
    """
    Collects one UsageRecord per provider call.

    Usage::

        usage = UsageAccumulator()
        await EmbeddingBatcher(store, provider, usage=usage).embed_pending(doc_id)
        logger.info("cost=%s", usage.total_cost_usd)
    """
    records: list[UsageRecord] = field(default_factory=list)

    def record(self, model: str, texts: int, tokens: int) -> UsageRecord:
        entry = UsageRecord(model=model, texts=texts, tokens=tokens, cost_usd=compute_cost(model, tokens))
        self.records.append(entry)
        logger.debug(
            "Usage | model=%s texts=%d tokens=%d cost_usd=%s",
            model, texts, tokens, entry.cost_usd,
        )
        return entry

    @property
    def calls(self) -> int:
        return len(self.records)

    @property
    def total_tokens(self) -> int:
        return sum(r.tokens for r in self.records)

    @property
    def total_texts(self) -> int:
        return sum(r.texts for r in self.records)

    @property
    def total_cost_usd(self) -> Decimal:
        return sum((r.cost_usd for r in self.records), Decimal("0"))

    def by_model(self) -> dict[str, dict]:
        summary: dict[str, dict] = {}
        for r in self.records:
            row = summary.setdefault(r.model, {"calls": 0, "tokens": 0, "cost_usd": Decimal("0")})
            row["calls"]    += 1
            row["tokens"]   += r.tokens
            row["cost_usd"] += r.cost_usd
        return summary
