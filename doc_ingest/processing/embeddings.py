"""
Embedding Provider  —  texts → vectors, one API call per sub-batch
══════════════════════════════════════════════════════════════════

The batcher talks to an `EmbeddingProvider`; the OpenAI implementation is
the production one. Tests substitute an in-memory provider.

OpenAI embedding model selection:
  text-embedding-3-small  → 1536 dims  (default)
  text-embedding-3-large  → 3072 dims  (higher accuracy)

Error mapping (SDK → EmbeddingProviderError):
  RateLimitError / APIConnectionError / APITimeoutError / 5xx → retryable
  AuthenticationError / PermissionDeniedError / BadRequestError → retryable=False

Retries are NOT performed here: the batcher wraps each call in with_retry().
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

from doc_ingest.core.exceptions import EmbeddingProviderError

logger = logging.getLogger(__name__)

# GPT tokenizer averages ~4 chars/token for English text; used when the
# response carries no usage block
CHARS_PER_TOKEN_EST = 4


@dataclass(frozen=True)
class EmbeddingBatch:
    """
    vectors      : one vector per input text, in input order
    total_tokens : tokens billed for the call (estimated if not reported)
    model        : model that produced the vectors
    """
    vectors:      list[list[float]]
    total_tokens: int
    model:        str


class EmbeddingProvider(ABC):
    """Computes embeddings for a batch of texts in a single call."""

    model: str

    @abstractmethod
    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingBatch:
        ...


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    AsyncOpenAI-backed provider.

    Usage:
        provider = OpenAIEmbeddingProvider.from_settings()
        batch    = await provider.embed_batch(["first chunk", "second chunk"])
    """

    def __init__(
        self,
        api_key:    str   = "",
        model:      str   = "text-embedding-3-small",
        dimensions: int   = 1536,
        timeout:    float = 30.0,
        client=None,
    ) -> None:
        self.model       = model
        self._dimensions = dimensions
        self._timeout    = timeout
        self._api_key    = api_key
        self._client     = client

    @classmethod
    def from_settings(cls) -> "OpenAIEmbeddingProvider":
        from doc_ingest.core.config import settings
        return cls(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            timeout=settings.embedding_timeout_seconds,
        )

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            # SDK-level retries are disabled; with_retry() owns the policy
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingBatch:
        import openai

        if not texts:
            return EmbeddingBatch(vectors=[], total_tokens=0, model=self.model)

        client = self._get_client()
        kwargs = {"model": self.model, "input": list(texts)}
        # dimensions param only works for text-embedding-3-* models
        if self.model.startswith("text-embedding-3") and self._dimensions != 1536:
            kwargs["dimensions"] = self._dimensions

        t_api = time.monotonic()
        try:
            response = await client.embeddings.create(**kwargs)
        except (
            openai.AuthenticationError,
            openai.PermissionDeniedError,
            openai.BadRequestError,
        ) as exc:
            raise EmbeddingProviderError(
                f"{type(exc).__name__}: {exc}", retryable=False,
            ) from exc
        except openai.OpenAIError as exc:
            raise EmbeddingProviderError(f"{type(exc).__name__}: {exc}") from exc

        vectors = [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts"
            )

        tokens_used = response.usage.total_tokens if response.usage else sum(
            len(t) // CHARS_PER_TOKEN_EST for t in texts
        )

        logger.debug(
            "OpenAI embeddings | size=%d tokens=%d api_ms=%.0f",
            len(texts), tokens_used, (time.monotonic() - t_api) * 1000,
        )
        return EmbeddingBatch(vectors=vectors, total_tokens=tokens_used, model=self.model)
