"""
Retry combinator for transient provider failures.

Policy:
  attempt 0        → call immediately
  attempt n (1..N) → wait base_delay × n seconds, call again
  N = max_retries  (default 2 ⇒ 3 calls total, waits of 1 s then 2 s)

Only exceptions listed in `retry_on` are retried. An EmbeddingProviderError
flagged retryable=False (authentication, malformed request) is re-raised at
once. The last error is re-raised unchanged when attempts are exhausted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from doc_ingest.core.exceptions import EmbeddingProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY  = 1.0


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay:  float = DEFAULT_BASE_DELAY,
    retry_on:    tuple[type[BaseException], ...] = (EmbeddingProviderError,),
    sleep:       Callable[[float], Awaitable[None]] = asyncio.sleep,
    label:       str = "call",
) -> T:
    """
    Await `fn()` up to max_retries + 1 times with linear back-off.

    `sleep` is injectable so tests can observe delays without waiting.
    """
    if max_retries < 0:
        raise ValueError(f"max_retries must be >= 0, got {max_retries}")

    attempt = 0
    while True:
        try:
            return await fn()
        except retry_on as exc:
            if not getattr(exc, "retryable", True):
                logger.error("Non-retryable failure | op=%s error=%s", label, exc)
                raise
            if attempt >= max_retries:
                logger.error(
                    "Retries exhausted | op=%s attempts=%d error=%s",
                    label, attempt + 1, exc,
                )
                raise

            attempt += 1
            delay = base_delay * attempt
            logger.warning(
                "Retrying | op=%s attempt=%d delay=%.1fs error=%s",
                label, attempt, delay, exc,
            )
            await sleep(delay)
