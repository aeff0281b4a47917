"""
Timing / error tracing for pipeline entry points.

`@traced(name)` wraps an async function and logs its wall time. Expected
pipeline failures (PipelineError subclasses) are logged as warnings with
their structured payload; anything else is logged with a traceback. The
exception always propagates.

    @traced("stage1")
    async def run_stage1(self, document_id, ...):
        ...
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, Coroutine, TypeVar

from doc_ingest.core.exceptions import PipelineError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])


def _document_ref(args: tuple, kwargs: dict) -> Any:
    # Coordinator methods take document_id as the first positional after self
    if "document_id" in kwargs:
        return kwargs["document_id"]
    return args[1] if len(args) > 1 else None


def traced(name: str | None = None) -> Callable[[F], F]:
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            doc = _document_ref(args, kwargs)
            t0 = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except PipelineError as exc:
                logger.warning(
                    "trace | span=%s doc=%s elapsed_ms=%.1f error=%s",
                    span_name, doc, (time.perf_counter() - t0) * 1000, exc.to_dict(),
                )
                raise
            except Exception as exc:
                logger.error(
                    "trace | span=%s doc=%s elapsed_ms=%.1f error=%s",
                    span_name, doc, (time.perf_counter() - t0) * 1000, exc,
                    exc_info=True,
                )
                raise

            logger.debug(
                "trace | span=%s doc=%s elapsed_ms=%.1f ok",
                span_name, doc, (time.perf_counter() - t0) * 1000,
            )
            return result

        return wrapper  # type: ignore[return-value]
    return decorator
