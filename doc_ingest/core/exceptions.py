"""
Pipeline exception taxonomy.

Every error raised by the ingestion pipeline carries the stage it happened
in and the document it concerns, so a caller can decide whether retrying is
safe without parsing messages:

  PipelineError
  ├── ExtractionError            no usable text (Stage 1, terminal)
  │   └── UnsupportedFormatError file type outside pdf | docx | txt
  ├── ChunkingError              invalid chunker configuration
  ├── EmbeddingProviderError     provider call failed (retryable unless flagged)
  ├── EmbeddingBatchError        Stage 2 call interrupted; carries progress counts
  ├── PersistenceError           StatusStore read/write failed
  ├── BlobStoreError             blob download failed
  ├── DocumentNotFoundError
  └── InvalidTransitionError     status change not allowed by the state machine
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for all ingestion pipeline errors."""

    default_stage = "pipeline"

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        document_id: Any = None,
    ) -> None:
        super().__init__(message)
        self.message     = message
        self.stage       = stage or self.default_stage
        self.document_id = str(document_id) if document_id is not None else None

    def to_dict(self) -> dict[str, Any]:
        """Structured payload for callers and log records."""
        return {
            "error":       type(self).__name__,
            "message":     self.message,
            "stage":       self.stage,
            "document_id": self.document_id,
        }


class ExtractionError(PipelineError):
    """The source file decoded to no usable text."""

    default_stage = "extract"


class UnsupportedFormatError(ExtractionError):
    """File type outside the accepted set."""

    def __init__(self, file_type: Any, **kwargs: Any) -> None:
        super().__init__(f"Unsupported file type: {file_type!r}", **kwargs)
        self.file_type = file_type


class ChunkingError(PipelineError):
    default_stage = "chunk"


class EmbeddingProviderError(PipelineError):
    """
    The embedding provider call failed.

    retryable=False marks failures that will not succeed on a second attempt
    (authentication, malformed request); with_retry() re-raises those at once.
    """

    default_stage = "embed"

    def __init__(self, message: str, *, retryable: bool = True, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retryable = retryable


class EmbeddingBatchError(PipelineError):
    """
    A Stage 2 invocation stopped before finishing its planned sub-batches.

    Sub-batches committed before the failure stay committed, so
    embedded_count can be > 0. The underlying error is chained as __cause__.
    """

    default_stage = "embed"

    def __init__(
        self,
        message: str,
        *,
        embedded_count: int,
        remaining_count: int,
        total_chunks: int,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.embedded_count  = embedded_count
        self.remaining_count = remaining_count
        self.total_chunks    = total_chunks

    @property
    def made_progress(self) -> bool:
        return self.embedded_count > 0

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            embedded_count=self.embedded_count,
            remaining_count=self.remaining_count,
            total_chunks=self.total_chunks,
        )
        return payload


class PersistenceError(PipelineError):
    default_stage = "persist"


class BlobStoreError(PipelineError):
    default_stage = "download"


class DocumentNotFoundError(PipelineError):
    def __init__(self, document_id: Any, **kwargs: Any) -> None:
        super().__init__(f"Document {document_id} not found", document_id=document_id, **kwargs)


class InvalidTransitionError(PipelineError):
    """Requested status change is not allowed from the document's current status."""

    def __init__(self, current: str, target: str, **kwargs: Any) -> None:
        super().__init__(f"Cannot move document from {current!r} to {target!r}", **kwargs)
        self.current = current
        self.target  = target
