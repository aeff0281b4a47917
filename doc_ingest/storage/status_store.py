"""
Status Store  —  durable document status, text and chunk rows
═════════════════════════════════════════════════════════════

Contract used by the coordinator and the batcher, plus the SQLAlchemy async
implementation. Every method is one transaction; every status change is a
compare-and-set on the current status, so two workers racing on the same
document cannot both win a transition.

Guarantees relied on by the pipeline:
  • save_extraction() writes text, summary, stats, chunks and the
    `extracted` status atomically (all or nothing).
  • save_embeddings() writes only chunks whose embedding is still NULL and
    bumps the document's embedded_count by the rows actually written, in
    the same transaction. A chunk's embedding is therefore set exactly once
    even when two Stage 2 calls overlap.
  • list_unembedded() is ordered by chunk_index.

Any SQLAlchemyError is re-raised as PersistenceError.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Optional, Sequence

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from doc_ingest.core.exceptions import (
    DocumentNotFoundError,
    InvalidTransitionError,
    PersistenceError,
)
from doc_ingest.models.documents import SourceChunk, SourceDocument
from doc_ingest.pipeline.state import DocumentStatus
from doc_ingest.processing.chunking import TextChunk
from doc_ingest.processing.extractor import ExtractedText

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Records returned by the store
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentRecord:
    id:             uuid.UUID
    status:         DocumentStatus
    file_type:      str
    filename:       str
    storage_path:   Optional[str]
    word_count:     Optional[int]
    page_count:     Optional[int]
    chunk_count:    int
    embedded_count: int
    error_message:  Optional[str]

    @classmethod
    def from_row(cls, row: SourceDocument) -> "DocumentRecord":
        return cls(
            id=row.id,
            status=DocumentStatus(row.status),
            file_type=row.file_type,
            filename=row.filename,
            storage_path=row.storage_path,
            word_count=row.word_count,
            page_count=row.page_count,
            chunk_count=row.chunk_count,
            embedded_count=row.embedded_count,
            error_message=row.error_message,
        )


@dataclass(frozen=True)
class PendingChunk:
    """A chunk still waiting for its embedding."""
    id:          uuid.UUID
    chunk_index: int
    content:     str


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class StatusStore(ABC):

    @abstractmethod
    async def get_document(self, document_id: uuid.UUID) -> DocumentRecord:
        """Raises DocumentNotFoundError."""

    @abstractmethod
    async def transition(
        self,
        document_id: uuid.UUID,
        from_status: DocumentStatus,
        to_status:   DocumentStatus,
        *,
        error_message: Optional[str] = None,
    ) -> None:
        """Move from_status → to_status; InvalidTransitionError if the row is not at from_status."""

    @abstractmethod
    async def save_extraction(
        self,
        document_id: uuid.UUID,
        extracted:   ExtractedText,
        summary:     str,
        chunks:      Sequence[TextChunk],
    ) -> None:
        """Atomically persist Stage 1 output and move processing → extracted."""

    @abstractmethod
    async def record_error(self, document_id: uuid.UUID, message: str) -> None:
        """Set error_message without touching status."""

    @abstractmethod
    async def list_unembedded(self, document_id: uuid.UUID) -> list[PendingChunk]:
        ...

    @abstractmethod
    async def count_unembedded(self, document_id: uuid.UUID) -> int:
        ...

    @abstractmethod
    async def save_embeddings(
        self,
        document_id: uuid.UUID,
        vectors:     Sequence[tuple[uuid.UUID, list[float]]],
        model:       str,
    ) -> int:
        """Write embeddings for still-NULL chunks; returns rows written."""

    @abstractmethod
    async def reset_document(self, document_id: uuid.UUID) -> None:
        """Delete chunks and Stage 1 output; move failed → pending."""

    @abstractmethod
    async def list_documents_by_status(
        self,
        status: DocumentStatus,
        limit:  int = 100,
        updated_before: Optional[datetime] = None,
    ) -> list[uuid.UUID]:
        ...


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------

class SqlAlchemyStatusStore(StatusStore):
    """
    StatusStore over the source_documents / source_chunks tables.

    Usage:
        store = SqlAlchemyStatusStore(get_session_factory())
        record = await store.get_document(doc_id)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, op: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.error("StatusStore failure | op=%s error=%s", op, exc)
            raise PersistenceError(f"{op} failed: {exc}") from exc

    @staticmethod
    async def _load(session: AsyncSession, document_id: uuid.UUID) -> SourceDocument:
        row = await session.get(SourceDocument, document_id)
        if row is None:
            raise DocumentNotFoundError(document_id)
        return row

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get_document(self, document_id: uuid.UUID) -> DocumentRecord:
        async with self._transaction("get_document") as session:
            return DocumentRecord.from_row(await self._load(session, document_id))

    async def transition(
        self,
        document_id: uuid.UUID,
        from_status: DocumentStatus,
        to_status:   DocumentStatus,
        *,
        error_message: Optional[str] = None,
    ) -> None:
        async with self._transaction("transition") as session:
            values = {"status": to_status.value, "updated_at": func.now()}
            if error_message is not None:
                values["error_message"] = error_message
            result = await session.execute(
                update(SourceDocument)
                .where(
                    SourceDocument.id == document_id,
                    SourceDocument.status == from_status.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await self._load(session, document_id)
                raise InvalidTransitionError(current.status, to_status.value, document_id=document_id)

        logger.info(
            "Status | doc=%s %s -> %s", document_id, from_status.value, to_status.value,
        )

    async def save_extraction(
        self,
        document_id: uuid.UUID,
        extracted:   ExtractedText,
        summary:     str,
        chunks:      Sequence[TextChunk],
    ) -> None:
        async with self._transaction("save_extraction") as session:
            result = await session.execute(
                update(SourceDocument)
                .where(
                    SourceDocument.id == document_id,
                    SourceDocument.status == DocumentStatus.PROCESSING.value,
                )
                .values(
                    status=DocumentStatus.EXTRACTED.value,
                    extracted_text=extracted.text,
                    text_summary=summary,
                    word_count=extracted.word_count,
                    page_count=extracted.page_count,
                    chunk_count=len(chunks),
                    embedded_count=0,
                    error_message=None,
                    updated_at=func.now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await self._load(session, document_id)
                raise InvalidTransitionError(
                    current.status, DocumentStatus.EXTRACTED.value, document_id=document_id,
                )

            await session.execute(
                delete(SourceChunk).where(SourceChunk.document_id == document_id)
            )
            if chunks:
                await session.execute(
                    insert(SourceChunk),
                    [
                        {
                            "id":          uuid.uuid4(),
                            "document_id": document_id,
                            "content":     chunk.content,
                            "chunk_index": chunk.chunk_index,
                            "start_char":  chunk.start_char,
                            "end_char":    chunk.end_char,
                        }
                        for chunk in chunks
                    ],
                )

        logger.info(
            "Extraction saved | doc=%s chunks=%d words=%d",
            document_id, len(chunks), extracted.word_count,
        )

    async def record_error(self, document_id: uuid.UUID, message: str) -> None:
        async with self._transaction("record_error") as session:
            await session.execute(
                update(SourceDocument)
                .where(SourceDocument.id == document_id)
                .values(error_message=message, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )

    async def reset_document(self, document_id: uuid.UUID) -> None:
        async with self._transaction("reset_document") as session:
            result = await session.execute(
                update(SourceDocument)
                .where(
                    SourceDocument.id == document_id,
                    SourceDocument.status == DocumentStatus.FAILED.value,
                )
                .values(
                    status=DocumentStatus.PENDING.value,
                    extracted_text=None,
                    text_summary=None,
                    word_count=None,
                    page_count=None,
                    chunk_count=0,
                    embedded_count=0,
                    error_message=None,
                    updated_at=func.now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await self._load(session, document_id)
                raise InvalidTransitionError(
                    current.status, DocumentStatus.PENDING.value, document_id=document_id,
                )
            await session.execute(
                delete(SourceChunk).where(SourceChunk.document_id == document_id)
            )

        logger.info("Document reset | doc=%s", document_id)

    async def list_documents_by_status(
        self,
        status: DocumentStatus,
        limit:  int = 100,
        updated_before: Optional[datetime] = None,
    ) -> list[uuid.UUID]:
        async with self._transaction("list_documents_by_status") as session:
            query = select(SourceDocument.id).where(SourceDocument.status == status.value)
            if updated_before is not None:
                query = query.where(SourceDocument.updated_at < updated_before)
            rows = await session.scalars(query.order_by(SourceDocument.updated_at).limit(limit))
            return list(rows)

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def list_unembedded(self, document_id: uuid.UUID) -> list[PendingChunk]:
        async with self._transaction("list_unembedded") as session:
            result = await session.execute(
                select(SourceChunk.id, SourceChunk.chunk_index, SourceChunk.content)
                .where(
                    SourceChunk.document_id == document_id,
                    SourceChunk.embedding.is_(None),
                )
                .order_by(SourceChunk.chunk_index)
            )
            return [
                PendingChunk(id=row.id, chunk_index=row.chunk_index, content=row.content)
                for row in result
            ]

    async def count_unembedded(self, document_id: uuid.UUID) -> int:
        async with self._transaction("count_unembedded") as session:
            return await session.scalar(
                select(func.count())
                .select_from(SourceChunk)
                .where(
                    SourceChunk.document_id == document_id,
                    SourceChunk.embedding.is_(None),
                )
            ) or 0

    async def save_embeddings(
        self,
        document_id: uuid.UUID,
        vectors:     Sequence[tuple[uuid.UUID, list[float]]],
        model:       str,
    ) -> int:
        written = 0
        async with self._transaction("save_embeddings") as session:
            for chunk_id, vector in vectors:
                result = await session.execute(
                    update(SourceChunk)
                    .where(
                        SourceChunk.id == chunk_id,
                        SourceChunk.document_id == document_id,
                        SourceChunk.embedding.is_(None),
                    )
                    .values(embedding=vector, embedding_model=model)
                    .execution_options(synchronize_session=False)
                )
                written += result.rowcount

            if written:
                await session.execute(
                    update(SourceDocument)
                    .where(SourceDocument.id == document_id)
                    .values(
                        embedded_count=SourceDocument.embedded_count + written,
                        updated_at=func.now(),
                    )
                    .execution_options(synchronize_session=False)
                )

        if written < len(vectors):
            logger.info(
                "Embeddings already present | doc=%s skipped=%d",
                document_id, len(vectors) - written,
            )
        return written
