"""
SQLAlchemy ORM Models — Source Documents & Chunks

Column types are the portable ones (Uuid, JSON) so the same mapping runs on
PostgreSQL through asyncpg in production and SQLite through aiosqlite in
tests.

Lifecycle (status column, see doc_ingest.pipeline.state):
    pending    — row created by the uploader, Stage 1 not started
    processing — Stage 1 running
    extracted  — text and chunks stored, embeddings in progress
    completed  — every chunk has an embedding
    failed     — see error_message; only a resubmit moves it back to pending
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# SourceDocument — source_documents
# ---------------------------------------------------------------------------

class SourceDocument(Base):
    """One uploaded file moving through Stage 1 and Stage 2."""

    __tablename__ = "source_documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'extracted', 'completed', 'failed')",
            name="source_documents_status_check",
        ),
        CheckConstraint(
            "file_type IN ('pdf', 'docx', 'txt')",
            name="source_documents_file_type_check",
        ),
        Index("idx_source_documents_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    file_type: Mapped[str] = mapped_column(String(8), nullable=False)
    filename: Mapped[str] = mapped_column(Text, nullable=False, default="")
    storage_path: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Blob key of the raw upload",
    )

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        server_default="pending",
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Stage 1 output
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    text_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    word_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # chunk_count is set by Stage 1, embedded_count grows per sub-batch
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    embedded_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<SourceDocument id={self.id} status={self.status} file={self.filename!r}>"


# ---------------------------------------------------------------------------
# SourceChunk — source_chunks
# ---------------------------------------------------------------------------

class SourceChunk(Base):
    """
    One overlapping window of a document's extracted text.

    embedding is NULL after Stage 1 and written exactly once by Stage 2.
    """

    __tablename__ = "source_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_source_chunks_position"),
        CheckConstraint("start_char < end_char", name="source_chunks_offsets_check"),
        Index("idx_source_chunks_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("source_documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    content: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    start_char: Mapped[int] = mapped_column(Integer, nullable=False)
    end_char: Mapped[int] = mapped_column(Integer, nullable=False)

    embedding: Mapped[Optional[list[float]]] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    embedding_model: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<SourceChunk doc={self.document_id} index={self.chunk_index}>"
