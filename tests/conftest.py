"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy (all function-scoped):
  db_engine → session_factory → store → make_document / seed_chunks
  fake_provider, no_sleep, batcher, coordinator
  sample_txt_bytes, sample_docx_bytes, blank_pdf_bytes

Environment strategy:
  - The StatusStore runs against in-memory SQLite (aiosqlite + StaticPool),
    one fresh database per test.
  - The embedding provider is an in-process fake; no network calls.
  - Retry delays are captured by an AsyncMock instead of sleeping.
  - Celery uses the in-memory broker; tasks are called directly.

How to run:
  pytest                            # all tests
  pytest -m unit                    # pure unit tests
  pytest -m integration             # store-backed tests
  pytest tests/unit/test_chunking.py
"""

from __future__ import annotations

import io
import os
import uuid
from typing import Sequence
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any package imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from doc_ingest.core.exceptions import EmbeddingProviderError  # noqa: E402
from doc_ingest.models.documents import Base, SourceDocument  # noqa: E402
from doc_ingest.pipeline.coordinator import PipelineCoordinator  # noqa: E402
from doc_ingest.processing.batcher import EmbeddingBatcher  # noqa: E402
from doc_ingest.processing.chunking import TextChunk  # noqa: E402
from doc_ingest.processing.embeddings import EmbeddingBatch, EmbeddingProvider  # noqa: E402
from doc_ingest.processing.extractor import ExtractedText  # noqa: E402
from doc_ingest.storage.status_store import SqlAlchemyStatusStore  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Fake embedding provider
# ─────────────────────────────────────────────────────────────────────────────

class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic in-process provider.

    fail_after=n : the first n calls succeed, every later call raises
                   EmbeddingProviderError (retryable unless retryable=False).
    """

    def __init__(
        self,
        model:      str = "fake-embed-3",
        fail_after: int | None = None,
        retryable:  bool = True,
    ) -> None:
        self.model       = model
        self.calls: list[list[str]] = []
        self._fail_after = fail_after
        self._retryable  = retryable

    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingBatch:
        self.calls.append(list(texts))
        if self._fail_after is not None and len(self.calls) > self._fail_after:
            raise EmbeddingProviderError("provider unavailable", retryable=self._retryable)
        return EmbeddingBatch(
            vectors=[[float(len(t)), 0.5, -0.5] for t in texts],
            total_tokens=sum(max(1, len(t) // 4) for t in texts),
            model=self.model,
        )

    @property
    def texts_embedded(self) -> int:
        return sum(len(c) for c in self.calls)


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite with the full schema, discarded after each test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def store(session_factory) -> SqlAlchemyStatusStore:
    return SqlAlchemyStatusStore(session_factory)


@pytest.fixture
def make_document(session_factory):
    """
    Factory fixture: inserts a source_documents row and returns its id.

        doc_id = await make_document(status="extracted")
    """
    async def _make(
        status:       str = "pending",
        file_type:    str = "txt",
        filename:     str = "notes.txt",
        storage_path: str | None = "uploads/notes.txt",
    ) -> uuid.UUID:
        doc = SourceDocument(
            id=uuid.uuid4(),
            status=status,
            file_type=file_type,
            filename=filename,
            storage_path=storage_path,
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(doc)
        return doc.id

    return _make


@pytest.fixture
def seed_chunks(make_document, store):
    """
    Factory fixture: creates an `extracted` document with n chunks through
    the real Stage 1 persistence path and returns the document id.
    """
    async def _seed(n: int) -> uuid.UUID:
        doc_id = await make_document(status="processing")
        chunks = [
            TextChunk(
                content=f"chunk number {i} of the seeded document",
                chunk_index=i,
                start_char=i * 30,
                end_char=i * 30 + 40,
            )
            for i in range(n)
        ]
        text = "seeded document text " * 10
        await store.save_extraction(
            doc_id,
            ExtractedText(text=text, word_count=len(text.split())),
            text,
            chunks,
        )
        return doc_id

    return _seed


async def fetch_document(session_factory, document_id: uuid.UUID) -> SourceDocument:
    async with session_factory() as session:
        return await session.get(SourceDocument, document_id)


@pytest.fixture
def load_document(session_factory):
    """Read the raw ORM row (all columns) for assertions."""
    async def _load(document_id: uuid.UUID) -> SourceDocument:
        return await fetch_document(session_factory, document_id)
    return _load


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline collaborators
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_provider():
    """Factory fixture: FakeEmbeddingProvider(model=..., fail_after=..., retryable=...)."""
    return FakeEmbeddingProvider


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Stand-in for asyncio.sleep; records requested delays."""
    return AsyncMock(return_value=None)


@pytest.fixture
def make_batcher(store, no_sleep):
    def _make(provider: EmbeddingProvider, **kwargs) -> EmbeddingBatcher:
        return EmbeddingBatcher(store, provider, sleep=no_sleep, **kwargs)
    return _make


@pytest.fixture
def batcher(make_batcher, fake_provider) -> EmbeddingBatcher:
    return make_batcher(fake_provider)


@pytest.fixture
def make_coordinator(store, make_batcher):
    def _make(provider: EmbeddingProvider | None = None, **kwargs) -> PipelineCoordinator:
        return PipelineCoordinator(store, make_batcher(provider or FakeEmbeddingProvider()), **kwargs)
    return _make


@pytest.fixture
def coordinator(store, batcher) -> PipelineCoordinator:
    return PipelineCoordinator(store, batcher)


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_txt_bytes() -> bytes:
    return (
        "Quarterly results were strong. Revenue grew in every region.\n"
        "The board approved the new hiring plan. Costs stayed flat.\n"
    ).encode("utf-8")


@pytest.fixture
def sample_docx_bytes() -> bytes:
    """Real DOCX built with python-docx: three paragraphs, one blank."""
    import docx

    document = docx.Document()
    document.add_paragraph("Onboarding guide for new engineers.")
    document.add_paragraph("   ")
    document.add_paragraph("Read the architecture notes before your first deploy.")
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


@pytest.fixture
def blank_pdf_bytes() -> bytes:
    """Valid one-page PDF with no text layer."""
    from pypdf import PdfWriter

    writer = PdfWriter()
    writer.add_blank_page(width=612, height=792)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()
