"""
Document Processing Package
════════════════════════════

  Text Extraction → Chunking → Embedding (bounded sub-batches)

Modules
───────
  extractor.py   PDF / DOCX / TXT → plain text + word / page counts
  chunking.py    Pure overlapping-window chunker with sentence snapping
  retry.py       with_retry() linear back-off combinator
  embeddings.py  EmbeddingProvider contract + OpenAI implementation
  batcher.py     Stage 2 planning and per-sub-batch persistence

batcher is not re-exported here: it depends on the storage layer, which in
turn imports the leaf modules of this package.
"""

from doc_ingest.processing.chunking import ChunkConfig, TextChunk, chunk_text
from doc_ingest.processing.embeddings import EmbeddingBatch, EmbeddingProvider, OpenAIEmbeddingProvider
from doc_ingest.processing.extractor import ExtractedText, FileType, TextExtractor, detect_file_type
from doc_ingest.processing.retry import with_retry

__all__ = [
    "ChunkConfig",
    "TextChunk",
    "chunk_text",
    "EmbeddingBatch",
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "ExtractedText",
    "FileType",
    "TextExtractor",
    "detect_file_type",
    "with_retry",
]
