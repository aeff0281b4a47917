"""
doc_ingest — resumable two-stage document ingestion.

  Stage 1  bytes → text → overlapping chunks      (one atomic call)
  Stage 2  chunks → embeddings, ≤ 250 per call    (resumable, many calls)
"""

__version__ = "0.1.0"
