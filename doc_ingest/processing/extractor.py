"""
Text Extraction  —  PDF / DOCX / TXT → plain text + statistics
══════════════════════════════════════════════════════════════

Each supported format has an independent decoding path:

  pdf   → pypdf.PdfReader, page texts joined with "\n\n"  (page_count known)
  docx  → python-docx paragraphs joined with "\n"          (page_count None)
  txt   → UTF-8, falling back to latin-1 with replacement

A document "produced no usable content" when its stripped text is shorter
than MIN_TEXT_CHARS; that is an ExtractionError and is never retried here.
The caller must resubmit explicitly.

Workers receive bytes, never file paths, so extraction stays stateless.
"""

from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass
from enum import Enum

from doc_ingest.core.exceptions import ExtractionError, UnsupportedFormatError

logger = logging.getLogger(__name__)

# Below this many characters the file is treated as having no usable text
MIN_TEXT_CHARS = 10

# Length of the stored summary (first N words of the text)
SUMMARY_MAX_WORDS = 500


# ---------------------------------------------------------------------------
# File types
# ---------------------------------------------------------------------------

class FileType(str, Enum):
    PDF  = "pdf"
    DOCX = "docx"
    TXT  = "txt"

    @classmethod
    def parse(cls, value: "FileType | str") -> "FileType":
        """Accept an enum member, "pdf", "PDF" or ".pdf"; reject anything else."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower().lstrip(".")
            try:
                return cls(normalized)
            except ValueError:
                pass
        raise UnsupportedFormatError(value)


# Magic byte signatures, checked against the first bytes of the file
_MAGIC_BYTES: dict[bytes, FileType] = {
    b"%PDF":       FileType.PDF,
    b"PK\x03\x04": FileType.DOCX,   # ZIP container (OOXML)
}


def detect_file_type(filename: str, file_head: bytes) -> FileType:
    """
    Detect the file type from magic bytes first, falling back to extension.
    Raises UnsupportedFormatError when neither identifies a supported type.
    """
    for magic, file_type in _MAGIC_BYTES.items():
        if file_head.startswith(magic):
            return file_type

    parts = filename.rsplit(".", 1)
    ext = parts[-1] if len(parts) == 2 else ""
    if ext.lower() in ("txt", "md"):
        return FileType.TXT
    return FileType.parse(ext)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractedText:
    """
    text        : stripped plain text of the whole document
    word_count  : whitespace-separated token count
    page_count  : pages in the source (PDF only; None for other formats)
    """
    text:       str
    word_count: int
    page_count: int | None = None


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class TextExtractor:
    """
    Stateless extractor — dispatches by file type.

    Usage:
        extracted = TextExtractor().extract(file_bytes, "pdf")
    """

    def extract(self, data: bytes, file_type: FileType | str) -> ExtractedText:
        """
        Decode `data` and return its text and statistics.

        Raises:
            UnsupportedFormatError: file_type outside pdf | docx | txt
            ExtractionError:        decoding failed or text shorter than MIN_TEXT_CHARS
        """
        kind = FileType.parse(file_type)
        t0 = time.monotonic()

        try:
            if kind is FileType.PDF:
                text, page_count = self._extract_pdf(data)
            elif kind is FileType.DOCX:
                text, page_count = self._extract_docx(data), None
            else:
                text, page_count = self._extract_txt(data), None
        except ExtractionError:
            raise
        except Exception as exc:
            logger.warning("Extraction failed | type=%s error=%s", kind.value, exc)
            raise ExtractionError(f"Could not read {kind.value} file: {exc}") from exc

        text = text.strip()
        if len(text) < MIN_TEXT_CHARS:
            raise ExtractionError(
                f"No usable text extracted from {kind.value} file "
                f"({len(text)} chars, minimum {MIN_TEXT_CHARS})"
            )

        result = ExtractedText(text=text, word_count=count_words(text), page_count=page_count)
        logger.info(
            "Extraction | type=%s chars=%d words=%d pages=%s elapsed_ms=%.0f",
            kind.value, len(text), result.word_count, page_count,
            (time.monotonic() - t0) * 1000,
        )
        return result

    # ------------------------------------------------------------------
    # Format-specific decoders
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_pdf(data: bytes) -> tuple[str, int]:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
        return "\n\n".join(pages), len(pages)

    @staticmethod
    def _extract_docx(data: bytes) -> str:
        import docx

        document = docx.Document(io.BytesIO(data))
        return "\n".join(para.text for para in document.paragraphs if para.text.strip())

    @staticmethod
    def _extract_txt(data: bytes) -> str:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return data.decode("latin-1", errors="replace")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def count_words(text: str) -> int:
    return len(text.split())


def summarize_text(text: str, max_words: int = SUMMARY_MAX_WORDS) -> str:
    """First `max_words` words of the text, with "..." appended when truncated."""
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + "..."
