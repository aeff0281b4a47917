"""
Document status state machine.

    pending ──► processing ──► extracted ──► completed
                    │              │  ▲
                    ▼              ▼  │ (Stage 2 partial progress)
                  failed ◄─────────┘──┘
                    │
                    └──► pending   (explicit resubmit only)

`completed` is terminal. `failed` is terminal for the pipeline; only an
external resubmit moves it back to `pending`.
"""

from __future__ import annotations

from enum import Enum

from doc_ingest.core.exceptions import InvalidTransitionError


class DocumentStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    EXTRACTED  = "extracted"
    COMPLETED  = "completed"
    FAILED     = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.COMPLETED, DocumentStatus.FAILED)


ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.PENDING:    frozenset({DocumentStatus.PROCESSING}),
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.EXTRACTED, DocumentStatus.FAILED}),
    DocumentStatus.EXTRACTED:  frozenset({
        DocumentStatus.EXTRACTED,
        DocumentStatus.COMPLETED,
        DocumentStatus.FAILED,
    }),
    DocumentStatus.COMPLETED:  frozenset(),
    DocumentStatus.FAILED:     frozenset({DocumentStatus.PENDING}),
}


def can_transition(current: DocumentStatus | str, target: DocumentStatus | str) -> bool:
    return DocumentStatus(target) in ALLOWED_TRANSITIONS[DocumentStatus(current)]


def ensure_transition(
    current: DocumentStatus | str,
    target: DocumentStatus | str,
    *,
    document_id=None,
) -> DocumentStatus:
    """Return the target status, or raise InvalidTransitionError."""
    current, target = DocumentStatus(current), DocumentStatus(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value, document_id=document_id)
    return target
