"""
Status mapping and statistics -- pure functions over tracker state.

ZERO I/O.

Contract:
    ``map_service_status`` translates the validation service's document
    vocabulary into the tracker's five-state vocabulary.
    ``compute_statistics`` and ``derive_overall_status`` are recomputed
    from the per-document map after every change; they are never patched
    incrementally.

Invariants:
    - ``processed <= total_documents`` for every batch.
    - ``derive_overall_status`` returns a terminal status only when every
      recorded document is terminal and ``processed == total_documents``.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from einvoice_submission.domain.types import (
    BatchStatistics,
    DocumentState,
    DocumentStatus,
    OverallStatus,
    ServiceDocumentStatus,
    ServiceError,
    ValidationDetail,
)

DEFAULT_ERROR_CODE = "ERR"


def map_service_status(status: ServiceDocumentStatus) -> DocumentState:
    """Map a service document status onto the internal vocabulary."""
    match status:
        case ServiceDocumentStatus.SUBMITTED:
            return DocumentState.PROCESSING
        case ServiceDocumentStatus.VALID:
            return DocumentState.COMPLETED
        case ServiceDocumentStatus.INVALID | ServiceDocumentStatus.REJECTED:
            return DocumentState.FAILED
        case ServiceDocumentStatus.CANCELLED | ServiceDocumentStatus.UNKNOWN:
            return DocumentState.PROCESSING
        case _:
            return DocumentState.PROCESSING


def normalize_errors(error: ServiceError | None) -> tuple[ValidationDetail, ...]:
    """Flatten a rejected document's error payload into validation details.

    A structured ``details`` array yields one entry per element; otherwise
    the flat ``message`` becomes a single entry.  Missing codes default to
    ``ERR``.
    """
    if error is None:
        return ()

    if error.details:
        return tuple(_detail_from_mapping(d, error) for d in error.details)

    if error.message:
        return (
            ValidationDetail(
                code=error.code or DEFAULT_ERROR_CODE,
                message=error.message,
            ),
        )
    return ()


def _detail_from_mapping(
    detail: Mapping[str, Any], parent: ServiceError,
) -> ValidationDetail:
    return ValidationDetail(
        code=str(detail.get("code") or parent.code or DEFAULT_ERROR_CODE),
        message=str(detail.get("message") or parent.message or ""),
        target=detail.get("target"),
        property_path=detail.get("propertyPath") or detail.get("property_path"),
    )


def compute_statistics(
    total_documents: int, documents: Iterable[DocumentStatus],
) -> BatchStatistics:
    """Recompute batch statistics from the per-document map.

    Every recorded document counts as processed.  ``FAILED`` counts as
    rejected alongside intake rejections.
    """
    accepted = rejected = processing = completed = processed = 0
    for doc in documents:
        processed += 1
        match doc.current_status:
            case DocumentState.ACCEPTED:
                accepted += 1
            case DocumentState.REJECTED | DocumentState.FAILED:
                rejected += 1
            case DocumentState.PROCESSING:
                processing += 1
            case DocumentState.COMPLETED:
                completed += 1

    return BatchStatistics(
        total_documents=total_documents,
        processed=min(processed, total_documents),
        accepted=accepted,
        rejected=rejected,
        processing=processing,
        completed=completed,
    )


def all_documents_terminal(
    documents: Iterable[DocumentStatus], statistics: BatchStatistics,
) -> bool:
    docs = list(documents)
    return (
        bool(docs)
        and statistics.processed == statistics.total_documents
        and all(d.current_status.is_terminal for d in docs)
    )


def derive_overall_status(statistics: BatchStatistics) -> OverallStatus:
    """Overall status implied by fully-processed statistics."""
    if statistics.processed < statistics.total_documents:
        return OverallStatus.IN_PROGRESS
    if statistics.completed == statistics.total_documents:
        return OverallStatus.VALID
    if statistics.rejected == statistics.total_documents:
        return OverallStatus.INVALID
    return OverallStatus.PARTIAL
