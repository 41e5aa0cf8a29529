"""
einvoice_submission.domain -- Service vocabulary and tracker state.

ZERO I/O.
"""

from einvoice_submission.domain.status import (
    compute_statistics,
    derive_overall_status,
    map_service_status,
    normalize_errors,
)
from einvoice_submission.domain.types import (
    AcceptedDocument,
    BatchStatistics,
    DocumentDetail,
    DocumentState,
    DocumentStatus,
    DocumentSummary,
    ErrorReport,
    ErrorType,
    OverallStatus,
    RejectedDocument,
    ServiceDocumentStatus,
    ServiceError,
    SubmissionAck,
    SubmissionBatch,
    SubmissionDocument,
    SubmissionPhase,
    SubmissionState,
    SubmissionStatusReport,
    ValidationDetail,
)

__all__ = [
    "AcceptedDocument",
    "BatchStatistics",
    "DocumentDetail",
    "DocumentState",
    "DocumentStatus",
    "DocumentSummary",
    "ErrorReport",
    "ErrorType",
    "OverallStatus",
    "RejectedDocument",
    "ServiceDocumentStatus",
    "ServiceError",
    "SubmissionAck",
    "SubmissionBatch",
    "SubmissionDocument",
    "SubmissionPhase",
    "SubmissionState",
    "SubmissionStatusReport",
    "ValidationDetail",
    "compute_statistics",
    "derive_overall_status",
    "map_service_status",
    "normalize_errors",
]
