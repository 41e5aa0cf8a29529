"""
einvoice_submission.domain.types -- Types for submission tracking and polling.

ZERO I/O.

Two families live here:

* Service vocabulary -- frozen dataclasses mirroring what the validation
  service returns (acknowledgements, status reports, document details).
  The wire codec builds them; nothing else parses JSON.
* Tracker state -- the mutable ``SubmissionBatch`` owned by exactly one
  ``SubmissionTracker``, and the immutable ``SubmissionState`` snapshot
  pushed to observers.
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


# =============================================================================
# Status enums
# =============================================================================


class SubmissionPhase(str, Enum):
    """Phase reported to observers."""

    SUBMISSION = "SUBMISSION"  # Acknowledged, documents pending -- poll next
    PROCESSING = "PROCESSING"  # Poll returned, still in progress
    COMPLETED = "COMPLETED"  # Terminal


class OverallStatus(str, Enum):
    """Aggregate status of a submission."""

    IN_PROGRESS = "InProgress"
    VALID = "Valid"
    INVALID = "Invalid"
    PARTIAL = "Partial"

    @classmethod
    def parse(cls, value: str | None) -> OverallStatus:
        """Parse the service's overall status, tolerating case and spacing.

        The service spells the same value several ways ("InProgress",
        "in progress", "Partially Valid").  Anything unrecognized reads as
        in progress so that polling continues rather than stopping early.
        """
        key = "".join((value or "").split()).lower()
        match key:
            case "valid":
                return cls.VALID
            case "invalid":
                return cls.INVALID
            case "partial" | "partiallyvalid":
                return cls.PARTIAL
            case _:
                return cls.IN_PROGRESS

    @property
    def is_terminal(self) -> bool:
        return self is not OverallStatus.IN_PROGRESS


class DocumentState(str, Enum):
    """Internal per-document state inside a tracked batch."""

    ACCEPTED = "ACCEPTED"  # Passed intake, awaiting validation
    REJECTED = "REJECTED"  # Rejected at intake, never processed
    PROCESSING = "PROCESSING"  # Service is validating
    COMPLETED = "COMPLETED"  # Validated
    FAILED = "FAILED"  # Failed validation

    @property
    def is_terminal(self) -> bool:
        return self in (
            DocumentState.REJECTED,
            DocumentState.COMPLETED,
            DocumentState.FAILED,
        )


class ServiceDocumentStatus(str, Enum):
    """Per-document status vocabulary of the validation service."""

    SUBMITTED = "Submitted"
    VALID = "Valid"
    INVALID = "Invalid"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: str | None) -> ServiceDocumentStatus:
        key = (value or "").strip().lower()
        for member in cls:
            if member.value.lower() == key:
                return member
        return cls.UNKNOWN


class ErrorType(str, Enum):
    """Classification of an error reported through the observer."""

    VALIDATION = "VALIDATION"
    SYSTEM = "SYSTEM"
    API = "API"


# =============================================================================
# Service vocabulary
# =============================================================================


@dataclass(frozen=True)
class ValidationDetail:
    """One normalized validation error attached to a document."""

    code: str
    message: str
    target: str | None = None
    property_path: str | None = None


@dataclass(frozen=True)
class ServiceError:
    """Raw error payload of a rejected document."""

    code: str | None = None
    message: str | None = None
    details: tuple[dict[str, Any], ...] | None = None


@dataclass(frozen=True)
class AcceptedDocument:
    internal_id: str
    external_id: str
    status: str | None = None
    long_id: str | None = None
    date_time_validated: str | None = None


@dataclass(frozen=True)
class RejectedDocument:
    internal_id: str
    error: ServiceError = field(default_factory=ServiceError)


@dataclass(frozen=True)
class SubmissionAck:
    """Immediate response to a batch submission."""

    submission_id: str
    date_time_received: str | None = None
    accepted: tuple[AcceptedDocument, ...] = ()
    rejected: tuple[RejectedDocument, ...] = ()


@dataclass(frozen=True)
class DocumentSummary:
    """Per-document entry of a submission status report."""

    internal_id: str | None
    external_id: str | None
    status: str
    long_id: str | None = None
    date_time_validated: str | None = None

    @property
    def service_status(self) -> ServiceDocumentStatus:
        return ServiceDocumentStatus.parse(self.status)


@dataclass(frozen=True)
class SubmissionStatusReport:
    """Result of one status poll.

    ``actual_status`` and ``timed_out`` are set only by the polling engine
    when it reports a batch as valid on circumstantial evidence; they keep
    the real upstream status visible to callers.
    """

    overall_status: OverallStatus
    document_summary: tuple[DocumentSummary, ...] = ()
    date_time_received: str | None = None
    actual_status: OverallStatus | None = None
    timed_out: bool = False

    def coerced_valid(self, *, timed_out: bool = False) -> SubmissionStatusReport:
        return replace(
            self,
            overall_status=OverallStatus.VALID,
            actual_status=self.overall_status,
            timed_out=timed_out,
        )

    @property
    def all_submitted(self) -> bool:
        """True when there is a summary and every entry still reads Submitted."""
        return bool(self.document_summary) and all(
            doc.service_status is ServiceDocumentStatus.SUBMITTED
            for doc in self.document_summary
        )


@dataclass(frozen=True)
class DocumentDetail:
    """Validation-service view of a single document."""

    external_id: str
    status: str
    long_id: str | None = None
    date_time_validated: str | None = None

    @property
    def service_status(self) -> ServiceDocumentStatus:
        return ServiceDocumentStatus.parse(self.status)


@dataclass(frozen=True)
class SubmissionDocument:
    """A rendered document ready for submission.

    ``content`` is the XML or JSON body produced by a renderer; the
    service expects it base64-encoded together with its SHA-256 hash.
    """

    code_number: str
    content: str
    format: str = "XML"

    @property
    def encoded(self) -> str:
        return base64.b64encode(self.content.encode("utf-8")).decode("ascii")

    @property
    def document_hash(self) -> str:
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()


# =============================================================================
# Tracker state
# =============================================================================


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: datetime
    status: DocumentState
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class DocumentStatus:
    """Live status of one document inside a batch."""

    document_ref: str
    current_status: DocumentState
    external_id: str | None = None
    errors: tuple[ValidationDetail, ...] | None = None
    summary: DocumentSummary | None = None
    history: list[HistoryEntry] = field(default_factory=list)


@dataclass(frozen=True)
class ProcessingUpdate:
    timestamp: datetime
    report: SubmissionStatusReport
    affected_documents: tuple[str, ...] = ()


@dataclass(frozen=True)
class BatchStatistics:
    """Aggregate counters derived from the per-document map."""

    total_documents: int
    processed: int = 0
    accepted: int = 0
    rejected: int = 0
    processing: int = 0
    completed: int = 0


@dataclass
class SubmissionBatch:
    """Mutable state of one submission, owned by a single tracker."""

    batch_size: int
    submitted_at: datetime
    submission_id: str = ""
    completed_at: datetime | None = None
    statistics: BatchStatistics | None = None
    documents: dict[str, DocumentStatus] = field(default_factory=dict)
    processing_updates: list[ProcessingUpdate] = field(default_factory=list)
    overall_status: OverallStatus = OverallStatus.IN_PROGRESS
    final_status: SubmissionStatusReport | None = None
    initial_response: SubmissionAck | None = None

    def __post_init__(self) -> None:
        if self.statistics is None:
            self.statistics = BatchStatistics(total_documents=self.batch_size)


@dataclass(frozen=True)
class ErrorReport:
    """Typed error attached to an observer notification."""

    type: ErrorType
    message: str
    details: Any = None


@dataclass(frozen=True)
class SubmissionState:
    """Snapshot pushed to observers on every change."""

    phase: SubmissionPhase
    tracker: SubmissionBatch
    error: ErrorReport | None = None
