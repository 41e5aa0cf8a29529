"""
SubmissionTracker -- state machine for one submitted batch.

Contract:
    Owns exactly one ``SubmissionBatch``.  Consumes the service's
    immediate acknowledgement (``handle_initial_response``), every poll
    result (``handle_processing_update``) and submission-level failures
    (``handle_error``).  After each change the observer receives a
    deep-copied ``SubmissionState`` snapshot.

Guarantees:
    - Statistics are recomputed from the per-document map after every
      change, never patched incrementally.
    - ``processed <= total_documents`` at all times.
    - A document's ``external_id``, ``errors`` and ``summary`` are only
      overwritten by updates that carry a value; ``history`` only grows.
    - ``handle_error`` never raises.

Non-goals:
    - Not thread-safe.  Callers serialize mutations per batch (in
      practice only the submit call and the polling engine mutate it).
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any, Protocol

from einvoice_kernel.domain.clock import Clock, SystemClock
from einvoice_kernel.exceptions import (
    DocumentRejectedError,
    EInvoiceError,
    PollingTimeoutError,
    ValidationApiError,
    ValidationServiceError,
)
from einvoice_kernel.logging_config import get_logger
from einvoice_submission.domain.status import (
    all_documents_terminal,
    compute_statistics,
    derive_overall_status,
    map_service_status,
    normalize_errors,
)
from einvoice_submission.domain.types import (
    BatchStatistics,
    DocumentState,
    DocumentStatus,
    DocumentSummary,
    ErrorReport,
    ErrorType,
    HistoryEntry,
    OverallStatus,
    ProcessingUpdate,
    SubmissionAck,
    SubmissionBatch,
    SubmissionPhase,
    SubmissionState,
    SubmissionStatusReport,
    ValidationDetail,
)

logger = get_logger("submission.tracker")


class SubmissionObserver(Protocol):
    """Receives a snapshot after every tracker change."""

    def on_state_change(self, state: SubmissionState) -> None:
        ...


class _Stoppable(Protocol):
    def stop(self) -> None:
        ...


class SubmissionTracker:
    """Tracks one batch from acknowledgement to terminal status."""

    def __init__(
        self,
        batch_size: int,
        observer: SubmissionObserver | None = None,
        clock: Clock | None = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._clock = clock or SystemClock()
        self._observer = observer
        self._poller: _Stoppable | None = None
        self._batch = SubmissionBatch(
            batch_size=batch_size,
            submitted_at=self._clock.now(),
        )

    # -------------------------------------------------------------------------
    # Inputs
    # -------------------------------------------------------------------------

    def handle_initial_response(self, ack: SubmissionAck) -> None:
        """Record the service's immediate accept/reject acknowledgement."""
        batch = self._batch
        batch.submission_id = ack.submission_id
        batch.initial_response = ack

        for doc in ack.accepted:
            self._update_document(
                doc.internal_id,
                DocumentState.ACCEPTED,
                external_id=doc.external_id,
            )
        for doc in ack.rejected:
            self._update_document(
                doc.internal_id,
                DocumentState.REJECTED,
                errors=normalize_errors(doc.error),
            )

        logger.info(
            "submission_acknowledged",
            extra={
                "submission_id": ack.submission_id,
                "accepted": len(ack.accepted),
                "rejected": len(ack.rejected),
                "batch_size": batch.batch_size,
            },
        )

        all_rejected = len(ack.rejected) >= batch.batch_size
        if all_rejected or not ack.accepted:
            self._complete(OverallStatus.INVALID)
            return

        batch.overall_status = OverallStatus.IN_PROGRESS
        self._notify(SubmissionPhase.SUBMISSION)

    def handle_processing_update(self, report: SubmissionStatusReport) -> None:
        """Apply one status report from the polling engine."""
        batch = self._batch
        now = self._clock.now()
        affected = tuple(
            d.internal_id for d in report.document_summary if d.internal_id
        )
        batch.processing_updates.append(
            ProcessingUpdate(timestamp=now, report=report, affected_documents=affected)
        )

        for summary in report.document_summary:
            if not summary.internal_id:
                continue
            self._update_document(
                summary.internal_id,
                map_service_status(summary.service_status),
                external_id=summary.external_id,
                summary=summary,
            )

        if not report.overall_status.is_terminal:
            batch.overall_status = OverallStatus.IN_PROGRESS
            self._notify(SubmissionPhase.PROCESSING)
            return

        batch.final_status = report
        if all_documents_terminal(batch.documents.values(), batch.statistics):
            overall = derive_overall_status(batch.statistics)
        else:
            overall = report.overall_status
        self._complete(overall, at=now)

    def handle_error(
        self, error: BaseException, phase: SubmissionPhase = SubmissionPhase.PROCESSING,
    ) -> None:
        """Report a submission-level failure to the observer and stop polling."""
        report = ErrorReport(
            type=classify_error(error),
            message=str(error) or "An error occurred during submission",
            details=_error_details(error),
        )
        logger.warning(
            "submission_error",
            extra={
                "submission_id": self._batch.submission_id,
                "phase": phase,
                "error_type": report.type,
                "error_message": report.message,
            },
        )
        self._notify(phase, report)
        self.stop_polling()

    # -------------------------------------------------------------------------
    # Polling ownership
    # -------------------------------------------------------------------------

    def attach_poller(self, poller: _Stoppable) -> None:
        self._poller = poller

    def stop_polling(self) -> None:
        if self._poller is not None:
            self._poller.stop()
            self._poller = None

    def cleanup(self) -> None:
        self.stop_polling()

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def get_state(self) -> SubmissionState:
        return SubmissionState(phase=self.phase, tracker=copy.deepcopy(self._batch))

    def get_current_statistics(self) -> BatchStatistics:
        return self._batch.statistics

    def get_document_statuses(self) -> dict[str, DocumentStatus]:
        return copy.deepcopy(self._batch.documents)

    @property
    def phase(self) -> SubmissionPhase:
        if self._batch.completed_at is not None:
            return SubmissionPhase.COMPLETED
        if self._batch.processing_updates:
            return SubmissionPhase.PROCESSING
        return SubmissionPhase.SUBMISSION

    @property
    def is_complete(self) -> bool:
        return self._batch.completed_at is not None

    @property
    def submission_id(self) -> str:
        return self._batch.submission_id

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _update_document(
        self,
        document_ref: str,
        status: DocumentState,
        *,
        external_id: str | None = None,
        errors: tuple[ValidationDetail, ...] | None = None,
        summary: DocumentSummary | None = None,
    ) -> None:
        doc = self._batch.documents.get(document_ref)
        if doc is None:
            doc = DocumentStatus(document_ref=document_ref, current_status=status)
            self._batch.documents[document_ref] = doc

        details: dict[str, Any] = {}
        if external_id:
            doc.external_id = external_id
            details["external_id"] = external_id
        if errors:
            doc.errors = errors
            details["errors"] = errors
        if summary is not None:
            doc.summary = summary
            details["summary"] = summary

        doc.current_status = status
        doc.history.append(
            HistoryEntry(timestamp=self._clock.now(), status=status, details=details)
        )
        self._batch.statistics = compute_statistics(
            self._batch.batch_size, self._batch.documents.values(),
        )

    def _complete(
        self, overall: OverallStatus, at: datetime | None = None,
    ) -> None:
        batch = self._batch
        batch.overall_status = overall
        batch.completed_at = at or self._clock.now()
        logger.info(
            "submission_completed",
            extra={
                "submission_id": batch.submission_id,
                "overall_status": overall,
                "completed": batch.statistics.completed,
                "rejected": batch.statistics.rejected,
            },
        )
        self._notify(SubmissionPhase.COMPLETED)
        self.stop_polling()

    def _notify(self, phase: SubmissionPhase, error: ErrorReport | None = None) -> None:
        if self._observer is None:
            return
        snapshot = SubmissionState(
            phase=phase, tracker=copy.deepcopy(self._batch), error=error,
        )
        try:
            self._observer.on_state_change(snapshot)
        except Exception:
            logger.exception(
                "observer_failed",
                extra={"submission_id": self._batch.submission_id, "phase": phase},
            )


def classify_error(error: BaseException) -> ErrorType:
    """Map an exception onto the observer's error taxonomy."""
    if isinstance(error, DocumentRejectedError):
        return ErrorType.VALIDATION
    if isinstance(error, (ValidationServiceError, PollingTimeoutError)):
        return ErrorType.API
    return ErrorType.SYSTEM


def _error_details(error: BaseException) -> dict[str, Any]:
    details: dict[str, Any] = {"exception": type(error).__name__}
    if isinstance(error, EInvoiceError):
        details["code"] = error.code
        for key, val in vars(error).items():
            if not key.startswith("_"):
                details[key] = val
    if isinstance(error, ValidationApiError):
        details["error_message"] = error.error_message
    return details
