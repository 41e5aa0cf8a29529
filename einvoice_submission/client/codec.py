"""
Wire codec for the validation service's JSON bodies.

The service names the same fields differently across endpoints
(``submissionUid`` vs ``submissionId``, ``uuid`` vs ``externalId``,
``invoiceCodeNumber`` vs ``internalId``).  Every accessor here accepts
either spelling so the rest of the code only sees the typed DTOs from
``einvoice_submission.domain.types``.

A 2xx body that is not a JSON object raises ``ValidationApiError`` so
callers treat it like any other failed call.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from einvoice_kernel.exceptions import ValidationApiError
from einvoice_submission.domain.types import (
    AcceptedDocument,
    DocumentDetail,
    DocumentSummary,
    OverallStatus,
    RejectedDocument,
    ServiceError,
    SubmissionAck,
    SubmissionDocument,
    SubmissionStatusReport,
)


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _require_object(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValidationApiError(
            f"unexpected response shape for {what}: {type(data).__name__}",
        )
    return data


def encode_submission(documents: Sequence[SubmissionDocument]) -> dict[str, Any]:
    """Request body for ``POST /api/v1.0/documentsubmissions``."""
    return {
        "documents": [
            {
                "format": doc.format,
                "document": doc.encoded,
                "documentHash": doc.document_hash,
                "codeNumber": doc.code_number,
            }
            for doc in documents
        ]
    }


def decode_service_error(data: Any) -> ServiceError:
    if isinstance(data, str):
        return ServiceError(message=data)
    if not isinstance(data, Mapping):
        return ServiceError()
    details = data.get("details")
    return ServiceError(
        code=_opt_str(data.get("code")),
        message=_opt_str(data.get("message")),
        details=tuple(d for d in details if isinstance(d, Mapping))
        if isinstance(details, list) and details
        else None,
    )


def decode_ack(data: Mapping[str, Any]) -> SubmissionAck:
    """Decode the immediate response to a submission."""
    data = _require_object(data, "submission acknowledgement")
    accepted = tuple(
        AcceptedDocument(
            internal_id=str(
                _first(doc, "internalId", "invoiceCodeNumber", "codeNumber")
            ),
            external_id=str(_first(doc, "externalId", "uuid")),
            status=_opt_str(doc.get("status")),
            long_id=_opt_str(doc.get("longId")),
            date_time_validated=_opt_str(doc.get("dateTimeValidated")),
        )
        for doc in data.get("acceptedDocuments") or ()
        if isinstance(doc, Mapping)
    )
    rejected = tuple(
        RejectedDocument(
            internal_id=str(
                _first(doc, "internalId", "invoiceCodeNumber", "codeNumber")
            ),
            error=decode_service_error(doc.get("error")),
        )
        for doc in data.get("rejectedDocuments") or ()
        if isinstance(doc, Mapping)
    )
    return SubmissionAck(
        submission_id=str(_first(data, "submissionId", "submissionUid") or ""),
        date_time_received=_opt_str(data.get("dateTimeReceived")),
        accepted=accepted,
        rejected=rejected,
    )


def decode_summary(doc: Mapping[str, Any]) -> DocumentSummary:
    return DocumentSummary(
        internal_id=_opt_str(_first(doc, "internalId", "invoiceCodeNumber")),
        external_id=_opt_str(_first(doc, "externalId", "uuid")),
        status=str(doc.get("status") or ""),
        long_id=_opt_str(doc.get("longId")),
        date_time_validated=_opt_str(doc.get("dateTimeValidated")),
    )


def decode_status_report(data: Mapping[str, Any]) -> SubmissionStatusReport:
    """Decode ``GET /api/v1.0/documentsubmissions/{id}``."""
    data = _require_object(data, "submission status")
    return SubmissionStatusReport(
        overall_status=OverallStatus.parse(data.get("overallStatus")),
        document_summary=tuple(
            decode_summary(doc)
            for doc in data.get("documentSummary") or ()
            if isinstance(doc, Mapping)
        ),
        date_time_received=_opt_str(data.get("dateTimeReceived")),
    )


def decode_document_detail(
    data: Mapping[str, Any], document_id: str = "",
) -> DocumentDetail:
    """Decode ``GET /api/v1.0/documents/{id}/details``."""
    data = _require_object(data, "document details")
    return DocumentDetail(
        external_id=str(_first(data, "externalId", "uuid") or document_id),
        status=str(data.get("status") or ""),
        long_id=_opt_str(data.get("longId")),
        date_time_validated=_opt_str(
            _first(data, "dateTimeValidated", "dateTimeValidation")
        ),
    )


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 service timestamp (``Z`` suffix accepted)."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
