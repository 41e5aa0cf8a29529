"""
ValidationApiClient protocol.

Contract:
    Every collaborator that talks to the validation service implements
    these four operations.  The tracker, polling engine, coordinator and
    consolidation scheduler depend on this protocol only; the HTTP client
    in ``einvoice_submission.client.http`` is one implementation and test
    fakes are others.

Failure modes:
    Every operation raises ``ValidationApiError`` (with ``status_code``
    where the service answered) on non-2xx responses or transport failure.
"""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from einvoice_submission.domain.types import (
    DocumentDetail,
    SubmissionAck,
    SubmissionDocument,
    SubmissionStatusReport,
)

CANCELLED_STATE = "cancelled"


@runtime_checkable
class ValidationApiClient(Protocol):
    """Boundary to the government validation service."""

    def submit(self, documents: Sequence[SubmissionDocument]) -> SubmissionAck:
        """Submit a batch of rendered documents."""
        ...

    def get_submission_status(self, submission_id: str) -> SubmissionStatusReport:
        """Fetch the current status of a submission."""
        ...

    def get_document_details(self, document_id: str) -> DocumentDetail:
        """Fetch the service's view of a single document."""
        ...

    def set_document_state(self, document_id: str, state: str, reason: str) -> None:
        """Change a document's state at the service (cancellation)."""
        ...
