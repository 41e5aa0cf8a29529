"""
Consolidation cancellation -- reverse a completed consolidation.

Contract:
    ``cancel_consolidation(tenant_id, document_number, reason)`` cancels a
    consolidated document whose validation state is ``valid`` or
    ``invalid``.  The service-side cancellation is best effort; the local
    reset always happens, inside one transaction:

        consolidated document  -> status and validation_state "cancelled"
        every bundled original -> consolidated_into, external_id, long_id,
                                  submission_id, validation_state,
                                  validated_at cleared

    The originals become eligible for the next consolidation again.

Failure modes:
    - ``ConsolidatedDocumentNotFoundError`` -- no such consolidated document.
    - ``ConsolidationNotCancellableError`` -- validation state is neither
      ``valid`` nor ``invalid``.
    - A 400 from the service (document already in a terminal state) counts
      as a remote success; any other remote failure is logged, reported in
      the result and does not block the local reset.
"""

from __future__ import annotations

from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from einvoice_consolidation.domain.types import CancellationResult
from einvoice_kernel.exceptions import (
    ConsolidatedDocumentNotFoundError,
    ConsolidationNotCancellableError,
    ValidationApiError,
    ValidationServiceError,
)
from einvoice_kernel.logging_config import get_logger
from einvoice_kernel.models.document import BusinessStatus, Document, ValidationState
from einvoice_submission.client.base import CANCELLED_STATE, ValidationApiClient

logger = get_logger("consolidation.cancellation")

DEFAULT_REASON = "Cancelled via system"

_CANCELLABLE_STATES = frozenset(
    {ValidationState.VALID.value, ValidationState.INVALID.value}
)


class ConsolidationCancellationService:
    """Cancels consolidated documents for any tenant."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: Callable[[str], ValidationApiClient],
        actor_id: UUID | None = None,
    ):
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._actor_id = actor_id or uuid4()

    def cancel_consolidation(
        self,
        tenant_id: str,
        document_number: str,
        reason: str | None = None,
    ) -> CancellationResult:
        reason = reason or DEFAULT_REASON
        session = self._session_factory()
        try:
            consolidated = _load_consolidated(session, tenant_id, document_number)
            state = (consolidated.validation_state or "").lower()
            if state not in _CANCELLABLE_STATES:
                raise ConsolidationNotCancellableError(
                    document_number, consolidated.validation_state,
                )

            remote_cancelled, remote_error = self._cancel_remote(
                tenant_id, document_number, consolidated.external_id, reason,
            )

            originals = [str(n) for n in consolidated.consolidated_documents or []]
            consolidated.status = BusinessStatus.CANCELLED.value
            consolidated.validation_state = ValidationState.CANCELLED.value
            consolidated.updated_by_id = self._actor_id

            warnings: list[str] = []
            if originals:
                for original in session.execute(
                    select(Document).where(
                        Document.tenant_id == tenant_id,
                        Document.document_number.in_(originals),
                    )
                ).scalars():
                    original.clear_validation()
                    original.updated_by_id = self._actor_id
            else:
                warnings.append("Consolidated document lists no original documents")

            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(
            "consolidation_cancelled",
            extra={
                "tenant_id": tenant_id,
                "document_number": document_number,
                "reset_documents": len(originals),
                "remote_cancelled": remote_cancelled,
            },
        )
        return CancellationResult(
            document_number=document_number,
            reset_documents=tuple(originals),
            remote_cancelled=remote_cancelled,
            remote_error=remote_error,
            warnings=tuple(warnings),
        )

    def _cancel_remote(
        self,
        tenant_id: str,
        document_number: str,
        external_id: str | None,
        reason: str,
    ) -> tuple[bool, str | None]:
        if not external_id:
            return False, "Document has no external id; remote cancellation skipped"
        return cancel_remote_document(
            self._client_factory(tenant_id), document_number, external_id, reason,
        )


def cancel_remote_document(
    client: ValidationApiClient,
    document_number: str,
    external_id: str,
    reason: str,
) -> tuple[bool, str | None]:
    """Ask the service to cancel one document; returns ``(cancelled, error)``.

    A 400 means the document is already in a terminal state and counts as
    cancelled.  Other service failures are logged and returned, not raised.
    """
    try:
        client.set_document_state(external_id, CANCELLED_STATE, reason)
    except ValidationApiError as exc:
        if exc.status_code == 400:
            logger.info(
                "remote_cancellation_already_terminal",
                extra={"document_number": document_number, "external_id": external_id},
            )
            return True, None
        logger.warning(
            "remote_cancellation_failed",
            extra={
                "document_number": document_number,
                "external_id": external_id,
                "status_code": exc.status_code,
                "error": exc.error_message,
            },
        )
        return False, exc.error_message
    except ValidationServiceError as exc:
        logger.warning(
            "remote_cancellation_failed",
            extra={"document_number": document_number, "error": str(exc)},
        )
        return False, str(exc)
    return True, None


def _load_consolidated(
    session: Session, tenant_id: str, document_number: str,
) -> Document:
    doc = session.execute(
        select(Document).where(
            Document.tenant_id == tenant_id,
            Document.document_number == document_number,
            Document.is_consolidated == True,  # noqa: E712
        )
    ).scalar_one_or_none()
    if doc is None:
        raise ConsolidatedDocumentNotFoundError(tenant_id, document_number)
    return doc
