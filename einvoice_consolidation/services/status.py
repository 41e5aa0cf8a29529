"""
Consolidated document status refresh.

Contract:
    ``refresh_consolidated_status(tenant_id, document_number)`` asks the
    validation service for the current view of a consolidated document and
    writes the result back:

        already valid            -> unchanged, no remote call
        long id present          -> valid, validated_at from the service
        Invalid or Rejected      -> invalid, long_id and validated_at cleared
        anything else            -> pending

Failure modes:
    - ``ConsolidatedDocumentNotFoundError`` -- no such consolidated document.
    - ``ConsolidationError`` -- the document was never accepted (no external
      id), so there is nothing to look up.
    - ``ValidationApiError`` from the client propagates; nothing is written.
"""

from __future__ import annotations

from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from einvoice_consolidation.domain.types import StatusRefreshResult
from einvoice_consolidation.services.cancellation import _load_consolidated
from einvoice_kernel.domain.clock import Clock, SystemClock
from einvoice_kernel.exceptions import ConsolidationError
from einvoice_kernel.logging_config import get_logger
from einvoice_kernel.models.document import ValidationState
from einvoice_submission.client.base import ValidationApiClient
from einvoice_submission.client.codec import parse_timestamp
from einvoice_submission.domain.types import ServiceDocumentStatus

logger = get_logger("consolidation.status")


class ConsolidationStatusService:
    """Re-checks consolidated documents still awaiting a final answer."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: Callable[[str], ValidationApiClient],
        clock: Clock | None = None,
        actor_id: UUID | None = None,
    ):
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._clock = clock or SystemClock()
        self._actor_id = actor_id or uuid4()

    def refresh_consolidated_status(
        self, tenant_id: str, document_number: str,
    ) -> StatusRefreshResult:
        session = self._session_factory()
        try:
            doc = _load_consolidated(session, tenant_id, document_number)
            if doc.validation_state == ValidationState.VALID.value:
                return StatusRefreshResult(
                    document_number=document_number,
                    validation_state=doc.validation_state,
                    long_id=doc.long_id,
                    validated_at=doc.validated_at,
                )
            if not doc.external_id:
                raise ConsolidationError(
                    f"Consolidated document {document_number} has no external id"
                )

            detail = self._client_factory(tenant_id).get_document_details(
                doc.external_id,
            )
            service_status = ServiceDocumentStatus.parse(detail.status)

            if detail.long_id:
                doc.validation_state = ValidationState.VALID.value
                doc.long_id = detail.long_id
                doc.validated_at = (
                    parse_timestamp(detail.date_time_validated)
                    or doc.validated_at
                    or self._clock.now_utc()
                )
            elif service_status in (
                ServiceDocumentStatus.INVALID, ServiceDocumentStatus.REJECTED,
            ):
                doc.validation_state = ValidationState.INVALID.value
                doc.long_id = None
                doc.validated_at = None
            else:
                doc.validation_state = ValidationState.PENDING.value
            doc.updated_by_id = self._actor_id

            result = StatusRefreshResult(
                document_number=document_number,
                validation_state=doc.validation_state,
                long_id=doc.long_id,
                validated_at=doc.validated_at,
                updated=True,
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(
            "consolidated_status_refreshed",
            extra={
                "tenant_id": tenant_id,
                "document_number": document_number,
                "validation_state": result.validation_state,
                "service_status": service_status.value,
            },
        )
        return result
