"""Consolidation services: scheduler, cancellation and status refresh."""

from einvoice_consolidation.services.cancellation import (
    ConsolidationCancellationService,
)
from einvoice_consolidation.services.scheduler import ConsolidationScheduler
from einvoice_consolidation.services.status import ConsolidationStatusService

__all__ = [
    "ConsolidationCancellationService",
    "ConsolidationScheduler",
    "ConsolidationStatusService",
]
