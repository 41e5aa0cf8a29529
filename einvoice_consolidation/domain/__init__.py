"""
einvoice_consolidation.domain -- Pure types, calendar arithmetic and the
consolidated document builder.

ZERO I/O.  All types are frozen dataclasses.
"""

from einvoice_consolidation.domain.types import (
    CancellationResult,
    ConsolidatedDraft,
    ConsolidatedTotals,
    ConsolidationRunSummary,
    ConsolidationTask,
    ConsolidationTaskStatus,
    SourceDocument,
    StatusRefreshResult,
    TaskOutcome,
    TaskOutcomeKind,
    TenantSettings,
)

__all__ = [
    "CancellationResult",
    "ConsolidatedDraft",
    "ConsolidatedTotals",
    "ConsolidationRunSummary",
    "ConsolidationTask",
    "ConsolidationTaskStatus",
    "SourceDocument",
    "StatusRefreshResult",
    "TaskOutcome",
    "TaskOutcomeKind",
    "TenantSettings",
]
