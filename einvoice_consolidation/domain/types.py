"""
einvoice_consolidation.domain.types -- Pure frozen dataclasses for consolidation.

ZERO I/O.  Status enums, task and settings snapshots, the consolidated
document draft handed to a renderer, and run/cancellation results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class ConsolidationTaskStatus(str, Enum):
    """Lifecycle of one (tenant, year, month) consolidation task."""

    PENDING = "pending"  # Waiting for next_attempt
    PROCESSING = "processing"  # Claimed by a scheduler run
    COMPLETED = "completed"  # Consolidated document submitted
    SKIPPED = "skipped"  # Nothing to consolidate
    FAILED = "failed"  # Retry window ran out after a failed attempt
    EXPIRED = "expired"  # Never attempted inside the window

    @property
    def is_terminal(self) -> bool:
        return self not in (
            ConsolidationTaskStatus.PENDING,
            ConsolidationTaskStatus.PROCESSING,
        )


class TaskOutcomeKind(str, Enum):
    """What a scheduler run did with one selected task."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    EXPIRED = "expired"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    NOT_CLAIMED = "not_claimed"  # Another process owns the task


# =============================================================================
# Persistent snapshots
# =============================================================================


@dataclass(frozen=True)
class ConsolidationTask:
    """Immutable snapshot of a consolidation task row."""

    task_id: UUID
    tenant_id: str
    year: int
    month: int  # 1..12
    status: ConsolidationTaskStatus
    attempt_count: int = 0
    next_attempt: date | None = None
    last_attempt: datetime | None = None
    consolidated_document_id: str | None = None
    error: str | None = None

    @property
    def period_label(self) -> str:
        return f"{self.year}-{self.month:02d}"


@dataclass(frozen=True)
class TenantSettings:
    tenant_id: str
    auto_consolidation_enabled: bool = False
    updated_by: str | None = None


# =============================================================================
# Consolidated document
# =============================================================================


@dataclass(frozen=True)
class SourceDocument:
    """An original document selected for consolidation."""

    document_number: str
    issued_on: date
    total_excluding_tax: Decimal
    tax_amount: Decimal
    rounding: Decimal
    total_payable: Decimal


@dataclass(frozen=True)
class ConsolidatedTotals:
    total_excluding_tax: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    rounding: Decimal = Decimal("0")
    total_payable: Decimal = Decimal("0")


@dataclass(frozen=True)
class ConsolidatedDraft:
    """Synthetic document bundling one month of unvalidated documents.

    Handed to the renderer, then persisted once the service accepts it.
    """

    tenant_id: str
    document_number: str
    year: int
    month: int
    issued_on: date
    totals: ConsolidatedTotals
    sources: tuple[SourceDocument, ...] = ()

    @property
    def source_numbers(self) -> tuple[str, ...]:
        return tuple(s.document_number for s in self.sources)


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class TaskOutcome:
    task_id: UUID
    tenant_id: str
    year: int
    month: int
    outcome: TaskOutcomeKind
    consolidated_document_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ConsolidationRunSummary:
    """Result of one ``run_due_consolidations`` call."""

    run_date: date
    outcomes: tuple[TaskOutcome, ...] = ()

    def count(self, kind: TaskOutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.outcome is kind)

    @property
    def completed(self) -> int:
        return self.count(TaskOutcomeKind.COMPLETED)

    @property
    def selected(self) -> int:
        return len(self.outcomes)


@dataclass(frozen=True)
class CancellationResult:
    """Result of cancelling a consolidated document."""

    document_number: str
    reset_documents: tuple[str, ...] = ()
    remote_cancelled: bool = False
    remote_error: str | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class StatusRefreshResult:
    """Result of re-checking a consolidated document at the service."""

    document_number: str
    validation_state: str | None
    long_id: str | None = None
    validated_at: datetime | None = None
    updated: bool = False


@dataclass(frozen=True)
class ManualConsolidationResult:
    """Result of consolidating a caller-selected set of documents.

    ``skipped_numbers`` lists requested documents that were not eligible
    for the period (already validated, cancelled, bundled or unknown).
    """

    document_number: str
    year: int
    month: int
    source_numbers: tuple[str, ...]
    totals: ConsolidatedTotals
    external_id: str | None = None
    submission_id: str | None = None
    validation_state: str | None = None
    skipped_numbers: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConsolidationHistoryEntry:
    """One consolidated document as listed in a tenant's history."""

    document_number: str
    issued_on: date
    status: str
    validation_state: str | None
    totals: ConsolidatedTotals
    consolidated_documents: tuple[str, ...] = ()
    external_id: str | None = None
    long_id: str | None = None
    submission_id: str | None = None
    validated_at: datetime | None = None
