"""
ORM models for consolidation scheduling.

Contract:
    ConsolidationTaskModel persists one task per (tenant, year, month);
    TenantSettingsModel holds the per-tenant auto-consolidation flag.
    Each has a ``to_dto()`` returning the frozen snapshot from
    ``einvoice_consolidation.domain.types``.

Architecture: einvoice_consolidation/models.  Imports from
    einvoice_kernel.db.base only.

Invariants enforced:
    - (tenant_id, year, month) is UNIQUE, so scheduling a month twice can
      never create a second task.
    - month is 1..12 (CHECK constraint).
    - tenant_id is UNIQUE on TenantSettingsModel.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from einvoice_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from einvoice_consolidation.domain.types import ConsolidationTask, TenantSettings


class ConsolidationTaskModel(TrackedBase):
    """Scheduler-owned consolidation task."""

    __tablename__ = "consolidation_tasks"

    __table_args__ = (
        UniqueConstraint("tenant_id", "year", "month", name="uq_consolidation_period"),
        CheckConstraint("month >= 1 AND month <= 12", name="month_range"),
        Index("ix_consolidation_tasks_due", "status", "next_attempt"),
    )

    tenant_id: Mapped[str] = mapped_column(String(50), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    next_attempt: Mapped[date | None] = mapped_column(Date, nullable=True)
    consolidated_document_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self) -> ConsolidationTask:
        from einvoice_consolidation.domain.types import (
            ConsolidationTask,
            ConsolidationTaskStatus,
        )

        return ConsolidationTask(
            task_id=self.id,
            tenant_id=self.tenant_id,
            year=self.year,
            month=self.month,
            status=ConsolidationTaskStatus(self.status),
            attempt_count=self.attempt_count,
            next_attempt=self.next_attempt,
            last_attempt=self.last_attempt,
            consolidated_document_id=self.consolidated_document_id,
            error=self.error,
        )

    def __repr__(self) -> str:
        return (
            f"<ConsolidationTask {self.tenant_id} {self.year}-{self.month:02d} "
            f"{self.status}>"
        )


class TenantSettingsModel(TrackedBase):
    """Per-tenant consolidation settings."""

    __tablename__ = "consolidation_settings"

    tenant_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    auto_consolidation_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
    )
    updated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def to_dto(self) -> TenantSettings:
        from einvoice_consolidation.domain.types import TenantSettings

        return TenantSettings(
            tenant_id=self.tenant_id,
            auto_consolidation_enabled=self.auto_consolidation_enabled,
            updated_by=self.updated_by,
        )
