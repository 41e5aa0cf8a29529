"""
Module: einvoice_kernel.models.document
Responsibility: ORM persistence for accounting documents (invoices) and their
    e-invoice validation fields.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - document_number is unique per tenant (uq_document_tenant_number).
    - The e-invoice core only writes the validation fields (external_id,
      long_id, submission_id, validation_state, validated_at) and the
      consolidation fields (is_consolidated, consolidated_documents,
      consolidated_into).  Business fields belong to the originating module.
    - A consolidated document carries is_consolidated=True and lists the
      document numbers it bundles in consolidated_documents; each bundled
      original points back through consolidated_into.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, Boolean, Date, DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from einvoice_kernel.db.base import TrackedBase


class ValidationState(str, Enum):
    """Local e-invoice status of a document.

    ``None`` in the column means the document was never submitted.
    """

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    CANCELLED = "cancelled"


class BusinessStatus(str, Enum):
    """Business status of a document, owned by the originating module."""

    ACTIVE = "active"
    CANCELLED = "cancelled"


class Document(TrackedBase):
    """
    Accounting document eligible for e-invoice submission.

    Contract:
        Monetary totals are Decimal and never mutated by the e-invoice core.

    Non-goals:
        - Line items are not modelled; consolidation only needs totals.
    """

    __tablename__ = "einvoice_documents"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "document_number", name="uq_document_tenant_number",
        ),
        Index("idx_document_tenant_issued", "tenant_id", "issued_on"),
        Index("idx_document_validation_state", "validation_state"),
        Index("idx_document_consolidated_into", "consolidated_into"),
    )

    tenant_id: Mapped[str] = mapped_column(String(50), nullable=False)

    # Internal reference, e.g. "INV-1001" or "CON-202601-AUTO"
    document_number: Mapped[str] = mapped_column(String(100), nullable=False)

    issued_on: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=BusinessStatus.ACTIVE.value, nullable=False,
    )

    total_excluding_tax: Mapped[Decimal] = mapped_column(
        default=Decimal("0"), nullable=False,
    )
    tax_amount: Mapped[Decimal] = mapped_column(
        default=Decimal("0"), nullable=False,
    )
    rounding: Mapped[Decimal] = mapped_column(
        default=Decimal("0"), nullable=False,
    )
    total_payable: Mapped[Decimal] = mapped_column(
        default=Decimal("0"), nullable=False,
    )

    # Validation service identifiers
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    long_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    submission_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    validation_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Consolidation
    is_consolidated: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
    )
    consolidated_documents: Mapped[list | None] = mapped_column(JSON, nullable=True)
    consolidated_into: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def clear_validation(self) -> None:
        """Reset every e-invoice field so the document can be processed again."""
        self.external_id = None
        self.long_id = None
        self.submission_id = None
        self.validation_state = None
        self.validated_at = None
        self.consolidated_into = None

    def __repr__(self) -> str:
        return (
            f"<Document {self.tenant_id}/{self.document_number} "
            f"validation={self.validation_state}>"
        )
