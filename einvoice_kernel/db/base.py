"""
Module: einvoice_kernel.db.base
Responsibility: Declarative base for the e-invoice tables.  Every row gets a
    uuid4 primary key; ``TrackedBase`` adds audit columns recording when a
    row changed and which actor (scheduler run, CLI user) changed it.
Architecture position: Kernel > DB.  Imported by the document model and
    the consolidation models; imports nothing from the rest of the system.

Invariants enforced:
    - Monetary amounts are Decimal mapped to Numeric(38, 9), never float.
    - Timestamps are timezone-aware columns.
    - Constraint names follow one convention so migrations are stable
      across PostgreSQL and SQLite.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import DateTime, MetaData, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class UUIDString(TypeDecorator):
    """UUID stored as its 36-character string form.

    Accepts a ``UUID`` or its string form on write; always returns ``UUID``.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(value if isinstance(value, UUID) else UUID(str(value)))

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        UUID: UUIDString(),
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Abstract base with audit columns.

    Guarantees:
        - created_at is set by the database on INSERT.
        - updated_at is refreshed on every ORM UPDATE.
        - created_by_id is required; updated_by_id is set by whichever
          service last changed the row.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False,
    )
    created_by_id: Mapped[UUID] = mapped_column(nullable=False)
    updated_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
