"""
Pytest fixtures for the e-invoice test suite.

Provides:
- Structured logging configuration and log capture
- In-memory SQLite session factories with every model registered
- Deterministic clocks
- A scriptable fake of the validation service client

Database tests use a single shared in-memory SQLite connection (StaticPool)
so that background scheduler threads see the same tables as the test.
"""

import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Any, Callable
from uuid import UUID, uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import einvoice_consolidation.models  # noqa: F401  (registers tables)
import einvoice_kernel.models  # noqa: F401
from einvoice_consolidation.domain.types import ConsolidationTaskStatus
from einvoice_consolidation.models.consolidation import (
    ConsolidationTaskModel,
    TenantSettingsModel,
)
from einvoice_kernel.db.base import Base
from einvoice_kernel.domain.clock import DeterministicClock
from einvoice_kernel.exceptions import ValidationApiError
from einvoice_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from einvoice_kernel.models.document import BusinessStatus, Document
from einvoice_submission.domain.types import (
    DocumentDetail,
    SubmissionAck,
    SubmissionDocument,
    SubmissionStatusReport,
)

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture einvoice logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, tracker):
            tracker.handle_initial_response(ack)
            logs = captured_logs()
            assert any(r["message"] == "submission_acknowledged" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("einvoice")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Identity and clock fixtures
# =============================================================================


@pytest.fixture
def test_actor_id() -> UUID:
    """Provide a consistent test actor ID."""
    return TEST_ACTOR_ID


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock()


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def make_document(session_factory) -> Callable[..., Document]:
    """Insert a Document row and return it (detached)."""

    def _make(
        document_number: str,
        issued_on: date,
        tenant_id: str = "tenant-a",
        total_excluding_tax: str = "100.00",
        tax_amount: str = "8.00",
        rounding: str = "0.00",
        total_payable: str | None = None,
        **fields: Any,
    ) -> Document:
        excl = Decimal(total_excluding_tax)
        tax = Decimal(tax_amount)
        rnd = Decimal(rounding)
        payable = Decimal(total_payable) if total_payable else excl + tax + rnd
        doc = Document(
            tenant_id=tenant_id,
            document_number=document_number,
            issued_on=issued_on,
            status=fields.pop("status", BusinessStatus.ACTIVE.value),
            total_excluding_tax=excl,
            tax_amount=tax,
            rounding=rnd,
            total_payable=payable,
            created_by_id=TEST_ACTOR_ID,
            **fields,
        )
        with session_factory() as session:
            session.add(doc)
            session.commit()
            session.refresh(doc)
            session.expunge(doc)
        return doc

    return _make


@pytest.fixture
def make_task(session_factory) -> Callable[..., ConsolidationTaskModel]:
    """Insert a consolidation task row."""

    def _make(
        year: int,
        month: int,
        next_attempt: date | None,
        tenant_id: str = "tenant-a",
        status: ConsolidationTaskStatus = ConsolidationTaskStatus.PENDING,
        attempt_count: int = 0,
    ) -> ConsolidationTaskModel:
        row = ConsolidationTaskModel(
            tenant_id=tenant_id,
            year=year,
            month=month,
            status=status.value,
            attempt_count=attempt_count,
            next_attempt=next_attempt,
            created_by_id=TEST_ACTOR_ID,
        )
        with session_factory() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            session.expunge(row)
        return row

    return _make


@pytest.fixture
def enable_tenant(session_factory) -> Callable[[str], None]:
    def _enable(tenant_id: str = "tenant-a", enabled: bool = True) -> None:
        with session_factory() as session:
            session.add(
                TenantSettingsModel(
                    tenant_id=tenant_id,
                    auto_consolidation_enabled=enabled,
                    created_by_id=TEST_ACTOR_ID,
                )
            )
            session.commit()

    return _enable


# =============================================================================
# Fake validation service
# =============================================================================


class FakeValidationClient:
    """Scriptable stand-in for ``ValidationApiClient``.

    ``reports`` is consumed one entry per status call; the last entry repeats
    once the script runs out.  An exception instance in ``reports`` or
    ``details`` is raised instead of returned.
    """

    def __init__(
        self,
        ack: SubmissionAck | None = None,
        reports: list[SubmissionStatusReport | Exception] | None = None,
        details: dict[str, DocumentDetail | Exception] | None = None,
        submit_error: Exception | None = None,
        state_error: Exception | None = None,
    ):
        self.ack = ack or SubmissionAck(submission_id="SUB-1")
        self.reports = list(reports or [])
        self.details = dict(details or {})
        self.submit_error = submit_error
        self.state_error = state_error
        self.submitted: list[list[SubmissionDocument]] = []
        self.status_calls: list[str] = []
        self.detail_calls: list[str] = []
        self.state_changes: list[tuple[str, str, str]] = []

    def submit(self, documents):
        self.submitted.append(list(documents))
        if self.submit_error is not None:
            raise self.submit_error
        return self.ack

    def get_submission_status(self, submission_id):
        self.status_calls.append(submission_id)
        if not self.reports:
            raise ValidationApiError("no status scripted", status_code=404)
        index = min(len(self.status_calls), len(self.reports)) - 1
        item = self.reports[index]
        if isinstance(item, Exception):
            raise item
        return item

    def get_document_details(self, document_id):
        self.detail_calls.append(document_id)
        item = self.details.get(document_id)
        if item is None:
            raise ValidationApiError("document not found", status_code=404)
        if isinstance(item, Exception):
            raise item
        return item

    def set_document_state(self, document_id, state, reason):
        self.state_changes.append((document_id, state, reason))
        if self.state_error is not None:
            raise self.state_error


@pytest.fixture
def make_client() -> Callable[..., FakeValidationClient]:
    """Build a FakeValidationClient: ``make_client(ack=..., reports=[...])``."""
    return FakeValidationClient


@pytest.fixture
def feb_first_clock() -> DeterministicClock:
    """10:00 local time (Asia/Kuala_Lumpur) on 2024-02-01."""
    return DeterministicClock(datetime(2024, 2, 1, 2, 0, tzinfo=timezone.utc))
