"""
Tests for einvoice_consolidation.services.scheduler -- ConsolidationScheduler.

Validates settings, next-month planning, due-task selection, claim, expiry,
retry and failure, eligibility, numbering and the start/stop lifecycle.

Uses in-memory SQLite with real ORM models and the fake validation client.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from einvoice_config.schema import ConsolidationPolicy, PollingPolicy
from einvoice_consolidation.domain.types import (
    ConsolidationTaskStatus,
    TaskOutcomeKind,
)
from einvoice_consolidation.models.consolidation import ConsolidationTaskModel
from einvoice_consolidation.services.scheduler import (
    NO_ELIGIBLE_ERROR,
    WINDOW_EXPIRED_ERROR,
    ConsolidationScheduler,
)
from einvoice_kernel.domain.clock import DeterministicClock
from einvoice_kernel.exceptions import ValidationApiError
from einvoice_kernel.models.document import BusinessStatus, Document, ValidationState
from einvoice_submission.domain.types import (
    AcceptedDocument,
    DocumentSummary,
    OverallStatus,
    RejectedDocument,
    ServiceError,
    SubmissionAck,
    SubmissionStatusReport,
)

TENANT = "tenant-a"
FAST_POLLING = PollingPolicy(
    max_attempts=3, interval_seconds=1.0, initial_delay_seconds=0.0,
)


def _clock_on(day: date) -> DeterministicClock:
    # 10:00 in Kuala Lumpur
    return DeterministicClock(datetime(day.year, day.month, day.day, 2, 0, tzinfo=timezone.utc))


def _ack(number: str = "CON-202401-AUTO", long_id: str | None = None) -> SubmissionAck:
    return SubmissionAck(
        submission_id="SUB-CON",
        accepted=(
            AcceptedDocument(internal_id=number, external_id="U-CON", long_id=long_id),
        ),
    )


def _report(
    overall: OverallStatus,
    status: str,
    number: str = "CON-202401-AUTO",
    long_id: str | None = None,
) -> SubmissionStatusReport:
    return SubmissionStatusReport(
        overall_status=overall,
        document_summary=(
            DocumentSummary(
                internal_id=number,
                external_id="U-CON",
                status=status,
                long_id=long_id,
                date_time_validated="2024-02-01T02:00:05Z" if long_id else None,
            ),
        ),
    )


VALID_REPORT = _report(OverallStatus.VALID, "Valid", long_id="LONG-CON")


@pytest.fixture
def scheduler_for(session_factory, feb_first_clock, test_actor_id):
    def _make(client, clock=None, **kwargs) -> ConsolidationScheduler:
        return ConsolidationScheduler(
            session_factory,
            lambda tenant_id: client,
            polling=FAST_POLLING,
            clock=clock or feb_first_clock,
            actor_id=test_actor_id,
            **kwargs,
        )

    return _make


@pytest.fixture
def january_documents(make_document):
    """Two eligible January documents plus several that must be left alone."""
    make_document("INV-1", date(2024, 1, 10))
    make_document(
        "INV-2", date(2024, 1, 20),
        total_excluding_tax="50.00", tax_amount="4.00",
        validation_state=ValidationState.INVALID.value,
    )
    make_document("INV-3", date(2024, 1, 25), validation_state=ValidationState.VALID.value)
    make_document("INV-4", date(2024, 1, 26), validation_state=ValidationState.PENDING.value)
    make_document("INV-5", date(2024, 1, 27), status=BusinessStatus.CANCELLED.value)
    make_document("INV-6", date(2024, 2, 1))
    make_document("INV-7", date(2024, 1, 12), tenant_id="tenant-b")


def _documents(session_factory, tenant_id: str = TENANT) -> dict[str, Document]:
    with session_factory() as session:
        rows = session.scalars(
            select(Document).where(Document.tenant_id == tenant_id)
        ).all()
        return {doc.document_number: doc for doc in rows}


class TestSettings:
    def test_disabled_by_default(self, scheduler_for, make_client):
        assert not scheduler_for(make_client()).is_auto_consolidation_enabled(TENANT)

    def test_enable_then_disable(self, scheduler_for, make_client):
        scheduler = scheduler_for(make_client())
        settings = scheduler.set_auto_consolidation(TENANT, True, actor="ops@example.test")
        assert settings.auto_consolidation_enabled
        assert settings.updated_by == "ops@example.test"
        assert scheduler.is_auto_consolidation_enabled(TENANT)

        scheduler.set_auto_consolidation(TENANT, False)
        assert not scheduler.is_auto_consolidation_enabled(TENANT)


class TestScheduleNextMonth:
    def test_creates_task_for_enabled_tenants(
        self, scheduler_for, make_client, enable_tenant,
    ):
        enable_tenant(TENANT)
        enable_tenant("tenant-off", enabled=False)
        scheduler = scheduler_for(make_client())

        created = scheduler.schedule_next_month()

        assert [(t.tenant_id, t.year, t.month) for t in created] == [(TENANT, 2024, 3)]
        task = scheduler.get_task_status(TENANT, 2024, 3)
        assert task.status is ConsolidationTaskStatus.PENDING
        assert task.next_attempt == date(2024, 4, 1)
        assert task.attempt_count == 0
        assert scheduler.get_task_status("tenant-off", 2024, 3) is None

    def test_idempotent(self, scheduler_for, make_client, enable_tenant):
        enable_tenant(TENANT)
        scheduler = scheduler_for(make_client())
        scheduler.schedule_next_month()
        assert scheduler.schedule_next_month() == []

    def test_december_rolls_into_next_year(
        self, scheduler_for, make_client, enable_tenant,
    ):
        enable_tenant(TENANT)
        scheduler = scheduler_for(make_client(), clock=_clock_on(date(2024, 11, 15)))
        (task,) = scheduler.schedule_next_month()
        assert (task.year, task.month) == (2024, 12)
        assert task.next_attempt == date(2025, 1, 1)


class TestRunDueConsolidations:
    def test_completes_task(
        self, scheduler_for, make_client, enable_tenant, make_task,
        january_documents, session_factory,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(ack=_ack(), reports=[VALID_REPORT])
        scheduler = scheduler_for(client)

        summary = scheduler.run_due_consolidations()

        assert summary.run_date == date(2024, 2, 1)
        (outcome,) = summary.outcomes
        assert outcome.outcome is TaskOutcomeKind.COMPLETED
        assert outcome.consolidated_document_id == "CON-202401-AUTO"

        task = scheduler.get_task_status(TENANT, 2024, 1)
        assert task.status is ConsolidationTaskStatus.COMPLETED
        assert task.attempt_count == 1
        assert task.consolidated_document_id == "CON-202401-AUTO"

        docs = _documents(session_factory)
        consolidated = docs["CON-202401-AUTO"]
        assert consolidated.is_consolidated
        assert consolidated.consolidated_documents == ["INV-1", "INV-2"]
        assert consolidated.validation_state == ValidationState.VALID.value
        assert consolidated.long_id == "LONG-CON"
        assert consolidated.external_id == "U-CON"
        assert consolidated.submission_id == "SUB-CON"
        assert consolidated.validated_at.replace(tzinfo=None) == datetime(2024, 2, 1, 2, 0, 5)
        assert consolidated.total_payable == Decimal("162.00")
        assert consolidated.issued_on == date(2024, 2, 1)

        assert docs["INV-1"].consolidated_into == "CON-202401-AUTO"
        assert docs["INV-2"].consolidated_into == "CON-202401-AUTO"
        for untouched in ("INV-3", "INV-4", "INV-5", "INV-6"):
            assert docs[untouched].consolidated_into is None
        assert _documents(session_factory, "tenant-b")["INV-7"].consolidated_into is None

        (submitted,) = client.submitted[0]
        assert submitted.code_number == "CON-202401-AUTO"

    def test_second_run_selects_nothing(
        self, scheduler_for, make_client, enable_tenant, make_task,
        january_documents, session_factory,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(ack=_ack(), reports=[VALID_REPORT])
        scheduler = scheduler_for(client)

        scheduler.run_due_consolidations()
        again = scheduler.run_due_consolidations()

        assert again.selected == 0
        assert len(client.submitted) == 1
        consolidated = [d for d in _documents(session_factory).values() if d.is_consolidated]
        assert len(consolidated) == 1

    def test_still_pending_when_service_is_slow(
        self, scheduler_for, make_client, enable_tenant, make_task,
        january_documents, session_factory,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(
            ack=_ack(), reports=[_report(OverallStatus.IN_PROGRESS, "Submitted")],
        )

        summary = scheduler_for(client).run_due_consolidations()

        assert summary.completed == 1
        assert len(client.status_calls) == FAST_POLLING.max_attempts
        consolidated = _documents(session_factory)["CON-202401-AUTO"]
        assert consolidated.validation_state == ValidationState.PENDING.value
        assert consolidated.validated_at is None

    def test_future_task_not_selected(
        self, scheduler_for, make_client, enable_tenant, make_task,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 2))
        assert scheduler_for(make_client()).run_due_consolidations().selected == 0

    def test_disabled_tenant_not_selected(
        self, scheduler_for, make_client, enable_tenant, make_task,
    ):
        enable_tenant(TENANT, enabled=False)
        make_task(2024, 1, date(2024, 2, 1))
        assert scheduler_for(make_client()).run_due_consolidations().selected == 0

    def test_tenant_filter(
        self, scheduler_for, make_client, enable_tenant, make_task, january_documents,
    ):
        enable_tenant(TENANT)
        enable_tenant("tenant-b")
        make_task(2024, 1, date(2024, 2, 1))
        make_task(2024, 1, date(2024, 2, 1), tenant_id="tenant-b")
        client = make_client(ack=_ack(), reports=[VALID_REPORT])

        summary = scheduler_for(client).run_due_consolidations(tenant_ids=["tenant-b"])

        assert [o.tenant_id for o in summary.outcomes] == ["tenant-b"]

    def test_missed_first_day_runs_as_catch_up(
        self, scheduler_for, make_client, enable_tenant, make_task, january_documents,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(ack=_ack(), reports=[VALID_REPORT])

        summary = scheduler_for(client, clock=_clock_on(date(2024, 2, 3))).run_due_consolidations()

        assert summary.completed == 1

    def test_skipped_without_eligible_documents(
        self, scheduler_for, make_client, enable_tenant, make_task,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client()
        scheduler = scheduler_for(client)

        (outcome,) = scheduler.run_due_consolidations().outcomes

        assert outcome.outcome is TaskOutcomeKind.SKIPPED
        task = scheduler.get_task_status(TENANT, 2024, 1)
        assert task.status is ConsolidationTaskStatus.SKIPPED
        assert task.error == NO_ELIGIBLE_ERROR
        assert client.submitted == []

    def test_logs_carry_task_context(
        self, scheduler_for, make_client, enable_tenant, make_task,
        january_documents, captured_logs,
    ):
        enable_tenant(TENANT)
        row = make_task(2024, 1, date(2024, 2, 1))
        scheduler_for(make_client(ack=_ack(), reports=[VALID_REPORT])).run_due_consolidations()

        completed = next(
            r for r in captured_logs() if r["message"] == "consolidation_task_completed"
        )
        assert completed["tenant_id"] == TENANT
        assert completed["task_id"] == str(row.id)
        assert completed["document_number"] == "CON-202401-AUTO"


class TestExpiry:
    def test_expired_after_retry_window(
        self, scheduler_for, make_client, enable_tenant, make_task, january_documents,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(ack=_ack(), reports=[VALID_REPORT])
        scheduler = scheduler_for(client, clock=_clock_on(date(2024, 2, 9)))

        (outcome,) = scheduler.run_due_consolidations().outcomes

        assert outcome.outcome is TaskOutcomeKind.EXPIRED
        task = scheduler.get_task_status(TENANT, 2024, 1)
        assert task.status is ConsolidationTaskStatus.EXPIRED
        assert task.error == WINDOW_EXPIRED_ERROR
        assert client.submitted == []

    def test_last_day_of_window_still_runs(
        self, scheduler_for, make_client, enable_tenant, make_task, january_documents,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(ack=_ack(), reports=[VALID_REPORT])
        scheduler = scheduler_for(client, clock=_clock_on(date(2024, 2, 7)))
        assert scheduler.run_due_consolidations().completed == 1

    def test_retry_days_configurable(
        self, scheduler_for, make_client, enable_tenant, make_task,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        scheduler = scheduler_for(
            make_client(),
            clock=_clock_on(date(2024, 2, 4)),
            policy=ConsolidationPolicy(retry_days=3),
        )
        (outcome,) = scheduler.run_due_consolidations().outcomes
        assert outcome.outcome is TaskOutcomeKind.EXPIRED


class TestRetry:
    def test_submit_error_schedules_retry_then_succeeds(
        self, scheduler_for, make_client, enable_tenant, make_task,
        january_documents, session_factory,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(
            ack=_ack(),
            reports=[VALID_REPORT],
            submit_error=ValidationApiError("Service unavailable", status_code=503),
        )
        clock = _clock_on(date(2024, 2, 1))
        scheduler = scheduler_for(client, clock=clock)

        (outcome,) = scheduler.run_due_consolidations().outcomes

        assert outcome.outcome is TaskOutcomeKind.RETRY_SCHEDULED
        task = scheduler.get_task_status(TENANT, 2024, 1)
        assert task.status is ConsolidationTaskStatus.PENDING
        assert task.next_attempt == date(2024, 2, 2)
        assert task.attempt_count == 1
        assert "Service unavailable" in task.error
        assert "CON-202401-AUTO" not in _documents(session_factory)

        client.submit_error = None
        clock.advance_days(1)
        (outcome,) = scheduler.run_due_consolidations().outcomes

        assert outcome.outcome is TaskOutcomeKind.COMPLETED
        task = scheduler.get_task_status(TENANT, 2024, 1)
        assert task.attempt_count == 2
        assert task.error is None

    def test_invalid_result_schedules_retry(
        self, scheduler_for, make_client, enable_tenant, make_task,
        january_documents, session_factory,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(
            ack=_ack(), reports=[_report(OverallStatus.INVALID, "Invalid")],
        )

        scheduler = scheduler_for(client)

        (outcome,) = scheduler.run_due_consolidations().outcomes

        assert outcome.outcome is TaskOutcomeKind.RETRY_SCHEDULED
        assert "Invalid" in outcome.error
        assert scheduler.get_task_status(TENANT, 2024, 1).consolidated_document_id is None

        # The accepted document keeps its number and service ids, cancelled.
        docs = _documents(session_factory)
        abandoned = docs["CON-202401-AUTO"]
        assert abandoned.validation_state == ValidationState.CANCELLED.value
        assert abandoned.status == BusinessStatus.CANCELLED.value
        assert abandoned.external_id == "U-CON"
        assert abandoned.submission_id == "SUB-CON"
        assert [change[:2] for change in client.state_changes] == [("U-CON", "cancelled")]
        assert docs["INV-1"].consolidated_into is None
        eligible = scheduler.list_eligible_documents(TENANT, 2024, 1)
        assert [s.document_number for s in eligible] == ["INV-1", "INV-2"]

    def test_rejected_at_intake_schedules_retry(
        self, scheduler_for, make_client, enable_tenant, make_task, january_documents,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(
            ack=SubmissionAck(
                submission_id="SUB-CON",
                rejected=(
                    RejectedDocument(
                        "CON-202401-AUTO", ServiceError(message="Missing buyer TIN"),
                    ),
                ),
            )
        )

        (outcome,) = scheduler_for(client).run_due_consolidations().outcomes

        assert outcome.outcome is TaskOutcomeKind.RETRY_SCHEDULED
        assert "Missing buyer TIN" in outcome.error
        assert client.status_calls == []

    def test_failure_on_last_day_is_final(
        self, scheduler_for, make_client, enable_tenant, make_task, january_documents,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(submit_error=ValidationApiError("boom", status_code=500))
        scheduler = scheduler_for(client, clock=_clock_on(date(2024, 2, 7)))

        (outcome,) = scheduler.run_due_consolidations().outcomes

        assert outcome.outcome is TaskOutcomeKind.FAILED
        task = scheduler.get_task_status(TENANT, 2024, 1)
        assert task.status is ConsolidationTaskStatus.FAILED
        assert task.error == "boom"

    def test_unexpected_error_is_contained(
        self, session_factory, enable_tenant, make_task, january_documents,
        feb_first_clock, captured_logs,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))

        def broken_factory(tenant_id):
            raise RuntimeError("no credentials loaded")

        scheduler = ConsolidationScheduler(
            session_factory, broken_factory, polling=FAST_POLLING, clock=feb_first_clock,
        )
        (outcome,) = scheduler.run_due_consolidations().outcomes

        assert outcome.outcome is TaskOutcomeKind.RETRY_SCHEDULED
        failed = next(
            r for r in captured_logs() if r["message"] == "consolidation_attempt_failed"
        )
        assert failed["exc_type"] == "RuntimeError"


class TestClaim:
    def test_task_claimed_elsewhere_is_not_run(
        self, scheduler_for, make_client, enable_tenant, make_task, january_documents,
        feb_first_clock,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(ack=_ack(), reports=[VALID_REPORT])
        scheduler = scheduler_for(client)
        other = scheduler_for(make_client())

        task = scheduler.get_task_status(TENANT, 2024, 1)
        assert other._claim(task, feb_first_clock.now())

        outcome = scheduler._run_task(task, date(2024, 2, 1))

        assert outcome.outcome is TaskOutcomeKind.NOT_CLAIMED
        assert client.submitted == []
        assert scheduler.get_task_status(TENANT, 2024, 1).attempt_count == 1


class TestEligibility:
    def test_documents_in_active_consolidation_excluded_and_number_increments(
        self, scheduler_for, make_client, enable_tenant, make_task, make_document,
        session_factory,
    ):
        enable_tenant(TENANT)
        make_document("INV-1", date(2024, 1, 10))
        make_document("INV-2", date(2024, 1, 11))
        make_document(
            "CON-202401-AUTO", date(2024, 2, 1),
            is_consolidated=True,
            consolidated_documents=["INV-1"],
            validation_state=ValidationState.VALID.value,
        )
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(
            ack=_ack("CON-202401-1"),
            reports=[_report(OverallStatus.VALID, "Valid", "CON-202401-1", long_id="L")],
        )

        (outcome,) = scheduler_for(client).run_due_consolidations().outcomes

        assert outcome.consolidated_document_id == "CON-202401-1"
        docs = _documents(session_factory)
        assert docs["CON-202401-1"].consolidated_documents == ["INV-2"]
        assert docs["INV-1"].consolidated_into is None

    def test_cancelled_consolidation_releases_documents(
        self, scheduler_for, make_client, enable_tenant, make_task, make_document,
        session_factory,
    ):
        enable_tenant(TENANT)
        make_document("INV-1", date(2024, 1, 10))
        make_document(
            "CON-202401-AUTO", date(2024, 2, 1),
            status=BusinessStatus.CANCELLED.value,
            is_consolidated=True,
            consolidated_documents=["INV-1"],
            validation_state=ValidationState.CANCELLED.value,
        )
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(
            ack=_ack("CON-202401-1"),
            reports=[_report(OverallStatus.VALID, "Valid", "CON-202401-1", long_id="L")],
        )

        scheduler_for(client).run_due_consolidations()

        assert _documents(session_factory)["CON-202401-1"].consolidated_documents == ["INV-1"]


class TestReservation:
    def test_number_and_documents_reserved_before_submit(
        self, scheduler_for, make_client, enable_tenant, make_task,
        january_documents, session_factory,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(ack=_ack(), reports=[VALID_REPORT])
        scheduler = scheduler_for(client)
        seen = {}
        send = client.submit

        def submit(documents):
            seen["row"] = _documents(session_factory).get("CON-202401-AUTO")
            seen["eligible"] = scheduler.list_eligible_documents(TENANT, 2024, 1)
            return send(documents)

        client.submit = submit

        (outcome,) = scheduler.run_due_consolidations().outcomes

        reserved = seen["row"]
        assert reserved is not None
        assert reserved.is_consolidated
        assert reserved.validation_state == ValidationState.PENDING.value
        assert reserved.external_id is None
        assert reserved.consolidated_documents == ["INV-1", "INV-2"]
        assert seen["eligible"] == []

        assert outcome.outcome is TaskOutcomeKind.COMPLETED
        completed = _documents(session_factory)["CON-202401-AUTO"]
        assert completed.id == reserved.id
        assert completed.external_id == "U-CON"

    def test_number_taken_during_submit_cannot_duplicate(
        self, scheduler_for, make_client, enable_tenant, make_task,
        january_documents, session_factory, test_actor_id,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(ack=_ack(), reports=[VALID_REPORT])
        send = client.submit
        collisions = []

        def submit(documents):
            with session_factory() as session:
                session.add(
                    Document(
                        tenant_id=TENANT,
                        document_number=documents[0].code_number,
                        issued_on=date(2024, 2, 1),
                        created_by_id=test_actor_id,
                    )
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    collisions.append(documents[0].code_number)
            return send(documents)

        client.submit = submit

        (outcome,) = scheduler_for(client).run_due_consolidations().outcomes

        assert collisions == ["CON-202401-AUTO"]
        assert outcome.outcome is TaskOutcomeKind.COMPLETED
        assert len(client.submitted) == 1
        assert _documents(session_factory)["CON-202401-AUTO"].external_id == "U-CON"

    def test_lost_reservation_after_acceptance_cancels_remote_document(
        self, scheduler_for, make_client, enable_tenant, make_task,
        january_documents, session_factory, captured_logs,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(ack=_ack(), reports=[VALID_REPORT])
        scheduler = scheduler_for(client)
        send = client.submit

        def submit(documents):
            with session_factory() as session:
                session.execute(
                    delete(Document).where(Document.document_number == "CON-202401-AUTO")
                )
                session.commit()
            return send(documents)

        client.submit = submit

        (outcome,) = scheduler.run_due_consolidations().outcomes

        assert outcome.outcome is TaskOutcomeKind.RETRY_SCHEDULED
        assert "no longer exists" in outcome.error
        assert [change[:2] for change in client.state_changes] == [("U-CON", "cancelled")]
        assert _documents(session_factory)["INV-1"].consolidated_into is None
        messages = [r["message"] for r in captured_logs()]
        assert "consolidation_reservation_missing" in messages
        assert "consolidation_accepted_document_abandoned" in messages

    def test_rejected_submission_frees_the_number(
        self, scheduler_for, make_client, enable_tenant, make_task,
        january_documents, session_factory,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(submit_error=ValidationApiError("down", status_code=503))

        scheduler_for(client).run_due_consolidations()

        assert "CON-202401-AUTO" not in _documents(session_factory)
        assert client.state_changes == []


class TestStaleClaims:
    def test_crashed_failure_recording_is_recovered_later(
        self, scheduler_for, make_client, enable_tenant, make_task,
        january_documents, captured_logs,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        client = make_client(
            ack=_ack(),
            reports=[VALID_REPORT],
            submit_error=ValidationApiError("down", status_code=503),
        )
        clock = _clock_on(date(2024, 2, 1))
        scheduler = scheduler_for(client, clock=clock)

        def broken_record_failure(task, today, exc):
            raise RuntimeError("database went away")

        scheduler._record_failure = broken_record_failure
        (outcome,) = scheduler.run_due_consolidations().outcomes
        del scheduler._record_failure

        assert outcome.outcome is TaskOutcomeKind.FAILED
        task = scheduler.get_task_status(TENANT, 2024, 1)
        assert task.status is ConsolidationTaskStatus.PROCESSING

        # A fresh claim is left alone.
        clock.advance(60)
        assert scheduler.run_due_consolidations().selected == 0
        assert scheduler.get_task_status(TENANT, 2024, 1).status is (
            ConsolidationTaskStatus.PROCESSING
        )

        client.submit_error = None
        clock.advance(121 * 60)
        (outcome,) = scheduler.run_due_consolidations().outcomes

        assert outcome.outcome is TaskOutcomeKind.COMPLETED
        task = scheduler.get_task_status(TENANT, 2024, 1)
        assert task.status is ConsolidationTaskStatus.COMPLETED
        assert task.attempt_count == 2
        assert any(r["message"] == "consolidation_claim_recovered" for r in captured_logs())

    def test_recovery_drops_unsubmitted_reservation(
        self, scheduler_for, make_client, enable_tenant, make_task, make_document,
        session_factory,
    ):
        enable_tenant(TENANT)
        make_document("INV-1", date(2024, 1, 10))
        make_document(
            "CON-202401-AUTO", date(2024, 2, 1),
            is_consolidated=True,
            consolidated_documents=["INV-1"],
            validation_state=ValidationState.PENDING.value,
        )
        task = make_task(
            2024, 1, date(2024, 2, 1),
            status=ConsolidationTaskStatus.PROCESSING, attempt_count=1,
        )
        with session_factory() as session:
            session.execute(
                update(ConsolidationTaskModel)
                .where(ConsolidationTaskModel.id == task.id)
                .values(
                    last_attempt=datetime(2024, 2, 1, 2, 0, tzinfo=timezone.utc),
                    consolidated_document_id="CON-202401-AUTO",
                )
            )
            session.commit()

        client = make_client(ack=_ack(), reports=[VALID_REPORT])
        scheduler = scheduler_for(client, clock=_clock_on(date(2024, 2, 2)))

        (outcome,) = scheduler.run_due_consolidations().outcomes

        assert outcome.outcome is TaskOutcomeKind.COMPLETED
        assert outcome.consolidated_document_id == "CON-202401-AUTO"
        docs = _documents(session_factory)
        assert docs["CON-202401-AUTO"].external_id == "U-CON"
        assert docs["INV-1"].consolidated_into == "CON-202401-AUTO"

    def test_recovered_task_past_window_expires(
        self, scheduler_for, make_client, enable_tenant, make_task,
    ):
        enable_tenant(TENANT)
        make_task(
            2024, 1, date(2024, 2, 7),
            status=ConsolidationTaskStatus.PROCESSING, attempt_count=3,
        )
        scheduler = scheduler_for(make_client(), clock=_clock_on(date(2024, 2, 9)))

        (outcome,) = scheduler.run_due_consolidations().outcomes

        assert outcome.outcome is TaskOutcomeKind.EXPIRED
        assert scheduler.get_task_status(TENANT, 2024, 1).status is (
            ConsolidationTaskStatus.EXPIRED
        )


class TestLifecycle:
    def test_tick_schedules_and_runs(
        self, scheduler_for, make_client, enable_tenant, make_task, january_documents,
    ):
        enable_tenant(TENANT)
        make_task(2024, 1, date(2024, 2, 1))
        scheduler = scheduler_for(make_client(ack=_ack(), reports=[VALID_REPORT]))

        summary = scheduler.tick()

        assert summary.completed == 1
        assert scheduler.get_task_status(TENANT, 2024, 3) is not None

    def test_start_stop(self, scheduler_for, make_client):
        scheduler = scheduler_for(make_client(), tick_interval_seconds=3600)

        scheduler.start()
        assert scheduler.is_running
        scheduler.stop(timeout=5)

        assert not scheduler.is_running

    def test_today_uses_policy_timezone(self, scheduler_for, make_client):
        # 20:00 UTC on Jan 31 is Feb 1 in Kuala Lumpur
        clock = DeterministicClock(datetime(2024, 1, 31, 20, 0, tzinfo=timezone.utc))
        assert scheduler_for(make_client(), clock=clock).today() == date(2024, 2, 1)
        utc_scheduler = scheduler_for(
            make_client(), clock=clock, policy=ConsolidationPolicy(timezone="UTC"),
        )
        assert utc_scheduler.today() == date(2024, 1, 31)
