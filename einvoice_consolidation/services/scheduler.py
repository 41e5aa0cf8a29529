"""
ConsolidationScheduler -- monthly consolidation of unvalidated documents.

Contract:
    ``schedule_next_month()`` creates next month's pending task for every
    tenant with auto-consolidation enabled.
    ``run_due_consolidations()`` executes due tasks: expire, claim, find
    eligible documents, build and submit one consolidated document, poll
    it, persist the outcome or schedule a retry.
    ``tick()`` runs both; ``start()`` / ``stop()`` drive ``tick()`` from a
    background thread.
    ``list_eligible_documents()``, ``submit_manual_consolidation()`` and
    ``consolidation_history()`` serve operators outside the monthly cycle.

Architecture: einvoice_consolidation/services.  Uses the pure calendar and
    builder from einvoice_consolidation.domain, the kernel Document model,
    and the ValidationApiClient protocol from einvoice_submission.  Does
    NOT use the submission PollingEngine; status is polled with a plain
    bounded loop and no "assume valid" coercion.

Invariants enforced:
    - All timestamps and "today" come from the injected Clock, in the
      configured timezone.
    - A task is claimed with a conditional UPDATE (pending -> processing)
      committed before any work.  A claim that matches no row means another
      process owns the task.
    - Completion, retry and failure each commit in their own transaction;
      network calls never run inside an open transaction.
    - One task's failure never escapes the run or affects its siblings.
    - The consolidated row is inserted as ``pending`` in the same
      transaction that picks its number, before anything is sent.  If the
      attempt fails after the service accepted it, the row is kept as
      ``cancelled`` with the service ids and the remote document is
      cancelled best effort.
    - A claim older than ``stale_claim_minutes`` is handed back to
      ``pending`` at the start of the next run.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Iterator, NamedTuple, Sequence
from uuid import UUID, uuid4

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from einvoice_config.schema import ConsolidationPolicy, PollingPolicy
from einvoice_consolidation.domain.builder import (
    DocumentRenderer,
    build_draft,
    number_prefix,
    render_json,
)
from einvoice_consolidation.domain.types import (
    ConsolidatedDraft,
    ConsolidatedTotals,
    ConsolidationHistoryEntry,
    ConsolidationRunSummary,
    ConsolidationTask,
    ConsolidationTaskStatus,
    ManualConsolidationResult,
    SourceDocument,
    TaskOutcome,
    TaskOutcomeKind,
    TenantSettings,
)
from einvoice_consolidation.domain.window import (
    first_attempt_date,
    is_window_expired,
    month_end,
    month_start,
    next_period,
    next_retry_date,
)
from einvoice_consolidation.models.consolidation import (
    ConsolidationTaskModel,
    TenantSettingsModel,
)
from einvoice_consolidation.services.cancellation import cancel_remote_document
from einvoice_kernel.domain.clock import Clock, SystemClock
from einvoice_kernel.exceptions import (
    ConsolidationSubmissionError,
    NoEligibleDocumentsError,
    ValidationServiceError,
)
from einvoice_kernel.logging_config import LogContext, get_logger
from einvoice_kernel.models.document import BusinessStatus, Document, ValidationState
from einvoice_submission.client.base import ValidationApiClient
from einvoice_submission.client.codec import parse_timestamp
from einvoice_submission.domain.types import (
    AcceptedDocument,
    OverallStatus,
    ServiceDocumentStatus,
    SubmissionAck,
    SubmissionStatusReport,
)

logger = get_logger("consolidation.scheduler")

WINDOW_EXPIRED_ERROR = "Consolidation window expired"
NO_ELIGIBLE_ERROR = "No eligible documents found"
STALE_CLAIM_ERROR = "Claim abandoned by an interrupted run"
ABANDONED_REASON = "Consolidation attempt abandoned"

_PENDING = ConsolidationTaskStatus.PENDING.value
_PROCESSING = ConsolidationTaskStatus.PROCESSING.value


class ConsolidationScheduler:
    """Plans and executes monthly consolidation tasks.

    Non-goals:
        - NOT a distributed scheduler; concurrent triggers are made safe by
          the conditional claim, not by leader election.
        - Does NOT render the service's XML schema; a renderer is injected.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: Callable[[str], ValidationApiClient],
        policy: ConsolidationPolicy | None = None,
        polling: PollingPolicy | None = None,
        clock: Clock | None = None,
        renderer: DocumentRenderer | None = None,
        actor_id: UUID | None = None,
        tick_interval_seconds: float = 3600,
    ):
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._policy = policy or ConsolidationPolicy()
        self._polling = polling or PollingPolicy()
        self._clock = clock or SystemClock()
        self._renderer = renderer or render_json
        self._actor_id = actor_id or uuid4()
        self._tick_interval = tick_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def set_auto_consolidation(
        self, tenant_id: str, enabled: bool, actor: str | None = None,
    ) -> TenantSettings:
        with self._transaction() as session:
            row = session.execute(
                select(TenantSettingsModel).where(
                    TenantSettingsModel.tenant_id == tenant_id,
                )
            ).scalar_one_or_none()
            if row is None:
                row = TenantSettingsModel(
                    tenant_id=tenant_id,
                    created_by_id=self._actor_id,
                )
                session.add(row)
            else:
                row.updated_by_id = self._actor_id
            row.auto_consolidation_enabled = enabled
            row.updated_by = actor
            session.flush()
            settings = row.to_dto()

        logger.info(
            "auto_consolidation_updated",
            extra={"tenant_id": tenant_id, "enabled": enabled, "actor": actor},
        )
        return settings

    def is_auto_consolidation_enabled(self, tenant_id: str) -> bool:
        with self._transaction() as session:
            enabled = session.execute(
                select(TenantSettingsModel.auto_consolidation_enabled).where(
                    TenantSettingsModel.tenant_id == tenant_id,
                )
            ).scalar_one_or_none()
        return bool(enabled)

    def get_task_status(
        self, tenant_id: str, year: int, month: int,
    ) -> ConsolidationTask | None:
        with self._transaction() as session:
            row = session.execute(
                select(ConsolidationTaskModel).where(
                    ConsolidationTaskModel.tenant_id == tenant_id,
                    ConsolidationTaskModel.year == year,
                    ConsolidationTaskModel.month == month,
                )
            ).scalar_one_or_none()
            return row.to_dto() if row is not None else None

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def schedule_next_month(self) -> list[ConsolidationTask]:
        """Create next month's task for every enabled tenant lacking one."""
        today = self.today()
        year, month = next_period(today.year, today.month)
        next_attempt = first_attempt_date(year, month, self._policy.offset_days)
        created: list[ConsolidationTask] = []

        for tenant_id in self._enabled_tenants():
            try:
                with self._transaction() as session:
                    exists = session.execute(
                        select(ConsolidationTaskModel.id).where(
                            ConsolidationTaskModel.tenant_id == tenant_id,
                            ConsolidationTaskModel.year == year,
                            ConsolidationTaskModel.month == month,
                        )
                    ).first()
                    if exists is not None:
                        continue
                    row = ConsolidationTaskModel(
                        tenant_id=tenant_id,
                        year=year,
                        month=month,
                        status=_PENDING,
                        attempt_count=0,
                        next_attempt=next_attempt,
                        created_by_id=self._actor_id,
                    )
                    session.add(row)
                    session.flush()
                    created.append(row.to_dto())
            except IntegrityError:
                # Concurrent scheduler inserted the same period first.
                logger.info(
                    "consolidation_already_scheduled",
                    extra={"tenant_id": tenant_id, "year": year, "month": month},
                )
                continue

            logger.info(
                "consolidation_scheduled",
                extra={
                    "tenant_id": tenant_id,
                    "year": year,
                    "month": month,
                    "next_attempt": next_attempt,
                },
            )
        return created

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def run_due_consolidations(
        self, tenant_ids: Sequence[str] | None = None,
    ) -> ConsolidationRunSummary:
        """Execute every due task.  Never raises for a single task's failure."""
        today = self.today()
        self._recover_stale_claims(today)
        tasks = self._select_due(today, tenant_ids)
        logger.info(
            "consolidation_run_started",
            extra={"run_date": today, "due_tasks": len(tasks)},
        )

        outcomes: list[TaskOutcome] = []
        for task in tasks:
            if self._stop_event.is_set():
                break
            with LogContext.bind(tenant_id=task.tenant_id, task_id=task.task_id):
                try:
                    outcomes.append(self._run_task(task, today))
                except Exception as exc:
                    # The task may be left processing; _recover_stale_claims
                    # hands it back once the claim is old enough.
                    logger.exception(
                        "consolidation_task_crashed",
                        extra={"period": task.period_label},
                    )
                    outcomes.append(
                        _outcome(task, TaskOutcomeKind.FAILED, error=str(exc))
                    )

        summary = ConsolidationRunSummary(run_date=today, outcomes=tuple(outcomes))
        logger.info(
            "consolidation_run_finished",
            extra={
                "run_date": today,
                "selected": summary.selected,
                "completed": summary.completed,
                "expired": summary.count(TaskOutcomeKind.EXPIRED),
                "retries": summary.count(TaskOutcomeKind.RETRY_SCHEDULED),
            },
        )
        return summary

    def _run_task(self, task: ConsolidationTask, today: date) -> TaskOutcome:
        now = self._clock.now()

        if is_window_expired(task.year, task.month, today, self._policy.retry_days):
            if not self._transition(
                task, _PENDING,
                status=ConsolidationTaskStatus.EXPIRED.value,
                error=WINDOW_EXPIRED_ERROR,
                last_attempt=now,
            ):
                return _outcome(task, TaskOutcomeKind.NOT_CLAIMED)
            logger.warning(
                "consolidation_task_expired",
                extra={"period": task.period_label, "attempt_count": task.attempt_count},
            )
            return _outcome(task, TaskOutcomeKind.EXPIRED, error=WINDOW_EXPIRED_ERROR)

        if not self._claim(task, now):
            logger.info("consolidation_task_not_claimed", extra={"period": task.period_label})
            return _outcome(task, TaskOutcomeKind.NOT_CLAIMED)

        try:
            return self._consolidate(task, today)
        except Exception as exc:
            logger.warning(
                "consolidation_attempt_failed",
                extra={"period": task.period_label, "error": str(exc)},
                exc_info=not isinstance(
                    exc, (ConsolidationSubmissionError, ValidationServiceError)
                ),
            )
            return self._record_failure(task, today, exc)

    def _consolidate(self, task: ConsolidationTask, today: date) -> TaskOutcome:
        with self._transaction() as session:
            sources = self._eligible_sources(
                session, task.tenant_id, task.year, task.month,
            )
            if not sources:
                self._set_task(
                    session, task,
                    status=ConsolidationTaskStatus.SKIPPED.value,
                    error=NO_ELIGIBLE_ERROR,
                )
                skipped = True
            else:
                skipped = False
                draft = self._draft(
                    session, task.tenant_id, task.year, task.month, sources, today,
                )
                reservation_id = self._reserve(session, draft)
                self._set_task(
                    session, task, consolidated_document_id=draft.document_number,
                )

        if skipped:
            logger.info("consolidation_task_skipped", extra={"period": task.period_label})
            return _outcome(task, TaskOutcomeKind.SKIPPED, error=NO_ELIGIBLE_ERROR)

        self._submit_and_record(draft, reservation_id, task)

        logger.info(
            "consolidation_task_completed",
            extra={
                "period": task.period_label,
                "document_number": draft.document_number,
                "source_count": len(draft.sources),
                "total_payable": draft.totals.total_payable,
            },
        )
        return _outcome(
            task, TaskOutcomeKind.COMPLETED,
            consolidated_document_id=draft.document_number,
        )

    # -------------------------------------------------------------------------
    # Manual consolidation
    # -------------------------------------------------------------------------

    def list_eligible_documents(
        self, tenant_id: str, year: int, month: int,
    ) -> list[SourceDocument]:
        """Documents of the period that the next consolidation would bundle."""
        with self._transaction() as session:
            return self._eligible_sources(session, tenant_id, year, month)

    def submit_manual_consolidation(
        self,
        tenant_id: str,
        year: int,
        month: int,
        document_numbers: Sequence[str],
    ) -> ManualConsolidationResult:
        """
        Consolidate a caller-selected set of documents for one period.

        Requested documents that are not eligible for the period are left
        out and reported in ``skipped_numbers``.  Numbering, submission,
        polling and persistence follow the monthly task; no task row is
        read or changed, and auto-consolidation need not be enabled.

        Raises:
            NoEligibleDocumentsError: nothing requested is eligible.
            ConsolidationSubmissionError: rejected at intake or ``Invalid``.
            ValidationServiceError: the service could not be reached.
        """
        requested = tuple(dict.fromkeys(str(n) for n in document_numbers))
        period = f"{year}-{month:02d}"
        if not requested:
            raise NoEligibleDocumentsError(tenant_id, period)

        with LogContext.bind(tenant_id=tenant_id):
            with self._transaction() as session:
                eligible = self._eligible_sources(session, tenant_id, year, month)
                wanted = set(requested)
                sources = [s for s in eligible if s.document_number in wanted]
                if not sources:
                    raise NoEligibleDocumentsError(tenant_id, period, requested)
                draft = self._draft(
                    session, tenant_id, year, month, sources, self.today(),
                )
                reservation_id = self._reserve(session, draft)

            skipped = tuple(n for n in requested if n not in set(draft.source_numbers))
            if skipped:
                logger.warning(
                    "manual_consolidation_documents_skipped",
                    extra={"period": period, "skipped": list(skipped)},
                )

            result = self._submit_and_record(draft, reservation_id)
            logger.info(
                "manual_consolidation_completed",
                extra={
                    "period": period,
                    "document_number": draft.document_number,
                    "source_count": len(draft.sources),
                    "validation_state": result.validation_state,
                },
            )

        return ManualConsolidationResult(
            document_number=draft.document_number,
            year=year,
            month=month,
            source_numbers=draft.source_numbers,
            totals=draft.totals,
            external_id=result.external_id,
            submission_id=result.submission_id,
            validation_state=result.validation_state,
            skipped_numbers=skipped,
        )

    def consolidation_history(
        self, tenant_id: str, year: int | None = None,
    ) -> list[ConsolidationHistoryEntry]:
        """Consolidated documents of a tenant, newest first.

        ``year`` keeps only documents issued in that calendar year.
        """
        query = select(Document).where(
            Document.tenant_id == tenant_id,
            Document.is_consolidated == True,  # noqa: E712
        )
        if year is not None:
            query = query.where(
                Document.issued_on >= date(year, 1, 1),
                Document.issued_on <= date(year, 12, 31),
            )
        query = query.order_by(Document.issued_on.desc(), Document.document_number.desc())

        with self._transaction() as session:
            return [_history_entry(doc) for doc in session.execute(query).scalars()]

    # -------------------------------------------------------------------------
    # Submit and record
    # -------------------------------------------------------------------------

    def _draft(
        self,
        session: Session,
        tenant_id: str,
        year: int,
        month: int,
        sources: Sequence[SourceDocument],
        issued_on: date,
    ) -> ConsolidatedDraft:
        existing = self._existing_numbers(session, tenant_id, year, month)
        return build_draft(tenant_id, year, month, sources, existing, issued_on=issued_on)

    def _reserve(self, session: Session, draft: ConsolidatedDraft) -> UUID:
        """Insert the consolidated row as ``pending`` before anything is sent.

        The row holds the number, and its ``consolidated_documents`` keeps
        the originals out of any concurrent consolidation.
        """
        row = Document(
            tenant_id=draft.tenant_id,
            document_number=draft.document_number,
            issued_on=draft.issued_on,
            status=BusinessStatus.ACTIVE.value,
            total_excluding_tax=draft.totals.total_excluding_tax,
            tax_amount=draft.totals.tax_amount,
            rounding=draft.totals.rounding,
            total_payable=draft.totals.total_payable,
            validation_state=ValidationState.PENDING.value,
            is_consolidated=True,
            consolidated_documents=list(draft.source_numbers),
            created_by_id=self._actor_id,
        )
        session.add(row)
        session.flush()
        return row.id

    def _submit_and_record(
        self,
        draft: ConsolidatedDraft,
        reservation_id: UUID,
        task: ConsolidationTask | None = None,
    ) -> _Recorded:
        """Submit the draft, poll it and fill in the reserved row.

        On any failure the reservation is released before the error is
        re-raised: dropped if the service accepted nothing, otherwise kept
        as ``cancelled`` with the service ids after a best-effort remote
        cancellation, so the number is never reused for another document.
        """
        client: ValidationApiClient | None = None
        ack: SubmissionAck | None = None
        try:
            client = self._client_factory(draft.tenant_id)
            ack = client.submit([self._renderer(draft)])
            if not ack.accepted:
                reason = "no document accepted"
                if ack.rejected:
                    error = ack.rejected[0].error
                    reason = error.message or error.code or "rejected"
                raise ConsolidationSubmissionError(draft.document_number, reason)

            report = self._await_status(client, ack.submission_id)
            if report is not None and report.overall_status is OverallStatus.INVALID:
                raise ConsolidationSubmissionError(
                    draft.document_number, "validation service reported Invalid",
                )
            return self._persist_success(draft, reservation_id, ack, report, task)
        except Exception:
            self._release_reservation(client, draft, reservation_id, ack)
            raise

    def _await_status(
        self, client: ValidationApiClient, submission_id: str,
    ) -> SubmissionStatusReport | None:
        """Poll until terminal.  Returns the last report seen, possibly None."""
        policy = self._polling
        last: SubmissionStatusReport | None = None
        if not self._clock.sleep(policy.initial_delay_seconds, self._stop_event):
            return None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                last = client.get_submission_status(submission_id)
            except ValidationServiceError as exc:
                logger.warning(
                    "consolidation_poll_failed",
                    extra={"submission_id": submission_id, "attempt": attempt, "error": str(exc)},
                )
            else:
                if last.overall_status.is_terminal:
                    return last
            if attempt < policy.max_attempts:
                if not self._clock.sleep(policy.interval_seconds, self._stop_event):
                    break

        logger.warning(
            "consolidation_poll_exhausted",
            extra={"submission_id": submission_id, "attempts": policy.max_attempts},
        )
        return last

    def _persist_success(
        self,
        draft: ConsolidatedDraft,
        reservation_id: UUID,
        ack: SubmissionAck,
        report: SubmissionStatusReport | None,
        task: ConsolidationTask | None,
    ) -> _Recorded:
        accepted = _accepted_entry(ack, draft)
        long_id = accepted.long_id
        validated_raw = accepted.date_time_validated
        remote_valid = False

        if report is not None:
            for summary in report.document_summary:
                if summary.external_id == accepted.external_id or (
                    summary.internal_id == draft.document_number
                ):
                    long_id = summary.long_id or long_id
                    validated_raw = summary.date_time_validated or validated_raw
                    remote_valid = summary.service_status is ServiceDocumentStatus.VALID
                    break

        is_valid = bool(long_id) or remote_valid
        state = ValidationState.VALID.value if is_valid else ValidationState.PENDING.value

        with self._transaction() as session:
            row = session.get(Document, reservation_id)
            if row is None:
                raise ConsolidationSubmissionError(
                    draft.document_number, "reserved document row no longer exists",
                )
            row.external_id = accepted.external_id
            row.long_id = long_id
            row.submission_id = ack.submission_id
            row.validation_state = state
            row.validated_at = None
            if is_valid:
                row.validated_at = parse_timestamp(validated_raw) or self._clock.now()
            row.updated_by_id = self._actor_id
            session.execute(
                update(Document)
                .where(
                    Document.tenant_id == draft.tenant_id,
                    Document.document_number.in_(draft.source_numbers),
                )
                .values(consolidated_into=draft.document_number)
            )
            if task is not None:
                self._set_task(
                    session, task,
                    status=ConsolidationTaskStatus.COMPLETED.value,
                    consolidated_document_id=draft.document_number,
                    error=None,
                )

        return _Recorded(accepted.external_id, ack.submission_id, state)

    def _release_reservation(
        self,
        client: ValidationApiClient | None,
        draft: ConsolidatedDraft,
        reservation_id: UUID,
        ack: SubmissionAck | None,
    ) -> None:
        accepted = _accepted_entry(ack, draft) if ack is not None and ack.accepted else None
        remote_cancelled = False
        if accepted is not None and client is not None:
            remote_cancelled, _ = cancel_remote_document(
                client, draft.document_number, accepted.external_id, ABANDONED_REASON,
            )

        try:
            with self._transaction() as session:
                row = session.get(Document, reservation_id)
                if row is None:
                    logger.warning(
                        "consolidation_reservation_missing",
                        extra={
                            "document_number": draft.document_number,
                            "external_id": accepted.external_id if accepted else None,
                        },
                    )
                elif accepted is None:
                    session.delete(row)
                else:
                    row.external_id = accepted.external_id
                    row.submission_id = ack.submission_id if ack is not None else None
                    row.status = BusinessStatus.CANCELLED.value
                    row.validation_state = ValidationState.CANCELLED.value
                    row.updated_by_id = self._actor_id
        except SQLAlchemyError:
            logger.exception(
                "consolidation_reservation_release_failed",
                extra={"document_number": draft.document_number},
            )
            return

        if accepted is not None:
            logger.warning(
                "consolidation_accepted_document_abandoned",
                extra={
                    "document_number": draft.document_number,
                    "external_id": accepted.external_id,
                    "remote_cancelled": remote_cancelled,
                },
            )

    def _record_failure(
        self, task: ConsolidationTask, today: date, exc: Exception,
    ) -> TaskOutcome:
        message = str(exc) or type(exc).__name__
        retry_on = next_retry_date(task.year, task.month, today, self._policy.retry_days)
        if retry_on is not None:
            self._transition(
                task, _PROCESSING,
                status=_PENDING,
                next_attempt=retry_on,
                consolidated_document_id=None,
                error=message,
            )
            logger.info(
                "consolidation_retry_scheduled",
                extra={"period": task.period_label, "next_attempt": retry_on},
            )
            return _outcome(task, TaskOutcomeKind.RETRY_SCHEDULED, error=message)

        self._transition(
            task, _PROCESSING,
            status=ConsolidationTaskStatus.FAILED.value,
            consolidated_document_id=None,
            error=message,
        )
        logger.error(
            "consolidation_task_failed",
            extra={"period": task.period_label, "error": message},
        )
        return _outcome(task, TaskOutcomeKind.FAILED, error=message)

    def _recover_stale_claims(self, today: date) -> int:
        """Return tasks stuck in ``processing`` to ``pending``, due today.

        A claim older than ``stale_claim_minutes`` belongs to a run that
        died before recording an outcome.  Its unsubmitted reservation, if
        any, is dropped so the originals become eligible again.
        """
        cutoff = self._clock.now() - timedelta(minutes=self._policy.stale_claim_minutes)
        stale_claim = (
            ConsolidationTaskModel.status == _PROCESSING,
            or_(
                ConsolidationTaskModel.last_attempt.is_(None),
                ConsolidationTaskModel.last_attempt < cutoff,
            ),
        )
        recovered = 0
        with self._transaction() as session:
            stale = session.execute(
                select(
                    ConsolidationTaskModel.id,
                    ConsolidationTaskModel.tenant_id,
                    ConsolidationTaskModel.year,
                    ConsolidationTaskModel.month,
                    ConsolidationTaskModel.last_attempt,
                    ConsolidationTaskModel.consolidated_document_id,
                ).where(*stale_claim)
            ).all()
            for task_id, tenant_id, year, month, last_attempt, number in stale:
                result = session.execute(
                    update(ConsolidationTaskModel)
                    .where(ConsolidationTaskModel.id == task_id, *stale_claim)
                    .values(
                        status=_PENDING,
                        next_attempt=today,
                        consolidated_document_id=None,
                        error=STALE_CLAIM_ERROR,
                        updated_by_id=self._actor_id,
                    )
                )
                if result.rowcount != 1:
                    continue
                recovered += 1
                dropped = (
                    _drop_unsubmitted_reservation(session, tenant_id, number)
                    if number
                    else 0
                )
                logger.warning(
                    "consolidation_claim_recovered",
                    extra={
                        "tenant_id": tenant_id,
                        "period": f"{year}-{month:02d}",
                        "last_attempt": last_attempt,
                        "document_number": number,
                        "reservation_dropped": dropped > 0,
                    },
                )
        return recovered

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _enabled_tenants(self) -> list[str]:
        with self._transaction() as session:
            return list(
                session.execute(
                    select(TenantSettingsModel.tenant_id)
                    .where(TenantSettingsModel.auto_consolidation_enabled == True)  # noqa: E712
                    .order_by(TenantSettingsModel.tenant_id)
                ).scalars()
            )

    def _select_due(
        self, today: date, tenant_ids: Sequence[str] | None,
    ) -> list[ConsolidationTask]:
        """Pending tasks of enabled tenants whose next attempt is not in the future.

        Tasks due today and failed tasks awaiting a retry run normally.  A
        task whose first day passed without an attempt is also selected: past
        the retry window it expires, inside it it runs as a catch-up.
        """
        enabled = select(TenantSettingsModel.tenant_id).where(
            TenantSettingsModel.auto_consolidation_enabled == True,  # noqa: E712
        )
        query = (
            select(ConsolidationTaskModel)
            .where(
                ConsolidationTaskModel.status == _PENDING,
                ConsolidationTaskModel.tenant_id.in_(enabled),
                ConsolidationTaskModel.next_attempt.is_not(None),
                ConsolidationTaskModel.next_attempt <= today,
            )
            .order_by(
                ConsolidationTaskModel.next_attempt,
                ConsolidationTaskModel.tenant_id,
            )
        )
        if tenant_ids is not None:
            query = query.where(ConsolidationTaskModel.tenant_id.in_(list(tenant_ids)))

        with self._transaction() as session:
            return [row.to_dto() for row in session.execute(query).scalars()]

    def _eligible_sources(
        self, session: Session, tenant_id: str, year: int, month: int,
    ) -> list[SourceDocument]:
        """Unvalidated documents of the period not bundled anywhere yet.

        Validation state null or ``invalid``, not cancelled, not itself a
        consolidated document, not listed by an active consolidation.
        """
        bundled = _numbers_in_active_consolidations(session, tenant_id)
        rows = session.execute(
            select(Document)
            .where(
                Document.tenant_id == tenant_id,
                Document.issued_on >= month_start(year, month),
                Document.issued_on <= month_end(year, month),
                or_(
                    Document.validation_state.is_(None),
                    Document.validation_state == ValidationState.INVALID.value,
                ),
                Document.status != BusinessStatus.CANCELLED.value,
                Document.is_consolidated == False,  # noqa: E712
                Document.consolidated_into.is_(None),
            )
            .order_by(Document.issued_on, Document.document_number)
        ).scalars()

        return [
            SourceDocument(
                document_number=doc.document_number,
                issued_on=doc.issued_on,
                total_excluding_tax=doc.total_excluding_tax,
                tax_amount=doc.tax_amount,
                rounding=doc.rounding,
                total_payable=doc.total_payable,
            )
            for doc in rows
            if doc.document_number not in bundled
        ]

    def _existing_numbers(
        self, session: Session, tenant_id: str, year: int, month: int,
    ) -> list[str]:
        prefix = number_prefix(year, month)
        return list(
            session.execute(
                select(Document.document_number).where(
                    Document.tenant_id == tenant_id,
                    Document.document_number.like(f"{prefix}%"),
                )
            ).scalars()
        )

    # -------------------------------------------------------------------------
    # Task transitions
    # -------------------------------------------------------------------------

    def _claim(self, task: ConsolidationTask, now: datetime) -> bool:
        with self._transaction() as session:
            result = session.execute(
                update(ConsolidationTaskModel)
                .where(
                    ConsolidationTaskModel.id == task.task_id,
                    ConsolidationTaskModel.status == _PENDING,
                )
                .values(
                    status=_PROCESSING,
                    attempt_count=ConsolidationTaskModel.attempt_count + 1,
                    last_attempt=now,
                    updated_by_id=self._actor_id,
                )
            )
            return result.rowcount == 1

    def _transition(
        self, task: ConsolidationTask, expected_status: str, **values,
    ) -> bool:
        with self._transaction() as session:
            result = session.execute(
                update(ConsolidationTaskModel)
                .where(
                    ConsolidationTaskModel.id == task.task_id,
                    ConsolidationTaskModel.status == expected_status,
                )
                .values(updated_by_id=self._actor_id, **values)
            )
            return result.rowcount == 1

    def _set_task(self, session: Session, task: ConsolidationTask, **values) -> None:
        session.execute(
            update(ConsolidationTaskModel)
            .where(ConsolidationTaskModel.id == task.task_id)
            .values(updated_by_id=self._actor_id, **values)
        )

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Background loop
    # -------------------------------------------------------------------------

    def today(self) -> date:
        return self._clock.today(self._policy.tz)

    def tick(self) -> ConsolidationRunSummary | None:
        """Schedule next month and run due tasks (public for testing)."""
        try:
            self.schedule_next_month()
            return self.run_due_consolidations()
        except Exception:
            logger.exception("scheduler_tick_failed")
            return None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="consolidation-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current task to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._tick_interval)


def _numbers_in_active_consolidations(session: Session, tenant_id: str) -> set[str]:
    """Document numbers listed by a consolidated document that is not cancelled."""
    rows = session.execute(
        select(Document.consolidated_documents).where(
            Document.tenant_id == tenant_id,
            Document.is_consolidated == True,  # noqa: E712
            Document.status != BusinessStatus.CANCELLED.value,
            or_(
                Document.validation_state.is_(None),
                Document.validation_state != ValidationState.CANCELLED.value,
            ),
        )
    ).scalars()
    return {str(n) for numbers in rows if numbers for n in _as_list(numbers)}


def _as_list(value: object) -> Iterable[object]:
    return value if isinstance(value, list) else ()


def _outcome(
    task: ConsolidationTask,
    kind: TaskOutcomeKind,
    consolidated_document_id: str | None = None,
    error: str | None = None,
) -> TaskOutcome:
    return TaskOutcome(
        task_id=task.task_id,
        tenant_id=task.tenant_id,
        year=task.year,
        month=task.month,
        outcome=kind,
        consolidated_document_id=consolidated_document_id,
        error=error,
    )


class _Recorded(NamedTuple):
    external_id: str
    submission_id: str
    validation_state: str


def _accepted_entry(ack: SubmissionAck, draft: ConsolidatedDraft) -> AcceptedDocument:
    return next(
        (a for a in ack.accepted if a.internal_id == draft.document_number),
        ack.accepted[0],
    )


def _drop_unsubmitted_reservation(
    session: Session, tenant_id: str, document_number: str,
) -> int:
    """Delete a reserved consolidated row that never got service ids."""
    result = session.execute(
        delete(Document).where(
            Document.tenant_id == tenant_id,
            Document.document_number == document_number,
            Document.is_consolidated == True,  # noqa: E712
            Document.external_id.is_(None),
            Document.submission_id.is_(None),
        )
    )
    return result.rowcount


def _history_entry(doc: Document) -> ConsolidationHistoryEntry:
    return ConsolidationHistoryEntry(
        document_number=doc.document_number,
        issued_on=doc.issued_on,
        status=doc.status,
        validation_state=doc.validation_state,
        totals=ConsolidatedTotals(
            total_excluding_tax=doc.total_excluding_tax,
            tax_amount=doc.tax_amount,
            rounding=doc.rounding,
            total_payable=doc.total_payable,
        ),
        consolidated_documents=tuple(str(n) for n in _as_list(doc.consolidated_documents)),
        external_id=doc.external_id,
        long_id=doc.long_id,
        submission_id=doc.submission_id,
        validated_at=doc.validated_at,
    )
