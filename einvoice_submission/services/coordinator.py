"""
SubmissionCoordinator -- submit a batch, poll it, and track the outcome.

Contract:
    ``submit(documents)`` wires one ``SubmissionTracker`` to one
    ``PollingEngine`` for a single batch:

        client.submit -> tracker.handle_initial_response
                      -> [documents pending] engine.poll
                             -> tracker.handle_processing_update (every report)
                      -> SubmissionOutcome

    Submission-level failures (transport, timeout, cancellation) are routed
    to ``tracker.handle_error`` and reported through the outcome; they do
    not propagate.

Failure modes:
    - ``EmptySubmissionError`` -- raised before anything is sent.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from einvoice_config.schema import PollingPolicy
from einvoice_kernel.domain.clock import Clock, SystemClock
from einvoice_kernel.exceptions import (
    EmptySubmissionError,
    SubmissionError,
    ValidationServiceError,
)
from einvoice_kernel.logging_config import LogContext, get_logger
from einvoice_submission.client.base import ValidationApiClient
from einvoice_submission.domain.types import (
    DocumentState,
    OverallStatus,
    SubmissionDocument,
    SubmissionPhase,
    SubmissionState,
    SubmissionStatusReport,
)
from einvoice_submission.services.poller import PollingEngine
from einvoice_submission.services.tracker import (
    SubmissionObserver,
    SubmissionTracker,
)

logger = get_logger("submission.coordinator")

_ACCEPTED_STATES = frozenset(
    {DocumentState.ACCEPTED, DocumentState.PROCESSING, DocumentState.COMPLETED}
)
_REJECTED_STATES = frozenset({DocumentState.REJECTED, DocumentState.FAILED})


@dataclass(frozen=True)
class SubmissionOutcome:
    """Final view of one submit call.

    ``rejected`` lists the document references a caller may fix and
    resubmit; ``accepted`` lists everything the service kept.
    """

    state: SubmissionState
    accepted: tuple[str, ...]
    rejected: tuple[str, ...]
    final_report: SubmissionStatusReport | None = None

    @property
    def overall_status(self) -> OverallStatus:
        return self.state.tracker.overall_status

    @property
    def submission_id(self) -> str:
        return self.state.tracker.submission_id

    @property
    def succeeded(self) -> bool:
        return self.state.error is None and self.overall_status in (
            OverallStatus.VALID,
            OverallStatus.PARTIAL,
        )


class _LastState:
    """Observer decorator that remembers the last snapshot."""

    def __init__(self, inner: SubmissionObserver | None):
        self._inner = inner
        self.last: SubmissionState | None = None

    def on_state_change(self, state: SubmissionState) -> None:
        self.last = state
        if self._inner is not None:
            self._inner.on_state_change(state)


class SubmissionCoordinator:
    """Runs the submit-and-poll flow against one validation client."""

    def __init__(
        self,
        client: ValidationApiClient,
        policy: PollingPolicy | None = None,
        clock: Clock | None = None,
        observer: SubmissionObserver | None = None,
    ):
        self._client = client
        self._policy = policy or PollingPolicy()
        self._clock = clock or SystemClock()
        self._observer = observer

    def submit(self, documents: Sequence[SubmissionDocument]) -> SubmissionOutcome:
        if not documents:
            raise EmptySubmissionError()

        recorder = _LastState(self._observer)
        tracker = SubmissionTracker(len(documents), recorder, self._clock)
        final_report: SubmissionStatusReport | None = None

        try:
            ack = self._client.submit(documents)
        except ValidationServiceError as exc:
            tracker.handle_error(exc, SubmissionPhase.SUBMISSION)
            return self._outcome(tracker, recorder, None)

        with LogContext.bind(submission_id=ack.submission_id or None):
            tracker.handle_initial_response(ack)

            if not tracker.is_complete and ack.submission_id:
                engine = PollingEngine(
                    self._client,
                    self._policy,
                    self._clock,
                    on_report=tracker.handle_processing_update,
                )
                tracker.attach_poller(engine)
                try:
                    final_report = engine.poll(ack.submission_id)
                except (SubmissionError, ValidationServiceError) as exc:
                    tracker.handle_error(exc, SubmissionPhase.PROCESSING)
                finally:
                    tracker.cleanup()

            return self._outcome(tracker, recorder, final_report)

    def _outcome(
        self,
        tracker: SubmissionTracker,
        recorder: _LastState,
        final_report: SubmissionStatusReport | None,
    ) -> SubmissionOutcome:
        statuses = tracker.get_document_statuses()
        state = recorder.last
        if state is None or state.error is None:
            state = tracker.get_state()
        outcome = SubmissionOutcome(
            state=state,
            accepted=tuple(
                ref for ref, doc in statuses.items()
                if doc.current_status in _ACCEPTED_STATES
            ),
            rejected=tuple(
                ref for ref, doc in statuses.items()
                if doc.current_status in _REJECTED_STATES
            ),
            final_report=final_report,
        )
        logger.info(
            "submission_finished",
            extra={
                "submission_id": outcome.submission_id,
                "overall_status": outcome.overall_status,
                "accepted": len(outcome.accepted),
                "rejected": len(outcome.rejected),
                "error": state.error.message if state.error else None,
            },
        )
        return outcome
