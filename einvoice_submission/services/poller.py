"""
PollingEngine -- bounded status polling for a single submission.

Contract:
    ``poll(submission_id)`` queries ``get_submission_status`` until the
    overall status is terminal, the "stuck but effectively valid" rule
    applies, or ``PollingPolicy.max_attempts`` is exhausted.

State machine:
    NOT_STARTED -> POLLING -> {TERMINAL, TIMED_OUT}
                           -> CANCELLED  (owner called ``stop()``)

Guarantees:
    - Single-flight: one outstanding status call at a time; each engine
      instance polls exactly one submission once.
    - Total sleeping time is at most ``initial_delay_seconds +
      (max_attempts - 1) * interval_seconds``.
    - A failing attempt (``ValidationServiceError``) is logged and counted
      and the next attempt follows at the normal interval.
    - When the engine reports a batch as valid on circumstantial evidence
      the returned report keeps the real status in ``actual_status``.

Failure modes:
    - ``PollingTimeoutError`` -- attempts exhausted and no response ever
      carried a document summary.
    - ``PollingCancelledError`` -- ``stop()`` was called mid-poll.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Callable, NoReturn

from einvoice_config.schema import PollingPolicy
from einvoice_kernel.domain.clock import Clock, SystemClock
from einvoice_kernel.exceptions import (
    PollingCancelledError,
    PollingTimeoutError,
    ValidationServiceError,
)
from einvoice_kernel.logging_config import get_logger
from einvoice_submission.client.base import ValidationApiClient
from einvoice_submission.domain.types import SubmissionStatusReport

logger = get_logger("submission.poller")


class PollingState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    POLLING = "POLLING"
    TERMINAL = "TERMINAL"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


class PollingEngine:
    """Drives polling of one submission."""

    def __init__(
        self,
        client: ValidationApiClient,
        policy: PollingPolicy | None = None,
        clock: Clock | None = None,
        on_report: Callable[[SubmissionStatusReport], None] | None = None,
    ):
        self._client = client
        self._policy = policy or PollingPolicy()
        self._clock = clock or SystemClock()
        self._on_report = on_report
        self._cancel = threading.Event()
        self._state = PollingState.NOT_STARTED
        self._attempts = 0

    @property
    def state(self) -> PollingState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    def stop(self) -> None:
        """Cancel an in-flight poll; the pending sleep returns immediately."""
        self._cancel.set()

    def poll(self, submission_id: str) -> SubmissionStatusReport:
        if self._state is not PollingState.NOT_STARTED:
            raise RuntimeError(
                f"PollingEngine already used (state={self._state.value})"
            )
        self._state = PollingState.POLLING
        policy = self._policy
        last_with_summary: SubmissionStatusReport | None = None

        logger.info(
            "polling_started",
            extra={
                "submission_id": submission_id,
                "max_attempts": policy.max_attempts,
                "interval_seconds": policy.interval_seconds,
            },
        )

        if not self._clock.sleep(policy.initial_delay_seconds, self._cancel):
            self._cancelled(submission_id)

        for attempt in range(1, policy.max_attempts + 1):
            if self._cancel.is_set():
                self._cancelled(submission_id)
            self._attempts = attempt

            try:
                report = self._client.get_submission_status(submission_id)
            except ValidationServiceError as exc:
                logger.warning(
                    "poll_attempt_failed",
                    extra={
                        "submission_id": submission_id,
                        "attempt": attempt,
                        "error": str(exc),
                        "status_code": getattr(exc, "status_code", None),
                    },
                )
            else:
                result = self._evaluate(report, attempt)
                if result is not None:
                    self._finish(PollingState.TERMINAL, submission_id, result)
                    return result
                if report.document_summary:
                    last_with_summary = report
                self._emit(report)

            if attempt < policy.max_attempts:
                if not self._clock.sleep(policy.interval_seconds, self._cancel):
                    self._cancelled(submission_id)

        if last_with_summary is not None:
            result = last_with_summary.coerced_valid(timed_out=True)
            logger.warning(
                "polling_exhausted_assumed_valid",
                extra={
                    "submission_id": submission_id,
                    "attempts": self._attempts,
                    "actual_status": last_with_summary.overall_status,
                },
            )
            self._finish(PollingState.TIMED_OUT, submission_id, result)
            return result

        self._state = PollingState.TIMED_OUT
        logger.error(
            "polling_timed_out",
            extra={"submission_id": submission_id, "attempts": self._attempts},
        )
        raise PollingTimeoutError(submission_id, self._attempts)

    def _evaluate(
        self, report: SubmissionStatusReport, attempt: int,
    ) -> SubmissionStatusReport | None:
        """Return the final report if polling should stop, else None."""
        if report.overall_status.is_terminal:
            return report
        if report.all_submitted and attempt >= self._policy.assume_valid_after_attempts:
            logger.warning(
                "polling_assumed_valid",
                extra={"attempt": attempt, "documents": len(report.document_summary)},
            )
            return report.coerced_valid()
        return None

    def _emit(self, report: SubmissionStatusReport) -> None:
        if self._on_report is not None:
            self._on_report(report)

    def _finish(
        self, state: PollingState, submission_id: str, report: SubmissionStatusReport,
    ) -> None:
        self._state = state
        logger.info(
            "polling_finished",
            extra={
                "submission_id": submission_id,
                "state": state,
                "attempts": self._attempts,
                "overall_status": report.overall_status,
            },
        )
        self._emit(report)

    def _cancelled(self, submission_id: str) -> NoReturn:
        self._state = PollingState.CANCELLED
        logger.info(
            "polling_cancelled",
            extra={"submission_id": submission_id, "attempts": self._attempts},
        )
        raise PollingCancelledError(submission_id, self._attempts)
