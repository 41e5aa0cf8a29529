"""Submission services: tracker, polling engine and coordinator."""

from einvoice_submission.services.coordinator import (
    SubmissionCoordinator,
    SubmissionOutcome,
)
from einvoice_submission.services.poller import PollingEngine, PollingState
from einvoice_submission.services.tracker import (
    SubmissionObserver,
    SubmissionTracker,
    classify_error,
)

__all__ = [
    "PollingEngine",
    "PollingState",
    "SubmissionCoordinator",
    "SubmissionObserver",
    "SubmissionOutcome",
    "SubmissionTracker",
    "classify_error",
]
