"""
einvoice_submission -- Submission tracking and status polling.

Submits rendered documents to the government validation service,
interprets the immediate accept/reject acknowledgement, polls the
submission on a bounded schedule and pushes live per-document and
aggregate status to an observer.

Architecture:
    einvoice_submission/ is a top-level package.  It imports from
    einvoice_kernel and einvoice_config only.  The consolidation package
    reuses its client contract and service vocabulary but not the polling
    engine.

    domain/    pure types and status mapping (ZERO I/O)
    client/    ValidationApiClient protocol, wire codec, HTTP client
    services/  SubmissionTracker, PollingEngine, SubmissionCoordinator
"""
