"""
Typed exception hierarchy for the e-invoice system.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the validation service must tell apart a rejected document, a
flaky network call, a missing tenant configuration and a poll that ran
out of attempts.  Each needs a different reaction (attach to the
document, retry, abort, surface "status unknown").  Matching on message
strings is fragile, so every error is a class with a machine-readable
``code`` and structured attributes.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    EInvoiceError (base)
    |
    +-- ValidationServiceError          (API / transport)
    |   +-- ValidationApiError
    |   +-- TokenRefreshError
    |
    +-- SubmissionError
    |   +-- EmptySubmissionError
    |   +-- DocumentRejectedError       (validation)
    |   +-- PollingTimeoutError         (timeout)
    |   +-- PollingCancelledError
    |
    +-- ConfigurationError              (system, fatal)
    |   +-- TenantNotConfiguredError
    |   +-- InvalidConfigurationError
    |
    +-- ConsolidationError
        +-- ConsolidationSubmissionError
        +-- ConsolidatedDocumentNotFoundError
        +-- ConsolidationNotCancellableError
        +-- NoEligibleDocumentsError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|-------------------------------------
Service         | VALIDATION_API_ERROR          | Non-2xx response or transport failure
                | TOKEN_REFRESH_FAILED          | Client-credentials exchange failed
----------------|-------------------------------|-------------------------------------
Submission      | EMPTY_SUBMISSION              | submit() called with no documents
                | DOCUMENT_REJECTED             | Service rejected a document
                | POLLING_TIMEOUT               | Attempts exhausted, no usable report
                | POLLING_CANCELLED             | Owner stopped the poll
----------------|-------------------------------|-------------------------------------
Configuration   | TENANT_NOT_CONFIGURED         | No API credentials for tenant
                | INVALID_CONFIGURATION         | Malformed configuration file
----------------|-------------------------------|-------------------------------------
Consolidation   | CONSOLIDATION_SUBMISSION_FAILED | Synthetic document not validated
                | CONSOLIDATED_DOCUMENT_NOT_FOUND | No such consolidated document
                | CONSOLIDATION_NOT_CANCELLABLE   | Wrong validation state for cancel
                | NO_ELIGIBLE_DOCUMENTS           | Manual consolidation found nothing
"""


class EInvoiceError(Exception):
    """
    Base exception for all e-invoice errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "EINVOICE_ERROR"


# Validation service (API / transport)


class ValidationServiceError(EInvoiceError):
    """Base exception for failures talking to the validation service."""

    code: str = "VALIDATION_SERVICE_ERROR"


class ValidationApiError(ValidationServiceError):
    """The validation service answered with a non-2xx status, or not at all."""

    code: str = "VALIDATION_API_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
    ):
        self.status_code = status_code
        self.response = response
        super().__init__(message)

    @property
    def error_message(self) -> str:
        """Best human-readable message, preferring the service's own error text."""
        if isinstance(self.response, dict):
            error = self.response.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str) and error:
                return error
        return str(self)


class TokenRefreshError(ValidationServiceError):
    """The client-credentials token exchange failed."""

    code: str = "TOKEN_REFRESH_FAILED"

    def __init__(self, reason: str, status_code: int | None = None):
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Token refresh failed: {reason}")


# Submission lifecycle


class SubmissionError(EInvoiceError):
    """Base exception for submission and polling errors."""

    code: str = "SUBMISSION_ERROR"


class EmptySubmissionError(SubmissionError):
    """A submission was attempted with no documents."""

    code: str = "EMPTY_SUBMISSION"

    def __init__(self):
        super().__init__("Invalid document data: no documents provided")


class DocumentRejectedError(SubmissionError):
    """The validation service rejected a document before processing."""

    code: str = "DOCUMENT_REJECTED"

    def __init__(self, document_ref: str, reason: str, details: tuple = ()):
        self.document_ref = document_ref
        self.reason = reason
        self.details = details
        super().__init__(f"Document {document_ref} rejected: {reason}")


class PollingTimeoutError(SubmissionError):
    """Polling exhausted its attempts without a usable status report."""

    code: str = "POLLING_TIMEOUT"

    def __init__(self, submission_id: str, attempts: int):
        self.submission_id = submission_id
        self.attempts = attempts
        super().__init__(
            f"Polling timed out after {attempts} attempts. "
            f"Please check the submission status manually."
        )


class PollingCancelledError(SubmissionError):
    """The owner stopped polling before a terminal status was reached."""

    code: str = "POLLING_CANCELLED"

    def __init__(self, submission_id: str, attempts: int):
        self.submission_id = submission_id
        self.attempts = attempts
        super().__init__(
            f"Polling of submission {submission_id} cancelled after {attempts} attempts"
        )


# Configuration (system errors, never retried)


class ConfigurationError(EInvoiceError):
    """Base exception for configuration errors."""

    code: str = "CONFIGURATION_ERROR"


class TenantNotConfiguredError(ConfigurationError):
    """No validation-service configuration exists for a tenant."""

    code: str = "TENANT_NOT_CONFIGURED"

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"No e-invoice configuration for tenant: {tenant_id}")


class InvalidConfigurationError(ConfigurationError):
    """The configuration file is malformed."""

    code: str = "INVALID_CONFIGURATION"

    def __init__(self, reason: str, source: str | None = None):
        self.reason = reason
        self.source = source
        where = f" ({source})" if source else ""
        super().__init__(f"Invalid configuration{where}: {reason}")


# Consolidation


class ConsolidationError(EInvoiceError):
    """Base exception for consolidation errors."""

    code: str = "CONSOLIDATION_ERROR"


class ConsolidationSubmissionError(ConsolidationError):
    """The consolidated document was not accepted or validated."""

    code: str = "CONSOLIDATION_SUBMISSION_FAILED"

    def __init__(self, document_number: str, reason: str):
        self.document_number = document_number
        self.reason = reason
        super().__init__(
            f"Failed to submit consolidated document {document_number}: {reason}"
        )


class ConsolidatedDocumentNotFoundError(ConsolidationError):
    """No consolidated document with the given number exists for the tenant."""

    code: str = "CONSOLIDATED_DOCUMENT_NOT_FOUND"

    def __init__(self, tenant_id: str, document_number: str):
        self.tenant_id = tenant_id
        self.document_number = document_number
        super().__init__(
            f"Consolidated document not found: {document_number} (tenant {tenant_id})"
        )


class ConsolidationNotCancellableError(ConsolidationError):
    """Only valid or invalid consolidated documents can be cancelled."""

    code: str = "CONSOLIDATION_NOT_CANCELLABLE"

    def __init__(self, document_number: str, validation_state: str | None):
        self.document_number = document_number
        self.validation_state = validation_state
        super().__init__(
            f"Cannot cancel document {document_number} with status: "
            f"{validation_state}. Only 'valid' or 'invalid' documents can be cancelled."
        )


class NoEligibleDocumentsError(ConsolidationError):
    """None of the requested documents can be consolidated for the period."""

    code: str = "NO_ELIGIBLE_DOCUMENTS"

    def __init__(self, tenant_id: str, period: str, requested: tuple[str, ...] = ()):
        self.tenant_id = tenant_id
        self.period = period
        self.requested = requested
        super().__init__(
            f"No eligible documents to consolidate for {tenant_id} in {period}"
        )
