"""Domain models for the e-invoice kernel."""

from einvoice_kernel.models.document import BusinessStatus, Document, ValidationState

__all__ = [
    "BusinessStatus",
    "Document",
    "ValidationState",
]
