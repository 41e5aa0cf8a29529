"""Validation service client: protocol, codec and HTTP implementation."""

from einvoice_submission.client.base import CANCELLED_STATE, ValidationApiClient
from einvoice_submission.client.http import HttpValidationApiClient
from einvoice_submission.client.token import AccessToken, TokenCache

__all__ = [
    "AccessToken",
    "CANCELLED_STATE",
    "HttpValidationApiClient",
    "TokenCache",
    "ValidationApiClient",
]
