"""
HttpValidationApiClient -- requests-based client for the validation service.

Contract:
    Implements ``ValidationApiClient`` over HTTPS.  ``call_api(method,
    path, body)`` is the single transport primitive: it attaches a bearer
    token from the ``TokenCache``, sends JSON, and returns the decoded
    body (``{}`` for an empty 2xx body).

Guarantees:
    - One client per tenant; the token cache is a field, not a global.
    - A 401 response invalidates the cached token and the call is retried
      once with a fresh token.
    - Idempotent methods are retried on 502/503/504 by the mounted
      ``HTTPAdapter``; POST is never retried automatically.

Failure modes:
    - ``TokenRefreshError`` -- ``POST /connect/token`` failed.
    - ``ValidationApiError`` -- non-2xx response (``status_code`` and the
      parsed ``response`` body attached), unparseable body, or transport
      failure (``status_code`` is None).
"""

from __future__ import annotations

from typing import Any, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from einvoice_config.schema import TenantApiConfig
from einvoice_kernel.domain.clock import Clock
from einvoice_kernel.exceptions import TokenRefreshError, ValidationApiError
from einvoice_kernel.logging_config import get_logger
from einvoice_submission.client.codec import (
    decode_ack,
    decode_document_detail,
    decode_status_report,
    encode_submission,
)
from einvoice_submission.client.token import AccessToken, TokenCache
from einvoice_submission.domain.types import (
    DocumentDetail,
    SubmissionAck,
    SubmissionDocument,
    SubmissionStatusReport,
)

logger = get_logger("submission.http")

TOKEN_PATH = "/connect/token"
TOKEN_SCOPE = "InvoicingAPI"
SUBMISSIONS_PATH = "/api/v1.0/documentsubmissions"
DOCUMENTS_PATH = "/api/v1.0/documents"


def build_session() -> requests.Session:
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=2.0,
        status_forcelist=[502, 503, 504],
        allowed_methods=["GET", "PUT"],
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session


class HttpValidationApiClient:
    """Validation-service client for one tenant."""

    def __init__(
        self,
        config: TenantApiConfig,
        session: requests.Session | None = None,
        clock: Clock | None = None,
    ):
        self._config = config
        self._base_url = config.api_base_url.rstrip("/")
        self._timeout = config.request_timeout_seconds
        self._session = session or build_session()
        self._tokens = TokenCache(self._fetch_token, clock=clock)

    @property
    def tenant_id(self) -> str:
        return self._config.tenant_id

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _fetch_token(self) -> AccessToken:
        try:
            resp = self._session.post(
                f"{self._base_url}{TOKEN_PATH}",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "scope": TOKEN_SCOPE,
                },
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise TokenRefreshError(f"token request failed: {exc}") from exc

        try:
            payload = resp.json()
        except ValueError as exc:
            raise TokenRefreshError(
                "unparseable token response", status_code=resp.status_code,
            ) from exc

        if resp.status_code != 200:
            error = payload.get("error") if isinstance(payload, dict) else payload
            raise TokenRefreshError(
                str(error or "Unknown error"),
                status_code=resp.status_code,
            )
        try:
            return AccessToken(
                value=str(payload["access_token"]),
                expires_in=int(payload["expires_in"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenRefreshError(
                f"malformed token response: {exc}", status_code=resp.status_code,
            ) from exc

    def _send(self, method: str, url: str, body: Any) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {self._tokens.get()}",
            "Accept": "application/json",
        }
        try:
            return self._session.request(
                method, url, json=body, headers=headers, timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise ValidationApiError(f"API request failed: {exc}") from exc

    def call_api(self, method: str, path: str, body: Any = None) -> Any:
        """Send one authenticated JSON request and return the decoded body."""
        if not path.startswith("/"):
            path = f"/{path}"
        url = f"{self._base_url}{path}"

        resp = self._send(method, url, body)
        if resp.status_code == 401:
            logger.info("access_token_rejected", extra={"path": path})
            self._tokens.invalidate()
            resp = self._send(method, url, body)

        logger.debug(
            "api_response",
            extra={"method": method, "path": path, "status_code": resp.status_code},
        )

        text = resp.text or ""
        if not text.strip():
            if 200 <= resp.status_code < 300:
                return {}
            raise ValidationApiError(
                f"Empty response with status {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ValidationApiError(
                f"Failed to parse API response: {exc}",
                status_code=resp.status_code,
            ) from exc

        if not 200 <= resp.status_code < 300:
            raise ValidationApiError(
                f"API request failed with status {resp.status_code}",
                status_code=resp.status_code,
                response=data if isinstance(data, dict) else {"error": data},
            )
        return data

    # -------------------------------------------------------------------------
    # ValidationApiClient
    # -------------------------------------------------------------------------

    def submit(self, documents: Sequence[SubmissionDocument]) -> SubmissionAck:
        data = self.call_api("POST", SUBMISSIONS_PATH, encode_submission(documents))
        ack = decode_ack(data)
        logger.info(
            "documents_submitted",
            extra={
                "submission_id": ack.submission_id,
                "accepted": len(ack.accepted),
                "rejected": len(ack.rejected),
            },
        )
        return ack

    def get_submission_status(self, submission_id: str) -> SubmissionStatusReport:
        data = self.call_api("GET", f"{SUBMISSIONS_PATH}/{submission_id}")
        return decode_status_report(data)

    def get_document_details(self, document_id: str) -> DocumentDetail:
        data = self.call_api("GET", f"{DOCUMENTS_PATH}/{document_id}/details")
        return decode_document_detail(data, document_id)

    def set_document_state(self, document_id: str, state: str, reason: str) -> None:
        self.call_api(
            "PUT",
            f"{DOCUMENTS_PATH}/state/{document_id}/state",
            {"status": state, "reason": reason},
        )
