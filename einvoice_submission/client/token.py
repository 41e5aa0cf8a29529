"""
Access token cache for the validation service.

Contract:
    ``TokenCache.get()`` returns a bearer token that is valid for at
    least ``refresh_margin`` seconds.  When the cached token is missing or
    inside the margin, the injected ``fetch`` callable is invoked to
    obtain a new one.

Guarantees:
    - At most one refresh runs at a time per cache.  Threads arriving
      during a refresh wait on the lock and then reuse the fresh token.
    - ``invalidate()`` forces the next ``get()`` to refresh.

Failure modes:
    Whatever ``fetch`` raises (normally ``TokenRefreshError``) propagates
    and leaves the previous cache contents untouched.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from einvoice_kernel.domain.clock import Clock, SystemClock
from einvoice_kernel.logging_config import get_logger

logger = get_logger("submission.token")

DEFAULT_REFRESH_MARGIN_SECONDS = 5 * 60


@dataclass(frozen=True)
class AccessToken:
    """A bearer token and the number of seconds it is valid for."""

    value: str
    expires_in: int


class TokenCache:
    """Lock-guarded ``(token, expires_at)`` cache.

    The pair lives in one attribute so the unlocked fast path always sees
    a token together with its own expiry.
    """

    def __init__(
        self,
        fetch: Callable[[], AccessToken],
        clock: Clock | None = None,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN_SECONDS,
    ):
        self._fetch = fetch
        self._clock = clock or SystemClock()
        self._margin = timedelta(seconds=refresh_margin)
        self._lock = threading.Lock()
        self._cached: tuple[str, datetime] | None = None
        self.refresh_count = 0

    @property
    def expires_at(self) -> datetime | None:
        cached = self._cached
        return None if cached is None else cached[1]

    def _usable_token(self) -> str | None:
        cached = self._cached
        if cached is None:
            return None
        token, expires_at = cached
        if self._clock.now() >= expires_at - self._margin:
            return None
        return token

    def get(self) -> str:
        token = self._usable_token()
        if token is not None:
            return token

        with self._lock:
            # Another thread may have refreshed while we waited.
            token = self._usable_token()
            if token is None:
                token = self._refresh()
            return token

    def _refresh(self) -> str:
        token = self._fetch()
        expires_at = self._clock.now() + timedelta(seconds=token.expires_in)
        self._cached = (token.value, expires_at)
        self.refresh_count += 1
        logger.info(
            "access_token_refreshed",
            extra={"expires_at": expires_at, "expires_in": token.expires_in},
        )
        return token.value

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
