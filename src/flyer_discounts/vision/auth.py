from __future__ import annotations

import threading
import time
from datetime import timezone
from typing import Callable, Optional, Tuple

from ..errors import InvalidInput
from ..logging import get_logger

LOG = get_logger("vision-auth")

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
# Renew a cached token this many seconds before it actually expires.
RENEWAL_MARGIN_SECONDS = 5 * 60

# (token, expires_at as epoch seconds)
TokenSource = Callable[[], Tuple[str, float]]


class TokenCache:
    """Bearer token shared by every vision call of a process."""

    def __init__(
        self,
        source: TokenSource,
        *,
        margin_seconds: float = RENEWAL_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._margin = margin_seconds
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def get(self) -> str:
        with self._lock:
            if self._token and self._clock() < self._expires_at - self._margin:
                return self._token
            token, expires_at = self._source()
            if not token:
                raise InvalidInput("Token source returned an empty access token")
            self._token = token
            self._expires_at = float(expires_at)
            LOG.debug("Fetched new access token valid until %.0f", self._expires_at)
            return token


def service_account_token_source(credentials_path: Optional[str]) -> TokenSource:
    """Token source backed by a service-account file or application default credentials."""
    import google.auth
    from google.auth.transport.requests import Request
    from google.oauth2 import service_account

    if credentials_path:
        credentials = service_account.Credentials.from_service_account_file(
            credentials_path,
            scopes=[CLOUD_PLATFORM_SCOPE],
        )
    else:
        credentials, _project = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])

    def _fetch() -> Tuple[str, float]:
        credentials.refresh(Request())
        expiry = credentials.expiry
        if expiry is None:
            # google-auth leaves expiry unset for some credential types; assume an hour
            return credentials.token, time.time() + 3600
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return credentials.token, expiry.timestamp()

    return _fetch
