"""
Login with Amazon (LWA) token management.

Exchanges the long-lived refresh token for short-lived access tokens and
caches them until they expire.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx
import structlog

from spapi_order_sync.exceptions import AuthError, InvalidResponseError
from spapi_order_sync.models import TokenResponse, parse_model

logger = structlog.get_logger(__name__)

LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessToken:
    """A short-lived access token and the moment it stops being valid."""
    value: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


class TokenManager:
    """
    Owns the access token and refreshes it lazily.

    Refresh is single-flight: concurrent callers that find the token
    expired queue on one lock, the first one refreshes, and the rest
    re-check the cache and reuse its result.

    Example:
        tokens = TokenManager(client_id, client_secret, refresh_token)
        token = tokens.get_valid_token()
        headers = {"x-amz-access-token": token.value}
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        token_url: str = LWA_TOKEN_URL,
        http_client: httpx.Client | None = None,
        timeout: float = 30.0,
        expiry_margin: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize token manager.

        Args:
            client_id: LWA application client id
            client_secret: LWA application client secret
            refresh_token: Long-lived seller refresh token
            token_url: LWA token endpoint
            http_client: Client to reuse (a private one is created if omitted)
            timeout: Refresh request timeout in seconds
            expiry_margin: Seconds before expiry at which a token counts as stale
            clock: Returns the current UTC time
        """
        if not client_id or not client_secret or not refresh_token:
            raise ValueError("client_id, client_secret and refresh_token are required")

        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.token_url = token_url
        self.timeout = timeout
        self.expiry_margin = timedelta(seconds=expiry_margin)
        self._clock = clock

        self._http = http_client
        self._owns_http = http_client is None

        self._token: AccessToken | None = None
        self._lock = threading.Lock()

        self.refresh_count = 0
        self._log = logger.bind(client_id=client_id[:12])

    def get_valid_token(self) -> AccessToken:
        """
        Return the cached token, refreshing it first if it has expired.

        Raises:
            AuthError: If the refresh call fails
        """
        token = self._token
        if token is not None and token.is_valid(self._clock()):
            return token

        with self._lock:
            # Another caller may have refreshed while we waited
            token = self._token
            if token is not None and token.is_valid(self._clock()):
                return token

            self._token = self._refresh()
            return self._token

    def invalidate(self) -> None:
        """Drop the cached token so the next call refreshes."""
        with self._lock:
            self._token = None

    def close(self) -> None:
        if self._owns_http and self._http is not None:
            self._http.close()
            self._http = None

    @property
    def http(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=self.timeout)
        return self._http

    def _refresh(self) -> AccessToken:
        """Exchange the refresh token for a new access token. Must hold lock."""
        form = {
            "grant_type": "refresh_token",
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

        try:
            response = self.http.post(self.token_url, data=form)
        except httpx.HTTPError as e:
            self._log.error("Token refresh request failed", error=str(e))
            raise AuthError(f"Token refresh failed: {e}") from e

        if response.status_code != 200:
            self._log.error("Token refresh rejected", status_code=response.status_code)
            raise AuthError(
                "Token refresh rejected - check LWA credentials",
                status_code=response.status_code,
                response_body=response.text[:500],
            )

        try:
            parsed = parse_model(TokenResponse, response.json(), "token")
        except (ValueError, InvalidResponseError) as e:
            raise AuthError(f"Malformed token response: {e}") from e

        issued_at = self._clock()
        lifetime = timedelta(seconds=parsed.expires_in)
        # Never let the margin swallow the whole lifetime
        margin = min(self.expiry_margin, lifetime / 2)
        token = AccessToken(value=parsed.access_token, expires_at=issued_at + lifetime - margin)

        self.refresh_count += 1
        self._log.info(
            "Obtained new access token",
            expires_in=parsed.expires_in,
            refresh_count=self.refresh_count,
        )
        return token
