"""
Gmail OAuth2 access-token cache.

Exchanges the long-lived refresh token for a short-lived access token and
keeps it for the life of the process. One cache instance is shared by every
concurrent verification run. When several runs find the token expired at once
they share a single in-flight refresh task: the token endpoint is called once
and every waiter gets its token, or its AuthError.

Environment variables
---------------------
GMAIL_CLIENT_ID           OAuth2 client id.
GMAIL_CLIENT_SECRET       OAuth2 client secret.
GMAIL_REFRESH_TOKEN       Long-lived refresh token for the payments inbox.
GMAIL_TOKEN_URL           Token endpoint (default: Google's).
GMAIL_TOKEN_CACHE_SECONDS How long to keep an access token (default 3300).
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Google issues 60-minute tokens; keep them for 55
PROVIDER_TOKEN_LIFETIME_SECONDS = 60 * 60
DEFAULT_CACHE_SECONDS = 55 * 60

# A token is never kept closer than this to the provider-declared expiry
EXPIRY_MARGIN_SECONDS = 5 * 60


class AuthError(Exception):
    """Raised when the refresh token cannot be exchanged for an access token."""


@dataclass(frozen=True)
class GmailCredentials:
    """OAuth2 client settings plus the long-lived refresh token."""

    client_id: str
    client_secret: str
    refresh_token: str
    token_url: str = DEFAULT_TOKEN_URL

    @classmethod
    def from_env(cls) -> "GmailCredentials":
        """
        Build credentials from GMAIL_* environment variables.

        Raises:
            ValueError: if any of the three required variables is missing.
        """
        client_id = os.getenv("GMAIL_CLIENT_ID", "").strip()
        client_secret = os.getenv("GMAIL_CLIENT_SECRET", "").strip()
        refresh_token = os.getenv("GMAIL_REFRESH_TOKEN", "").strip()
        if not client_id or not client_secret or not refresh_token:
            raise ValueError(
                "GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET and GMAIL_REFRESH_TOKEN must be set"
            )
        return cls(
            client_id=client_id,
            client_secret=client_secret,
            refresh_token=refresh_token,
            token_url=os.getenv("GMAIL_TOKEN_URL", "").strip() or DEFAULT_TOKEN_URL,
        )


@dataclass(frozen=True)
class _CachedToken:
    access_token: str
    expires_at: float


class CredentialCache:
    """Process-wide holder of one expiring Gmail access token."""

    def __init__(
        self,
        credentials: GmailCredentials,
        http_client: httpx.AsyncClient,
        cache_seconds: float = DEFAULT_CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._credentials = credentials
        self._http = http_client
        self._cache_seconds = cache_seconds
        self._clock = clock
        self._token: Optional[_CachedToken] = None
        self._refresh_task: Optional[asyncio.Task] = None

    def _valid_token(self) -> Optional[str]:
        token = self._token
        if token is not None and self._clock() < token.expires_at:
            return token.access_token
        return None

    def invalidate(self) -> None:
        """Forget the cached token so the next call refreshes it."""
        self._token = None

    async def get_access_token(self) -> str:
        """
        Return a valid access token, refreshing it on miss or expiry.

        Concurrent callers that miss share one in-flight refresh and all get
        its outcome, token or AuthError alike.

        Raises:
            AuthError: if the token endpoint rejects the refresh or is unreachable.
                The cache is left as it was.
        """
        cached = self._valid_token()
        if cached:
            logger.debug("Using cached Gmail access token")
            return cached

        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_and_store())
            self._refresh_task.add_done_callback(self._clear_refresh_task)
        # A cancelled caller must not cancel the refresh other callers wait on
        return await asyncio.shield(self._refresh_task)

    def _clear_refresh_task(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the outcome as seen even if every waiter was cancelled
            task.exception()

    async def _refresh_and_store(self) -> str:
        token = await self._refresh()
        self._token = token
        return token.access_token

    async def _refresh(self) -> _CachedToken:
        logger.info("Refreshing Gmail access token")
        try:
            response = await self._http.post(
                self._credentials.token_url,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Gmail token endpoint unreachable: {e}")
            raise AuthError(f"Failed to refresh token: {e}") from e

        if response.status_code != 200:
            logger.error(f"Gmail token refresh failed with status {response.status_code}")
            raise AuthError(f"Failed to refresh token: {response.text}")

        try:
            tokens = response.json()
        except ValueError as e:
            raise AuthError("Failed to refresh token: invalid JSON response") from e

        access_token = tokens.get("access_token") if isinstance(tokens, dict) else None
        if not access_token:
            raise AuthError("No access token in response")

        expires_in = tokens.get("expires_in")
        if not isinstance(expires_in, (int, float)) or expires_in <= 0:
            expires_in = PROVIDER_TOKEN_LIFETIME_SECONDS
        lifetime = min(float(self._cache_seconds), max(expires_in - EXPIRY_MARGIN_SECONDS, 0))

        logger.info("Gmail access token refreshed")
        return _CachedToken(access_token=access_token, expires_at=self._clock() + lifetime)
