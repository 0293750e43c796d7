"""
Gmail REST API client for the payments inbox.

Two calls are needed by the verifier:

  search_since(instant)  - ids of messages received after ``instant``,
                           searched across the whole mailbox (``in:anywhere``)
  fetch_full(message_id) - the full message (headers + payload tree)

Every call asks the shared CredentialCache for a token, which is free on a
cache hit. AuthError from the cache is not wrapped: without a token no further
progress is possible and the verifier must abort.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx

from app.services.credential_cache import CredentialCache

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
DEFAULT_MAX_RESULTS = 20


class MailboxError(Exception):
    """A single search or fetch call against the mail API failed."""


@dataclass(frozen=True)
class MessageSummary:
    """One search hit: just enough to fetch the full message."""

    id: str
    thread_id: Optional[str] = None


@dataclass(frozen=True)
class CandidateMessage:
    """A fully fetched message. Transient: fetched fresh on each poll."""

    id: str
    sender: str
    subject: str
    date: str
    payload: dict = field(default_factory=dict)
    thread_id: Optional[str] = None
    snippet: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "CandidateMessage":
        payload = data.get("payload") or {}
        headers = {
            (h.get("name") or "").lower(): h.get("value") or ""
            for h in payload.get("headers") or []
        }
        return cls(
            id=data.get("id", ""),
            sender=headers.get("from", ""),
            subject=headers.get("subject", ""),
            date=headers.get("date", ""),
            payload=payload,
            thread_id=data.get("threadId"),
            snippet=data.get("snippet", ""),
        )


def build_search_query(since: datetime) -> str:
    """Gmail query for every message received after ``since`` (unix seconds)."""
    return f"in:anywhere after:{int(since.timestamp())}"


class GmailMailboxClient:
    """Point-in-time search and fetch against ``users/me`` of the Gmail API."""

    def __init__(
        self,
        credential_cache: CredentialCache,
        http_client: httpx.AsyncClient,
        base_url: str = DEFAULT_API_BASE_URL,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> None:
        self._credentials = credential_cache
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._max_results = max_results

    async def _get(self, path: str, params: dict) -> Any:
        token = await self._credentials.get_access_token()
        url = f"{self._base_url}/users/me/{path}"
        try:
            response = await self._http.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise MailboxError(f"Gmail request failed: {e}") from e

        if response.status_code == 401:
            # Token revoked or expired early; force a refresh on the next call
            self._credentials.invalidate()
        if response.status_code != 200:
            raise MailboxError(
                f"Gmail returned {response.status_code} for {path}: {response.text[:200]}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise MailboxError(f"Gmail returned invalid JSON for {path}") from e

    async def search_since(
        self, since: datetime, max_results: Optional[int] = None
    ) -> list[MessageSummary]:
        """
        Return up to ``max_results`` most recent messages received after ``since``.

        Raises:
            MailboxError: on a non-2xx response, transport error or bad JSON.
            AuthError:    if no access token can be obtained.
        """
        query = build_search_query(since)
        data = await self._get(
            "messages",
            {"q": query, "maxResults": max_results or self._max_results},
        )
        messages = data.get("messages") if isinstance(data, dict) else None
        summaries = [
            MessageSummary(id=m["id"], thread_id=m.get("threadId"))
            for m in messages or []
            if isinstance(m, dict) and m.get("id")
        ]
        logger.debug(f"Gmail search {query!r} returned {len(summaries)} message(s)")
        return summaries

    async def fetch_full(self, message_id: str) -> CandidateMessage:
        """
        Fetch one message with ``format=full``.

        Raises:
            MailboxError: on a non-2xx response, transport error or bad JSON.
            AuthError:    if no access token can be obtained.
        """
        data = await self._get(f"messages/{message_id}", {"format": "full"})
        if not isinstance(data, dict):
            raise MailboxError(f"Unexpected Gmail response for message {message_id}")
        return CandidateMessage.from_api(data)
