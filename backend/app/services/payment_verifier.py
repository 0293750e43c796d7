"""
On-demand payment verification.

Given an order and the amount the customer claims to have paid, poll the
payments inbox until a confirmation email carrying that amount arrives (or the
deadline passes), parse it, reconcile it against the order and mark the order
paid. Every step is recorded on a payment_verification_logs row.

Each run ends in exactly one terminal state:

  verified
  failed(email_not_found)      no matching email before the deadline
  failed(parse_failed)         matched email has no extractable amount
  failed(amount_mismatch)      parsed amount differs from the claimed one
  failed(order_update_failed)  verify_order_payment RPC reported failure

These are business outcomes, returned rather than raised. The only exception
that escapes a run is AuthError (no mail access token can be obtained).

Environment variables
---------------------
PAYMENT_VERIFY_TIMEOUT_SECONDS  Poll-loop deadline (default 300; 0 polls once).
PAYMENT_POLL_INTERVAL_SECONDS   Fixed poll interval (default 5).
GMAIL_API_BASE_URL              Gmail REST base URL.
GMAIL_SEARCH_MAX_RESULTS        Messages per search (default 20).
GMAIL_HTTP_TIMEOUT_SECONDS      Per-request HTTP timeout (default 15).
GMAIL_TOKEN_CACHE_SECONDS       Access-token cache lifetime (default 3300).
Plus the GMAIL_* OAuth variables read by credential_cache.GmailCredentials.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

import httpx
from supabase import Client

from app.models.payment import (
    FailureReason,
    ParsedPayment,
    VerificationRequest,
    VerificationStatus,
)
from app.services.audit_log import VerificationAuditLog
from app.services.content_extractor import extract_body
from app.services.credential_cache import (
    DEFAULT_CACHE_SECONDS,
    AuthError,
    CredentialCache,
    GmailCredentials,
)
from app.services.mailbox_client import (
    DEFAULT_API_BASE_URL,
    DEFAULT_MAX_RESULTS,
    CandidateMessage,
    GmailMailboxClient,
    MailboxError,
)
from app.services.order_service import EMAIL_VERIFICATION_METHOD, OrderService
from app.services.payment_parser import (
    ParseError,
    amounts_match,
    contains_amount,
    parse_payment,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 15.0

# Bodies shorter than this are treated as "could not extract"
MIN_BODY_LENGTH = 10

# Caller-facing messages
MSG_VERIFIED = "Payment verified successfully"
MSG_NOT_FOUND = "Payment email not found yet"
MSG_PARSE_FAILED = "Could not parse payment email"
MSG_AMOUNT_MISMATCH = "Payment amount does not match"
MSG_ORDER_UPDATE_FAILED = "Failed to update order status"

CANCELLED_ERROR_MESSAGE = "Verification cancelled before a matching email arrived"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def _positive_number_env(name: str, default: float, allow_zero: bool = False) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if allow_zero and value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    if not allow_zero and value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class VerifierSettings:
    credentials: GmailCredentials
    api_base_url: str = DEFAULT_API_BASE_URL
    max_results: int = DEFAULT_MAX_RESULTS
    token_cache_seconds: float = DEFAULT_CACHE_SECONDS
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS

    @classmethod
    def from_env(cls) -> "VerifierSettings":
        """
        Read settings from the environment.

        Raises:
            ValueError: if OAuth settings are missing or a numeric setting is invalid.
        """
        return cls(
            credentials=GmailCredentials.from_env(),
            api_base_url=os.getenv("GMAIL_API_BASE_URL", "").strip() or DEFAULT_API_BASE_URL,
            max_results=int(_positive_number_env("GMAIL_SEARCH_MAX_RESULTS", DEFAULT_MAX_RESULTS)),
            token_cache_seconds=_positive_number_env("GMAIL_TOKEN_CACHE_SECONDS", DEFAULT_CACHE_SECONDS),
            http_timeout_seconds=_positive_number_env("GMAIL_HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS),
            timeout_seconds=_positive_number_env(
                "PAYMENT_VERIFY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS, allow_zero=True
            ),
            poll_interval_seconds=_positive_number_env("PAYMENT_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS),
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class VerificationResult:
    verified: bool
    message: str
    payment: Optional[ParsedPayment] = None
    failure_reason: Optional[FailureReason] = None
    log_id: Optional[str] = None


@dataclass(frozen=True)
class MatchedEmail:
    """A fetched message whose body contains the claimed amount."""

    message: CandidateMessage
    body: str


@dataclass
class _RunLog:
    id: Optional[str]
    closed: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------

class PaymentVerifier:
    """Runs verification requests against a mailbox, an audit log and the order service."""

    def __init__(
        self,
        mailbox: GmailMailboxClient,
        audit_log: VerificationAuditLog,
        order_service: OrderService,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._mailbox = mailbox
        self._audit = audit_log
        self._orders = order_service
        self._timeout = timeout_seconds
        self._interval = poll_interval_seconds
        self._clock = clock
        self._now = now
        self._http_client = http_client

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    async def aclose(self) -> None:
        """Close the HTTP client this verifier was built with, if any."""
        if self._http_client is not None:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def verify(
        self,
        request: VerificationRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> VerificationResult:
        """
        Execute one verification run.

        ``cancel_event`` lets the caller stop polling early (e.g. the HTTP
        client disconnected); a cancelled run ends as failed(email_not_found).
        If the task running this method is cancelled instead, the log is still
        closed as failed before the cancellation propagates.

        Raises:
            AuthError: if the mail provider refuses to issue an access token.
        """
        log_id = await self._audit.create({
            "order_id": request.order_id,
            "transaction_id": request.transaction_id,
            "amount": str(request.claimed_amount),
            "status": VerificationStatus.PENDING.value,
            "email_found": False,
            "email_parsed": False,
            "amount_matched": False,
        })
        run = _RunLog(id=log_id)

        try:
            return await self._run(request, run, cancel_event)
        except asyncio.CancelledError:
            if not run.closed:
                logger.info(f"Verification of {request.transaction_id} cancelled mid-run")
                await asyncio.shield(self._close(run, {
                    "status": VerificationStatus.FAILED.value,
                    "error_message": CANCELLED_ERROR_MESSAGE,
                }))
            raise

    async def _run(
        self,
        request: VerificationRequest,
        run: _RunLog,
        cancel_event: Optional[asyncio.Event],
    ) -> VerificationResult:
        try:
            matched = await self._wait_for_payment_email(request, cancel_event)
        except AuthError as e:
            logger.error(f"Mail provider authentication failed for {request.transaction_id}")
            await self._close(run, {
                "status": VerificationStatus.FAILED.value,
                "error_message": f"Mail provider authentication failed: {e}",
            })
            raise

        if matched is None:
            if cancel_event is not None and cancel_event.is_set():
                error_message = CANCELLED_ERROR_MESSAGE
            else:
                error_message = f"No payment email found within {self._timeout:g} seconds"
            return await self._fail(
                run,
                FailureReason.EMAIL_NOT_FOUND,
                MSG_NOT_FOUND,
                {"email_found": False, "error_message": error_message},
            )

        logger.info(f"Found payment email {matched.message.id} for {request.transaction_id}")
        await self._audit.update(run.id, {"email_found": True})

        try:
            payment = parse_payment(matched.body, matched.message.sender)
        except ParseError:
            logger.info(f"Could not parse payment from email {matched.message.id}")
            return await self._fail(
                run,
                FailureReason.PARSE_FAILED,
                MSG_PARSE_FAILED,
                {
                    "email_parsed": False,
                    "error_message": "Could not parse payment details from email",
                },
            )

        await self._audit.update(run.id, {
            "email_parsed": True,
            "issuer": payment.issuer,
            "reference": payment.reference,
            "sender_handle": payment.sender_handle,
        })

        if not amounts_match(payment.amount, request.claimed_amount):
            logger.info(
                f"Amount mismatch for {request.transaction_id}: "
                f"{payment.amount} vs {request.claimed_amount}"
            )
            return await self._fail(
                run,
                FailureReason.AMOUNT_MISMATCH,
                MSG_AMOUNT_MISMATCH,
                {
                    "amount_matched": False,
                    "error_message": (
                        f"Amount mismatch: expected {request.claimed_amount}, got {payment.amount}"
                    ),
                },
            )

        await self._audit.update(run.id, {"amount_matched": True})

        order = await self._orders.verify_order_payment(
            transaction_id=request.transaction_id,
            amount=payment.amount,
            issuer=payment.issuer,
            reference=payment.reference,
            method=EMAIL_VERIFICATION_METHOD,
        )
        if not order.success:
            return await self._fail(
                run,
                FailureReason.ORDER_UPDATE_FAILED,
                MSG_ORDER_UPDATE_FAILED,
                {"error_message": f"Failed to update order status: {order.message or 'unknown error'}"},
            )

        await self._close(run, {
            "status": VerificationStatus.VERIFIED.value,
            "verified_at": self._now().isoformat(),
        })
        logger.info(f"Payment verified for {request.transaction_id} ({payment.issuer})")
        return VerificationResult(
            verified=True,
            message=MSG_VERIFIED,
            payment=payment,
            log_id=run.id,
        )

    async def _close(self, run: _RunLog, fields: dict) -> None:
        """Write the terminal status; a log is closed at most once."""
        run.closed = True
        await self._audit.update(run.id, fields)

    async def _fail(
        self,
        run: _RunLog,
        reason: FailureReason,
        message: str,
        fields: dict,
    ) -> VerificationResult:
        await self._close(run, {"status": VerificationStatus.FAILED.value, **fields})
        logger.info(f"Verification run {run.id} failed: {reason.value}")
        return VerificationResult(
            verified=False,
            message=message,
            failure_reason=reason,
            log_id=run.id,
        )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _wait_for_payment_email(
        self,
        request: VerificationRequest,
        cancel_event: Optional[asyncio.Event],
    ) -> Optional[MatchedEmail]:
        """Poll the inbox at a fixed interval until a match, the deadline or cancellation."""
        started = self._clock()
        deadline = started + self._timeout
        poll = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Verification of {request.transaction_id} cancelled by caller")
                return None

            poll += 1
            logger.info(
                f"Poll #{poll} for {request.transaction_id} "
                f"({int(self._clock() - started)}s elapsed)"
            )
            try:
                matched = await self._scan_inbox(request.order_created_at, request.claimed_amount)
            except AuthError:
                raise
            except Exception as e:
                logger.warning(f"Poll #{poll} failed: {e}")
                matched = None

            if matched is not None:
                return matched

            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.info(f"Timeout reached after {poll} polls")
                return None
            await self._pause(min(self._interval, remaining), cancel_event)

    async def _pause(self, seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _scan_inbox(self, since: datetime, amount: Decimal) -> Optional[MatchedEmail]:
        """
        One poll: search, fetch each hit and look for the claimed amount.

        A message that fails to fetch is skipped; the rest of the batch is
        still checked.
        """
        summaries = await self._mailbox.search_since(since)
        if not summaries:
            logger.info("No emails found after order creation time")
            return None

        for summary in summaries:
            try:
                message = await self._mailbox.fetch_full(summary.id)
            except MailboxError as e:
                logger.warning(f"Skipping message {summary.id}: {e}")
                continue

            body = extract_body(message)
            logger.debug(
                f"Email {message.id} from={message.sender!r} "
                f"subject={message.subject!r} date={message.date!r}"
            )
            if len(body) < MIN_BODY_LENGTH:
                logger.debug(f"Could not extract body of {message.id}")
                continue
            logger.debug(f"Body: {body[:150]}")

            if contains_amount(body, amount):
                return MatchedEmail(message=message, body=body)

        return None


def build_payment_verifier(settings: VerifierSettings, supabase_client: Client) -> PaymentVerifier:
    """Wire a PaymentVerifier with one shared HTTP client and credential cache."""
    http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout_seconds))
    credential_cache = CredentialCache(
        settings.credentials,
        http_client,
        cache_seconds=settings.token_cache_seconds,
    )
    mailbox = GmailMailboxClient(
        credential_cache,
        http_client,
        base_url=settings.api_base_url,
        max_results=settings.max_results,
    )
    return PaymentVerifier(
        mailbox=mailbox,
        audit_log=VerificationAuditLog(supabase_client),
        order_service=OrderService(supabase_client),
        timeout_seconds=settings.timeout_seconds,
        poll_interval_seconds=settings.poll_interval_seconds,
        http_client=http_client,
    )
