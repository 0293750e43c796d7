"""
Payment verification router.

Endpoints:
  POST /verify               - run one on-demand verification (auth: shared secret)
  GET  /logs                 - list verification logs, newest first (auth: admin JWT)
  GET  /logs/stats           - aggregate counts for the monitor (auth: admin JWT)
  GET  /logs/{log_id}        - a single verification log (auth: admin JWT)

POST /verify holds the request open for up to PAYMENT_VERIFY_TIMEOUT_SECONDS
while the verifier polls the inbox. Business outcomes (verified, not found
yet, mismatch, ...) are all 200 responses; only auth failures, malformed
bodies and server faults use other status codes.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import ValidationError

from app.auth import require_admin, verify_webhook_secret
from app.db import supabase_admin
from app.models.payment import (
    VerificationLog,
    VerificationStats,
    VerificationStatus,
    VerifyPaymentBody,
    VerifyPaymentResponse,
)
from app.services.audit_log import LOG_TABLE
from app.services.credential_cache import AuthError
from app.services.payment_verifier import (
    PaymentVerifier,
    VerifierSettings,
    build_payment_verifier,
)

logger = logging.getLogger(__name__)

router = APIRouter()

_REQUIRED_FIELDS = ("orderId", "transactionId", "amount")
_MISSING_FIELDS_DETAIL = "Missing required fields: orderId, transactionId, amount"

# How often the disconnect watcher checks whether the caller went away
_DISCONNECT_CHECK_SECONDS = 1.0


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

async def get_payment_verifier(request: Request) -> PaymentVerifier:
    """
    Return the process-wide PaymentVerifier, building it on first use.

    The verifier (and its credential cache) lives on ``app.state`` so every
    concurrent verification shares one access token.

    Raises:
        HTTPException 500 when Gmail or Supabase service settings are missing.
    """
    verifier = getattr(request.app.state, "payment_verifier", None)
    if verifier is not None:
        return verifier

    if supabase_admin is None:
        logger.error("SUPABASE_SERVICE_KEY is not set; cannot record verifications")
        raise HTTPException(status_code=500, detail="Server configuration error")

    try:
        settings = VerifierSettings.from_env()
    except ValueError as e:
        logger.error(f"Payment verifier misconfigured: {e}")
        raise HTTPException(status_code=500, detail="Server configuration error")

    verifier = build_payment_verifier(settings, supabase_admin)
    request.app.state.payment_verifier = verifier
    return verifier


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _validation_detail(error: ValidationError) -> str:
    """Turn a VerifyPaymentBody validation error into a short 400 message."""
    missing = False
    bad_amount = False
    for err in error.errors():
        field = err["loc"][0] if err["loc"] else None
        if field not in _REQUIRED_FIELDS:
            continue
        if err["type"] == "missing" or err.get("input") is None or field != "amount":
            missing = True
        else:
            bad_amount = True

    if missing:
        return _MISSING_FIELDS_DETAIL
    if bad_amount:
        return "Invalid amount"
    return "Invalid request body"


async def _parse_body(request: Request) -> VerifyPaymentBody:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid request body")

    try:
        return VerifyPaymentBody.model_validate(data)
    except ValidationError as e:
        detail = _validation_detail(e)
        logger.error(f"Rejected verification request: {detail}")
        raise HTTPException(status_code=400, detail=detail)


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    """Set ``cancel_event`` once the HTTP client disconnects."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected; cancelling verification")
            cancel_event.set()
            return
        await asyncio.sleep(_DISCONNECT_CHECK_SECONDS)


async def _stop_watcher(watcher: asyncio.Task) -> None:
    """Cancel the disconnect watcher and wait until it has finished."""
    watcher.cancel()
    try:
        await watcher
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.warning(f"Disconnect watcher failed: {e}")


# ---------------------------------------------------------------------------
# Verification endpoint
# ---------------------------------------------------------------------------

@router.post(
    "/verify",
    response_model=VerifyPaymentResponse,
    response_model_exclude_none=True,
    responses={
        200: {
            "description": "Verification finished (check `verified`)",
            "content": {
                "application/json": {
                    "example": {
                        "verified": True,
                        "message": "Payment verified successfully",
                        "payment": {
                            "issuer": "HDFC Bank",
                            "amount": "500.00",
                            "reference": "412345678901",
                            "sender_handle": "N/A",
                        },
                    }
                }
            },
        },
        400: {"description": "Missing or invalid fields"},
        401: {"description": "Missing or wrong shared secret"},
        500: {"description": "Server misconfiguration or mail provider auth failure"},
    },
)
async def verify_payment(
    request: Request,
    _: None = Depends(verify_webhook_secret),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
) -> VerifyPaymentResponse:
    """
    Wait for the payment confirmation email of an order and verify it.

    Body: ``{orderId, transactionId, amount, orderCreatedAt?}``. Only emails
    received after ``orderCreatedAt`` (default: now) are considered.
    """
    body = await _parse_body(request)
    verification_request = body.to_request()

    logger.info(
        f"Verification request received: transaction={verification_request.transaction_id}, "
        f"amount={verification_request.claimed_amount}, has_order_id={bool(verification_request.order_id)}"
    )

    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        result = await verifier.verify(verification_request, cancel_event=cancel_event)
    except AuthError:
        raise HTTPException(status_code=500, detail="Mail provider authentication failed")
    finally:
        await _stop_watcher(watcher)

    return VerifyPaymentResponse(
        verified=result.verified,
        message=result.message,
        payment=result.payment,
    )


# ---------------------------------------------------------------------------
# Admin monitor endpoints
# ---------------------------------------------------------------------------

def _admin_client():
    if supabase_admin is None:
        raise HTTPException(status_code=500, detail="Server configuration error")
    return supabase_admin


@router.get("/logs")
async def list_verification_logs(
    status: Optional[str] = None,
    transaction_id: Optional[str] = None,
    order_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    _admin_id: str = Depends(require_admin),
) -> list[VerificationLog]:
    """List verification logs, most recent first, optionally filtered."""
    if status is not None and status not in {s.value for s in VerificationStatus}:
        raise HTTPException(status_code=400, detail=f"Invalid status filter: {status}")

    query = _admin_client().table(LOG_TABLE).select("*")
    if status:
        query = query.eq("status", status)
    if transaction_id:
        query = query.eq("transaction_id", transaction_id)
    if order_id:
        query = query.eq("order_id", order_id)

    result = query.order("created_at", desc=True).limit(limit).execute()
    return [VerificationLog(**row) for row in result.data or []]


@router.get("/logs/stats")
async def verification_stats(
    _admin_id: str = Depends(require_admin),
) -> VerificationStats:
    """Counts by status and the share of runs that ended verified."""
    result = _admin_client().table(LOG_TABLE).select("status").execute()
    rows = result.data or []

    counts = {s.value: 0 for s in VerificationStatus}
    for row in rows:
        status = row.get("status")
        if status in counts:
            counts[status] += 1

    total = len(rows)
    verified = counts[VerificationStatus.VERIFIED.value]
    return VerificationStats(
        total=total,
        verified=verified,
        pending=counts[VerificationStatus.PENDING.value],
        failed=counts[VerificationStatus.FAILED.value],
        success_rate=(verified / total * 100) if total else 0.0,
    )


@router.get("/logs/{log_id}")
async def get_verification_log(
    log_id: str,
    _admin_id: str = Depends(require_admin),
) -> VerificationLog:
    result = _admin_client().table(LOG_TABLE).select("*").eq("id", log_id).execute()
    if not result.data:
        raise HTTPException(status_code=404, detail="Verification log not found")
    return VerificationLog(**result.data[0])
