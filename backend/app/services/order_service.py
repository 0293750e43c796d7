"""
Order service collaborator: marks an order's payment as verified.

Wraps the ``verify_order_payment`` database function (Supabase RPC), which
looks the order up by its internal transaction id, checks the amount and
records the payment details. The function is idempotent on the database side.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from supabase import Client

logger = logging.getLogger(__name__)

VERIFY_ORDER_RPC = "verify_order_payment"

# Tag stored on the order so admins can tell how the payment was confirmed
EMAIL_VERIFICATION_METHOD = "email_parse"


@dataclass(frozen=True)
class OrderUpdateResult:
    success: bool
    order_id: Optional[str] = None
    message: Optional[str] = None


class OrderService:
    """Calls the verify_order_payment RPC through the Supabase service client."""

    def __init__(self, client: Client) -> None:
        self._client = client

    def _call(self, params: dict) -> object:
        return self._client.rpc(VERIFY_ORDER_RPC, params).execute().data

    async def verify_order_payment(
        self,
        transaction_id: str,
        amount: Decimal,
        issuer: Optional[str],
        reference: Optional[str],
        method: str = EMAIL_VERIFICATION_METHOD,
    ) -> OrderUpdateResult:
        """
        Mark the order behind ``transaction_id`` as paid.

        Never raises: transport errors and responses that are not a
        ``{"success": true, ...}`` object are returned as a failed result.
        """
        params = {
            "p_transaction_id": transaction_id,
            "p_amount": str(amount),
            "p_bank_name": issuer or None,
            "p_upi_reference": reference or None,
            "p_verification_method": method,
            "p_email_verification_id": None,
        }
        try:
            data = await asyncio.to_thread(self._call, params)
        except Exception as e:
            logger.warning(f"{VERIFY_ORDER_RPC} call failed for {transaction_id}: {e}")
            return OrderUpdateResult(success=False, message=str(e))

        # PostgREST may wrap a single composite result in a list
        if isinstance(data, list) and len(data) == 1:
            data = data[0]
        if not isinstance(data, dict):
            logger.warning(f"{VERIFY_ORDER_RPC} returned unexpected payload: {data!r}")
            return OrderUpdateResult(success=False, message="Unexpected response from order service")

        if data.get("success") is not True:
            message = data.get("message") or data.get("error") or "Order service reported failure"
            logger.warning(f"Payment verification rejected for {transaction_id}: {message}")
            return OrderUpdateResult(success=False, order_id=data.get("order_id"), message=message)

        logger.info(f"Payment verified for order {data.get('order_id')}")
        return OrderUpdateResult(
            success=True,
            order_id=data.get("order_id"),
            message=data.get("message"),
        )
