"""
Pydantic models for on-demand payment verification.

Models:
  VerifyPaymentBody       - inbound JSON body for POST /api/payments/verify
  VerificationRequest     - validated, immutable request handed to the verifier
  ParsedPayment           - payment facts extracted from a confirmation email
  VerifyPaymentResponse   - API response body
  VerificationLog         - row from the payment_verification_logs table
  VerificationStats       - aggregate counts for the admin monitor
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Which sub-step a failed verification run stopped at."""

    EMAIL_NOT_FOUND = "email_not_found"
    PARSE_FAILED = "parse_failed"
    AMOUNT_MISMATCH = "amount_mismatch"
    ORDER_UPDATE_FAILED = "order_update_failed"


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

class VerifyPaymentBody(BaseModel):
    """
    JSON body sent by the checkout page after an order is placed.

    Field names are camelCase on the wire. ``timestamp`` is the older name for
    ``orderCreatedAt`` and is only consulted when ``orderCreatedAt`` is absent.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1)
    transaction_id: str = Field(alias="transactionId", min_length=1)
    amount: Decimal = Field(gt=0, allow_inf_nan=False)
    order_created_at: Optional[datetime] = Field(default=None, alias="orderCreatedAt")
    timestamp: Optional[datetime] = None

    @field_validator("order_id", "transaction_id")
    @classmethod
    def _strip_ids(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    def to_request(self, now: Optional[datetime] = None) -> "VerificationRequest":
        created_at = self.order_created_at or self.timestamp or now or datetime.now(timezone.utc)
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return VerificationRequest(
            order_id=self.order_id,
            transaction_id=self.transaction_id,
            claimed_amount=self.amount,
            order_created_at=created_at,
        )


class VerificationRequest(BaseModel):
    """A single verification run's input. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    order_id: str
    transaction_id: str
    claimed_amount: Decimal = Field(gt=0, allow_inf_nan=False)
    order_created_at: datetime


# ---------------------------------------------------------------------------
# Parsed payment and response
# ---------------------------------------------------------------------------

class ParsedPayment(BaseModel):
    """Payment facts pulled out of a bank / UPI app confirmation email."""
    model_config = ConfigDict(frozen=True)

    issuer: str
    amount: Decimal
    reference: str = "N/A"
    sender_handle: str = "N/A"


class VerifyPaymentResponse(BaseModel):
    """
    Response for POST /api/payments/verify.

    Every business outcome (verified, not found yet, mismatch, ...) is a 200
    with ``verified`` set accordingly; ``payment`` is only present on success.
    """
    verified: bool
    message: str
    payment: Optional[ParsedPayment] = None


# ---------------------------------------------------------------------------
# Audit rows
# ---------------------------------------------------------------------------

class VerificationLog(BaseModel):
    """Full payment_verification_logs record from the database."""
    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: str
    order_id: Optional[str] = None
    transaction_id: str
    amount: Decimal
    status: VerificationStatus
    email_found: bool = False
    email_parsed: bool = False
    amount_matched: bool = False
    issuer: Optional[str] = None
    reference: Optional[str] = None
    sender_handle: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    verified_at: Optional[str] = None


class VerificationStats(BaseModel):
    """Aggregate counts shown on the admin verification monitor."""

    total: int
    verified: int
    pending: int
    failed: int
    success_rate: float
