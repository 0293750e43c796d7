"""
Payment email parser.

Pulls an amount, an issuer and a reference code out of the plain-text body of
a bank / UPI app confirmation email. Each fact is extracted with an ordered
rule list; the first rule that matches wins, so the priority order is the
order of the tuples below.

The amount rules are shared with the verifier's inbox scan, which looks for
any amount in a message that equals the claimed order total.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from app.models.payment import ParsedPayment

logger = logging.getLogger(__name__)

# Two amounts are the same payment if they differ by less than one paisa
AMOUNT_TOLERANCE = Decimal("0.01")

NOT_AVAILABLE = "N/A"
UNKNOWN_ISSUER = "Unknown"

_NUMBER = r"(\d[\d,]*(?:\.\d{1,2})?)"

# (label, pattern): tried in order, first match wins
AMOUNT_RULES: List[tuple[str, re.Pattern]] = [
    ("Rs", re.compile(r"\bRs\.?\s*" + _NUMBER, re.IGNORECASE)),
    ("₹", re.compile(r"₹\s*" + _NUMBER)),
    ("INR", re.compile(r"\bINR\s*" + _NUMBER, re.IGNORECASE)),
]

# Labels are case-insensitive; the code itself must be uppercase alphanumeric
REFERENCE_RULES: List[tuple[str, re.Pattern]] = [
    ("UPI Ref", re.compile(r"(?i:UPI\s+Ref(?:erence)?)[^:\n]*:\s*([A-Z0-9]+)")),
    ("Reference", re.compile(r"(?i:Reference)[^:\n]*:\s*([A-Z0-9]+)")),
    ("Transaction ID", re.compile(r"(?i:Transaction\s+ID)[^:\n]*:\s*([A-Z0-9]+)")),
]

# Sender-domain fragment → issuer display name, matched case-insensitively
ISSUER_RULES: List[tuple[str, str]] = [
    ("hdfcbank", "HDFC Bank"),
    ("phonepe", "PhonePe"),
    ("paytm", "Paytm"),
    ("icicibank", "ICICI Bank"),
    ("axisbank", "Axis Bank"),
    ("sbi", "SBI"),
    ("yesbank", "Yes Bank"),
    ("google", "Google Pay"),
]


class ParseError(ValueError):
    """Raised when no payment amount can be extracted from an email body."""


def _to_decimal(raw: str) -> Optional[Decimal]:
    try:
        return Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None


def amounts_match(first: Decimal, second: Decimal) -> bool:
    """True when two amounts are within AMOUNT_TOLERANCE of each other (exclusive)."""
    return abs(Decimal(first) - Decimal(second)) < AMOUNT_TOLERANCE


def extract_amount(text: str) -> Optional[Decimal]:
    """
    Return the first amount found by the highest-priority matching rule.

    Rule priority beats position: an "Rs." amount late in the text wins over
    an "INR" amount earlier in it.
    """
    for label, pattern in AMOUNT_RULES:
        for match in pattern.finditer(text):
            value = _to_decimal(match.group(1))
            if value is not None:
                logger.debug(f"Amount {value} matched by {label} rule")
                return value
    return None


def find_amounts(text: str) -> List[Decimal]:
    """Return every amount any rule can find, in rule order then text order."""
    amounts: List[Decimal] = []
    for _label, pattern in AMOUNT_RULES:
        for match in pattern.finditer(text):
            value = _to_decimal(match.group(1))
            if value is not None:
                amounts.append(value)
    return amounts


def contains_amount(text: str, expected: Decimal) -> bool:
    """True if any amount in the text matches ``expected`` within tolerance."""
    return any(amounts_match(value, expected) for value in find_amounts(text))


def extract_reference(text: str) -> str:
    for _label, pattern in REFERENCE_RULES:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return NOT_AVAILABLE


def identify_issuer(sender: Optional[str]) -> str:
    """Map the From header to a bank / payment app name, or "Unknown"."""
    sender_lower = (sender or "").lower()
    for fragment, issuer in ISSUER_RULES:
        if fragment in sender_lower:
            return issuer
    return UNKNOWN_ISSUER


def parse_payment(text: str, sender: Optional[str]) -> ParsedPayment:
    """
    Parse a confirmation email body into a ParsedPayment.

    Args:
        text:   Plain-text email body (see content_extractor.extract_body).
        sender: Raw From header, used only to identify the issuer.

    Raises:
        ParseError: if no amount rule matches.
    """
    amount = extract_amount(text)
    if amount is None:
        raise ParseError("no amount found")

    payment = ParsedPayment(
        issuer=identify_issuer(sender),
        amount=amount,
        reference=extract_reference(text),
        # VPA extraction from the body is not attempted
        sender_handle=NOT_AVAILABLE,
    )
    logger.info(
        f"Parsed payment: amount={payment.amount}, issuer={payment.issuer}, "
        f"reference={payment.reference}"
    )
    return payment
