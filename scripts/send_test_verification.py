#!/usr/bin/env python3
"""
Dev helper: send a payment verification request to the local backend.

Builds the JSON body the checkout page sends after an order is placed and
POST-s it to /api/payments/verify, then prints the response. The request is
held open while the backend polls the payments inbox, so send the matching
UPI payment (or forward a bank alert email) while this script waits.

Usage
-----
# Verify Rs. 500 for TXN123, order created just now, against localhost:8000
python scripts/send_test_verification.py --transaction-id TXN123 --amount 500

# Order was created 10 minutes ago (only emails after that are considered)
python scripts/send_test_verification.py --transaction-id TXN123 --amount 500 --minutes-ago 10

# Print the request without sending it
python scripts/send_test_verification.py --transaction-id TXN123 --amount 500 --dry-run

# Target a different backend URL
python scripts/send_test_verification.py --url http://staging.example.com ...

Environment / .env
------------------
PAYMENT_WEBHOOK_SECRET   Shared bearer secret (required unless --secret).
                         Falls back to WEBHOOK_SECRET for backward
                         compatibility.
"""

import argparse
import json
import os
import sys
import textwrap
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

import httpx
from dotenv import load_dotenv


VERIFY_PATH = "/api/payments/verify"


# ---------------------------------------------------------------------------
# Secret resolution
# ---------------------------------------------------------------------------

def resolve_secret() -> str:
    """
    Return the verification secret from environment.

    Checks PAYMENT_WEBHOOK_SECRET first, then falls back to the legacy
    WEBHOOK_SECRET.
    """
    return (
        os.getenv("PAYMENT_WEBHOOK_SECRET")
        or os.getenv("WEBHOOK_SECRET")
        or ""
    )


# ---------------------------------------------------------------------------
# Payload builder
# ---------------------------------------------------------------------------

def build_payload(
    transaction_id: str,
    amount: Decimal,
    order_id: Optional[str] = None,
    minutes_ago: float = 0,
    now: Optional[datetime] = None,
) -> dict:
    """
    Build the POST /api/payments/verify body.

    ``orderCreatedAt`` is ``now - minutes_ago`` in UTC; the backend only looks
    at emails received after it. ``amount`` is sent as a string so no float
    rounding happens on the way.
    """
    now = now or datetime.now(timezone.utc)
    created_at = now - timedelta(minutes=minutes_ago)
    return {
        "orderId": order_id or f"test-order-{transaction_id}",
        "transactionId": transaction_id,
        "amount": str(amount),
        "orderCreatedAt": created_at.isoformat(),
    }


def _parse_amount(raw: str) -> Decimal:
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {raw!r}")
    if not amount.is_finite() or amount <= 0:
        raise argparse.ArgumentTypeError(f"amount must be positive: {raw!r}")
    return amount


# ---------------------------------------------------------------------------
# Pretty printer
# ---------------------------------------------------------------------------

def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        body = response.json()
        print(json.dumps(body, indent=2))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    # Locate project root (scripts/ lives one level below the root)
    script_dir = Path(__file__).resolve().parent
    project_root = script_dir.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_test_verification.py",
        description=textwrap.dedent("""\
            Send a payment verification request to the payments backend.

            Reads PAYMENT_WEBHOOK_SECRET (or legacy WEBHOOK_SECRET) from the
            environment or a .env file in the project root.
        """),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--url",
        default="http://localhost:8000",
        help="Backend base URL (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--transaction-id",
        required=True,
        help="Internal transaction id of the order (e.g. TXN1729330000)",
    )
    parser.add_argument(
        "--amount",
        required=True,
        type=_parse_amount,
        help="Amount the customer paid, in rupees (e.g. 500 or 499.50)",
    )
    parser.add_argument(
        "--order-id",
        default=None,
        help="Order id (default: test-order-<transaction id>)",
    )
    parser.add_argument(
        "--minutes-ago",
        type=float,
        default=0,
        help="How long ago the order was created (default: 0)",
    )
    parser.add_argument(
        "--secret",
        default=None,
        metavar="SECRET",
        help="Override the shared secret. Defaults to PAYMENT_WEBHOOK_SECRET.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=330,
        help="Client timeout in seconds; keep above the server's verify timeout (default: 330)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the request body without sending it.",
    )

    args = parser.parse_args()

    secret = args.secret or resolve_secret()
    if not secret and not args.dry_run:
        print(
            "ERROR: No verification secret found.\n"
            "Set PAYMENT_WEBHOOK_SECRET in your environment or .env file, "
            "or pass --secret.",
            file=sys.stderr,
        )
        return 1

    payload = build_payload(
        transaction_id=args.transaction_id,
        amount=args.amount,
        order_id=args.order_id,
        minutes_ago=args.minutes_ago,
    )
    endpoint = f"{args.url.rstrip('/')}{VERIFY_PATH}"

    print(f"Endpoint    : {endpoint}")
    print(f"Transaction : {payload['transactionId']}")
    print(f"Amount      : {payload['amount']}")
    print(f"Created at  : {payload['orderCreatedAt']}")

    if args.dry_run:
        print("\n[DRY RUN] Payload:")
        print(json.dumps(payload, indent=2))
        return 0

    print("\nWaiting for the backend to find the payment email...")
    try:
        response = httpx.post(
            endpoint,
            json=payload,
            headers={"Authorization": f"Bearer {secret}"},
            timeout=args.timeout,
        )
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the backend running? Start it with:\n"
            "  cd backend && source .venv/bin/activate && uvicorn app.main:app --reload",
            file=sys.stderr,
        )
        return 1
    except httpx.HTTPError as exc:
        print(f"\nERROR: {exc}", file=sys.stderr)
        return 1

    _print_response(response)
    if response.status_code != 200:
        return 1
    return 0 if response.json().get("verified") else 2


if __name__ == "__main__":
    sys.exit(main())
