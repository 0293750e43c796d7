"""
Authentication dependencies.

Two callers reach this API:

- The checkout page calls POST /api/payments/verify with a shared secret in
  ``Authorization: Bearer <secret>`` (verify_webhook_secret).
- The admin monitor reads verification logs with a Supabase session JWT whose
  user is flagged ``profiles.is_admin`` (get_current_user + require_admin).

Performance notes:
- get_current_user verifies JWTs locally with python-jose when SUPABASE_JWT_SECRET
  is set, avoiding a network round-trip to the Supabase Auth API.
"""

import hmac
import logging
import os
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import ExpiredSignatureError, JWTError, jwt

from app.db import supabase, supabase_admin

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level JWT secret, loaded once at startup.
# Set SUPABASE_JWT_SECRET in your environment (Project Settings > API > JWT Secret).
# When not set the implementation falls back to the Supabase Auth API.
# ---------------------------------------------------------------------------
SUPABASE_JWT_SECRET: Optional[str] = os.environ.get("SUPABASE_JWT_SECRET") or None


# ---------------------------------------------------------------------------
# Shared-secret auth for the verification endpoint
# ---------------------------------------------------------------------------

def get_webhook_secret() -> str:
    """
    Return the configured shared secret for POST /verify.

    Checks PAYMENT_WEBHOOK_SECRET first, then falls back to the legacy
    WEBHOOK_SECRET name.
    """
    return (
        os.getenv("PAYMENT_WEBHOOK_SECRET")
        or os.getenv("WEBHOOK_SECRET")
        or ""
    )


def verify_webhook_secret(authorization: Optional[str] = Header(None)) -> None:
    """
    Check ``Authorization: Bearer <secret>`` against the configured secret.

    Raises:
        HTTPException: 500 if no secret is configured (server misconfiguration),
                       401 if the header is missing or does not match.
    """
    expected = get_webhook_secret()
    if not expected:
        logger.error("PAYMENT_WEBHOOK_SECRET is not set; rejecting verification request")
        raise HTTPException(status_code=500, detail="Server configuration error")

    if not authorization or not hmac.compare_digest(
        authorization.encode(), f"Bearer {expected}".encode()
    ):
        logger.error("Invalid webhook secret")
        raise HTTPException(status_code=401, detail="Unauthorized")


# ---------------------------------------------------------------------------
# Supabase JWT auth for the admin monitor
# ---------------------------------------------------------------------------

async def get_current_user(authorization: Optional[str] = Header(None)) -> str:
    """
    Extract and verify JWT token from Authorization header.

    When SUPABASE_JWT_SECRET is set, verifies the JWT locally using python-jose
    (HS256) without a network call. Falls back to supabase.auth.get_user()
    when the secret is not configured.

    Args:
        authorization: Authorization header with format "Bearer <token>"

    Returns:
        user_id: Authenticated user's ID (the JWT ``sub`` claim)

    Raises:
        HTTPException: 401 if token is missing, invalid, or expired
    """
    if not authorization:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated"
        )

    # Extract token from "Bearer <token>" format
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        raise HTTPException(
            status_code=401,
            detail="Invalid authentication credentials"
        )

    token = parts[1]

    if SUPABASE_JWT_SECRET:
        return _verify_jwt_locally(token)

    return await _verify_jwt_remotely(token)


def _verify_jwt_locally(token: str) -> str:
    """
    Verify a Supabase JWT locally using python-jose and return the user ID.

    Raises:
        HTTPException 401 on any verification failure.
    """
    try:
        payload = jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},  # Supabase JWTs use 'authenticated' role, not a fixed audience
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id: Optional[str] = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    return user_id


async def _verify_jwt_remotely(token: str) -> str:
    """
    Verify a JWT via the Supabase Auth API (fallback when no JWT secret is set).

    Raises:
        HTTPException 401 on any verification failure.
    """
    try:
        response = supabase.auth.get_user(token)

        if not response.user:
            raise HTTPException(
                status_code=401,
                detail="Invalid token"
            )

        return response.user.id

    except HTTPException:
        raise
    except Exception as e:
        if "expired" in str(e).lower():
            raise HTTPException(
                status_code=401,
                detail="Token expired"
            )

        raise HTTPException(
            status_code=401,
            detail="Invalid token"
        )


async def require_admin(user_id: str = Depends(get_current_user)) -> str:
    """
    Allow only users whose profile row has ``is_admin = true``.

    Returns:
        The admin's user id.

    Raises:
        HTTPException: 403 if the user is not an admin, 500 on database error
    """
    if supabase_admin is None:
        raise HTTPException(status_code=500, detail="Server configuration error")

    try:
        result = (
            supabase_admin.table("profiles")
            .select("is_admin")
            .eq("id", user_id)
            .execute()
        )
    except Exception as e:
        logger.error(f"Failed to look up profile for {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to verify admin access")

    if not result.data or result.data[0].get("is_admin") is not True:
        raise HTTPException(status_code=403, detail="Admin access required")

    return user_id
