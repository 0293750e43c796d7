"""
Unit tests for authentication dependencies.
Tests the verification shared secret, JWT verification and the admin check.
"""

import os
import time

import jwt as pyjwt
import pytest
from fastapi import HTTPException
from unittest.mock import Mock, patch

from app.auth import (
    _verify_jwt_locally,
    get_current_user,
    get_webhook_secret,
    require_admin,
    verify_webhook_secret,
)


class TestVerifyWebhookSecret:
    """Shared-secret check for POST /api/payments/verify."""

    def test_matching_secret_passes(self):
        with patch.dict(os.environ, {"PAYMENT_WEBHOOK_SECRET": "s3cret"}):
            assert verify_webhook_secret("Bearer s3cret") is None

    def test_missing_header_raises_401(self):
        with patch.dict(os.environ, {"PAYMENT_WEBHOOK_SECRET": "s3cret"}):
            with pytest.raises(HTTPException) as exc_info:
                verify_webhook_secret(None)

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Unauthorized"

    def test_wrong_secret_raises_401(self):
        with patch.dict(os.environ, {"PAYMENT_WEBHOOK_SECRET": "s3cret"}):
            with pytest.raises(HTTPException) as exc_info:
                verify_webhook_secret("Bearer guess")

        assert exc_info.value.status_code == 401

    def test_secret_without_bearer_prefix_raises_401(self):
        with patch.dict(os.environ, {"PAYMENT_WEBHOOK_SECRET": "s3cret"}):
            with pytest.raises(HTTPException) as exc_info:
                verify_webhook_secret("s3cret")

        assert exc_info.value.status_code == 401

    def test_unconfigured_secret_raises_500(self):
        with patch.dict(os.environ, {"PAYMENT_WEBHOOK_SECRET": "", "WEBHOOK_SECRET": ""}):
            with pytest.raises(HTTPException) as exc_info:
                verify_webhook_secret("Bearer anything")

        assert exc_info.value.status_code == 500
        assert exc_info.value.detail == "Server configuration error"

    def test_legacy_variable_is_used_as_fallback(self):
        with patch.dict(os.environ, {"PAYMENT_WEBHOOK_SECRET": "", "WEBHOOK_SECRET": "legacy"}):
            assert get_webhook_secret() == "legacy"
            assert verify_webhook_secret("Bearer legacy") is None


class TestGetCurrentUser:
    """Test JWT token verification and user extraction."""

    @pytest.mark.asyncio
    async def test_valid_token_returns_user_id(self):
        """Valid JWT token should return authenticated user_id."""
        mock_token = "valid.jwt.token"

        with patch("app.auth.SUPABASE_JWT_SECRET", None), patch("app.auth.supabase") as mock_supabase:
            mock_supabase.auth.get_user.return_value = Mock(user=Mock(id="user-123"))

            user_id = await get_current_user(f"Bearer {mock_token}")

            assert user_id == "user-123"
            mock_supabase.auth.get_user.assert_called_once_with(mock_token)

    @pytest.mark.asyncio
    async def test_missing_token_raises_401(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(None)

        assert exc_info.value.status_code == 401
        assert "Not authenticated" in str(exc_info.value.detail)

    @pytest.mark.asyncio
    async def test_missing_bearer_prefix_raises_401(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user("invalid.jwt.token")

        assert exc_info.value.status_code == 401
        assert "Invalid authentication" in str(exc_info.value.detail)

    @pytest.mark.asyncio
    async def test_expired_token_raises_401(self):
        """Supabase rejecting an expired token should surface as 'Token expired'."""
        with patch("app.auth.SUPABASE_JWT_SECRET", None), patch("app.auth.supabase") as mock_supabase:
            mock_supabase.auth.get_user.side_effect = Exception("Token expired")

            with pytest.raises(HTTPException) as exc_info:
                await get_current_user("Bearer expired.jwt.token")

            assert exc_info.value.status_code == 401
            assert "expired" in str(exc_info.value.detail).lower()

    @pytest.mark.asyncio
    async def test_no_user_in_response_raises_401(self):
        with patch("app.auth.SUPABASE_JWT_SECRET", None), patch("app.auth.supabase") as mock_supabase:
            mock_supabase.auth.get_user.return_value = Mock(user=None)

            with pytest.raises(HTTPException) as exc_info:
                await get_current_user("Bearer valid.jwt.token")

            assert exc_info.value.status_code == 401
            assert "Invalid token" in str(exc_info.value.detail)


class TestVerifyJwtLocally:
    """
    Local HS256 verification path, exercised with real tokens signed by PyJWT.
    """

    TEST_SECRET = "test-jwt-secret-for-unit-tests"

    def _make_token(self, payload: dict, secret: str = TEST_SECRET) -> str:
        return pyjwt.encode(payload, secret, algorithm="HS256")

    def test_valid_token_returns_user_id(self):
        token = self._make_token({"sub": "user-abc", "exp": int(time.time()) + 3600})

        with patch("app.auth.SUPABASE_JWT_SECRET", self.TEST_SECRET):
            assert _verify_jwt_locally(token) == "user-abc"

    def test_token_with_authenticated_audience_is_accepted(self):
        token = self._make_token({
            "sub": "user-abc",
            "aud": "authenticated",
            "exp": int(time.time()) + 3600,
        })

        with patch("app.auth.SUPABASE_JWT_SECRET", self.TEST_SECRET):
            assert _verify_jwt_locally(token) == "user-abc"

    def test_expired_token_raises_401(self):
        token = self._make_token({"sub": "user-abc", "exp": int(time.time()) - 60})

        with patch("app.auth.SUPABASE_JWT_SECRET", self.TEST_SECRET):
            with pytest.raises(HTTPException) as exc_info:
                _verify_jwt_locally(token)

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Token expired"

    def test_wrong_signature_raises_401(self):
        token = self._make_token({"sub": "user-abc", "exp": int(time.time()) + 3600}, secret="other")

        with patch("app.auth.SUPABASE_JWT_SECRET", self.TEST_SECRET):
            with pytest.raises(HTTPException) as exc_info:
                _verify_jwt_locally(token)

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Invalid token"

    def test_missing_sub_raises_401(self):
        token = self._make_token({"exp": int(time.time()) + 3600})

        with patch("app.auth.SUPABASE_JWT_SECRET", self.TEST_SECRET):
            with pytest.raises(HTTPException) as exc_info:
                _verify_jwt_locally(token)

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_get_current_user_prefers_local_verification(self):
        token = self._make_token({"sub": "user-local", "exp": int(time.time()) + 3600})

        with patch("app.auth.SUPABASE_JWT_SECRET", self.TEST_SECRET), patch("app.auth.supabase") as mock_supabase:
            user_id = await get_current_user(f"Bearer {token}")

        assert user_id == "user-local"
        mock_supabase.auth.get_user.assert_not_called()


class TestRequireAdmin:
    """Admin check against profiles.is_admin."""

    @pytest.mark.asyncio
    async def test_admin_passes(self):
        with patch("app.auth.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value.select.return_value.eq.return_value.execute.return_value = Mock(
                data=[{"is_admin": True}]
            )

            assert await require_admin("admin-1") == "admin-1"

            mock_supabase.table.assert_called_once_with("profiles")
            mock_supabase.table.return_value.select.return_value.eq.assert_called_once_with("id", "admin-1")

    @pytest.mark.asyncio
    async def test_non_admin_raises_403(self):
        with patch("app.auth.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value.select.return_value.eq.return_value.execute.return_value = Mock(
                data=[{"is_admin": False}]
            )

            with pytest.raises(HTTPException) as exc_info:
                await require_admin("user-1")

            assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_profile_raises_403(self):
        with patch("app.auth.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value.select.return_value.eq.return_value.execute.return_value = Mock(
                data=[]
            )

            with pytest.raises(HTTPException) as exc_info:
                await require_admin("user-1")

            assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_database_error_raises_500(self):
        with patch("app.auth.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value.select.return_value.eq.return_value.execute.side_effect = Exception(
                "Database error"
            )

            with pytest.raises(HTTPException) as exc_info:
                await require_admin("user-1")

            assert exc_info.value.status_code == 500
