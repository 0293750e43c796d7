"""
Tests for the pure helpers of the developer scripts in scripts/.
"""

import os
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx

import get_gmail_refresh_token as refresh_script
import send_test_verification as verify_script


class TestSendTestVerification:
    def test_payload_uses_wire_field_names(self):
        now = datetime(2025, 10, 19, 5, 0, tzinfo=timezone.utc)

        payload = verify_script.build_payload("TXN1", Decimal("499.50"), minutes_ago=10, now=now)

        assert payload == {
            "orderId": "test-order-TXN1",
            "transactionId": "TXN1",
            "amount": "499.50",
            "orderCreatedAt": "2025-10-19T04:50:00+00:00",
        }

    def test_explicit_order_id(self):
        payload = verify_script.build_payload("TXN1", Decimal("1"), order_id="order-9")

        assert payload["orderId"] == "order-9"

    def test_secret_falls_back_to_legacy_name(self):
        with patch.dict(os.environ, {"PAYMENT_WEBHOOK_SECRET": "", "WEBHOOK_SECRET": "legacy"}):
            assert verify_script.resolve_secret() == "legacy"


class TestGetGmailRefreshToken:
    REDIRECT = "http://localhost:3000/oauth2callback"

    def test_auth_url_requests_offline_readonly_access(self):
        url = urlparse(refresh_script.build_auth_url("client-1", self.REDIRECT))
        params = parse_qs(url.query)

        assert f"{url.scheme}://{url.netloc}{url.path}" == refresh_script.AUTH_URL
        assert params["client_id"] == ["client-1"]
        assert params["redirect_uri"] == [self.REDIRECT]
        assert params["scope"] == ["https://www.googleapis.com/auth/gmail.readonly"]
        assert params["access_type"] == ["offline"]
        assert params["prompt"] == ["consent"]

    def test_parse_callback(self):
        assert refresh_script.parse_callback("/oauth2callback?code=4/abc&scope=x") == ("4/abc", None)
        assert refresh_script.parse_callback("/oauth2callback?error=access_denied") == (None, "access_denied")

    @respx.mock
    def test_exchange_code_returns_tokens(self):
        route = respx.post(refresh_script.TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "a", "refresh_token": "r"})
        )

        tokens = refresh_script.exchange_code("code-1", "id", "secret", self.REDIRECT)

        assert tokens["refresh_token"] == "r"
        form = parse_qs(route.calls.last.request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["code-1"]

    @respx.mock
    def test_exchange_code_error_response(self):
        respx.post(refresh_script.TOKEN_URL).mock(
            return_value=httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Bad Request"}
            )
        )

        with pytest.raises(refresh_script.ConsentError, match="Bad Request"):
            refresh_script.exchange_code("code-1", "id", "secret", self.REDIRECT)

    @respx.mock
    def test_exchange_without_refresh_token_fails(self):
        respx.post(refresh_script.TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "a"})
        )

        with pytest.raises(refresh_script.ConsentError, match="No refresh token"):
            refresh_script.exchange_code("code-1", "id", "secret", self.REDIRECT)

    def test_env_lines(self):
        assert refresh_script.format_env_lines("id", "secret", "token").splitlines() == [
            "GMAIL_CLIENT_ID=id",
            "GMAIL_CLIENT_SECRET=secret",
            "GMAIL_REFRESH_TOKEN=token",
        ]
