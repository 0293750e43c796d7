"""
Unit tests for the order service (verify_order_payment RPC wrapper).
"""

import pytest
from decimal import Decimal
from unittest.mock import MagicMock, Mock

from app.services.order_service import VERIFY_ORDER_RPC, OrderService


def _client_returning(data) -> MagicMock:
    client = MagicMock()
    client.rpc.return_value.execute.return_value = Mock(data=data)
    return client


async def _verify(client):
    return await OrderService(client).verify_order_payment(
        transaction_id="TXN1",
        amount=Decimal("500.00"),
        issuer="HDFC Bank",
        reference="412345678901",
    )


class TestVerifyOrderPayment:
    @pytest.mark.asyncio
    async def test_success(self):
        client = _client_returning({"success": True, "order_id": "order-1", "message": "Payment verified"})

        result = await _verify(client)

        assert result.success is True
        assert result.order_id == "order-1"
        client.rpc.assert_called_once_with(
            VERIFY_ORDER_RPC,
            {
                "p_transaction_id": "TXN1",
                "p_amount": "500.00",
                "p_bank_name": "HDFC Bank",
                "p_upi_reference": "412345678901",
                "p_verification_method": "email_parse",
                "p_email_verification_id": None,
            },
        )

    @pytest.mark.asyncio
    async def test_single_item_list_is_unwrapped(self):
        client = _client_returning([{"success": True, "order_id": "order-1"}])

        result = await _verify(client)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_reported_failure(self):
        client = _client_returning({"success": False, "message": "Order not found"})

        result = await _verify(client)

        assert result.success is False
        assert result.message == "Order not found"

    @pytest.mark.asyncio
    async def test_failure_with_error_key(self):
        client = _client_returning({"success": False, "error": "Amount mismatch"})

        result = await _verify(client)

        assert result.success is False
        assert result.message == "Amount mismatch"

    @pytest.mark.asyncio
    async def test_unexpected_payload(self):
        result = await _verify(_client_returning(None))

        assert result.success is False
        assert result.message == "Unexpected response from order service"

    @pytest.mark.asyncio
    async def test_truthy_non_boolean_success_is_a_failure(self):
        result = await _verify(_client_returning({"success": "yes"}))

        assert result.success is False

    @pytest.mark.asyncio
    async def test_rpc_error_is_returned_as_failure(self):
        client = MagicMock()
        client.rpc.return_value.execute.side_effect = Exception("function verify_order_payment does not exist")

        result = await _verify(client)

        assert result.success is False
        assert "does not exist" in result.message
