"""
Unit tests for the STK push client.
"""
from typing import Any, Callable, Dict

import httpx
import pytest

from mpesa_gateway.config import Settings
from mpesa_gateway.integrations.mpesa_client import GatewayError, MpesaClient

PAYLOAD: Dict[str, Any] = {"MerchantRequestID": "mr-1", "Amount": "100"}


def make_client(
    test_settings: Settings,
    handler: Callable[[httpx.Request], httpx.Response],
) -> MpesaClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MpesaClient(http_client=http_client, settings=test_settings)


class TestMpesaClient:
    """Test suite for MpesaClient."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_send_stk_push_success(self, test_settings: Settings) -> None:
        """Accepted push returns the ack body and sends the bearer token."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"CheckoutRequestID": "ws_CO_1", "ResponseCode": "0"},
            )

        client = make_client(test_settings, handler)
        ack = await client.send_stk_push(PAYLOAD, "token-1")

        assert ack["CheckoutRequestID"] == "ws_CO_1"
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/mpesa/stkpush/v3/processrequest"
        assert seen[0].headers["Authorization"] == "Bearer token-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_message_preferred(self, test_settings: Settings) -> None:
        """errorMessage from the body becomes the failure reason."""
        client = make_client(
            test_settings,
            lambda request: httpx.Response(
                400,
                json={"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"},
            ),
        )

        with pytest.raises(GatewayError) as exc_info:
            await client.send_stk_push(PAYLOAD, "token-1")

        error = exc_info.value
        assert error.failure_reason == "Bad Request - Invalid Amount"
        assert error.status_code == 400
        assert error.detail["errorCode"] == "400.002.02"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_generic_http_reason_without_body_message(self, test_settings: Settings) -> None:
        """Without a body message the HTTP status text is used."""
        client = make_client(test_settings, lambda request: httpx.Response(503, text="down"))

        with pytest.raises(GatewayError) as exc_info:
            await client.send_stk_push(PAYLOAD, "token-1")

        assert exc_info.value.failure_reason == "HTTP 503 Service Unavailable"
        assert exc_info.value.status_code == 503

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_uses_exception_text(self, test_settings: Settings) -> None:
        """Transport failures carry the exception text and no status."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(test_settings, handler)

        with pytest.raises(GatewayError) as exc_info:
            await client.send_stk_push(PAYLOAD, "token-1")

        assert exc_info.value.failure_reason == "timed out"
        assert exc_info.value.status_code is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_zero_response_code_is_rejection(self, test_settings: Settings) -> None:
        """A 2xx ack with a non-zero ResponseCode is a failure."""
        client = make_client(
            test_settings,
            lambda request: httpx.Response(
                200,
                json={"ResponseCode": "1", "ResponseDescription": "Rejected by system"},
            ),
        )

        with pytest.raises(GatewayError) as exc_info:
            await client.send_stk_push(PAYLOAD, "token-1")

        assert exc_info.value.failure_reason == "Rejected by system"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_json_ack(self, test_settings: Settings) -> None:
        """A 2xx non-JSON ack is a failure."""
        client = make_client(test_settings, lambda request: httpx.Response(200, text="ok"))

        with pytest.raises(GatewayError):
            await client.send_stk_push(PAYLOAD, "token-1")
