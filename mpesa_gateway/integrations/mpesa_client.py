"""
M-PESA STK push client.

Implements:
- Outbound STK push request with bearer authentication
- Error classification with the most specific failure reason available
- Synchronous rejection detection (2xx with non-zero ResponseCode)
"""
from typing import Any, Dict, Optional

import httpx
import structlog

from mpesa_gateway.config import Settings, get_settings

logger = structlog.get_logger(__name__)

# Fields M-PESA uses for a human readable error, most specific first
ERROR_MESSAGE_FIELDS = ("errorMessage", "ResponseDescription", "CustomerMessage", "message")


class GatewayError(Exception):
    """Raised when the STK push request fails or is rejected."""

    def __init__(
        self,
        message: str,
        failure_reason: str,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            failure_reason: Reason to record on the transaction
            status_code: HTTP status returned by M-PESA, if a response arrived
            detail: Parsed error body, or a synthetic one for transport errors
        """
        super().__init__(message)
        self.failure_reason = failure_reason
        self.status_code = status_code
        self.detail = detail or {}


def extract_error_message(body: Any) -> Optional[str]:
    """Return the first non-empty error message field of an M-PESA body."""
    if not isinstance(body, dict):
        return None
    for field in ERROR_MESSAGE_FIELDS:
        value = body.get(field)
        if value:
            return str(value)
    return None


class MpesaClient:
    """
    Wrapper for the M-PESA STK push endpoint.

    One HTTP call per push; no retries.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize M-PESA client.

        Args:
            http_client: Optional shared HTTP client (creates one if not provided)
            settings: Optional settings (uses cached settings if not provided)
        """
        self.settings = settings or get_settings()
        self.http_client = http_client
        self._owns_client = http_client is None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized."""
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(timeout=self.settings.mpesa_http_timeout)
        return self.http_client

    async def send_stk_push(self, payload: Dict[str, Any], token: str) -> Dict[str, Any]:
        """
        Submit an STK push request.

        Args:
            payload: Full STK push body (includes MerchantRequestID)
            token: Bearer token from the token cache

        Returns:
            Dict[str, Any]: M-PESA's synchronous acknowledgement

        Raises:
            GatewayError: On transport failure, non-2xx status, non-JSON body
                or a non-zero ResponseCode
        """
        url = f"{self.settings.mpesa_base_url}{self.settings.mpesa_stk_push_endpoint}"
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        merchant_request_id = payload.get("MerchantRequestID")

        logger.info("stk_push_request_sending", merchant_request_id=merchant_request_id)

        try:
            response = await self._ensure_client().post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(
                "stk_push_no_response",
                merchant_request_id=merchant_request_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise GatewayError(
                f"STK push request failed: {str(e)}",
                failure_reason=str(e) or type(e).__name__,
                detail={"message": str(e), "error_type": type(e).__name__},
            )

        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.is_success:
            generic = f"HTTP {response.status_code} {response.reason_phrase}".strip()
            failure_reason = extract_error_message(body) or generic
            logger.error(
                "stk_push_rejected",
                merchant_request_id=merchant_request_id,
                status_code=response.status_code,
                failure_reason=failure_reason,
            )
            raise GatewayError(
                f"STK push rejected: {failure_reason}",
                failure_reason=failure_reason,
                status_code=response.status_code,
                detail=body if isinstance(body, dict) else {"message": generic, "body": response.text[:500]},
            )

        if not isinstance(body, dict):
            logger.error(
                "stk_push_response_malformed",
                merchant_request_id=merchant_request_id,
                status_code=response.status_code,
            )
            raise GatewayError(
                "STK push acknowledgement is not a JSON object",
                failure_reason="Malformed acknowledgement from M-PESA",
                status_code=response.status_code,
                detail={"body": response.text[:500]},
            )

        response_code = body.get("ResponseCode")
        if response_code is not None and str(response_code) != "0":
            failure_reason = extract_error_message(body) or f"ResponseCode {response_code}"
            logger.error(
                "stk_push_not_accepted",
                merchant_request_id=merchant_request_id,
                response_code=response_code,
                failure_reason=failure_reason,
            )
            raise GatewayError(
                f"STK push not accepted: {failure_reason}",
                failure_reason=failure_reason,
                status_code=response.status_code,
                detail=body,
            )

        logger.info(
            "stk_push_accepted",
            merchant_request_id=merchant_request_id,
            checkout_request_id=body.get("CheckoutRequestID"),
        )
        return body

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self.http_client is not None and self._owns_client:
            await self.http_client.aclose()
