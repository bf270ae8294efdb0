"""
M-PESA OAuth client.

Exchanges the app's consumer key and secret for a bearer token using the
client-credentials grant. Stateless: caching lives in ``TokenCache``.
"""
import base64
from typing import Optional, Tuple

import httpx
import structlog

from mpesa_gateway.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class AuthError(Exception):
    """Raised when an M-PESA access token cannot be obtained."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        """
        Initialize auth error.

        Args:
            message: Error message
            status_code: HTTP status returned by the auth endpoint, if any
        """
        super().__init__(message)
        self.status_code = status_code


def build_basic_auth(consumer_key: str, consumer_secret: str) -> str:
    """Return the ``Authorization`` header value for the token request."""
    credentials = f"{consumer_key}:{consumer_secret}".encode()
    return f"Basic {base64.b64encode(credentials).decode()}"


class MpesaAuthClient:
    """
    Fetches OAuth tokens from the M-PESA auth endpoint.

    One HTTP call per ``fetch()``; no retries.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize auth client.

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

    async def fetch(self) -> Tuple[str, int]:
        """
        Request a new access token.

        Returns:
            Tuple[str, int]: The token and its lifetime in seconds

        Raises:
            AuthError: On transport failure, non-2xx status or malformed body
        """
        url = f"{self.settings.mpesa_base_url}{self.settings.mpesa_auth_endpoint}"
        headers = {
            "Authorization": build_basic_auth(
                self.settings.mpesa_consumer_key, self.settings.mpesa_consumer_secret
            ),
            "Content-Type": "application/json",
        }

        logger.info("mpesa_token_fetch_started")

        try:
            response = await self._ensure_client().get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.error("mpesa_token_fetch_no_response", error=str(e))
            raise AuthError(f"Could not reach M-PESA auth endpoint: {str(e)}")

        if not response.is_success:
            logger.error(
                "mpesa_token_fetch_rejected",
                status_code=response.status_code,
                reason=response.reason_phrase,
                body=response.text[:500],
            )
            raise AuthError(
                f"M-PESA auth endpoint returned {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
            token = body["access_token"]
            expires_in = int(body["expires_in"])
        except (ValueError, KeyError, TypeError) as e:
            logger.error("mpesa_token_response_malformed", error=str(e))
            raise AuthError("M-PESA auth response is missing access_token or expires_in")

        if not isinstance(token, str) or not token or expires_in <= 0:
            logger.error("mpesa_token_response_malformed", expires_in=expires_in)
            raise AuthError("M-PESA auth response carries an empty token or non-positive TTL")

        logger.info("mpesa_token_fetched", expires_in=expires_in)
        return token, expires_in

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self.http_client is not None and self._owns_client:
            await self.http_client.aclose()
