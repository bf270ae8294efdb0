"""
Single-flight cache for the M-PESA bearer token.

One token is held per process together with the monotonic instant after
which it must not be reused. When the token is missing or stale, the first
caller starts a fetch and every concurrent caller awaits that same fetch,
so the auth endpoint sees one request per refresh no matter how many
payment requests arrive at once.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog

from mpesa_gateway.integrations.mpesa_auth import AuthError
from mpesa_gateway.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TokenFetcher = Callable[[], Awaitable[Tuple[str, int]]]


class TokenCache:
    """
    Holds one bearer token with an expiry.

    Token and expiry are always set and cleared together. A fetch failure
    clears both and the ``AuthError`` reaches every caller waiting on that
    fetch; the cache never retries on its own.
    """

    def __init__(
        self,
        fetcher: TokenFetcher,
        safety_margin_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize token cache.

        Args:
            fetcher: Coroutine function returning ``(token, ttl_seconds)``
            safety_margin_seconds: Seconds subtracted from the server TTL,
                capped at half the TTL
            clock: Monotonic time source
        """
        self.fetcher = fetcher
        self.safety_margin_seconds = safety_margin_seconds
        self.clock = clock

        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._inflight: Optional[asyncio.Task] = None
        # Bumped by invalidate() so a fetch started earlier cannot install its token
        self._generation = 0

    def _cached_token(self) -> Optional[str]:
        if self._token is not None and self.clock() < self._expires_at:
            return self._token
        return None

    async def get_token(self) -> str:
        """
        Return a valid token, fetching one if needed.

        Raises:
            AuthError: If the shared fetch failed
        """
        token = self._cached_token()
        if token is not None:
            metrics.record_token_cache_hit()
            return token

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh(self._generation))

        # Shielded so one cancelled caller does not cancel the fetch for the others
        return await asyncio.shield(self._inflight)

    async def _refresh(self, generation: int) -> str:
        fetched_at = self.clock()
        try:
            token, ttl_seconds = await self.fetcher()
        except Exception as e:
            metrics.record_token_fetch("failed")
            if generation == self._generation:
                self._clear()
                self._inflight = None
            logger.error("mpesa_token_refresh_failed", error=str(e))
            if isinstance(e, AuthError):
                raise
            raise AuthError(f"Token fetch failed: {str(e)}") from e

        metrics.record_token_fetch("success")
        if generation != self._generation:
            logger.info("mpesa_token_discarded_after_invalidate")
            return token

        # The margin never takes more than half of a short-lived token
        margin = min(self.safety_margin_seconds, ttl_seconds // 2)
        if margin < self.safety_margin_seconds:
            logger.warning(
                "mpesa_token_margin_clamped",
                ttl_seconds=ttl_seconds,
                safety_margin_seconds=self.safety_margin_seconds,
                applied_margin_seconds=margin,
            )

        self._token = token
        self._expires_at = fetched_at + ttl_seconds - margin
        self._inflight = None

        logger.info(
            "mpesa_token_cached",
            ttl_seconds=ttl_seconds,
            usable_for_seconds=max(0.0, self._expires_at - fetched_at),
        )
        return token

    def _clear(self) -> None:
        self._token = None
        self._expires_at = 0.0

    def invalidate(self) -> None:
        """Drop the cached token; the next ``get_token()`` fetches a new one."""
        self._generation += 1
        self._clear()
        self._inflight = None
        logger.info("mpesa_token_invalidated")

    async def force_refresh(self) -> str:
        """Invalidate and fetch a new token immediately."""
        self.invalidate()
        return await self.get_token()

    def status(self) -> Dict[str, Any]:
        """Report cache state without exposing the token."""
        remaining = self._expires_at - self.clock() if self._token is not None else 0.0
        cached = self._token is not None and remaining > 0
        return {
            "cached": cached,
            "expires_in_seconds": int(remaining) if cached else 0,
            "refresh_in_progress": self._inflight is not None,
            "safety_margin_seconds": self.safety_margin_seconds,
        }
