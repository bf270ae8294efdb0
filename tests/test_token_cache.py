"""
Unit and race tests for the token cache.
"""
import asyncio
from typing import List, Tuple

import pytest

from mpesa_gateway.core.token_cache import TokenCache
from mpesa_gateway.integrations.mpesa_auth import AuthError


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetcher:
    """Token fetcher that counts calls and can be held open or made to fail."""

    def __init__(self, ttl_seconds: int = 3600) -> None:
        self.ttl_seconds = ttl_seconds
        self.calls = 0
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def __call__(self) -> Tuple[str, int]:
        self.calls += 1
        call_number = self.calls
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return f"token-{call_number}", self.ttl_seconds


class TestTokenCache:
    """Test suite for TokenCache."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_call_fetches_and_caches(self) -> None:
        """First call fetches, later calls hit the cache."""
        fetcher = FakeFetcher()
        cache = TokenCache(fetcher, clock=FakeClock())

        assert await cache.get_token() == "token-1"
        assert await cache.get_token() == "token-1"
        assert fetcher.calls == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_not_reused_within_safety_margin(self) -> None:
        """A token is refreshed once now reaches ttl minus the margin."""
        clock = FakeClock()
        fetcher = FakeFetcher(ttl_seconds=3600)
        cache = TokenCache(fetcher, safety_margin_seconds=300, clock=clock)

        assert await cache.get_token() == "token-1"

        clock.advance(3299)
        assert await cache.get_token() == "token-1"

        clock.advance(1)
        assert await cache.get_token() == "token-2"
        assert fetcher.calls == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_short_ttl_still_cached(self) -> None:
        """A TTL below the margin keeps half of it usable instead of nothing."""
        clock = FakeClock()
        fetcher = FakeFetcher(ttl_seconds=200)
        cache = TokenCache(fetcher, safety_margin_seconds=300, clock=clock)

        for _ in range(3):
            assert await cache.get_token() == "token-1"
        assert fetcher.calls == 1
        assert cache.status()["cached"] is True
        assert cache.status()["expires_in_seconds"] == 100

        clock.advance(99)
        assert await cache.get_token() == "token-1"

        clock.advance(1)
        assert await cache.get_token() == "token-2"
        assert fetcher.calls == 2

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_short_ttl_concurrent_callers_share_one_fetch(self) -> None:
        """Callers arriving after a short-TTL fetch reuse its token."""
        fetcher = FakeFetcher(ttl_seconds=60)
        cache = TokenCache(fetcher, safety_margin_seconds=300, clock=FakeClock())

        first = await asyncio.gather(*(cache.get_token() for _ in range(10)))
        second = await asyncio.gather(*(cache.get_token() for _ in range(10)))

        assert set(first) == set(second) == {"token-1"}
        assert fetcher.calls == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalidate_forces_fresh_fetch(self) -> None:
        """invalidate() then get_token() always fetches."""
        fetcher = FakeFetcher()
        cache = TokenCache(fetcher, clock=FakeClock())

        await cache.get_token()
        cache.invalidate()

        assert await cache.get_token() == "token-2"
        assert fetcher.calls == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_refresh(self) -> None:
        """force_refresh() replaces a still valid token."""
        fetcher = FakeFetcher()
        cache = TokenCache(fetcher, clock=FakeClock())

        await cache.get_token()

        assert await cache.force_refresh() == "token-2"
        assert await cache.get_token() == "token-2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_clears_cache(self) -> None:
        """A failed refresh clears the old token and expiry."""
        clock = FakeClock()
        fetcher = FakeFetcher(ttl_seconds=600)
        cache = TokenCache(fetcher, safety_margin_seconds=300, clock=clock)

        await cache.get_token()
        clock.advance(400)
        fetcher.fail_with = AuthError("auth endpoint down", status_code=503)

        with pytest.raises(AuthError, match="auth endpoint down"):
            await cache.get_token()

        assert cache.status()["cached"] is False
        assert cache.status()["expires_in_seconds"] == 0

        fetcher.fail_with = None
        assert await cache.get_token() == "token-3"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_fetch_error_becomes_auth_error(self) -> None:
        """Any fetch failure reaches callers as AuthError."""
        fetcher = FakeFetcher()
        fetcher.fail_with = RuntimeError("boom")
        cache = TokenCache(fetcher, clock=FakeClock())

        with pytest.raises(AuthError, match="boom"):
            await cache.get_token()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_never_exposes_token(self) -> None:
        """status() reports expiry but not the token."""
        clock = FakeClock()
        cache = TokenCache(FakeFetcher(ttl_seconds=3600), safety_margin_seconds=300, clock=clock)

        assert cache.status()["cached"] is False

        token = await cache.get_token()
        status = cache.status()

        assert status["cached"] is True
        assert status["expires_in_seconds"] == 3300
        assert token not in str(status)


class TestTokenCacheConcurrency:
    """Race tests for single-flight refresh."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self) -> None:
        """Concurrent get_token() on an empty cache triggers exactly one fetch."""
        fetcher = FakeFetcher()
        fetcher.gate = asyncio.Event()
        cache = TokenCache(fetcher, clock=FakeClock())

        tasks = [asyncio.create_task(cache.get_token()) for _ in range(50)]
        await asyncio.sleep(0)
        fetcher.gate.set()
        tokens: List[str] = await asyncio.gather(*tasks)

        assert fetcher.calls == 1
        assert set(tokens) == {"token-1"}

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_failure_shared_by_all_waiters(self) -> None:
        """Every caller waiting on a failed fetch gets the AuthError."""
        fetcher = FakeFetcher()
        fetcher.gate = asyncio.Event()
        fetcher.fail_with = AuthError("rejected", status_code=401)
        cache = TokenCache(fetcher, clock=FakeClock())

        tasks = [asyncio.create_task(cache.get_token()) for _ in range(10)]
        await asyncio.sleep(0)
        fetcher.gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert fetcher.calls == 1
        assert all(isinstance(r, AuthError) for r in results)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_inflight_fetch_discarded_after_invalidate(self) -> None:
        """A refresh in flight during invalidate() does not install its token."""
        fetcher = FakeFetcher()
        fetcher.gate = asyncio.Event()
        cache = TokenCache(fetcher, clock=FakeClock())

        stale = asyncio.create_task(cache.get_token())
        await asyncio.sleep(0)
        cache.invalidate()
        fetcher.gate.set()
        await stale

        assert cache.status()["cached"] is False
        assert await cache.get_token() == "token-2"
        assert fetcher.calls == 2

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_fetch(self) -> None:
        """Cancelling one waiter leaves the fetch running for the others."""
        fetcher = FakeFetcher()
        fetcher.gate = asyncio.Event()
        cache = TokenCache(fetcher, clock=FakeClock())

        first = asyncio.create_task(cache.get_token())
        second = asyncio.create_task(cache.get_token())
        await asyncio.sleep(0)
        first.cancel()
        fetcher.gate.set()

        assert await second == "token-1"
        assert fetcher.calls == 1
