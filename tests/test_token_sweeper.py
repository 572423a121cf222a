"""Tests for the periodic refresh-record sweep."""

import asyncio
from unittest.mock import AsyncMock

from eventauth.service.token_sweeper import TokenSweeper
from eventauth.service.tokens import TokenIssuer, TokenVerifier
from eventauth.storage.errors import StoreUnavailableError
from eventauth.storage.memory import MemoryCache
from eventauth.storage.models import RefreshTokenRecord


def _components(clock, refresh_expiry="7d"):
    issuer = TokenIssuer(
        "access",
        "refresh",
        issuer="iss",
        audience="aud",
        refresh_expiry=refresh_expiry,
        clock=clock,
    )
    verifier = TokenVerifier("access", "refresh", issuer="iss", audience="aud", clock=clock)
    cache = MemoryCache(clock=clock)
    return issuer, verifier, cache


class TestRunOnce:
    async def test_removes_only_records_that_no_longer_verify(self, clock):
        issuer, verifier, cache = _components(clock)
        ttl = 86400 * 30
        live = RefreshTokenRecord(issuer.issue_refresh("live"))
        await cache.put_refresh("live", live, ttl)
        await cache.put_refresh("forged", RefreshTokenRecord("garbage"), ttl)
        # Token for a different subject stored under this key
        swapped = RefreshTokenRecord(issuer.issue_refresh("someone-else"))
        await cache.put_refresh("swapped", swapped, ttl)

        sweeper = TokenSweeper(cache, verifier, clock=clock)
        removed = await sweeper.run_once()

        assert removed == 2
        assert await cache.iter_refresh_subjects() == ["live"]

    async def test_removes_expired_tokens_outliving_their_ttl(self, clock):
        issuer, verifier, cache = _components(clock, refresh_expiry="1h")
        # Stored with a longer TTL than the token itself
        await cache.put_refresh("u1", RefreshTokenRecord(issuer.issue_refresh("u1")), 86400)
        clock.advance(3600)

        removed = await TokenSweeper(cache, verifier, clock=clock).run_once()

        assert removed == 1
        assert await cache.get_refresh("u1") is None

    async def test_records_cleanup_marker(self, clock):
        _, verifier, cache = _components(clock)

        await TokenSweeper(cache, verifier, clock=clock).run_once()

        marker = await cache.get_cleanup_marker()
        assert marker.startswith("2023-11-14T")

    async def test_per_record_store_failure_is_skipped(self, clock):
        issuer, verifier, cache = _components(clock)
        await cache.put_refresh("a", RefreshTokenRecord("garbage"), 3600)
        await cache.put_refresh("b", RefreshTokenRecord("garbage"), 3600)
        original_delete = cache.delete_refresh

        async def flaky_delete(subject):
            if subject == "a":
                raise StoreUnavailableError("delete_refresh")
            await original_delete(subject)

        cache.delete_refresh = flaky_delete
        removed = await TokenSweeper(cache, verifier, clock=clock).run_once()

        assert removed == 1
        assert await cache.iter_refresh_subjects() == ["a"]


class TestLifecycle:
    async def test_start_and_stop(self, clock):
        _, verifier, cache = _components(clock)
        sweeper = TokenSweeper(cache, verifier, interval=3600, clock=clock)

        await sweeper.start()
        assert sweeper.running
        await sweeper.start()  # second start is a no-op

        await sweeper.stop()
        assert not sweeper.running
        assert sweeper._task is None

    async def test_loop_survives_errors(self, clock):
        _, verifier, cache = _components(clock)
        cache.iter_refresh_subjects = AsyncMock(side_effect=StoreUnavailableError("scan"))
        sweeper = TokenSweeper(cache, verifier, interval=0, clock=clock)

        await sweeper.start()
        for _ in range(5):
            await asyncio.sleep(0)
        assert sweeper.running
        assert cache.iter_refresh_subjects.await_count >= 1

        await sweeper.stop()
