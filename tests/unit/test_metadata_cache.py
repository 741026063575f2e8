"""Tests for the token metadata cache."""

import asyncio

import pytest

from wallet_monitor.core.errors import MetadataUnavailable
from wallet_monitor.core.metadata_cache import MetadataCache
from wallet_monitor.core.models import TokenMetadata


USDC = TokenMetadata(symbol="USDC", decimals=6, name="USD Coin")


@pytest.fixture
def cache(fake_clock):
    return MetadataCache(max_entries=3, ttl_seconds=300, clock=fake_clock)


@pytest.mark.unit
class TestMetadataCache:
    """Test TTL, LRU bound and fetch coalescing."""

    def test_put_and_get(self, cache):
        cache.put("mint-a", USDC)

        assert cache.get("mint-a") == USDC
        assert cache.get("mint-b") is None
        assert cache.stats['hits'] == 1
        assert cache.stats['misses'] == 1

    def test_entry_expires(self, cache, fake_clock):
        cache.put("mint-a", USDC)

        fake_clock.advance(299)
        assert cache.get("mint-a") == USDC

        fake_clock.advance(1)
        assert cache.get("mint-a") is None
        assert len(cache) == 0

    def test_bounded_by_max_entries(self, cache):
        for i in range(10):
            cache.put(f"mint-{i}", USDC)
            assert len(cache) <= 3

        assert cache.stats['evictions'] == 7

    def test_least_recently_used_evicted(self, cache):
        cache.put("mint-a", USDC)
        cache.put("mint-b", USDC)
        cache.put("mint-c", USDC)

        cache.get("mint-a")
        cache.put("mint-d", USDC)

        assert cache.get("mint-b") is None
        assert cache.get("mint-a") == USDC

    def test_expired_entries_purged_before_lru_eviction(self, cache, fake_clock):
        cache.put("mint-a", USDC)
        fake_clock.advance(200)
        cache.put("mint-b", USDC)
        cache.put("mint-c", USDC)
        fake_clock.advance(150)

        cache.put("mint-d", USDC)

        # Only the expired entry was dropped
        assert cache.stats['evictions'] == 0
        assert cache.get("mint-b") == USDC

    def test_purge_expired(self, cache, fake_clock):
        cache.put("mint-a", USDC)
        cache.put("mint-b", USDC)
        fake_clock.advance(301)

        assert cache.purge_expired() == 2
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_fetch(self, cache):
        calls = []
        release = asyncio.Event()

        async def fetcher(mint):
            calls.append(mint)
            await release.wait()
            return USDC

        waiters = [asyncio.create_task(cache.get_or_fetch("mint-a", fetcher)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*waiters)

        assert results == [USDC] * 5
        assert calls == ["mint-a"]
        assert cache.stats['coalesced'] == 4
        assert cache.get("mint-a") == USDC

    @pytest.mark.asyncio
    async def test_fetch_failure_raises_metadata_unavailable(self, cache):
        async def fetcher(mint):
            raise ConnectionError("provider down")

        with pytest.raises(MetadataUnavailable) as exc_info:
            await cache.get_or_fetch("mint-a", fetcher)

        assert exc_info.value.mint == "mint-a"
        assert cache.get("mint-a") is None
        assert cache.stats['fetch_errors'] == 1

    @pytest.mark.asyncio
    async def test_failed_fetch_is_retried_on_next_miss(self, cache):
        outcomes = [MetadataUnavailable("mint-a", "not found"), USDC]

        async def fetcher(mint):
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        with pytest.raises(MetadataUnavailable):
            await cache.get_or_fetch("mint-a", fetcher)

        assert await cache.get_or_fetch("mint-a", fetcher) == USDC

    @pytest.mark.asyncio
    async def test_start_stop_sweep(self, cache):
        await cache.start()
        assert cache._sweep_task is not None

        await cache.stop()
        assert cache._sweep_task is None
