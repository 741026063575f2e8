"""Bounded token metadata cache with fetch coalescing."""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Any, Optional

from .errors import MetadataUnavailable
from .models import TokenMetadata

logger = logging.getLogger(__name__)

MetadataFetcher = Callable[[str], Awaitable[TokenMetadata]]


@dataclass
class CacheEntry:
    value: TokenMetadata
    inserted_at: float


class MetadataCache:
    """
    Token metadata cache keyed by mint.

    Entries expire after ``ttl_seconds``; beyond ``max_entries`` the least
    recently used entry is evicted. Expired entries are purged when touched
    and by a background sweep. Concurrent misses for the same mint share one
    in-flight fetch.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float = 300.0,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._sweep_task: Optional[asyncio.Task] = None

        self.stats = {
            'hits': 0,
            'misses': 0,
            'fetches': 0,
            'coalesced': 0,
            'fetch_errors': 0,
            'evictions': 0,
            'expirations': 0
        }

    def __len__(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at >= self.ttl_seconds

    def get(self, token_id: str) -> Optional[TokenMetadata]:
        """Return cached metadata, or None on a miss or an expired entry."""
        entry = self._entries.get(token_id)
        if entry is None:
            self.stats['misses'] += 1
            return None

        if self._is_expired(entry, self._clock()):
            del self._entries[token_id]
            self.stats['expirations'] += 1
            self.stats['misses'] += 1
            return None

        self._entries.move_to_end(token_id)
        self.stats['hits'] += 1
        return entry.value

    def put(self, token_id: str, metadata: TokenMetadata):
        now = self._clock()
        self._entries[token_id] = CacheEntry(value=metadata, inserted_at=now)
        self._entries.move_to_end(token_id)

        if len(self._entries) > self.max_entries:
            self.purge_expired()
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.stats['evictions'] += 1
            logger.debug(f"Evicted metadata for {evicted}")

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._entries[key]

        self.stats['expirations'] += len(expired)
        return len(expired)

    async def get_or_fetch(self, token_id: str, fetcher: MetadataFetcher) -> TokenMetadata:
        """
        Return cached metadata or fetch it once.

        Callers that miss while a fetch for the same mint is running await
        that fetch instead of starting another one.

        Raises:
            MetadataUnavailable: If the fetch fails
        """
        cached = self.get(token_id)
        if cached is not None:
            return cached

        future = self._inflight.get(token_id)
        if future is None:
            future = asyncio.ensure_future(self._fetch_and_store(token_id, fetcher))
            self._inflight[token_id] = future
            future.add_done_callback(lambda _: self._inflight.pop(token_id, None))
            self.stats['fetches'] += 1
        else:
            self.stats['coalesced'] += 1

        try:
            return await asyncio.shield(future)
        except MetadataUnavailable:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise MetadataUnavailable(token_id, str(e)) from e

    async def _fetch_and_store(self, token_id: str, fetcher: MetadataFetcher) -> TokenMetadata:
        try:
            metadata = await fetcher(token_id)
        except Exception:
            self.stats['fetch_errors'] += 1
            raise

        self.put(token_id, metadata)
        return metadata

    async def start(self):
        """Start the background expiry sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            removed = self.purge_expired()
            if removed:
                logger.debug(f"Metadata sweep purged {removed} expired entries")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'size': len(self._entries),
            'max_entries': self.max_entries,
            'inflight': len(self._inflight)
        }
