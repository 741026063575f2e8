"""Deduplication utilities for transaction signatures."""

import time
from typing import Callable, Dict, Any
from collections import defaultdict, OrderedDict
import logging

logger = logging.getLogger(__name__)


class SignatureDeduplicator:
    """
    Per-wallet signature deduplicator.

    Features:
    - Time-based window deduplication
    - LRU-style memory management
    - Per-wallet tracking
    """

    def __init__(
        self,
        window_size_seconds: float = 3600,
        max_signatures_per_wallet: int = 10000,
        cleanup_interval_seconds: float = 300,
        clock: Callable[[], float] = time.time
    ):
        self.window_size_seconds = window_size_seconds
        self.max_signatures_per_wallet = max_signatures_per_wallet
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock

        # wallet -> {signature: first seen}, oldest first
        self._seen: Dict[str, "OrderedDict[str, float]"] = defaultdict(OrderedDict)

        self._last_cleanup = clock()

        self.stats = {
            'total_checks': 0,
            'duplicates_found': 0,
            'unique_records': 0,
            'cleanup_runs': 0,
            'records_cleaned': 0
        }

        logger.info(
            f"SignatureDeduplicator initialized: window={window_size_seconds}s, "
            f"max_per_wallet={max_signatures_per_wallet}"
        )

    def is_unique(self, signature: str, wallet: str) -> bool:
        """
        Check and record a signature for a wallet.

        Returns True the first time a signature is seen for the wallet within
        the window, False for every repeat.
        """
        self.stats['total_checks'] += 1

        current_time = self._clock()
        if current_time - self._last_cleanup > self.cleanup_interval_seconds:
            self._cleanup_old_records()

        seen = self._seen[wallet]
        first_seen = seen.get(signature)

        if first_seen is not None and current_time - first_seen < self.window_size_seconds:
            self.stats['duplicates_found'] += 1
            logger.debug(f"Duplicate signature {signature[:16]}... for {wallet[:8]}...")
            return False

        seen[signature] = current_time
        seen.move_to_end(signature)

        if len(seen) > self.max_signatures_per_wallet:
            self._trim_wallet(wallet)

        self.stats['unique_records'] += 1
        return True

    def forget(self, signature: str, wallet: str):
        """Drop a recorded signature so its next delivery counts as unique."""
        seen = self._seen.get(wallet)
        if seen is not None and seen.pop(signature, None) is not None:
            self.stats['unique_records'] -= 1

    def _trim_wallet(self, wallet: str):
        """Remove oldest signatures for a wallet to stay within memory limits."""
        seen = self._seen[wallet]
        removed_count = 0
        while len(seen) > self.max_signatures_per_wallet:
            seen.popitem(last=False)
            removed_count += 1

        self.stats['records_cleaned'] += removed_count
        logger.debug(f"Trimmed {removed_count} old signatures for {wallet[:8]}...")

    def _cleanup_old_records(self):
        """Remove signatures outside the time window."""
        current_time = self._clock()
        cutoff_time = current_time - self.window_size_seconds
        total_cleaned = 0

        for wallet in list(self._seen.keys()):
            seen = self._seen[wallet]
            while seen:
                signature, first_seen = next(iter(seen.items()))
                if first_seen >= cutoff_time:
                    break
                seen.popitem(last=False)
                total_cleaned += 1

            if not seen:
                del self._seen[wallet]

        self._last_cleanup = current_time
        self.stats['cleanup_runs'] += 1
        self.stats['records_cleaned'] += total_cleaned

        if total_cleaned > 0:
            logger.debug(f"Cleaned {total_cleaned} old signatures across all wallets")

    def get_stats(self) -> Dict[str, Any]:
        total_records = sum(len(seen) for seen in self._seen.values())
        duplicate_rate = 0.0
        if self.stats['total_checks'] > 0:
            duplicate_rate = self.stats['duplicates_found'] / self.stats['total_checks']

        return {
            **self.stats,
            'duplicate_rate': duplicate_rate,
            'total_tracked_signatures': total_records,
            'wallets': len(self._seen),
            'window_size_seconds': self.window_size_seconds
        }
