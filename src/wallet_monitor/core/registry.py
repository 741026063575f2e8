"""Tracked wallet registry."""

import logging
from typing import Callable, FrozenSet, List, Optional, Set

from .models import RegistryDelta

logger = logging.getLogger(__name__)

DeltaListener = Callable[[RegistryDelta], None]


class AddressRegistry:
    """
    Set of wallet addresses currently subscribed on the stream.

    The registry does not know who asked for an address; reference counting
    across callers belongs to the calling layer, as does the capacity limit
    passed in as ``max_addresses``. Every effective mutation is published to
    listeners as a RegistryDelta, in call order.
    """

    def __init__(self, max_addresses: Optional[int] = None):
        self.max_addresses = max_addresses
        self._addresses: Set[str] = set()
        self._listeners: List[DeltaListener] = []

    def add_listener(self, listener: DeltaListener):
        self._listeners.append(listener)

    def add(self, address: str) -> bool:
        """Track an address. Returns False if already tracked or at capacity."""
        if address in self._addresses:
            return False
        if self.max_addresses is not None and len(self._addresses) >= self.max_addresses:
            logger.warning(f"Registry at capacity ({self.max_addresses}), rejecting {address[:8]}...")
            return False

        self._addresses.add(address)
        logger.info(f"Tracking wallet {address[:8]}... ({len(self._addresses)} total)")
        self._emit(RegistryDelta(added=frozenset([address])))
        return True

    def remove(self, address: str) -> bool:
        """Stop tracking an address. Returns False if it was not tracked."""
        if address not in self._addresses:
            return False

        self._addresses.discard(address)
        logger.info(f"Stopped tracking wallet {address[:8]}... ({len(self._addresses)} total)")
        self._emit(RegistryDelta(removed=frozenset([address])))
        return True

    def clear(self) -> FrozenSet[str]:
        """Remove every tracked address at once and return what was removed."""
        removed = frozenset(self._addresses)
        if not removed:
            return removed

        self._addresses.clear()
        logger.info(f"Cleared {len(removed)} tracked wallets")
        self._emit(RegistryDelta(removed=removed))
        return removed

    def contains(self, address: str) -> bool:
        return address in self._addresses

    def snapshot(self) -> FrozenSet[str]:
        return frozenset(self._addresses)

    def __contains__(self, address: str) -> bool:
        return address in self._addresses

    def __len__(self) -> int:
        return len(self._addresses)

    def _emit(self, delta: RegistryDelta):
        for listener in self._listeners:
            try:
                listener(delta)
            except Exception as e:
                logger.error(f"Registry listener failed: {e}", exc_info=True)
