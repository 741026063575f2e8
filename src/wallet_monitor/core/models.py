"""Data models shared by the monitoring components."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, FrozenSet

# Wrapped SOL mint, treated as native SOL
WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"


class ConnectionState(Enum):
    """Streaming connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


class Direction(Enum):
    """Trade direction from the tracked wallet's point of view."""
    BUY = "BUY"
    SELL = "SELL"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class TokenMetadata:
    """Token metadata resolved from the provider."""
    symbol: str
    decimals: int
    name: Optional[str] = None


@dataclass(frozen=True)
class RegistryDelta:
    """Addresses added to or removed from the tracked set by one mutation."""
    added: FrozenSet[str] = frozenset()
    removed: FrozenSet[str] = frozenset()

    def __bool__(self) -> bool:
        return bool(self.added or self.removed)


@dataclass
class TransactionRecord:
    """Canonical transaction record for one tracked wallet."""
    address: str
    direction: Direction
    token_symbol: str
    amount_display: str
    signature: str
    observed_at: datetime
    token_mint: Optional[str] = None
    raw: Any = field(default=None, repr=False, compare=False)

    def to_event(self) -> Dict[str, Any]:
        """Delivery payload handed to notification layers."""
        return {
            'wallet': self.address,
            'token': self.token_symbol,
            'buy_sell': self.direction.value,
            'amount': self.amount_display,
            'signature': self.signature,
            'timestamp': int(self.observed_at.timestamp() * 1000),
        }
