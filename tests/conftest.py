"""Pytest configuration and shared fixtures."""

import asyncio
import json
from typing import Any, Dict, List

import pytest
from websockets.exceptions import ConnectionClosedError

from wallet_monitor.config.settings import MonitorSettings
from wallet_monitor.core.metadata_cache import MetadataCache
from wallet_monitor.core.models import TokenMetadata
from wallet_monitor.core.normalizer import MessageNormalizer
from wallet_monitor.core.registry import AddressRegistry
from wallet_monitor.utils.deduplication import SignatureDeduplicator


# Real mainnet public keys, all 32 bytes when decoded
WALLET_1 = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
WALLET_2 = "vines1vzrYbzLMRdu58ou5XTby4qAqVRLmqo36NKPTg"
WALLET_3 = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
BONK_MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"

_CLOSED = object()


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, answer_pings: bool = True):
        self.answer_pings = answer_pings
        self.sent: List[Dict[str, Any]] = []
        self.pings = 0
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def push(self, frame):
        self._incoming.put_nowait(frame)

    def drop(self):
        """Simulate the server closing the connection."""
        self._incoming.put_nowait(_CLOSED)

    async def recv(self):
        frame = await self._incoming.get()
        if frame is _CLOSED:
            raise ConnectionClosedError(None, None)
        return frame

    async def send(self, frame: str):
        if self.closed:
            raise ConnectionClosedError(None, None)
        self.sent.append(json.loads(frame))

    async def ping(self):
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.0)
        return waiter

    async def close(self):
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_CLOSED)


class FakeConnector:
    """Connector returning prepared sockets or raising prepared errors in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls: List[str] = []

    async def __call__(self, url: str, **kwargs):
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("connection refused")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays and only yields."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


async def _wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_websocket():
    def factory(**kwargs) -> FakeWebSocket:
        return FakeWebSocket(**kwargs)
    return factory


@pytest.fixture
def make_connector():
    def factory(*outcomes) -> FakeConnector:
        return FakeConnector(*outcomes)
    return factory


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def test_settings() -> MonitorSettings:
    """Create test configuration."""
    return MonitorSettings(
        service_name="test-wallet-monitor",
        environment="test",
        helius={
            'ws_url': "wss://stream.test.local",
            'rpc_url': "https://rpc.test.local",
            'api_keys': ["key-alpha-0001", "key-bravo-0002"],
            'rate_limit_requests_per_minute': 6000
        },
        reconnect={
            'max_attempts': 3,
            'initial_backoff_seconds': 1.0,
            'max_backoff_seconds': 8.0,
            'stability_window_seconds': 30.0,
            'handshake_timeout_seconds': 1.0,
            'heartbeat_interval_seconds': 30.0,
            'heartbeat_timeout_seconds': 1.0
        },
        retry={'max_attempts': 2, 'initial_backoff_seconds': 0.01, 'jitter': False}
    )


@pytest.fixture
def registry() -> AddressRegistry:
    return AddressRegistry()


@pytest.fixture
def metadata_cache() -> MetadataCache:
    return MetadataCache(max_entries=10, ttl_seconds=300)


@pytest.fixture
def normalizer(registry, metadata_cache) -> MessageNormalizer:
    return MessageNormalizer(
        registry=registry,
        metadata_cache=metadata_cache,
        deduplicator=SignatureDeduplicator()
    )


@pytest.fixture
def enhanced_swap() -> Dict[str, Any]:
    """Enhanced transaction: WALLET_1 buys 250 USDC for 0.5 SOL, WALLET_2 pays the fee."""
    return {
        'signature': "5h6xBEauJ3PK6SWCZ1PGjBvj8vDdWG3KpwATGy1ARAXFSDwt8GFXM7W5Ncn16wmqokgpiKRLuS83KUxyZyv2sUYv",
        'timestamp': 1700000000,
        'type': "SWAP",
        'feePayer': WALLET_2,
        'accountData': [
            {
                'account': WALLET_1,
                'nativeBalanceChange': -500000000,
                'tokenBalanceChanges': [
                    {
                        'userAccount': WALLET_1,
                        'mint': USDC_MINT,
                        'rawTokenAmount': {'tokenAmount': "250000000", 'decimals': 6}
                    }
                ]
            },
            {
                'account': WALLET_2,
                'nativeBalanceChange': -5000,
                'tokenBalanceChanges': []
            }
        ]
    }


@pytest.fixture
def rpc_notification() -> Dict[str, Any]:
    """transactionNotification: WALLET_1 sells 1000 BONK for 0.01 SOL."""
    return {
        'jsonrpc': "2.0",
        'method': "transactionNotification",
        'params': {
            'subscription': 4743323479349712,
            'result': {
                'signature': "3u3pQ7jXWWmrxWVf5r1XFkKqbhCoU1wqRnvPpc5PHHvT6xTA6hXdHozTLVRa6LnBVyCZNMzR3VLMDzPjY5cQZa8y",
                'slot': 240573419,
                'transaction': {
                    'transaction': {
                        'signatures': ["3u3pQ7jXWWmrxWVf5r1XFkKqbhCoU1wqRnvPpc5PHHvT6xTA6hXdHozTLVRa6LnBVyCZNMzR3VLMDzPjY5cQZa8y"],
                        'message': {
                            'accountKeys': [
                                {'pubkey': WALLET_1, 'signer': True, 'writable': True},
                                {'pubkey': "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA", 'signer': False, 'writable': False}
                            ]
                        }
                    },
                    'meta': {
                        'err': None,
                        'preBalances': [1000000000, 1],
                        'postBalances': [1010000000, 1],
                        'preTokenBalances': [
                            {
                                'accountIndex': 2,
                                'mint': BONK_MINT,
                                'owner': WALLET_1,
                                'uiTokenAmount': {'amount': "150000000", 'decimals': 5}
                            }
                        ],
                        'postTokenBalances': [
                            {
                                'accountIndex': 2,
                                'mint': BONK_MINT,
                                'owner': WALLET_1,
                                'uiTokenAmount': {'amount': "50000000", 'decimals': 5}
                            }
                        ],
                        'loadedAddresses': {'writable': [], 'readonly': []}
                    }
                },
                'blockTime': 1700000100
            }
        }
    }
