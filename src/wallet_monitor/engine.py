"""Wallet monitoring engine: owns the components and exposes the control surface."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Optional, Union

from .clients.helius_rest import HeliusRESTClient
from .clients.helius_ws import ConnectionManager
from .config.settings import MonitorSettings
from .core.credentials import CredentialPool
from .core.dispatcher import EventDispatcher, RecordCallback
from .core.errors import InvalidAddressError
from .core.metadata_cache import MetadataCache
from .core.models import ConnectionState, TokenMetadata
from .core.normalizer import MessageNormalizer
from .core.registry import AddressRegistry
from .utils.deduplication import SignatureDeduplicator
from .utils.validation import is_valid_address

logger = logging.getLogger(__name__)

TrackingResetCallback = Callable[[FrozenSet[str]], None]


class WalletMonitorEngine:
    """
    Real-time transaction monitor for a set of Solana wallets.

    Usage:
        engine = WalletMonitorEngine(settings)
        engine.on_transaction_received = handle_record
        engine.add_wallet(address)
        await engine.connect()
    """

    def __init__(
        self,
        settings: MonitorSettings,
        connector: Optional[Callable[..., Any]] = None,
        rest_client: Optional[HeliusRESTClient] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.settings = settings
        self._clock = clock

        self.credentials = CredentialPool(
            keys=settings.helius.api_keys,
            max_calls_per_rotation=settings.rotation.max_calls_per_rotation,
            rotation_interval_seconds=settings.rotation.rotation_interval_seconds,
            cooldown_seconds=settings.rotation.cooldown_seconds
        )
        self.registry = AddressRegistry(max_addresses=settings.max_tracked_wallets)
        self.metadata_cache = MetadataCache(
            max_entries=settings.cache.max_entries,
            ttl_seconds=settings.cache.ttl_seconds,
            sweep_interval_seconds=settings.cache.sweep_interval_seconds
        )
        self.deduplicator = SignatureDeduplicator(
            window_size_seconds=settings.dedup.window_seconds,
            max_signatures_per_wallet=settings.dedup.max_signatures_per_wallet,
            cleanup_interval_seconds=settings.dedup.cleanup_interval_seconds
        )
        self.rest_client = rest_client or HeliusRESTClient(
            config=settings.helius,
            retry_config=settings.retry,
            credentials=self.credentials
        )
        self.normalizer = MessageNormalizer(
            registry=self.registry,
            metadata_cache=self.metadata_cache,
            deduplicator=self.deduplicator,
            metadata_fetcher=self._fetch_metadata
        )
        self.dispatcher = EventDispatcher()
        self.connection = ConnectionManager(
            config=settings.helius,
            reconnect_config=settings.reconnect,
            registry=self.registry,
            credentials=self.credentials,
            frame_handler=self._handle_frame,
            connector=connector
        )

        self._last_activity = clock()
        self._tracking_reset_callback: Optional[TrackingResetCallback] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._started_at: Optional[datetime] = None

        self.stats = {
            'records_dispatched': 0,
            'inactivity_resets': 0
        }

        logger.info("WalletMonitorEngine initialized")

    @property
    def on_transaction_received(self) -> Optional[RecordCallback]:
        return self.dispatcher.callback

    @on_transaction_received.setter
    def on_transaction_received(self, callback: Optional[RecordCallback]):
        self.dispatcher.set_callback(callback)

    @property
    def on_tracking_reset(self) -> Optional[TrackingResetCallback]:
        """
        Called with the removed wallets when the inactivity watchdog clears tracking.

        Not called for explicit reset_tracking(). The callback runs synchronously
        inside check_inactivity(); failures are logged.
        """
        return self._tracking_reset_callback

    @on_tracking_reset.setter
    def on_tracking_reset(self, callback: Optional[TrackingResetCallback]):
        self._tracking_reset_callback = callback

    async def connect(self):
        """Open the stream. Safe to call again while connecting or connected."""
        if self._started_at is None:
            self._started_at = datetime.now(timezone.utc)
            await self.rest_client.start()
            await self.metadata_cache.start()
            if self.settings.inactivity_limit_seconds:
                self._watchdog_task = asyncio.create_task(self._inactivity_watchdog())

        await self.connection.connect()

    async def close(self):
        """Stop the stream and release resources."""
        logger.info("Closing wallet monitor engine")

        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None

        await self.connection.disconnect()
        await self.metadata_cache.stop()
        await self.rest_client.close()
        self._started_at = None

        logger.info("Wallet monitor engine closed")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @staticmethod
    def validate_wallet_address(address: str) -> bool:
        return is_valid_address(address)

    def add_wallet(self, address: str) -> bool:
        """
        Start tracking a wallet.

        Returns False if the wallet is already tracked or capacity is reached.

        Raises:
            InvalidAddressError: If the address is not a valid Solana address
        """
        if not is_valid_address(address):
            raise InvalidAddressError(address)

        return self.registry.add(address)

    def remove_wallet(self, address: str) -> bool:
        return self.registry.remove(address)

    def reset_tracking(self) -> int:
        """Stop tracking every wallet. Returns how many were removed."""
        return len(self.registry.clear())

    def record_activity(self):
        """Mark user activity, postponing the inactivity reset."""
        self._last_activity = self._clock()

    def get_status(self) -> Dict[str, Any]:
        credentials = self.credentials.status()
        return {
            'connected': self.connection.is_connected,
            'tracked_wallets': len(self.registry),
            'state': self.connection.state.value,
            'degraded': credentials['degraded'],
            'terminated': self.connection.state == ConnectionState.TERMINATED,
            'credentials': credentials,
            'stats': {
                **self.stats,
                'connection': self.connection.get_stats(),
                'normalizer': self.normalizer.get_stats(),
                'dispatcher': self.dispatcher.get_stats(),
                'metadata_cache': self.metadata_cache.get_stats(),
                'deduplication': self.deduplicator.get_stats()
            }
        }

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check."""
        connection_health = await self.connection.health_check()
        status = connection_health['status']
        if status == 'healthy' and self.credentials.is_exhausted:
            status = 'degraded'

        return {
            'status': status,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'started_at': self._started_at.isoformat() if self._started_at else None,
            'tracked_wallets': len(self.registry),
            'components': {
                'connection': connection_health,
                'credentials': self.credentials.status()
            }
        }

    async def _fetch_metadata(self, mint: str) -> TokenMetadata:
        return await self.rest_client.get_token_metadata(mint)

    async def _handle_frame(self, frame: Union[str, bytes]):
        records = await self.normalizer.normalize(frame)
        for record in records:
            if await self.dispatcher.dispatch(record):
                self.stats['records_dispatched'] += 1

    async def _inactivity_watchdog(self):
        limit = self.settings.inactivity_limit_seconds
        interval = min(limit / 4, 60.0)

        while True:
            await asyncio.sleep(interval)
            self.check_inactivity()

    def check_inactivity(self) -> bool:
        """Reset tracking if no activity was recorded within the limit."""
        limit = self.settings.inactivity_limit_seconds
        if not limit or not len(self.registry):
            return False

        idle = self._clock() - self._last_activity
        if idle < limit:
            return False

        logger.info(f"No activity for {idle:.0f}s, resetting wallet tracking")
        self.stats['inactivity_resets'] += 1
        removed = self.registry.clear()
        self._last_activity = self._clock()
        self._notify_tracking_reset(removed)
        return True

    def _notify_tracking_reset(self, removed: FrozenSet[str]):
        callback = self._tracking_reset_callback
        if callback is None:
            return
        try:
            callback(removed)
        except Exception as e:
            logger.error(f"Tracking reset callback failed: {e}", exc_info=True)
