"""Wallet Monitor Service - real-time Solana wallet activity from Helius."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

from .config.settings import load_settings
from .core.errors import InvalidAddressError
from .core.models import TransactionRecord
from .engine import WalletMonitorEngine
from .utils.logging import log_with_context, setup_logging


logger = logging.getLogger(__name__)


class WalletMonitorService:
    """Runs the monitoring engine for the configured wallets until shutdown."""

    def __init__(self, config_file: Optional[str] = None):
        self.settings = load_settings(config_file)
        self.engine: Optional[WalletMonitorEngine] = None
        self._shutdown_event = asyncio.Event()

        setup_logging(self.settings.logging, self.settings.service_name)
        logger.info("Wallet Monitor Service initialized")

    async def start(self):
        """Start the service and block until a shutdown signal."""
        logger.info(f"Starting Wallet Monitor Service ({self.settings.environment})")

        self.engine = self._create_engine()
        self._setup_signal_handlers()

        await self.engine.connect()

        await self._shutdown_event.wait()

        logger.info("Shutting down Wallet Monitor Service")
        await self.engine.close()
        logger.info("Wallet Monitor Service stopped")

    def stop(self):
        self._shutdown_event.set()

    def _create_engine(self) -> WalletMonitorEngine:
        """Build the engine and track the configured wallets."""
        settings = self.settings
        # Nothing records user activity here; configured wallets stay tracked until shutdown
        if settings.inactivity_limit_seconds:
            logger.warning("inactivity_limit_seconds is ignored by the service runner")
            settings = settings.model_copy(update={'inactivity_limit_seconds': None})

        engine = WalletMonitorEngine(settings)
        engine.on_transaction_received = self._on_transaction

        for address in settings.wallets:
            try:
                engine.add_wallet(address)
            except InvalidAddressError as e:
                logger.error(f"Skipping configured wallet: {e}")

        return engine

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"Received signal {signum}, initiating shutdown")
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)

    def _on_transaction(self, record: TransactionRecord):
        log_with_context(
            logger,
            logging.INFO,
            f"{record.direction.value} {record.token_symbol} {record.amount_display}",
            **record.to_event()
        )

    async def health_check(self) -> dict:
        """Perform health check."""
        if self.engine is None:
            return {
                "service": self.settings.service_name,
                "status": "unhealthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "components": {}
            }

        engine_health = await self.engine.health_check()
        return {
            "service": self.settings.service_name,
            "status": engine_health["status"],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {"engine": engine_health}
        }


async def main():
    """Main entry point."""
    config_file = os.getenv("CONFIG_FILE")
    service = WalletMonitorService(config_file)

    try:
        await service.start()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
