"""Helius JSON-RPC client for token metadata lookups."""

import asyncio
import aiohttp
import logging
import time
from typing import Dict, Any, Optional

from ..config.settings import HeliusConfig, RetryConfig
from ..core.credentials import CredentialPool
from ..core.errors import MetadataUnavailable, RateLimitedError
from ..core.models import WRAPPED_SOL_MINT, TokenMetadata
from ..utils.retry import exponential_backoff

logger = logging.getLogger(__name__)

WRAPPED_SOL_METADATA = TokenMetadata(symbol="SOL", decimals=9, name="Wrapped SOL")


class HeliusRESTClient:
    """Helius JSON-RPC client authenticated with the pool's active key."""

    def __init__(self, config: HeliusConfig, retry_config: RetryConfig, credentials: CredentialPool):
        self.config = config
        self.retry_config = retry_config
        self.credentials = credentials
        self.session: Optional[aiohttp.ClientSession] = None
        self.rate_limiter = RateLimiter(config.rate_limit_requests_per_minute)
        self._request_id = 0

        self.stats = {
            'requests': 0,
            'rate_limited': 0,
            'errors': 0
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
                connector=aiohttp.TCPConnector(limit=20, limit_per_host=10)
            )

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _make_request(self, method: str, params: Any) -> Any:
        """Make a rate-limited JSON-RPC call with retry logic."""
        if not self.session:
            raise RuntimeError("Client not initialized. Use async context manager.")

        async def _request():
            # Raises CredentialsExhausted, which is not retried
            credential = self.credentials.active_credential()
            await self.rate_limiter.acquire()

            self._request_id += 1
            payload = {
                'jsonrpc': '2.0',
                'id': f"wallet-monitor-{self._request_id}",
                'method': method,
                'params': params
            }
            url = f"{self.config.rpc_url.rstrip('/')}/"

            self.credentials.record_call()
            self.stats['requests'] += 1

            async with self.session.post(url, params={'api-key': credential.key}, json=payload) as response:
                if response.status == 429:
                    self.stats['rate_limited'] += 1
                    self.credentials.rotate("rate limited", cooldown=True, credential=credential)
                    retry_after = response.headers.get('Retry-After')
                    raise RateLimitedError(
                        f"Rate limit exceeded for key {credential.masked}",
                        retry_after=float(retry_after) if retry_after else None
                    )

                response.raise_for_status()
                body = await response.json()

            error = body.get('error')
            if error:
                subject = params.get('id', method) if isinstance(params, dict) else method
                message = error.get('message', error) if isinstance(error, dict) else error
                raise MetadataUnavailable(str(subject), str(message))
            return body.get('result')

        try:
            return await exponential_backoff(
                _request,
                max_attempts=self.retry_config.max_attempts,
                initial_delay=self.retry_config.initial_backoff_seconds,
                max_delay=self.retry_config.max_backoff_seconds,
                backoff_factor=self.retry_config.backoff_multiplier,
                jitter=self.retry_config.jitter,
                exceptions=(RateLimitedError, aiohttp.ClientError, asyncio.TimeoutError)
            )
        except Exception:
            self.stats['errors'] += 1
            raise

    async def get_asset(self, mint: str) -> Dict[str, Any]:
        """Fetch the raw DAS ``getAsset`` result for a mint."""
        logger.debug(f"Fetching asset for {mint}")
        result = await self._make_request('getAsset', {'id': mint})
        if not isinstance(result, dict):
            raise MetadataUnavailable(mint, "empty getAsset result")
        return result

    async def get_token_metadata(self, mint: str) -> TokenMetadata:
        """
        Resolve symbol and decimals for a mint.

        Raises:
            MetadataUnavailable: If the asset has no usable symbol
            CredentialsExhausted: If every API key is cooling down
        """
        if mint == WRAPPED_SOL_MINT:
            return WRAPPED_SOL_METADATA

        try:
            asset = await self.get_asset(mint)
        except (aiohttp.ClientError, asyncio.TimeoutError, RateLimitedError) as e:
            logger.error(f"Failed to fetch metadata for {mint}: {e}")
            raise MetadataUnavailable(mint, str(e)) from e

        metadata = parse_asset_metadata(asset)
        if metadata is None:
            raise MetadataUnavailable(mint, "asset has no symbol")

        logger.info(f"Resolved {mint[:8]}... -> {metadata.symbol}")
        return metadata


def parse_asset_metadata(asset: Dict[str, Any]) -> Optional[TokenMetadata]:
    """Extract symbol, decimals and name from a getAsset result."""
    content = asset.get('content') or {}
    if not isinstance(content, dict):
        content = {}
    metadata = content.get('metadata') or {}
    if not isinstance(metadata, dict):
        metadata = {}
    token_info = asset.get('token_info') or {}
    if not isinstance(token_info, dict):
        token_info = {}

    symbol = (metadata.get('symbol') or token_info.get('symbol') or '').strip()
    if not symbol:
        return None

    try:
        decimals = int(token_info.get('decimals', 0))
    except (TypeError, ValueError):
        decimals = 0

    name = (metadata.get('name') or '').strip() or None
    return TokenMetadata(symbol=symbol, decimals=decimals, name=name)


class RateLimiter:
    """Token bucket rate limiter for API requests."""

    def __init__(self, requests_per_minute: int):
        self.requests_per_minute = requests_per_minute
        self.tokens = float(requests_per_minute)
        self.last_update = time.monotonic()
        self.lock = asyncio.Lock()

    async def acquire(self):
        """Acquire a token for making a request."""
        async with self.lock:
            now = time.monotonic()
            elapsed = now - self.last_update

            self.tokens = min(
                self.requests_per_minute,
                self.tokens + elapsed * (self.requests_per_minute / 60.0)
            )
            self.last_update = now

            if self.tokens >= 1:
                self.tokens -= 1
            else:
                wait_time = (1 - self.tokens) / (self.requests_per_minute / 60.0)
                await asyncio.sleep(wait_time)
                self.tokens = 0
                self.last_update = time.monotonic()
