"""Helius WebSocket stream client with an explicit reconnect state machine."""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple, Union

import websockets
from websockets.exceptions import WebSocketException

from ..config.settings import HeliusConfig, ReconnectConfig
from ..core.credentials import Credential, CredentialPool, mask_key
from ..core.errors import CredentialsExhausted, ProviderConnectionError
from ..core.models import ConnectionState, RegistryDelta
from ..core.registry import AddressRegistry
from ..utils.retry import ReconnectBackoff

logger = logging.getLogger(__name__)

FrameHandler = Callable[[Union[str, bytes]], Awaitable[None]]


def _status_code(error: Exception) -> Optional[int]:
    """HTTP status of a rejected handshake, if the exception carries one."""
    response = getattr(error, 'response', None)
    status = getattr(response, 'status_code', None)
    if status is None:
        status = getattr(error, 'status_code', None)
    return status


class ConnectionManager:
    """
    Owns the Helius streaming connection.

    State machine:
    - DISCONNECTED -> CONNECTING on connect()
    - CONNECTING -> CONNECTED after the handshake; the full wallet snapshot is subscribed
    - CONNECTING -> RECONNECTING on handshake failure or timeout
    - CONNECTED -> RECONNECTING on transport error, close, or missed heartbeat
    - RECONNECTING -> CONNECTING after the backoff delay
    - RECONNECTING -> TERMINATED once max_attempts is exceeded; connect() restarts
    - All keys cooling down: wait in RECONNECTING until one recovers, without
      spending a reconnect attempt

    Registry deltas are queued in call order and sent by a single sender
    task while a socket is open. Frames are handed to ``frame_handler`` one at
    a time in arrival order.
    """

    def __init__(
        self,
        config: HeliusConfig,
        reconnect_config: ReconnectConfig,
        registry: AddressRegistry,
        credentials: CredentialPool,
        frame_handler: FrameHandler,
        connector: Optional[Callable[..., Awaitable[Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.config = config
        self.reconnect_config = reconnect_config
        self.registry = registry
        self.credentials = credentials
        self._frame_handler = frame_handler
        self._connector = connector or websockets.connect
        self._clock = clock
        self._sleep = sleep

        self.backoff = ReconnectBackoff(
            initial_delay=reconnect_config.initial_backoff_seconds,
            max_delay=reconnect_config.max_backoff_seconds,
            backoff_factor=reconnect_config.backoff_multiplier
        )

        self.websocket: Optional[Any] = None
        self._state = ConnectionState.DISCONNECTED
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._sender_task: Optional[asyncio.Task] = None
        self._outbox: "asyncio.Queue[Tuple[str, frozenset]]" = asyncio.Queue()
        self._connected_event = asyncio.Event()

        self.stats = {
            'frames_received': 0,
            'frames_sent': 0,
            'handler_errors': 0,
            'connection_count': 0,
            'handshake_failures': 0,
            'transport_errors': 0,
            'heartbeat_timeouts': 0,
            'credential_waits': 0,
            'last_message_time': None,
            'connected_since': None
        }

        registry.add_listener(self._on_registry_delta)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState):
        if state == self._state:
            return
        logger.info(f"Stream state {self._state.value} -> {state.value}")
        self._state = state

        if state == ConnectionState.CONNECTED:
            self.stats['connected_since'] = time.time()
            self._connected_event.set()
        else:
            self.stats['connected_since'] = None
            self._connected_event.clear()

    async def connect(self):
        """Start the connection lifecycle. No-op while it is already running."""
        if self._task and not self._task.done():
            logger.debug(f"connect() ignored, stream is {self._state.value}")
            return

        self.backoff.reset()
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait until the stream is CONNECTED. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def disconnect(self):
        """Stop the lifecycle and close the socket."""
        self._running = False
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from Helius stream")

    async def _run(self):
        while self._running:
            self._set_state(ConnectionState.CONNECTING)

            try:
                await self._open()
            except asyncio.CancelledError:
                raise
            except CredentialsExhausted as e:
                self.stats['credential_waits'] += 1
                logger.warning(f"Cannot connect to Helius stream: {e}")
                await self._teardown()
                if not await self._wait_for_credentials():
                    return
                continue
            except Exception as e:
                self.stats['handshake_failures'] += 1
                logger.error(f"Failed to connect to Helius stream: {e}")
                await self._teardown()
                if not await self._wait_before_retry():
                    return
                continue

            connected_at = self._clock()
            self._set_state(ConnectionState.CONNECTED)

            try:
                await self._serve()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats['transport_errors'] += 1
                logger.warning(f"Stream connection lost: {e}")
            finally:
                await self._teardown()

            if not self._running:
                break

            if self._clock() - connected_at >= self.reconnect_config.stability_window_seconds:
                self.backoff.reset()

            if not await self._wait_before_retry():
                return

    async def _open(self):
        """Handshake and subscribe the current wallet snapshot."""
        credential = self.credentials.active_credential()
        url = self._build_url(credential)
        self.credentials.record_call()

        logger.info(f"Connecting to Helius stream: {url.replace(credential.key, mask_key(credential.key))}")

        try:
            self.websocket = await asyncio.wait_for(
                self._connector(
                    url,
                    ping_interval=None,
                    close_timeout=10,
                    max_size=2**22
                ),
                timeout=self.reconnect_config.handshake_timeout_seconds
            )
        except WebSocketException as e:
            if _status_code(e) == 429:
                self.credentials.rotate("stream handshake rate limited", cooldown=True, credential=credential)
            raise ProviderConnectionError(f"Handshake rejected: {e}") from e
        except asyncio.TimeoutError as e:
            raise ProviderConnectionError(
                f"Handshake timed out after {self.reconnect_config.handshake_timeout_seconds}s"
            ) from e
        except OSError as e:
            raise ProviderConnectionError(f"Handshake failed: {e}") from e

        self.stats['connection_count'] += 1

        # The snapshot supersedes anything queued for an earlier socket
        self._drain_outbox()
        snapshot = self.registry.snapshot()
        if snapshot:
            try:
                await self._send_control("subscribe", snapshot)
            except (WebSocketException, OSError) as e:
                raise ProviderConnectionError(f"Failed to resubscribe wallets: {e}") from e

        logger.info(f"Connected to Helius stream, subscribed {len(snapshot)} wallet(s)")

    async def _serve(self):
        self._sender_task = asyncio.create_task(self._send_loop())
        try:
            await self._read_loop()
        finally:
            await self._stop_sender()

    async def _read_loop(self):
        while self._running:
            try:
                frame = await asyncio.wait_for(
                    self.websocket.recv(),
                    timeout=self.reconnect_config.heartbeat_interval_seconds
                )
            except asyncio.TimeoutError:
                await self._check_heartbeat()
                continue

            self.stats['frames_received'] += 1
            self.stats['last_message_time'] = time.time()
            await self._dispatch_frame(frame)

    async def _check_heartbeat(self):
        """Ping an idle socket; a missing pong means the connection is stale."""
        try:
            pong_waiter = await self.websocket.ping()
            await asyncio.wait_for(pong_waiter, timeout=self.reconnect_config.heartbeat_timeout_seconds)
        except asyncio.TimeoutError as e:
            self.stats['heartbeat_timeouts'] += 1
            raise ProviderConnectionError(
                f"No pong within {self.reconnect_config.heartbeat_timeout_seconds}s, connection is stale"
            ) from e
        logger.debug("Heartbeat ok")

    async def _dispatch_frame(self, frame: Union[str, bytes]):
        try:
            await self._frame_handler(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats['handler_errors'] += 1
            logger.error(f"Frame handler error: {e}", exc_info=True)

    def _on_registry_delta(self, delta: RegistryDelta):
        # Deltas only matter for an open socket; (re)connects send the full snapshot
        if self.websocket is None:
            return
        if delta.removed:
            self._outbox.put_nowait(("unsubscribe", delta.removed))
        if delta.added:
            self._outbox.put_nowait(("subscribe", delta.added))

    async def _send_loop(self):
        while True:
            action, addresses = await self._outbox.get()
            try:
                await self._send_control(action, addresses)
            except (WebSocketException, OSError) as e:
                logger.warning(f"Failed to send {action} frame, forcing reconnect: {e}")
                if self.websocket is not None:
                    await self.websocket.close()
                return

    async def _send_control(self, action: str, addresses: Iterable[str]):
        addresses = sorted(addresses)
        frame = json.dumps({'action': action, 'addresses': addresses})
        await self.websocket.send(frame)
        self.stats['frames_sent'] += 1
        logger.info(f"Sent {action} for {len(addresses)} wallet(s)")

    def _drain_outbox(self):
        while not self._outbox.empty():
            self._outbox.get_nowait()

    async def _stop_sender(self):
        task, self._sender_task = self._sender_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _teardown(self):
        await self._stop_sender()
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error while closing websocket: {e}")

    async def _wait_before_retry(self) -> bool:
        """Back off before the next attempt. Returns False once terminated."""
        self._set_state(ConnectionState.RECONNECTING)

        if self.backoff.attempts >= self.reconnect_config.max_attempts:
            self._running = False
            self._set_state(ConnectionState.TERMINATED)
            logger.error(
                f"Max reconnection attempts ({self.reconnect_config.max_attempts}) reached, "
                f"stream terminated until connect() is called"
            )
            return False

        delay = self.backoff.next_delay()
        logger.info(
            f"Reconnection attempt {self.backoff.attempts}/{self.reconnect_config.max_attempts} in {delay:.1f}s"
        )
        await self._sleep(delay)
        return self._running

    async def _wait_for_credentials(self) -> bool:
        """Sleep until a cooling key recovers. Does not count as a reconnect attempt."""
        self._set_state(ConnectionState.RECONNECTING)

        delay = self.credentials.seconds_until_available()
        logger.info(f"All API keys cooling down, retrying stream in {delay:.1f}s")
        await self._sleep(delay)
        return self._running

    def _build_url(self, credential: Credential) -> str:
        base = self.config.ws_url
        if '?' in base:
            return f"{base}&api-key={credential.key}"
        return f"{base.rstrip('/')}/?api-key={credential.key}"

    def get_stats(self) -> Dict[str, Any]:
        """Get connection and processing statistics."""
        last_message_age = None
        if self.stats['last_message_time']:
            last_message_age = time.time() - self.stats['last_message_time']

        return {
            **self.stats,
            'state': self._state.value,
            'last_message_age_seconds': last_message_age,
            'is_connected': self.is_connected,
            'reconnect_attempts': self.backoff.attempts,
            'pending_control_frames': self._outbox.qsize()
        }

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check on the stream connection."""
        stats = self.get_stats()
        issues = []

        if self._state == ConnectionState.TERMINATED:
            issues.append('Stream terminated after max reconnection attempts')
        elif not stats['is_connected']:
            issues.append(f"Stream {self._state.value}")

        if stats['frames_received'] > 0:
            error_rate = stats['handler_errors'] / stats['frames_received']
            if error_rate > 0.05:
                issues.append(f"High handler error rate: {error_rate:.2%}")

        return {
            'status': 'healthy' if not issues else 'unhealthy',
            'issues': issues,
            'stats': stats
        }
