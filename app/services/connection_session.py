"""Client-side live connection to the dispatch push channel.

One ConnectionSession keeps exactly one logical connection per user session:

    disconnected -> connecting -> connected -> disconnected (-> connecting ...)

- Only one connection attempt is ever in flight; ``connect()`` while one is
  pending or open does nothing.
- Messages sent while disconnected are queued and flushed in FIFO order on the
  next successful connect. A message whose send fails goes back to the front
  of the queue.
- Retry delays grow by ``decay`` after each failed or closed attempt, capped at
  ``max_interval``, and drop back to ``base_interval`` on a successful connect.
- A handshake that does not finish within ``connection_timeout`` is abandoned
  and counted as a failed attempt.
- While connected a ``ping`` is sent every ``heartbeat_interval``. Missing
  pongs do not close the connection; liveness relies on the transport's own
  close events.
- ``reconnect_now()`` (tab visible again, network back online) skips the
  pending backoff wait once when disconnected.
- With ``max_attempts`` set, the session gives up after that many consecutive
  failed attempts. By default it retries forever.
"""

import asyncio
import json
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from urllib.parse import quote

import websockets

from app.config import (
    CONNECTION_TIMEOUT,
    HEARTBEAT_INTERVAL,
    RECONNECT_BASE_INTERVAL,
    RECONNECT_DECAY,
    RECONNECT_MAX_INTERVAL,
)
from app.models.events import PING, PONG, parse_frame

logger = logging.getLogger(__name__)

# Errors that mean "the transport is gone", as opposed to bugs in our code
TRANSPORT_ERRORS = (OSError, websockets.WebSocketException)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Backoff:
    """Multiplicative retry delay: base * decay**failures, capped at maximum."""

    def __init__(self, base: float, decay: float, maximum: float):
        self.base = base
        self.decay = decay
        self.maximum = maximum
        self.failures = 0

    @property
    def current(self) -> float:
        return min(self.base * self.decay ** self.failures, self.maximum)

    def next_delay(self) -> float:
        delay = self.current
        if delay < self.maximum:
            self.failures += 1
        return delay

    def reset(self) -> None:
        self.failures = 0


def session_url(base_url: str, token: str) -> str:
    """Push channel URL carrying the access token as a query parameter."""
    if not token:
        raise ValueError("An access token is required to open the push channel")
    return f"{base_url}?token={quote(token, safe='')}"


class ConnectionSession:
    def __init__(
        self,
        url: str,
        on_message: Callable[[dict], Awaitable[None]] | None = None,
        on_state_change: Callable[[SessionState], None] | None = None,
        *,
        connector: Callable[[str], Awaitable[Any]] | None = None,
        base_interval: float = RECONNECT_BASE_INTERVAL,
        decay: float = RECONNECT_DECAY,
        max_interval: float = RECONNECT_MAX_INTERVAL,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        connection_timeout: float = CONNECTION_TIMEOUT,
        max_attempts: int | None = None,
    ):
        self.url = url
        self.on_message = on_message
        self.on_state_change = on_state_change
        self._connector = connector or websockets.connect
        self.backoff = Backoff(base_interval, decay, max_interval)
        self.heartbeat_interval = heartbeat_interval
        self.connection_timeout = connection_timeout
        self.max_attempts = max_attempts

        self.state = SessionState.DISCONNECTED
        self.last_retry_delay: float | None = None
        self.failed_attempts = 0
        self._queue: deque[dict] = deque()
        self._ws = None
        self._flushing = False
        self._running = False
        self._supervisor: asyncio.Task | None = None
        self._wake = asyncio.Event()

    @property
    def pending(self) -> int:
        """Number of messages waiting for a connection."""
        return len(self._queue)

    def _set_state(self, state: SessionState) -> None:
        if state == self.state:
            return
        logger.info("Push channel %s -> %s", self.state.value, state.value)
        self.state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    def connect(self) -> bool:
        """Start connecting. Returns False if a connection is already pending or open."""
        if self._supervisor is not None and not self._supervisor.done():
            return False
        self._running = True
        self.failed_attempts = 0
        self._wake.clear()
        self._supervisor = asyncio.create_task(self._supervise())
        return True

    def reconnect_now(self) -> bool:
        """Retry immediately if disconnected, skipping the current backoff wait once."""
        if not self._running or self.state != SessionState.DISCONNECTED:
            return False
        logger.info("Reconnect requested, skipping backoff")
        self._wake.set()
        return True

    def notify_visible(self) -> bool:
        return self.reconnect_now()

    def notify_online(self) -> bool:
        return self.reconnect_now()

    async def close(self) -> None:
        """Stop for good: no more retries, drop the live connection."""
        self._running = False
        self._wake.set()
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except TRANSPORT_ERRORS as e:
                logger.debug("Error while closing push channel: %s", e)
        if self._supervisor is not None and not self._supervisor.done():
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
        self._set_state(SessionState.DISCONNECTED)

    async def send(self, message: dict) -> bool:
        """Send now if connected, otherwise queue. Returns True only if it went out now."""
        if self.state != SessionState.CONNECTED or self._ws is None or self._flushing:
            self._queue.append(message)
            logger.debug("Queued %s (%d pending)", message.get("type"), len(self._queue))
            return False
        if self._queue:
            # Older messages from an interrupted flush go first
            self._queue.append(message)
            await self._flush_queue()
            return not self._queue
        try:
            await self._ws.send(json.dumps(message))
            return True
        except TRANSPORT_ERRORS as e:
            logger.warning("Send failed, queued for retry: %s", e)
            self._queue.append(message)
            return False

    async def _supervise(self) -> None:
        while self._running:
            await self._attempt()
            if not self._running:
                break
            if self.max_attempts is not None and self.failed_attempts >= self.max_attempts:
                logger.warning("Giving up on push channel after %d failed attempts", self.failed_attempts)
                self._running = False
                break
            delay = self.backoff.next_delay()
            self.last_retry_delay = delay
            logger.info("Reconnecting in %.2fs", delay)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except TimeoutError:
                pass
            self._wake.clear()

    async def _open(self):
        return await self._connector(self.url)

    async def _attempt(self) -> None:
        self._set_state(SessionState.CONNECTING)
        try:
            ws = await asyncio.wait_for(self._open(), timeout=self.connection_timeout)
        except TimeoutError:
            logger.warning("Push channel handshake timed out after %.1fs", self.connection_timeout)
            self.failed_attempts += 1
            self._set_state(SessionState.DISCONNECTED)
            return
        except TRANSPORT_ERRORS as e:
            logger.warning("Push channel connection failed: %s", e)
            self.failed_attempts += 1
            self._set_state(SessionState.DISCONNECTED)
            return

        self._ws = ws
        self.backoff.reset()
        self.failed_attempts = 0
        self._set_state(SessionState.CONNECTED)
        await self._flush_queue()
        heartbeat = asyncio.create_task(self._heartbeat())
        try:
            async for raw in ws:
                await self._handle(raw)
        except websockets.ConnectionClosed as e:
            logger.info("Push channel closed: %s", e)
        except OSError as e:
            logger.warning("Push channel transport error: %s", e)
        except Exception:
            # A reader bug ends this connection but never the session
            logger.exception("Push channel reader failed, reconnecting")
            try:
                await ws.close()
            except TRANSPORT_ERRORS as e:
                logger.debug("Error while closing push channel: %s", e)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            self._ws = None
            self._set_state(SessionState.DISCONNECTED)

    async def _flush_queue(self) -> None:
        self._flushing = True
        try:
            while self._queue and self._ws is not None:
                message = self._queue.popleft()
                try:
                    await self._ws.send(json.dumps(message))
                except TRANSPORT_ERRORS as e:
                    logger.warning("Flush interrupted, %d message(s) kept: %s", len(self._queue) + 1, e)
                    self._queue.appendleft(message)
                    break
        finally:
            self._flushing = False

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if self._ws is None:
                return
            try:
                await self._ws.send(json.dumps({"type": PING, "timestamp": datetime.now(UTC).isoformat()}))
            except TRANSPORT_ERRORS as e:
                logger.debug("Heartbeat failed: %s", e)

    async def _handle(self, raw: str | bytes) -> None:
        frame = parse_frame(raw)
        if frame["type"] == PONG:
            return
        if self.on_message is None:
            return
        try:
            await self.on_message(frame)
        except Exception:
            logger.exception("Message handler failed for %s frame", frame["type"])
