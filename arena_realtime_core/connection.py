"""
Room-scoped push channel connections.

One `RoomConnection` per (room kind, room id), owned by a `ConnectionRegistry`
and explicitly opened/closed by the consuming view.

Features:
- Automatic reconnection with capped exponential backoff + jitter
- Application-level heartbeat frame
- Raw frames forwarded to a shared asyncio.Queue (decoded elsewhere)
- send() is best-effort: False when not connected, never raises
- close() cancels the run loop, heartbeat and any pending backoff sleep before
  returning; nothing of a closed connection reaches the queue or listeners

Connection lifecycle:
  disconnected -> connecting -> connected
  connected --(error / unexpected close)--> reconnecting(attempt, next_retry_at)
  reconnecting --(backoff elapsed)--> connecting -> ...
  any --(close())--> disconnected
"""

import asyncio
import json
import logging
import random
import time
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import settings
from .events import RawFrame, RoomKey, RoomKind

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class ConnectionState:
    phase: ConnectionPhase
    attempt: int = 0
    next_retry_at_ms: Optional[int] = None

    @property
    def is_connected(self) -> bool:
        return self.phase is ConnectionPhase.CONNECTED


DISCONNECTED = ConnectionState(ConnectionPhase.DISCONNECTED)
CONNECTING = ConnectionState(ConnectionPhase.CONNECTING)
CONNECTED = ConnectionState(ConnectionPhase.CONNECTED)


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry delay schedule: base * factor**(attempt-1), jittered upward, capped.

    With jitter in [0, 1] and factor >= 2 the schedule is monotonically
    non-decreasing in `attempt`.
    """

    base: float = 1.0
    cap: float = 30.0
    factor: float = 2.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.base <= 0 or self.cap < self.base:
            raise ValueError("backoff requires 0 < base <= cap")
        if self.factor < 2:
            raise ValueError("backoff factor must be >= 2")
        if not 0 <= self.jitter <= 1:
            raise ValueError("backoff jitter must be within [0, 1]")

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            base=settings.BACKOFF_BASE_SECONDS,
            cap=settings.BACKOFF_CAP_SECONDS,
            jitter=settings.BACKOFF_JITTER,
        )

    def delay(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        if attempt < 1:
            raise ValueError("attempt starts at 1")
        # Exponent clamp keeps the float finite for long outages
        raw = min(self.cap, self.base * self.factor ** min(attempt - 1, 64))
        return min(self.cap, raw * (1 + self.jitter * rand()))


def room_url(base_url: str, key: RoomKey) -> str:
    kind, room_id = key
    segment = "contests" if kind == RoomKind.CONTEST else "threads"
    return f"{base_url.rstrip('/')}/{segment}/{quote(str(room_id), safe='')}"


def default_connect(url: str) -> Awaitable[Any]:
    # Open timeout is enforced by RoomConnection itself
    return websockets.connect(url, open_timeout=None)


StateListener = Callable[[ConnectionState], None]


class RoomConnection:
    """Long-lived push channel for one room."""

    def __init__(
        self,
        key: RoomKey,
        url: str,
        sink: "asyncio.Queue[RawFrame]",
        *,
        connect: Callable[[str], Awaitable[Any]] | None = None,
        backoff: BackoffPolicy | None = None,
        heartbeat_interval: float | None = None,
        connect_timeout: float | None = None,
        heartbeat_message: Dict[str, Any] | None = None,
    ):
        self.key = key
        self.url = url
        self._sink = sink
        self._connect = connect or default_connect
        self.backoff = backoff or BackoffPolicy.from_settings()
        self.heartbeat_interval = (
            settings.HEARTBEAT_SECONDS if heartbeat_interval is None else heartbeat_interval
        )
        self.connect_timeout = (
            settings.CONNECT_TIMEOUT_SECONDS if connect_timeout is None else connect_timeout
        )
        self.heartbeat_message = heartbeat_message or {"type": "ping"}

        self._state = DISCONNECTED
        self._listeners: List[StateListener] = []
        self._task: asyncio.Task | None = None
        self._transport: Any = None
        self._wanted = False
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_state(self, state: ConnectionState) -> None:
        if self._closed and state.phase is not ConnectionPhase.DISCONNECTED:
            return
        if state == self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.error("Connection listener failed for %s", self.key, exc_info=True)

    def open(self) -> None:
        if self._closed:
            raise RuntimeError(f"connection {self.key} was closed; open a new one")
        if self._task is not None and not self._task.done():
            return
        self._wanted = True
        self._set_state(CONNECTING)
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        attempt = 0
        while self._wanted:
            if attempt:
                self._set_state(ConnectionState(ConnectionPhase.CONNECTING, attempt))
            try:
                transport = await asyncio.wait_for(
                    self._connect(self.url), timeout=self.connect_timeout
                )
            except TRANSPORT_ERRORS as exc:
                logger.warning("WS %s connect failed: %s", self.key, exc)
            else:
                attempt = 0
                self._transport = transport
                self._set_state(CONNECTED)
                logger.info("WS connected: %s", self.url)
                await self._session(transport)

            if not self._wanted:
                break
            attempt += 1
            delay = self.backoff.delay(attempt)
            self._set_state(
                ConnectionState(
                    ConnectionPhase.RECONNECTING,
                    attempt,
                    int((time.time() + delay) * 1000),
                )
            )
            logger.info(
                "WS %s reconnecting in %.1fs (attempt %d)", self.key, delay, attempt
            )
            await asyncio.sleep(delay)

    async def _session(self, transport: Any) -> None:
        heartbeat = asyncio.get_running_loop().create_task(self._heartbeat(transport))
        try:
            async for raw in transport:
                if not self._wanted:
                    break
                self._sink.put_nowait(RawFrame(self.key, raw))
            if self._wanted:
                logger.info("WS %s closed by server", self.key)
        except ConnectionClosed as exc:
            logger.info("WS %s connection closed: %s", self.key, exc)
        except TRANSPORT_ERRORS as exc:
            logger.warning("WS %s transport error: %s", self.key, exc)
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            self._transport = None
            with suppress(*TRANSPORT_ERRORS):
                await transport.close()

    async def _heartbeat(self, transport: Any) -> None:
        if self.heartbeat_interval <= 0:
            return
        payload = json.dumps(self.heartbeat_message)
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await transport.send(payload)
            except TRANSPORT_ERRORS as exc:
                logger.debug("WS %s heartbeat failed: %s", self.key, exc)
                return

    async def send(self, message: Dict[str, Any] | str) -> bool:
        """Advisory send. Returns False (never raises) when not delivered to the transport."""
        transport = self._transport
        if not self._state.is_connected or transport is None:
            logger.debug("WS %s send skipped: %s", self.key, self._state.phase.value)
            return False
        payload = message if isinstance(message, str) else json.dumps(message)
        try:
            await transport.send(payload)
        except TRANSPORT_ERRORS as exc:
            logger.warning("WS %s send failed: %s", self.key, exc)
            return False
        return True

    async def close(self) -> None:
        self._wanted = False
        self._closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        transport, self._transport = self._transport, None
        if transport is not None:
            with suppress(*TRANSPORT_ERRORS):
                await transport.close()
        self._set_state(DISCONNECTED)
        self._listeners.clear()
        logger.info("WS closed: %s", self.key)


class ConnectionRegistry:
    """At most one live RoomConnection per room key."""

    def __init__(
        self,
        sink: "asyncio.Queue[RawFrame]",
        *,
        base_url: str | None = None,
        connect: Callable[[str], Awaitable[Any]] | None = None,
        backoff: BackoffPolicy | None = None,
        heartbeat_interval: float | None = None,
        connect_timeout: float | None = None,
    ):
        self.sink = sink
        self.base_url = base_url or settings.WS_BASE_URL
        self._connect = connect
        self._backoff = backoff
        self._heartbeat_interval = heartbeat_interval
        self._connect_timeout = connect_timeout
        self._connections: Dict[RoomKey, RoomConnection] = {}

    def open(self, key: RoomKey, url: str | None = None) -> RoomConnection:
        existing = self._connections.get(key)
        if existing is not None and not existing.closed:
            return existing
        conn = RoomConnection(
            key,
            url or room_url(self.base_url, key),
            self.sink,
            connect=self._connect,
            backoff=self._backoff,
            heartbeat_interval=self._heartbeat_interval,
            connect_timeout=self._connect_timeout,
        )
        self._connections[key] = conn
        conn.open()
        return conn

    def get(self, key: RoomKey) -> RoomConnection | None:
        return self._connections.get(key)

    async def close(self, key: RoomKey) -> None:
        conn = self._connections.pop(key, None)
        if conn is not None:
            await conn.close()

    async def close_all(self) -> None:
        for key in list(self._connections):
            await self.close(key)

    def __contains__(self, key: object) -> bool:
        return key in self._connections

    def __len__(self) -> int:
        return len(self._connections)
