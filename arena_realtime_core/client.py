"""Client facade: rooms opened and closed by the consuming view.

A `RealtimeClient` owns the shared pieces (frame queue, dispatcher pump,
presence tracker, notification deduper, connection registry). Each open view
holds a `ContestRoom` or `ChatRoom`, which wires one connection, one store and
(for contests) one countdown loop, and tears all of them down on `close()`.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Set

from .chat import (
    add_local_echo,
    apply_peer_presence,
    default_thread_state,
    mark_thread_read,
    parse_timestamp_ms,
    reduce_chat,
    visible_messages,
)
from .connection import BackoffPolicy, ConnectionRegistry, ConnectionState, RoomConnection
from .contest import (
    ReduceOutcome,
    default_contest_state,
    reduce_contest,
    set_contest_paused,
    tick_contest,
)
from .dedup import NotificationDeduper
from .dispatcher import EventDispatcher, RoomStore, StoreListener
from .events import RawFrame, RoomKey, RoomKind
from .presence import PresenceRecord, PresenceTracker
from .rest import ChatApi
from .timer import TimerReconciler
from .validation import InputSanitizer

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Room:
    """Handle for one open room; shared by contest and chat views."""

    def __init__(self, client: "RealtimeClient", store: RoomStore, connection: RoomConnection):
        self._client = client
        self.store = store
        self.connection = connection
        self._closed = False
        self._sends: Set[asyncio.Task] = set()

    @property
    def key(self) -> RoomKey:
        return self.store.key

    @property
    def state(self) -> Dict[str, Any]:
        return self.store.state

    @property
    def connection_state(self) -> ConnectionState:
        return self.connection.state

    @property
    def last_update_ms(self) -> int | None:
        return self.store.last_update_ms

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def add_connection_listener(
        self, listener: Callable[[ConnectionState], None]
    ) -> Callable[[], None]:
        return self.connection.add_listener(listener)

    def _spawn_send(self, message: Dict[str, Any]) -> None:
        # Sends triggered from synchronous listeners; cancelled on close
        task = asyncio.get_running_loop().create_task(self.connection.send(message))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    async def _teardown(self) -> None:
        """Room-specific cleanup run before the connection closes."""

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._client._forget(self)
        self.store.close()
        await self._teardown()
        for task in list(self._sends):
            task.cancel()
        for task in list(self._sends):
            with suppress(asyncio.CancelledError):
                await task
        await self._client.connections.close(self.key)
        logger.info("Room closed: %s", self.key)


class ContestRoom(Room):
    def __init__(
        self,
        client: "RealtimeClient",
        store: RoomStore,
        connection: RoomConnection,
        timer: TimerReconciler,
    ):
        super().__init__(client, store, connection)
        self.timer = timer

    @property
    def contest_id(self) -> str:
        return self.key[1]

    async def send_action(self, action: str, data: Dict[str, Any] | None = None) -> bool:
        """Advisory upstream frame; authoritative results arrive as events."""
        return await self.connection.send(
            {
                "type": action,
                "contestId": self.contest_id,
                "data": data or {},
                "timestamp": _now_iso(),
            }
        )

    def set_paused(self, paused: bool) -> bool:
        now = self._client.clock()
        outcome = self.store.mutate(lambda s: set_contest_paused(s, paused, now))
        return bool(outcome and outcome.applied)

    async def _teardown(self) -> None:
        await self.timer.stop()


class ChatRoom(Room):
    def __init__(
        self,
        client: "RealtimeClient",
        store: RoomStore,
        connection: RoomConnection,
        peer_id: str | None,
    ):
        super().__init__(client, store, connection)
        self.peer_id = peer_id
        self._subscription = client.presence.subscribe([peer_id] if peer_id else [])
        self._unlisten_presence = client.presence.add_listener(self._on_presence)
        self._unlisten_connection = connection.add_listener(self._on_connection_state)
        current = client.presence.get(peer_id) if peer_id else None
        if current is not None:
            self._on_presence(current)

    @property
    def thread_id(self) -> str:
        return self.key[1]

    @property
    def api(self) -> ChatApi:
        if self._client.api is None:
            raise RuntimeError("ChatRoom actions require a ChatApi")
        return self._client.api

    def _on_presence(self, record: PresenceRecord) -> None:
        if record.user_id == self.peer_id:
            self.store.mutate(lambda s: apply_peer_presence(s, record))

    def announce_watch(self, watched: FrozenSet[str]) -> None:
        """Advisory: tell the server which peers this client currently watches."""
        if self._closed or not self.connection.state.is_connected:
            return
        self._spawn_send({"type": "presence:watch", "data": {"userIds": sorted(watched)}})

    def _on_connection_state(self, state: ConnectionState) -> None:
        # Re-announce the watched set on every (re)connect
        if state.is_connected:
            self.announce_watch(self._client.presence.watched())

    def visible_messages(self, now_ms: int | None = None) -> List[dict]:
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return visible_messages(self.state, now_ms)

    async def send_message(self, text: str) -> str:
        """POST the message, then echo it locally under the server id."""
        clean = InputSanitizer.sanitize_message_text(text)
        if not clean.strip():
            raise ValueError("message text is empty")
        result = await self.api.send_message(self.thread_id, clean)
        message_id = str(result["id"])
        created_at = parse_timestamp_ms(result.get("createdAt"), int(time.time() * 1000))
        self.store.mutate(lambda s: add_local_echo(s, message_id, clean, created_at))
        return message_id

    async def mark_read(self) -> None:
        await self.api.mark_read(self.thread_id)
        self.store.mutate(lambda s: ReduceOutcome(mark_thread_read(s)))

    async def block(self) -> None:
        await self.api.block(self.thread_id)

    async def unblock(self) -> None:
        await self.api.unblock(self.thread_id)

    async def set_disappearing(self, hours: int) -> None:
        await self.api.update_settings(self.thread_id, disappearing_after_hours=hours)

    async def _teardown(self) -> None:
        self._unlisten_connection()
        self._unlisten_presence()
        self._client.presence.release(self._subscription)


class RealtimeClient:
    """Entry point for views: open rooms, close rooms, close everything.

    Usage:
        async with RealtimeClient(self_user_id="u1", api=ChatApi(token=t)) as rt:
            room = rt.open_contest("42")
            room.subscribe(render)
    """

    def __init__(
        self,
        *,
        self_user_id: str | None = None,
        ws_base_url: str | None = None,
        connect: Callable[[str], Awaitable[Any]] | None = None,
        backoff: BackoffPolicy | None = None,
        heartbeat_interval: float | None = None,
        connect_timeout: float | None = None,
        tick_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        api: ChatApi | None = None,
        presence: PresenceTracker | None = None,
        deduper: NotificationDeduper | None = None,
    ):
        self.self_user_id = InputSanitizer.sanitize_id(self_user_id)
        self.clock = clock
        self.tick_interval = tick_interval
        self.api = api
        self.frames: "asyncio.Queue[RawFrame]" = asyncio.Queue()
        self.presence = presence or PresenceTracker()
        self.deduper = deduper or NotificationDeduper()
        self.dispatcher = EventDispatcher(self.presence, self.deduper)
        self.connections = ConnectionRegistry(
            self.frames,
            base_url=ws_base_url,
            connect=connect,
            backoff=backoff,
            heartbeat_interval=heartbeat_interval,
            connect_timeout=connect_timeout,
        )
        self._rooms: Dict[RoomKey, Room] = {}
        self._pump: asyncio.Task | None = None
        self._closed = False
        self._unwatch = self.presence.add_watch_listener(self._on_watch_changed)

    async def __aenter__(self) -> "RealtimeClient":
        self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def rooms(self) -> Dict[RoomKey, Room]:
        return dict(self._rooms)

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("RealtimeClient is closed")
        if self._pump is None or self._pump.done():
            self._pump = asyncio.get_running_loop().create_task(
                self.dispatcher.pump(self.frames)
            )

    def _existing(self, key: RoomKey) -> Room | None:
        room = self._rooms.get(key)
        return room if room is not None and not room.closed else None

    def open_contest(
        self, contest_id: Any, *, initial_state: Dict[str, Any] | None = None
    ) -> ContestRoom:
        contest_id = InputSanitizer.sanitize_id(contest_id)
        if contest_id is None:
            raise ValueError("contest id is required")
        key: RoomKey = (RoomKind.CONTEST, contest_id)
        existing = self._existing(key)
        if existing is not None:
            return existing  # type: ignore[return-value]
        self.start()

        state = initial_state or default_contest_state(contest_id, self.self_user_id)
        store = self.dispatcher.register(
            RoomStore(key, state, reduce_contest, ticker=tick_contest, deduper=self.deduper)
        )
        timer = TimerReconciler(store.tick, interval=self.tick_interval, clock=self.clock)
        connection = self.connections.open(key)
        room = ContestRoom(self, store, connection, timer)
        self._rooms[key] = room
        timer.start()
        logger.info("Contest room opened: %s", contest_id)
        return room

    def open_thread(
        self,
        thread_id: Any,
        *,
        peer_id: Any = None,
        initial_state: Dict[str, Any] | None = None,
    ) -> ChatRoom:
        thread_id = InputSanitizer.sanitize_id(thread_id)
        if thread_id is None:
            raise ValueError("thread id is required")
        key: RoomKey = (RoomKind.CHAT, thread_id)
        existing = self._existing(key)
        if existing is not None:
            return existing  # type: ignore[return-value]
        self.start()

        peer = InputSanitizer.sanitize_id(peer_id)
        state = initial_state or default_thread_state(thread_id, self.self_user_id, peer)
        store = self.dispatcher.register(
            RoomStore(key, state, reduce_chat, deduper=self.deduper)
        )
        connection = self.connections.open(key)
        room = ChatRoom(self, store, connection, peer)
        self._rooms[key] = room
        logger.info("Chat room opened: %s", thread_id)
        return room

    def _on_watch_changed(self, watched: FrozenSet[str]) -> None:
        for room in list(self._rooms.values()):
            if isinstance(room, ChatRoom):
                room.announce_watch(watched)

    def _forget(self, room: Room) -> None:
        if self._rooms.get(room.key) is room:
            del self._rooms[room.key]
        if self.dispatcher.get(room.key) is room.store:
            self.dispatcher.unregister(room.key)

    async def close(self) -> None:
        """Close every room, then stop the pump. Idempotent."""
        self._closed = True
        for room in list(self._rooms.values()):
            await room.close()
        self._unwatch()
        await self.connections.close_all()
        pump, self._pump = self._pump, None
        if pump is not None and not pump.done():
            pump.cancel()
            with suppress(asyncio.CancelledError):
                await pump
