"""Event dispatch: decoded frames -> the owning room's reducer.

Every mutation of room state, whether from an inbound frame, a timer tick
or a local action, goes through `RoomStore._commit` on the event loop
thread, and frames from all rooms are drained by one `pump()` task, so two
reducer invocations never overlap.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List

from .contest import ReduceOutcome
from .dedup import NotificationDeduper
from .events import DecodeError, EventType, InboundEvent, RawFrame, RoomKey, decode
from .presence import PresenceTracker

logger = logging.getLogger(__name__)

Reducer = Callable[[Dict[str, Any], InboundEvent], ReduceOutcome]
Ticker = Callable[[Dict[str, Any], float], ReduceOutcome]
StoreListener = Callable[[Dict[str, Any], List[dict]], None]


class RoomStore:
    """Holds one room's state; the only writer of that state."""

    def __init__(
        self,
        key: RoomKey,
        state: Dict[str, Any],
        reducer: Reducer,
        *,
        ticker: Ticker | None = None,
        deduper: NotificationDeduper | None = None,
    ):
        self.key = key
        self._state = state
        self._reducer = reducer
        self._ticker = ticker
        self._deduper = deduper
        self._listeners: List[StoreListener] = []
        self.last_update_ms: int | None = None
        self.closed = False

    @property
    def state(self) -> Dict[str, Any]:
        return self._state

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def apply(self, event: InboundEvent) -> ReduceOutcome | None:
        if self.closed:
            return None
        # Staleness indicator: independent of whether the reducer accepts the event
        if self.last_update_ms is None or event.server_ts_ms > self.last_update_ms:
            self.last_update_ms = event.server_ts_ms
        outcome = self._reducer(self._state, event)
        self._commit(outcome)
        return outcome

    def tick(self, now: float) -> bool:
        """Advance the room's countdown; False once there is nothing left to tick."""
        if self.closed or self._ticker is None:
            return False
        outcome = self._ticker(self._state, now)
        self._commit(outcome)
        timer = self._state.get("timer") or {}
        return not timer.get("endedFired")

    def mutate(self, fn: Callable[[Dict[str, Any]], ReduceOutcome]) -> ReduceOutcome | None:
        """Apply a local, pure transition (optimistic echo, mark read...)."""
        if self.closed:
            return None
        outcome = fn(self._state)
        self._commit(outcome)
        return outcome

    def _commit(self, outcome: ReduceOutcome) -> None:
        if outcome.applied:
            self._state = outcome.state
        emitted = [
            n
            for n in outcome.notifications
            if self._deduper is None or self._deduper.should_emit(n["id"])
        ]
        if not outcome.applied and not emitted:
            return
        for listener in list(self._listeners):
            try:
                listener(self._state, emitted)
            except Exception:
                logger.error("Room listener failed for %s", self.key, exc_info=True)

    def close(self) -> None:
        self.closed = True
        self._listeners.clear()


class EventDispatcher:
    """Routes decoded events by (room kind, room id) to registered stores."""

    def __init__(
        self,
        presence: PresenceTracker | None = None,
        deduper: NotificationDeduper | None = None,
    ):
        self.presence = presence
        self.deduper = deduper
        self._stores: Dict[RoomKey, RoomStore] = {}

    def register(self, store: RoomStore) -> RoomStore:
        if store.key in self._stores and self._stores[store.key] is not store:
            raise ValueError(f"room {store.key} already has a store")
        self._stores[store.key] = store
        return store

    def unregister(self, key: RoomKey) -> RoomStore | None:
        return self._stores.pop(key, None)

    def get(self, key: RoomKey) -> RoomStore | None:
        return self._stores.get(key)

    def feed(self, frame: RawFrame | str | bytes) -> bool:
        """Decode and dispatch one raw frame. Errors are logged and swallowed."""
        if not isinstance(frame, RawFrame):
            frame = RawFrame(key=None, payload=frame)
        event = decode(frame.payload, received_at=frame.received_at)
        if isinstance(event, DecodeError):
            logger.warning(
                "Dropping undecodable frame (%s): %s", event.kind, event.message
            )
            return False
        if (
            frame.key is not None
            and event.room_key is not None
            and event.room_key != frame.key
        ):
            logger.debug(
                "Dropping %s for %s received on connection %s",
                event.type.value,
                event.room_key,
                frame.key,
            )
            return False
        return self.dispatch(event)

    def dispatch(self, event: InboundEvent) -> bool:
        if event.type == EventType.PRESENCE_UPDATE:
            if self.presence is None:
                return False
            self.presence.on_update(event)
            return True

        key = event.room_key
        store = self._stores.get(key) if key is not None else None
        if store is None:
            logger.debug("Dropping %s for unknown room %s", event.type.value, key)
            return False
        store.apply(event)
        return True

    async def pump(self, queue: "asyncio.Queue[RawFrame]") -> None:
        """Drain frames forever, strictly one at a time."""
        while True:
            frame = await queue.get()
            try:
                self.feed(frame)
            except Exception:
                logger.error("Frame dispatch failed", exc_info=True)
            finally:
                queue.task_done()
