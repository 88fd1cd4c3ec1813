"""Peer presence derived from the lightweight presence stream.

Presence is independent of message content. A client only watches the peers
currently on screen; each open thread holds a `PresenceSubscription` and
releases it when the view closes, so the watched set (and with it the
server-side fan-out) shrinks back as views go away.
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import asdict, dataclass, replace
from typing import Callable, Dict, FrozenSet, Iterable, List

from .chat import parse_timestamp_ms
from .events import EventType, InboundEvent
from .validation import InputSanitizer

logger = logging.getLogger(__name__)

PresenceListener = Callable[["PresenceRecord"], None]
WatchListener = Callable[[FrozenSet[str]], None]


@dataclass(frozen=True)
class PresenceRecord:
    user_id: str
    online: bool
    last_seen_ms: int | None = None
    updated_at_ms: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PresenceSubscription:
    """Handle returned by PresenceTracker.subscribe(); release it exactly once."""

    token: int
    user_ids: FrozenSet[str]


class PresenceTracker:
    """Registry of watched peers and their latest presence record.

    Shared across rooms. Subscriptions are reference counted per user id, so
    two views watching the same peer keep it watched until both release.
    """

    def __init__(self) -> None:
        self._records: Dict[str, PresenceRecord] = {}
        self._refcounts: Dict[str, int] = {}
        self._subscriptions: Dict[int, PresenceSubscription] = {}
        self._tokens = itertools.count(1)
        self._listeners: List[PresenceListener] = []
        self._watch_listeners: List[WatchListener] = []

    # ---------------- subscriptions ----------------

    def subscribe(self, user_ids: Iterable[str]) -> PresenceSubscription:
        cleaned = frozenset(
            uid for uid in (InputSanitizer.sanitize_id(u) for u in user_ids) if uid
        )
        sub = PresenceSubscription(token=next(self._tokens), user_ids=cleaned)
        self._subscriptions[sub.token] = sub
        added = False
        for uid in cleaned:
            count = self._refcounts.get(uid, 0)
            self._refcounts[uid] = count + 1
            added = added or count == 0
        if added:
            self._notify_watch()
        return sub

    def release(self, sub: PresenceSubscription) -> None:
        if self._subscriptions.pop(sub.token, None) is None:
            # Already released
            return
        removed = False
        for uid in sub.user_ids:
            count = self._refcounts.get(uid, 0) - 1
            if count <= 0:
                self._refcounts.pop(uid, None)
                self._records.pop(uid, None)
                removed = True
            else:
                self._refcounts[uid] = count
        if removed:
            self._notify_watch()

    def watched(self) -> FrozenSet[str]:
        return frozenset(self._refcounts)

    # ---------------- updates ----------------

    def on_update(self, update: PresenceRecord | InboundEvent) -> bool:
        """Apply one presence update. Returns True when the held record changed."""
        record = self._coerce(update)
        if record is None:
            return False
        if record.user_id not in self._refcounts:
            logger.debug("Ignoring presence for unwatched user %s", record.user_id)
            return False

        current = self._records.get(record.user_id)
        if current is not None and record.updated_at_ms < current.updated_at_ms:
            return False

        if record.online:
            # lastSeen only moves on a transition to offline
            last_seen = current.last_seen_ms if current else record.last_seen_ms
        elif current is None or current.online:
            last_seen = record.last_seen_ms or record.updated_at_ms
        else:
            last_seen = current.last_seen_ms
        merged = replace(record, last_seen_ms=last_seen)

        if merged == current:
            return False
        self._records[record.user_id] = merged
        for listener in list(self._listeners):
            try:
                listener(merged)
            except Exception:
                logger.error("Presence listener failed", exc_info=True)
        return True

    def get(self, user_id: str) -> PresenceRecord | None:
        return self._records.get(user_id)

    # ---------------- listeners ----------------

    def add_listener(self, listener: PresenceListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def add_watch_listener(self, listener: WatchListener) -> Callable[[], None]:
        self._watch_listeners.append(listener)

        def remove() -> None:
            if listener in self._watch_listeners:
                self._watch_listeners.remove(listener)

        return remove

    def _notify_watch(self) -> None:
        watched = self.watched()
        for listener in list(self._watch_listeners):
            try:
                listener(watched)
            except Exception:
                logger.error("Presence watch listener failed", exc_info=True)

    @staticmethod
    def _coerce(update: PresenceRecord | InboundEvent) -> PresenceRecord | None:
        if isinstance(update, PresenceRecord):
            return update
        if not isinstance(update, InboundEvent) or update.type != EventType.PRESENCE_UPDATE:
            return None
        data = update.data or {}
        user_id = InputSanitizer.sanitize_id(data.get("userId"))
        online = data.get("online")
        if user_id is None or not isinstance(online, bool):
            return None
        return PresenceRecord(
            user_id=user_id,
            online=online,
            last_seen_ms=parse_timestamp_ms(data.get("lastSeen"), 0) or None,
            updated_at_ms=update.server_ts_ms,
        )
