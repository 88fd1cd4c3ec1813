"""Chat thread state transitions (pure).

The message log is append-only and keyed by the server-assigned message id.
Every path that adds a message (push delivery, reconnect replay, the sender's
own optimistic echo) goes through the same id check, so a message is held
exactly once no matter how many times it arrives.
"""
from __future__ import annotations

import bisect
import logging
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from .contest import ReduceOutcome
from .dedup import notification_id
from .events import EventType, InboundEvent
from .types import ChatThreadState, Message
from .validation import InputSanitizer

logger = logging.getLogger(__name__)

MAX_DISAPPEARING_HOURS = 24 * 365


def default_thread_state(
    thread_id: str,
    self_user_id: str | None = None,
    peer_id: str | None = None,
) -> ChatThreadState:
    return {
        "threadId": thread_id,
        "selfUserId": self_user_id,
        "peerId": peer_id,
        "messages": [],
        "peer": None,
        "unreadCount": 0,
        "blockedByMe": False,
        "disappearingAfterHours": 0,
        "fieldTimestamps": {},
    }


def parse_timestamp_ms(value: Any, default: int) -> int:
    """Accept epoch ms or ISO-8601; anything else falls back to `default`."""
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return default
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return default


def _sort_key(message: Message) -> tuple[int, str]:
    return (message.get("createdAt") or 0, message.get("id") or "")


def _find_message(messages: List[Message], message_id: str) -> int | None:
    for idx, message in enumerate(messages):
        if message.get("id") == message_id:
            return idx
    return None


def _insert_ordered(messages: List[Message], message: Message) -> None:
    keys = [_sort_key(m) for m in messages]
    messages.insert(bisect.bisect_right(keys, _sort_key(message)), message)


def _apply_transition(state: Dict[str, Any], event: InboundEvent) -> ReduceOutcome:
    new_state: Dict[str, Any] = deepcopy(state)
    data = event.data or {}
    ts = event.server_ts_ms
    notifications: List[dict] = []

    if event.type == EventType.MESSAGE:
        message_id = InputSanitizer.sanitize_id(data.get("id"))
        from_user = InputSanitizer.sanitize_id(data.get("fromUserId"))
        if message_id is None or from_user is None:
            return ReduceOutcome(new_state, applied=False)

        messages = new_state.setdefault("messages", [])
        existing_idx = _find_message(messages, message_id)
        if existing_idx is not None:
            existing = messages[existing_idx]
            if not existing.get("pending"):
                return ReduceOutcome(new_state, applied=False)
            # Server copy of our own optimistic echo: confirm it, keep one copy
            confirmed = {k: v for k, v in existing.items() if k != "pending"}
            confirmed["createdAt"] = parse_timestamp_ms(data.get("createdAt"), existing["createdAt"])
            del messages[existing_idx]
            _insert_ordered(messages, confirmed)
            return ReduceOutcome(new_state)

        message: Message = {
            "id": message_id,
            "threadId": new_state.get("threadId") or "",
            "fromUserId": from_user,
            "text": InputSanitizer.sanitize_message_text(data.get("text")),
            "createdAt": parse_timestamp_ms(data.get("createdAt"), ts),
        }
        _insert_ordered(messages, message)

        self_user = new_state.get("selfUserId")
        if self_user is None or from_user != self_user:
            new_state["unreadCount"] = int(new_state.get("unreadCount") or 0) + 1
            notifications.append(
                {
                    "id": notification_id("new_message", message_id, ts),
                    "type": "new_message",
                    "sourceId": message_id,
                    "message": message["text"][:140],
                    "timestamp": ts,
                    "threadId": message["threadId"],
                    "data": {"fromUserId": from_user},
                }
            )

    elif event.type == EventType.THREAD_SETTINGS_CHANGED:
        stamps = new_state.setdefault("fieldTimestamps", {})
        applied = False

        blocked = data.get("blockedByMe", data.get("blocked"))
        if isinstance(blocked, bool) and ts >= stamps.get("blockedByMe", ts):
            new_state["blockedByMe"] = blocked
            stamps["blockedByMe"] = ts
            applied = True

        hours = data.get("disappearingAfterHours")
        if (
            isinstance(hours, int)
            and not isinstance(hours, bool)
            and 0 <= hours <= MAX_DISAPPEARING_HOURS
            and ts >= stamps.get("disappearingAfterHours", ts)
        ):
            new_state["disappearingAfterHours"] = hours
            stamps["disappearingAfterHours"] = ts
            applied = True

        if not applied:
            return ReduceOutcome(new_state, applied=False)

    else:
        # presence_update belongs to the PresenceTracker
        logger.debug("Chat reducer ignoring %s", event.type)
        return ReduceOutcome(new_state, applied=False)

    return ReduceOutcome(new_state, notifications)


def reduce_chat(state: Dict[str, Any], event: InboundEvent) -> ReduceOutcome:
    """Apply a chat event to state (pure; the input dict is not mutated)."""
    return _apply_transition(state, event)


def add_local_echo(
    state: Dict[str, Any],
    message_id: str,
    text: str,
    created_at_ms: int,
) -> ReduceOutcome:
    """Append the sender's own message as soon as the REST send returns its id.

    If the push channel already delivered that id, nothing changes.
    """
    new_state: Dict[str, Any] = deepcopy(state)
    clean_id = InputSanitizer.sanitize_id(message_id)
    if clean_id is None:
        raise ValueError("local echo requires the server-assigned message id")
    messages = new_state.setdefault("messages", [])
    if _find_message(messages, clean_id) is not None:
        return ReduceOutcome(new_state, applied=False)
    _insert_ordered(
        messages,
        {
            "id": clean_id,
            "threadId": new_state.get("threadId") or "",
            "fromUserId": new_state.get("selfUserId") or "",
            "text": InputSanitizer.sanitize_message_text(text),
            "createdAt": int(created_at_ms),
            "pending": True,
        },
    )
    return ReduceOutcome(new_state)


def mark_thread_read(state: Dict[str, Any]) -> Dict[str, Any]:
    new_state = deepcopy(state)
    new_state["unreadCount"] = 0
    return new_state


def apply_peer_presence(state: Dict[str, Any], record: Any) -> ReduceOutcome:
    """Mirror the PresenceTracker's record for this thread's peer."""
    new_state = deepcopy(state)
    if record is None or record.user_id != new_state.get("peerId"):
        return ReduceOutcome(new_state, applied=False)
    new_state["peer"] = record.as_dict()
    return ReduceOutcome(new_state)


def visible_messages(state: Dict[str, Any], now_ms: int) -> List[Message]:
    """Messages still inside the disappearing window (the log itself is untouched)."""
    messages = list(state.get("messages") or [])
    hours = state.get("disappearingAfterHours") or 0
    if hours <= 0:
        return messages
    cutoff = now_ms - hours * 3600 * 1000
    return [m for m in messages if (m.get("createdAt") or 0) >= cutoff]


def replay_chat(
    events: Iterable[InboundEvent],
    state: Dict[str, Any] | None = None,
    *,
    thread_id: str | None = None,
    self_user_id: str | None = None,
) -> ReduceOutcome:
    if state is None:
        if thread_id is None:
            raise ValueError("replay_chat requires state or thread_id")
        state = default_thread_state(thread_id, self_user_id)
    notifications: List[dict] = []
    for event in events:
        outcome = reduce_chat(state, event)
        state = outcome.state
        notifications.extend(outcome.notifications)
    return ReduceOutcome(state, notifications, True)
