from .chat import (
    add_local_echo,
    apply_peer_presence,
    default_thread_state,
    mark_thread_read,
    reduce_chat,
    replay_chat,
    visible_messages,
)
from .client import ChatRoom, ContestRoom, RealtimeClient
from .connection import (
    BackoffPolicy,
    ConnectionPhase,
    ConnectionRegistry,
    ConnectionState,
    RoomConnection,
)
from .contest import (
    ReduceOutcome,
    default_contest_state,
    reduce_contest,
    replay_contest,
    set_contest_paused,
    tick_contest,
)
from .dedup import NotificationDeduper, notification_id
from .dispatcher import EventDispatcher, RoomStore
from .events import (
    DecodeError,
    EventType,
    InboundEvent,
    RawFrame,
    RoomKind,
    decode,
    make_event,
)
from .presence import PresenceRecord, PresenceSubscription, PresenceTracker
from .rest import ChatApi, ChatApiError
from .timer import TimerReconciler
from .types import ChatThreadState, ContestState, Message, TimerState
from .validation import InputSanitizer, ValidatedFrame

__all__ = [
    "ReduceOutcome",
    "default_contest_state",
    "reduce_contest",
    "replay_contest",
    "set_contest_paused",
    "tick_contest",
    "add_local_echo",
    "apply_peer_presence",
    "default_thread_state",
    "mark_thread_read",
    "reduce_chat",
    "replay_chat",
    "visible_messages",
    "DecodeError",
    "EventType",
    "InboundEvent",
    "RawFrame",
    "RoomKind",
    "decode",
    "make_event",
    "NotificationDeduper",
    "notification_id",
    "PresenceRecord",
    "PresenceSubscription",
    "PresenceTracker",
    "EventDispatcher",
    "RoomStore",
    "BackoffPolicy",
    "ConnectionPhase",
    "ConnectionRegistry",
    "ConnectionState",
    "RoomConnection",
    "TimerReconciler",
    "ChatApi",
    "ChatApiError",
    "RealtimeClient",
    "ContestRoom",
    "ChatRoom",
    "ChatThreadState",
    "ContestState",
    "Message",
    "TimerState",
    "InputSanitizer",
    "ValidatedFrame",
]
