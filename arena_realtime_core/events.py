"""Inbound event model and frame decoding.

Decoding is best-effort: `decode()` never raises. Anything that is not valid
JSON, fails envelope validation, or carries an unknown type comes back as a
`DecodeError` value for the caller to log and drop.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Tuple

from pydantic import ValidationError as PydanticValidationError

from .validation import WIRE_TYPE_ALIASES, ValidatedFrame


class RoomKind(str, Enum):
    CONTEST = "contest"
    CHAT = "chat"


class EventType(str, Enum):
    # contest
    CONTEST_STARTED = "contest_started"
    CONTEST_ENDED = "contest_ended"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    SUBMISSION_ACCEPTED = "submission_accepted"
    RANK_UPDATED = "rank_updated"
    LEADERBOARD_UPDATED = "leaderboard_updated"
    TIMER_UPDATED = "timer_updated"
    PROBLEM_SOLVED = "problem_solved"
    CONTEST_NOTIFICATION = "contest_notification"

    # chat
    MESSAGE = "message"
    PRESENCE_UPDATE = "presence_update"
    THREAD_SETTINGS_CHANGED = "thread_settings_changed"


CONTEST_EVENTS = frozenset(
    {
        EventType.CONTEST_STARTED,
        EventType.CONTEST_ENDED,
        EventType.PARTICIPANT_JOINED,
        EventType.PARTICIPANT_LEFT,
        EventType.SUBMISSION_ACCEPTED,
        EventType.RANK_UPDATED,
        EventType.LEADERBOARD_UPDATED,
        EventType.TIMER_UPDATED,
        EventType.PROBLEM_SOLVED,
        EventType.CONTEST_NOTIFICATION,
    }
)
CHAT_EVENTS = frozenset({EventType.MESSAGE, EventType.THREAD_SETTINGS_CHANGED})

RoomKey = Tuple[RoomKind, str]


@dataclass(frozen=True)
class InboundEvent:
    type: EventType
    room_kind: RoomKind | None  # None for user-scoped presence events
    room_id: str | None
    data: Dict[str, Any]
    server_ts_ms: int
    seq: int | None = None
    # Local monotonic receipt time. Carried as data so reducers stay pure.
    received_at: float = field(default=0.0, compare=False)

    @property
    def room_key(self) -> RoomKey | None:
        if self.room_kind is None or self.room_id is None:
            return None
        return (self.room_kind, self.room_id)


@dataclass
class DecodeError:
    """Represents a frame that could not be turned into an InboundEvent."""

    kind: str  # 'malformed_json' | 'invalid_frame' | 'unknown_type'
    message: str | None = None
    raw_type: str | None = None


def to_epoch_ms(value: datetime) -> int:
    # Naive timestamps are treated as UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def make_event(
    event_type: EventType | str,
    *,
    room_id: str | None = None,
    data: Dict[str, Any] | None = None,
    server_ts_ms: int = 0,
    seq: int | None = None,
    received_at: float = 0.0,
) -> InboundEvent:
    """Build an InboundEvent without going through JSON (tests, replays)."""
    etype = EventType(event_type)
    if etype in CONTEST_EVENTS:
        kind = RoomKind.CONTEST
    elif etype in CHAT_EVENTS:
        kind = RoomKind.CHAT
    else:
        kind = None
        room_id = None
    return InboundEvent(
        type=etype,
        room_kind=kind,
        room_id=room_id,
        data=dict(data or {}),
        server_ts_ms=server_ts_ms,
        seq=seq,
        received_at=received_at,
    )


def decode(raw: str | bytes, *, received_at: float | None = None) -> InboundEvent | DecodeError:
    """Decode one raw push-channel frame.

    Room class is taken from the envelope key (`contestId` vs `threadId`);
    it must agree with the event type, otherwise the frame is rejected.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        return DecodeError(kind="malformed_json", message=str(exc))

    if not isinstance(payload, dict):
        return DecodeError(kind="malformed_json", message="frame is not a JSON object")

    raw_type = payload.get("type")
    if not isinstance(raw_type, str) or raw_type.strip() not in WIRE_TYPE_ALIASES:
        return DecodeError(
            kind="unknown_type",
            message=f"unrecognized event type: {raw_type!r}",
            raw_type=raw_type if isinstance(raw_type, str) else None,
        )

    try:
        frame = ValidatedFrame(**payload)
    except PydanticValidationError as exc:
        return DecodeError(kind="invalid_frame", message=str(exc), raw_type=raw_type)

    etype = EventType(frame.type)
    if etype in CONTEST_EVENTS:
        if frame.contestId is None:
            return DecodeError(
                kind="invalid_frame",
                message=f"{etype.value} must be addressed by contestId",
                raw_type=raw_type,
            )
        kind, room_id = RoomKind.CONTEST, frame.contestId
    elif etype in CHAT_EVENTS:
        if frame.threadId is None:
            return DecodeError(
                kind="invalid_frame",
                message=f"{etype.value} must be addressed by threadId",
                raw_type=raw_type,
            )
        kind, room_id = RoomKind.CHAT, frame.threadId
    else:
        kind, room_id = None, None

    return InboundEvent(
        type=etype,
        room_kind=kind,
        room_id=room_id,
        data=dict(frame.data),
        server_ts_ms=to_epoch_ms(frame.timestamp),
        seq=frame.seq,
        received_at=time.monotonic() if received_at is None else received_at,
    )


@dataclass(frozen=True)
class RawFrame:
    """One undecoded frame as forwarded by a room connection."""

    key: RoomKey | None
    payload: str | bytes
    received_at: float = field(default_factory=time.monotonic)
