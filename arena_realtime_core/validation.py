"""
Inbound frame validation using Pydantic v2
Validates the push-channel envelope and the per-type payload fields
"""

from datetime import datetime
from typing import Any, Dict, Optional, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Wire names (and accepted aliases) -> canonical event type
WIRE_TYPE_ALIASES: Dict[str, str] = {
    "contest_started": "contest_started",
    "contest_ended": "contest_ended",
    "participant_joined": "participant_joined",
    "participant_left": "participant_left",
    "submission_accepted": "submission_accepted",
    "rank_updated": "rank_updated",
    "rank_changed": "rank_updated",
    "leaderboard_updated": "leaderboard_updated",
    "timer_updated": "timer_updated",
    "problem_solved": "problem_solved",
    "contest_notification": "contest_notification",
    "message": "message",
    "chat:message": "message",
    "presence:update": "presence_update",
    "presence_update": "presence_update",
    "thread:settings_changed": "thread_settings_changed",
    "thread_settings_changed": "thread_settings_changed",
}

# Payload keys each canonical type cannot do without
REQUIRED_DATA_FIELDS: Dict[str, tuple[str, ...]] = {
    "participant_joined": ("userId",),
    "participant_left": ("userId",),
    "submission_accepted": ("userId", "problemId"),
    "rank_updated": ("userId",),
    "leaderboard_updated": ("participants",),
    "timer_updated": ("timeRemaining",),
    "problem_solved": ("problemId",),
    "contest_notification": ("id",),
    "message": ("id", "fromUserId"),
    "presence_update": ("userId", "online"),
}


class ValidatedFrame(BaseModel):
    """Push-channel envelope with per-type payload checks"""

    type: str = Field(..., min_length=1, max_length=64, description="Wire event type")
    contestId: Optional[str] = Field(None, min_length=1, max_length=128)
    threadId: Optional[str] = Field(None, min_length=1, max_length=128)
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    seq: Optional[int] = Field(None, ge=0)

    model_config = ConfigDict(extra="allow")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        """Resolve wire aliases to the canonical type"""
        v = v.strip()
        if v not in WIRE_TYPE_ALIASES:
            raise ValueError(f"unknown event type: {v}")
        return WIRE_TYPE_ALIASES[v]

    @field_validator("contestId", "threadId", mode="before")
    @classmethod
    def coerce_room_id(cls, v: Any) -> Any:
        # Numeric ids are common on the wire
        if isinstance(v, bool):
            raise ValueError("room id must be a string or integer")
        if isinstance(v, int):
            return str(v)
        return v

    @model_validator(mode="after")
    def validate_frame_fields(self) -> Self:
        """Validate room key and required payload fields based on type"""
        if self.type == "presence_update":
            # Presence is user-scoped, not room-scoped
            pass
        elif self.contestId is None and self.threadId is None:
            raise ValueError(f"{self.type} requires contestId or threadId")
        elif self.contestId is not None and self.threadId is not None:
            raise ValueError("frame cannot carry both contestId and threadId")

        for key in REQUIRED_DATA_FIELDS.get(self.type, ()):
            if key == "timeRemaining" and "timeRemainingSeconds" in self.data:
                continue
            if self.data.get(key) is None:
                raise ValueError(f"{self.type} requires data.{key}")
        return self


class InputSanitizer:
    """Utility class for sanitizing strings coming off the wire"""

    @staticmethod
    def sanitize_string(value: Any, max_length: int = 255) -> str:
        """Sanitize string input"""
        if not isinstance(value, str):
            return str(value)[:max_length]

        value = value.strip()
        value = value[:max_length]
        # Remove null bytes
        value = value.replace("\0", "")
        return value

    @staticmethod
    def sanitize_message_text(text: Any) -> str:
        """Keep newlines and tabs, drop other control characters"""
        if text is None:
            return ""
        raw = text if isinstance(text, str) else str(text)
        raw = raw[:10000]
        return "".join(
            ch for ch in raw if ch in "\n\t" or (ord(ch) >= 0x20 and ord(ch) != 0x7F)
        )

    @staticmethod
    def sanitize_id(value: Any) -> Optional[str]:
        """Ids are opaque; accept str/int and reject empty values"""
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, (int, str)):
            cleaned = InputSanitizer.sanitize_string(value, 128)
            return cleaned or None
        return None


__all__ = [
    "ValidatedFrame",
    "InputSanitizer",
    "WIRE_TYPE_ALIASES",
    "REQUIRED_DATA_FIELDS",
]
