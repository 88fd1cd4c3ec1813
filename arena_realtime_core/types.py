"""Type definitions for room state held by the sync engine."""
from __future__ import annotations

from typing import Dict, List, Optional, TypedDict


class ParticipantSummary(TypedDict, total=False):
    """A participant entry in the contest participants map."""
    userId: str
    username: Optional[str]
    joinedAt: Optional[int]
    acceptedProblems: List[str]
    points: float
    updatedAt: int  # serverTimestamp (ms) of the last event that touched this entry


class LeaderboardEntry(TypedDict, total=False):
    userId: str
    rank: int
    score: float
    username: Optional[str]
    updatedAt: int


class PendingRankPatch(TypedDict, total=False):
    userId: str
    rank: int
    score: Optional[float]
    ts: int


class ContestNotification(TypedDict, total=False):
    """A notification raised by the contest reducer or the timer."""
    id: str  # NotificationId: "{type}:{sourceId}:{bucket}"
    type: str
    sourceId: str
    message: str
    timestamp: int
    contestId: str
    data: dict


class TimerState(TypedDict, total=False):
    """
    Local countdown state.

    timeRemainingSeconds only decreases between two server syncs; a sync
    (timer_updated) is the only thing allowed to raise it.
    """
    isRunning: bool
    isPaused: bool
    timeRemainingSeconds: int
    lastServerSyncAt: Optional[int]  # serverTimestamp (ms) of the last adopted sync
    lastServerRemaining: Optional[int]
    lastTickAt: Optional[float]  # local monotonic seconds; fractional carry lives here
    endingSoonFired: bool
    endedFired: bool


class ContestState(TypedDict, total=False):
    contestId: str
    selfUserId: Optional[str]

    # 'upcoming' | 'ongoing' | 'ended'
    status: str

    participants: Dict[str, ParticipantSummary]
    # Tombstones for participant_left, keyed by userId -> serverTimestamp (ms)
    departedParticipants: Dict[str, int]

    # Server-computed, sorted by rank; never derived locally
    leaderboard: List[LeaderboardEntry]
    # rank patches for users absent from the held leaderboard
    pendingRankPatches: Dict[str, PendingRankPatch]

    problems: Dict[str, dict]
    timer: TimerState

    # Newest first, bounded
    recentNotifications: List[ContestNotification]
    endedNotified: bool

    # Last-writer-wins bookkeeping: field name -> serverTimestamp (ms)
    fieldTimestamps: Dict[str, int]


class Message(TypedDict, total=False):
    id: str
    threadId: str
    fromUserId: str
    text: str
    createdAt: int  # epoch ms
    pending: bool  # local optimistic echo not yet confirmed by the push channel


class ChatThreadState(TypedDict, total=False):
    threadId: str
    selfUserId: Optional[str]
    peerId: Optional[str]
    messages: List[Message]
    peer: Optional[dict]
    unreadCount: int
    blockedByMe: bool
    disappearingAfterHours: int  # 0 disables disappearing messages
    fieldTimestamps: Dict[str, int]
