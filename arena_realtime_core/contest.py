"""Contest room state transitions (pure, no sockets/timers).

This module implements the client-side contest reducer. All functions are
deterministic and side-effect free; the same ordered event log always folds
into the same state.

Architecture:
- State is a plain dict (see types.ContestState) keyed the way the wire is
- Events are InboundEvent values produced by events.decode()
- reduce_contest() takes (state, event) and returns ReduceOutcome with a new state
- Mutations are performed on a deepcopy to preserve functional purity
- The room store receives ReduceOutcome, publishes state and forwards
  notifications through the global deduper

Ordering / replay:
- fieldTimestamps: last-writer-wins per field, keyed on serverTimestamp (ms)
- An event strictly older than the held value for the field it would overwrite
  is dropped (applied=False); an equal timestamp is re-applied idempotently
- departedParticipants: tombstones so a replayed participant_joined older than
  a participant_left cannot resurrect the participant
- Leaderboard is server-computed; rank_updated only patches a held entry, and
  patches for unknown users wait for the next full leaderboard_updated
"""
from __future__ import annotations

import logging
import math
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from .dedup import notification_id
from .events import EventType, InboundEvent
from .timer import (
    ENDED,
    ENDING_SOON,
    default_timer,
    pause_timer,
    reanchor_timer,
    resume_timer,
    tick_timer,
)
from .types import ContestNotification, ContestState
from .validation import InputSanitizer

logger = logging.getLogger(__name__)

MAX_RECENT_NOTIFICATIONS = 50

STATUS_UPCOMING = "upcoming"
STATUS_ONGOING = "ongoing"
STATUS_ENDED = "ended"


@dataclass
class ReduceOutcome:
    """Result of applying one event (or tick) to room state."""

    state: Dict[str, Any]
    notifications: List[Dict[str, Any]] = field(default_factory=list)
    applied: bool = True


def default_contest_state(
    contest_id: str,
    self_user_id: str | None = None,
    status: str = STATUS_UPCOMING,
) -> ContestState:
    """Create an empty contest state.

    Args:
        contest_id: Room id of the contest
        self_user_id: Local user; used to decide which acceptances/rank changes notify
        status: Initial status as known from the REST snapshot, if any
    """
    if status not in {STATUS_UPCOMING, STATUS_ONGOING, STATUS_ENDED}:
        raise ValueError(f"invalid contest status: {status}")
    return {
        "contestId": contest_id,
        "selfUserId": self_user_id,
        "status": status,
        "participants": {},
        "departedParticipants": {},
        "leaderboard": [],
        "pendingRankPatches": {},
        "problems": {},
        "timer": default_timer(),
        "recentNotifications": [],
        "endedNotified": False,
        "fieldTimestamps": {},
    }


def _coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            return int(float(stripped))
        except ValueError:
            return None
    return None


def _coerce_score(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _is_stale(state: Dict[str, Any], field_name: str, ts: int) -> bool:
    last = (state.get("fieldTimestamps") or {}).get(field_name)
    return last is not None and ts < last


def _touch(state: Dict[str, Any], field_name: str, ts: int) -> None:
    stamps = state.setdefault("fieldTimestamps", {})
    stamps[field_name] = max(ts, stamps.get(field_name, ts))


def _push_notification(
    state: Dict[str, Any],
    ntype: str,
    source_id: str,
    ts: int,
    message: str,
    data: Dict[str, Any] | None = None,
) -> ContestNotification | None:
    """Insert a notification unless its NotificationId is already held."""
    nid = notification_id(ntype, source_id, ts)
    recent = state.setdefault("recentNotifications", [])
    if any(n.get("id") == nid for n in recent):
        return None
    notification: ContestNotification = {
        "id": nid,
        "type": ntype,
        "sourceId": source_id,
        "message": message,
        "timestamp": ts,
        "contestId": state.get("contestId") or "",
    }
    if data:
        notification["data"] = dict(data)
    recent.insert(0, notification)
    # Keep only the most recent notifications
    del recent[MAX_RECENT_NOTIFICATIONS:]
    return notification


def _sort_leaderboard(entries: List[dict]) -> List[dict]:
    return sorted(entries, key=lambda e: (e.get("rank", 0), str(e.get("userId"))))


def _mark_ended(state: Dict[str, Any], ts: int) -> List[dict]:
    """Terminal transition shared by contest_ended and the local countdown."""
    state["status"] = STATUS_ENDED
    _touch(state, "status", ts)
    timer = state["timer"]
    timer["isRunning"] = False
    timer["isPaused"] = False
    timer["endedFired"] = True
    if state.get("endedNotified"):
        return []
    state["endedNotified"] = True
    notification = _push_notification(
        state,
        "contest_ended",
        state.get("contestId") or "",
        ts,
        "Contest has ended!",
    )
    return [notification] if notification else []


def _apply_crossings(state: Dict[str, Any], crossings: Iterable[str]) -> List[dict]:
    emitted: List[dict] = []
    # Local crossings have no server timestamp of their own
    ts = state["timer"].get("lastServerSyncAt") or 0
    for crossing in crossings:
        if crossing == ENDING_SOON:
            remaining = state["timer"].get("timeRemainingSeconds") or 0
            minutes_left = max(1, math.ceil(remaining / 60))
            notification = _push_notification(
                state,
                "contest_ending_soon",
                state.get("contestId") or "",
                ts,
                f"Contest ending in {minutes_left} minutes!",
                {"minutesLeft": minutes_left},
            )
            if notification:
                emitted.append(notification)
        elif crossing == ENDED:
            emitted.extend(_mark_ended(state, ts))
    return emitted


def _apply_transition(state: Dict[str, Any], event: InboundEvent) -> ReduceOutcome:
    """Apply one contest event to a private copy of state.

    Event types:
        - contest_started / contest_ended: status (LWW); ended freezes the timer
        - participant_joined / participant_left: idempotent upsert / remove + tombstone
        - submission_accepted: recorded on the participant; ranking untouched
        - rank_updated: patch held leaderboard entry, else buffer
        - leaderboard_updated: full replace; authoritative snapshot wins
        - timer_updated: re-anchor the countdown
        - problem_solved: mark problem solved with its points
        - contest_notification: insert if NotificationId not already held
    """
    new_state: Dict[str, Any] = deepcopy(state)
    etype = event.type
    data = event.data or {}
    ts = event.server_ts_ms
    notifications: List[dict] = []
    applied = True

    if etype == EventType.CONTEST_STARTED:
        if _is_stale(new_state, "status", ts):
            return ReduceOutcome(new_state, applied=False)
        # Ended is terminal; a replayed start must not reopen the contest
        if new_state.get("status") == STATUS_ENDED or new_state.get("endedNotified"):
            return ReduceOutcome(new_state, applied=False)
        previous_status = new_state.get("status")
        new_state["status"] = STATUS_ONGOING
        _touch(new_state, "status", ts)

        remaining = _coerce_int(data.get("timeRemainingSeconds", data.get("timeRemaining")))
        if remaining is not None:
            tick = reanchor_timer(
                new_state["timer"],
                remaining=remaining,
                server_ts_ms=ts,
                received_at=event.received_at,
                is_running=True,
                is_paused=False,
            )
            new_state["timer"] = tick.timer
            notifications.extend(_apply_crossings(new_state, tick.crossings))

        if previous_status != STATUS_ONGOING:
            title = InputSanitizer.sanitize_string(data.get("title") or "", 255)
            message = f'Contest "{title}" has started!' if title else "Contest has started!"
            notification = _push_notification(
                new_state, "contest_started", new_state.get("contestId") or "", ts, message
            )
            if notification:
                notifications.append(notification)

    elif etype == EventType.CONTEST_ENDED:
        if _is_stale(new_state, "status", ts):
            return ReduceOutcome(new_state, applied=False)
        notifications.extend(_mark_ended(new_state, ts))

    elif etype == EventType.PARTICIPANT_JOINED:
        user_id = InputSanitizer.sanitize_id(data.get("userId"))
        if user_id is None:
            return ReduceOutcome(new_state, applied=False)
        tombstone = new_state["departedParticipants"].get(user_id)
        if tombstone is not None and ts < tombstone:
            return ReduceOutcome(new_state, applied=False)
        if user_id in new_state["participants"]:
            # Duplicate join is a no-op
            return ReduceOutcome(new_state, applied=False)
        username = data.get("username")
        new_state["participants"][user_id] = {
            "userId": user_id,
            "username": InputSanitizer.sanitize_string(username, 255) if username else None,
            "joinedAt": ts,
            "acceptedProblems": [],
            "points": _coerce_score(data.get("points")) or 0.0,
            "updatedAt": ts,
        }
        new_state["departedParticipants"].pop(user_id, None)

    elif etype == EventType.PARTICIPANT_LEFT:
        user_id = InputSanitizer.sanitize_id(data.get("userId"))
        if user_id is None:
            return ReduceOutcome(new_state, applied=False)
        existing = new_state["participants"].get(user_id)
        if existing is not None and ts < (existing.get("updatedAt") or 0):
            return ReduceOutcome(new_state, applied=False)
        tombstone = new_state["departedParticipants"].get(user_id)
        if existing is None and tombstone is not None and ts <= tombstone:
            return ReduceOutcome(new_state, applied=False)
        new_state["participants"].pop(user_id, None)
        new_state["pendingRankPatches"].pop(user_id, None)
        new_state["departedParticipants"][user_id] = max(ts, tombstone or ts)

    elif etype == EventType.SUBMISSION_ACCEPTED:
        user_id = InputSanitizer.sanitize_id(data.get("userId"))
        problem_id = InputSanitizer.sanitize_id(data.get("problemId"))
        if user_id is None or problem_id is None:
            return ReduceOutcome(new_state, applied=False)
        tombstone = new_state["departedParticipants"].get(user_id)
        if tombstone is not None and ts < tombstone:
            return ReduceOutcome(new_state, applied=False)
        participant = new_state["participants"].get(user_id)
        if participant is None:
            participant = {
                "userId": user_id,
                "username": None,
                "joinedAt": ts,
                "acceptedProblems": [],
                "points": 0.0,
                "updatedAt": ts,
            }
            new_state["participants"][user_id] = participant
            new_state["departedParticipants"].pop(user_id, None)
        accepted = participant.setdefault("acceptedProblems", [])
        if problem_id in accepted:
            return ReduceOutcome(new_state, applied=False)
        accepted.append(problem_id)
        participant["updatedAt"] = max(ts, participant.get("updatedAt") or ts)

        if user_id == new_state.get("selfUserId"):
            points = _coerce_score(data.get("points"))
            message = f"Problem solved! +{points:g} points" if points else "Problem solved!"
            notification = _push_notification(
                new_state,
                "submission_accepted",
                f"{user_id}:{problem_id}",
                ts,
                message,
                {"problemId": problem_id, "points": points},
            )
            if notification:
                notifications.append(notification)

    elif etype == EventType.RANK_UPDATED:
        user_id = InputSanitizer.sanitize_id(data.get("userId"))
        rank = _coerce_int(data.get("newRank", data.get("rank")))
        if user_id is None or rank is None or rank < 1:
            return ReduceOutcome(new_state, applied=False)
        # A snapshot newer than the patch already accounts for it
        if _is_stale(new_state, "leaderboard", ts):
            return ReduceOutcome(new_state, applied=False)
        score = _coerce_score(data.get("score"))

        entry = next(
            (e for e in new_state["leaderboard"] if e.get("userId") == user_id), None
        )
        if entry is None:
            pending = new_state["pendingRankPatches"].get(user_id)
            if pending is not None and ts < pending.get("ts", 0):
                return ReduceOutcome(new_state, applied=False)
            new_state["pendingRankPatches"][user_id] = {
                "userId": user_id,
                "rank": rank,
                "score": score,
                "ts": ts,
            }
            logger.debug(
                "Buffered rank patch for %s until next leaderboard snapshot", user_id
            )
        else:
            if ts < (entry.get("updatedAt") or 0):
                return ReduceOutcome(new_state, applied=False)
            old_rank = entry.get("rank")
            entry["rank"] = rank
            if score is not None:
                entry["score"] = score
            entry["updatedAt"] = ts
            new_state["leaderboard"] = _sort_leaderboard(new_state["leaderboard"])

            if (
                user_id == new_state.get("selfUserId")
                and isinstance(old_rank, int)
                and rank < old_rank
            ):
                notification = _push_notification(
                    new_state,
                    "rank_change",
                    f"{user_id}:{rank}",
                    ts,
                    f"Rank improved to #{rank}!",
                    {"newRank": rank, "oldRank": old_rank},
                )
                if notification:
                    notifications.append(notification)

    elif etype == EventType.LEADERBOARD_UPDATED:
        if _is_stale(new_state, "leaderboard", ts):
            return ReduceOutcome(new_state, applied=False)
        raw_entries = data.get("participants")
        if not isinstance(raw_entries, list):
            return ReduceOutcome(new_state, applied=False)

        entries: List[dict] = []
        seen: set[str] = set()
        for raw in raw_entries:
            if not isinstance(raw, dict):
                continue
            user_id = InputSanitizer.sanitize_id(raw.get("userId"))
            rank = _coerce_int(raw.get("rank"))
            if user_id is None or rank is None or user_id in seen:
                continue
            seen.add(user_id)
            username = raw.get("username")
            entries.append(
                {
                    "userId": user_id,
                    "rank": rank,
                    "score": _coerce_score(raw.get("score")) or 0.0,
                    "username": InputSanitizer.sanitize_string(username, 255) if username else None,
                    "updatedAt": ts,
                }
            )

            # The snapshot also vouches for the participant's presence
            tombstone = new_state["departedParticipants"].get(user_id)
            if user_id not in new_state["participants"] and (tombstone is None or ts >= tombstone):
                new_state["participants"][user_id] = {
                    "userId": user_id,
                    "username": entries[-1]["username"],
                    "joinedAt": ts,
                    "acceptedProblems": [],
                    "points": entries[-1]["score"],
                    "updatedAt": ts,
                }
                new_state["departedParticipants"].pop(user_id, None)

        by_user = {e["userId"]: e for e in entries}
        # Held entries already patched past the snapshot keep their newer rank
        for held in new_state["leaderboard"]:
            entry = by_user.get(held.get("userId"))
            if entry is None or (held.get("updatedAt") or 0) <= ts:
                continue
            entry["rank"] = held["rank"]
            entry["score"] = held.get("score", entry["score"])
            entry["updatedAt"] = held["updatedAt"]

        # Replay buffered patches that are newer than the snapshot
        pending = new_state.get("pendingRankPatches") or {}
        for user_id, patch in pending.items():
            entry = by_user.get(user_id)
            if entry is None or patch.get("ts", 0) <= ts:
                continue
            entry["rank"] = patch["rank"]
            if patch.get("score") is not None:
                entry["score"] = patch["score"]
            entry["updatedAt"] = patch["ts"]
        new_state["pendingRankPatches"] = {}

        new_state["leaderboard"] = _sort_leaderboard(entries)
        _touch(new_state, "leaderboard", ts)

    elif etype == EventType.TIMER_UPDATED:
        remaining = _coerce_int(data.get("timeRemainingSeconds", data.get("timeRemaining")))
        if remaining is None:
            return ReduceOutcome(new_state, applied=False)
        is_running = data.get("isRunning")
        is_paused = data.get("isPaused")
        tick = reanchor_timer(
            new_state["timer"],
            remaining=remaining,
            server_ts_ms=ts,
            received_at=event.received_at,
            is_running=bool(is_running) if is_running is not None else None,
            is_paused=bool(is_paused) if is_paused is not None else None,
        )
        if not tick.applied:
            return ReduceOutcome(new_state, applied=False)
        new_state["timer"] = tick.timer
        notifications.extend(_apply_crossings(new_state, tick.crossings))

    elif etype == EventType.PROBLEM_SOLVED:
        problem_id = InputSanitizer.sanitize_id(data.get("problemId"))
        if problem_id is None:
            return ReduceOutcome(new_state, applied=False)
        existing = new_state["problems"].get(problem_id)
        if existing is not None and ts < (existing.get("updatedAt") or 0):
            return ReduceOutcome(new_state, applied=False)
        new_state["problems"][problem_id] = {
            "problemId": problem_id,
            "solved": True,
            "points": _coerce_score(data.get("points")),
            "updatedAt": ts,
        }

    elif etype == EventType.CONTEST_NOTIFICATION:
        source_id = InputSanitizer.sanitize_id(data.get("id"))
        if source_id is None:
            return ReduceOutcome(new_state, applied=False)
        ntype = InputSanitizer.sanitize_string(
            data.get("notificationType") or "contest_notification", 64
        )
        message = InputSanitizer.sanitize_string(data.get("message") or "", 1000)
        notification = _push_notification(new_state, ntype, source_id, ts, message, data)
        if notification is None:
            return ReduceOutcome(new_state, applied=False)
        notifications.append(notification)

    else:
        logger.debug("Contest reducer ignoring %s", etype)
        applied = False

    return ReduceOutcome(new_state, notifications, applied)


def reduce_contest(state: Dict[str, Any], event: InboundEvent) -> ReduceOutcome:
    """Apply a contest event to state (pure; the input dict is not mutated)."""
    return _apply_transition(state, event)


def tick_contest(state: Dict[str, Any], now: float) -> ReduceOutcome:
    """Advance the contest countdown to local monotonic time `now`.

    Reaching zero transitions the contest to 'ended' even without a server
    event.
    """
    new_state: Dict[str, Any] = deepcopy(state)
    tick = tick_timer(new_state["timer"], now)
    new_state["timer"] = tick.timer
    notifications = _apply_crossings(new_state, tick.crossings)
    return ReduceOutcome(new_state, notifications, tick.applied)


def set_contest_paused(state: Dict[str, Any], paused: bool, now: float) -> ReduceOutcome:
    """Administrative pause/resume; remaining time is left untouched."""
    new_state: Dict[str, Any] = deepcopy(state)
    before = new_state["timer"]
    after = pause_timer(before) if paused else resume_timer(before, now)
    new_state["timer"] = after
    return ReduceOutcome(new_state, applied=after != before)


def replay_contest(
    events: Iterable[InboundEvent],
    state: Dict[str, Any] | None = None,
    *,
    contest_id: str | None = None,
    self_user_id: str | None = None,
) -> ReduceOutcome:
    """Fold an ordered event log into state, starting from empty by default."""
    if state is None:
        if contest_id is None:
            raise ValueError("replay_contest requires state or contest_id")
        state = default_contest_state(contest_id, self_user_id)
    notifications: List[dict] = []
    for event in events:
        outcome = reduce_contest(state, event)
        state = outcome.state
        notifications.extend(outcome.notifications)
    return ReduceOutcome(state, notifications, True)
