from arena_realtime_core import (
    EventType,
    default_contest_state,
    make_event,
    reduce_contest,
    replay_contest,
)
from arena_realtime_core.contest import MAX_RECENT_NOTIFICATIONS


def ev(etype, ts, received_at=0.0, **data):
    return make_event(etype, room_id="c1", data=data, server_ts_ms=ts, received_at=received_at)


def test_default_contest_state_is_empty():
    state = default_contest_state("c1", "me")
    assert state["contestId"] == "c1"
    assert state["selfUserId"] == "me"
    assert state["status"] == "upcoming"
    assert state["participants"] == {}
    assert state["leaderboard"] == []
    assert state["timer"]["isRunning"] is False


def test_reducer_does_not_mutate_input():
    state = default_contest_state("c1")
    reduce_contest(state, ev(EventType.PARTICIPANT_JOINED, 1000, userId="u1"))
    assert state["participants"] == {}


def test_duplicate_join_is_noop():
    state = default_contest_state("c1")
    first = reduce_contest(state, ev(EventType.PARTICIPANT_JOINED, 1000, userId="u1", username="Ana"))
    second = reduce_contest(first.state, ev(EventType.PARTICIPANT_JOINED, 1000, userId="u1", username="Ana"))
    assert first.applied
    assert not second.applied
    assert list(second.state["participants"]) == ["u1"]
    assert second.state["participants"]["u1"]["username"] == "Ana"


def test_stale_join_cannot_resurrect_departed_participant():
    outcome = replay_contest(
        [
            ev(EventType.PARTICIPANT_JOINED, 1000, userId="u1"),
            ev(EventType.PARTICIPANT_LEFT, 3000, userId="u1"),
            ev(EventType.PARTICIPANT_JOINED, 2000, userId="u1"),
        ],
        contest_id="c1",
    )
    assert "u1" not in outcome.state["participants"]
    assert outcome.state["departedParticipants"]["u1"] == 3000


def test_rejoin_after_leave_is_accepted():
    outcome = replay_contest(
        [
            ev(EventType.PARTICIPANT_JOINED, 1000, userId="u1"),
            ev(EventType.PARTICIPANT_LEFT, 2000, userId="u1"),
            ev(EventType.PARTICIPANT_JOINED, 4000, userId="u1"),
        ],
        contest_id="c1",
    )
    assert "u1" in outcome.state["participants"]
    assert "u1" not in outcome.state["departedParticipants"]


def test_older_leaderboard_snapshot_is_ignored():
    state = default_contest_state("c1")
    newer = reduce_contest(
        state,
        ev(EventType.LEADERBOARD_UPDATED, 2000, participants=[{"userId": "a", "rank": 1, "score": 30}]),
    )
    older = reduce_contest(
        newer.state,
        ev(EventType.LEADERBOARD_UPDATED, 1000, participants=[{"userId": "b", "rank": 1, "score": 10}]),
    )
    assert not older.applied
    assert [e["userId"] for e in older.state["leaderboard"]] == ["a"]


def test_leaderboard_snapshot_is_sorted_and_upserts_participants():
    state = default_contest_state("c1")
    outcome = reduce_contest(
        state,
        ev(
            EventType.LEADERBOARD_UPDATED,
            1000,
            participants=[
                {"userId": "b", "rank": 2, "score": 10},
                {"userId": "a", "rank": 1, "score": 20},
                {"userId": "a", "rank": 3, "score": 0},
            ],
        ),
    )
    assert [(e["userId"], e["rank"]) for e in outcome.state["leaderboard"]] == [("a", 1), ("b", 2)]
    assert set(outcome.state["participants"]) == {"a", "b"}


def test_rank_patch_for_held_entry():
    state = default_contest_state("c1")
    outcome = replay_contest(
        [
            ev(EventType.LEADERBOARD_UPDATED, 1000, participants=[
                {"userId": "a", "rank": 1, "score": 20},
                {"userId": "b", "rank": 2, "score": 10},
            ]),
            ev("rank_updated", 2000, userId="b", newRank=1, score=25),
        ],
        state,
    )
    b = next(e for e in outcome.state["leaderboard"] if e["userId"] == "b")
    assert b["rank"] == 1
    assert b["score"] == 25.0
    assert outcome.state["leaderboard"][0]["userId"] in {"a", "b"}


def test_rank_patch_older_than_snapshot_is_dropped():
    state = default_contest_state("c1")
    outcome = replay_contest(
        [
            ev(EventType.LEADERBOARD_UPDATED, 5000, participants=[{"userId": "a", "rank": 3}]),
            ev(EventType.RANK_UPDATED, 4000, userId="a", newRank=1),
        ],
        state,
    )
    assert outcome.state["leaderboard"][0]["rank"] == 3


def test_rank_patch_for_unknown_user_waits_for_snapshot():
    state = default_contest_state("c1")
    buffered = reduce_contest(state, ev(EventType.RANK_UPDATED, 3000, userId="z", newRank=2))
    assert buffered.state["leaderboard"] == []
    assert buffered.state["pendingRankPatches"]["z"]["rank"] == 2

    snap = reduce_contest(
        buffered.state,
        ev(EventType.LEADERBOARD_UPDATED, 2000, participants=[
            {"userId": "a", "rank": 1},
            {"userId": "z", "rank": 5},
        ]),
    )
    z = next(e for e in snap.state["leaderboard"] if e["userId"] == "z")
    assert z["rank"] == 2
    assert snap.state["pendingRankPatches"] == {}


def test_buffered_patch_older_than_snapshot_is_discarded():
    state = default_contest_state("c1")
    outcome = replay_contest(
        [
            ev(EventType.RANK_UPDATED, 1000, userId="z", newRank=2),
            ev(EventType.LEADERBOARD_UPDATED, 2000, participants=[{"userId": "z", "rank": 5}]),
        ],
        state,
    )
    assert outcome.state["leaderboard"][0]["rank"] == 5
    assert outcome.state["pendingRankPatches"] == {}


def test_self_rank_improvement_notifies():
    state = default_contest_state("c1", "me")
    outcome = replay_contest(
        [
            ev(EventType.LEADERBOARD_UPDATED, 1000, participants=[
                {"userId": "x", "rank": 1},
                {"userId": "me", "rank": 2},
            ]),
            ev(EventType.RANK_UPDATED, 2000, userId="me", newRank=1),
        ],
        state,
    )
    assert [n["type"] for n in outcome.notifications] == ["rank_change"]
    assert outcome.notifications[0]["data"] == {"newRank": 1, "oldRank": 2}


def test_submission_accepted_records_problem_and_notifies_self_once():
    state = default_contest_state("c1", "me")
    accepted = ev(EventType.SUBMISSION_ACCEPTED, 1000, userId="me", problemId="p1", points=100)
    first = reduce_contest(state, accepted)
    second = reduce_contest(first.state, accepted)
    assert first.state["participants"]["me"]["acceptedProblems"] == ["p1"]
    assert [n["type"] for n in first.notifications] == ["submission_accepted"]
    assert not second.applied
    assert second.notifications == []


def test_submission_from_other_user_does_not_notify():
    state = default_contest_state("c1", "me")
    outcome = reduce_contest(
        state, ev(EventType.SUBMISSION_ACCEPTED, 1000, userId="other", problemId="p1")
    )
    assert outcome.applied
    assert outcome.notifications == []


def test_contest_started_notifies_once_on_redelivery():
    started = ev(EventType.CONTEST_STARTED, 1000, title="Weekly")
    outcome = replay_contest([started, started], contest_id="c1")
    assert outcome.state["status"] == "ongoing"
    assert [n["message"] for n in outcome.notifications] == ['Contest "Weekly" has started!']


def test_contest_ended_freezes_timer_and_is_terminal():
    state = default_contest_state("c1")
    outcome = replay_contest(
        [
            ev(EventType.CONTEST_STARTED, 1000, timeRemainingSeconds=600),
            ev(EventType.CONTEST_ENDED, 2000),
            ev(EventType.TIMER_UPDATED, 3000, timeRemaining=500, isRunning=True),
        ],
        state,
    )
    assert outcome.state["status"] == "ended"
    assert outcome.state["timer"]["isRunning"] is False
    assert outcome.state["timer"]["timeRemainingSeconds"] == 600
    assert [n["type"] for n in outcome.notifications] == ["contest_started", "contest_ended"]


def test_stale_status_event_is_dropped():
    state = default_contest_state("c1")
    ended = reduce_contest(state, ev(EventType.CONTEST_ENDED, 5000))
    started = reduce_contest(ended.state, ev(EventType.CONTEST_STARTED, 4000))
    assert not started.applied
    assert started.state["status"] == "ended"


def test_problem_solved_is_last_writer_wins():
    state = default_contest_state("c1")
    outcome = replay_contest(
        [
            ev(EventType.PROBLEM_SOLVED, 2000, problemId="p1", points=50),
            ev(EventType.PROBLEM_SOLVED, 1000, problemId="p1", points=10),
        ],
        state,
    )
    assert outcome.state["problems"]["p1"]["points"] == 50.0


def test_contest_notification_deduplicated_by_id():
    state = default_contest_state("c1")
    note = ev(
        EventType.CONTEST_NOTIFICATION,
        1000,
        id="n1",
        notificationType="announcement",
        message="Clarification posted",
    )
    first = reduce_contest(state, note)
    again = reduce_contest(first.state, ev(
        EventType.CONTEST_NOTIFICATION, 1500, id="n1",
        notificationType="announcement", message="Clarification posted",
    ))
    assert len(first.notifications) == 1
    assert not again.applied
    assert len(again.state["recentNotifications"]) == 1


def test_recent_notifications_are_capped_newest_first():
    events = [
        ev(EventType.CONTEST_NOTIFICATION, 1000 + i, id=f"n{i}", message=str(i))
        for i in range(MAX_RECENT_NOTIFICATIONS + 10)
    ]
    outcome = replay_contest(events, contest_id="c1")
    recent = outcome.state["recentNotifications"]
    assert len(recent) == MAX_RECENT_NOTIFICATIONS
    assert recent[0]["message"] == str(MAX_RECENT_NOTIFICATIONS + 9)


def test_replaying_overlapping_log_after_reconnect_converges():
    log = [
        ev(EventType.CONTEST_STARTED, 1000, timeRemainingSeconds=3600),
        ev(EventType.PARTICIPANT_JOINED, 1100, userId="a"),
        ev(EventType.PARTICIPANT_JOINED, 1200, userId="b"),
        ev(EventType.SUBMISSION_ACCEPTED, 1300, userId="a", problemId="p1"),
        ev(EventType.LEADERBOARD_UPDATED, 1400, participants=[
            {"userId": "a", "rank": 1, "score": 100},
            {"userId": "b", "rank": 2, "score": 0},
        ]),
        ev(EventType.CONTEST_NOTIFICATION, 1500, id="n1", message="hello"),
        ev(EventType.PARTICIPANT_LEFT, 1600, userId="b"),
    ]
    once = replay_contest(log, contest_id="c1", self_user_id="a")
    # Reconnect replays the tail of the log on top of the held state
    resumed = replay_contest(log[2:], once.state)
    assert resumed.state == once.state
    assert resumed.notifications == []


def test_older_snapshot_keeps_newer_applied_rank_patch():
    outcome = replay_contest(
        [
            ev(EventType.LEADERBOARD_UPDATED, 1000, participants=[
                {"userId": "a", "rank": 1},
                {"userId": "b", "rank": 2},
            ]),
            ev(EventType.RANK_UPDATED, 3000, userId="b", newRank=1),
            ev(EventType.LEADERBOARD_UPDATED, 2000, participants=[
                {"userId": "a", "rank": 1},
                {"userId": "b", "rank": 2},
            ]),
        ],
        contest_id="c1",
    )
    b = next(e for e in outcome.state["leaderboard"] if e["userId"] == "b")
    assert b["rank"] == 1
    assert b["updatedAt"] == 3000
    a = next(e for e in outcome.state["leaderboard"] if e["userId"] == "a")
    assert a["updatedAt"] == 2000
