import asyncio

import pytest

from arena_realtime_core import (
    EventType,
    default_contest_state,
    make_event,
    reduce_contest,
    set_contest_paused,
    tick_contest,
)
from arena_realtime_core.timer import (
    ENDED,
    ENDING_SOON,
    TimerPhase,
    TimerReconciler,
    default_timer,
    pause_timer,
    reanchor_timer,
    resume_timer,
    tick_timer,
    timer_phase,
)


def running_timer(remaining, at=0.0, ts=1000):
    return reanchor_timer(
        default_timer(),
        remaining=remaining,
        server_ts_ms=ts,
        received_at=at,
        is_running=True,
        is_paused=False,
        threshold=300,
    ).timer


def test_default_timer_is_stopped():
    timer = default_timer()
    assert timer_phase(timer) is TimerPhase.STOPPED
    assert not tick_timer(timer, 10.0).applied


def test_tick_subtracts_elapsed_whole_seconds_after_gap():
    timer = running_timer(100, at=0.0)
    tick = tick_timer(timer, 9.0)
    assert tick.timer["timeRemainingSeconds"] == 91
    assert tick.timer["lastTickAt"] == 9.0


def test_tick_carries_fractional_remainder():
    timer = running_timer(100, at=0.0)
    early = tick_timer(timer, 0.6)
    assert not early.applied
    step = tick_timer(timer, 1.5)
    assert step.timer["timeRemainingSeconds"] == 99
    assert step.timer["lastTickAt"] == 1.0
    step = tick_timer(step.timer, 2.0)
    assert step.timer["timeRemainingSeconds"] == 98


def test_server_sync_replaces_local_estimate():
    timer = running_timer(400, at=0.0, ts=1000)
    drifted = tick_timer(timer, 5.0).timer
    assert drifted["timeRemainingSeconds"] == 395
    synced = reanchor_timer(
        drifted, remaining=300, server_ts_ms=2000, received_at=5.2, threshold=300
    )
    assert synced.timer["timeRemainingSeconds"] == 300
    assert synced.timer["lastServerRemaining"] == 300
    assert synced.crossings == (ENDING_SOON,)
    # Next tick counts from the sync receipt, not the previous tick
    assert tick_timer(synced.timer, 5.9).timer["timeRemainingSeconds"] == 300
    assert tick_timer(synced.timer, 6.5).timer["timeRemainingSeconds"] == 299


def test_stale_sync_is_ignored():
    timer = running_timer(200, ts=5000)
    stale = reanchor_timer(timer, remaining=900, server_ts_ms=4000, received_at=1.0)
    assert not stale.applied
    assert stale.timer["timeRemainingSeconds"] == 200


@pytest.mark.parametrize("step", [1, 7, 60, 299, 400])
def test_thresholds_fire_once_at_any_granularity(step):
    timer = running_timer(400, at=0.0)
    crossings = []
    now = 0.0
    while timer_phase(timer) is not TimerPhase.ENDED:
        now += step
        tick = tick_timer(timer, now, threshold=300)
        crossings.extend(tick.crossings)
        timer = tick.timer
    assert crossings.count(ENDING_SOON) == 1
    assert crossings.count(ENDED) == 1
    assert timer["timeRemainingSeconds"] == 0
    assert timer["isRunning"] is False


def test_pause_suspends_ticks_and_resume_does_not_charge_paused_time():
    timer = running_timer(100, at=0.0)
    paused = pause_timer(timer)
    assert timer_phase(paused) is TimerPhase.PAUSED
    assert not tick_timer(paused, 30.0).applied
    resumed = resume_timer(paused, 50.0)
    assert tick_timer(resumed, 51.0).timer["timeRemainingSeconds"] == 99


def test_countdown_to_zero_ends_contest_with_one_notification():
    state = default_contest_state("c1")
    state = reduce_contest(
        state,
        make_event(
            EventType.CONTEST_STARTED,
            room_id="c1",
            data={"timeRemainingSeconds": 10},
            server_ts_ms=1000,
            received_at=0.0,
        ),
    ).state
    notifications = []
    for second in range(0, 11):
        outcome = tick_contest(state, float(second))
        state = outcome.state
        notifications.extend(outcome.notifications)
    assert state["status"] == "ended"
    assert state["timer"]["timeRemainingSeconds"] == 0
    assert [n["type"] for n in notifications] == ["contest_ended"]

    later = tick_contest(state, 12.0)
    assert not later.applied
    assert later.notifications == []


def test_server_end_after_local_end_does_not_notify_twice():
    state = default_contest_state("c1")
    state = reduce_contest(
        state,
        make_event(EventType.TIMER_UPDATED, room_id="c1", server_ts_ms=1000,
                   data={"timeRemaining": 2, "isRunning": True}),
    ).state
    state = tick_contest(state, 2.0).state
    assert state["status"] == "ended"
    outcome = reduce_contest(
        state, make_event(EventType.CONTEST_ENDED, room_id="c1", server_ts_ms=3000)
    )
    assert outcome.notifications == []
    assert outcome.state["status"] == "ended"


def test_set_contest_paused_round_trip():
    state = default_contest_state("c1")
    state["timer"] = running_timer(100, at=0.0)
    paused = set_contest_paused(state, True, 3.0)
    assert paused.applied
    assert paused.state["timer"]["isPaused"] is True
    again = set_contest_paused(paused.state, True, 4.0)
    assert not again.applied
    resumed = set_contest_paused(paused.state, False, 10.0)
    assert resumed.state["timer"]["lastTickAt"] == 10.0


@pytest.mark.asyncio
async def test_reconciler_stops_when_tick_reports_done():
    calls = []

    def tick(now):
        calls.append(now)
        return len(calls) < 3

    reconciler = TimerReconciler(tick, interval=0.001)
    reconciler.start()
    for _ in range(200):
        if not reconciler.running:
            break
        await asyncio.sleep(0.005)
    assert len(calls) == 3
    assert not reconciler.running
    await reconciler.stop()


@pytest.mark.asyncio
async def test_reconciler_stop_is_final():
    calls = []
    reconciler = TimerReconciler(lambda now: calls.append(now) or True, interval=0.001)
    reconciler.start()
    await asyncio.sleep(0.01)
    await reconciler.stop()
    count = len(calls)
    await asyncio.sleep(0.01)
    assert len(calls) == count
    with pytest.raises(RuntimeError):
        reconciler.start()


def test_replayed_start_cannot_reopen_locally_ended_contest():
    started = make_event(
        EventType.CONTEST_STARTED,
        room_id="c1",
        data={"timeRemainingSeconds": 10},
        server_ts_ms=1000,
        received_at=0.0,
    )
    state = reduce_contest(default_contest_state("c1"), started).state
    state = tick_contest(state, 0.0).state
    state = tick_contest(state, 11.0).state
    assert state["status"] == "ended"

    # Reconnect replays the original start
    replayed = reduce_contest(state, started)
    assert not replayed.applied
    assert replayed.state["status"] == "ended"
    assert replayed.notifications == []
