"""Contest countdown: pure tick/re-anchor transitions plus the 1 Hz loop.

State machine: stopped -> running <-> paused -> ended (terminal).

- Ticks subtract the whole seconds of wall-clock time elapsed since the last
  tick, carrying the fractional remainder in `lastTickAt`. A tick after a 9 s
  gap (throttled/backgrounded loop) subtracts 9.
- A server sync (`reanchor_timer`) discards the local estimate and adopts the
  server's remaining time; syncs older than the last adopted one are ignored.
- "ending soon" and "ended" each fire at most once per timer, guarded by
  `endingSoonFired`/`endedFired`.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from copy import deepcopy
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Tuple

from .config import settings
from .types import TimerState

logger = logging.getLogger(__name__)

ENDING_SOON = "ending_soon"
ENDED = "ended"


class TimerPhase(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"
    ENDED = "ended"


@dataclass
class TimerTick:
    """Result of a timer transition."""

    timer: TimerState
    crossings: Tuple[str, ...] = ()
    applied: bool = True


def default_timer(remaining: int = 0) -> TimerState:
    return {
        "isRunning": False,
        "isPaused": False,
        "timeRemainingSeconds": max(0, int(remaining)),
        "lastServerSyncAt": None,
        "lastServerRemaining": None,
        "lastTickAt": None,
        "endingSoonFired": False,
        "endedFired": False,
    }


def timer_phase(timer: TimerState) -> TimerPhase:
    if timer.get("endedFired"):
        return TimerPhase.ENDED
    if not timer.get("isRunning"):
        return TimerPhase.STOPPED
    if timer.get("isPaused"):
        return TimerPhase.PAUSED
    return TimerPhase.RUNNING


def _threshold() -> int:
    return settings.ENDING_SOON_THRESHOLD_SECONDS


def _crossings(timer: TimerState, previous: int, threshold: int) -> Tuple[str, ...]:
    """Evaluate threshold edges after timeRemainingSeconds moved from `previous`.

    Mutates `timer` (callers pass their private copy).
    """
    current = timer["timeRemainingSeconds"]
    fired = []
    if not timer.get("endingSoonFired") and current <= threshold:
        # Jumping from above the threshold straight to 0 still counts as a crossing
        if current > 0 or previous > threshold:
            timer["endingSoonFired"] = True
            fired.append(ENDING_SOON)
    if current <= 0 and not timer.get("endedFired"):
        timer["timeRemainingSeconds"] = 0
        timer["isRunning"] = False
        timer["isPaused"] = False
        timer["endedFired"] = True
        fired.append(ENDED)
    return tuple(fired)


def tick_timer(timer: TimerState, now: float, threshold: int | None = None) -> TimerTick:
    """Advance the countdown to local monotonic time `now`."""
    new_timer: TimerState = deepcopy(timer)
    if threshold is None:
        threshold = _threshold()

    if timer_phase(new_timer) is not TimerPhase.RUNNING:
        return TimerTick(new_timer, applied=False)

    last = new_timer.get("lastTickAt")
    if last is None:
        new_timer["lastTickAt"] = now
        return TimerTick(new_timer)

    elapsed = now - last
    if elapsed < 1:
        return TimerTick(new_timer, applied=False)

    whole = int(elapsed)
    new_timer["lastTickAt"] = last + whole
    previous = int(new_timer.get("timeRemainingSeconds") or 0)
    new_timer["timeRemainingSeconds"] = max(0, previous - whole)
    return TimerTick(new_timer, _crossings(new_timer, previous, threshold))


def reanchor_timer(
    timer: TimerState,
    *,
    remaining: int | float,
    server_ts_ms: int,
    received_at: float,
    is_running: bool | None = None,
    is_paused: bool | None = None,
    threshold: int | None = None,
) -> TimerTick:
    """Adopt an authoritative remaining time from the server.

    Returns applied=False for a sync older than the last adopted one, or once
    the timer has ended.
    """
    new_timer: TimerState = deepcopy(timer)
    if threshold is None:
        threshold = _threshold()

    if new_timer.get("endedFired"):
        return TimerTick(new_timer, applied=False)

    last_sync = new_timer.get("lastServerSyncAt")
    if last_sync is not None and server_ts_ms < last_sync:
        logger.debug(
            "Ignoring stale timer sync (ts=%s < last=%s)", server_ts_ms, last_sync
        )
        return TimerTick(new_timer, applied=False)

    was_running = bool(new_timer.get("isRunning"))
    previous = int(new_timer.get("timeRemainingSeconds") or 0)
    adopted = max(0, int(remaining))

    new_timer["timeRemainingSeconds"] = adopted
    new_timer["lastServerSyncAt"] = server_ts_ms
    new_timer["lastServerRemaining"] = adopted
    new_timer["lastTickAt"] = received_at
    if is_running is not None:
        new_timer["isRunning"] = bool(is_running)
    if is_paused is not None:
        new_timer["isPaused"] = bool(is_paused)

    crossings: Tuple[str, ...] = ()
    if was_running or new_timer.get("isRunning"):
        # previous is unrelated to the adopted value after a sync; only the
        # adopted value decides whether the threshold is already behind us
        crossings = _crossings(new_timer, max(previous, adopted), threshold)
    return TimerTick(new_timer, crossings)


def pause_timer(timer: TimerState) -> TimerState:
    """Suspend ticking without touching timeRemainingSeconds."""
    new_timer: TimerState = deepcopy(timer)
    if timer_phase(new_timer) is TimerPhase.RUNNING:
        new_timer["isPaused"] = True
    return new_timer


def resume_timer(timer: TimerState, now: float) -> TimerState:
    new_timer: TimerState = deepcopy(timer)
    if timer_phase(new_timer) is TimerPhase.PAUSED:
        new_timer["isPaused"] = False
        # Paused time must not be subtracted on the next tick
        new_timer["lastTickAt"] = now
    return new_timer


class TimerReconciler:
    """Drives a room's countdown once per interval on the running event loop.

    `tick` receives the current monotonic time and returns False once the
    countdown is finished, which ends the loop. `stop()` cancels the loop
    deterministically; no tick runs after it returns.
    """

    def __init__(
        self,
        tick: Callable[[float], bool],
        *,
        interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._tick = tick
        self.interval = settings.TICK_INTERVAL_SECONDS if interval is None else interval
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._stopped:
            raise RuntimeError("TimerReconciler cannot be restarted after stop()")
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.interval)
            if self._stopped:
                break
            try:
                keep_going = self._tick(self._clock())
            except Exception:
                logger.error("Timer tick failed", exc_info=True)
                continue
            if not keep_going:
                logger.debug("Timer finished; tick loop exiting")
                break

    async def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
