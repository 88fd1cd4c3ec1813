"""Notification dedup keyed by (type, sourceId, serverTimestamp bucket).

A single deduper is shared by every room of a client, so replayed server
events after a reconnect do not surface the same notification twice.
"""
from __future__ import annotations

import logging
import time
from typing import Callable

from cachetools import TTLCache

from .config import settings

logger = logging.getLogger(__name__)


def notification_id(
    ntype: str,
    source_id: str,
    server_ts_ms: int,
    bucket_seconds: int | None = None,
) -> str:
    """Build the dedup key for a notification.

    Timestamps are bucketed so the same logical notification pushed twice a
    few hundred ms apart collapses onto one id.
    """
    if bucket_seconds is None:
        bucket_seconds = settings.NOTIFICATION_BUCKET_SECONDS
    if bucket_seconds <= 0:
        raise ValueError("bucket_seconds must be positive")
    bucket = int(server_ts_ms) // (bucket_seconds * 1000)
    return f"{ntype}:{source_id}:{bucket}"


class NotificationDeduper:
    """Bounded, time-windowed set of recently emitted notification ids.

    Entries expire after `ttl_seconds`; beyond `max_size` the least recently
    used id is evicted first.
    """

    def __init__(
        self,
        max_size: int | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = settings.DEDUP_MAX_SIZE if max_size is None else max_size
        self.ttl_seconds = settings.DEDUP_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        if self.max_size <= 0:
            raise ValueError("max_size must be positive")
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        # id -> time recorded
        self._seen: TTLCache = TTLCache(
            maxsize=self.max_size, ttl=self.ttl_seconds, timer=clock
        )

    def should_emit(self, nid: str) -> bool:
        """Insert-if-absent. Returns True (and records the id) when not seen in the window."""
        if nid in self._seen:
            logger.debug("Suppressing duplicate notification %s", nid)
            return False
        self._seen[nid] = self._seen.timer()
        return True

    def clear(self) -> None:
        self._seen.clear()

    def __contains__(self, nid: object) -> bool:
        return nid in self._seen

    def __len__(self) -> int:
        self._seen.expire()
        return len(self._seen)
