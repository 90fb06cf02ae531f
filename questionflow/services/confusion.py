"""
Confusion Aggregator

Students report how lost they are on a four-step scale.  Readings are
append-only; the live distribution only counts each student's most recent
reading inside a trailing window (5 minutes by default).

compute_snapshot() never raises: it returns an AggregationResult that is
either ok with the snapshot, or carries the failure reason.  Callers that
serve dashboards use ``snapshot_or_zero()``; batch callers can inspect
``error`` instead.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from questionflow.core.errors import AggregationFailure, PersistenceFailure
from questionflow.db.models import ConfusionReading, utcnow
from questionflow.db.redis_cache import RedisCache
from questionflow.services.broadcaster import RoomBroadcaster

logger = logging.getLogger("questionflow.confusion")

CONFUSION_LEVELS = ("clear", "slight", "confused", "lost")


def zero_snapshot() -> Dict[str, int]:
    snapshot = {name: 0 for name in CONFUSION_LEVELS}
    snapshot["total"] = 0
    return snapshot


@dataclass
class AggregationResult:
    snapshot: Dict[str, int] = field(default_factory=zero_snapshot)
    error: Optional[AggregationFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def snapshot_or_zero(self) -> Dict[str, int]:
        return dict(self.snapshot) if self.ok else zero_snapshot()


def bucket_latest(readings) -> Dict[str, int]:
    """
    Build a snapshot from ``(student_id, level)`` pairs ordered newest first.
    Only the first (newest) reading per student counts; unknown levels are
    skipped without error.
    """
    snapshot = zero_snapshot()
    seen = set()
    for student_id, level in readings:
        if student_id in seen:
            continue
        seen.add(student_id)
        if isinstance(level, int) and 0 <= level < len(CONFUSION_LEVELS):
            snapshot[CONFUSION_LEVELS[level]] += 1
            snapshot["total"] += 1
    return snapshot


def window_expiry(rows, window: timedelta) -> Optional[datetime]:
    """
    When the oldest counted reading drops out of the window, given
    ``(student_id, level, timestamp)`` rows ordered newest first.
    None for an empty window.
    """
    latest = {}
    for student_id, _, timestamp in rows:
        latest.setdefault(student_id, timestamp)
    if not latest:
        return None
    return min(latest.values()) + window


class ConfusionAggregator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        broadcaster: RoomBroadcaster,
        cache: Optional[RedisCache] = None,
        window_seconds: int = 300,
        cache_ttl: int = 5,
    ):
        self._db = session_factory
        self.broadcaster = broadcaster
        self.cache = cache
        self.window = timedelta(seconds=window_seconds)
        self.cache_ttl = cache_ttl

    async def _cached_snapshot(self, session_id: str, now: datetime) -> Optional[Dict[str, int]]:
        entry = await self.cache.get_snapshot(session_id)
        if not entry:
            return None
        valid_until = entry.get("validUntil")
        if valid_until and datetime.fromisoformat(valid_until) <= now:
            return None
        return entry.get("snapshot")

    async def _store_snapshot(
        self, session_id: str, snapshot: Dict[str, int], valid_until: Optional[datetime], now: datetime,
    ) -> None:
        # Never outlive the moment the oldest counted reading leaves the window
        ttl = self.cache_ttl
        if valid_until is not None:
            ttl = min(ttl, int((valid_until - now).total_seconds()))
        if ttl <= 0:
            return
        await self.cache.cache_snapshot(session_id, {
            "snapshot": snapshot,
            "validUntil": valid_until.isoformat() if valid_until else None,
        }, ttl)

    async def compute_snapshot(
        self, session_id: str, now: Optional[datetime] = None, use_cache: bool = True,
    ) -> AggregationResult:
        cacheable = self.cache is not None and now is None
        current = now or utcnow()
        if use_cache and cacheable:
            cached = await self._cached_snapshot(session_id, current)
            if cached is not None:
                return AggregationResult(snapshot=cached)

        since = current - self.window
        try:
            async with self._db() as db:
                result = await db.execute(
                    select(
                        ConfusionReading.student_id,
                        ConfusionReading.level,
                        ConfusionReading.timestamp,
                    )
                    .where(
                        ConfusionReading.session_id == session_id,
                        ConfusionReading.timestamp >= since,
                    )
                    .order_by(ConfusionReading.timestamp.desc(), ConfusionReading.id.desc())
                )
                rows = result.all()
        except SQLAlchemyError as e:
            logger.exception(f"Confusion stats failed for session {session_id}")
            return AggregationResult(error=AggregationFailure(str(e)))

        snapshot = bucket_latest((student_id, level) for student_id, level, _ in rows)
        if cacheable:
            await self._store_snapshot(session_id, snapshot, window_expiry(rows, self.window), current)
        return AggregationResult(snapshot=snapshot)

    async def record(
        self,
        session_id: str,
        student_id: str,
        level: int,
        student_name: str = "",
    ) -> Tuple[Dict[str, Any], Dict[str, int]]:
        """
        Append a reading, then recompute and broadcast the session snapshot.

        Returns (reading, snapshot).  A failed write raises PersistenceFailure;
        a failed recompute is logged, not broadcast, and yields zero stats.
        """
        try:
            async with self._db() as db:
                reading = ConfusionReading(
                    session_id=session_id,
                    student_id=student_id,
                    student_name=student_name,
                    level=level,
                    timestamp=utcnow(),
                )
                db.add(reading)
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Could not save confusion reading: {e}") from e

        if self.cache is not None:
            await self.cache.invalidate_snapshot(session_id)

        result = await self.compute_snapshot(session_id, use_cache=False)
        if result.ok:
            self.broadcaster.broadcast(session_id, "confusion-updated", result.snapshot)
        else:
            logger.error(f"Skipping confusion-updated for {session_id}: {result.error}")
        return reading.to_dict(), result.snapshot_or_zero()
