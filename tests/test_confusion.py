"""
Confusion aggregator tests - windowing, latest-per-student, degradation
"""
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from questionflow.db.models import ConfusionReading, utcnow
from questionflow.services import confusion
from questionflow.services.confusion import (
    AggregationResult, ConfusionAggregator, bucket_latest, window_expiry, zero_snapshot
)


async def _insert_reading(factory, session_id, student_id, level, age_seconds):
    async with factory() as db:
        db.add(ConfusionReading(
            session_id=session_id,
            student_id=student_id,
            level=level,
            timestamp=utcnow() - timedelta(seconds=age_seconds),
        ))
        await db.commit()


class TestBucketing:

    def test_latest_reading_per_student_wins(self):
        snapshot = bucket_latest([("x", 3), ("y", 1), ("x", 0)])
        assert snapshot == {"clear": 0, "slight": 1, "confused": 0, "lost": 1, "total": 2}

    def test_out_of_range_levels_are_skipped(self):
        snapshot = bucket_latest([("x", 7), ("y", -1), ("z", 2)])
        assert snapshot["confused"] == 1
        assert snapshot["total"] == 1

    def test_total_is_sum_of_levels(self):
        snapshot = bucket_latest([(f"s{i}", i % 4) for i in range(10)])
        assert snapshot["total"] == sum(snapshot[k] for k in ("clear", "slight", "confused", "lost"))

    def test_zero_result_fallback(self):
        failed = AggregationResult(snapshot={"clear": 9, "total": 9}, error=Exception("boom"))
        assert failed.ok is False
        assert failed.snapshot_or_zero() == zero_snapshot()


class TestAggregator:

    @pytest.mark.asyncio
    async def test_record_returns_and_broadcasts_snapshot(self, facade, aggregator, broadcaster, recorder):
        session = await facade.create_session("Physics")
        broadcaster.join("viewer", session.id, recorder)

        reading, stats = await aggregator.record(session.id, "alice", 2, "Alice")
        assert reading["level"] == 2
        assert reading["studentId"] == "alice"
        assert stats == {"clear": 0, "slight": 0, "confused": 1, "lost": 0, "total": 1}
        assert recorder.events == [("confusion-updated", stats)]

    @pytest.mark.asyncio
    async def test_student_counted_once_at_latest_level(self, facade, aggregator):
        session = await facade.create_session("Physics")
        await aggregator.record(session.id, "x", 0)
        _, stats = await aggregator.record(session.id, "x", 3)
        assert stats["clear"] == 0
        assert stats["lost"] == 1
        assert stats["total"] == 1

    @pytest.mark.asyncio
    async def test_readings_outside_window_are_ignored(self, facade, aggregator, session_factory):
        session = await facade.create_session("Physics")
        await _insert_reading(session_factory, session.id, "old", 3, age_seconds=301)
        await _insert_reading(session_factory, session.id, "recent", 1, age_seconds=60)

        result = await aggregator.compute_snapshot(session.id)
        assert result.ok
        assert result.snapshot == {"clear": 0, "slight": 1, "confused": 0, "lost": 0, "total": 1}

    @pytest.mark.asyncio
    async def test_stale_latest_does_not_hide_fresh_reading(self, facade, aggregator, session_factory):
        session = await facade.create_session("Physics")
        await _insert_reading(session_factory, session.id, "x", 0, age_seconds=400)
        await _insert_reading(session_factory, session.id, "x", 2, age_seconds=10)
        result = await aggregator.compute_snapshot(session.id)
        assert result.snapshot["confused"] == 1
        assert result.snapshot["total"] == 1

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, facade, aggregator):
        one = await facade.create_session("One")
        two = await facade.create_session("Two")
        await aggregator.record(one.id, "x", 3)
        result = await aggregator.compute_snapshot(two.id)
        assert result.snapshot == zero_snapshot()

    @pytest.mark.asyncio
    async def test_store_failure_yields_error_result(self, broadcaster):
        db = MagicMock()
        db.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("disk I/O")))
        factory = MagicMock()
        factory.return_value.__aenter__ = AsyncMock(return_value=db)
        factory.return_value.__aexit__ = AsyncMock(return_value=False)

        aggregator = ConfusionAggregator(factory, broadcaster)
        result = await aggregator.compute_snapshot("any")
        assert result.ok is False
        assert result.snapshot_or_zero() == zero_snapshot()

    @pytest.mark.asyncio
    async def test_cached_snapshot_is_served_and_invalidated(self, facade, session_factory, broadcaster):
        cache = MagicMock()
        cache.get_snapshot = AsyncMock(return_value={
            "snapshot": {"clear": 4, "slight": 0, "confused": 0, "lost": 0, "total": 4},
            "validUntil": None,
        })
        cache.cache_snapshot = AsyncMock()
        cache.invalidate_snapshot = AsyncMock()
        aggregator = ConfusionAggregator(session_factory, broadcaster, cache=cache)
        session = await facade.create_session("Cached")

        result = await aggregator.compute_snapshot(session.id)
        assert result.snapshot["clear"] == 4

        _, stats = await aggregator.record(session.id, "x", 1)
        cache.invalidate_snapshot.assert_awaited_once_with(session.id)
        assert stats["slight"] == 1

    @pytest.mark.asyncio
    async def test_failed_recompute_is_not_broadcast(
        self, facade, aggregator, broadcaster, recorder, monkeypatch,
    ):
        session = await facade.create_session("Physics")
        broadcaster.join("viewer", session.id, recorder)
        monkeypatch.setattr(AsyncSession, "execute", AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("disk I/O")),
        ))

        reading, stats = await aggregator.record(session.id, "x", 2)
        assert reading["level"] == 2
        assert stats == zero_snapshot()
        assert recorder.events == []


class InMemoryCache:
    """Dict-backed stand-in for RedisCache that never expires on its own."""

    def __init__(self):
        self.entries = {}
        self.ttls = {}

    async def cache_snapshot(self, session_id, entry, ttl):
        self.entries[session_id] = entry
        self.ttls[session_id] = ttl

    async def get_snapshot(self, session_id):
        return self.entries.get(session_id)

    async def invalidate_snapshot(self, session_id):
        self.entries.pop(session_id, None)


class TestSnapshotCache:

    @pytest.mark.asyncio
    async def test_cached_snapshot_respects_window(self, facade, session_factory, broadcaster, monkeypatch):
        cache = InMemoryCache()
        aggregator = ConfusionAggregator(session_factory, broadcaster, cache=cache, cache_ttl=5)
        session = await facade.create_session("Physics")
        await _insert_reading(session_factory, session.id, "x", 3, age_seconds=297)

        first = await aggregator.compute_snapshot(session.id)
        assert first.snapshot["lost"] == 1
        assert session.id in cache.entries
        assert 0 < cache.ttls[session.id] <= 3

        # The reading has left the window even though the entry is still cached
        later = utcnow() + timedelta(seconds=10)
        monkeypatch.setattr(confusion, "utcnow", lambda: later)
        second = await aggregator.compute_snapshot(session.id)
        assert second.snapshot == zero_snapshot()

    @pytest.mark.asyncio
    async def test_fresh_entry_is_served(self, facade, session_factory, broadcaster):
        cache = InMemoryCache()
        aggregator = ConfusionAggregator(session_factory, broadcaster, cache=cache, cache_ttl=5)
        session = await facade.create_session("Physics")
        await _insert_reading(session_factory, session.id, "x", 1, age_seconds=10)

        await aggregator.compute_snapshot(session.id)
        assert cache.ttls[session.id] == 5
        cache.entries[session.id]["snapshot"]["slight"] = 99
        served = await aggregator.compute_snapshot(session.id)
        assert served.snapshot["slight"] == 99

    @pytest.mark.asyncio
    async def test_reading_about_to_expire_is_not_cached(self, facade, session_factory, broadcaster):
        cache = InMemoryCache()
        aggregator = ConfusionAggregator(session_factory, broadcaster, cache=cache, cache_ttl=5)
        session = await facade.create_session("Physics")
        await _insert_reading(session_factory, session.id, "x", 1, age_seconds=299.5)

        await aggregator.compute_snapshot(session.id)
        assert session.id not in cache.entries

    def test_window_expiry_uses_each_students_latest(self):
        base = datetime(2026, 1, 1, 9, 0, 0)
        rows = [
            ("x", 1, base + timedelta(seconds=50)),
            ("y", 2, base + timedelta(seconds=20)),
            ("x", 3, base),
        ]
        assert window_expiry(rows, timedelta(seconds=300)) == base + timedelta(seconds=320)
        assert window_expiry([], timedelta(seconds=300)) is None
