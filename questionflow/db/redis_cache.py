"""
Redis Cache Layer for QuestionFlow
Handles: short-lived confusion snapshot cache shared between workers
"""
import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger("questionflow.cache")


class RedisCache:
    """Async Redis cache; every call is a no-op while disconnected."""

    def __init__(self, url: str = ""):
        self._url = url
        self._client = None
        self._connected = False

    async def connect(self):
        if not self._url:
            logger.info("[Redis] REDIS_URL not set, running without cache")
            return
        try:
            self._client = aioredis.from_url(
                self._url, encoding="utf-8", decode_responses=True
            )
            await self._client.ping()
            self._connected = True
            logger.info(f"[Redis] Connected to {self._url}")
        except (RedisError, OSError) as e:
            logger.warning(f"[Redis] Connection failed: {e}. Running without cache.")
            self._connected = False

    async def disconnect(self):
        if self._client and self._connected:
            await self._client.aclose()
            self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ─── Confusion Snapshot ────────────────────────────────
    async def cache_snapshot(self, session_id: str, entry: Dict[str, Any], ttl: int):
        if not self._connected or ttl <= 0:
            return
        try:
            await self._client.setex(f"confusion:{session_id}", ttl, json.dumps(entry))
        except RedisError as e:
            logger.warning(f"[Redis] cache_snapshot failed: {e}")

    async def get_snapshot(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Cached ``{"snapshot": ..., "validUntil": ...}`` entry, if any."""
        if not self._connected:
            return None
        try:
            data = await self._client.get(f"confusion:{session_id}")
        except RedisError as e:
            logger.warning(f"[Redis] get_snapshot failed: {e}")
            return None
        return json.loads(data) if data else None

    async def invalidate_snapshot(self, session_id: str):
        if not self._connected:
            return
        try:
            await self._client.delete(f"confusion:{session_id}")
        except RedisError as e:
            logger.warning(f"[Redis] invalidate_snapshot failed: {e}")
