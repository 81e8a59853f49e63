"""
Redis-backed snapshot of the dispatcher queue, written on shutdown.

A snapshot older than the TTL is discarded on load rather than resumed. The key also
carries a Redis expiry of the same TTL.
"""
import json
import time
import logging
from typing import Any, Callable, Dict, List, Optional

import redis

from .config import settings

logger = logging.getLogger(__name__)

class QueueStateError(Exception):
    """Queue snapshot could not be stored or read."""
    pass

class QueueStateStore:
    def __init__(self, redis_client=None, key: Optional[str] = None, ttl: Optional[int] = None,
                 clock: Callable[[], float] = time.time):
        self.redis_client = redis_client or redis.from_url(settings.REDIS_URL, decode_responses=True)
        self.key = key or settings.QUEUE_STATE_KEY
        self.ttl = ttl or settings.QUEUE_STATE_TTL_S
        self.clock = clock

    def save(self, items: List[Dict[str, Any]]) -> None:
        snapshot = {"timestamp": self.clock(), "items": items}
        try:
            self.redis_client.set(self.key, json.dumps(snapshot), ex=int(self.ttl))
        except redis.RedisError as e:
            raise QueueStateError(f"Failed to save queue state: {e}")
        logger.info(f"Saved queue state with {len(items)} items")

    def load(self) -> List[Dict[str, Any]]:
        """Return and consume the stored items. Stale or missing state yields an empty list."""
        try:
            raw = self.redis_client.get(self.key)
        except redis.RedisError as e:
            raise QueueStateError(f"Failed to load queue state: {e}")
        if not raw:
            return []

        self.clear()
        try:
            snapshot = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Discarding unreadable queue state: {e}")
            return []

        age = self.clock() - float(snapshot.get("timestamp", 0))
        if age > self.ttl:
            logger.warning(f"Discarding stale queue state ({age:.0f}s old, ttl {self.ttl}s)")
            return []
        items = snapshot.get("items") or []
        logger.info(f"Restored queue state with {len(items)} items")
        return items

    def clear(self) -> None:
        try:
            self.redis_client.delete(self.key)
        except redis.RedisError as e:
            raise QueueStateError(f"Failed to clear queue state: {e}")
