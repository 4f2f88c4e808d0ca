from __future__ import annotations

from typing import Any, Optional
import json
import time

import redis

from backend.app.config import settings
from backend.app.errors import InfrastructureError

_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout_seconds,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
        )
    return _client


def set_redis_client(client: Optional[redis.Redis]) -> None:
    """swap the shared client (tests plug fakeredis in here)"""
    global _client
    _client = client


class CacheStore:
    """
    Small TTL key/value cache on redis.

    Values are stored as JSON, writes are last-writer-wins per key. Every
    redis failure surfaces as InfrastructureError so callers can bypass
    the cache without knowing about redis.
    """

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client if client is not None else get_redis_client()

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            raise InfrastructureError(f"cache read failed for {key}: {e}") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            # corrupted entry, drop it and treat as a miss
            self.delete(key)
            return None

    def get_entry(self, key: str) -> Optional[tuple[Any, int]]:
        """(value, expires_at) or None when missing / expired"""
        value = self.get(key)
        if value is None:
            return None
        try:
            remaining = self.client.ttl(key)
        except redis.RedisError as e:
            raise InfrastructureError(f"cache ttl failed for {key}: {e}") from e
        # -2 gone in between, -1 no expiry (never written by us)
        if remaining is None or remaining < 0:
            return None
        return value, int(time.time()) + int(remaining)

    def set(self, key: str, value: Any, ttl: int, expires_at: Optional[int] = None) -> int:
        now = int(time.time())
        ex = int(ttl) if expires_at is None else int(expires_at) - now
        ex = max(ex, 1)
        try:
            self.client.set(key, json.dumps(value), ex=ex)
        except redis.RedisError as e:
            raise InfrastructureError(f"cache write failed for {key}: {e}") from e
        return now + ex

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            raise InfrastructureError(f"cache delete failed for {key}: {e}") from e

    def delete_prefix(self, prefix: str) -> int:
        removed = 0
        try:
            batch = []
            for key in self.client.scan_iter(match=f"{prefix}*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += self.client.delete(*batch)
                    batch = []
            if batch:
                removed += self.client.delete(*batch)
        except redis.RedisError as e:
            raise InfrastructureError(f"cache delete failed for prefix {prefix}: {e}") from e
        return removed
