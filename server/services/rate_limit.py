"""Fixed-window request limiter backed by Redis.

Each identity gets one JSON record ``{"count": n, "window_end": ms}`` under
``rate:<identity>``. The read and the write are separate round trips with no
lock, so concurrent requests on one key can under-count; the limiter is
best-effort and callers must not rely on it for hard quotas.
"""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Callable

import redis as redis_lib

from services.errors import RateLimitStoreError

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate:"


def _now_ms() -> int:
    return int(time.time() * 1000)


def rate_key(identity: str) -> str:
    return f"{KEY_PREFIX}{identity}"


class RateLimiter:
    def __init__(
        self,
        r: redis_lib.Redis,
        *,
        min_ttl_seconds: int = 60,
        clock: Callable[[], int] = _now_ms,
    ):
        self._redis = r
        self._min_ttl = min_ttl_seconds
        self._clock = clock

    def allow(self, key: str, limit: int, window_ms: int) -> bool:
        now = self._clock()
        record = self._read(key)

        if record is None or now >= record["window_end"]:
            self._write(key, 1, now + window_ms, now)
            return True

        if record["count"] < limit:
            self._write(key, record["count"] + 1, record["window_end"], now)
            return True

        logger.info("Rate limit hit for %s (%d/%d)", key, record["count"], limit)
        return False

    def retry_after_ms(self, key: str, default_ms: int) -> int:
        """Milliseconds until the current window for *key* closes."""
        try:
            record = self._read(key)
        except RateLimitStoreError:
            return default_ms
        if record is None:
            return default_ms
        return max(record["window_end"] - self._clock(), 0)

    def _ttl_seconds(self, window_end: int, now: int) -> int:
        return max(math.ceil((window_end - now) / 1000), self._min_ttl)

    def _read(self, key: str) -> dict | None:
        try:
            raw = self._redis.get(key)
        except redis_lib.RedisError as exc:
            raise RateLimitStoreError(f"Failed to read {key}: {exc}") from exc
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return {"count": int(data["count"]), "window_end": int(data["window_end"])}
        except (TypeError, ValueError, KeyError):
            logger.warning("Discarding malformed rate-limit record for %s", key)
            return None

    def _write(self, key: str, count: int, window_end: int, now: int) -> None:
        payload = json.dumps({"count": count, "window_end": window_end})
        try:
            self._redis.set(key, payload, ex=self._ttl_seconds(window_end, now))
        except redis_lib.RedisError as exc:
            raise RateLimitStoreError(f"Failed to write {key}: {exc}") from exc
