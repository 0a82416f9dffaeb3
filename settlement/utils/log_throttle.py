"""Capped failure logging.

A persistent outage on one stream must not flood the log pipeline. Each key
(stream id) has a failure counter; the throttle logs every failure up to
``log_every_first_n``, then every ``tier_two_every``-th up to
``tier_two_limit``, then every ``tier_three_every``-th.

Counters live in a small store with an explicit eviction policy:

* ``InMemoryCounterStore`` - bounded LRU, lost on restart.
* ``RedisCounterStore`` - shared across worker processes, keys expire after a TTL.

Losing the counters only resets log volume, never correctness.
"""
from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

import redis

from settlement.config import LOG_THROTTLE_SETTINGS
from settlement.utils.logger import get_logger
from settlement.utils.time import utc_now

logger = get_logger(__name__)


class CounterStore(Protocol):
    def increment(self, key: str) -> int: ...
    def reset(self, key: str) -> None: ...
    def snapshot(self) -> dict[str, int]: ...


class InMemoryCounterStore:
    def __init__(self, max_keys: Optional[int] = None) -> None:
        self._max_keys = int(max_keys if max_keys is not None else LOG_THROTTLE_SETTINGS["max_keys"])
        self._counts: OrderedDict[str, int] = OrderedDict()
        self._lock = threading.Lock()

    def increment(self, key: str) -> int:
        with self._lock:
            value = self._counts.pop(key, 0) + 1
            self._counts[key] = value
            while len(self._counts) > self._max_keys:
                self._counts.popitem(last=False)  # least recently touched
            return value

    def reset(self, key: str) -> None:
        with self._lock:
            self._counts.pop(key, None)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def __len__(self) -> int:
        return len(self._counts)


class RedisCounterStore:
    def __init__(self, client: Optional["redis.Redis"] = None) -> None:
        self._prefix = str(LOG_THROTTLE_SETTINGS["redis_key_prefix"])
        self._ttl = int(LOG_THROTTLE_SETTINGS["redis_ttl_seconds"])
        self._client = client or redis.from_url(
            str(LOG_THROTTLE_SETTINGS["redis_url"]),
            socket_connect_timeout=float(LOG_THROTTLE_SETTINGS["redis_health_check_timeout"]),
            decode_responses=True,
        )

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def health_check(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as e:
            logger.warning("Redis counter store health check failed", error=str(e))
            return False

    def increment(self, key: str) -> int:
        pipe = self._client.pipeline()
        pipe.incr(self._key(key))
        pipe.expire(self._key(key), self._ttl)
        value, _ = pipe.execute()
        return int(value)

    def reset(self, key: str) -> None:
        self._client.delete(self._key(key))

    def snapshot(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for full_key in self._client.scan_iter(match=f"{self._prefix}*"):
            raw = self._client.get(full_key)
            if raw is not None:
                out[str(full_key)[len(self._prefix):]] = int(raw)
        return out


@dataclass
class ThrottleDecision:
    should_log: bool
    count: int


class FailureLogThrottle:
    def __init__(
        self,
        store: Optional[CounterStore] = None,
        *,
        first_n: Optional[int] = None,
        tier_two_limit: Optional[int] = None,
        tier_two_every: Optional[int] = None,
        tier_three_every: Optional[int] = None,
    ) -> None:
        self.store: CounterStore = store if store is not None else InMemoryCounterStore()
        self.first_n = int(first_n if first_n is not None else LOG_THROTTLE_SETTINGS["log_every_first_n"])
        self.tier_two_limit = int(tier_two_limit if tier_two_limit is not None else LOG_THROTTLE_SETTINGS["tier_two_limit"])
        self.tier_two_every = int(tier_two_every if tier_two_every is not None else LOG_THROTTLE_SETTINGS["tier_two_every"])
        self.tier_three_every = int(tier_three_every if tier_three_every is not None else LOG_THROTTLE_SETTINGS["tier_three_every"])
        self._last_logged: dict[str, datetime] = {}

    def should_log_count(self, count: int) -> bool:
        if count <= self.first_n:
            return True
        if count <= self.tier_two_limit:
            return count % self.tier_two_every == 0
        return count % self.tier_three_every == 0

    def record_failure(self, key: str | int) -> ThrottleDecision:
        key = str(key)
        count = self.store.increment(key)
        decision = ThrottleDecision(should_log=self.should_log_count(count), count=count)
        if decision.should_log:
            if len(self._last_logged) >= int(LOG_THROTTLE_SETTINGS["max_keys"]):
                self._last_logged.clear()
            self._last_logged[key] = utc_now()
        return decision

    def record_success(self, key: str | int) -> None:
        key = str(key)
        self.store.reset(key)
        self._last_logged.pop(key, None)

    def snapshot(self) -> list[dict[str, object]]:
        return [
            {
                "key": key,
                "total_failures_seen": count,
                "last_logged": self._last_logged[key].isoformat() if key in self._last_logged else None,
            }
            for key, count in self.store.snapshot().items()
        ]


def create_counter_store() -> CounterStore:
    """Redis-backed store when enabled and reachable, otherwise in-memory."""
    if bool(LOG_THROTTLE_SETTINGS.get("use_redis", False)):
        try:
            store = RedisCounterStore()
            if store.health_check():
                logger.info("Using Redis-backed log throttle counters")
                return store
            logger.warning("Redis unreachable; using in-memory log throttle counters")
        except redis.RedisError as e:
            logger.warning("Error initializing Redis counter store, falling back to in-memory", error=str(e))
    return InMemoryCounterStore()


__all__ = [
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "FailureLogThrottle",
    "ThrottleDecision",
    "create_counter_store",
]
