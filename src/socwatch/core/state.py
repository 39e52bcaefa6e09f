"""Shared fast state store.

Every detector and the escalation engine coordinate through this store,
never through in-process globals. Every mutating operation is atomic so
counting can be written as "increment, then compare the returned value".

Backends:
  - MemoryStateStore: single-process, lock-protected, injectable clock.
  - RedisStateStore: redis-py, MULTI/EXEC pipelines and one Lua script.
"""

from __future__ import annotations

import abc
import bisect
import fnmatch
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import redis

from socwatch.core.errors import ConfigurationError, StateStoreError

logger = logging.getLogger(__name__)


class StateStore(abc.ABC):
    """Narrow client interface over the shared key-value store."""

    @abc.abstractmethod
    def now(self) -> float:
        """Current wall-clock time as seen by the store."""

    @abc.abstractmethod
    def get(self, key: str) -> str | None:
        """Return the string value at *key*, or None."""

    def get_int(self, key: str) -> int:
        value = self.get(key)
        try:
            return int(value) if value is not None else 0
        except ValueError:
            return 0

    @abc.abstractmethod
    def get_many(self, keys: list[str]) -> list[int]:
        """Return integer values for *keys* (0 for missing), in order."""

    @abc.abstractmethod
    def set(self, key: str, value: str | int, ttl: int | None = None) -> None:
        """Unconditionally set *key*, with optional expiry in seconds."""

    @abc.abstractmethod
    def set_nx(self, key: str, value: str | int, ttl: int) -> bool:
        """Atomically set *key* only if absent. True if this call set it."""

    @abc.abstractmethod
    def compare_and_set(self, key: str, expected: str, value: str | int, ttl: int) -> bool:
        """Replace *key* with *value* only while it still holds *expected*.

        Returns True when the swap happened.
        """

    @abc.abstractmethod
    def incr(
        self, key: str, amount: int = 1, ttl: int | None = None, sliding: bool = True,
    ) -> int:
        """Atomically add *amount* and return the new value.

        With ``sliding=True`` the TTL is reset on every increment (the key
        expires only after *ttl* seconds of inactivity). With
        ``sliding=False`` the TTL is set on creation only (fixed window).
        """

    @abc.abstractmethod
    def raise_to(self, key: str, value: int, ttl: int) -> int:
        """Atomically set *key* to max(current, value); return the result.

        The TTL is refreshed only when the value actually increases.
        """

    @abc.abstractmethod
    def add_to_set(self, key: str, member: str, ttl: int) -> int:
        """Atomically add *member*, refresh TTL, and return the cardinality."""

    @abc.abstractmethod
    def add_timed(
        self,
        key: str,
        member: str,
        timestamp: float,
        ttl: int,
        prune_before: float | None = None,
    ) -> None:
        """Insert *member* into a time-ordered collection scored by *timestamp*.

        Entries scored before *prune_before* are dropped in the same step.
        """

    @abc.abstractmethod
    def range_by_time(self, key: str, start: float, end: float) -> list[str]:
        """Members with start <= timestamp <= end, oldest first."""

    @abc.abstractmethod
    def ttl(self, key: str) -> float | None:
        """Remaining lifetime of *key* in seconds, or None if absent/persistent."""

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        """Remove *key*."""

    @abc.abstractmethod
    def scan(self, pattern: str) -> list[str]:
        """Keys matching a glob *pattern*."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

@dataclass
class _Entry:
    value: Any
    expires_at: float | None = None


@dataclass
class _TimedSeries:
    scores: list[float] = field(default_factory=list)
    members: list[str] = field(default_factory=list)


class MemoryStateStore(StateStore):
    """Thread-safe in-process store with lazy TTL expiry.

    Only coordinates threads inside one process; use RedisStateStore when
    several worker processes share the backlog.

    Parameters
    ----------
    clock:
        Callable returning the current time. Tests pass a controllable
        clock to simulate TTL passage.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._data: dict[str, _Entry] = {}

    def now(self) -> float:
        return self._clock()

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: int | None) -> float | None:
        return self._clock() + ttl if ttl else None

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key)
            if entry is None or isinstance(entry.value, (set, _TimedSeries)):
                return None
            return str(entry.value)

    def get_many(self, keys: list[str]) -> list[int]:
        with self._lock:
            return [self.get_int(k) for k in keys]

    def set(self, key: str, value: str | int, ttl: int | None = None) -> None:
        with self._lock:
            self._data[key] = _Entry(str(value), self._expiry(ttl))

    def set_nx(self, key: str, value: str | int, ttl: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = _Entry(str(value), self._expiry(ttl))
            return True

    def compare_and_set(self, key: str, expected: str, value: str | int, ttl: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry.value != expected:
                return False
            self._data[key] = _Entry(str(value), self._expiry(ttl))
            return True

    def incr(
        self, key: str, amount: int = 1, ttl: int | None = None, sliding: bool = True,
    ) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry("0", self._expiry(ttl))
                self._data[key] = entry
            elif sliding and ttl:
                entry.expires_at = self._expiry(ttl)
            value = int(entry.value) + amount
            entry.value = str(value)
            return value

    def raise_to(self, key: str, value: int, ttl: int) -> int:
        with self._lock:
            current = self.get_int(key)
            if value > current:
                self._data[key] = _Entry(str(value), self._expiry(ttl))
                return value
            return current

    def add_to_set(self, key: str, member: str, ttl: int) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, set):
                entry = _Entry(set())
                self._data[key] = entry
            entry.value.add(member)
            entry.expires_at = self._expiry(ttl)
            return len(entry.value)

    def add_timed(
        self,
        key: str,
        member: str,
        timestamp: float,
        ttl: int,
        prune_before: float | None = None,
    ) -> None:
        with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, _TimedSeries):
                entry = _Entry(_TimedSeries())
                self._data[key] = entry
            series: _TimedSeries = entry.value
            # Re-adding a member moves it, as ZADD does
            if member in series.members:
                old = series.members.index(member)
                del series.scores[old]
                del series.members[old]
            idx = bisect.bisect_right(series.scores, timestamp)
            series.scores.insert(idx, timestamp)
            series.members.insert(idx, member)
            if prune_before is not None:
                cut = bisect.bisect_left(series.scores, prune_before)
                del series.scores[:cut]
                del series.members[:cut]
            entry.expires_at = self._expiry(ttl)

    def range_by_time(self, key: str, start: float, end: float) -> list[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, _TimedSeries):
                return []
            series: _TimedSeries = entry.value
            lo = bisect.bisect_left(series.scores, start)
            hi = bisect.bisect_right(series.scores, end)
            return list(series.members[lo:hi])

    def ttl(self, key: str) -> float | None:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry.expires_at is None:
                return None
            return entry.expires_at - self._clock()

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def scan(self, pattern: str) -> list[str]:
        with self._lock:
            keys = [k for k in list(self._data) if self._live(k) is not None]
            return sorted(k for k in keys if fnmatch.fnmatchcase(k, pattern))


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

# Monotonic max-write: SET only when the new value is larger.
_RAISE_TO_LUA = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local candidate = tonumber(ARGV[1])
if candidate > current then
  redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
  return candidate
end
return current
"""

# Swap only while the key still holds the expected value.
_COMPARE_AND_SET_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
  return 1
end
return 0
"""


class RedisStateStore(StateStore):
    """Redis-backed store shared by every worker process.

    Parameters
    ----------
    client:
        A ``redis.Redis`` created with ``decode_responses=True``.
    key_prefix:
        Namespace prepended to every key.
    """

    def __init__(self, client: redis.Redis, key_prefix: str = "") -> None:
        self._client = client
        self._prefix = key_prefix
        self._raise_to_script = client.register_script(_RAISE_TO_LUA)
        self._cas_script = client.register_script(_COMPARE_AND_SET_LUA)

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "") -> RedisStateStore:
        client = redis.Redis.from_url(url, decode_responses=True)
        logger.info("Redis state store at %s", _redact(url))
        return cls(client, key_prefix=key_prefix)

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _call(self, op: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except redis.RedisError as exc:
            raise StateStoreError(f"redis {op} failed: {exc}") from exc

    def now(self) -> float:
        return time.time()

    def get(self, key: str) -> str | None:
        return self._call("get", lambda: self._client.get(self._k(key)))

    def get_many(self, keys: list[str]) -> list[int]:
        if not keys:
            return []
        values = self._call("mget", lambda: self._client.mget([self._k(k) for k in keys]))
        result = []
        for v in values:
            try:
                result.append(int(v) if v is not None else 0)
            except ValueError:
                result.append(0)
        return result

    def set(self, key: str, value: str | int, ttl: int | None = None) -> None:
        self._call("set", lambda: self._client.set(self._k(key), value, ex=ttl))

    def set_nx(self, key: str, value: str | int, ttl: int) -> bool:
        return bool(self._call(
            "set_nx", lambda: self._client.set(self._k(key), value, ex=ttl, nx=True),
        ))

    def compare_and_set(self, key: str, expected: str, value: str | int, ttl: int) -> bool:
        return bool(self._call(
            "compare_and_set",
            lambda: self._cas_script(keys=[self._k(key)], args=[expected, value, ttl]),
        ))

    def incr(
        self, key: str, amount: int = 1, ttl: int | None = None, sliding: bool = True,
    ) -> int:
        k = self._k(key)

        def _run() -> int:
            pipe = self._client.pipeline(transaction=True)
            if ttl and not sliding:
                pipe.set(k, 0, ex=ttl, nx=True)
            pipe.incrby(k, amount)
            if ttl and sliding:
                pipe.expire(k, ttl)
            results = pipe.execute()
            return int(results[1] if ttl and not sliding else results[0])

        return self._call("incr", _run)

    def raise_to(self, key: str, value: int, ttl: int) -> int:
        return int(self._call(
            "raise_to",
            lambda: self._raise_to_script(keys=[self._k(key)], args=[value, ttl]),
        ))

    def add_to_set(self, key: str, member: str, ttl: int) -> int:
        k = self._k(key)

        def _run() -> int:
            pipe = self._client.pipeline(transaction=True)
            pipe.sadd(k, member)
            pipe.expire(k, ttl)
            pipe.scard(k)
            return int(pipe.execute()[2])

        return self._call("add_to_set", _run)

    def add_timed(
        self,
        key: str,
        member: str,
        timestamp: float,
        ttl: int,
        prune_before: float | None = None,
    ) -> None:
        k = self._k(key)

        def _run() -> None:
            pipe = self._client.pipeline(transaction=True)
            pipe.zadd(k, {member: timestamp})
            if prune_before is not None:
                pipe.zremrangebyscore(k, "-inf", f"({prune_before}")
            pipe.expire(k, ttl)
            pipe.execute()

        self._call("add_timed", _run)

    def range_by_time(self, key: str, start: float, end: float) -> list[str]:
        return list(self._call(
            "range_by_time", lambda: self._client.zrangebyscore(self._k(key), start, end),
        ))

    def ttl(self, key: str) -> float | None:
        remaining = self._call("ttl", lambda: self._client.ttl(self._k(key)))
        return float(remaining) if remaining is not None and remaining >= 0 else None

    def delete(self, key: str) -> None:
        self._call("delete", lambda: self._client.delete(self._k(key)))

    def scan(self, pattern: str) -> list[str]:
        keys = self._call(
            "scan", lambda: list(self._client.scan_iter(match=self._k(pattern))),
        )
        return sorted(k[len(self._prefix):] for k in keys)


def _redact(url: str) -> str:
    """Hide the password part of a redis URL for logging."""
    if "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    creds, host = rest.rsplit("@", 1)
    user = creds.split(":", 1)[0]
    return f"{scheme}://{user}:****@{host}"


def create_state_store(backend: str, url: str = "", key_prefix: str = "") -> StateStore:
    """Build the configured backend ("memory" or "redis")."""
    if backend == "redis":
        return RedisStateStore.from_url(url, key_prefix=key_prefix)
    if backend == "memory":
        return MemoryStateStore()
    raise ConfigurationError(f"Unknown state store backend: {backend!r}")
