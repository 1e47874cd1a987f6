from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Protocol


class IdempotencyStore(Protocol):
    """Tracks whether a key (event id, order hash) has already been consumed.

    Contract: if `seen(key)` is True then the key must be treated as already processed.
    """

    def seen(self, key: str) -> bool:
        ...

    def mark(self, key: str, *, ttl_seconds: int) -> bool:
        """Record `key`; return False if it was already recorded."""
        ...


@dataclass
class InMemoryIdempotencyStore:
    _seen: dict[str, float]

    def __init__(self) -> None:
        self._seen = {}
        self._lock = threading.Lock()

    def _expire(self) -> None:
        now = time.time()
        expired = [k for k, exp in self._seen.items() if exp <= now]
        for k in expired:
            self._seen.pop(k, None)

    def seen(self, key: str) -> bool:
        with self._lock:
            self._expire()
            return key in self._seen

    def mark(self, key: str, *, ttl_seconds: int) -> bool:
        with self._lock:
            self._expire()
            if key in self._seen:
                return False
            self._seen[key] = time.time() + ttl_seconds
            return True

    def forget(self, key: str) -> None:
        with self._lock:
            self._seen.pop(key, None)


class RedisIdempotencyStore:
    def __init__(self, redis_client, *, key_prefix: str):
        self._client = redis_client
        self._prefix = key_prefix.rstrip(":")

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def seen(self, key: str) -> bool:
        return bool(self._client.exists(self._key(key)))

    def mark(self, key: str, *, ttl_seconds: int) -> bool:
        # SET NX prevents concurrent duplicates from double-processing.
        return bool(self._client.set(self._key(key), "1", ex=ttl_seconds, nx=True))

    def forget(self, key: str) -> None:
        self._client.delete(self._key(key))
