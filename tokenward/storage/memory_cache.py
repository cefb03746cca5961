from __future__ import annotations

import json
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple


def _refresh_jti_of(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    try:
        return json.loads(raw).get("refresh_jti")
    except (AttributeError, ValueError):
        return None


class MemoryCache:
    """In-process stand-in for ``RedisCache`` with the same async surface.

    Entries expire lazily on access against ``clock`` (seconds since the
    epoch), which tests can replace to move time forward.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _expired(self, key: str) -> bool:
        entry = self._values.get(key)
        if entry is None:
            return True
        _, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            self._values.pop(key, None)
            return True
        return False

    def _set_locked(self, key: str, value: str, ttl_seconds: int) -> None:
        self._values[key] = (value, self.clock() + max(1, int(ttl_seconds)))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set_locked(key, value, ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Check and set under the lock; True when this call created ``key``."""
        with self._lock:
            if not self._expired(key):
                return False
            self._set_locked(key, value, ttl_seconds)
            return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            if self._expired(key):
                return None
            return self._values[key][0]

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        with self._lock:
            return [
                None if self._expired(key) else self._values[key][0] for key in keys
            ]

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if key in self._values and not self._expired(key):
                    removed += 1
                self._values.pop(key, None)
                if self._sets.pop(key, None) is not None:
                    removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return not self._expired(key) or bool(self._sets.get(key))

    async def ttl(self, key: str) -> int:
        """Mirror Redis TTL: -2 when missing, -1 without expiry."""
        with self._lock:
            if key in self._sets and self._sets[key]:
                return -1
            if self._expired(key):
                return -2
            expires_at = self._values[key][1]
            if expires_at is None:
                return -1
            return int(expires_at - self.clock())

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            bucket = self._sets.setdefault(key, set())
            before = len(bucket)
            bucket.update(members)
            return len(bucket) - before

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            bucket = self._sets.get(key)
            if not bucket:
                return 0
            removed = len(bucket.intersection(members))
            bucket.difference_update(members)
            if not bucket:
                # Redis drops empty sets
                self._sets.pop(key, None)
            return removed

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._sets.get(key, set()))

    async def sismember(self, key: str, member: str) -> bool:
        with self._lock:
            return member in self._sets.get(key, set())

    async def rotate_session(
        self,
        session_key: str,
        session_value: str,
        session_ttl: int,
        *,
        delete_keys: Iterable[str],
        set_keys: Dict[str, int],
        expected_refresh_jti: Optional[str] = None,
    ) -> int:
        """Apply a refresh rotation; 0 and no writes on a ``refresh_jti`` mismatch."""
        with self._lock:
            if expected_refresh_jti is not None:
                current = None if self._expired(session_key) else self._values[session_key][0]
                if _refresh_jti_of(current) != expected_refresh_jti:
                    return 0
            self._set_locked(session_key, session_value, session_ttl)
            deletes = [key for key in delete_keys if key]
            for key in deletes:
                self._values.pop(key, None)
            for key, ttl in set_keys.items():
                self._set_locked(key, "1", ttl)
            return 1 + len(deletes) + len(set_keys)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()
