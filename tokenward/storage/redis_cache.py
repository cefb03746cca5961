from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Set

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin async Redis wrapper exposing the session-cache primitives.

    Single-key commands are atomic on the server. Multi-key updates are
    either issued independently by the caller or, for refresh rotation,
    run through ``rotate_session`` as one Lua script.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Session rewrite, whitelist/blacklist moves in one server-side step.
    # KEYS[1] session key, KEYS[2..n_del+1] deleted, rest set to "1" with TTL.
    # ARGV[1] session json, ARGV[2] session ttl, ARGV[3] n_del,
    # ARGV[4] expected refresh jti ('' skips the check), ARGV[5..] ttls.
    # Returns 0 without writing when the stored refresh jti differs.
    _ROTATE_SESSION_SCRIPT = """
local n_del = tonumber(ARGV[3])
if ARGV[4] ~= '' then
  local current = redis.call('GET', KEYS[1])
  if not current then
    return 0
  end
  local ok, record = pcall(cjson.decode, current)
  if not ok or type(record) ~= 'table' or record['refresh_jti'] ~= ARGV[4] then
    return 0
  end
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', tonumber(ARGV[2]))
for i = 2, n_del + 1 do
  redis.call('DEL', KEYS[i])
end
for i = n_del + 2, #KEYS do
  redis.call('SET', KEYS[i], '1', 'EX', tonumber(ARGV[i + 3 - n_del]))
end
return #KEYS
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rotate_session = self.client.register_script(self._ROTATE_SESSION_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async pool to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """SET NX with expiry; True when this call created ``key``."""
        acquired = await self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True)
        return bool(acquired)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        """Pipelined GET fan-out; result order matches ``keys``."""
        if not keys:
            return []
        pipe = self.client.pipeline(transaction=False)
        for key in keys:
            pipe.get(key)
        return list(await pipe.execute())

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self.client.sadd(key, *members))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self.client.srem(key, *members))

    async def smembers(self, key: str) -> Set[str]:
        return set(await self.client.smembers(key))

    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self.client.sismember(key, member))

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
        """Rewrite a session record and move registry entries atomically.

        With ``expected_refresh_jti`` the rewrite only happens while the stored
        record still carries that refresh id; otherwise nothing is written and
        0 is returned. All keys must hash to the same slot on a cluster.
        """
        deletes = [key for key in delete_keys if key]
        keys = [session_key, *deletes, *set_keys.keys()]
        args = [
            session_value,
            max(1, int(session_ttl)),
            len(deletes),
            expected_refresh_jti or "",
            *(max(1, int(ttl)) for ttl in set_keys.values()),
        ]
        return int(await self._rotate_session(keys=keys, args=args))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
