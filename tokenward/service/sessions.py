"""Session records and token-id registries in the shared cache.

Layout, all under the ``auth:`` prefix:

* ``auth:session:{session_id}`` - JSON ``SessionData``, TTL = refresh expiry
* ``auth:user_sessions:{user_id}`` - set of that user's session ids
* ``auth:whitelist:{jti}`` - token ids currently valid, TTL = token expiry
* ``auth:blacklist:{jti}`` - revoked token ids, TTL = remaining token life

Multi-key writes are not transactional. Session creation, removal and the
non-atomic rotation path issue their commands concurrently and log partial
failures instead of raising; a client left with a half-written session
recovers by logging in again.

Refresh rotation is a compare-and-swap on the record's ``refresh_jti``.
The atomic path checks it inside the cache script. The concurrent path
holds a per-session ``asyncio.Lock`` around the re-read and the writes,
which only serialises rotations within one process.
"""

from __future__ import annotations

import asyncio
import json
import time
import weakref
from dataclasses import replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Set

from tokenward.logging import get_logger
from tokenward.service.tokens import IssuedToken
from tokenward.storage.models import SessionData

logger = get_logger(__name__)

KEY_PREFIX = "auth"


def session_key(session_id: str) -> str:
    return f"{KEY_PREFIX}:session:{session_id}"


def user_sessions_key(user_id: str) -> str:
    return f"{KEY_PREFIX}:user_sessions:{user_id}"


def whitelist_key(jti: str) -> str:
    return f"{KEY_PREFIX}:whitelist:{jti}"


def blacklist_key(jti: str) -> str:
    return f"{KEY_PREFIX}:blacklist:{jti}"


def ttl_until(exp: Optional[int], clock: Callable[[], float] = time.time) -> int:
    """Seconds until the absolute ``exp`` timestamp, never below 1."""
    if exp is None:
        return 1
    return max(1, int(exp - clock()))


class SessionCache(Protocol):
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def sismember(self, key: str, member: str) -> bool: ...

    async def rotate_session(
        self,
        session_key: str,
        session_value: str,
        session_ttl: int,
        *,
        delete_keys: Iterable[str],
        set_keys: Dict[str, int],
        expected_refresh_jti: Optional[str] = None,
    ) -> int: ...


class SessionStore:
    """Authoritative record of which token ids are live, per session and user."""

    def __init__(
        self,
        cache: SessionCache,
        *,
        atomic_rotation: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.atomic_rotation = atomic_rotation
        self.clock = clock
        self._rotation_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _ttl(self, exp: Optional[int]) -> int:
        return ttl_until(exp, self.clock)

    async def _best_effort(self, event: str, ops: Dict[str, Awaitable], **context) -> bool:
        """Run ``ops`` concurrently; log each failure and report overall success."""
        names = list(ops)
        results = await asyncio.gather(*ops.values(), return_exceptions=True)
        ok = True
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                ok = False
                logger.warning(
                    event,
                    step=name,
                    error=str(result),
                    error_type=type(result).__name__,
                    **context,
                )
        return ok

    # registries
    async def add_to_whitelist(self, jti: str, exp: int) -> None:
        await self.cache.set(whitelist_key(jti), "1", self._ttl(exp))

    async def add_to_blacklist(self, jti: str, exp: int) -> None:
        await self.cache.set(blacklist_key(jti), "1", self._ttl(exp))

    async def consume_token(self, jti: str, exp: int) -> bool:
        """Blacklist ``jti`` unless it already is; True only for the first caller."""
        if not jti:
            return False
        return await self.cache.set_if_absent(blacklist_key(jti), "1", self._ttl(exp))

    async def remove_from_whitelist(self, jti: str) -> None:
        await self.cache.delete(whitelist_key(jti))

    async def is_whitelisted(self, jti: str) -> bool:
        return await self.cache.exists(whitelist_key(jti))

    async def is_blacklisted(self, jti: str) -> bool:
        return await self.cache.exists(blacklist_key(jti))

    # sessions
    def _serialize(self, session: SessionData) -> str:
        return json.dumps(session.to_dict())

    def _deserialize(self, raw: Optional[str], session_id: str) -> Optional[SessionData]:
        if raw is None:
            return None
        try:
            return SessionData.from_dict(json.loads(raw))
        except (TypeError, ValueError) as exc:
            logger.warning("session_record_corrupt", session_id=session_id, error=str(exc))
            return None

    async def create_new_session(
        self,
        session: SessionData,
        refresh: IssuedToken,
        access: IssuedToken,
    ) -> SessionData:
        """Persist a new session and whitelist its first token pair."""
        record = replace(
            session,
            session_id=refresh.session_id or session.session_id,
            access_jti=access.jti,
            access_exp=access.exp,
            refresh_jti=refresh.jti,
            refresh_exp=refresh.exp,
            created_at=session.created_at or datetime.now(timezone.utc).isoformat(),
        )
        await self._best_effort(
            "session_create_failed",
            {
                "session": self.cache.set(
                    session_key(record.session_id),
                    self._serialize(record),
                    self._ttl(refresh.exp),
                ),
                "user_index": self.cache.sadd(
                    user_sessions_key(record.user_id), record.session_id
                ),
                "whitelist_access": self.add_to_whitelist(access.jti, access.exp),
                "whitelist_refresh": self.add_to_whitelist(refresh.jti, refresh.exp),
            },
            session_id=record.session_id,
            user_id=record.user_id,
        )
        logger.info(
            "session_created", session_id=record.session_id, user_id=record.user_id
        )
        return record

    async def update_session_and_add_to_whitelist(
        self,
        old: SessionData,
        refresh: IssuedToken,
        access: IssuedToken,
    ) -> Optional[SessionData]:
        """Swap the session's token pair; old ids leave the whitelist for the blacklist.

        Returns None without writing when the stored record no longer carries
        ``old.refresh_jti`` (another refresh or a logout got there first).
        Cache failures are logged and not raised: the caller still hands out
        the new tokens.
        """
        record = replace(
            old,
            access_jti=access.jti,
            access_exp=access.exp,
            refresh_jti=refresh.jti,
            refresh_exp=refresh.exp,
        )
        old_ids = [
            (jti, exp)
            for jti, exp in ((old.access_jti, old.access_exp), (old.refresh_jti, old.refresh_exp))
            if jti
        ]
        context = {"session_id": old.session_id, "user_id": old.user_id}

        if self.atomic_rotation:
            set_keys = {
                whitelist_key(access.jti): self._ttl(access.exp),
                whitelist_key(refresh.jti): self._ttl(refresh.exp),
            }
            for jti, exp in old_ids:
                set_keys[blacklist_key(jti)] = self._ttl(exp)
            try:
                changed = await self.cache.rotate_session(
                    session_key(old.session_id),
                    self._serialize(record),
                    self._ttl(refresh.exp),
                    delete_keys=[whitelist_key(jti) for jti, _ in old_ids],
                    set_keys=set_keys,
                    expected_refresh_jti=old.refresh_jti,
                )
            except Exception as exc:
                logger.warning(
                    "session_rotation_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    **context,
                )
                return record
            if not changed:
                logger.warning("session_rotation_conflict", **context)
                return None
            return record

        lock = self._rotation_locks.get(old.session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._rotation_locks[old.session_id] = lock
        async with lock:
            current = await self.get_user_session(old.session_id)
            if current is None or current.refresh_jti != old.refresh_jti:
                logger.warning("session_rotation_conflict", **context)
                return None
            ops: Dict[str, Awaitable] = {
                "session": self.cache.set(
                    session_key(old.session_id),
                    self._serialize(record),
                    self._ttl(refresh.exp),
                ),
                "whitelist_access": self.add_to_whitelist(access.jti, access.exp),
                "whitelist_refresh": self.add_to_whitelist(refresh.jti, refresh.exp),
            }
            for index, (jti, exp) in enumerate(old_ids):
                ops[f"unwhitelist_{index}"] = self.remove_from_whitelist(jti)
                ops[f"blacklist_{index}"] = self.add_to_blacklist(jti, exp)
            await self._best_effort("session_rotation_failed", ops, **context)
        return record

    async def get_user_session(self, session_id: str) -> Optional[SessionData]:
        if not session_id:
            return None
        raw = await self.cache.get(session_key(session_id))
        return self._deserialize(raw, session_id)

    async def get_all_sessions(self, user_id: str) -> List[SessionData]:
        """Every live session of ``user_id``.

        Ids whose record has expired are skipped and dropped from the user's
        set, which carries no TTL of its own.
        """
        index_key = user_sessions_key(user_id)
        session_ids = sorted(await self.cache.smembers(index_key))
        if not session_ids:
            return []
        raws = await self.cache.get_many([session_key(sid) for sid in session_ids])
        sessions = []
        missing = []
        for sid, raw in zip(session_ids, raws):
            session = self._deserialize(raw, sid)
            if session is None:
                missing.append(sid)
            else:
                sessions.append(session)
        if missing:
            await self._prune_index(index_key, missing, user_id)
        return sessions

    async def _prune_index(self, index_key: str, session_ids: List[str], user_id: str) -> None:
        # Re-check so an id whose record is still being written survives
        present = await self.cache.get_many([session_key(sid) for sid in session_ids])
        stale = [sid for sid, raw in zip(session_ids, present) if raw is None]
        if not stale:
            return
        try:
            await self.cache.srem(index_key, *stale)
        except Exception as exc:
            logger.warning(
                "session_index_prune_failed",
                user_id=user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return
        logger.debug("session_index_pruned", user_id=user_id, removed=len(stale))

    async def remove_session(self, session_id: str, user_id: Optional[str] = None) -> bool:
        """Delete a session and revoke its current token pair.

        Returns False when the record was already gone; the id is still
        dropped from ``user_id``'s set in that case.
        """
        session = await self.get_user_session(session_id)
        if session is not None and user_id and session.user_id != user_id:
            logger.warning(
                "session_owner_mismatch", session_id=session_id, user_id=user_id
            )
            return False
        owner = user_id or (session.user_id if session else None)

        ops: Dict[str, Awaitable] = {"session": self.cache.delete(session_key(session_id))}
        if owner:
            ops["user_index"] = self.cache.srem(user_sessions_key(owner), session_id)
        if session is not None:
            for name, jti, exp in (
                ("access", session.access_jti, session.access_exp),
                ("refresh", session.refresh_jti, session.refresh_exp),
            ):
                if jti:
                    ops[f"blacklist_{name}"] = self.add_to_blacklist(jti, exp)
                    ops[f"unwhitelist_{name}"] = self.remove_from_whitelist(jti)
        await self._best_effort(
            "session_remove_failed", ops, session_id=session_id, user_id=owner
        )
        if session is not None:
            logger.info("session_removed", session_id=session_id, user_id=owner)
        return session is not None

    async def remove_all_sessions(
        self, user_id: str, session_ids: Optional[Sequence[str]] = None
    ) -> int:
        """Remove ``session_ids`` (default: all) belonging to ``user_id``.

        Ids not tracked for the user are ignored. The user's set is deleted
        once it is empty. Returns the number of session records removed.
        """
        index_key = user_sessions_key(user_id)
        tracked = await self.cache.smembers(index_key)
        if session_ids is None:
            targets = sorted(tracked)
        else:
            targets = [sid for sid in dict.fromkeys(session_ids) if sid in tracked]
        removed = 0
        if targets:
            results = await asyncio.gather(
                *(self.remove_session(sid, user_id) for sid in targets)
            )
            removed = sum(1 for result in results if result)
        if not await self.cache.smembers(index_key):
            await self.cache.delete(index_key)
        logger.info(
            "sessions_removed",
            user_id=user_id,
            requested=len(targets),
            removed=removed,
        )
        return removed

    async def validate_session(self, session_id: str, user_id: str) -> bool:
        """Both the record and the user's set membership must be present."""
        if not session_id or not user_id:
            return False
        exists, member = await asyncio.gather(
            self.cache.exists(session_key(session_id)),
            self.cache.sismember(user_sessions_key(user_id), session_id),
        )
        return bool(exists and member)
