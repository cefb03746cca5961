from __future__ import annotations

import asyncio

from tokenward.logging import get_logger
from tokenward.service.results import Ok, Result, unauthorized
from tokenward.service.sessions import SessionStore

logger = get_logger(__name__)

TOKEN_REJECTED = "unauthorized"


class TokenCache:
    """Revocation check for token ids whose signature has already passed."""

    def __init__(self, sessions: SessionStore) -> None:
        self.sessions = sessions

    async def validate_token_in_cache(self, jti: str) -> Result[bool]:
        """Reject blacklisted ids and ids missing from the whitelist."""
        if not jti:
            return unauthorized(TOKEN_REJECTED)
        blacklisted, whitelisted = await asyncio.gather(
            self.sessions.is_blacklisted(jti),
            self.sessions.is_whitelisted(jti),
        )
        if blacklisted:
            logger.info("token_rejected", jti=jti, reason="blacklisted")
            return unauthorized(TOKEN_REJECTED)
        if not whitelisted:
            logger.info("token_rejected", jti=jti, reason="not_whitelisted")
            return unauthorized(TOKEN_REJECTED)
        return Ok(True)
