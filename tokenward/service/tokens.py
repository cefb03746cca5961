from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import jwt
from jwt.exceptions import PyJWTError

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.keys import KeyService
from tokenward.storage.models import KeyPurpose, User

logger = get_logger(__name__)

ALGORITHM = "RS256"
REQUIRED_CLAIMS = ["exp", "iat", "jti", "sub"]


@dataclass(frozen=True)
class TokenSubject:
    """Identity claims embedded in every token."""

    id: str
    email: str
    name: str

    @classmethod
    def from_user(cls, user: User) -> "TokenSubject":
        return cls(id=user.id, email=user.email, name=user.name)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    exp: int
    kid: str
    session_id: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken

    @property
    def session_id(self) -> str:
        return self.refresh.session_id or ""


@dataclass(frozen=True)
class VerificationResult:
    is_valid: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None


class TokenIssuer:
    """Signs and verifies RS256 tokens bound to the current purpose keys."""

    def __init__(
        self,
        keys: KeyService,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.keys = keys
        self.issuer = settings.jwt_issuer
        self.clock = clock
        self._lifetimes: Dict[KeyPurpose, int] = {
            KeyPurpose.ACCESS: settings.access_token_ttl_minutes * 60,
            KeyPurpose.REFRESH: settings.refresh_token_ttl_days * 86400,
            KeyPurpose.CONFIRMATION: settings.confirmation_token_ttl_minutes * 60,
            KeyPurpose.RESET_PASSWORD: settings.reset_password_token_ttl_minutes * 60,
        }

    def lifetime_seconds(self, purpose: KeyPurpose) -> int:
        return self._lifetimes[KeyPurpose(purpose)]

    async def _sign(
        self,
        purpose: KeyPurpose,
        subject: TokenSubject,
        *,
        session_id: Optional[str] = None,
    ) -> IssuedToken:
        key = await self.keys.get_current_key(purpose)
        issued_at = int(self.clock())
        expires_at = issued_at + self._lifetimes[purpose]
        jti = str(uuid.uuid4())
        claims: Dict[str, Any] = {
            "sub": subject.id,
            "email": subject.email,
            "name": subject.name,
            "iat": issued_at,
            "exp": expires_at,
            "jti": jti,
            "iss": self.issuer,
        }
        if session_id is not None:
            claims["session_id"] = session_id
        token = jwt.encode(
            claims, key.private_key, algorithm=ALGORITHM, headers={"kid": key.id}
        )
        return IssuedToken(
            token=str(token),
            jti=jti,
            exp=expires_at,
            kid=key.id,
            session_id=session_id,
        )

    async def sign_access_token(self, subject: TokenSubject) -> IssuedToken:
        return await self._sign(KeyPurpose.ACCESS, subject)

    async def sign_refresh_token(
        self, subject: TokenSubject, session_id: Optional[str] = None
    ) -> IssuedToken:
        """Sign a refresh token; a new session id is minted when none is given."""
        return await self._sign(
            KeyPurpose.REFRESH, subject, session_id=session_id or str(uuid.uuid4())
        )

    async def sign_confirmation_token(self, subject: TokenSubject) -> IssuedToken:
        return await self._sign(KeyPurpose.CONFIRMATION, subject)

    async def sign_reset_password_token(self, subject: TokenSubject) -> IssuedToken:
        return await self._sign(KeyPurpose.RESET_PASSWORD, subject)

    async def sign_tokens(
        self, subject: TokenSubject, session_id: Optional[str] = None
    ) -> TokenPair:
        access, refresh = await asyncio.gather(
            self.sign_access_token(subject),
            self.sign_refresh_token(subject, session_id),
        )
        return TokenPair(access=access, refresh=refresh)

    def verify(self, token: str, expected_purpose: KeyPurpose) -> VerificationResult:
        """Check kid, key purpose, signature, expiry and issuer.

        Never raises; any failure comes back as ``is_valid=False``.
        """
        try:
            header = jwt.get_unverified_header(token)
        except (PyJWTError, TypeError, ValueError):
            return VerificationResult(False, reason="malformed")

        kid = header.get("kid")
        key = self.keys.get_key_by_id(kid) if isinstance(kid, str) else None
        if key is None:
            return VerificationResult(False, reason="unknown_kid")
        if key.purpose != KeyPurpose(expected_purpose):
            logger.info(
                "token_purpose_mismatch",
                kid=kid,
                key_purpose=key.purpose.value,
                expected=KeyPurpose(expected_purpose).value,
            )
            return VerificationResult(False, reason="purpose_mismatch")

        try:
            payload = jwt.decode(
                token,
                key.public_key,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            return VerificationResult(False, reason="expired")
        except (PyJWTError, ValueError) as exc:
            return VerificationResult(False, reason=type(exc).__name__)
        return VerificationResult(True, payload=payload)

    def decode(
        self, token: str, include_header: bool = False
    ) -> Optional[Dict[str, Any]]:
        """Decode without verifying; returns None for structurally bad input."""
        try:
            payload = jwt.decode(
                token,
                options={"verify_signature": False},
                algorithms=[ALGORITHM],
            )
            if not include_header:
                return payload
            return {"header": jwt.get_unverified_header(token), "payload": payload}
        except (PyJWTError, TypeError, ValueError):
            return None
