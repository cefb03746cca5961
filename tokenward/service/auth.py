from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple
from urllib.parse import quote

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.email import (
    EmailConfirmationPayload,
    EmailResetPasswordPayload,
    MailSender,
)
from tokenward.service.errors import KeyMaterialError
from tokenward.service.keys import KeyService
from tokenward.service.passwords import CredentialVerifier
from tokenward.service.results import (
    Ok,
    Result,
    bad_request,
    conflict,
    fatal,
    not_found,
    unauthorized,
)
from tokenward.service.sessions import SessionStore
from tokenward.service.token_cache import TOKEN_REJECTED, TokenCache
from tokenward.service.tokens import IssuedToken, TokenIssuer, TokenSubject
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import KeyPurpose, SessionData, User, UserStatus

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"
SIGNING_UNAVAILABLE = "token signing unavailable"


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        *,
        role: str = "user",
        status: UserStatus = UserStatus.UNVERIFIED,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_active_user(self, email: str, user_id: str) -> Optional[User]: ...

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]: ...


@dataclass(frozen=True)
class ClientContext:
    """Informational client details recorded on a session."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None


@dataclass
class AuthSession:
    user: Dict[str, Any]
    access_token: IssuedToken
    refresh_token: IssuedToken
    session_id: str


@dataclass
class AuthContext:
    """A caller whose token passed signature, revocation and user checks."""

    user: User
    payload: Dict[str, Any] = field(default_factory=dict)
    jti: str = ""
    session_id: Optional[str] = None


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Login, registration, verification, refresh and logout flows.

    Every public operation returns ``Ok``/``Err``; nothing here raises for
    an expected auth failure.
    """

    def __init__(
        self,
        store: UserStore,
        keys: KeyService,
        tokens: TokenIssuer,
        sessions: SessionStore,
        token_cache: TokenCache,
        verifier: CredentialVerifier,
        settings: Settings,
        *,
        mailer: Optional[MailSender] = None,
    ) -> None:
        self.store = store
        self.keys = keys
        self.tokens = tokens
        self.sessions = sessions
        self.token_cache = token_cache
        self.verifier = verifier
        self.settings = settings
        self.mailer = mailer
        self._mail_tasks: Set[asyncio.Task] = set()

    # helpers
    async def _issue_session(
        self,
        user: User,
        client: Optional[ClientContext],
        *,
        event: str,
    ) -> Result[AuthSession]:
        client = client or ClientContext()
        try:
            pair = await self.tokens.sign_tokens(TokenSubject.from_user(user))
        except KeyMaterialError as exc:
            logger.error("token_signing_failed", user_id=user.id, error=exc.message)
            return fatal(SIGNING_UNAVAILABLE)
        session = SessionData(
            session_id=pair.session_id,
            user_id=user.id,
            email=user.email,
            ip=client.ip,
            user_agent=client.user_agent,
            os=client.os,
            browser=client.browser,
        )
        await self.sessions.create_new_session(session, pair.refresh, pair.access)
        logger.info(event, user_id=user.id, session_id=pair.session_id)
        return Ok(
            AuthSession(
                user=user.public_dict(),
                access_token=pair.access,
                refresh_token=pair.refresh,
                session_id=pair.session_id,
            )
        )

    def _link(self, path: str, token: str) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}{path}?token={quote(token)}"

    def _dispatch_mail(
        self, payload: EmailConfirmationPayload | EmailResetPasswordPayload
    ) -> None:
        """Hand a message to the mail sender without waiting on delivery."""
        if self.mailer is None:
            logger.warning("mail_sender_missing", kind=type(payload).__name__)
            return
        send: Callable[[Any], bool]
        if isinstance(payload, EmailConfirmationPayload):
            send = self.mailer.send_confirmation_email
        else:
            send = self.mailer.send_reset_password_email
        task = asyncio.create_task(asyncio.to_thread(send, payload))
        self._mail_tasks.add(task)
        task.add_done_callback(self._mail_done)

    def _mail_done(self, task: asyncio.Task) -> None:
        self._mail_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "mail_dispatch_failed", error=str(exc), error_type=type(exc).__name__
            )
        elif task.result() is False:
            logger.warning("mail_not_delivered")

    async def wait_for_mail(self) -> None:
        """Await in-flight mail hand-offs (shutdown and tests)."""
        if self._mail_tasks:
            await asyncio.gather(*list(self._mail_tasks), return_exceptions=True)

    async def _send_confirmation(self, user: User) -> Result[None]:
        try:
            issued = await self.tokens.sign_confirmation_token(TokenSubject.from_user(user))
        except KeyMaterialError as exc:
            logger.error("token_signing_failed", user_id=user.id, error=exc.message)
            return fatal(SIGNING_UNAVAILABLE)
        self._dispatch_mail(
            EmailConfirmationPayload(
                recipient=user.email,
                name=user.name,
                verify_url=self._link("/auth/verify-email", issued.token),
            )
        )
        logger.info("confirmation_email_queued", user_id=user.id)
        return Ok(None)

    def _verify_subject(
        self, token: str, purpose: KeyPurpose
    ) -> Tuple[Optional[User], Dict[str, Any]]:
        result = self.tokens.verify(token, purpose)
        if not result.is_valid:
            logger.info(
                "token_verification_failed", purpose=purpose.value, reason=result.reason
            )
            return None, {}
        payload = result.payload
        user = self.store.get_user(str(payload.get("sub", "")))
        if user is None or user.email != payload.get("email"):
            return None, payload
        return user, payload

    # operations
    async def login(
        self,
        email: str,
        password: str,
        client: Optional[ClientContext] = None,
    ) -> Result[AuthSession]:
        user = self.store.get_user_by_email(normalize_email(email))
        record = self.store.get_password_record(user.id) if user else None
        # Unknown users still pay for a hash comparison
        password_ok = await asyncio.to_thread(self.verifier.verify, record, password)
        if user is None or not password_ok or not user.is_active:
            logger.info(
                "login_failed",
                user_id=user.id if user else None,
                reason="password" if user and not password_ok else "user_state",
            )
            return unauthorized(INVALID_CREDENTIALS)
        if record and self.verifier.needs_rehash(record[0]):
            self.store.save_password(user.id, *self.verifier.hash(password))
        return await self._issue_session(user, client, event="login_succeeded")

    async def register(self, email: str, password: str, name: str) -> Result[Dict[str, Any]]:
        """Create an unverified user and send the confirmation link."""
        password_hash, algo = await asyncio.to_thread(self.verifier.hash, password)
        try:
            user = self.store.create_user(
                normalize_email(email), name.strip(), status=UserStatus.UNVERIFIED
            )
        except ConstraintViolation as exc:
            logger.info("register_conflict", field=exc.field)
            return conflict("email already registered")
        self.store.save_password(user.id, password_hash, algo)
        logger.info("user_registered", user_id=user.id)
        sent = await self._send_confirmation(user)
        if not sent.ok:
            return sent
        return Ok(user.public_dict())

    async def verify_email(
        self, token: str, client: Optional[ClientContext] = None
    ) -> Result[AuthSession]:
        user, _ = self._verify_subject(token, KeyPurpose.CONFIRMATION)
        if user is None:
            return unauthorized(TOKEN_REJECTED)
        if user.status == UserStatus.ACTIVE:
            return bad_request("already verified")
        if user.status == UserStatus.BLOCKED:
            return bad_request("user is blocked")
        user = self.store.set_user_status(user.id, UserStatus.ACTIVE) or user
        logger.info("email_verified", user_id=user.id)
        return await self._issue_session(user, client, event="login_succeeded")

    async def resend_verification_email(self, email: str) -> Result[None]:
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None or user.status == UserStatus.ACTIVE:
            return bad_request("user already verified")
        if user.status == UserStatus.BLOCKED:
            return bad_request("user is blocked")
        return await self._send_confirmation(user)

    async def authenticate_access_token(self, token: Optional[str]) -> Result[AuthContext]:
        if not token:
            return unauthorized(TOKEN_REJECTED)
        result = self.tokens.verify(token, KeyPurpose.ACCESS)
        if not result.is_valid:
            return unauthorized(TOKEN_REJECTED)
        payload = result.payload
        cached = await self.token_cache.validate_token_in_cache(payload["jti"])
        if not cached.ok:
            return cached
        user = self.store.get_active_user(str(payload.get("email", "")), str(payload["sub"]))
        if user is None:
            return unauthorized(TOKEN_REJECTED)
        return Ok(AuthContext(user=user, payload=payload, jti=payload["jti"]))

    async def authenticate_refresh_token(self, token: Optional[str]) -> Result[AuthContext]:
        if not token:
            return unauthorized(TOKEN_REJECTED)
        result = self.tokens.verify(token, KeyPurpose.REFRESH)
        if not result.is_valid:
            return unauthorized(TOKEN_REJECTED)
        payload = result.payload
        cached = await self.token_cache.validate_token_in_cache(payload["jti"])
        if not cached.ok:
            return cached
        session_id = payload.get("session_id")
        if not await self.sessions.validate_session(session_id, str(payload["sub"])):
            logger.info("refresh_session_invalid", session_id=session_id)
            return unauthorized(TOKEN_REJECTED)
        user = self.store.get_active_user(str(payload.get("email", "")), str(payload["sub"]))
        if user is None:
            return unauthorized(TOKEN_REJECTED)
        return Ok(
            AuthContext(
                user=user, payload=payload, jti=payload["jti"], session_id=session_id
            )
        )

    async def refresh(self, context: AuthContext) -> Result[AuthSession]:
        """Rotate the session's token pair, keeping its session id."""
        session = await self.sessions.get_user_session(context.session_id or "")
        if session is None or session.user_id != context.user.id:
            logger.info("refresh_session_expired", session_id=context.session_id)
            return unauthorized(TOKEN_REJECTED)
        if session.refresh_jti != context.jti:
            # Only the session's current refresh token may rotate it
            logger.warning(
                "refresh_token_superseded", session_id=session.session_id, jti=context.jti
            )
            return unauthorized(TOKEN_REJECTED)
        try:
            pair = await self.tokens.sign_tokens(
                TokenSubject.from_user(context.user), session.session_id
            )
        except KeyMaterialError as exc:
            logger.error(
                "token_signing_failed", user_id=context.user.id, error=exc.message
            )
            return fatal(SIGNING_UNAVAILABLE)
        rotated = await self.sessions.update_session_and_add_to_whitelist(
            session, pair.refresh, pair.access
        )
        if rotated is None:
            # A concurrent refresh or logout won; the pair minted here never goes live
            await asyncio.gather(
                self.sessions.add_to_blacklist(pair.access.jti, pair.access.exp),
                self.sessions.add_to_blacklist(pair.refresh.jti, pair.refresh.exp),
            )
            logger.warning(
                "refresh_rotation_lost", user_id=context.user.id, session_id=session.session_id
            )
            return unauthorized(TOKEN_REJECTED)
        logger.info(
            "session_refreshed", user_id=context.user.id, session_id=session.session_id
        )
        return Ok(
            AuthSession(
                user=context.user.public_dict(),
                access_token=pair.access,
                refresh_token=pair.refresh,
                session_id=session.session_id,
            )
        )

    async def logout(self, context: AuthContext, refresh_token: str) -> Result[None]:
        """End the session named inside the presented refresh token."""
        decoded = self.tokens.decode(refresh_token)
        session_id = (decoded or {}).get("session_id")
        if not session_id:
            return unauthorized(TOKEN_REJECTED)
        await self.sessions.remove_session(session_id, context.user.id)
        logger.info("logout", user_id=context.user.id, session_id=session_id)
        return Ok(None)

    async def logout_all(self, user_id: str) -> Result[int]:
        removed = await self.sessions.remove_all_sessions(user_id)
        return Ok(removed)

    async def logout_sessions(self, user_id: str, session_ids: Sequence[str]) -> Result[int]:
        if not session_ids:
            return bad_request("no sessions given")
        removed = await self.sessions.remove_all_sessions(user_id, list(session_ids))
        return Ok(removed)

    async def get_sessions(self, user_id: str) -> Result[List[SessionData]]:
        return Ok(await self.sessions.get_all_sessions(user_id))

    async def send_reset_password(self, email: str) -> Result[None]:
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None:
            return not_found("user not found")
        if user.status == UserStatus.BLOCKED:
            return bad_request("user is blocked")
        try:
            issued = await self.tokens.sign_reset_password_token(TokenSubject.from_user(user))
        except KeyMaterialError as exc:
            logger.error("token_signing_failed", user_id=user.id, error=exc.message)
            return fatal(SIGNING_UNAVAILABLE)
        self._dispatch_mail(
            EmailResetPasswordPayload(
                recipient=user.email,
                name=user.name,
                reset_url=self._link("/auth/reset-password", issued.token),
            )
        )
        logger.info("reset_password_email_queued", user_id=user.id)
        return Ok(None)

    async def reset_password(
        self,
        token: str,
        new_password: str,
        client: Optional[ClientContext] = None,
    ) -> Result[AuthSession]:
        """Set a new password, revoke every session, then open a fresh one.

        The reset token's id is claimed on the blacklist before any change is
        made, so of two concurrent resets with one token only the first runs.
        """
        user, payload = self._verify_subject(token, KeyPurpose.RESET_PASSWORD)
        if user is None:
            return unauthorized(TOKEN_REJECTED)
        if user.status == UserStatus.BLOCKED:
            return bad_request("user is blocked")
        jti = str(payload.get("jti", ""))
        if not await self.sessions.consume_token(jti, int(payload["exp"])):
            logger.warning("reset_token_reused", user_id=user.id)
            return unauthorized(TOKEN_REJECTED)
        password_hash, algo = await asyncio.to_thread(self.verifier.hash, new_password)
        self.store.save_password(user.id, password_hash, algo)
        if user.status == UserStatus.UNVERIFIED:
            # Following the mailed link proves ownership of the address
            user = self.store.set_user_status(user.id, UserStatus.ACTIVE) or user
        revoked = await self.sessions.remove_all_sessions(user.id)
        logger.info("password_reset", user_id=user.id, sessions_revoked=revoked)
        return await self._issue_session(user, client, event="login_succeeded")
