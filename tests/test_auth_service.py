"""Scenario tests for the authentication service.

Tests for:
- Login and uniform credential failures
- Registration, email verification, and resend rules
- Refresh rotation, replay of superseded refresh tokens, racing refreshes
- Logout of one, some, and all sessions
- Password reset (single use under concurrency, session revocation)
- Fatal key material failures
"""

import asyncio

import pytest

from conftest import TEST_PASSWORD, RecordingMailer, token_from_url
from tokenward.service import auth as auth_module
from tokenward.service.auth import AuthService, ClientContext
from tokenward.service.crypto import MasterKeyCipher
from tokenward.service.results import ErrorKind
from tokenward.storage.models import KeyPurpose, UserStatus

NEW_PASSWORD = "NewPassword456!"


@pytest.fixture
def client_ctx():
    return ClientContext(ip="203.0.113.9", user_agent="pytest", os="Linux", browser="Chromium")


class TestLogin:
    async def test_login_creates_matching_session(self, auth, make_user, sessions, tokens, client_ctx):
        """Refresh token session id and stored token ids match the issued tokens."""
        user = make_user()

        result = await auth.login("user@example.com", TEST_PASSWORD, client_ctx)

        assert result.ok
        login = result.value
        refresh_payload = tokens.decode(login.refresh_token.token)
        assert refresh_payload["session_id"] == login.session_id
        record = await sessions.get_user_session(login.session_id)
        assert record.user_id == user.id
        assert record.access_jti == login.access_token.jti
        assert record.refresh_jti == login.refresh_token.jti
        assert record.ip == "203.0.113.9"
        assert record.browser == "Chromium"

    async def test_login_payload_has_no_password(self, auth, make_user):
        make_user()
        result = await auth.login("user@example.com", TEST_PASSWORD)
        assert set(result.value.user) == {"id", "email", "name", "role", "status", "created_at"}

    async def test_login_email_is_case_insensitive(self, auth, make_user):
        make_user()
        assert (await auth.login("  User@Example.COM ", TEST_PASSWORD)).ok

    @pytest.mark.parametrize(
        "email,password,status",
        [
            ("user@example.com", "wrong-password", UserStatus.ACTIVE),
            ("nobody@example.com", TEST_PASSWORD, UserStatus.ACTIVE),
            ("user@example.com", TEST_PASSWORD, UserStatus.UNVERIFIED),
            ("user@example.com", TEST_PASSWORD, UserStatus.BLOCKED),
        ],
    )
    async def test_failures_are_uniform(self, auth, make_user, email, password, status):
        make_user(status=status)

        result = await auth.login(email, password)

        assert not result.ok
        assert result.kind == ErrorKind.UNAUTHORIZED
        assert result.detail == "invalid credentials"
        assert result.context == {}


class TestRegistration:
    async def test_register_then_verify_twice(self, auth, mailer, sessions, store):
        """Verification activates and logs in; a second verification is rejected."""
        registered = await auth.register("a@x.com", "Passw0rd!!", "Name")
        assert registered.ok
        assert registered.value["status"] == "unverified"

        await auth.wait_for_mail()
        assert len(mailer.confirmations) == 1
        payload = mailer.confirmations[0]
        assert payload.recipient == "a@x.com"
        assert payload.name == "Name"
        assert payload.verify_url.startswith("https://app.example.com/auth/verify-email?token=")
        token = token_from_url(payload.verify_url)

        verified = await auth.verify_email(token)
        assert verified.ok
        assert verified.value.user["status"] == "active"
        assert await sessions.validate_session(
            verified.value.session_id, verified.value.user["id"]
        )

        again = await auth.verify_email(token)
        assert not again.ok
        assert again.kind == ErrorKind.BAD_REQUEST
        assert again.detail == "already verified"

    async def test_unverified_user_cannot_login(self, auth):
        await auth.register("a@x.com", "Passw0rd!!", "Name")
        result = await auth.login("a@x.com", "Passw0rd!!")
        assert result.kind == ErrorKind.UNAUTHORIZED

    async def test_duplicate_email_conflicts(self, auth, make_user):
        make_user("taken@example.com")
        result = await auth.register("taken@example.com", "Passw0rd!!", "Dup")
        assert result.kind == ErrorKind.CONFLICT

    async def test_verify_rejects_wrong_purpose_token(self, auth, make_user):
        make_user()
        login = (await auth.login("user@example.com", TEST_PASSWORD)).value
        result = await auth.verify_email(login.access_token.token)
        assert result.kind == ErrorKind.UNAUTHORIZED

    async def test_verify_rejects_blocked_user(self, auth, mailer, store):
        registered = await auth.register("a@x.com", "Passw0rd!!", "Name")
        await auth.wait_for_mail()
        store.set_user_status(registered.value["id"], UserStatus.BLOCKED)

        result = await auth.verify_email(token_from_url(mailer.confirmations[0].verify_url))
        assert result.kind == ErrorKind.BAD_REQUEST

    async def test_mail_failure_does_not_fail_registration(
        self, store, keys, tokens, sessions, token_cache, verifier, settings
    ):
        failing = RecordingMailer(fail=True)
        service = AuthService(
            store, keys, tokens, sessions, token_cache, verifier, settings, mailer=failing
        )

        result = await service.register("a@x.com", "Passw0rd!!", "Name")
        await service.wait_for_mail()

        assert result.ok
        assert len(failing.confirmations) == 1


class TestResendVerification:
    async def test_resend_for_unverified_user(self, auth, mailer, make_user):
        make_user(status=UserStatus.UNVERIFIED)
        assert (await auth.resend_verification_email("user@example.com")).ok
        await auth.wait_for_mail()
        assert len(mailer.confirmations) == 1

    @pytest.mark.parametrize(
        "status,detail",
        [
            (UserStatus.ACTIVE, "user already verified"),
            (UserStatus.BLOCKED, "user is blocked"),
        ],
    )
    async def test_resend_rejected(self, auth, make_user, status, detail):
        make_user(status=status)
        result = await auth.resend_verification_email("user@example.com")
        assert result.kind == ErrorKind.BAD_REQUEST
        assert result.detail == detail

    async def test_resend_unknown_user(self, auth):
        result = await auth.resend_verification_email("ghost@example.com")
        assert result.kind == ErrorKind.BAD_REQUEST


class TestRefresh:
    async def test_login_refresh_logout_scenario(self, auth, make_user, sessions):
        """Logout after a refresh revokes the refreshed tokens; the original stays dead."""
        make_user()
        login = (await auth.login("user@example.com", TEST_PASSWORD)).value

        ctx = (await auth.authenticate_refresh_token(login.refresh_token.token)).value
        refreshed = await auth.refresh(ctx)
        assert refreshed.ok
        rotated = refreshed.value
        assert rotated.session_id == login.session_id
        assert rotated.refresh_token.jti != login.refresh_token.jti

        assert await sessions.is_blacklisted(login.access_token.jti)
        assert await sessions.is_blacklisted(login.refresh_token.jti)
        assert await sessions.is_whitelisted(rotated.refresh_token.jti)

        replay = await auth.authenticate_refresh_token(login.refresh_token.token)
        assert replay.kind == ErrorKind.UNAUTHORIZED

        ctx2 = (await auth.authenticate_refresh_token(rotated.refresh_token.token)).value
        assert (await auth.logout(ctx2, rotated.refresh_token.token)).ok

        assert await sessions.is_blacklisted(rotated.access_token.jti)
        assert await sessions.is_blacklisted(rotated.refresh_token.jti)
        assert await sessions.get_user_session(login.session_id) is None
        again = await auth.authenticate_refresh_token(login.refresh_token.token)
        assert again.kind == ErrorKind.UNAUTHORIZED

    @pytest.mark.parametrize("atomic", [True, False])
    async def test_simultaneous_refreshes_rotate_once(self, auth, make_user, sessions, atomic):
        sessions.atomic_rotation = atomic
        user = make_user()
        login = (await auth.login("user@example.com", TEST_PASSWORD)).value
        ctx = (await auth.authenticate_refresh_token(login.refresh_token.token)).value

        results = await asyncio.gather(auth.refresh(ctx), auth.refresh(ctx))

        winners = [r for r in results if r.ok]
        losers = [r for r in results if not r.ok]
        assert len(winners) == 1
        assert losers[0].kind == ErrorKind.UNAUTHORIZED
        winner = winners[0].value
        stored = await sessions.get_user_session(login.session_id)
        assert stored.access_jti == winner.access_token.jti
        assert stored.refresh_jti == winner.refresh_token.jti
        assert [s.session_id for s in (await auth.get_sessions(user.id)).value] == [
            login.session_id
        ]
        assert (await auth.authenticate_access_token(winner.access_token.token)).ok
        assert not (await auth.authenticate_access_token(login.access_token.token)).ok

    async def test_refresh_rejects_missing_session(self, auth, make_user, sessions):
        user = make_user()
        login = (await auth.login("user@example.com", TEST_PASSWORD)).value
        ctx = (await auth.authenticate_refresh_token(login.refresh_token.token)).value
        await sessions.remove_session(login.session_id, user.id)

        assert (await auth.refresh(ctx)).kind == ErrorKind.UNAUTHORIZED

    async def test_refresh_token_is_not_an_access_token(self, auth, make_user):
        make_user()
        login = (await auth.login("user@example.com", TEST_PASSWORD)).value
        assert not (await auth.authenticate_access_token(login.refresh_token.token)).ok
        assert not (await auth.authenticate_refresh_token(login.access_token.token)).ok

    async def test_logout_rejects_token_without_session(self, auth, make_user):
        make_user()
        login = (await auth.login("user@example.com", TEST_PASSWORD)).value
        ctx = (await auth.authenticate_access_token(login.access_token.token)).value
        result = await auth.logout(ctx, login.access_token.token)
        assert result.kind == ErrorKind.UNAUTHORIZED


class TestAccessAuthentication:
    async def test_valid_access_token(self, auth, make_user):
        user = make_user()
        login = (await auth.login("user@example.com", TEST_PASSWORD)).value

        result = await auth.authenticate_access_token(login.access_token.token)

        assert result.ok
        assert result.value.user.id == user.id
        assert result.value.jti == login.access_token.jti

    async def test_missing_or_garbage_token(self, auth):
        assert (await auth.authenticate_access_token(None)).kind == ErrorKind.UNAUTHORIZED
        assert (await auth.authenticate_access_token("garbage")).kind == ErrorKind.UNAUTHORIZED

    async def test_blocked_user_loses_access(self, auth, make_user, store):
        user = make_user()
        login = (await auth.login("user@example.com", TEST_PASSWORD)).value
        store.set_user_status(user.id, UserStatus.BLOCKED)
        assert not (await auth.authenticate_access_token(login.access_token.token)).ok


class TestSessionManagement:
    async def test_get_sessions_lists_every_login(self, auth, make_user, client_ctx):
        user = make_user()
        first = (await auth.login("user@example.com", TEST_PASSWORD, client_ctx)).value
        second = (await auth.login("user@example.com", TEST_PASSWORD)).value

        listed = (await auth.get_sessions(user.id)).value

        assert {s.session_id for s in listed} == {first.session_id, second.session_id}

    async def test_logout_sessions_subset(self, auth, make_user):
        user = make_user()
        first = (await auth.login("user@example.com", TEST_PASSWORD)).value
        second = (await auth.login("user@example.com", TEST_PASSWORD)).value

        assert (await auth.logout_sessions(user.id, [first.session_id])).value == 1

        remaining = (await auth.get_sessions(user.id)).value
        assert [s.session_id for s in remaining] == [second.session_id]

    async def test_logout_sessions_requires_ids(self, auth, make_user):
        user = make_user()
        assert (await auth.logout_sessions(user.id, [])).kind == ErrorKind.BAD_REQUEST

    async def test_logout_all_revokes_access(self, auth, make_user):
        user = make_user()
        login = (await auth.login("user@example.com", TEST_PASSWORD)).value
        await auth.login("user@example.com", TEST_PASSWORD)

        assert (await auth.logout_all(user.id)).value == 2
        assert (await auth.logout_all(user.id)).value == 0
        assert not (await auth.authenticate_access_token(login.access_token.token)).ok


class TestPasswordReset:
    async def _reset_token(self, auth, mailer):
        assert (await auth.send_reset_password("user@example.com")).ok
        await auth.wait_for_mail()
        url = mailer.resets[-1].reset_url
        assert url.startswith("https://app.example.com/auth/reset-password?token=")
        return token_from_url(url)

    async def test_reset_revokes_sessions_and_is_single_use(self, auth, make_user, mailer, sessions):
        user = make_user()
        before = (await auth.login("user@example.com", TEST_PASSWORD)).value
        token = await self._reset_token(auth, mailer)

        reset = await auth.reset_password(token, NEW_PASSWORD)

        assert reset.ok
        assert not await sessions.validate_session(before.session_id, user.id)
        assert await sessions.validate_session(reset.value.session_id, user.id)
        assert not (await auth.login("user@example.com", TEST_PASSWORD)).ok
        assert (await auth.login("user@example.com", NEW_PASSWORD)).ok

        reused = await auth.reset_password(token, "AnotherPass789!")
        assert reused.kind == ErrorKind.UNAUTHORIZED

    async def test_simultaneous_resets_consume_token_once(self, auth, make_user, mailer, sessions):
        user = make_user()
        token = await self._reset_token(auth, mailer)
        passwords = ["FirstNewPass1!", "SecondNewPass2!"]

        results = await asyncio.gather(
            *(auth.reset_password(token, password) for password in passwords)
        )

        assert [r.ok for r in results].count(True) == 1
        winner = next(p for p, r in zip(passwords, results) if r.ok)
        loser = next(r for r in results if not r.ok)
        assert loser.kind == ErrorKind.UNAUTHORIZED
        assert (await auth.login("user@example.com", winner)).ok
        assert len((await auth.get_sessions(user.id)).value) == 2

    async def test_reused_reset_token_is_logged(self, auth, make_user, mailer, monkeypatch):
        events = []

        class _Recorder:
            def __getattr__(self, level):
                return lambda event, **kw: events.append((level, event))

        make_user()
        token = await self._reset_token(auth, mailer)
        assert (await auth.reset_password(token, NEW_PASSWORD)).ok
        monkeypatch.setattr(auth_module, "logger", _Recorder())

        assert not (await auth.reset_password(token, "AnotherPass789!")).ok

        assert ("warning", "reset_token_reused") in events

    async def test_reset_rejected_for_blocked_user(self, auth, make_user, mailer, store):
        user = make_user()
        token = await self._reset_token(auth, mailer)
        store.set_user_status(user.id, UserStatus.BLOCKED)

        result = await auth.reset_password(token, NEW_PASSWORD)

        assert result.kind == ErrorKind.BAD_REQUEST

    async def test_reset_activates_unverified_user(self, auth, make_user, mailer, store):
        user = make_user(status=UserStatus.UNVERIFIED)
        token = await self._reset_token(auth, mailer)

        assert (await auth.reset_password(token, NEW_PASSWORD)).ok
        assert store.get_user(user.id).status == UserStatus.ACTIVE

    async def test_send_reset_unknown_user(self, auth):
        result = await auth.send_reset_password("ghost@example.com")
        assert result.kind == ErrorKind.NOT_FOUND

    async def test_send_reset_blocked_user(self, auth, make_user):
        make_user(status=UserStatus.BLOCKED)
        result = await auth.send_reset_password("user@example.com")
        assert result.kind == ErrorKind.BAD_REQUEST

    async def test_reset_rejects_confirmation_token(self, auth, mailer):
        await auth.register("a@x.com", "Passw0rd!!", "Name")
        await auth.wait_for_mail()
        token = token_from_url(mailer.confirmations[0].verify_url)

        result = await auth.reset_password(token, NEW_PASSWORD)
        assert result.kind == ErrorKind.UNAUTHORIZED


class TestFatal:
    async def test_undecryptable_keys_surface_as_fatal(self, auth, make_user, keys):
        make_user()
        await keys.get_current_key(KeyPurpose.ACCESS)
        await keys.get_current_key(KeyPurpose.REFRESH)
        keys.cipher = MasterKeyCipher("rotated-away-master-key")

        result = await auth.login("user@example.com", TEST_PASSWORD)

        assert not result.ok
        assert result.kind == ErrorKind.FATAL
        assert result.to_exception().status_code == 500
