from datetime import datetime, timedelta, timezone

from tokenward.service.key_rotation import (
    KeyRotationScheduler,
    next_monthly_run,
    retention_days_by_purpose,
)
from tokenward.storage.models import KeyPurpose


class MutableClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_next_run_is_first_of_following_month():
    now = datetime(2024, 5, 17, 13, 45, tzinfo=timezone.utc)
    assert next_monthly_run(now) == datetime(2024, 6, 1, tzinfo=timezone.utc)


def test_next_run_rolls_over_year():
    now = datetime(2024, 12, 31, 23, 59, tzinfo=timezone.utc)
    assert next_monthly_run(now) == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_next_run_from_exact_trigger_moves_a_month():
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert next_monthly_run(now) == datetime(2024, 4, 1, tzinfo=timezone.utc)


def test_retention_map_follows_settings(settings):
    retention = retention_days_by_purpose(settings)
    assert retention[KeyPurpose.ACCESS] == 31
    assert retention[KeyPurpose.REFRESH] == 61
    assert retention[KeyPurpose.CONFIRMATION] == 31
    assert retention[KeyPurpose.RESET_PASSWORD] == 31


async def test_rotate_all_adds_every_purpose_and_prunes(keys, store, settings):
    old = await keys.add_key_pair(KeyPurpose.ACCESS)
    store.signing_keys[old.id].created_at = datetime.now(timezone.utc) - timedelta(days=40)
    scheduler = KeyRotationScheduler(keys, settings)

    removed = await scheduler.rotate_all()

    assert removed == {
        "access_key": 1,
        "refresh_key": 0,
        "confirmation_user_key": 0,
        "reset_password_key": 0,
    }
    for purpose in KeyPurpose:
        assert len(store.list_signing_keys(purpose)) == 1


async def test_token_signed_before_rotation_still_verifies(keys, tokens, settings):
    from tokenward.service.tokens import TokenSubject

    subject = TokenSubject(id="user-1", email="user@example.com", name="User")
    issued = await tokens.sign_access_token(subject)

    await KeyRotationScheduler(keys, settings).rotate_all()

    current = await keys.get_current_key(KeyPurpose.ACCESS)
    assert current.id != issued.kid
    result = tokens.verify(issued.token, KeyPurpose.ACCESS)
    assert result.is_valid
    assert result.payload["jti"] == issued.jti


async def test_run_if_due_waits_for_trigger(keys, store, settings):
    clock = MutableClock(datetime(2024, 5, 17, tzinfo=timezone.utc))
    scheduler = KeyRotationScheduler(keys, settings, clock=clock)

    assert await scheduler.run_if_due() is False
    assert store.list_signing_keys() == []
    assert scheduler.next_run == datetime(2024, 6, 1, tzinfo=timezone.utc)

    clock.now = datetime(2024, 6, 1, 0, 0, 5, tzinfo=timezone.utc)
    assert await scheduler.run_if_due() is True
    assert len(store.list_signing_keys()) == len(KeyPurpose)
    assert scheduler.next_run == datetime(2024, 7, 1, tzinfo=timezone.utc)


async def test_start_and_stop(keys, settings):
    clock = MutableClock(datetime(2024, 5, 17, tzinfo=timezone.utc))
    scheduler = KeyRotationScheduler(keys, settings, check_interval=60, clock=clock)

    await scheduler.start()
    await scheduler.start()  # second start is a no-op
    assert scheduler._task is not None

    await scheduler.stop()
    assert scheduler._task is None
