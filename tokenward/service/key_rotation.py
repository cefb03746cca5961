"""Background key rotation.

Runs inside the API process. On the first day of every month (00:00 UTC) a
new key pair is added for each purpose and keys older than the purpose's
retention window are removed.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.keys import KeyService
from tokenward.storage.models import KeyPurpose

logger = get_logger(__name__)

DEFAULT_CHECK_INTERVAL_SECONDS = 3600
MAX_BACKOFF_SECONDS = 3600

# Creation order for a rotation run
ROTATION_ORDER = (
    KeyPurpose.ACCESS,
    KeyPurpose.REFRESH,
    KeyPurpose.CONFIRMATION,
    KeyPurpose.RESET_PASSWORD,
)


def next_monthly_run(now: datetime) -> datetime:
    """Midnight UTC on the first day of the month after ``now``."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def retention_days_by_purpose(settings: Settings) -> Dict[KeyPurpose, int]:
    return {
        KeyPurpose.ACCESS: settings.access_key_retention_days,
        KeyPurpose.REFRESH: settings.refresh_key_retention_days,
        KeyPurpose.CONFIRMATION: settings.confirmation_key_retention_days,
        KeyPurpose.RESET_PASSWORD: settings.reset_password_key_retention_days,
    }


class KeyRotationScheduler:
    """Monthly create-then-retire cycle over every key purpose.

    Logins racing a rotation simply use whichever key is newest when they
    read; retention windows keep the previous key verifiable.
    """

    def __init__(
        self,
        keys: KeyService,
        settings: Settings,
        *,
        check_interval: int = DEFAULT_CHECK_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.keys = keys
        self.retention = retention_days_by_purpose(settings)
        self.check_interval = max(1, int(check_interval))
        self.clock = clock
        self.next_run: Optional[datetime] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the background rotation loop."""
        if self._running:
            logger.warning("key_rotation_already_running")
            return

        self._running = True
        self.next_run = next_monthly_run(self.clock())
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "key_rotation_started",
            next_run=self.next_run.isoformat(),
            check_interval=self.check_interval,
        )

    async def stop(self) -> None:
        """Stop the background rotation loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("key_rotation_stopped")

    async def rotate_all(self) -> Dict[str, int]:
        """Add a key for every purpose, then prune each by its retention.

        Returns the number of keys removed per purpose.
        """
        for purpose in ROTATION_ORDER:
            await self.keys.add_key_pair(purpose)
        removed: Dict[str, int] = {}
        for purpose in ROTATION_ORDER:
            removed[purpose.value] = self.keys.remove_old_keys(
                purpose, self.retention[purpose]
            )
        logger.info("key_rotation_completed", removed=removed)
        return removed

    async def run_if_due(self) -> bool:
        now = self.clock()
        if self.next_run is None:
            self.next_run = next_monthly_run(now)
        if now < self.next_run:
            return False
        await self.rotate_all()
        self.next_run = next_monthly_run(now)
        return True

    def _seconds_until_due(self) -> float:
        if self.next_run is None:
            return float(self.check_interval)
        remaining = (self.next_run - self.clock()).total_seconds()
        return max(1.0, min(float(self.check_interval), remaining))

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_if_due()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "key_rotation_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.check_interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "key_rotation_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self._seconds_until_due())
