from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tokenward.config import Settings, get_settings, reset_settings_cache
from tokenward.logging import get_logger
from tokenward.service.auth import AuthService
from tokenward.service.crypto import MasterKeyCipher
from tokenward.service.email import EmailService, MailSender
from tokenward.service.extractors import CredentialExtractor, build_extractor
from tokenward.service.key_rotation import KeyRotationScheduler
from tokenward.service.keys import KeyService
from tokenward.service.passwords import CredentialVerifier
from tokenward.service.sessions import SessionStore
from tokenward.service.token_cache import TokenCache
from tokenward.service.tokens import TokenIssuer
from tokenward.storage.memory import MemoryStore
from tokenward.storage.memory_cache import MemoryCache
from tokenward.storage.postgres import PostgresStore
from tokenward.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the wired service graph for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        mailer: Optional[MailSender] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.memory_store_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions and token registries; start Redis or "
                    "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions live in "
                    "this process only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        # Fails fast on a missing master key
        self.cipher = MasterKeyCipher(self.settings.master_key)
        self.keys = KeyService(self.store, self.cipher)
        self.tokens = TokenIssuer(self.keys, self.settings)
        self.sessions = SessionStore(
            self.cache, atomic_rotation=self.settings.atomic_session_rotation
        )
        self.token_cache = TokenCache(self.sessions)
        self.verifier = CredentialVerifier()
        self.mailer: MailSender = mailer or EmailService.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.keys,
            self.tokens,
            self.sessions,
            self.token_cache,
            self.verifier,
            self.settings,
            mailer=self.mailer,
        )
        self.rotation = KeyRotationScheduler(
            self.keys,
            self.settings,
            check_interval=self.settings.key_rotation_check_interval_seconds,
        )
        self.access_extractor: CredentialExtractor = build_extractor(
            self.settings.access_token_source,
            cookie_name=self.settings.refresh_cookie_name,
        )
        self.refresh_extractor: CredentialExtractor = build_extractor(
            self.settings.refresh_token_source,
            cookie_name=self.settings.refresh_cookie_name,
        )
        logger.info(
            "runtime_init_completed",
            cache_type=type(self.cache).__name__,
            atomic_session_rotation=self.settings.atomic_session_rotation,
        )

    async def close(self) -> None:
        await self.rotation.stop()
        await self.auth.wait_for_mail()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(mailer: Optional[MailSender] = None) -> Runtime:
    """Rebuild the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, mailer=mailer)
        return runtime
