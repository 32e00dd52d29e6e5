from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from nestauth.config import Settings, get_settings, reset_settings_cache
from nestauth.logging import get_logger
from nestauth.service.admin_auth import AdminAuthService
from nestauth.service.email import EmailService
from nestauth.service.oauth import HttpxOAuthVerifier, OAuthVerifier
from nestauth.service.passwords import PasswordService
from nestauth.service.tokens import TokenService
from nestauth.service.user_auth import UserAuthService
from nestauth.storage.errors import StoreUnavailable
from nestauth.storage.memory import MemoryStore
from nestauth.storage.postgres import PostgresStore
from nestauth.storage.redis_cache import RedisTokenStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
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


class Runtime:
    """Builds the service graph once and holds it for the app.

    Every collaborator is passed to its consumer's constructor here; nothing
    reaches back into this object at call time.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        oauth: Optional[OAuthVerifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    persist=not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.token_store: Optional[RedisTokenStore] = None
        if self.settings.redis_url:
            try:
                token_store = RedisTokenStore(self.settings.redis_url)
                token_store.verify_connection()
                self.token_store = token_store
            except StoreUnavailable as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; unset it to keep "
                        "one-time tokens in the primary store."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
        one_time_tokens = self.token_store or self.store

        self.tokens = TokenService(self.settings, clock=clock)
        self.passwords = PasswordService(fast=self.settings.test_mode)
        self.email = EmailService.from_settings(self.settings)
        self.oauth = oauth or HttpxOAuthVerifier(timeout=self.settings.oauth_timeout_seconds)
        self.user_auth = UserAuthService(
            self.settings,
            self.tokens,
            users=self.store,
            credentials=self.store,
            sessions=self.store,
            resets=one_time_tokens,
            verifications=one_time_tokens,
            notifier=self.email,
            passwords=self.passwords,
            oauth=self.oauth,
            clock=clock,
        )
        self.admin_auth = AdminAuthService(
            self.settings,
            self.tokens,
            accounts=self.store,
            sessions=self.store,
            passwords=self.passwords,
            clock=clock,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_tokens=self.token_store is not None,
            email_configured=self.email.is_configured,
            refresh_policy=self.settings.refresh_policy.value,
        )

    def close(self) -> None:
        if self.token_store is not None:
            self.token_store.close()
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


def reset_runtime_for_tests(new_runtime: Optional[Runtime] = None) -> Runtime:
    """Replace the singleton for an isolated test; only allowed in TEST_MODE."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = new_runtime or Runtime(settings)
        return runtime
