from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionward.config import get_settings, reset_settings_cache
from sessionward.logging import get_logger
from sessionward.service.accounts import AccountService
from sessionward.service.authenticator import RequestAuthenticator
from sessionward.service.email import EmailService
from sessionward.service.rate_limit import InMemoryCounterStore, RateLimiter
from sessionward.service.sessions import SessionService
from sessionward.service.tokens import RefreshTokenGenerator, TokenCodec
from sessionward.storage.memory import MemoryStore
from sessionward.storage.postgres import PostgresStore
from sessionward.storage.redis_cache import RedisCounterStore

logger = get_logger(__name__)

# Routes reachable without a bearer token
EXEMPT_PATHS = (
    "/healthz",
    "/v1/sessions/login",
    "/v1/sessions/refresh",
    "/v1/password/forgot",
    "/v1/password/reset",
    "/v1/accounts/register",
)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
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
    """Owns the store, counters and services shared by every request."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
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

        self.counters = InMemoryCounterStore()
        self.redis: RedisCounterStore | None = None
        if self.settings.use_redis_rate_limits:
            if not self.settings.redis_url:
                raise RuntimeError("USE_REDIS_RATE_LIMITS requires REDIS_URL")
            try:
                redis_store = RedisCounterStore(self.settings.redis_url)
                redis_store.verify_connection()
            except Exception as exc:
                logger.error(
                    "redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or unset USE_REDIS_RATE_LIMITS"
                ) from exc
            self.redis = redis_store
            self.counters = redis_store

        self.codec = TokenCodec(self.settings)
        self.generator = RefreshTokenGenerator(self.settings)
        self.sessions = SessionService(
            self.store, self.settings, codec=self.codec, generator=self.generator
        )
        self.authenticator = RequestAuthenticator(
            self.store, self.settings, codec=self.codec, exempt_paths=EXEMPT_PATHS
        )
        self.rate_limiter = RateLimiter(self.settings, counters=self.counters)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.accounts = AccountService(
            self.store,
            self.settings,
            self.sessions,
            email=self.email,
            generator=self.generator,
        )

        logger.info(
            "runtime_initialized",
            algorithm=self.settings.session_algorithm.value,
            redis_rate_limits=self.redis is not None,
            rate_limiting_enabled=self.settings.rate_limiting_enabled,
            email_configured=self.email.is_configured,
        )

    def close(self) -> None:
        if self.redis is not None:
            self.redis.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, building it on first use.

    Concurrent first callers serialize on ``_runtime_lock`` and only one
    of them constructs it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
