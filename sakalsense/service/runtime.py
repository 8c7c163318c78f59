from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from fastapi import Request

from sakalsense.config import Settings, get_settings
from sakalsense.logging import get_logger
from sakalsense.service.admin_requests import AdminRequestService
from sakalsense.service.auth import AuthService
from sakalsense.service.email import EmailService, MailLog
from sakalsense.service.notifications import NotificationQueue, NotificationWorker
from sakalsense.service.passwords import Passwords
from sakalsense.service.rate_limit import RateLimiter
from sakalsense.service.sessions import SessionManager
from sakalsense.service.tokens import TokenService
from sakalsense.storage.memory import MemoryStore
from sakalsense.storage.postgres import PostgresStore
from sakalsense.storage.redis_cache import CacheStore, MemoryCache, RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_cache(settings: Settings) -> CacheStore:
    redis_error: Exception | None = None
    if settings.redis_url:
        cache = RedisCache(settings.redis_url)
        try:
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for sessions, rate limits and password reset tokens; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; sessions and rate limits "
            "are in-memory and per-process only."
        ),
        mode=fallback_mode,
    )
    return MemoryCache()


class Runtime:
    """Holds the service instances for one FastAPI app.

    Built once in the app lifespan and stored on ``app.state.runtime``.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = _build_cache(self.settings)

        self.tokens = TokenService(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            ttl_seconds=self.settings.session_ttl_seconds,
        )
        self.sessions = SessionManager(self.cache, ttl_seconds=self.settings.session_ttl_seconds)
        self.rate_limiter = RateLimiter(self.cache, prefix=self.settings.rate_limit_prefix)
        self.passwords = Passwords()
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            reply_to=self.settings.email_reply_to,
            base_url=self.settings.app_base_url,
        )
        self.mail_log = MailLog(self.cache)
        self.notifications = NotificationQueue(self.settings.notification_queue_size)
        self.notification_worker = NotificationWorker(
            self.notifications,
            self.email,
            self.mail_log,
            max_attempts=self.settings.email_max_attempts,
            initial_delay=self.settings.email_initial_delay_seconds,
            backoff_multiplier=self.settings.email_backoff_multiplier,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            sessions=self.sessions,
            tokens=self.tokens,
            passwords=self.passwords,
            email=self.email,
            notifications=self.notifications,
        )
        self.admin_requests = AdminRequestService(
            self.store,
            passwords=self.passwords,
            email=self.email,
            notifications=self.notifications,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, RedisCache),
            email_configured=self.email.is_configured,
        )

    async def start(self) -> None:
        await self.notification_worker.start()

    async def close(self) -> None:
        await self.notification_worker.stop()
        await self.auth.drain_background()
        await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency resolving the runtime attached by the lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("runtime not initialised; is the app lifespan running?")
    return runtime
