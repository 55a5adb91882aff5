from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from authguard.config import Settings, get_settings
from authguard.logging import get_logger
from authguard.service.auth import AuthService
from authguard.service.clock import Clock
from authguard.service.notifications import EmailNotificationSender, NotificationSender
from authguard.service.rate_limit import RateLimiter
from authguard.storage.memory import MemoryStore
from authguard.storage.redis_cache import RedisCache

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


def _build_cache(settings: Settings) -> Optional[RedisCache]:
    if not settings.redis_url:
        return None
    try:
        cache = RedisCache(settings.redis_url)
        cache.verify_connection()
    except Exception as exc:
        logger.warning(
            "redis_unavailable_using_store_rate_limits",
            redis_url=_mask_url_password(settings.redis_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return None
    logger.info("redis_rate_limits_enabled", redis_url=_mask_url_password(settings.redis_url))
    return cache


def build_auth_service(
    settings: Optional[Settings] = None,
    *,
    store=None,
    notifier: Optional[NotificationSender] = None,
    clock: Optional[Clock] = None,
    cache: Optional[RedisCache] = None,
) -> AuthService:
    """Wire the authentication service and its collaborators once per process."""
    settings = settings or get_settings()
    if store is None:
        store = MemoryStore(
            mfa_encryption_key=settings.mfa_encryption_key or settings.jwt_secret
        )
    if notifier is None:
        notifier = EmailNotificationSender(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
    if cache is None:
        cache = _build_cache(settings)
    service = AuthService(
        store,
        settings,
        notifier,
        clock=clock,
        rate_limiter=RateLimiter(store, clock, cache=cache),
    )
    logger.info(
        "auth_service_initialized",
        store_type=type(store).__name__,
        rate_limit_backend="redis" if cache else "store",
    )
    return service
