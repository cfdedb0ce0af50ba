from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from redis.exceptions import RedisError

from tenantauth.config import Settings, get_settings
from tenantauth.logging import get_logger
from tenantauth.service.admin_mfa import AdminMfaManager
from tenantauth.service.auth import AuthService
from tenantauth.service.cookies import CookieIssuer
from tenantauth.service.credentials import CredentialVerifier
from tenantauth.service.email import EmailService
from tenantauth.service.guard import AuthGuard
from tenantauth.service.magic_link import MagicLinkOtpManager
from tenantauth.service.oauth import OAuthProviderRegistry, OAuthStateManager
from tenantauth.service.sessions import SessionService
from tenantauth.service.urls import URLHelper
from tenantauth.storage.memory import AuthStore, MemoryStore
from tenantauth.storage.redis_cache import EphemeralStore, MemoryCache, RedisCache

logger = get_logger(__name__)


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """``redis://:secret@host`` -> ``redis://:***@host`` for logging."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if not parts.password:
            return url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        netloc = f"{parts.username or ''}:***@{host}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    except ValueError:
        return "***url_parse_error***"


@dataclass
class Runtime:
    """Service instances shared by every request of one app."""

    settings: Settings
    store: AuthStore
    cache: EphemeralStore
    email: EmailService
    sessions: SessionService
    cookies: CookieIssuer
    guard: AuthGuard
    admin_mfa: AdminMfaManager
    oauth_states: OAuthStateManager
    oauth_providers: OAuthProviderRegistry
    auth: AuthService


def _build_cache(settings: Settings) -> EphemeralStore:
    if settings.test_mode or settings.use_memory_store:
        return MemoryCache()
    cache = RedisCache(settings.redis_url)
    try:
        cache.verify_connection()
    except (RedisError, OSError) as exc:
        if not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for challenges, one-time codes and OAuth state; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from exc
        logger.warning(
            "redis_disabled_fallback",
            redis_url=mask_url_password(settings.redis_url),
            error=str(exc),
            mode="ALLOW_REDIS_FALLBACK_DEV",
        )
        return MemoryCache()
    return cache


def build_runtime(
    settings: Optional[Settings] = None,
    *,
    store: Optional[AuthStore] = None,
    cache: Optional[EphemeralStore] = None,
    email: Optional[EmailService] = None,
) -> Runtime:
    """Wire every service explicitly; callers may inject any of the backends."""
    settings = settings or get_settings()
    store = store if store is not None else MemoryStore()
    cache = cache if cache is not None else _build_cache(settings)
    if email is None:
        email = EmailService(
            smtp_host=None if settings.test_mode else settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    sessions = SessionService(store, settings)
    cookies = CookieIssuer(settings, sessions)
    guard = AuthGuard(settings, store, sessions, cookies)
    admin_mfa = AdminMfaManager(
        cache,
        store,
        email,
        base_url=settings.app_base_url,
        challenge_ttl=settings.admin_mfa_challenge_ttl_seconds,
        step_up_ttl=settings.admin_step_up_ttl_seconds,
        trusted_device_ttl=settings.admin_trusted_device_ttl_seconds,
    )
    oauth_states = OAuthStateManager(cache, ttl_seconds=settings.oauth_state_ttl_seconds)
    oauth_providers = OAuthProviderRegistry.from_settings(settings)
    auth = AuthService(
        settings,
        store,
        sessions=sessions,
        credentials=CredentialVerifier(store),
        cookies=cookies,
        magic_links=MagicLinkOtpManager(cache, ttl_seconds=settings.magic_link_ttl_seconds),
        admin_mfa=admin_mfa,
        oauth_states=oauth_states,
        oauth_providers=oauth_providers,
        urls=URLHelper(settings.app_base_url, settings.origins),
        email=email,
    )
    logger.info(
        "runtime_initialized",
        cache_type=type(cache).__name__,
        oauth_providers=oauth_providers.names,
        csrf_strict_sign_out=settings.csrf_strict_sign_out,
    )
    return Runtime(
        settings=settings,
        store=store,
        cache=cache,
        email=email,
        sessions=sessions,
        cookies=cookies,
        guard=guard,
        admin_mfa=admin_mfa,
        oauth_states=oauth_states,
        oauth_providers=oauth_providers,
        auth=auth,
    )
