from __future__ import annotations

import threading
from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import IdentityProviderKind, Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthOrchestrator
from authcore.service.identity import (
    IdentityProvider,
    LocalIdentityProvider,
    SupabaseIdentityProvider,
)
from authcore.service.rate_limit import PRESETS, RateLimiter
from authcore.service.refresh_tokens import RefreshTokenStore
from authcore.service.revocation import RevocationRegistry
from authcore.service.sessions import SessionTracker
from authcore.service.tokens import TokenCodec
from authcore.storage.cache import KeyedCache
from authcore.storage.common import AuthStore
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_identity(settings: Settings) -> IdentityProvider:
    if settings.identity_provider == IdentityProviderKind.LOCAL:
        return LocalIdentityProvider(
            otp_code=settings.local_otp_code,
            otp_ttl_seconds=settings.otp_expires_in_seconds,
        )
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise RuntimeError(
            "SUPABASE_URL and SUPABASE_ANON_KEY are required when IDENTITY_PROVIDER=supabase"
        )
    return SupabaseIdentityProvider(
        settings.supabase_url,
        settings.supabase_anon_key,
        timeout=settings.identity_timeout_seconds,
    )


class Runtime:
    """Holds the single shared instance of every service for the process.

    Components receive their collaborators through constructors; nothing
    below this class looks up globals. ``cache_client``, ``store`` and
    ``identity`` may be injected, which is how tests swap in fakes.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache_client: Any = None,
        store: Optional[AuthStore] = None,
        identity: Optional[IdentityProvider] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            identity_provider=self.settings.identity_provider.value,
        )

        if store is not None:
            self.store = store
        elif self.settings.use_memory_store:
            self.store = MemoryStore()
        else:
            self.store = PostgresStore(
                self.settings.database_url,
                statement_timeout=self.settings.store_operation_timeout_seconds,
            )
        logger.info("runtime_store_initialized", store_type=self.store.kind)

        self.cache = KeyedCache(
            self.settings.redis_url,
            client=cache_client,
            operation_timeout=self.settings.cache_operation_timeout_seconds,
        )
        if not self.cache.enabled:
            if self.settings.require_cache:
                raise RuntimeError(
                    "Redis is required (REQUIRE_CACHE=true) but the health probe failed"
                )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                message=(
                    "Running without Redis; caching, OTP throttling and rate limits are "
                    "disabled and the token blacklist "
                    + ("denies every token." if self.settings.blacklist_fail_closed else "fails open.")
                ),
            )

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            expires_in_seconds=self.settings.access_token_ttl_minutes * 60,
        )
        self.revocation = RevocationRegistry(
            self.cache,
            decoded_ttl=self.settings.token_cache_ttl_seconds,
            blacklist_ttl=self.settings.token_blacklist_ttl_seconds,
            fail_closed=self.settings.blacklist_fail_closed,
        )
        self.refresh_tokens = RefreshTokenStore(
            self.store, ttl_days=self.settings.refresh_token_ttl_days
        )
        self.sessions = SessionTracker(
            self.store,
            self.cache,
            ttl_days=self.settings.session_ttl_days,
            cache_ttl=self.settings.session_cache_ttl_seconds,
        )
        self.identity = identity or _build_identity(self.settings)
        self.auth = AuthOrchestrator(
            self.store,
            self.cache,
            self.codec,
            self.revocation,
            self.refresh_tokens,
            self.sessions,
            self.identity,
            self.settings,
        )
        self.rate_limiters: Dict[str, RateLimiter] = {
            name: RateLimiter(self.cache, config) for name, config in PRESETS.items()
        }

        logger.info(
            "runtime_initialized",
            store_type=self.store.kind,
            cache_mode=self.cache.mode,
            blacklist_fail_closed=self.settings.blacklist_fail_closed,
        )

    async def startup(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.open()
        logger.info("runtime_started", store_type=self.store.kind)

    async def close(self) -> None:
        await self.auth.wait_for_background()
        await self.identity.close()
        await self.cache.close()
        await self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide :class:`Runtime`, creating it on first use.

    Double-checked locking keeps the fast path lock-free.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *,
    cache_client: Any = None,
    store: Optional[AuthStore] = None,
    identity: Optional[IdentityProvider] = None,
) -> Runtime:
    """Rebuild the runtime singleton from a freshly read environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, cache_client=cache_client, store=store, identity=identity)
        return runtime
