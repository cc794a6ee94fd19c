from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Dict, Optional, Set, TypeVar

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    AuthenticationError,
    InvalidRefreshTokenError,
    NotFoundError,
    OtpResendTooSoonError,
    RateLimitedError,
    StoreUnavailableError,
    TokenExpiredError,
    TokenRevokedError,
    UserInactiveError,
    UserNotRegisteredError,
    UserSuspendedError,
    ValidationError,
)
from authcore.service.identity import IdentityProvider
from authcore.service.rate_limit import fixed_window_hit
from authcore.service.refresh_tokens import RefreshTokenStore
from authcore.service.revocation import RevocationRegistry
from authcore.service.roles import is_known_role
from authcore.service.sessions import SessionTracker
from authcore.service.tokens import TokenCodec, token_hash
from authcore.storage.cache import KeyedCache
from authcore.storage.cache_keys import CacheKeys
from authcore.storage.common import AuthStore, UnitOfWork
from authcore.storage.models import IdentityProfile, RefreshToken, User, utcnow

logger = get_logger(__name__)

BEARER_PREFIX = "bearer "

T = TypeVar("T")


@dataclass
class OtpDispatch:
    phone: str
    expires_in: int


@dataclass
class AuthResult:
    """Credentials handed to a client after login or refresh."""

    user: User
    token: str
    refresh_token: str
    expires_in: int


@dataclass
class AuthContext:
    user_id: str
    role: str
    token: str
    token_hash: str
    phone: Optional[str] = None
    email: Optional[str] = None
    external_id: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LogoutResult:
    sessions_revoked: int
    refresh_tokens_revoked: int
    blacklisted: bool


class AuthOrchestrator:
    """Phone OTP and OAuth login, refresh rotation and logout.

    Durable writes (registration, rotation, logout) each run in one store
    unit of work bounded by ``store_operation_timeout_seconds`` and fail the
    call when the store fails or stalls. Cache writes are
    best effort: user records are populated by background tasks whose
    failures are logged and never reach the caller.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: KeyedCache,
        codec: TokenCodec,
        revocation: RevocationRegistry,
        refresh_tokens: RefreshTokenStore,
        sessions: SessionTracker,
        identity: IdentityProvider,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self.revocation = revocation
        self.refresh_tokens = refresh_tokens
        self.sessions = sessions
        self.identity = identity
        self.settings = settings
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------
    async def _count_otp_send(self, phone: str) -> None:
        count, seconds_left = await fixed_window_hit(
            self.cache, CacheKeys.otp_attempts(phone), self.settings.otp_send_window_seconds
        )
        if count is None:
            logger.warning("otp_rate_limit_unavailable", phone=phone)
            return
        if count > self.settings.otp_max_sends:
            logger.warning("otp_rate_limit_exceeded", phone=phone, attempts=count)
            raise RateLimitedError(
                "Too many OTP requests. Please try again later.",
                retry_after=seconds_left,
                detail={"limit": self.settings.otp_max_sends},
            )

    async def _mark_otp_sent(self, phone: str) -> None:
        await self.cache.set(
            CacheKeys.otp_last_sent(phone),
            {"sent_at": utcnow().isoformat()},
            self.settings.otp_resend_cooldown_seconds,
        )

    async def send_otp(self, phone: str) -> OtpDispatch:
        await self._count_otp_send(phone)
        await self.identity.send_otp(phone)
        await self._mark_otp_sent(phone)
        logger.info("otp_sent", phone=phone)
        return OtpDispatch(phone=phone, expires_in=self.settings.otp_expires_in_seconds)

    async def resend_otp(self, phone: str) -> OtpDispatch:
        marker_key = CacheKeys.otp_last_sent(phone)
        if await self.cache.get(marker_key) is not None:
            remaining = await self.cache.ttl(marker_key)
            retry_after = remaining if remaining > 0 else self.settings.otp_resend_cooldown_seconds
            raise OtpResendTooSoonError(
                "Please wait before requesting another OTP.", retry_after=retry_after
            )
        await self._count_otp_send(phone)
        await self.identity.resend_otp(phone)
        await self._mark_otp_sent(phone)
        logger.info("otp_resent", phone=phone)
        return OtpDispatch(phone=phone, expires_in=self.settings.otp_expires_in_seconds)

    async def verify_otp_and_login(self, phone: str, code: str) -> AuthResult:
        profile = await self.identity.verify_otp(phone, code)
        user = await self._within_deadline("phone_login", self._upsert_phone_user(phone, profile))
        self._ensure_active(user)
        return await self._issue(user)

    async def _upsert_phone_user(self, phone: str, profile: IdentityProfile) -> User:
        now = utcnow()
        async with self.store.unit_of_work() as uow:
            user = await self.store.get_user_by_phone(phone, uow=uow)
            if user is None:
                return await self._register(phone, profile, uow)
            updates: Dict[str, Any] = {"last_login_at": now}
            if profile.external_id and user.external_id != profile.external_id:
                updates["external_id"] = profile.external_id
            if user.phone_verified_at is None:
                updates["phone_verified_at"] = now
            return await self.store.update_user(user.id, updates, uow=uow) or user

    async def _register(self, phone: str, profile: IdentityProfile, uow: UnitOfWork) -> User:
        """Create the user row and its role assignment in the caller's unit of work."""
        now = utcnow()
        user = User(
            id=str(uuid.uuid4()),
            phone=phone,
            email=profile.email,
            external_id=profile.external_id,
            first_name=profile.first_name,
            last_name=profile.last_name,
            avatar_url=profile.avatar_url,
            role=self.settings.default_role,
            phone_verified_at=now,
            last_login_at=now,
        )
        created = await self.store.create_user(user, uow=uow)
        await self.store.assign_role(created.id, self.settings.default_role, uow=uow)
        logger.info("user_registered", user_id=created.id, role=self.settings.default_role)
        return replace(created, role=self.settings.default_role)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------
    def oauth_url(self, provider: str = "google") -> str:
        redirect_to = f"{self.settings.frontend_url.rstrip('/')}/auth/callback"
        return self.identity.oauth_url(provider, redirect_to)

    async def oauth_exchange(self, provider_access_token: str) -> AuthResult:
        """Log in an existing user with an identity-provider access token.

        Never creates an account: an identity with no local user raises
        :class:`UserNotRegisteredError`.
        """
        profile = await self.identity.get_user_from_token(provider_access_token)
        user = await self.store.get_user_by_external_id(profile.external_id)
        if user is None and profile.phone:
            user = await self.store.get_user_by_phone(profile.phone)
        if user is None:
            logger.info("oauth_user_not_registered", external_id=profile.external_id)
            raise UserNotRegisteredError(
                "User not registered. Please complete registration first."
            )

        updates: Dict[str, Any] = {
            "external_id": profile.external_id,
            "first_name": profile.first_name,
            "last_name": profile.last_name,
            "avatar_url": profile.avatar_url,
            "email": profile.email,
            "last_login_at": utcnow(),
        }
        user = await self._within_deadline("oauth_login", self._update_user(user, updates))
        self._ensure_active(user)
        return await self._issue(user)

    async def _update_user(self, user: User, updates: Dict[str, Any]) -> User:
        async with self.store.unit_of_work() as uow:
            return await self.store.update_user(user.id, updates, uow=uow) or user

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------
    async def refresh(self, old_refresh_token: str) -> AuthResult:
        if not old_refresh_token:
            raise InvalidRefreshTokenError("invalid refresh token")
        user, token, successor = await self._within_deadline(
            "refresh", self._rotate(old_refresh_token)
        )
        await self.sessions.invalidate(user.id)
        logger.info("token_refreshed", user_id=user.id, role=user.role)
        return AuthResult(
            user=user,
            token=token,
            refresh_token=successor.token,
            expires_in=self.codec.expires_in_seconds,
        )

    async def _rotate(self, old_refresh_token: str) -> tuple[User, str, RefreshToken]:
        async with self.store.unit_of_work() as uow:
            successor = await self.refresh_tokens.rotate(old_refresh_token, uow=uow)
            user = await self.store.get_user(successor.user_id, uow=uow)
            if user is None:
                raise InvalidRefreshTokenError("invalid refresh token")
            self._ensure_active(user)
            # Role comes from the live assignment, not the previous token
            role = await self.store.get_user_role(user.id, uow=uow)
            user = replace(user, role=role or self.settings.default_role)
            token = self.codec.sign(self._claims(user))
            await self.sessions.create(user.id, token, uow=uow)
        return user, token, successor

    async def logout(self, user_id: str, access_token: str) -> LogoutResult:
        """Revoke every session and refresh token of the user, then the presented token.

        The store transaction commits before the blacklist write and the
        cache invalidation. A transaction that misses its deadline rolls back
        and raises :class:`StoreUnavailableError`; nothing is blacklisted.
        """
        sessions, refresh, user = await self._within_deadline(
            "logout", self._revoke_user_credentials(user_id)
        )

        hashed = token_hash(access_token)
        blacklisted = await self.revocation.blacklist(
            hashed, ttl=self.codec.seconds_until_expiry(access_token)
        )
        await self._invalidate_user_cache(user_id, user)
        await self.sessions.invalidate(user_id)
        logger.info(
            "user_logged_out",
            user_id=user_id,
            sessions_revoked=sessions,
            refresh_tokens_revoked=refresh,
            blacklisted=blacklisted,
        )
        return LogoutResult(
            sessions_revoked=sessions, refresh_tokens_revoked=refresh, blacklisted=blacklisted
        )

    async def _revoke_user_credentials(self, user_id: str) -> tuple[int, int, Optional[User]]:
        async with self.store.unit_of_work() as uow:
            sessions = await self.sessions.revoke_all_for_user(user_id, uow=uow)
            refresh = await self.refresh_tokens.revoke_all(user_id, uow=uow)
            user = await self.store.get_user(user_id, uow=uow)
        return sessions, refresh, user

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve an ``Authorization: Bearer`` header to an :class:`AuthContext`."""
        if not authorization or not authorization.lower().startswith(BEARER_PREFIX):
            raise AuthenticationError("Authentication required")
        token = authorization[len(BEARER_PREFIX):].strip()
        if not token:
            raise AuthenticationError("Authentication required")

        hashed = token_hash(token)
        if await self.revocation.is_blacklisted(hashed):
            raise TokenRevokedError("Token has been revoked")

        claims = await self.revocation.get_cached(hashed)
        if claims is not None:
            try:
                expired = float(claims.get("exp", 0)) <= utcnow().timestamp()
            except (TypeError, ValueError):
                expired = True
            if expired:
                await self.revocation.invalidate_cached_token(hashed)
                raise TokenExpiredError("token expired")
        else:
            claims = self.codec.verify(token)
            ttl = min(self.settings.token_cache_ttl_seconds, self.codec.seconds_until_expiry(token))
            if ttl > 0:
                await self.revocation.cache_decoded(hashed, claims, ttl)

        return AuthContext(
            user_id=str(claims["sub"]),
            role=str(claims.get("role") or self.settings.default_role),
            token=token,
            token_hash=hashed,
            phone=claims.get("phone") or None,
            email=claims.get("email") or None,
            external_id=claims.get("external_id") or None,
            claims=claims,
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        async def _fetch() -> Optional[Dict[str, Any]]:
            user = await self.store.get_user(user_id)
            return user.to_cache() if user else None

        data = await self.cache.get_or_set_with_lock(
            CacheKeys.user_by_id(user_id),
            _fetch,
            ttl=self.settings.user_cache_ttl_seconds,
            lock_ttl=self.settings.cache_lock_ttl_seconds,
        )
        if not data:
            return None
        return User.from_cache(data)

    async def current_user(self, ctx: AuthContext) -> User:
        user = await self.get_user_by_id(ctx.user_id)
        if user is None:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        return user

    async def assign_role(self, user_id: str, role: str) -> User:
        role = role.upper()
        if not is_known_role(role):
            raise ValidationError(f"unknown role: {role}", detail={"field": "role"})
        user = await self._within_deadline("assign_role", self._store_role(user_id, role))
        await self._invalidate_user_cache(user_id, user)
        logger.info("user_role_assigned", user_id=user_id, role=role)
        return replace(user, role=role)

    async def _store_role(self, user_id: str, role: str) -> User:
        async with self.store.unit_of_work() as uow:
            user = await self.store.get_user(user_id, uow=uow)
            if user is None:
                raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
            await self.store.assign_role(user_id, role, uow=uow)
        return user

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    async def _within_deadline(self, operation: str, work: Awaitable[T]) -> T:
        """Await one store transaction, failing loudly once it runs past the deadline.

        Cancelling ``work`` rolls its unit of work back, so a timed-out write
        never commits behind the caller's back.
        """
        timeout = self.settings.store_operation_timeout_seconds
        try:
            return await asyncio.wait_for(work, timeout)
        except asyncio.TimeoutError as exc:
            logger.error("store_operation_timeout", operation=operation, timeout_seconds=timeout)
            raise StoreUnavailableError(
                "Storage is temporarily unavailable. Please try again."
            ) from exc

    @staticmethod
    def _ensure_active(user: User) -> None:
        if not user.is_active:
            raise UserInactiveError("Account is inactive. Please contact support.")
        if user.is_suspended:
            raise UserSuspendedError("Account is suspended. Please contact support.")

    @staticmethod
    def _claims(user: User) -> Dict[str, Any]:
        return {
            "sub": user.id,
            "external_id": user.external_id or "",
            "phone": user.phone,
            "email": user.email or "",
            "first_name": user.first_name or "",
            "last_name": user.last_name or "",
            "role": user.role,
        }

    async def _issue(self, user: User) -> AuthResult:
        token = self.codec.sign(self._claims(user))
        refresh = await self._within_deadline("issue_tokens", self._record_login(user.id, token))
        await self.sessions.invalidate(user.id)
        self._schedule_user_cache(user)
        logger.info("user_logged_in", user_id=user.id, role=user.role)
        return AuthResult(
            user=user,
            token=token,
            refresh_token=refresh.token,
            expires_in=self.codec.expires_in_seconds,
        )

    async def _record_login(self, user_id: str, token: str) -> RefreshToken:
        async with self.store.unit_of_work() as uow:
            refresh = await self.refresh_tokens.create(user_id, uow=uow)
            await self.sessions.create(user_id, token, uow=uow)
        return refresh

    @staticmethod
    def _user_cache_keys(user_id: str, user: Optional[User]) -> list[str]:
        keys = [CacheKeys.user_by_id(user_id)]
        if user is not None:
            if user.external_id:
                keys.append(CacheKeys.user_by_external_id(user.external_id))
            if user.phone:
                keys.append(CacheKeys.user_by_phone(user.phone))
        return keys

    def _schedule_user_cache(self, user: User) -> None:
        task = asyncio.create_task(self._populate_user_cache(user))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _populate_user_cache(self, user: User) -> None:
        payload = user.to_cache()
        items = {key: payload for key in self._user_cache_keys(user.id, user)}
        try:
            stored = await self.cache.set_batch(items, ttl=self.settings.user_cache_ttl_seconds)
        except Exception as exc:
            logger.warning("user_cache_population_failed", user_id=user.id, error=str(exc))
            return
        if not stored and self.cache.enabled:
            logger.warning("user_cache_population_failed", user_id=user.id, error="write rejected")

    async def _invalidate_user_cache(self, user_id: str, user: Optional[User]) -> int:
        return await self.cache.delete_batch(self._user_cache_keys(user_id, user))

    async def wait_for_background(self) -> None:
        """Let pending cache-population tasks finish (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

