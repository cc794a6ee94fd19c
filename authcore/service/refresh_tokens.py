from __future__ import annotations

import secrets
from datetime import timedelta
from typing import List, Optional

from authcore.logging import get_logger
from authcore.service.errors import (
    InvalidRefreshTokenError,
    TokenExpiredError,
    TokenRevokedError,
)
from authcore.storage.common import AuthStore, UnitOfWork
from authcore.storage.models import RefreshToken, utcnow

logger = get_logger(__name__)

# 40 random bytes, hex encoded
REFRESH_TOKEN_BYTES = 40


class RefreshTokenStore:
    """Rotating opaque refresh tokens with a ``replaced_by`` audit chain.

    Tokens are never deleted: rotation and logout only set ``is_revoked``, so
    following ``replaced_by`` from any token reaches the current head.
    """

    def __init__(self, store: AuthStore, *, ttl_days: int = 30) -> None:
        self.store = store
        self.ttl = timedelta(days=ttl_days)

    def _new(self, user_id: str) -> RefreshToken:
        return RefreshToken.new(user_id, secrets.token_hex(REFRESH_TOKEN_BYTES), self.ttl)

    async def create(self, user_id: str, *, uow: Optional[UnitOfWork] = None) -> RefreshToken:
        return await self.store.insert_refresh_token(self._new(user_id), uow=uow)

    async def rotate(self, old_token: str, *, uow: UnitOfWork) -> RefreshToken:
        """Replace ``old_token`` with a fresh token inside ``uow``.

        Raises :class:`InvalidRefreshTokenError` for unknown tokens,
        :class:`TokenRevokedError` for reuse of a revoked token and
        :class:`TokenExpiredError` past expiry. The old row is locked for the
        transaction and flipped with a conditional update, so of two
        concurrent rotations of the same token exactly one succeeds.
        """
        current = await self.store.get_refresh_token(old_token, uow=uow, for_update=True)
        if current is None:
            raise InvalidRefreshTokenError("invalid refresh token")
        if current.is_revoked:
            # Reuse of a rotated token; the rest of the chain is left untouched
            logger.warning(
                "refresh_token_reuse_detected",
                user_id=current.user_id,
                token_id=current.id,
                replaced_by=current.replaced_by,
            )
            raise TokenRevokedError("refresh token revoked")
        if current.is_expired():
            raise TokenExpiredError("refresh token expired")

        successor = await self.store.insert_refresh_token(self._new(current.user_id), uow=uow)
        flipped = await self.store.revoke_refresh_token(
            current.id, replaced_by=successor.id, uow=uow
        )
        if not flipped:
            # Lost the race between our read and the update
            raise TokenRevokedError("refresh token revoked")
        logger.info(
            "refresh_token_rotated",
            user_id=current.user_id,
            token_id=current.id,
            replaced_by=successor.id,
        )
        return successor

    async def revoke_all(self, user_id: str, *, uow: Optional[UnitOfWork] = None) -> int:
        return await self.store.revoke_user_refresh_tokens(user_id, uow=uow)

    async def chain(self, token: str, *, max_length: int = 1000) -> List[RefreshToken]:
        """Follow ``replaced_by`` from ``token`` to the newest token in its chain."""
        current = await self.store.get_refresh_token(token)
        links: List[RefreshToken] = []
        seen: set[str] = set()
        while current is not None and current.id not in seen and len(links) < max_length:
            links.append(current)
            seen.add(current.id)
            if not current.replaced_by:
                break
            current = await self.store.get_refresh_token_by_id(current.replaced_by)
        return links

    async def is_usable(self, token: str) -> bool:
        current = await self.store.get_refresh_token(token)
        return bool(current and not current.is_revoked and current.expires_at > utcnow())
