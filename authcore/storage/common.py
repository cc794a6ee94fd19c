"""Store contract shared by the memory and postgres backends.

Every method takes an optional ``uow`` handle. When given, the call joins
that unit of work (one transaction); when omitted, the store runs the call in
its own short transaction. Helpers never need to know which case applies.
"""

from __future__ import annotations

from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol

from authcore.storage.models import RefreshToken, Session, User

USER_UPDATABLE_FIELDS = frozenset(
    {
        "email",
        "external_id",
        "first_name",
        "last_name",
        "avatar_url",
        "is_active",
        "is_suspended",
        "phone_verified_at",
        "last_login_at",
    }
)


class UnitOfWork(Protocol):
    """Opaque handle for one atomic group of store writes."""


class AuthStore(Protocol):
    kind: str

    def unit_of_work(self) -> AsyncContextManager[UnitOfWork]: ...

    async def get_user(self, user_id: str, *, uow: Optional[UnitOfWork] = None) -> Optional[User]: ...

    async def get_user_by_phone(
        self, phone: str, *, uow: Optional[UnitOfWork] = None
    ) -> Optional[User]: ...

    async def get_user_by_external_id(
        self, external_id: str, *, uow: Optional[UnitOfWork] = None
    ) -> Optional[User]: ...

    async def create_user(
        self, user: User, *, uow: Optional[UnitOfWork] = None
    ) -> User: ...

    async def assign_role(
        self, user_id: str, role: str, *, uow: Optional[UnitOfWork] = None
    ) -> None: ...

    async def get_user_role(
        self, user_id: str, *, uow: Optional[UnitOfWork] = None
    ) -> Optional[str]: ...

    async def update_user(
        self, user_id: str, fields: Dict[str, Any], *, uow: Optional[UnitOfWork] = None
    ) -> Optional[User]: ...

    async def insert_refresh_token(
        self, token: RefreshToken, *, uow: Optional[UnitOfWork] = None
    ) -> RefreshToken: ...

    async def get_refresh_token(
        self, token: str, *, uow: Optional[UnitOfWork] = None, for_update: bool = False
    ) -> Optional[RefreshToken]: ...

    async def get_refresh_token_by_id(
        self, token_id: str, *, uow: Optional[UnitOfWork] = None
    ) -> Optional[RefreshToken]: ...

    async def revoke_refresh_token(
        self,
        token_id: str,
        *,
        replaced_by: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> bool: ...

    async def revoke_user_refresh_tokens(
        self, user_id: str, *, uow: Optional[UnitOfWork] = None
    ) -> int: ...

    async def insert_session(
        self, session: Session, *, uow: Optional[UnitOfWork] = None
    ) -> Session: ...

    async def list_user_sessions(
        self, user_id: str, *, active_only: bool = True, uow: Optional[UnitOfWork] = None
    ) -> List[Session]: ...

    async def revoke_user_sessions(
        self, user_id: str, *, uow: Optional[UnitOfWork] = None
    ) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def filter_user_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys that are not user-owned columns, and ``None`` values."""
    return {
        key: value
        for key, value in fields.items()
        if key in USER_UPDATABLE_FIELDS and value is not None
    }
