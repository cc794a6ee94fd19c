from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.common import filter_user_fields
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import RefreshToken, Session, User, utcnow


class MemoryUnitOfWork:
    """Marks calls that run inside an open :meth:`MemoryStore.unit_of_work`."""

    def __init__(self, store: "MemoryStore") -> None:
        self.store = store


class MemoryStore:
    """In-process store with the same transactional contract as Postgres.

    A unit of work holds the store lock for its whole duration and restores a
    snapshot if the block raises, so concurrent transactions serialize and a
    failed one leaves no partial rows.
    """

    kind = "memory"

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # user_id -> role names; one row per assignment
        self.user_roles: Dict[str, List[str]] = {}
        self.roles: set[str] = set()
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(
            {
                "users": self.users,
                "user_roles": self.user_roles,
                "roles": self.roles,
                "refresh_tokens": self.refresh_tokens,
                "sessions": self.sessions,
            }
        )

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self.users = snapshot["users"]
        self.user_roles = snapshot["user_roles"]
        self.roles = snapshot["roles"]
        self.refresh_tokens = snapshot["refresh_tokens"]
        self.sessions = snapshot["sessions"]

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[MemoryUnitOfWork]:
        async with self._lock:
            snapshot = self._snapshot()
            try:
                yield MemoryUnitOfWork(self)
            except BaseException:
                self._restore(snapshot)
                self.logger.info("memory_uow_rolled_back")
                raise

    @asynccontextmanager
    async def _scope(self, uow: Optional[MemoryUnitOfWork]) -> AsyncIterator[None]:
        if uow is not None:
            yield
            return
        async with self.unit_of_work():
            yield

    def _with_role(self, user: Optional[User]) -> Optional[User]:
        if user is None:
            return None
        roles = self.user_roles.get(user.id) or []
        return replace(user, role=roles[-1] if roles else user.role)

    async def get_user(self, user_id: str, *, uow: Optional[MemoryUnitOfWork] = None) -> Optional[User]:
        async with self._scope(uow):
            return self._with_role(self.users.get(user_id))

    async def get_user_by_phone(
        self, phone: str, *, uow: Optional[MemoryUnitOfWork] = None
    ) -> Optional[User]:
        async with self._scope(uow):
            match = next((u for u in self.users.values() if u.phone == phone), None)
            return self._with_role(match)

    async def get_user_by_external_id(
        self, external_id: str, *, uow: Optional[MemoryUnitOfWork] = None
    ) -> Optional[User]:
        async with self._scope(uow):
            match = next(
                (u for u in self.users.values() if u.external_id == external_id), None
            )
            return self._with_role(match)

    async def create_user(self, user: User, *, uow: Optional[MemoryUnitOfWork] = None) -> User:
        async with self._scope(uow):
            if any(u.phone == user.phone for u in self.users.values()):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            if user.email and any(u.email == user.email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = replace(user)
            return replace(user)

    async def assign_role(
        self, user_id: str, role: str, *, uow: Optional[MemoryUnitOfWork] = None
    ) -> None:
        async with self._scope(uow):
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            self.roles.add(role)
            self.user_roles[user_id] = [role]

    async def get_user_role(
        self, user_id: str, *, uow: Optional[MemoryUnitOfWork] = None
    ) -> Optional[str]:
        async with self._scope(uow):
            roles = self.user_roles.get(user_id) or []
            return roles[-1] if roles else None

    async def update_user(
        self, user_id: str, fields: Dict[str, Any], *, uow: Optional[MemoryUnitOfWork] = None
    ) -> Optional[User]:
        async with self._scope(uow):
            user = self.users.get(user_id)
            if user is None:
                return None
            updates = filter_user_fields(fields)
            updated = replace(user, **updates, updated_at=utcnow())
            self.users[user_id] = updated
            return self._with_role(updated)

    async def insert_refresh_token(
        self, token: RefreshToken, *, uow: Optional[MemoryUnitOfWork] = None
    ) -> RefreshToken:
        async with self._scope(uow):
            if any(t.token == token.token for t in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            self.refresh_tokens[token.id] = replace(token)
            return replace(token)

    async def get_refresh_token(
        self,
        token: str,
        *,
        uow: Optional[MemoryUnitOfWork] = None,
        for_update: bool = False,
    ) -> Optional[RefreshToken]:
        # for_update is implicit: the unit of work already holds the store lock
        async with self._scope(uow):
            match = next((t for t in self.refresh_tokens.values() if t.token == token), None)
            return replace(match) if match else None

    async def get_refresh_token_by_id(
        self, token_id: str, *, uow: Optional[MemoryUnitOfWork] = None
    ) -> Optional[RefreshToken]:
        async with self._scope(uow):
            match = self.refresh_tokens.get(token_id)
            return replace(match) if match else None

    async def revoke_refresh_token(
        self,
        token_id: str,
        *,
        replaced_by: Optional[str] = None,
        uow: Optional[MemoryUnitOfWork] = None,
    ) -> bool:
        async with self._scope(uow):
            current = self.refresh_tokens.get(token_id)
            if current is None or current.is_revoked:
                return False
            self.refresh_tokens[token_id] = replace(
                current, is_revoked=True, revoked_at=utcnow(), replaced_by=replaced_by
            )
            return True

    async def revoke_user_refresh_tokens(
        self, user_id: str, *, uow: Optional[MemoryUnitOfWork] = None
    ) -> int:
        async with self._scope(uow):
            now = utcnow()
            revoked = 0
            for token_id, token in list(self.refresh_tokens.items()):
                if token.user_id == user_id and not token.is_revoked:
                    self.refresh_tokens[token_id] = replace(token, is_revoked=True, revoked_at=now)
                    revoked += 1
            return revoked

    async def insert_session(
        self, session: Session, *, uow: Optional[MemoryUnitOfWork] = None
    ) -> Session:
        async with self._scope(uow):
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            self.sessions[session.id] = replace(session)
            return replace(session)

    async def list_user_sessions(
        self,
        user_id: str,
        *,
        active_only: bool = True,
        uow: Optional[MemoryUnitOfWork] = None,
    ) -> List[Session]:
        async with self._scope(uow):
            return [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (s.is_active or not active_only)
            ]

    async def revoke_user_sessions(
        self, user_id: str, *, uow: Optional[MemoryUnitOfWork] = None
    ) -> int:
        async with self._scope(uow):
            now = utcnow()
            revoked = 0
            for session_id, session in list(self.sessions.items()):
                if session.user_id == user_id and session.is_active:
                    self.sessions[session_id] = replace(session, is_active=False, revoked_at=now)
                    revoked += 1
            return revoked

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
