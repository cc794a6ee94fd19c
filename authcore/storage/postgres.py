from __future__ import annotations

import math
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from psycopg import AsyncConnection, errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from authcore.logging import get_logger
from authcore.storage.common import filter_user_fields
from authcore.storage.errors import ConstraintViolation, SchemaMissingError
from authcore.storage.models import RefreshToken, Session, User

REQUIRED_TABLES = ("users", "roles", "user_roles", "refresh_tokens", "sessions")

_USER_SELECT = """
    SELECT u.*, r.name AS role
    FROM users u
    LEFT JOIN LATERAL (
        SELECT role_id FROM user_roles
        WHERE user_id = u.id
        ORDER BY assigned_at DESC
        LIMIT 1
    ) ur ON TRUE
    LEFT JOIN roles r ON r.id = ur.role_id
"""


class PostgresUnitOfWork:
    """One pooled connection with an open transaction."""

    def __init__(self, conn: AsyncConnection) -> None:
        self.conn = conn


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        phone=row["phone"],
        email=row.get("email"),
        external_id=row.get("external_id"),
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        avatar_url=row.get("avatar_url"),
        role=row.get("role") or "RIDER",
        is_active=row.get("is_active", True),
        is_suspended=row.get("is_suspended", False),
        phone_verified_at=row.get("phone_verified_at"),
        last_login_at=row.get("last_login_at"),
        created_at=row["created_at"],
        updated_at=row.get("updated_at") or row["created_at"],
    )


def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        token=row["token"],
        user_id=str(row["user_id"]),
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        is_revoked=row["is_revoked"],
        revoked_at=row.get("revoked_at"),
        replaced_by=str(row["replaced_by"]) if row.get("replaced_by") else None,
    )


def _session_from_row(row: Dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        is_active=row["is_active"],
        revoked_at=row.get("revoked_at"),
    )


def connection_kwargs(statement_timeout: float) -> Dict[str, Any]:
    """Per-connection settings: dict rows, explicit transactions and server-side deadlines."""
    return {
        "row_factory": dict_row,
        "autocommit": False,
        "connect_timeout": max(1, math.ceil(statement_timeout)),
        "options": f"-c statement_timeout={int(statement_timeout * 1000)}",
    }


class PostgresStore:
    """Postgres-backed store for users, roles, refresh tokens and sessions."""

    kind = "postgres"

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 10.0,
        statement_timeout: float = 10.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs=connection_kwargs(statement_timeout),
            open=False,
        )
        self._opened = False

    async def open(self) -> None:
        if self._opened:
            return
        await self.pool.open(wait=True)
        self._opened = True
        await self._verify_required_schema()

    async def _verify_required_schema(self) -> None:
        async with self.pool.connection() as conn:
            cur = await conn.execute(
                """
                SELECT table_name FROM information_schema.tables
                WHERE table_schema = current_schema() AND table_name = ANY(%s)
                """,
                (list(REQUIRED_TABLES),),
            )
            present = {row["table_name"] for row in await cur.fetchall()}
        missing = [name for name in REQUIRED_TABLES if name not in present]
        if missing:
            self.logger.error("postgres_schema_missing", missing=missing)
            raise SchemaMissingError(missing)

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[PostgresUnitOfWork]:
        await self.open()
        async with self.pool.connection() as conn:
            async with conn.transaction():
                yield PostgresUnitOfWork(conn)

    @asynccontextmanager
    async def _connect(self, uow: Optional[PostgresUnitOfWork]) -> AsyncIterator[AsyncConnection]:
        if uow is not None:
            yield uow.conn
            return
        await self.open()
        # the pool commits on clean exit and rolls back on error
        async with self.pool.connection() as conn:
            yield conn

    async def _fetch_user(
        self, where: str, value: Any, uow: Optional[PostgresUnitOfWork]
    ) -> Optional[User]:
        async with self._connect(uow) as conn:
            cur = await conn.execute(f"{_USER_SELECT} WHERE {where} = %s", (value,))
            row = await cur.fetchone()
        return _user_from_row(row) if row else None

    async def get_user(self, user_id: str, *, uow: Optional[PostgresUnitOfWork] = None) -> Optional[User]:
        return await self._fetch_user("u.id", user_id, uow)

    async def get_user_by_phone(
        self, phone: str, *, uow: Optional[PostgresUnitOfWork] = None
    ) -> Optional[User]:
        return await self._fetch_user("u.phone", phone, uow)

    async def get_user_by_external_id(
        self, external_id: str, *, uow: Optional[PostgresUnitOfWork] = None
    ) -> Optional[User]:
        return await self._fetch_user("u.external_id", external_id, uow)

    async def create_user(self, user: User, *, uow: Optional[PostgresUnitOfWork] = None) -> User:
        try:
            async with self._connect(uow) as conn:
                await conn.execute(
                    """
                    INSERT INTO users (
                        id, phone, email, external_id, first_name, last_name, avatar_url,
                        is_active, is_suspended, phone_verified_at, last_login_at,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.phone,
                        user.email,
                        user.external_id,
                        user.first_name,
                        user.last_name,
                        user.avatar_url,
                        user.is_active,
                        user.is_suspended,
                        user.phone_verified_at,
                        user.last_login_at,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = "email" if "email" in str(exc) else "phone"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return user

    async def assign_role(
        self, user_id: str, role: str, *, uow: Optional[PostgresUnitOfWork] = None
    ) -> None:
        try:
            async with self._connect(uow) as conn:
                await conn.execute(
                    "INSERT INTO roles (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
                    (role,),
                )
                await conn.execute("DELETE FROM user_roles WHERE user_id = %s", (user_id,))
                await conn.execute(
                    """
                    INSERT INTO user_roles (user_id, role_id, assigned_at)
                    SELECT %s, id, now() FROM roles WHERE name = %s
                    """,
                    (user_id, role),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"field": "user_id"}) from exc

    async def get_user_role(
        self, user_id: str, *, uow: Optional[PostgresUnitOfWork] = None
    ) -> Optional[str]:
        async with self._connect(uow) as conn:
            cur = await conn.execute(
                """
                SELECT r.name FROM user_roles ur JOIN roles r ON r.id = ur.role_id
                WHERE ur.user_id = %s ORDER BY ur.assigned_at DESC LIMIT 1
                """,
                (user_id,),
            )
            row = await cur.fetchone()
        return row["name"] if row else None

    async def update_user(
        self, user_id: str, fields: Dict[str, Any], *, uow: Optional[PostgresUnitOfWork] = None
    ) -> Optional[User]:
        updates = filter_user_fields(fields)
        if updates:
            # column names come from the USER_UPDATABLE_FIELDS allow-list
            assignments = ", ".join(f"{column} = %s" for column in updates)
            try:
                async with self._connect(uow) as conn:
                    await conn.execute(
                        f"UPDATE users SET {assignments}, updated_at = now() WHERE id = %s",
                        (*updates.values(), user_id),
                    )
            except errors.UniqueViolation as exc:
                raise ConstraintViolation("duplicate user field", {"fields": list(updates)}) from exc
        return await self.get_user(user_id, uow=uow)

    async def insert_refresh_token(
        self, token: RefreshToken, *, uow: Optional[PostgresUnitOfWork] = None
    ) -> RefreshToken:
        try:
            async with self._connect(uow) as conn:
                await conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, token, user_id, expires_at, created_at, is_revoked)
                    VALUES (%s, %s, %s, %s, %s, FALSE)
                    """,
                    (token.id, token.token, token.user_id, token.expires_at, token.created_at),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh token collision", {"field": "token"}) from exc
        return token

    async def get_refresh_token(
        self,
        token: str,
        *,
        uow: Optional[PostgresUnitOfWork] = None,
        for_update: bool = False,
    ) -> Optional[RefreshToken]:
        query = "SELECT * FROM refresh_tokens WHERE token = %s"
        if for_update:
            query += " FOR UPDATE"
        async with self._connect(uow) as conn:
            cur = await conn.execute(query, (token,))
            row = await cur.fetchone()
        return _refresh_from_row(row) if row else None

    async def get_refresh_token_by_id(
        self, token_id: str, *, uow: Optional[PostgresUnitOfWork] = None
    ) -> Optional[RefreshToken]:
        async with self._connect(uow) as conn:
            cur = await conn.execute("SELECT * FROM refresh_tokens WHERE id = %s", (token_id,))
            row = await cur.fetchone()
        return _refresh_from_row(row) if row else None

    async def revoke_refresh_token(
        self,
        token_id: str,
        *,
        replaced_by: Optional[str] = None,
        uow: Optional[PostgresUnitOfWork] = None,
    ) -> bool:
        async with self._connect(uow) as conn:
            cur = await conn.execute(
                """
                UPDATE refresh_tokens
                SET is_revoked = TRUE, revoked_at = now(), replaced_by = %s
                WHERE id = %s AND is_revoked = FALSE
                """,
                (replaced_by, token_id),
            )
            return cur.rowcount == 1

    async def revoke_user_refresh_tokens(
        self, user_id: str, *, uow: Optional[PostgresUnitOfWork] = None
    ) -> int:
        async with self._connect(uow) as conn:
            cur = await conn.execute(
                """
                UPDATE refresh_tokens SET is_revoked = TRUE, revoked_at = now()
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (user_id,),
            )
            return cur.rowcount

    async def insert_session(
        self, session: Session, *, uow: Optional[PostgresUnitOfWork] = None
    ) -> Session:
        try:
            async with self._connect(uow) as conn:
                await conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, token_hash, expires_at, created_at, is_active)
                    VALUES (%s, %s, %s, %s, %s, TRUE)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_hash,
                        session.expires_at,
                        session.created_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"field": "user_id"}) from exc
        return session

    async def list_user_sessions(
        self,
        user_id: str,
        *,
        active_only: bool = True,
        uow: Optional[PostgresUnitOfWork] = None,
    ) -> List[Session]:
        query = "SELECT * FROM sessions WHERE user_id = %s"
        if active_only:
            query += " AND is_active = TRUE"
        async with self._connect(uow) as conn:
            cur = await conn.execute(query + " ORDER BY created_at", (user_id,))
            rows = await cur.fetchall()
        return [_session_from_row(row) for row in rows]

    async def revoke_user_sessions(
        self, user_id: str, *, uow: Optional[PostgresUnitOfWork] = None
    ) -> int:
        async with self._connect(uow) as conn:
            cur = await conn.execute(
                """
                UPDATE sessions SET is_active = FALSE, revoked_at = now()
                WHERE user_id = %s AND is_active = TRUE
                """,
                (user_id,),
            )
            return cur.rowcount

    async def ping(self) -> bool:
        async with self._connect(None) as conn:
            cur = await conn.execute("SELECT 1 AS ok")
            row = await cur.fetchone()
        return bool(row and row["ok"] == 1)

    async def close(self) -> None:
        if self._opened:
            await self.pool.close()
            self._opened = False
