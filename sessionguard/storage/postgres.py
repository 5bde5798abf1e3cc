from __future__ import annotations

import contextlib
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from sessionguard.logging import get_logger, sanitize_error_message
from sessionguard.storage.common import (
    ALLOW_REGISTRATION_KEY,
    SYSTEM_INITIALIZED_KEY,
    build_mfa_cipher,
    decrypt_mfa_secret,
    encrypt_mfa_secret,
    normalize_ip_address,
    parse_json_list,
)
from sessionguard.storage.errors import ConstraintViolation, StoreUnavailableError
from sessionguard.storage.models import ApiKeyRecord, RefreshTokenRecord, User, UserRole

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_REQUIRED_TABLES = ("app_user", "refresh_token", "api_key", "system_setting")


class PostgresStore:
    """Postgres-backed user, refresh-token and system-setting store.

    Call ``open()`` before first use; it opens the async pool and verifies the
    schema. Connection failures surface as ``StoreUnavailableError`` and
    uniqueness races as ``ConstraintViolation``.
    """

    def __init__(
        self,
        dsn: str,
        fs_root: str,
        *,
        mfa_encryption_key: str | None = None,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key, self.fs_root)

    async def open(self, *, install_schema: bool = False) -> None:
        await self.pool.open()
        if install_schema:
            await self.install_schema()
        await self._verify_required_schema()

    async def close(self) -> None:
        await self.pool.close()

    @contextlib.asynccontextmanager
    async def _connect(self) -> AsyncIterator[psycopg.AsyncConnection]:
        try:
            async with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error=sanitize_error_message(str(exc))
            )
            raise StoreUnavailableError("database unavailable") from exc

    async def install_schema(self) -> None:
        ddl = SCHEMA_PATH.read_text()
        async with self._connect() as conn:
            await conn.execute(ddl)

    async def _verify_required_schema(self) -> None:
        async with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                cur = await conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                )
                row = await cur.fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply {} first.".format(
                    ", ".join(sorted(missing)), SCHEMA_PATH.name
                )
            )

    # -- row mapping ---------------------------------------------------------

    def _user_from_row(self, row: Optional[Dict[str, Any]]) -> Optional[User]:
        if not row:
            return None
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row.get("email"),
            password_hash=row["password_hash"],
            mfa_secret=decrypt_mfa_secret(self._mfa_cipher, row.get("mfa_secret")),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            backup_codes=parse_json_list(row.get("backup_codes")),
            role=UserRole(row.get("role") or UserRole.USER.value),
            password_history=parse_json_list(row.get("password_history")),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            updated_at=row.get("updated_at") or datetime.now(timezone.utc),
        )

    @staticmethod
    def _refresh_from_row(row: Optional[Dict[str, Any]]) -> Optional[RefreshTokenRecord]:
        if not row:
            return None
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"].strip(),
            expires_at=row["expires_at"],
            is_revoked=bool(row.get("is_revoked", False)),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            device_info=row.get("device_info"),
            ip_address=normalize_ip_address(row.get("ip_address")),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            updated_at=row.get("updated_at") or datetime.now(timezone.utc),
        )

    @staticmethod
    def _api_key_from_row(row: Optional[Dict[str, Any]]) -> Optional[ApiKeyRecord]:
        if not row:
            return None
        return ApiKeyRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            key_prefix=row["key_prefix"],
            key_hash=row["key_hash"],
            last_used_at=row.get("last_used_at"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            updated_at=row.get("updated_at") or datetime.now(timezone.utc),
        )

    # -- users -------------------------------------------------------------

    async def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        email: Optional[str] = None,
        role: UserRole = UserRole.USER,
    ) -> User:
        user = User.new(username, password_hash, email=email, role=role)
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, role, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.password_hash,
                        UserRole(user.role).value,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "username or email already exists", {"field": "username"}
            ) from exc
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,))
            row = await cur.fetchone()
        return self._user_from_row(row)

    async def get_user_by_username(self, username: str) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            )
            row = await cur.fetchone()
        return self._user_from_row(row)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            )
            row = await cur.fetchone()
        return self._user_from_row(row)

    async def update_password_hash(
        self, user_id: str, password_hash: str, *, history_limit: int = 5
    ) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT password_hash, password_history FROM app_user WHERE id = %s FOR UPDATE",
                (user_id,),
            )
            current = await cur.fetchone()
            if not current:
                return None
            history = parse_json_list(current.get("password_history"))
            history.append(current["password_hash"])
            history = history[-history_limit:] if history_limit > 0 else []
            cur = await conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, password_history = %s::jsonb, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, json.dumps(history), user_id),
            )
            row = await cur.fetchone()
        return self._user_from_row(row)

    async def update_mfa(
        self,
        user_id: str,
        *,
        secret: Optional[str],
        enabled: bool,
        backup_codes: List[str],
    ) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE app_user
                SET mfa_secret = %s, mfa_enabled = %s, backup_codes = %s::jsonb, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (
                    encrypt_mfa_secret(self._mfa_cipher, secret),
                    enabled,
                    json.dumps(list(backup_codes)),
                    user_id,
                ),
            )
            row = await cur.fetchone()
        return self._user_from_row(row)

    async def consume_backup_code(self, user_id: str, code: str) -> bool:
        """Remove ``code`` atomically; concurrent redemptions see one winner."""
        wanted = (code or "").strip().upper()
        if not wanted:
            return False
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE app_user
                SET backup_codes = backup_codes - %s, updated_at = now()
                WHERE id = %s AND backup_codes ? %s
                RETURNING id
                """,
                (wanted, user_id, wanted),
            )
            row = await cur.fetchone()
        return row is not None

    async def update_role(self, user_id: str, role: UserRole) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (UserRole(role).value, user_id),
            )
            row = await cur.fetchone()
        return self._user_from_row(row)

    # -- refresh tokens ------------------------------------------------------

    async def create_refresh_token(
        self, record: RefreshTokenRecord
    ) -> RefreshTokenRecord:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO refresh_token (
                        id, user_id, token_hash, expires_at, is_revoked,
                        device_info, ip_address, user_agent, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, FALSE, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token_hash,
                        record.expires_at,
                        record.device_info,
                        normalize_ip_address(record.ip_address),
                        record.user_agent,
                        record.created_at,
                        record.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "refresh token user missing", {"user_id": record.user_id}
            ) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already stored", {"field": "token_hash"}
            ) from exc
        return record

    async def get_refresh_token_by_hash(
        self, token_hash: str
    ) -> Optional[RefreshTokenRecord]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            )
            row = await cur.fetchone()
        return self._refresh_from_row(row)

    async def revoke_refresh_token_by_hash(self, token_hash: str, reason: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = now(), revoked_reason = %s, updated_at = now()
                WHERE token_hash = %s AND is_revoked = FALSE
                RETURNING id
                """,
                (reason, token_hash),
            )
            row = await cur.fetchone()
        return row is not None

    async def revoke_all_refresh_tokens_for_user(self, user_id: str, reason: str) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = now(), revoked_reason = %s, updated_at = now()
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (reason, user_id),
            )
            return max(cur.rowcount, 0)

    async def list_active_refresh_tokens(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshTokenRecord]:
        now = now or datetime.now(timezone.utc)
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND is_revoked = FALSE AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now),
            )
            rows = await cur.fetchall()
        return [self._refresh_from_row(row) for row in rows]

    async def purge_refresh_tokens(
        self, now: Optional[datetime] = None, retention: timedelta = timedelta(days=30)
    ) -> int:
        now = now or datetime.now(timezone.utc)
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                DELETE FROM refresh_token
                WHERE expires_at <= %s
                   OR (is_revoked = TRUE AND COALESCE(revoked_at, updated_at) < %s)
                """,
                (now, now - retention),
            )
            return max(cur.rowcount, 0)

    # -- API keys ----------------------------------------------------------

    async def create_api_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO api_key (
                        id, user_id, name, key_prefix, key_hash, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.name,
                        record.key_prefix,
                        record.key_hash,
                        record.created_at,
                        record.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "api key user missing", {"user_id": record.user_id}
            ) from exc
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "name" if constraint == "api_key_user_name_key" else "key_prefix"
            raise ConstraintViolation("api key already stored", {"field": field}) from exc
        return record

    async def get_api_key_by_prefix(self, key_prefix: str) -> Optional[ApiKeyRecord]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM api_key WHERE key_prefix = %s", (key_prefix,)
            )
            row = await cur.fetchone()
        return self._api_key_from_row(row)

    async def list_api_keys(self, user_id: str) -> List[ApiKeyRecord]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM api_key WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            )
            rows = await cur.fetchall()
        return [self._api_key_from_row(row) for row in rows]

    async def delete_api_key(self, user_id: str, key_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM api_key WHERE id = %s AND user_id = %s RETURNING id",
                (key_id, user_id),
            )
            row = await cur.fetchone()
        return row is not None

    async def touch_api_key(self, key_id: str, used_at: datetime) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE api_key SET last_used_at = %s WHERE id = %s",
                (used_at, key_id),
            )

    # -- system settings -----------------------------------------------------

    async def get_system_settings(self) -> Dict[str, str]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT key, value FROM system_setting")
            rows = await cur.fetchall()
        return {row["key"]: row["value"] for row in rows}

    async def set_system_setting(self, key: str, value: str) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO system_setting (key, value, updated_at) VALUES (%s, %s, now())
                ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
                """,
                (key, str(value)),
            )

    async def _get_system_setting(self, key: str) -> Optional[str]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT value FROM system_setting WHERE key = %s", (key,)
            )
            row = await cur.fetchone()
        return row["value"] if row else None

    async def is_system_initialized(self) -> bool:
        return await self._get_system_setting(SYSTEM_INITIALIZED_KEY) == "true"

    async def is_new_registration_allowed(self) -> bool:
        return await self._get_system_setting(ALLOW_REGISTRATION_KEY) == "true"
