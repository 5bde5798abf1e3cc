from __future__ import annotations

import hmac
import json
import os
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.common import (
    ALLOW_REGISTRATION_KEY,
    SYSTEM_INITIALIZED_KEY,
    build_mfa_cipher,
    decrypt_mfa_secret,
    encrypt_mfa_secret,
)
from sessionguard.storage.errors import ConstraintViolation, StoreUnavailableError
from sessionguard.storage.models import ApiKeyRecord, RefreshTokenRecord, User, UserRole


class MemoryStore:
    """Dict-backed user, refresh-token and system-setting store.

    State is mirrored to ``fs_root/state/auth_store.json`` after every write so
    a restarted process sees the same users and refresh records. MFA secrets
    are Fernet-encrypted both in memory and on disk.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/sessionguard",
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.api_keys: Dict[str, ApiKeyRecord] = {}
        self.system_settings: Dict[str, str] = {}
        # RLock so helpers can re-enter while a write holds the lock
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key, self.fs_root)
        if self.persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _public_user(self, user: Optional[User]) -> Optional[User]:
        if user is None:
            return None
        return replace(
            user,
            mfa_secret=decrypt_mfa_secret(self._mfa_cipher, user.mfa_secret),
            backup_codes=list(user.backup_codes),
            password_history=list(user.password_history),
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
        with self._data_lock:
            if any(u.username == username for u in self.users.values()):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if email and any(
                u.email and u.email.lower() == email.lower()
                for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(username, password_hash, email=email, role=role)
            self.users[user.id] = user
            self._persist_state()
            return self._public_user(user)

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._public_user(self.users.get(user_id))

    async def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            match = next(
                (u for u in self.users.values() if u.username == username), None
            )
            return self._public_user(match)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            match = next(
                (
                    u
                    for u in self.users.values()
                    if u.email and u.email.lower() == lowered
                ),
                None,
            )
            return self._public_user(match)

    async def update_password_hash(
        self, user_id: str, password_hash: str, *, history_limit: int = 5
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            history = list(user.password_history)
            history.append(user.password_hash)
            if history_limit > 0:
                history = history[-history_limit:]
            else:
                history = []
            user.password_history = history
            user.password_hash = password_hash
            user.updated_at = self._now()
            self._persist_state()
            return self._public_user(user)

    async def update_mfa(
        self,
        user_id: str,
        *,
        secret: Optional[str],
        enabled: bool,
        backup_codes: List[str],
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.mfa_secret = encrypt_mfa_secret(self._mfa_cipher, secret)
            user.mfa_enabled = enabled
            user.backup_codes = list(backup_codes)
            user.updated_at = self._now()
            self._persist_state()
            return self._public_user(user)

    async def consume_backup_code(self, user_id: str, code: str) -> bool:
        """Remove one matching backup code; True only for the caller that removed it."""
        wanted = (code or "").strip().upper().encode()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not wanted:
                return False
            for index, candidate in enumerate(user.backup_codes):
                if hmac.compare_digest(candidate.upper().encode(), wanted):
                    del user.backup_codes[index]
                    user.updated_at = self._now()
                    self._persist_state()
                    return True
            return False

    async def update_role(self, user_id: str, role: UserRole) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = UserRole(role)
            user.updated_at = self._now()
            self._persist_state()
            return self._public_user(user)

    # -- refresh tokens ------------------------------------------------------

    async def create_refresh_token(
        self, record: RefreshTokenRecord
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": record.user_id}
                )
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already stored", {"field": "token_hash"}
                )
            self.refresh_tokens[record.token_hash] = replace(record)
            self._persist_state()
            return replace(record)

    async def get_refresh_token_by_hash(
        self, token_hash: str
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    async def revoke_refresh_token_by_hash(self, token_hash: str, reason: str) -> bool:
        """Flip ``is_revoked`` if still active; True only for the caller that flipped it."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.is_revoked:
                return False
            now = self._now()
            record.is_revoked = True
            record.revoked_at = now
            record.revoked_reason = reason
            record.updated_at = now
            self._persist_state()
            return True

    async def revoke_all_refresh_tokens_for_user(self, user_id: str, reason: str) -> int:
        with self._data_lock:
            now = self._now()
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    record.revoked_at = now
                    record.revoked_reason = reason
                    record.updated_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    async def list_active_refresh_tokens(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshTokenRecord]:
        now = now or self._now()
        with self._data_lock:
            active = [
                replace(r)
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and r.is_active(now)
            ]
        active.sort(key=lambda r: r.created_at, reverse=True)
        return active

    async def purge_refresh_tokens(
        self, now: Optional[datetime] = None, retention: timedelta = timedelta(days=30)
    ) -> int:
        now = now or self._now()
        cutoff = now - retention
        with self._data_lock:
            stale = [
                token_hash
                for token_hash, r in self.refresh_tokens.items()
                if r.expires_at <= now
                or (r.is_revoked and (r.revoked_at or r.updated_at) < cutoff)
            ]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- API keys ----------------------------------------------------------

    async def create_api_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": record.user_id}
                )
            for existing in self.api_keys.values():
                if existing.user_id == record.user_id and existing.name == record.name:
                    raise ConstraintViolation("api key name taken", {"field": "name"})
                if existing.key_prefix == record.key_prefix:
                    raise ConstraintViolation(
                        "api key prefix collision", {"field": "key_prefix"}
                    )
            self.api_keys[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    async def get_api_key_by_prefix(self, key_prefix: str) -> Optional[ApiKeyRecord]:
        with self._data_lock:
            match = next(
                (k for k in self.api_keys.values() if k.key_prefix == key_prefix), None
            )
            return replace(match) if match else None

    async def list_api_keys(self, user_id: str) -> List[ApiKeyRecord]:
        with self._data_lock:
            keys = [replace(k) for k in self.api_keys.values() if k.user_id == user_id]
        keys.sort(key=lambda k: k.created_at, reverse=True)
        return keys

    async def delete_api_key(self, user_id: str, key_id: str) -> bool:
        with self._data_lock:
            record = self.api_keys.get(key_id)
            if not record or record.user_id != user_id:
                return False
            del self.api_keys[key_id]
            self._persist_state()
            return True

    async def touch_api_key(self, key_id: str, used_at: datetime) -> None:
        with self._data_lock:
            record = self.api_keys.get(key_id)
            if record:
                record.last_used_at = used_at
                self._persist_state()

    # -- system settings -----------------------------------------------------

    async def get_system_settings(self) -> Dict[str, str]:
        with self._data_lock:
            return dict(self.system_settings)

    async def set_system_setting(self, key: str, value: str) -> None:
        with self._data_lock:
            self.system_settings[key] = str(value)
            self._persist_state()

    async def is_system_initialized(self) -> bool:
        with self._data_lock:
            return self.system_settings.get(SYSTEM_INITIALIZED_KEY) == "true"

    async def is_new_registration_allowed(self) -> bool:
        with self._data_lock:
            return self.system_settings.get(ALLOW_REGISTRATION_KEY) == "true"

    # -- persistence ---------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "api_keys": [self._serialize_api_key(k) for k in self.api_keys.values()],
            "system_settings": self.system_settings,
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreUnavailableError(
                "failed to persist auth state", {"path": str(path)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["token_hash"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.api_keys = {
            k["id"]: self._deserialize_api_key(k) for k in data.get("api_keys", [])
        }
        self.system_settings = {
            str(k): str(v) for k, v in (data.get("system_settings") or {}).items()
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            # already encrypted at rest
            "mfa_secret": user.mfa_secret,
            "mfa_enabled": user.mfa_enabled,
            "backup_codes": list(user.backup_codes),
            "role": UserRole(user.role).value,
            "password_history": list(user.password_history),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data.get("email"),
            password_hash=data["password_hash"],
            mfa_secret=data.get("mfa_secret"),
            mfa_enabled=bool(data.get("mfa_enabled", False)),
            backup_codes=list(data.get("backup_codes") or []),
            role=UserRole(data.get("role", UserRole.USER.value)),
            password_history=list(data.get("password_history") or []),
            created_at=self._deserialize_datetime(data.get("created_at")) or self._now(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or self._now(),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "is_revoked": record.is_revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "revoked_reason": record.revoked_reason,
            "device_info": record.device_info,
            "ip_address": record.ip_address,
            "user_agent": record.user_agent,
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_revoked=bool(data.get("is_revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
            device_info=data.get("device_info"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data.get("created_at")) or self._now(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or self._now(),
        )

    def _serialize_api_key(self, record: ApiKeyRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "name": record.name,
            "key_prefix": record.key_prefix,
            "key_hash": record.key_hash,
            "last_used_at": self._serialize_datetime(record.last_used_at),
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_api_key(self, data: dict) -> ApiKeyRecord:
        return ApiKeyRecord(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            name=data["name"],
            key_prefix=data["key_prefix"],
            key_hash=data["key_hash"],
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or self._now(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or self._now(),
        )
