from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


@dataclass
class User:
    id: str
    username: str
    password_hash: str
    email: Optional[str] = None
    mfa_secret: Optional[str] = None
    mfa_enabled: bool = False
    backup_codes: List[str] = field(default_factory=list)
    role: UserRole = UserRole.USER
    # previous hashes, newest last
    password_history: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        password_hash: str,
        *,
        email: Optional[str] = None,
        role: UserRole = UserRole.USER,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=password_hash,
            role=role,
        )

    @property
    def mfa_pending(self) -> bool:
        """Enrollment generated but not yet confirmed with a code."""
        return bool(self.mfa_secret) and not self.mfa_enabled


@dataclass
class UserProfile:
    """Public view of a user returned with issued tokens."""

    id: str
    username: str
    email: Optional[str]
    roles: List[str]

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            roles=[UserRole(user.role).value],
        )


@dataclass
class MfaEnrollment:
    secret: str
    backup_codes: List[str]
    provisioning_uri: str
    # scannable rendering of provisioning_uri
    qr_code_data_url: Optional[str] = None


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "RefreshTokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        return not self.is_revoked and self.expires_at > now


@dataclass
class ApiKeyRecord:
    """Long-lived credential; only the argon2 hash of the raw key is stored."""

    id: str
    user_id: str
    name: str
    # public lookup handle embedded in the raw key
    key_prefix: str
    key_hash: str
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls, user_id: str, name: str, key_prefix: str, key_hash: str
    ) -> "ApiKeyRecord":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            key_prefix=key_prefix,
            key_hash=key_hash,
        )


@dataclass
class ApiKeyInfo:
    """API key metadata safe to hand back to the owner."""

    id: str
    name: str
    key_prefix: str
    created_at: datetime
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: ApiKeyRecord) -> "ApiKeyInfo":
        return cls(
            id=record.id,
            name=record.name,
            key_prefix=record.key_prefix,
            created_at=record.created_at,
            last_used_at=record.last_used_at,
        )
