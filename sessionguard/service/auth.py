from __future__ import annotations

import functools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from sessionguard.config import Settings
from sessionguard.logging import get_logger, sanitize_error_message
from sessionguard.service.api_keys import (
    api_key_prefix,
    generate_api_key,
    normalize_api_key_name,
)
from sessionguard.service.errors import (
    AuthErrorCode,
    InfrastructureError,
    status_code_for,
)
from sessionguard.service.mfa import MfaEngine
from sessionguard.service.passwords import (
    PasswordPolicyEngine,
    PasswordStrength,
    latest_hashes,
)
from sessionguard.service.revocation import RevocationRegistry
from sessionguard.service.tokens import (
    MFA_VERIFICATION_PURPOSE,
    PASSWORD_RESET_PURPOSE,
    TokenClaims,
    TokenError,
    TokenIssuer,
    TokenKind,
    TokenPair,
    hash_refresh_token,
)
from sessionguard.storage.errors import ConstraintViolation, StoreUnavailableError
from sessionguard.storage.models import (
    ApiKeyInfo,
    ApiKeyRecord,
    MfaEnrollment,
    RefreshTokenRecord,
    User,
    UserProfile,
    UserRole,
)

logger = get_logger(__name__)

REVOKE_REASON_REFRESH = "token refresh"
REVOKE_REASON_LOGOUT = "user logout"
REVOKE_REASON_LOGOUT_EVERYWHERE = "logout everywhere"
REVOKE_REASON_PASSWORD_CHANGE = "password change"
REVOKE_REASON_PASSWORD_RESET = "password reset"
REVOKE_REASON_ROLE_CHANGE = "role change"

_GENERIC_CREDENTIALS_MESSAGE = "Invalid username or password"
_GENERIC_UNAVAILABLE_MESSAGE = "Service temporarily unavailable"

_API_KEY_PREFIX_ATTEMPTS = 3

_TOKEN_ERROR_CODES = {
    TokenError.EXPIRED: AuthErrorCode.TOKEN_EXPIRED,
    TokenError.MALFORMED: AuthErrorCode.TOKEN_MALFORMED,
    TokenError.WRONG_TYPE: AuthErrorCode.TOKEN_MALFORMED,
    TokenError.REVOKED: AuthErrorCode.TOKEN_REVOKED,
}


class AuthStore(Protocol):
    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        email: Optional[str] = None,
        role: UserRole = UserRole.USER,
    ) -> User: ...

    async def update_password_hash(
        self, user_id: str, password_hash: str, *, history_limit: int = 5
    ) -> Optional[User]: ...

    async def update_mfa(
        self,
        user_id: str,
        *,
        secret: Optional[str],
        enabled: bool,
        backup_codes: List[str],
    ) -> Optional[User]: ...

    async def consume_backup_code(self, user_id: str, code: str) -> bool: ...

    async def update_role(self, user_id: str, role: UserRole) -> Optional[User]: ...

    async def create_refresh_token(
        self, record: RefreshTokenRecord
    ) -> RefreshTokenRecord: ...

    async def get_refresh_token_by_hash(
        self, token_hash: str
    ) -> Optional[RefreshTokenRecord]: ...

    async def revoke_refresh_token_by_hash(self, token_hash: str, reason: str) -> bool: ...

    async def revoke_all_refresh_tokens_for_user(self, user_id: str, reason: str) -> int: ...

    async def list_active_refresh_tokens(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshTokenRecord]: ...

    async def purge_refresh_tokens(
        self, now: Optional[datetime] = None, retention: timedelta = ...
    ) -> int: ...

    async def create_api_key(self, record: ApiKeyRecord) -> ApiKeyRecord: ...

    async def get_api_key_by_prefix(self, key_prefix: str) -> Optional[ApiKeyRecord]: ...

    async def list_api_keys(self, user_id: str) -> List[ApiKeyRecord]: ...

    async def delete_api_key(self, user_id: str, key_id: str) -> bool: ...

    async def touch_api_key(self, key_id: str, used_at: datetime) -> None: ...

    async def is_system_initialized(self) -> bool: ...

    async def is_new_registration_allowed(self) -> bool: ...

    async def set_system_setting(self, key: str, value: str) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    username: str
    role: str
    # access-token jti, or the API key id
    token_jti: str
    expires_at: Optional[int]
    credential: str = "access_token"


@dataclass
class AuthResult:
    """Outcome of an auth use case; expected failures never raise."""

    success: bool
    error: Optional[AuthErrorCode] = None
    message: str = ""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token_expires_at: Optional[int] = None
    refresh_token_expires_at: Optional[int] = None
    token_type: str = "Bearer"
    user: Optional[UserProfile] = None
    mfa_token: Optional[str] = None
    reset_token: Optional[str] = None
    mfa_setup: Optional[MfaEnrollment] = None
    backup_codes: Optional[List[str]] = None
    password_strength: Optional[PasswordStrength] = None
    # raw API key, returned once at creation
    api_key: Optional[str] = None
    api_keys: Optional[List[ApiKeyInfo]] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def status_code(self) -> int:
        return status_code_for(self.error)

    @classmethod
    def ok(cls, message: str = "", **kwargs: Any) -> "AuthResult":
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def failure(cls, error: AuthErrorCode, message: str, **kwargs: Any) -> "AuthResult":
        return cls(success=False, error=error, message=message, **kwargs)


def _guard_infrastructure(operation: str):
    """Turn store and registry outages into INFRASTRUCTURE_FAILURE results."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self: "AuthService", *args, **kwargs) -> AuthResult:
            try:
                return await func(self, *args, **kwargs)
            except (StoreUnavailableError, InfrastructureError) as exc:
                self.logger.error(
                    "auth_infrastructure_failure",
                    operation=operation,
                    error=sanitize_error_message(str(exc)),
                )
                return AuthResult.failure(
                    AuthErrorCode.INFRASTRUCTURE_FAILURE, _GENERIC_UNAVAILABLE_MESSAGE
                )

        return wrapper

    return decorator


class AuthService:
    """Login, MFA, refresh rotation, logout, password lifecycle and API keys.

    Collaborators are injected: the store owns users and refresh records,
    the registry owns the jti blacklist and version counters, and the token
    issuer, password engine and MFA engine are stateless helpers.
    """

    def __init__(
        self,
        store: AuthStore,
        registry: RevocationRegistry,
        tokens: TokenIssuer,
        passwords: PasswordPolicyEngine,
        mfa: MfaEngine,
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.registry = registry
        self.tokens = tokens
        self.passwords = passwords
        self.mfa = mfa
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.tokens.now(), tz=timezone.utc)

    @staticmethod
    def _token_failure(error: Optional[TokenError]) -> AuthResult:
        code = _TOKEN_ERROR_CODES.get(error, AuthErrorCode.TOKEN_MALFORMED)
        messages = {
            AuthErrorCode.TOKEN_EXPIRED: "Token has expired",
            AuthErrorCode.TOKEN_REVOKED: "Token has been revoked",
            AuthErrorCode.TOKEN_MALFORMED: "Token is invalid",
        }
        return AuthResult.failure(code, messages[code])

    async def _blacklist_quietly(self, jti: str, expires_at: Optional[int]) -> None:
        try:
            await self.registry.blacklist(jti, expires_at)
        except StoreUnavailableError as exc:
            self.logger.warning("token_blacklist_failed", jti=jti, error=str(exc))

    async def _release_quietly(self, jti: str) -> None:
        try:
            await self.registry.release(jti)
        except StoreUnavailableError as exc:
            self.logger.warning("token_claim_release_failed", jti=jti, error=str(exc))

    async def _issue_session(
        self,
        user: User,
        *,
        message: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Mint a pair and persist its refresh record before returning either."""
        role = UserRole(user.role).value
        pair: TokenPair = await self.tokens.issue_pair(user.id, user.username, role)
        record = RefreshTokenRecord.new(
            user.id,
            hash_refresh_token(pair.refresh.token),
            datetime.fromtimestamp(pair.refresh.expires_at, tz=timezone.utc),
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            await self.store.create_refresh_token(record)
        except (StoreUnavailableError, ConstraintViolation) as exc:
            await self._blacklist_quietly(pair.access.jti, pair.access.expires_at)
            await self._blacklist_quietly(pair.refresh.jti, pair.refresh.expires_at)
            self.logger.error(
                "refresh_token_persist_failed",
                user_id=user.id,
                error=sanitize_error_message(str(exc)),
            )
            return AuthResult.failure(
                AuthErrorCode.INFRASTRUCTURE_FAILURE, _GENERIC_UNAVAILABLE_MESSAGE
            )
        return AuthResult.ok(
            message,
            access_token=pair.access.token,
            refresh_token=pair.refresh.token,
            access_token_expires_at=pair.access.expires_at,
            refresh_token_expires_at=pair.refresh.expires_at,
            token_type=pair.token_type,
            user=UserProfile.from_user(user),
        )

    def _reject_new_password(
        self, user: User, new_password: str
    ) -> Optional[AuthResult]:
        history = latest_hashes(user.password_hash, user.password_history)
        strength = self.passwords.score(new_password, history=history)
        if strength.is_weak or "history" in strength.failed_checks:
            return AuthResult.failure(
                AuthErrorCode.WEAK_PASSWORD,
                "; ".join(strength.suggestions) or "Password is too weak",
                password_strength=strength,
            )
        return None

    async def _revoke_everywhere(self, user_id: str, reason: str) -> int:
        revoked = await self.store.revoke_all_refresh_tokens_for_user(user_id, reason)
        await self.registry.bump_version(user_id)
        return revoked

    # -- login ---------------------------------------------------------------

    @_guard_infrastructure("login")
    async def login(
        self,
        username: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = await self.store.get_user_by_username(username)
        if user is None:
            self.passwords.verify_dummy(password)
            self.logger.warning(
                "login_failed", reason="invalid_credentials", username=username
            )
            return AuthResult.failure(
                AuthErrorCode.INVALID_CREDENTIALS, _GENERIC_CREDENTIALS_MESSAGE
            )
        if not self.passwords.verify(password, user.password_hash):
            self.logger.warning(
                "login_failed", reason="invalid_credentials", username=username
            )
            return AuthResult.failure(
                AuthErrorCode.INVALID_CREDENTIALS, _GENERIC_CREDENTIALS_MESSAGE
            )

        if user.mfa_enabled and user.mfa_secret:
            temp = self.tokens.issue_temp(user.id, MFA_VERIFICATION_PURPOSE)
            self.logger.info("login_mfa_required", user_id=user.id)
            return AuthResult.failure(
                AuthErrorCode.MFA_REQUIRED,
                "MFA verification required",
                mfa_token=temp.token,
            )

        result = await self._issue_session(
            user,
            message="Login successful",
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if result.success:
            self.logger.info("login_succeeded", user_id=user.id, username=username)
        return result

    @_guard_infrastructure("verify_mfa")
    async def verify_mfa_and_issue(
        self,
        user_id: str,
        code: Optional[str] = None,
        *,
        backup_code: Optional[str] = None,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = await self.store.get_user(user_id)
        if user is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")
        if not (user.mfa_enabled and user.mfa_secret):
            return AuthResult.failure(
                AuthErrorCode.MFA_NOT_ENABLED, "MFA is not enabled for this account"
            )

        verified = False
        if backup_code is None and code and self.mfa.verify_code(code, user.mfa_secret):
            verified = True
        else:
            # a non-matching TOTP code is also tried as a backup code
            candidate = (backup_code if backup_code is not None else code) or ""
            valid, remaining = self.mfa.verify_backup_code(candidate, user.backup_codes)
            # the store's conditional removal picks one winner per code
            if valid and await self.store.consume_backup_code(user.id, candidate):
                self.logger.info(
                    "mfa_backup_code_used", user_id=user.id, remaining=len(remaining)
                )
                verified = True
            elif valid:
                self.logger.warning("mfa_backup_code_replayed", user_id=user.id)

        if not verified:
            self.logger.warning("mfa_verification_failed", user_id=user.id)
            return AuthResult.failure(
                AuthErrorCode.INVALID_MFA_CODE, "Invalid verification code"
            )
        return await self._issue_session(
            user,
            message="MFA verification successful",
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    @_guard_infrastructure("complete_mfa_login")
    async def complete_mfa_login(
        self,
        mfa_token: str,
        code: Optional[str] = None,
        *,
        backup_code: Optional[str] = None,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        verification = await self.tokens.verify(
            TokenKind.TEMP, mfa_token, purpose=MFA_VERIFICATION_PURPOSE
        )
        if not verification.valid:
            return self._token_failure(verification.error)
        claims: TokenClaims = verification.claims
        if not await self.registry.claim(claims.jti, claims.exp):
            self.logger.warning("mfa_token_replayed", user_id=claims.user_id)
            return self._token_failure(TokenError.REVOKED)
        result: Optional[AuthResult] = None
        try:
            result = await self.verify_mfa_and_issue(
                claims.user_id,
                code,
                backup_code=backup_code,
                device_info=device_info,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        finally:
            # a failed attempt leaves the temp token usable for a retry
            if result is None or not result.success:
                await self._release_quietly(claims.jti)
        return result

    # -- refresh / logout ----------------------------------------------------

    @_guard_infrastructure("refresh")
    async def refresh(
        self,
        raw_refresh_token: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        verification = await self.tokens.verify(TokenKind.REFRESH, raw_refresh_token)
        if not verification.valid:
            self.logger.info(
                "refresh_rejected",
                reason=verification.error.value if verification.error else None,
            )
            return self._token_failure(verification.error)
        claims: TokenClaims = verification.claims

        token_hash = hash_refresh_token(raw_refresh_token)
        record = await self.store.get_refresh_token_by_hash(token_hash)
        if (
            record is None
            or record.user_id != claims.user_id
            or not record.is_active(self._now())
        ):
            self.logger.warning("refresh_record_inactive", user_id=claims.user_id)
            return self._token_failure(TokenError.REVOKED)

        user = await self.store.get_user(claims.user_id)
        if user is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")

        if not await self.store.revoke_refresh_token_by_hash(
            token_hash, REVOKE_REASON_REFRESH
        ):
            # lost the rotation race: another caller already redeemed this token
            self.logger.warning("refresh_token_replayed", user_id=user.id)
            return self._token_failure(TokenError.REVOKED)
        await self.registry.blacklist(claims.jti, claims.exp)

        return await self._issue_session(
            user,
            message="Token refreshed",
            device_info=device_info or record.device_info,
            ip_address=ip_address or record.ip_address,
            user_agent=user_agent or record.user_agent,
        )

    @_guard_infrastructure("logout")
    async def logout(
        self, raw_refresh_token: str, *, access_token: Optional[str] = None
    ) -> AuthResult:
        """Revoke the refresh record; repeated or unknown tokens still succeed."""
        revoked = await self.store.revoke_refresh_token_by_hash(
            hash_refresh_token(raw_refresh_token), REVOKE_REASON_LOGOUT
        )
        refresh_claims = self.tokens.peek(raw_refresh_token)
        if refresh_claims and refresh_claims.kind is TokenKind.REFRESH:
            await self.registry.blacklist(refresh_claims.jti, refresh_claims.exp)
        if access_token:
            access_claims = self.tokens.peek(access_token)
            if access_claims and access_claims.kind is TokenKind.ACCESS:
                await self.registry.blacklist(access_claims.jti, access_claims.exp)
        self.logger.info(
            "logout",
            user_id=refresh_claims.user_id if refresh_claims else None,
            revoked=revoked,
        )
        return AuthResult.ok("Logged out")

    @_guard_infrastructure("logout_everywhere")
    async def logout_everywhere(self, user_id: str) -> AuthResult:
        user = await self.store.get_user(user_id)
        if user is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")
        revoked = await self._revoke_everywhere(user.id, REVOKE_REASON_LOGOUT_EVERYWHERE)
        self.logger.info("logout_everywhere", user_id=user.id, revoked=revoked)
        return AuthResult.ok("Logged out of all sessions", details={"revoked": revoked})

    # -- registration --------------------------------------------------------

    @_guard_infrastructure("register")
    async def register(
        self,
        username: str,
        email: Optional[str],
        password: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if not await self.store.is_system_initialized():
            self.logger.warning(
                "registration_rejected", reason="system_not_initialized", username=username
            )
            return AuthResult.failure(
                AuthErrorCode.SYSTEM_NOT_INITIALIZED,
                "System is not initialized",
            )
        if not await self.store.is_new_registration_allowed():
            self.logger.warning(
                "registration_rejected", reason="registration_disabled", username=username
            )
            return AuthResult.failure(
                AuthErrorCode.REGISTRATION_DISABLED,
                "New user registration is disabled",
            )
        if await self.store.get_user_by_username(username) is not None:
            return AuthResult.failure(AuthErrorCode.USER_EXISTS, "User already exists")

        strength = self.passwords.score(password)
        if strength.is_weak:
            return AuthResult.failure(
                AuthErrorCode.WEAK_PASSWORD,
                "; ".join(strength.suggestions) or "Password is too weak",
                password_strength=strength,
            )

        try:
            user = await self.store.create_user(
                username, self.passwords.hash(password), email=email, role=UserRole.USER
            )
        except ConstraintViolation as exc:
            self.logger.warning(
                "registration_conflict", username=username, field=exc.detail.get("field")
            )
            return AuthResult.failure(AuthErrorCode.USER_EXISTS, "User already exists")
        self.logger.info("user_registered", user_id=user.id, username=username)

        return await self.login(
            username,
            password,
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # -- passwords -----------------------------------------------------------

    @_guard_infrastructure("change_password")
    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        confirm_password: str,
    ) -> AuthResult:
        user = await self.store.get_user(user_id)
        if user is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")
        if not self.passwords.verify(current_password, user.password_hash):
            self.logger.warning("password_change_rejected", user_id=user.id)
            return AuthResult.failure(
                AuthErrorCode.INVALID_CREDENTIALS, "Current password is incorrect"
            )
        if new_password != confirm_password:
            return AuthResult.failure(
                AuthErrorCode.PASSWORD_MISMATCH, "Passwords do not match"
            )
        rejection = self._reject_new_password(user, new_password)
        if rejection:
            return rejection

        await self.store.update_password_hash(
            user.id,
            self.passwords.hash(new_password),
            history_limit=self.settings.password_history_count,
        )
        revoked = await self._revoke_everywhere(user.id, REVOKE_REASON_PASSWORD_CHANGE)
        self.logger.info("password_changed", user_id=user.id, revoked=revoked)
        return AuthResult.ok("Password changed", details={"revoked": revoked})

    @_guard_infrastructure("request_password_reset")
    async def request_password_reset(self, identifier: str) -> AuthResult:
        """Mint a reset token for delivery; unknown identifiers look identical."""
        user = await self.store.get_user_by_username(identifier)
        if user is None and identifier and "@" in identifier:
            user = await self.store.get_user_by_email(identifier)
        message = "If the account exists, reset instructions have been sent"
        if user is None:
            self.logger.info("password_reset_unknown_identifier")
            return AuthResult.ok(message)
        temp = self.tokens.issue_temp(user.id, PASSWORD_RESET_PURPOSE)
        self.logger.info("password_reset_requested", user_id=user.id)
        return AuthResult.ok(message, reset_token=temp.token)

    @_guard_infrastructure("reset_password")
    async def reset_password(
        self, reset_token: str, new_password: str, confirm_password: str
    ) -> AuthResult:
        verification = await self.tokens.verify(
            TokenKind.TEMP, reset_token, purpose=PASSWORD_RESET_PURPOSE
        )
        if not verification.valid:
            return self._token_failure(verification.error)
        claims: TokenClaims = verification.claims
        if not await self.registry.claim(claims.jti, claims.exp):
            self.logger.warning("reset_token_replayed", user_id=claims.user_id)
            return self._token_failure(TokenError.REVOKED)
        committed = False
        try:
            user = await self.store.get_user(claims.user_id)
            if user is None:
                return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")
            if new_password != confirm_password:
                return AuthResult.failure(
                    AuthErrorCode.PASSWORD_MISMATCH, "Passwords do not match"
                )
            rejection = self._reject_new_password(user, new_password)
            if rejection:
                return rejection
            committed = True
            await self.store.update_password_hash(
                user.id,
                self.passwords.hash(new_password),
                history_limit=self.settings.password_history_count,
            )
        finally:
            # rejected attempts leave the reset token usable
            if not committed:
                await self._release_quietly(claims.jti)
        revoked = await self._revoke_everywhere(user.id, REVOKE_REASON_PASSWORD_RESET)
        self.logger.info("password_reset_completed", user_id=user.id, revoked=revoked)
        return AuthResult.ok("Password has been reset", details={"revoked": revoked})

    # -- MFA enrollment ------------------------------------------------------

    @_guard_infrastructure("enable_mfa")
    async def enable_mfa(self, user_id: str) -> AuthResult:
        user = await self.store.get_user(user_id)
        if user is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")
        if user.mfa_enabled:
            return AuthResult.failure(
                AuthErrorCode.MFA_ALREADY_ENABLED, "MFA is already enabled"
            )
        enrollment = self.mfa.setup(user.username)
        activate = not self.settings.mfa_require_confirmation
        await self.store.update_mfa(
            user.id,
            secret=enrollment.secret,
            enabled=activate,
            backup_codes=enrollment.backup_codes,
        )
        self.logger.info("mfa_enrolled", user_id=user.id, pending=not activate)
        return AuthResult.ok(
            "MFA enabled" if activate else "Confirm a code to finish MFA setup",
            mfa_setup=enrollment,
            details={"pending": not activate},
        )

    @_guard_infrastructure("confirm_mfa")
    async def confirm_mfa(self, user_id: str, code: str) -> AuthResult:
        user = await self.store.get_user(user_id)
        if user is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")
        if user.mfa_enabled:
            return AuthResult.failure(
                AuthErrorCode.MFA_ALREADY_ENABLED, "MFA is already enabled"
            )
        if not user.mfa_pending:
            return AuthResult.failure(
                AuthErrorCode.MFA_NOT_ENABLED, "No pending MFA enrollment"
            )
        if not self.mfa.verify_code(code, user.mfa_secret):
            return AuthResult.failure(
                AuthErrorCode.INVALID_MFA_CODE, "Invalid verification code"
            )
        await self.store.update_mfa(
            user.id,
            secret=user.mfa_secret,
            enabled=True,
            backup_codes=user.backup_codes,
        )
        self.logger.info("mfa_confirmed", user_id=user.id)
        return AuthResult.ok("MFA enabled")

    @_guard_infrastructure("disable_mfa")
    async def disable_mfa(self, user_id: str) -> AuthResult:
        user = await self.store.get_user(user_id)
        if user is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")
        if not (user.mfa_enabled or user.mfa_secret):
            return AuthResult.failure(
                AuthErrorCode.MFA_NOT_ENABLED, "MFA is not enabled for this account"
            )
        await self.store.update_mfa(user.id, secret=None, enabled=False, backup_codes=[])
        self.logger.info("mfa_disabled", user_id=user.id)
        return AuthResult.ok("MFA disabled")

    @_guard_infrastructure("regenerate_backup_codes")
    async def regenerate_backup_codes(self, user_id: str) -> AuthResult:
        user = await self.store.get_user(user_id)
        if user is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")
        if not (user.mfa_enabled and user.mfa_secret):
            return AuthResult.failure(
                AuthErrorCode.MFA_NOT_ENABLED, "MFA is not enabled for this account"
            )
        codes = self.mfa.generate_backup_codes()
        await self.store.update_mfa(
            user.id, secret=user.mfa_secret, enabled=True, backup_codes=codes
        )
        self.logger.info("mfa_backup_codes_regenerated", user_id=user.id)
        return AuthResult.ok("Backup codes regenerated", backup_codes=codes)

    # -- profile, roles, access tokens ----------------------------------------

    @_guard_infrastructure("get_user_profile")
    async def get_user_profile(self, user_id: str) -> AuthResult:
        user = await self.store.get_user(user_id)
        if user is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")
        return AuthResult.ok(user=UserProfile.from_user(user))

    @_guard_infrastructure("set_user_role")
    async def set_user_role(self, user_id: str, role: UserRole) -> AuthResult:
        """Update the role and revoke refresh tokens minted under the old one."""
        user = await self.store.update_role(user_id, UserRole(role))
        if user is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")
        revoked = await self._revoke_everywhere(user.id, REVOKE_REASON_ROLE_CHANGE)
        self.logger.info(
            "user_role_updated_sessions_revoked",
            user_id=user.id,
            new_role=UserRole(role).value,
            revoked=revoked,
        )
        return AuthResult.ok("Role updated", user=UserProfile.from_user(user))

    @staticmethod
    def _role_allows(role: str, required: str) -> bool:
        if role == required:
            return True
        return role == UserRole.ADMIN.value and required == UserRole.USER.value

    async def authenticate(
        self, access_token: Optional[str], *, required_role: Optional[str] = None
    ) -> Optional[AuthContext]:
        """Resolve a bearer access token to its user, or None."""
        if not access_token:
            return None
        verification = await self.tokens.verify(TokenKind.ACCESS, access_token)
        if not verification.valid:
            return None
        claims: TokenClaims = verification.claims
        try:
            user = await self.store.get_user(claims.user_id)
        except StoreUnavailableError as exc:
            self.logger.error(
                "authenticate_store_unavailable", error=sanitize_error_message(str(exc))
            )
            return None
        if user is None:
            return None
        role = UserRole(user.role).value
        if claims.role != role:
            return None
        if required_role and not self._role_allows(role, required_role):
            return None
        return AuthContext(
            user_id=user.id,
            username=user.username,
            role=role,
            token_jti=claims.jti,
            expires_at=claims.exp,
        )

    # -- API keys ------------------------------------------------------------

    @_guard_infrastructure("create_api_key")
    async def create_api_key(self, user_id: str, name: str) -> AuthResult:
        """Mint a named API key; the raw key is only ever returned here."""
        cleaned = normalize_api_key_name(name)
        if cleaned is None:
            return AuthResult.failure(
                AuthErrorCode.API_KEY_NAME_INVALID, "API key name is invalid"
            )
        user = await self.store.get_user(user_id)
        if user is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")

        for _ in range(_API_KEY_PREFIX_ATTEMPTS):
            raw_key, prefix = generate_api_key()
            record = ApiKeyRecord.new(user.id, cleaned, prefix, self.passwords.hash(raw_key))
            try:
                stored = await self.store.create_api_key(record)
            except ConstraintViolation as exc:
                if "user_id" in exc.detail:
                    return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")
                if exc.detail.get("field") == "name":
                    return AuthResult.failure(
                        AuthErrorCode.API_KEY_NAME_TAKEN,
                        "An API key with this name already exists",
                    )
                self.logger.warning("api_key_prefix_collision", user_id=user.id)
                continue
            self.logger.info(
                "api_key_created", user_id=user.id, key_id=stored.id, name=cleaned
            )
            return AuthResult.ok(
                "API key created",
                api_key=raw_key,
                api_keys=[ApiKeyInfo.from_record(stored)],
            )
        raise InfrastructureError("could not allocate a unique API key prefix")

    @_guard_infrastructure("list_api_keys")
    async def list_api_keys(self, user_id: str) -> AuthResult:
        user = await self.store.get_user(user_id)
        if user is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND, "User not found")
        records = await self.store.list_api_keys(user.id)
        return AuthResult.ok(api_keys=[ApiKeyInfo.from_record(r) for r in records])

    @_guard_infrastructure("revoke_api_key")
    async def revoke_api_key(self, user_id: str, key_id: str) -> AuthResult:
        if not await self.store.delete_api_key(user_id, key_id):
            return AuthResult.failure(AuthErrorCode.API_KEY_NOT_FOUND, "API key not found")
        self.logger.info("api_key_revoked", user_id=user_id, key_id=key_id)
        return AuthResult.ok("API key revoked")

    async def authenticate_api_key(
        self, raw_key: Optional[str], *, required_role: Optional[str] = None
    ) -> Optional[AuthContext]:
        """Resolve an ``x-api-key`` credential to its owner, or None."""
        prefix = api_key_prefix(raw_key)
        if prefix is None:
            return None
        try:
            record = await self.store.get_api_key_by_prefix(prefix)
            if record is None:
                self.passwords.verify_dummy(raw_key)
                self.logger.warning("api_key_rejected", reason="unknown_prefix")
                return None
            if not self.passwords.verify(raw_key.strip(), record.key_hash):
                self.logger.warning(
                    "api_key_rejected", reason="hash_mismatch", key_id=record.id
                )
                return None
            user = await self.store.get_user(record.user_id)
            if user is None:
                return None
            await self.store.touch_api_key(record.id, self._now())
        except StoreUnavailableError as exc:
            self.logger.error(
                "authenticate_store_unavailable", error=sanitize_error_message(str(exc))
            )
            return None
        role = UserRole(user.role).value
        if required_role and not self._role_allows(role, required_role):
            return None
        return AuthContext(
            user_id=user.id,
            username=user.username,
            role=role,
            token_jti=record.id,
            expires_at=None,
            credential="api_key",
        )

    # -- maintenance ---------------------------------------------------------

    async def cleanup_expired_state(self) -> int:
        """Drop dead blacklist entries and stale refresh records.

        Meant to be called periodically by the host; nothing here schedules it.
        """
        cleaned = await self.registry.cleanup_expired()
        cleaned += await self.store.purge_refresh_tokens(
            self._now(),
            timedelta(days=self.settings.refresh_token_retention_days),
        )
        if cleaned:
            self.logger.debug("auth_state_cleanup", cleaned=cleaned)
        return cleaned
