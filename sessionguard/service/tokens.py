from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from sessionguard.config import Settings
from sessionguard.logging import get_logger

if TYPE_CHECKING:
    from sessionguard.service.revocation import RevocationRegistry

logger = get_logger(__name__)

MFA_VERIFICATION_PURPOSE = "mfa-verification"
PASSWORD_RESET_PURPOSE = "password-reset"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    TEMP = "temp"


class TokenError(str, Enum):
    EXPIRED = "EXPIRED"
    MALFORMED = "MALFORMED"
    WRONG_TYPE = "WRONG_TYPE"
    REVOKED = "REVOKED"


@dataclass
class TokenClaims:
    user_id: str
    kind: TokenKind
    iat: int
    exp: int
    jti: str
    username: Optional[str] = None
    role: Optional[str] = None
    version: Optional[int] = None
    purpose: Optional[str] = None

    def to_payload(self, issuer: str, audience: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "iss": issuer,
            "aud": audience,
            "sub": self.user_id,
            "token_type": self.kind.value,
            "iat": self.iat,
            "exp": self.exp,
            "jti": self.jti,
        }
        for key in ("username", "role", "version", "purpose"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Optional["TokenClaims"]:
        try:
            kind = TokenKind(payload["token_type"])
            user_id = payload["sub"]
            jti = payload["jti"]
            iat = payload["iat"]
            exp = payload["exp"]
        except (KeyError, ValueError):
            return None
        if not isinstance(user_id, str) or not isinstance(jti, str):
            return None
        if not all(isinstance(v, int) and not isinstance(v, bool) for v in (iat, exp)):
            return None
        version = payload.get("version")
        if version is not None and (
            not isinstance(version, int) or isinstance(version, bool)
        ):
            return None
        return cls(
            user_id=user_id,
            kind=kind,
            iat=iat,
            exp=exp,
            jti=jti,
            username=payload.get("username"),
            role=payload.get("role"),
            version=version,
            purpose=payload.get("purpose"),
        )


@dataclass
class IssuedToken:
    token: str
    jti: str
    issued_at: int
    expires_at: int


@dataclass
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken
    token_type: str = "Bearer"


@dataclass
class TokenVerification:
    valid: bool
    claims: Optional[TokenClaims] = None
    error: Optional[TokenError] = None

    @classmethod
    def ok(cls, claims: TokenClaims) -> "TokenVerification":
        return cls(valid=True, claims=claims)

    @classmethod
    def fail(
        cls, error: TokenError, claims: Optional[TokenClaims] = None
    ) -> "TokenVerification":
        return cls(valid=False, claims=claims, error=error)


class TokenIssuer:
    """Mint and verify HS256-signed access, refresh and temp tokens.

    Tokens are three base64url segments (header, claims, signature). Access
    and temp tokens are checked against the revocation blacklist; refresh
    tokens carry the user's version counter at mint time and are rejected
    once the counter moves past it. Access tokens are never version checked,
    so a global logout reaches them only when they expire.
    """

    def __init__(
        self,
        settings: Settings,
        registry: "RevocationRegistry",
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self._clock = clock
        self._secret = settings.jwt_secret.encode()
        self._ttls = {
            TokenKind.ACCESS: settings.access_token_ttl_seconds,
            TokenKind.REFRESH: settings.refresh_token_ttl_seconds,
            TokenKind.TEMP: settings.temp_token_ttl_seconds,
        }

    def now(self) -> int:
        return int(self._clock())

    def ttl_for(self, kind: TokenKind) -> int:
        return self._ttls[TokenKind(kind)]

    # -- encoding ------------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.settings.jwt_algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload if signature, algorithm, issuer and audience match."""
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != self.settings.jwt_algorithm:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        return payload

    def peek(self, token: str) -> Optional[TokenClaims]:
        """Decode a correctly signed token without expiry or revocation checks."""
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        return TokenClaims.from_payload(payload)

    # -- issuance ------------------------------------------------------------

    def issue(
        self,
        kind: TokenKind,
        user_id: str,
        *,
        username: Optional[str] = None,
        role: Optional[str] = None,
        version: Optional[int] = None,
        purpose: Optional[str] = None,
    ) -> IssuedToken:
        kind = TokenKind(kind)
        issued_at = self.now()
        claims = TokenClaims(
            user_id=user_id,
            kind=kind,
            iat=issued_at,
            exp=issued_at + self.ttl_for(kind),
            jti=str(uuid.uuid4()),
            username=username,
            role=role,
            version=version,
            purpose=purpose,
        )
        token = self._encode_jwt(
            claims.to_payload(self.settings.jwt_issuer, self.settings.jwt_audience)
        )
        return IssuedToken(
            token=token, jti=claims.jti, issued_at=claims.iat, expires_at=claims.exp
        )

    def issue_access(self, user_id: str, username: str, role: str) -> IssuedToken:
        return self.issue(TokenKind.ACCESS, user_id, username=username, role=role)

    async def issue_refresh(self, user_id: str) -> IssuedToken:
        version = await self.registry.min_version(user_id)
        return self.issue(TokenKind.REFRESH, user_id, version=version)

    def issue_temp(self, user_id: str, purpose: str) -> IssuedToken:
        return self.issue(TokenKind.TEMP, user_id, purpose=purpose)

    async def issue_pair(self, user_id: str, username: str, role: str) -> TokenPair:
        return TokenPair(
            access=self.issue_access(user_id, username, role),
            refresh=await self.issue_refresh(user_id),
        )

    # -- verification --------------------------------------------------------

    async def verify(
        self, kind: TokenKind, token: str, *, purpose: Optional[str] = None
    ) -> TokenVerification:
        kind = TokenKind(kind)
        payload = self._decode_jwt(token)
        if payload is None:
            return TokenVerification.fail(TokenError.MALFORMED)
        claims = TokenClaims.from_payload(payload)
        if claims is None:
            return TokenVerification.fail(TokenError.MALFORMED)
        if self.now() >= claims.exp:
            return TokenVerification.fail(TokenError.EXPIRED, claims)
        if claims.kind is not kind:
            return TokenVerification.fail(TokenError.WRONG_TYPE, claims)
        if kind is TokenKind.TEMP and purpose is not None and claims.purpose != purpose:
            return TokenVerification.fail(TokenError.WRONG_TYPE, claims)

        if await self.registry.is_blacklisted(claims.jti):
            return TokenVerification.fail(TokenError.REVOKED, claims)
        if kind is TokenKind.REFRESH:
            if claims.version is None:
                return TokenVerification.fail(TokenError.MALFORMED, claims)
            if claims.version < await self.registry.min_version(claims.user_id):
                return TokenVerification.fail(TokenError.REVOKED, claims)
        return TokenVerification.ok(claims)


def hash_refresh_token(raw_token: str) -> str:
    """One-way digest under which refresh records are stored."""
    return hashlib.sha256(raw_token.encode()).hexdigest()
