from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import os
import secrets
import string
import time
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import quote, urlencode

import qrcode
from qrcode.image.svg import SvgPathImage

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.storage.models import MfaEnrollment

logger = get_logger(__name__)

_BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits


class MfaEngine:
    """RFC 6238 TOTP (HMAC-SHA1, as authenticator apps expect) and backup codes."""

    def __init__(
        self,
        *,
        issuer: str = "SessionGuard",
        window: int = 2,
        interval: int = 30,
        digits: int = 6,
        backup_code_count: int = 10,
        backup_code_length: int = 8,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window < 0 or interval <= 0 or digits <= 0:
            raise ValueError("window must be >= 0, interval and digits > 0")
        self.issuer = issuer
        self.window = window
        self.interval = interval
        self.digits = digits
        self.backup_code_count = backup_code_count
        self.backup_code_length = backup_code_length
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "MfaEngine":
        return cls(
            issuer=settings.mfa_issuer,
            window=settings.mfa_window,
            backup_code_count=settings.mfa_backup_code_count,
            **kwargs,
        )

    # -- enrollment ----------------------------------------------------------

    def generate_secret(self) -> str:
        return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")

    def generate_backup_codes(self) -> List[str]:
        return [
            "".join(
                secrets.choice(_BACKUP_CODE_ALPHABET)
                for _ in range(self.backup_code_length)
            )
            for _ in range(self.backup_code_count)
        ]

    def provisioning_uri(self, secret: str, account_label: str) -> str:
        label = quote(f"{self.issuer}:{account_label}", safe=":@")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    @staticmethod
    def qr_code_data_url(provisioning_uri: str) -> str:
        """Render the URI as an SVG data URL an authenticator app can scan."""
        qr = qrcode.QRCode(border=2, image_factory=SvgPathImage)
        qr.add_data(provisioning_uri)
        qr.make(fit=True)
        buffer = io.BytesIO()
        qr.make_image().save(buffer)
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/svg+xml;base64,{encoded}"

    def setup(self, account_label: str) -> MfaEnrollment:
        secret = self.generate_secret()
        uri = self.provisioning_uri(secret, account_label)
        return MfaEnrollment(
            secret=secret,
            backup_codes=self.generate_backup_codes(),
            provisioning_uri=uri,
            qr_code_data_url=self.qr_code_data_url(uri),
        )

    # -- TOTP ----------------------------------------------------------------

    @staticmethod
    def _decode_secret(secret: str) -> Optional[bytes]:
        normalized = secret.replace(" ", "").upper()
        padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
        try:
            return base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            return None

    def is_valid_secret(self, secret: Optional[str]) -> bool:
        if not secret:
            return False
        key = self._decode_secret(secret)
        return bool(key)

    def generate_code(self, secret: str, at: Optional[float] = None) -> str:
        key = self._decode_secret(secret)
        if not key:
            logger.warning("totp_secret_invalid")
            return ""
        timestamp = self._clock() if at is None else at
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (
            int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF
        ) % (10**self.digits)
        return str(code_int).zfill(self.digits)

    def verify_code(self, code: str, secret: str, *, at: Optional[float] = None) -> bool:
        if not code or not secret:
            return False
        candidate = code.strip().replace(" ", "")
        if len(candidate) != self.digits or not (candidate.isascii() and candidate.isdigit()):
            return False
        timestamp = self._clock() if at is None else at
        for offset in range(-self.window, self.window + 1):
            generated = self.generate_code(secret, timestamp + offset * self.interval)
            if generated and hmac.compare_digest(generated, candidate):
                return True
        return False

    def seconds_remaining(self, at: Optional[float] = None) -> int:
        timestamp = self._clock() if at is None else at
        return self.interval - int(timestamp % self.interval)

    # -- backup codes --------------------------------------------------------

    @staticmethod
    def verify_backup_code(
        code: str, remaining: Sequence[str]
    ) -> Tuple[bool, List[str]]:
        """Match case-insensitively and return the set without the used code."""
        codes = list(remaining)
        if not code:
            return False, codes
        wanted = code.strip().lower()
        for index, candidate in enumerate(codes):
            if hmac.compare_digest(candidate.lower().encode(), wanted.encode()):
                del codes[index]
                return True, codes
        return False, codes
