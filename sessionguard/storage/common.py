"""Storage helpers shared between the memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
from ipaddress import ip_address
from pathlib import Path
from typing import Any, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from sessionguard.logging import get_logger

logger = get_logger(__name__)

# system_setting keys
SYSTEM_INITIALIZED_KEY = "is_system_initialized"
ALLOW_REGISTRATION_KEY = "allow_new_user_registration"


# ============================================================================
# MFA SECRET ENCRYPTION
# ============================================================================


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: Optional[str], fs_root: Path) -> Fernet:
    """Build the Fernet cipher used to encrypt TOTP secrets at rest.

    Key material is taken from the argument, then ``MFA_SECRET_KEY``, then
    ``JWT_SECRET``; failing all three a random key is generated and stored
    under ``fs_root/.mfa_secret``.
    """
    material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
    if not material:
        secret_path = fs_root / ".mfa_secret"
        try:
            if secret_path.exists():
                material = secret_path.read_text().strip()
        except OSError as exc:
            logger.warning("mfa_key_read_failed", error=str(exc))
        if not material:
            generated = secrets.token_urlsafe(64)
            try:
                secret_path.parent.mkdir(parents=True, exist_ok=True)
                secret_path.write_text(generated)
                os.chmod(secret_path, 0o600)
                material = generated
            except OSError as exc:
                raise RuntimeError("Unable to persist MFA encryption key") from exc
    return Fernet(derive_cipher_key(material))


def encrypt_mfa_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_mfa_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    """Decrypt a stored secret; an undecryptable value reads as no secret."""
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        logger.warning("mfa_secret_decrypt_failed")
        return None


# ============================================================================
# ROW PARSING
# ============================================================================


def parse_json_list(raw: Any) -> List[str]:
    """Parse a JSON array column (string, list, or None) into a list of strings."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    if isinstance(raw, (list, tuple)):
        return [str(item) for item in raw]
    return []


def normalize_ip_address(raw_ip: Any) -> Optional[str]:
    """Return a canonical IP string, or None for blank and unparseable input."""
    if raw_ip is None:
        return None
    stripped = str(raw_ip).strip()
    if not stripped:
        return None
    try:
        return str(ip_address(stripped))
    except ValueError:
        return None
