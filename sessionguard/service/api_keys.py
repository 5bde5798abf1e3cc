from __future__ import annotations

import re
import secrets
from typing import Optional, Tuple

API_KEY_SCHEME = "sg"
API_KEY_NAME_MAX_LENGTH = 100

# 12 hex chars: unique per key, stored in clear for lookup
_PREFIX_BYTES = 6
_SECRET_BYTES = 32

_KEY_PATTERN = re.compile(
    rf"^{API_KEY_SCHEME}_(?P<prefix>[0-9a-f]{{{_PREFIX_BYTES * 2}}})_(?P<secret>[A-Za-z0-9_-]{{20,}})$"
)


def generate_api_key() -> Tuple[str, str]:
    """Return ``(raw_key, prefix)``; the raw key is shown to its owner once."""
    prefix = secrets.token_hex(_PREFIX_BYTES)
    secret = secrets.token_urlsafe(_SECRET_BYTES)
    return f"{API_KEY_SCHEME}_{prefix}_{secret}", prefix


def api_key_prefix(raw_key: Optional[str]) -> Optional[str]:
    """Extract the lookup prefix, or None when the key is not well formed."""
    if not raw_key:
        return None
    match = _KEY_PATTERN.match(raw_key.strip())
    if not match:
        return None
    return match.group("prefix")


def normalize_api_key_name(name: Optional[str]) -> Optional[str]:
    cleaned = (name or "").strip()
    if not cleaned or len(cleaned) > API_KEY_NAME_MAX_LENGTH:
        return None
    return cleaned
