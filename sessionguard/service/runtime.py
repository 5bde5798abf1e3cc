from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.auth import AuthService
from sessionguard.service.mfa import MfaEngine
from sessionguard.service.passwords import PasswordPolicyEngine
from sessionguard.service.revocation import (
    InMemoryRevocationRegistry,
    RedisRevocationRegistry,
)
from sessionguard.service.tokens import TokenIssuer
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton store, registry and engines behind ``AuthService``."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        use_memory = self.settings.use_memory_store or self.settings.test_mode
        self.store: Union[MemoryStore, PostgresStore] = (
            MemoryStore(
                fs_root=self.settings.shared_fs_root,
                mfa_encryption_key=self.settings.mfa_encryption_key,
            )
            if use_memory
            else PostgresStore(
                self.settings.database_url,
                fs_root=self.settings.shared_fs_root,
                mfa_encryption_key=self.settings.mfa_encryption_key,
            )
        )
        logger.info(
            "runtime_store_initialized", store_type="memory" if use_memory else "postgres"
        )

        if self.settings.redis_url:
            self.registry: Union[InMemoryRevocationRegistry, RedisRevocationRegistry] = (
                RedisRevocationRegistry.from_url(
                    self.settings.redis_url,
                    default_ttl=self.settings.refresh_token_ttl_seconds,
                )
            )
            logger.info(
                "runtime_registry_initialized",
                registry_type="redis",
                redis_url=_mask_url_password(self.settings.redis_url),
            )
        else:
            self.registry = InMemoryRevocationRegistry(
                default_ttl=self.settings.refresh_token_ttl_seconds
            )
            if not self.settings.test_mode:
                logger.warning(
                    "runtime_registry_memory_fallback",
                    detail="revocations will not survive a restart; set REDIS_URL",
                )

        self.tokens = TokenIssuer(self.settings, self.registry)
        self.passwords = PasswordPolicyEngine.from_settings(self.settings)
        self.mfa = MfaEngine.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.registry,
            self.tokens,
            self.passwords,
            self.mfa,
            self.settings,
        )
        logger.info(
            "runtime_initialized",
            registry_type=type(self.registry).__name__,
            mfa_require_confirmation=self.settings.mfa_require_confirmation,
        )

    async def startup(self, *, install_schema: bool = False) -> None:
        """Open pooled connections; a no-op for the in-memory store."""
        if isinstance(self.store, PostgresStore):
            await self.store.open(install_schema=install_schema)

    async def shutdown(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.close()
        if isinstance(self.registry, RedisRevocationRegistry):
            await self.registry.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from a freshly read environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
