from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from sessionguard.logging import get_logger
from sessionguard.storage.errors import StoreUnavailableError

logger = get_logger(__name__)


class RevocationRegistry(Protocol):
    """jti blacklist plus per-user minimum refresh-token version."""

    async def blacklist(self, jti: str, expires_at: Optional[int] = None) -> None: ...

    async def is_blacklisted(self, jti: str) -> bool: ...

    async def claim(self, jti: str, expires_at: Optional[int] = None) -> bool: ...

    async def release(self, jti: str) -> None: ...

    async def bump_version(self, user_id: str) -> int: ...

    async def min_version(self, user_id: str) -> int: ...

    async def cleanup_expired(self) -> int: ...


class InMemoryRevocationRegistry:
    """Process-local registry; state is lost on restart.

    ``expires_at`` is the revoked token's own expiry (epoch seconds). Entries
    past it can never verify again and are dropped by ``cleanup_expired``.
    """

    def __init__(
        self, *, clock: Callable[[], float] = time.time, default_ttl: int = 7 * 24 * 3600
    ) -> None:
        self._clock = clock
        self._default_ttl = default_ttl
        self._state_lock = threading.Lock()
        self._blacklist: Dict[str, int] = {}
        self._versions: Dict[str, int] = {}

    def _now(self) -> int:
        return int(self._clock())

    async def blacklist(self, jti: str, expires_at: Optional[int] = None) -> None:
        if not jti:
            return
        expiry = int(expires_at) if expires_at is not None else self._now() + self._default_ttl
        with self._state_lock:
            current = self._blacklist.get(jti)
            if current is None or expiry > current:
                self._blacklist[jti] = expiry

    async def is_blacklisted(self, jti: str) -> bool:
        with self._state_lock:
            return jti in self._blacklist

    async def claim(self, jti: str, expires_at: Optional[int] = None) -> bool:
        """Blacklist ``jti`` unless already present; True only for the first caller."""
        if not jti:
            return False
        expiry = int(expires_at) if expires_at is not None else self._now() + self._default_ttl
        with self._state_lock:
            if jti in self._blacklist:
                return False
            self._blacklist[jti] = expiry
        return True

    async def release(self, jti: str) -> None:
        with self._state_lock:
            self._blacklist.pop(jti, None)

    async def bump_version(self, user_id: str) -> int:
        with self._state_lock:
            version = self._versions.get(user_id, 0) + 1
            self._versions[user_id] = version
        logger.info("token_version_bumped", user_id=user_id, version=version)
        return version

    async def min_version(self, user_id: str) -> int:
        with self._state_lock:
            return self._versions.get(user_id, 0)

    async def cleanup_expired(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [jti for jti, exp in self._blacklist.items() if exp <= now]
            for jti in expired:
                self._blacklist.pop(jti, None)
        if expired:
            logger.debug("revocation_cleanup", cleaned=len(expired))
        return len(expired)


class RedisRevocationRegistry:
    """Registry shared across processes and restarts.

    Blacklisted jtis are TTL keys that expire with the token; the version
    counter is a plain ``INCR`` key. A failed blacklist lookup is treated as
    revoked.
    """

    BLACKLIST_PREFIX = "auth:jti:revoked:"
    VERSION_PREFIX = "auth:user:version:"

    def __init__(
        self,
        client: "aioredis.Redis",
        *,
        clock: Callable[[], float] = time.time,
        default_ttl: int = 7 * 24 * 3600,
    ) -> None:
        self.client = client
        self._clock = clock
        self._default_ttl = default_ttl

    @classmethod
    def from_url(
        cls, redis_url: str, *, socket_timeout: float = 5.0, **kwargs
    ) -> "RedisRevocationRegistry":
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, **kwargs)

    def _ttl_seconds(self, expires_at: Optional[int]) -> int:
        if expires_at is None:
            return self._default_ttl
        return max(1, int(expires_at) - int(self._clock()))

    async def blacklist(self, jti: str, expires_at: Optional[int] = None) -> None:
        if not jti:
            return
        try:
            await self.client.set(
                f"{self.BLACKLIST_PREFIX}{jti}", "1", ex=self._ttl_seconds(expires_at)
            )
        except RedisError as exc:
            logger.error("redis_blacklist_failed", jti=jti, error=str(exc))
            raise StoreUnavailableError("revocation registry unavailable") from exc

    async def is_blacklisted(self, jti: str) -> bool:
        try:
            return bool(await self.client.exists(f"{self.BLACKLIST_PREFIX}{jti}"))
        except RedisError as exc:
            logger.warning(
                "check_blacklist_failed_defaulting_to_revoked", jti=jti, error=str(exc)
            )
            return True

    async def claim(self, jti: str, expires_at: Optional[int] = None) -> bool:
        if not jti:
            return False
        try:
            created = await self.client.set(
                f"{self.BLACKLIST_PREFIX}{jti}",
                "1",
                ex=self._ttl_seconds(expires_at),
                nx=True,
            )
        except RedisError as exc:
            logger.error("redis_claim_failed", jti=jti, error=str(exc))
            raise StoreUnavailableError("revocation registry unavailable") from exc
        return bool(created)

    async def release(self, jti: str) -> None:
        try:
            await self.client.delete(f"{self.BLACKLIST_PREFIX}{jti}")
        except RedisError as exc:
            logger.error("redis_release_failed", jti=jti, error=str(exc))
            raise StoreUnavailableError("revocation registry unavailable") from exc

    async def bump_version(self, user_id: str) -> int:
        try:
            version = int(await self.client.incr(f"{self.VERSION_PREFIX}{user_id}"))
        except RedisError as exc:
            logger.error("redis_version_bump_failed", user_id=user_id, error=str(exc))
            raise StoreUnavailableError("revocation registry unavailable") from exc
        logger.info("token_version_bumped", user_id=user_id, version=version)
        return version

    async def min_version(self, user_id: str) -> int:
        try:
            raw = await self.client.get(f"{self.VERSION_PREFIX}{user_id}")
        except RedisError as exc:
            logger.error("redis_version_read_failed", user_id=user_id, error=str(exc))
            raise StoreUnavailableError("revocation registry unavailable") from exc
        try:
            return int(raw) if raw is not None else 0
        except (TypeError, ValueError):
            logger.warning("redis_version_corrupt", user_id=user_id)
            return 0

    async def cleanup_expired(self) -> int:
        # Redis expires blacklist keys on its own
        return 0

    async def close(self) -> None:
        await self.client.aclose()
