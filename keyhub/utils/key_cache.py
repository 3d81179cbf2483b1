"""Read-through cache of public-only key records (Redis).

Entries are written only on the anonymous read path and never contain a
private key.  Failures are best effort: a broken cache degrades to store
reads, and a failed eviction is logged at WARNING because it leaves a stale
record readable until the TTL expires.
"""

from __future__ import annotations

from typing import Optional

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from keyhub.models import PublicKeyRecord
from keyhub.utils.logger import logger
from keyhub.utils.security_utils import lookup_hash

DEFAULT_PREFIX = "keyhub:public-key:"
DEFAULT_TTL_SECONDS = 300


class KeyCache:
    def __init__(self, redis: Redis, prefix: str = DEFAULT_PREFIX, ttl: int = DEFAULT_TTL_SECONDS):
        if ttl <= 0:
            raise ValueError(f"cache ttl must be positive, got {ttl}")
        self._redis = redis
        self._prefix = prefix
        self._ttl = ttl

    def cache_key(self, key_id: str) -> str:
        return f"{self._prefix}{lookup_hash(key_id)}"

    async def get(self, key_id: str) -> Optional[PublicKeyRecord]:
        """Return the cached record, or ``None`` on a miss or cache failure."""
        try:
            raw = await self._redis.get(self.cache_key(key_id))
        except (RedisError, OSError) as exc:
            logger.warning("key_cache.get_failed", extra={"error": str(exc)})
            return None
        if raw is None:
            return None
        try:
            return PublicKeyRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("key_cache.corrupt_entry", extra={"cache_key": self.cache_key(key_id)})
            return None

    async def set(self, key_id: str, record: PublicKeyRecord, ttl_seconds: Optional[int] = None) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError(f"cache ttl must be positive, got {ttl}")
        public_only = record.model_copy(update={"public_key": record.public_key.without_private_key()})
        try:
            await self._redis.set(
                self.cache_key(key_id),
                public_only.model_dump_json(),
                ex=ttl,
            )
        except (RedisError, OSError) as exc:
            logger.warning("key_cache.set_failed", extra={"error": str(exc)})

    async def evict(self, key_id: str) -> None:
        try:
            await self._redis.delete(self.cache_key(key_id))
        except (RedisError, OSError):
            logger.warning(
                "key_cache.evict_failed; stale entry may be served until TTL",
                extra={"cache_key": self.cache_key(key_id), "ttl": self._ttl},
                exc_info=True,
            )
