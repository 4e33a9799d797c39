"""
Redis utility abstractions: serialization, merge locks and scan checkpoints
"""

import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone

import redis.asyncio as redis
import orjson
from redis.exceptions import RedisError, ConnectionError

from .config import get_redis_config, RedisConfig
from .errors import ConflictError
from .ports import CheckpointStore, LockProvider

logger = logging.getLogger(__name__)


class CacheManager:
    """
    Pooled Redis client with orjson (de)serialization.

    Reads and writes degrade on Redis errors: a failed get is a miss and a
    failed set or delete returns False. Locks go through ``client`` directly.
    """

    def __init__(self, config: Optional[RedisConfig] = None):
        self.config = config or get_redis_config()
        self._pool: Optional[redis.ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return

        logger.info(f"Connecting to Redis at {self.config.host}:{self.config.port} (db {self.config.db})")

        pool_kwargs = {
            "host": self.config.host,
            "port": self.config.port,
            "db": self.config.db,
            "max_connections": self.config.max_connections,
            "socket_timeout": self.config.socket_timeout,
            "socket_connect_timeout": self.config.socket_connect_timeout,
            "decode_responses": self.config.decode_responses,
            "retry_on_timeout": True,
            "retry_on_error": [ConnectionError],
        }
        if self.config.password:
            pool_kwargs["password"] = self.config.password

        try:
            self._pool = redis.ConnectionPool(**pool_kwargs)
            self._client = redis.Redis(connection_pool=self._pool)
            await self._client.ping()
        except Exception as e:
            logger.error(f"Failed to initialize Redis: {e}")
            raise

        self._initialized = True
        logger.info("Redis ready")

    async def cleanup(self) -> None:
        if self._pool:
            await self._pool.disconnect()
            self._initialized = False
            logger.info("Redis connection pool closed")

    @property
    def client(self) -> redis.Redis:
        if not self._initialized:
            raise RuntimeError("Cache manager not initialized. Call initialize() first.")
        return self._client

    async def health_check(self) -> Dict[str, Any]:
        if not self._initialized:
            return {"status": "error", "message": "Redis not initialized"}
        try:
            await self._client.ping()
            return {"status": "healthy"}
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}

    def serialize(self, data: Any) -> bytes:
        return orjson.dumps(data)

    def deserialize(self, data: Optional[bytes]) -> Any:
        if data is None:
            return None
        return orjson.loads(data)

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None
        return self.deserialize(raw)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        try:
            await self.client.setex(key, ttl_seconds or self.config.default_ttl_seconds, self.serialize(value))
            return True
        except RedisError as e:
            logger.warning(f"Redis set failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            return await self.client.delete(key) > 0
        except RedisError as e:
            logger.warning(f"Redis delete failed for {key}: {e}")
            return False


class CacheKeyBuilder:
    """Utility class for building consistent Redis keys"""

    PREFIX = "dedup"

    @staticmethod
    def lock_key(name: str) -> str:
        """Key for an exclusive lock, e.g. on patient:<id>"""
        return f"{CacheKeyBuilder.PREFIX}:lock:{name}"

    @staticmethod
    def scan_checkpoint_key(scope_id: str) -> str:
        """Key holding the resume point of a population scan"""
        return f"{CacheKeyBuilder.PREFIX}:scan:{scope_id}"


class RedisLockProvider(LockProvider):
    """
    Exclusive locks backed by redis-py's Lock (SET NX PX plus token-checked release).

    A lock that cannot be taken within ``lock_wait_seconds`` raises ConflictError;
    a held lock expires after ``merge_lock_ttl_seconds`` if its owner dies.
    """

    def __init__(self, cache_manager: CacheManager):
        self.cache_manager = cache_manager
        self.config = cache_manager.config

    async def acquire(self, key: str, owner: str) -> Any:
        lock = self.cache_manager.client.lock(
            CacheKeyBuilder.lock_key(key),
            timeout=self.config.merge_lock_ttl_seconds,
            blocking_timeout=self.config.lock_wait_seconds,
        )
        acquired = await lock.acquire(token=owner)
        if not acquired:
            logger.info(f"Lock {key} busy; {owner} gave up after {self.config.lock_wait_seconds}s")
            raise ConflictError(f"{key} is held by another merge or edit", {"lock": key})
        return lock

    async def release(self, handle: Any) -> None:
        await handle.release()


class RedisCheckpointStore(CheckpointStore):
    """Scan checkpoints stored as small orjson documents"""

    def __init__(self, cache_manager: CacheManager):
        self.cache_manager = cache_manager
        self.ttl_seconds = cache_manager.config.scan_checkpoint_ttl_seconds

    async def get(self, name: str) -> Optional[str]:
        data = await self.cache_manager.get(CacheKeyBuilder.scan_checkpoint_key(name))
        if not data:
            return None
        return data.get("last_patient_id")

    async def set(self, name: str, value: str) -> None:
        stored = await self.cache_manager.set(
            CacheKeyBuilder.scan_checkpoint_key(name),
            {"last_patient_id": value, "updated_at": datetime.now(timezone.utc).isoformat()},
            ttl_seconds=self.ttl_seconds
        )
        if not stored:
            logger.warning(f"Scan checkpoint for {name} not saved; a restart will redo this batch")

    async def clear(self, name: str) -> None:
        await self.cache_manager.delete(CacheKeyBuilder.scan_checkpoint_key(name))

