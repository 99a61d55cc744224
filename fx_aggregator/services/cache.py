"""
Redis snapshot cache for the FX Rate Aggregator.
Stores the latest published rates and error flag so other processes can read them.
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from ..api.schemas import FXRate, FXRates
from ..core.config import settings, provider_config
from ..core.logging_config import create_logger

logger = create_logger(__name__)


class SnapshotCache:
    """Latest-value store for rate snapshots. Failures are logged, never raised."""

    def __init__(self, redis_client: Optional[Any] = None, ttl: Optional[int] = None):
        self._pool: Optional[ConnectionPool] = None
        self._redis = redis_client
        self._owns_client = redis_client is None
        self._connection_lock = asyncio.Lock()
        self.ttl = ttl or settings.snapshot_ttl

    async def connect(self) -> None:
        """Initialize Redis connection pool."""
        async with self._connection_lock:
            if self._redis is not None:
                return
            try:
                self._pool = ConnectionPool.from_url(
                    settings.get_redis_url(),
                    max_connections=10,
                    retry_on_timeout=True,
                    health_check_interval=30
                )
                self._redis = redis.Redis(connection_pool=self._pool)
                await self._redis.ping()
                logger.info("Successfully connected to Redis", extra={
                    "redis_host": settings.redis_host,
                    "redis_port": settings.redis_port,
                    "redis_db": settings.redis_db
                })
            except Exception as e:
                logger.error("Failed to connect to Redis", extra={
                    "error": str(e),
                    "redis_host": settings.redis_host,
                    "redis_port": settings.redis_port
                })
                self._redis = None
                if self._pool is not None:
                    await self._pool.disconnect()
                    self._pool = None

    async def disconnect(self) -> None:
        """Close Redis connection."""
        async with self._connection_lock:
            if self._redis is not None and self._owns_client:
                await self._redis.close()
            if self._owns_client:
                self._redis = None
            if self._pool is not None:
                await self._pool.disconnect()
                self._pool = None
            logger.info("Disconnected from Redis")

    async def health_check(self) -> bool:
        """Check Redis connection health."""
        try:
            if self._redis is None:
                return False
            await self._redis.ping()
            return True
        except Exception as e:
            logger.warning("Redis health check failed", extra={"error": str(e)})
            return False

    async def publish_snapshot(self, rates: FXRates, error_state: bool) -> bool:
        """Store a rates snapshot and the error flag. Returns False if nothing was stored."""
        if self._redis is None:
            return False
        try:
            payload = {key: rate.model_dump(mode='json') for key, rate in rates.items()}
            pipe = self._redis.pipeline()
            pipe.setex(provider_config.CACHE_KEYS['rates'], self.ttl, json.dumps(payload))
            pipe.setex(provider_config.CACHE_KEYS['error_state'], self.ttl, '1' if error_state else '0')
            pipe.setex(provider_config.CACHE_KEYS['last_update'], self.ttl, datetime.utcnow().isoformat())
            await pipe.execute()

            logger.debug("Stored rates snapshot", extra={
                "pairs": len(rates),
                "error_state": error_state,
                "ttl": self.ttl
            })
            return True
        except Exception as e:
            logger.error("Failed to store rates snapshot", extra={
                "pairs": len(rates),
                "error": str(e)
            })
            return False

    async def get_snapshot(self) -> FXRates:
        """Read back the stored snapshot, or an empty table."""
        if self._redis is None:
            return {}
        try:
            data = await self._redis.get(provider_config.CACHE_KEYS['rates'])
            if not data:
                return {}
            payload: Dict[str, Any] = json.loads(data)
            return {key: FXRate(**value) for key, value in payload.items()}
        except Exception as e:
            logger.error("Failed to read rates snapshot", extra={"error": str(e)})
            return {}

    async def get_error_state(self) -> Optional[bool]:
        """Stored error flag, or None when nothing has been published."""
        if self._redis is None:
            return None
        try:
            data = await self._redis.get(provider_config.CACHE_KEYS['error_state'])
            if data is None:
                return None
            if isinstance(data, bytes):
                data = data.decode()
            return data == '1'
        except Exception as e:
            logger.error("Failed to read error state", extra={"error": str(e)})
            return None

    def subscriber_for(self, service: Any) -> Callable[[FXRates], Any]:
        """Build a rate-update callback that mirrors ``service`` into Redis."""
        async def publish(rates: FXRates) -> None:
            await self.publish_snapshot(rates, service.is_in_error_state())
        return publish
