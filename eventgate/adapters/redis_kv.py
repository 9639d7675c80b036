"""Redis key/value adapter for the aggregate counters."""
from typing import Callable, TypeVar

import structlog
from redis import Redis
from redis.exceptions import RedisError
from .base import KVAdapter
from ..config import get_settings
from ..errors import MetricsUnavailable

log = structlog.get_logger()
settings = get_settings()

T = TypeVar("T")


class RedisKVAdapter(KVAdapter):
    """Redis implementation of the key/value adapter.

    Plain GET/SET under a namespace prefix; the aggregator owns the
    read-modify-write and INCR is never issued.
    """

    def __init__(self, redis_url: str | None = None, namespace: str = "eventgate"):
        """
        Args:
            redis_url: Redis connection URL (defaults to settings.REDIS_URL)
            namespace: Prefix applied to every key
        """
        self.redis_url = redis_url or str(settings.REDIS_URL)
        self.namespace = namespace
        self._client: Redis | None = None

    def _get_client(self) -> Redis:
        if self._client is None:
            self._client = Redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _call(self, operation: str, key: str, fn: Callable[[Redis], T]) -> T:
        try:
            return fn(self._get_client())
        except RedisError as e:
            log.error("redis.operation_failed", operation=operation, key=key, error=str(e))
            raise MetricsUnavailable(f"Redis {operation} failed: {e}", key=key) from e

    async def get(self, key: str) -> str | None:
        """Raises MetricsUnavailable if Redis cannot be reached."""
        return self._call("get", key, lambda client: client.get(self._key(key)))

    async def put(self, key: str, value: str) -> None:
        """Raises MetricsUnavailable if Redis cannot be reached."""
        self._call("set", key, lambda client: client.set(self._key(key), value))

    async def health_check(self) -> bool:
        try:
            return bool(self._get_client().ping())
        except Exception as e:
            log.warning("redis.health_check_failed", error=str(e))
            return False

    def close(self):
        if self._client:
            self._client.close()
            self._client = None
