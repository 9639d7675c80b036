"""In-memory key/value adapter."""
import structlog
from .base import KVAdapter

log = structlog.get_logger()


class InMemoryKVAdapter(KVAdapter):
    """In-memory implementation of the key/value adapter."""

    def __init__(self):
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value
        log.debug("kv.put", key=key, adapter="memory")

    async def health_check(self) -> bool:
        """In-memory adapter is always healthy."""
        return True

    def keys(self) -> list[str]:
        return list(self._data)
