"""Base adapter interface for key/value counter backends."""
from abc import ABC, abstractmethod


class KVAdapter(ABC):
    """
    Abstract interface for the durable key/value collaborator.

    Only plain reads and writes are offered; there is no atomic increment.
    Callers perform their own read-modify-write.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """
        Read a value.

        Args:
            key: Key to read

        Returns:
            The stored string, or None if the key is absent
        """
        pass

    @abstractmethod
    async def put(self, key: str, value: str) -> None:
        """
        Write a value, replacing any previous one.

        Args:
            key: Key to write
            value: String value to store
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the backend is healthy and accessible.

        Returns:
            True if backend is healthy, False otherwise
        """
        pass
