"""
Storage Interface for FleetWatch

Abstract base class for the key/value store that holds durable fleet
statistics between restarts.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional


class Storage(ABC):
    """
    Abstract storage interface.

    Implementations include:
    - MemoryStorage: In-process storage for tests and ephemeral runs
    - JsonFileStorage: Single JSON document on local disk
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """
        Retrieve value by key.

        Args:
            key: Storage key

        Returns:
            Stored value or None if not found
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: Any) -> bool:
        """
        Store value under key.

        Args:
            key: Storage key
            value: JSON-serializable value

        Returns:
            True if successful, False otherwise
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key. Returns False if it was not present."""
        pass

    @abstractmethod
    async def keys(self) -> List[str]:
        """List stored keys."""
        pass

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def connect(self) -> bool:
        return True

    async def close(self) -> bool:
        return True
