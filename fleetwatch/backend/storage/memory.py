"""
In-Memory Storage Implementation

Testing-friendly storage without touching disk.
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional

from .base import Storage


class MemoryStorage(Storage):
    """In-memory storage. Values are deep-copied in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})
        self._lock = asyncio.Lock()
        self.connected = False

    async def connect(self) -> bool:
        self.connected = True
        return True

    async def close(self) -> bool:
        self.connected = False
        return True

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> bool:
        async with self._lock:
            self._data[key] = copy.deepcopy(value)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def keys(self) -> List[str]:
        async with self._lock:
            return list(self._data.keys())
