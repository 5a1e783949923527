"""
JSON File Storage

Keeps every key in one JSON document. Writes go to a temporary file in
the same directory and are moved into place, so a crash mid-write leaves
the previous document intact.

A missing file is an empty store. A corrupt file is logged, left on disk
for inspection, and treated as empty.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from fleetwatch.core.error_handling import PersistenceError

from .base import Storage

logger = logging.getLogger(__name__)


class JsonFileStorage(Storage):
    """Storage backed by a single JSON file."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._cache: Optional[Dict[str, Any]] = None

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable state file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring state file {self.path}: top level is {type(data).__name__}")
            return {}
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def _load(self) -> Dict[str, Any]:
        if self._cache is None:
            self._cache = await asyncio.to_thread(self._read)
        return self._cache

    async def connect(self) -> bool:
        async with self._lock:
            await self._load()
        return True

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            data = await self._load()
            return data.get(key)

    async def set(self, key: str, value: Any) -> bool:
        async with self._lock:
            data = dict(await self._load())
            data[key] = value
            try:
                await asyncio.to_thread(self._write, data)
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceError(
                    f"Failed to write {self.path}: {e}",
                    component="storage",
                    context={"key": key, "path": str(self.path)},
                ) from e
            self._cache = data
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            data = dict(await self._load())
            if key not in data:
                return False
            del data[key]
            await asyncio.to_thread(self._write, data)
            self._cache = data
            return True

    async def keys(self) -> List[str]:
        async with self._lock:
            return list((await self._load()).keys())
