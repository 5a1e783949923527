"""Durable state storage backends."""

from .base import Storage
from .json_file import JsonFileStorage
from .memory import MemoryStorage

__all__ = ["Storage", "MemoryStorage", "JsonFileStorage"]
