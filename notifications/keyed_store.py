"""
Keyed stores — small async key/value caches handed to the delivery queue.

The delivery queue keeps two per-call caches (last delivered text, header
message id). They are passed in explicitly so a multi-instance deployment
can back them with shared storage without touching delivery logic.
"""
from __future__ import annotations

import abc
import time
from collections import OrderedDict
from typing import Any, Optional


class KeyedStore(abc.ABC):
    """Async get/set/delete keyed by string."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abc.abstractmethod
    async def set(self, key: str, value: Any) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        ...


class InMemoryKeyedStore(KeyedStore):
    """TTL + LRU-bounded dict. ttl_seconds=None keeps entries until evicted by size."""

    def __init__(self, ttl_seconds: Optional[float] = 3600.0, max_size: int = 10000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._data: OrderedDict[str, tuple[Any, float]] = OrderedDict()

    async def get(self, key: str) -> Optional[Any]:
        item = self._data.get(key)
        if item is None:
            return None
        value, stored_at = item
        if self.ttl is not None and time.monotonic() - stored_at > self.ttl:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = (value, time.monotonic())
        self._data.move_to_end(key)
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)
