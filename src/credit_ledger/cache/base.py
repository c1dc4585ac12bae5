from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class AsyncCacheBackend(ABC):
    """
    Minimal async cache abstraction for read-mostly ledger data: price
    mappings and advisory balance reads.

    Nothing read from the cache may feed a write; the atomic store
    primitives always work on the authoritative row.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


def balance_cache_key(account_id: str) -> str:
    return f"credit:account:{account_id}:balance"


def price_mapping_cache_key(price_id: str) -> str:
    return f"credit:price:{price_id}:plan"
