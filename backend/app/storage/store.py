"""
Persistent store — async byte-oriented key/value backends.

Provides:
    • PersistentStore interface: get / set / remove over bytes
    • MemoryStore: process-local dict (development, tests)
    • RedisStore: redis.asyncio client with namespace prefixes
    • JSON helpers used by the contact book, trigger rules and event log

Usage:
    from backend.app.storage.store import build_store, load_json, save_json

    store = build_store(settings)
    await save_json(store, "emergency_contacts", [...])
    contacts = await load_json(store, "emergency_contacts")
"""

from __future__ import annotations

import abc
import json
import logging
from typing import Any, Dict, Optional

from backend.app.core.config import Settings

logger = logging.getLogger(__name__)


class PersistentStore(abc.ABC):
    """Byte-valued key/value store consumed by the core."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when the key is absent."""

    @abc.abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Store bytes under key, replacing any previous value."""

    @abc.abstractmethod
    async def remove(self, key: str) -> None:
        """Delete key; deleting an absent key is not an error."""

    async def close(self) -> None:
        """Release backend resources."""


class MemoryStore(PersistentStore):
    """Process-local store; contents vanish with the process."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return sorted(self._data)


class RedisStore(PersistentStore):
    """
    Redis-backed store.

    Keys are namespaced as ``{prefix}:{key}`` so several deployments can
    share one Redis database.
    """

    def __init__(self, url: str, prefix: str = "ser", client: Any = None):
        self.url = url
        self.prefix = prefix
        self._client = client

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def _get_client(self):
        if self._client is None:
            import redis.asyncio as aioredis
            self._client = aioredis.from_url(self.url)
            logger.info("Redis connected: %s", self.url)
        return self._client

    async def get(self, key: str) -> Optional[bytes]:
        client = await self._get_client()
        return await client.get(self._key(key))

    async def set(self, key: str, value: bytes) -> None:
        client = await self._get_client()
        await client.set(self._key(key), value)

    async def remove(self, key: str) -> None:
        client = await self._get_client()
        await client.delete(self._key(key))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")


# ═══════════════════════════════════════════════════════════════════════════
# JSON helpers
# ═══════════════════════════════════════════════════════════════════════════

async def load_json(store: PersistentStore, key: str) -> Optional[Any]:
    """
    Read and decode a JSON document.

    A corrupt document is logged and treated as absent, so a damaged
    entry cannot keep the emergency pipeline from starting.
    """
    raw = await store.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.error("Discarding unreadable store entry %s: %s", key, exc)
        return None


async def save_json(store: PersistentStore, key: str, value: Any) -> None:
    """Encode value as JSON and store it."""
    await store.set(key, json.dumps(value, default=str).encode("utf-8"))


def build_store(settings: Settings) -> PersistentStore:
    """Instantiate the configured backend."""
    backend = settings.STORE_BACKEND.lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "redis":
        return RedisStore(settings.REDIS_URL, prefix=settings.STORE_PREFIX)
    raise ValueError(f"Unknown STORE_BACKEND: {settings.STORE_BACKEND}")
