"""Read-through TTL cache in front of a message store."""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from structlog import get_logger

from ..domain.errors import ChatError, PersistenceFailure
from ..domain.models import ChatSession, Message
from .base import MessageStore

logger = get_logger()


def chat_key(chat_id: str) -> str:
    return f"chat:{chat_id}"


def owner_key(user_id: str) -> str:
    return f"owner:{user_id}"


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class TTLCache:
    """Key/value cache whose entries expire ``ttl`` seconds after being set.

    Entries may be stale by at most ``ttl``; writers invalidate keys they
    know to have changed.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        """Return the live value for ``key`` or None."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + self.ttl)

    async def invalidate(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class CachedMessageStore(MessageStore):
    """Wraps a store with a ``TTLCache`` over ``chat:{id}`` and ``owner:{user_id}`` keys."""

    def __init__(self, store: MessageStore, cache: TTLCache):
        self.store = store
        self.cache = cache

    async def _read(self, operation: str, coro):
        try:
            return await coro
        except ChatError:
            raise
        except Exception as e:
            logger.error("message_store_read_failed", operation=operation, error=str(e))
            raise PersistenceFailure(f"{operation} failed") from e

    async def create_chat(self, user_id: str, chat_id: Optional[str] = None) -> ChatSession:
        chat = await self.store.create_chat(user_id, chat_id)
        await self.cache.invalidate(owner_key(user_id))
        return chat

    async def get_chat(self, chat_id: str) -> Optional[ChatSession]:
        return await self._read("get_chat", self.store.get_chat(chat_id))

    async def list_chats(self, user_id: str) -> List[ChatSession]:
        return await self._read("list_chats", self.store.list_chats(user_id))

    async def owned_chat_ids(self, user_id: str) -> List[str]:
        key = owner_key(user_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return list(cached)
        ids = await self._read("owned_chat_ids", self.store.owned_chat_ids(user_id))
        await self.cache.set(key, frozenset(ids))
        return list(ids)

    async def check_ownership(self, chat_id: str, user_id: str) -> bool:
        """Check ownership through the cache; a miss in a cached set is re-read once."""
        key = owner_key(user_id)
        cached = await self.cache.get(key)
        if cached is not None and chat_id in cached:
            return True
        ids = await self._read("owned_chat_ids", self.store.owned_chat_ids(user_id))
        await self.cache.set(key, frozenset(ids))
        return chat_id in ids

    async def load_history(self, chat_id: str) -> List[Message]:
        key = chat_key(chat_id)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug("history_cache_hit", chat_id=chat_id)
            return list(cached)
        messages = await self._read("load_history", self.store.load_history(chat_id))
        await self.cache.set(key, tuple(messages))
        return list(messages)

    async def save_exchange(self, chat_id: str, user_id: str, messages: List[Message]) -> None:
        try:
            await self.store.save_exchange(chat_id, user_id, messages)
        except ChatError:
            raise
        except Exception as e:
            logger.error("message_store_write_failed", chat_id=chat_id, error=str(e))
            raise PersistenceFailure("save_exchange failed") from e
        finally:
            await self.cache.invalidate(chat_key(chat_id))
