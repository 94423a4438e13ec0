"""In-memory message store implementation."""

import asyncio
from typing import Dict, List, Optional
from uuid import uuid4

import structlog

from ..domain.errors import NotFound
from ..domain.models import ChatSession, Message, UserMessage, placeholder_id
from .base import MessageStore

logger = structlog.get_logger()


def placeholder_message(chat_id: str) -> Message:
    """The empty record a freshly created chat starts with."""
    return UserMessage(id=placeholder_id(chat_id), content="")


class InMemoryMessageStore(MessageStore):
    """Async-safe in-memory store."""

    def __init__(self) -> None:
        """Initialize empty storage."""
        self._chats: Dict[str, ChatSession] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._async_lock = asyncio.Lock()
        logger.info("message_store_initialized", backend="memory")

    async def create_chat(self, user_id: str, chat_id: Optional[str] = None) -> ChatSession:
        """Create a chat seeded with the placeholder record."""
        chat = ChatSession(id=chat_id or str(uuid4()), user_id=user_id)
        async with self._async_lock:
            if chat.id in self._chats:
                raise ValueError(f"Chat {chat.id} already exists")
            self._chats[chat.id] = chat
            self._messages[chat.id] = [placeholder_message(chat.id)]
        logger.info("chat_created", chat_id=chat.id, user_id=user_id)
        return chat

    async def get_chat(self, chat_id: str) -> Optional[ChatSession]:
        async with self._async_lock:
            chat = self._chats.get(chat_id)
        if chat is None:
            logger.warning("chat_not_found", chat_id=chat_id)
        return chat

    async def list_chats(self, user_id: str) -> List[ChatSession]:
        async with self._async_lock:
            chats = [c for c in self._chats.values() if c.user_id == user_id]
        return sorted(chats, key=lambda c: c.created_at, reverse=True)

    async def owned_chat_ids(self, user_id: str) -> List[str]:
        async with self._async_lock:
            return [c.id for c in self._chats.values() if c.user_id == user_id]

    async def load_history(self, chat_id: str) -> List[Message]:
        """Return messages ordered by creation time, insertion order breaking ties."""
        async with self._async_lock:
            messages = list(self._messages.get(chat_id, []))
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(messages, key=lambda m: m.created_at)

    async def save_exchange(self, chat_id: str, user_id: str, messages: List[Message]) -> None:
        async with self._async_lock:
            chat = self._chats.get(chat_id)
            if chat is None or chat.user_id != user_id:
                logger.error("save_exchange_chat_not_owned", chat_id=chat_id, user_id=user_id)
                raise NotFound(f"Chat {chat_id} not found")
            self._messages[chat_id] = list(messages)
        logger.info("exchange_saved", chat_id=chat_id, message_count=len(messages))
