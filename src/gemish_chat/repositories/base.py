"""Message store interface used by the relay."""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..domain.models import ChatSession, Message


class MessageStore(ABC):
    """Abstract base class for chat/message persistence."""

    @abstractmethod
    async def create_chat(self, user_id: str, chat_id: Optional[str] = None) -> ChatSession:
        """Create a chat owned by ``user_id``."""
        pass

    @abstractmethod
    async def get_chat(self, chat_id: str) -> Optional[ChatSession]:
        """Retrieve a chat by ID."""
        pass

    @abstractmethod
    async def list_chats(self, user_id: str) -> List[ChatSession]:
        """List the chats owned by a user, newest first."""
        pass

    @abstractmethod
    async def owned_chat_ids(self, user_id: str) -> List[str]:
        """Return the ids of every chat owned by a user."""
        pass

    async def check_ownership(self, chat_id: str, user_id: str) -> bool:
        """Check that the chat exists and belongs to ``user_id``."""
        return chat_id in await self.owned_chat_ids(user_id)

    @abstractmethod
    async def load_history(self, chat_id: str) -> List[Message]:
        """Load the ordered message list of a chat.

        A chat without messages yields a single empty-content placeholder
        record, matching the persisted layout; callers filter it out.
        """
        pass

    @abstractmethod
    async def save_exchange(self, chat_id: str, user_id: str, messages: List[Message]) -> None:
        """Replace the chat's message list with ``messages`` (the full list, not a delta)."""
        pass
