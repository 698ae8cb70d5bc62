from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import asyncio

from crewflow.domain.models.conversation import Conversation


class ConversationStore(ABC):
    """Persistence for conversation state"""

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def save(self, conversation: Conversation) -> None:
        pass

    @abstractmethod
    async def list_ids(self, agent_name: Optional[str] = None) -> List[str]:
        pass


class InMemoryConversationStore(ConversationStore):
    """Keeps conversations for the lifetime of the process"""

    def __init__(self, history_limit: int = 100):
        self.history_limit = history_limit
        self.conversations: Dict[str, Conversation] = {}
        self._lock = asyncio.Lock()

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        async with self._lock:
            conversation = self.conversations.get(conversation_id)
            # Callers work on a copy and commit it back with save()
            return conversation.model_copy(deep=True) if conversation else None

    async def save(self, conversation: Conversation) -> None:
        async with self._lock:
            conversation.trim_history(self.history_limit)
            self.conversations[conversation.conversation_id] = conversation.model_copy(deep=True)

    async def list_ids(self, agent_name: Optional[str] = None) -> List[str]:
        async with self._lock:
            return [
                conversation_id for conversation_id, conversation in self.conversations.items()
                if agent_name is None or conversation.agent_name == agent_name
            ]
