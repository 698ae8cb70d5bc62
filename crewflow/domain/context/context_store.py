from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import copy

import structlog

from crewflow.domain.errors import ContextStoreError
from crewflow.infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)


class ContextScope(str, Enum):
    """Visibility of a context entry"""
    CONVERSATION = "conversation"
    USER = "user"


class ContextStore(ABC):
    """Scoped key-value persistence shared across crews.

    Entries are addressed by ``(scope, owner_id, key)`` where the owner is a
    conversation id for conversation scope and a user id for user scope.
    Writes are last-writer-wins; there are no multi-key transactions.
    """

    @abstractmethod
    async def read(self, scope: ContextScope, owner_id: str, key: str) -> Optional[Any]:
        """Return the most recent committed value, or None"""
        pass

    @abstractmethod
    async def write(self, scope: ContextScope, owner_id: str, key: str, value: Any) -> None:
        """Replace the value"""
        pass

    @abstractmethod
    async def delete(self, scope: ContextScope, owner_id: str, key: str) -> bool:
        """Remove an entry, returning whether it existed"""
        pass

    @abstractmethod
    async def list_keys(self, scope: ContextScope, owner_id: str) -> List[str]:
        """List keys stored for an owner"""
        pass

    async def merge(self, scope: ContextScope, owner_id: str, key: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge a dict into the stored value (later keys win)"""

        if not isinstance(partial, dict):
            raise TypeError("merge expects a dict partial")

        existing = await self.read(scope, owner_id, key)
        merged = dict(existing) if isinstance(existing, dict) else {}
        merged.update(partial)
        await self.write(scope, owner_id, key, merged)
        return merged


class InMemoryContextStore(ContextStore):
    """In-process context store guarded by an asyncio lock"""

    def __init__(self):
        self.entries: Dict[Tuple[str, str, str], Any] = {}
        self._lock = asyncio.Lock()

    async def read(self, scope: ContextScope, owner_id: str, key: str) -> Optional[Any]:
        async with self._lock:
            value = self.entries.get((ContextScope(scope).value, owner_id, key))
            return copy.deepcopy(value)

    async def write(self, scope: ContextScope, owner_id: str, key: str, value: Any) -> None:
        async with self._lock:
            self.entries[(ContextScope(scope).value, owner_id, key)] = copy.deepcopy(value)

        agent_logger.log_context_update(owner_id, ContextScope(scope).value, key, "write")

    async def merge(self, scope: ContextScope, owner_id: str, key: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(partial, dict):
            raise TypeError("merge expects a dict partial")

        # Read-modify-write under one lock acquisition
        async with self._lock:
            entry_key = (ContextScope(scope).value, owner_id, key)
            existing = self.entries.get(entry_key)
            merged = dict(existing) if isinstance(existing, dict) else {}
            merged.update(copy.deepcopy(partial))
            self.entries[entry_key] = merged

        agent_logger.log_context_update(owner_id, ContextScope(scope).value, key, "merge")
        return copy.deepcopy(merged)

    async def delete(self, scope: ContextScope, owner_id: str, key: str) -> bool:
        async with self._lock:
            return self.entries.pop((ContextScope(scope).value, owner_id, key), None) is not None

    async def list_keys(self, scope: ContextScope, owner_id: str) -> List[str]:
        async with self._lock:
            scope_value = ContextScope(scope).value
            return [
                key for (entry_scope, entry_owner, key) in self.entries
                if entry_scope == scope_value and entry_owner == owner_id
            ]


class ScopedContext:
    """Context store view bound to one conversation and its user.

    This is what hooks, context builders and tool handlers receive. Calls
    default to user scope; pass ``ContextScope.CONVERSATION`` for state that
    must not outlive the conversation.
    """

    def __init__(self, store: ContextStore, conversation_id: str, user_id: Optional[str] = None):
        self.store = store
        self.conversation_id = conversation_id
        # Anonymous conversations keep "user" data under the conversation id
        self.user_id = user_id or f"anonymous:{conversation_id}"

    def _owner(self, scope: ContextScope) -> str:
        if ContextScope(scope) == ContextScope.CONVERSATION:
            return self.conversation_id
        return self.user_id

    async def read(self, scope: ContextScope, key: str) -> Optional[Any]:
        try:
            return await self.store.read(scope, self._owner(scope), key)
        except ContextStoreError:
            raise
        except Exception as e:
            raise ContextStoreError(f"Context read failed for '{key}': {e}", {"scope": str(scope), "key": key}) from e

    async def write(self, scope: ContextScope, key: str, value: Any) -> None:
        try:
            await self.store.write(scope, self._owner(scope), key, value)
        except ContextStoreError:
            raise
        except Exception as e:
            raise ContextStoreError(f"Context write failed for '{key}': {e}", {"scope": str(scope), "key": key}) from e

    async def merge(self, scope: ContextScope, key: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self.store.merge(scope, self._owner(scope), key, partial)
        except (ContextStoreError, TypeError):
            raise
        except Exception as e:
            raise ContextStoreError(f"Context merge failed for '{key}': {e}", {"scope": str(scope), "key": key}) from e

    async def delete(self, scope: ContextScope, key: str) -> bool:
        try:
            return await self.store.delete(scope, self._owner(scope), key)
        except ContextStoreError:
            raise
        except Exception as e:
            raise ContextStoreError(f"Context delete failed for '{key}': {e}", {"scope": str(scope), "key": key}) from e

    async def get(self, key: str, conversation_scope: bool = False) -> Optional[Any]:
        """Shorthand read, user scope unless ``conversation_scope``"""
        scope = ContextScope.CONVERSATION if conversation_scope else ContextScope.USER
        return await self.read(scope, key)

    async def put(self, key: str, value: Any, conversation_scope: bool = False) -> None:
        """Shorthand replace, user scope unless ``conversation_scope``"""
        scope = ContextScope.CONVERSATION if conversation_scope else ContextScope.USER
        await self.write(scope, key, value)
