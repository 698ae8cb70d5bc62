from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransitionPhase(str, Enum):
    """When a transfer was applied"""
    PRE_MESSAGE = "pre_message"
    POST_MESSAGE = "post_message"


class TransitionRecord(BaseModel):
    """Audit entry for a change of the active crew"""
    from_crew: str
    to_crew: str
    phase: TransitionPhase
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class Conversation(BaseModel):
    """Mutable run of one agent for one user"""
    conversation_id: str
    agent_name: str
    user_id: Optional[str] = None
    active_crew_name: str = Field(description="Crew handling the next inbound message")
    collected_fields: Dict[str, Any] = Field(default_factory=dict)
    history: List[BaseMessage] = Field(default_factory=list)
    transitions: List[TransitionRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def add_user_message(self, content: str):
        self.history.append(HumanMessage(content=content))
        self.touch()

    def add_assistant_message(self, content: str, crew_name: Optional[str] = None):
        self.history.append(AIMessage(content=content, name=crew_name))
        self.touch()

    def trim_history(self, limit: int):
        """Keep only the last ``limit`` messages"""
        if len(self.history) > limit:
            self.history = self.history[-limit:]

    def touch(self):
        self.updated_at = _utcnow()

    def get_state_summary(self) -> Dict[str, Any]:
        """Get a JSON-safe summary of the conversation"""
        return {
            "conversation_id": self.conversation_id,
            "agent_name": self.agent_name,
            "user_id": self.user_id,
            "active_crew": self.active_crew_name,
            "collected_fields": self.collected_fields,
            "message_count": len(self.history),
            "transitions": [t.model_dump(mode="json") for t in self.transitions],
            "updated_at": self.updated_at.isoformat()
        }
