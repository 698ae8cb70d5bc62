from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field

from crewflow.domain.models.conversation import TransitionPhase


class TurnEventType(str, Enum):
    """Events a turn emits to its caller"""
    TOKEN = "token"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TOOL_ERROR = "tool_error"
    TRANSITION = "transition"
    TURN_COMPLETE = "turn_complete"
    TURN_FAILED = "turn_failed"


class BaseTurnEvent(BaseModel):
    type: TurnEventType
    crew_name: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TokenEvent(BaseTurnEvent):
    """A piece of reply text the caller may display"""
    type: Literal[TurnEventType.TOKEN] = TurnEventType.TOKEN
    text: str


class ToolCallEvent(BaseTurnEvent):
    type: Literal[TurnEventType.TOOL_CALL] = TurnEventType.TOOL_CALL
    call_id: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolResultEvent(BaseTurnEvent):
    type: Literal[TurnEventType.TOOL_RESULT] = TurnEventType.TOOL_RESULT
    call_id: str
    tool_name: str
    result: Any = None
    duration_ms: float = 0.0


class ToolErrorEvent(BaseTurnEvent):
    """A handler failed; the error was fed back to the model"""
    type: Literal[TurnEventType.TOOL_ERROR] = TurnEventType.TOOL_ERROR
    call_id: str
    tool_name: str
    error: str


class TransitionEvent(BaseTurnEvent):
    type: Literal[TurnEventType.TRANSITION] = TurnEventType.TRANSITION
    from_crew: str
    to_crew: str
    phase: TransitionPhase
    reason: Optional[str] = None


class TurnCompleteEvent(BaseTurnEvent):
    type: Literal[TurnEventType.TURN_COMPLETE] = TurnEventType.TURN_COMPLETE
    conversation_id: str
    reply: str
    next_crew_name: str
    collected_fields: Dict[str, Any] = Field(default_factory=dict)


class TurnFailedEvent(BaseTurnEvent):
    """The turn ended without a reply; the conversation stays on its prior crew"""
    type: Literal[TurnEventType.TURN_FAILED] = TurnEventType.TURN_FAILED
    conversation_id: str
    error_type: str
    message: str


TurnEvent = Union[
    TokenEvent,
    ToolCallEvent,
    ToolResultEvent,
    ToolErrorEvent,
    TransitionEvent,
    TurnCompleteEvent,
    TurnFailedEvent
]
