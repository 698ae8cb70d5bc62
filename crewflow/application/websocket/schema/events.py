from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum

from crewflow.domain.models.events import (
    BaseTurnEvent, TokenEvent, ToolCallEvent, ToolErrorEvent, ToolResultEvent,
    TransitionEvent, TurnCompleteEvent, TurnFailedEvent
)


class EventType(str, Enum):
    """WebSocket event types"""
    MARKDOWN = "markdown"
    TRANSITION = "transition"
    TOOL = "tool"
    TURN_COMPLETE = "turn_complete"
    ERROR = "error"
    CONNECTION = "connection"
    USER_MESSAGE = "user_message"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    conversation_id: Optional[str] = None


class MarkdownEvent(BaseEvent):
    """Reply text streamed as it is produced"""
    type: Literal[EventType.MARKDOWN] = EventType.MARKDOWN
    payload: str
    crew: Optional[str] = None


class TransitionPayload(BaseModel):
    from_crew: str
    to_crew: str
    phase: str
    reason: Optional[str] = None


class TransitionWireEvent(BaseEvent):
    """Active crew changed"""
    type: Literal[EventType.TRANSITION] = EventType.TRANSITION
    payload: TransitionPayload


class ToolPayload(BaseModel):
    status: Literal["called", "succeeded", "failed"]
    tool_name: str
    call_id: str
    data: Optional[Any] = None
    error: Optional[str] = None


class ToolEvent(BaseEvent):
    """Tool activity during generation"""
    type: Literal[EventType.TOOL] = EventType.TOOL
    payload: ToolPayload
    crew: Optional[str] = None


class TurnCompletePayload(BaseModel):
    crew: str
    next_crew: str
    collected_fields: Dict[str, Any] = Field(default_factory=dict)


class TurnCompleteWireEvent(BaseEvent):
    type: Literal[EventType.TURN_COMPLETE] = EventType.TURN_COMPLETE
    payload: TurnCompletePayload


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]
    agent_name: Optional[str] = None


class UserMessage(BaseEvent):
    """User message event"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    content: str
    user_id: Optional[str] = None
    override_crew: Optional[str] = None
    use_knowledge_base: bool = False
    metadata: Optional[Dict[str, Any]] = None


def to_wire_event(event: BaseTurnEvent, conversation_id: str) -> Optional[BaseEvent]:
    """Translate a turn event into what the client receives"""

    if isinstance(event, TokenEvent):
        return MarkdownEvent(payload=event.text, crew=event.crew_name, conversation_id=conversation_id)

    if isinstance(event, TransitionEvent):
        return TransitionWireEvent(
            payload=TransitionPayload(
                from_crew=event.from_crew,
                to_crew=event.to_crew,
                phase=event.phase.value,
                reason=event.reason
            ),
            conversation_id=conversation_id
        )

    if isinstance(event, ToolCallEvent):
        payload = ToolPayload(status="called", tool_name=event.tool_name, call_id=event.call_id)
    elif isinstance(event, ToolResultEvent):
        payload = ToolPayload(status="succeeded", tool_name=event.tool_name, call_id=event.call_id, data=event.result)
    elif isinstance(event, ToolErrorEvent):
        payload = ToolPayload(status="failed", tool_name=event.tool_name, call_id=event.call_id, error=event.error)
    else:
        payload = None
    if payload is not None:
        return ToolEvent(payload=payload, crew=event.crew_name, conversation_id=conversation_id)

    if isinstance(event, TurnCompleteEvent):
        return TurnCompleteWireEvent(
            payload=TurnCompletePayload(
                crew=event.crew_name,
                next_crew=event.next_crew_name,
                collected_fields=event.collected_fields
            ),
            conversation_id=conversation_id
        )

    if isinstance(event, TurnFailedEvent):
        return ErrorEvent(
            payload={"message": event.message, "crew": event.crew_name},
            error_code=event.error_type,
            conversation_id=conversation_id
        )

    return None
