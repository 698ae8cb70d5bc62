from abc import ABC, abstractmethod
import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import structlog
from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from pydantic import BaseModel, ConfigDict, Field

from crewflow.domain.errors import GenerationBudgetExceededError
from crewflow.domain.models.crew import CrewDefinition, KnowledgeBaseConfig
from crewflow.domain.models.events import (
    BaseTurnEvent, TokenEvent, ToolCallEvent, ToolErrorEvent, ToolResultEvent
)
from crewflow.domain.tool.tool_executor import ToolCallRequest, ToolContext, ToolExecutor

logger = structlog.get_logger(__name__)


class GenerationRequest(BaseModel):
    """Everything the provider adapter needs for one streamed completion"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    crew_name: str
    model: str
    max_tokens: int = 2048
    guidance: str = ""
    runtime_context: Dict[str, Any] = Field(default_factory=dict)
    tool_schemas: List[Dict[str, Any]] = Field(default_factory=list)
    messages: List[BaseMessage] = Field(default_factory=list)
    knowledge_base: Optional[KnowledgeBaseConfig] = None


class LLMAdapter(ABC):
    """Provider-side streaming. Restartable per turn, not mid-turn."""

    @abstractmethod
    def stream(self, request: GenerationRequest) -> AsyncIterator[Union[str, ToolCallRequest]]:
        """Yield text chunks and tool call requests until the provider stops"""
        pass


class GenerationLoop:
    """Streams one crew reply, running tools between provider round trips"""

    def __init__(
        self,
        adapter: LLMAdapter,
        tool_executor: Optional[ToolExecutor] = None,
        max_round_trips: int = 10
    ):
        self.adapter = adapter
        self.tool_executor = tool_executor or ToolExecutor()
        self.max_round_trips = max_round_trips

    async def run(
        self,
        crew: CrewDefinition,
        request: GenerationRequest,
        tool_context: ToolContext,
        tool_gate: Optional[asyncio.Event] = None
    ) -> AsyncIterator[BaseTurnEvent]:
        """Yield reply events; tools wait for ``tool_gate`` when one is given"""

        messages = list(request.messages)
        handlers = crew.tool_handlers()
        round_trips = 0

        while True:
            calls: List[ToolCallRequest] = []
            text_parts: List[str] = []

            async for item in self.adapter.stream(request.model_copy(update={"messages": messages})):
                if isinstance(item, ToolCallRequest):
                    calls.append(item)
                elif item:
                    text_parts.append(item)
                    yield TokenEvent(crew_name=crew.name, text=item)

            if not calls:
                return

            if round_trips >= self.max_round_trips:
                logger.error(
                    "Tool round trip budget exhausted",
                    crew=crew.name,
                    max_round_trips=self.max_round_trips
                )
                raise GenerationBudgetExceededError(crew.name, self.max_round_trips)
            round_trips += 1

            if tool_gate is not None:
                await tool_gate.wait()

            messages.append(AIMessage(
                content="".join(text_parts),
                tool_calls=[{"name": c.name, "args": c.arguments, "id": c.id} for c in calls]
            ))

            for call in calls:
                yield ToolCallEvent(
                    crew_name=crew.name,
                    call_id=call.id,
                    tool_name=call.name,
                    arguments=call.arguments
                )

                result = await self.tool_executor.execute(call, handlers, tool_context)
                if result.success:
                    yield ToolResultEvent(
                        crew_name=crew.name,
                        call_id=call.id,
                        tool_name=call.name,
                        result=result.data,
                        duration_ms=result.duration_ms
                    )
                else:
                    yield ToolErrorEvent(
                        crew_name=crew.name,
                        call_id=call.id,
                        tool_name=call.name,
                        error=result.error or "unknown error"
                    )

                messages.append(ToolMessage(
                    content=result.to_payload(),
                    tool_call_id=call.id,
                    name=call.name
                ))
