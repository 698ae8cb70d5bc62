from typing import Any, Callable, Dict, Optional
import asyncio
import inspect
import json
import time

import structlog
from pydantic import BaseModel, ConfigDict, Field

from crewflow.domain.context.context_store import ScopedContext
from crewflow.domain.models.crew import TOOL_CALL_PREFIX
from crewflow.infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)


class ToolCallRequest(BaseModel):
    """A tool invocation requested by the LLM provider"""
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """Outcome of one tool invocation, always fed back to the model"""
    call_id: str
    name: str
    success: bool
    data: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    def to_payload(self) -> str:
        """Serialized content for the tool message"""
        body = self.data if self.success else {"error": self.error}
        try:
            return json.dumps(body, default=str)
        except (TypeError, ValueError):
            return json.dumps({"result": str(body)})


class ToolContext(BaseModel):
    """What a tool handler may touch while it runs"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    conversation_id: str
    user_id: Optional[str] = None
    crew_name: str
    collected_fields: Dict[str, Any] = Field(default_factory=dict)
    context: ScopedContext


class ToolExecutor:
    """Runs tool handlers and converts every failure into an error result"""

    def __init__(self, timeout_seconds: Optional[float] = 30.0):
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def resolve(name: str, handlers: Dict[str, Callable[..., Any]]) -> Optional[Callable[..., Any]]:
        """Find a handler, with or without the call_ prefix"""
        if name in handlers:
            return handlers[name]
        if not name.startswith(TOOL_CALL_PREFIX):
            return handlers.get(f"{TOOL_CALL_PREFIX}{name}")
        return handlers.get(name[len(TOOL_CALL_PREFIX):])

    async def execute(
        self,
        call: ToolCallRequest,
        handlers: Dict[str, Callable[..., Any]],
        tool_context: ToolContext
    ) -> ToolResult:
        started = time.perf_counter()
        handler = self.resolve(call.name, handlers)

        try:
            if handler is None:
                raise LookupError(f"No handler for tool: {call.name}")

            outcome = handler(dict(call.arguments), tool_context)
            if inspect.isawaitable(outcome):
                if self.timeout_seconds:
                    outcome = await asyncio.wait_for(outcome, timeout=self.timeout_seconds)
                else:
                    outcome = await outcome

            result = ToolResult(
                call_id=call.id,
                name=call.name,
                success=True,
                data=outcome,
                duration_ms=(time.perf_counter() - started) * 1000
            )

        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            result = ToolResult(
                call_id=call.id,
                name=call.name,
                success=False,
                error="Tool execution timeout",
                duration_ms=(time.perf_counter() - started) * 1000
            )
        except Exception as e:
            logger.warning("Tool handler failed", tool=call.name, error=str(e))
            result = ToolResult(
                call_id=call.id,
                name=call.name,
                success=False,
                error=str(e) or e.__class__.__name__,
                duration_ms=(time.perf_counter() - started) * 1000
            )

        agent_logger.log_tool_execution(
            tool_name=call.name,
            conversation_id=tool_context.conversation_id,
            input_data=call.arguments,
            output_data=result.data if result.success else None,
            duration_ms=result.duration_ms,
            success=result.success,
            error=result.error
        )
        return result
