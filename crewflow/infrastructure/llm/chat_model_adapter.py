from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Union
import importlib
import json

import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from crewflow.domain.errors import ConfigurationError
from crewflow.domain.models.crew import KnowledgeBaseConfig
from crewflow.domain.orchestration.generation_loop import GenerationRequest, LLMAdapter
from crewflow.domain.tool.tool_executor import ToolCallRequest

logger = structlog.get_logger(__name__)

ModelFactory = Callable[[str, int], BaseChatModel]
Retriever = Callable[[str, KnowledgeBaseConfig], Awaitable[List[str]]]


def _chunk_text(content: Any) -> str:
    """Text of a streamed chunk; providers send either a string or content blocks"""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "") for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


class ChatModelAdapter(LLMAdapter):
    """Streams crew replies through a LangChain chat model"""

    def __init__(self, model_factory: ModelFactory, retriever: Optional[Retriever] = None):
        self.model_factory = model_factory
        self.retriever = retriever

    @classmethod
    def from_model(cls, model: BaseChatModel, retriever: Optional[Retriever] = None) -> "ChatModelAdapter":
        """Use one chat model for every crew regardless of its configured model name"""
        return cls(lambda name, max_tokens: model, retriever=retriever)

    async def build_messages(self, request: GenerationRequest) -> List[BaseMessage]:
        system = request.guidance
        if request.runtime_context:
            system += "\n\n## Runtime Context\n" + json.dumps(request.runtime_context, default=str, indent=2)

        if request.knowledge_base and self.retriever:
            query = next(
                (m.content for m in reversed(request.messages) if isinstance(m, HumanMessage)),
                ""
            )
            passages = await self.retriever(str(query), request.knowledge_base)
            if passages:
                system += "\n\n## Knowledge Base\n" + "\n\n".join(passages)

        return [SystemMessage(content=system)] + list(request.messages)

    async def stream(self, request: GenerationRequest) -> AsyncIterator[Union[str, ToolCallRequest]]:
        model = self.model_factory(request.model, request.max_tokens)
        runnable = model.bind_tools(request.tool_schemas) if request.tool_schemas else model
        messages = await self.build_messages(request)

        full = None
        async for chunk in runnable.astream(messages):
            text = _chunk_text(chunk.content)
            if text:
                yield text
            full = chunk if full is None else full + chunk

        if full is None:
            return

        for tool_call in getattr(full, "tool_calls", None) or []:
            logger.debug("Provider requested tool", crew=request.crew_name, tool=tool_call["name"])
            yield ToolCallRequest(
                id=tool_call.get("id") or tool_call["name"],
                name=tool_call["name"],
                arguments=tool_call.get("args") or {}
            )


def load_chat_model(path: str) -> BaseChatModel:
    """Resolve ``module:attribute`` to a chat model; a factory is called with no arguments"""

    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigurationError(f"Chat model must be given as 'module:attribute', got {path!r}")

    try:
        target = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load chat model {path!r}: {e}") from e

    model = target() if callable(target) and not isinstance(target, BaseChatModel) else target
    if not isinstance(model, BaseChatModel):
        raise ConfigurationError(f"{path!r} did not produce a LangChain chat model")

    logger.info("Chat model loaded", path=path, model_type=type(model).__name__)
    return model
