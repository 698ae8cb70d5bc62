from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
import asyncio
import structlog
from langchain_core.language_models import BaseChatModel

from .connection_manager import ConnectionManager
from .schema.events import EventType, UserMessage, to_wire_event
from crewflow.application.api.route.agent import router as agent_router
from crewflow.domain.context.context_store import ContextStore, InMemoryContextStore
from crewflow.domain.context.conversation_store import ConversationStore, InMemoryConversationStore
from crewflow.domain.crew.registry import CrewRegistry
from crewflow.domain.crew.sources import ConfigCrewSource, ModuleCrewSource
from crewflow.domain.errors import ConfigurationError, CrewflowError
from crewflow.domain.fields.extractor import FieldExtractor, LLMFieldExtractor
from crewflow.domain.fields.field_collector import FieldCollector
from crewflow.domain.orchestration.dispatcher import TurnDispatcher
from crewflow.domain.orchestration.generation_loop import LLMAdapter
from crewflow.domain.tool.tool_registry import ToolRegistry
from crewflow.infrastructure.config.settings import Settings, get_settings
from crewflow.infrastructure.llm.chat_model_adapter import ChatModelAdapter, Retriever, load_chat_model
from crewflow.infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def build_registry(settings: Settings, tool_registry: Optional[ToolRegistry] = None) -> CrewRegistry:
    """Config crews first, module crews override them"""
    return CrewRegistry([
        ConfigCrewSource(config_dir=settings.crew_sources.crew_config_dir, tool_registry=tool_registry),
        ModuleCrewSource(package=settings.crew_sources.agents_package)
    ])


def build_dispatcher(
    adapter: LLMAdapter,
    extractor: FieldExtractor,
    settings: Optional[Settings] = None,
    registry: Optional[CrewRegistry] = None,
    context_store: Optional[ContextStore] = None,
    conversations: Optional[ConversationStore] = None
) -> TurnDispatcher:
    settings = settings or get_settings()
    orchestration = settings.orchestration
    return TurnDispatcher(
        registry=registry or build_registry(settings),
        conversations=conversations or InMemoryConversationStore(history_limit=orchestration.history_limit),
        context_store=context_store or InMemoryContextStore(),
        field_collector=FieldCollector(extractor, extraction_window=orchestration.extraction_window),
        adapter=adapter,
        settings=orchestration
    )


def build_llm_dispatcher(
    chat_model: BaseChatModel,
    settings: Optional[Settings] = None,
    retriever: Optional[Retriever] = None,
    extraction_model: Optional[BaseChatModel] = None,
    registry: Optional[CrewRegistry] = None
) -> TurnDispatcher:
    """One LangChain chat model for replies and, unless given another, field extraction"""
    return build_dispatcher(
        adapter=ChatModelAdapter.from_model(chat_model, retriever=retriever),
        extractor=LLMFieldExtractor(extraction_model or chat_model),
        settings=settings,
        registry=registry
    )


def create_app(dispatcher: TurnDispatcher, settings: Optional[Settings] = None) -> FastAPI:
    """Agent server: a websocket per conversation plus crew management routes"""

    settings = settings or get_settings()
    setup_logging(
        log_level=settings.logging.log_level,
        log_format=settings.logging.log_format,
        service_name=settings.logging.service_name
    )

    app = FastAPI(title="Crewflow Agent Server")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    connection_manager = ConnectionManager()
    app.state.dispatcher = dispatcher
    app.state.registry = dispatcher.registry
    app.state.connection_manager = connection_manager
    app.include_router(agent_router)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cancel running turns and close every socket"""
        for conversation_id in list(connection_manager.active_connections.keys()):
            await connection_manager.cancel_turns(conversation_id)
            await connection_manager.disconnect(conversation_id)

        logger.info("Agent server shutdown")

    async def stream_turn(agent_name: str, conversation_id: str, message: UserMessage):
        """Run one turn and forward its events to the socket"""

        try:
            async for event in dispatcher.dispatch(
                agent_name=agent_name,
                conversation_id=conversation_id,
                message=message.content,
                user_id=message.user_id,
                override_crew=message.override_crew,
                use_knowledge_base=message.use_knowledge_base,
                metadata=message.metadata
            ):
                wire = to_wire_event(event, conversation_id)
                if wire is not None:
                    await connection_manager.send_event(conversation_id, wire)

        except CrewflowError as e:
            # Already reported to the client as an error event
            logger.info("Turn ended without a reply", conversation_id=conversation_id, error=str(e))
        except Exception as e:
            logger.error("Error in agent processing", error=str(e), conversation_id=conversation_id)
            await connection_manager.send_error(conversation_id, str(e))

    @app.websocket("/ws/agents/{agent_name}/{conversation_id}")
    async def agent_websocket(websocket: WebSocket, agent_name: str, conversation_id: str):
        """Main WebSocket endpoint for agent interaction"""

        if not await dispatcher.registry.has_crews(agent_name):
            await websocket.close(code=1008, reason="Unknown agent")
            return

        await connection_manager.connect(websocket, conversation_id, agent_name)

        try:
            while True:
                data = await websocket.receive_json()

                if data.get("type") != EventType.USER_MESSAGE.value:
                    await connection_manager.send_error(
                        conversation_id,
                        f"Unsupported event type: {data.get('type')}",
                        error_code="unsupported_event"
                    )
                    continue

                try:
                    user_message = UserMessage(**data)
                except ValueError as e:
                    await connection_manager.send_error(conversation_id, f"Invalid message: {e}", error_code="invalid_message")
                    continue

                task = asyncio.create_task(stream_turn(agent_name, conversation_id, user_message))
                connection_manager.track_turn(conversation_id, task)

        except WebSocketDisconnect:
            logger.info("Client disconnected", conversation_id=conversation_id)
        finally:
            await connection_manager.cancel_turns(conversation_id)
            await connection_manager.disconnect(conversation_id)

    return app


def run(
    dispatcher: TurnDispatcher,
    host: str = "0.0.0.0",
    port: int = 8000,
    settings: Optional[Settings] = None
):
    """Serve the agent server with uvicorn"""
    import uvicorn
    uvicorn.run(create_app(dispatcher, settings), host=host, port=port)


def main():
    settings = get_settings()
    if not settings.server.chat_model:
        raise ConfigurationError("CREWFLOW_CHAT_MODEL must name a chat model as 'module:attribute'")

    dispatcher = build_llm_dispatcher(load_chat_model(settings.server.chat_model), settings=settings)
    run(dispatcher, host=settings.server.host, port=settings.server.port, settings=settings)


if __name__ == "__main__":
    main()
