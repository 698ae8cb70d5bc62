from typing import Annotated, Any, Dict
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from crewflow.domain.crew.registry import CrewRegistry
from crewflow.domain.errors import ConfigurationError, CrewNotFoundError
from crewflow.domain.orchestration.dispatcher import TurnDispatcher
from crewflow.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_registry(request: Request) -> CrewRegistry:
    return request.app.state.registry


def get_dispatcher(request: Request) -> TurnDispatcher:
    return request.app.state.dispatcher


def _snapshot_body(snapshot) -> Dict[str, Any]:
    return {
        "agent_name": snapshot.agent_name,
        "default_crew": snapshot.default_crew_name,
        "version": snapshot.version,
        "loaded_at": snapshot.loaded_at.isoformat(),
        "crews": [crew.to_summary() for crew in snapshot.crews.values()]
    }


@router.get("/agents/{agent_name}/crews")
async def list_crews(agent_name: str, registry: Annotated[CrewRegistry, Depends(get_registry)]):
    """Crews currently published for an agent"""
    try:
        snapshot = await registry.snapshot(agent_name)
    except ConfigurationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _snapshot_body(snapshot)


@router.get("/agents/{agent_name}/conversations")
async def list_conversations(agent_name: str, dispatcher: Annotated[TurnDispatcher, Depends(get_dispatcher)]):
    return {"agent_name": agent_name, "conversations": await dispatcher.conversations.list_ids(agent_name)}


@router.get("/agents/{agent_name}/conversations/{conversation_id}")
async def get_conversation(
    agent_name: str,
    conversation_id: str,
    dispatcher: Annotated[TurnDispatcher, Depends(get_dispatcher)]
):
    conversation = await dispatcher.get_conversation(conversation_id)
    if conversation is None or conversation.agent_name != agent_name:
        raise HTTPException(status_code=404, detail=f"Conversation '{conversation_id}' not found")
    return conversation.get_state_summary()


@router.post("/agents/{agent_name}/reload")
async def reload_agent(agent_name: str, registry: Annotated[CrewRegistry, Depends(get_registry)]):
    """Re-read every crew source for an agent"""
    try:
        snapshot = await registry.reload(agent_name)
    except ConfigurationError as e:
        logger.error("Agent reload rejected", agent_name=agent_name, error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    return _snapshot_body(snapshot)


@router.post("/agents/{agent_name}/crews/{crew_name}/reload")
async def reload_crew(
    agent_name: str,
    crew_name: str,
    registry: Annotated[CrewRegistry, Depends(get_registry)]
):
    """Hot-swap one crew; conversations mid-turn keep their definition"""
    try:
        snapshot = await registry.reload_crew(agent_name, crew_name)
    except CrewNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConfigurationError as e:
        logger.error("Crew reload rejected", agent_name=agent_name, crew=crew_name, error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    return _snapshot_body(snapshot)


@router.get("/health")
async def health_check(request: Request, registry: Annotated[CrewRegistry, Depends(get_registry)]):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "active_connections": len(request.app.state.connection_manager.get_active_sessions()),
        "loaded_agents": registry.loaded_agents(),
        "metrics": metrics.get_metrics_summary(),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
