from typing import Dict, Set, Optional
from fastapi import WebSocket
import asyncio
from datetime import datetime, timezone
import structlog

from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and the turns running for them"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.session_metadata: Dict[str, Dict] = {}
        self.turn_tasks: Dict[str, Set[asyncio.Task]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, conversation_id: str, agent_name: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            self.active_connections[conversation_id] = websocket
            self.session_metadata[conversation_id] = {
                "agent_name": agent_name,
                "connected_at": datetime.now(timezone.utc),
                "last_activity": datetime.now(timezone.utc)
            }

        await self.send_event(
            conversation_id,
            ConnectionEvent(
                status="connected",
                conversation_id=conversation_id,
                agent_name=agent_name
            )
        )

        logger.info("WebSocket connected", conversation_id=conversation_id, agent_name=agent_name)

    def track_turn(self, conversation_id: str, task: asyncio.Task):
        """Remember an in-flight turn so a disconnect can cancel it"""
        tasks = self.turn_tasks.setdefault(conversation_id, set())
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def cancel_turns(self, conversation_id: str):
        tasks = list(self.turn_tasks.pop(conversation_id, set()))
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled in-flight turns", conversation_id=conversation_id, count=len(tasks))

    async def disconnect(self, conversation_id: str):
        """Disconnect a WebSocket connection"""
        async with self._lock:
            if conversation_id in self.active_connections:
                ws = self.active_connections.pop(conversation_id)
                self.session_metadata.pop(conversation_id, None)

                try:
                    await ws.close()
                except RuntimeError as e:
                    # Already closed by the client
                    logger.debug("WebSocket already closed", conversation_id=conversation_id, error=str(e))

        logger.info("WebSocket disconnected", conversation_id=conversation_id)

    async def send_event(self, conversation_id: str, event: BaseEvent) -> bool:
        """Send an event to a specific conversation"""
        if conversation_id not in self.active_connections:
            logger.warning("Attempted to send to disconnected session", conversation_id=conversation_id)
            return False

        websocket = self.active_connections[conversation_id]

        try:
            await websocket.send_json(event.model_dump(mode="json"))

            if conversation_id in self.session_metadata:
                self.session_metadata[conversation_id]["last_activity"] = datetime.now(timezone.utc)

            return True

        except Exception as e:
            logger.error("Failed to send event", conversation_id=conversation_id, error=str(e))
            await self.disconnect(conversation_id)
            return False

    async def send_error(self, conversation_id: str, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a conversation"""
        error_event = ErrorEvent(
            payload={"message": error_message},
            error_code=error_code,
            conversation_id=conversation_id
        )
        await self.send_event(conversation_id, error_event)

    def get_active_sessions(self, agent_name: Optional[str] = None) -> Set[str]:
        """Get active conversation IDs, optionally filtered by agent"""
        if agent_name:
            return {
                conversation_id
                for conversation_id, metadata in self.session_metadata.items()
                if metadata.get("agent_name") == agent_name
            }
        return set(self.active_connections.keys())
