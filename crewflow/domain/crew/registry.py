from collections import defaultdict
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional
import asyncio

import structlog

from crewflow.domain.crew.sources import CrewSource
from crewflow.domain.errors import ConfigurationError, CrewNotFoundError
from crewflow.domain.models.crew import CrewDefinition

logger = structlog.get_logger(__name__)


class AgentCrews:
    """Immutable snapshot of one agent's crew table.

    Turns capture a snapshot once and use it for their whole duration; a hot
    swap publishes a new snapshot instead of editing this one.
    """

    __slots__ = ("agent_name", "crews", "default_crew_name", "version", "loaded_at")

    def __init__(self, agent_name: str, crews: Dict[str, CrewDefinition], default_crew_name: str, version: int = 1):
        self.agent_name = agent_name
        self.crews: Mapping[str, CrewDefinition] = MappingProxyType(dict(crews))
        self.default_crew_name = default_crew_name
        self.version = version
        self.loaded_at = datetime.now(timezone.utc)

    @property
    def default_crew(self) -> CrewDefinition:
        return self.crews[self.default_crew_name]

    def get(self, crew_name: Optional[str]) -> Optional[CrewDefinition]:
        if not crew_name:
            return None
        return self.crews.get(crew_name)

    def resolve(self, crew_name: str) -> CrewDefinition:
        crew = self.get(crew_name)
        if crew is None:
            raise CrewNotFoundError(
                f"Crew '{crew_name}' is not registered for agent '{self.agent_name}'",
                agent_name=self.agent_name,
                crew_name=crew_name
            )
        return crew

    def with_crew(self, crew: CrewDefinition) -> "AgentCrews":
        """Copy of this snapshot with one crew replaced, validated"""
        crews = dict(self.crews)
        crews[crew.name] = crew
        default_name = validate_crews(self.agent_name, crews)
        return AgentCrews(self.agent_name, crews, default_name, version=self.version + 1)


def validate_crews(agent_name: str, crews: Mapping[str, CrewDefinition]) -> str:
    """Check the crew graph and return the default crew name"""

    if not crews:
        raise ConfigurationError(f"Agent '{agent_name}' has no crews", agent_name=agent_name)

    defaults = [name for name, crew in crews.items() if crew.is_default]
    if len(defaults) != 1:
        raise ConfigurationError(
            f"Agent '{agent_name}' must have exactly one default crew, found {len(defaults)}: {sorted(defaults)}",
            agent_name=agent_name
        )

    for name, crew in crews.items():
        for target in crew.transfer_targets():
            if target not in crews:
                raise ConfigurationError(
                    f"Crew '{name}' of agent '{agent_name}' transitions to unknown crew '{target}'",
                    agent_name=agent_name,
                    crew_name=name
                )

    return defaults[0]


class CrewRegistry:
    """Loads crews per agent and publishes them as swappable snapshots"""

    def __init__(self, sources: List[CrewSource]):
        # Later sources take precedence over earlier ones on name clashes
        self.sources = list(sources)
        self._snapshots: Dict[str, AgentCrews] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _build(self, agent_name: str, version: int = 1) -> AgentCrews:
        crews: Dict[str, CrewDefinition] = {}

        for source in self.sources:
            for crew in source.load(agent_name):
                if crew.name in crews:
                    logger.info(
                        "Crew overridden by higher precedence source",
                        agent_name=agent_name,
                        crew=crew.name,
                        source=source.name
                    )
                crews[crew.name] = crew

        default_name = validate_crews(agent_name, crews)
        logger.info(
            "Crews loaded",
            agent_name=agent_name,
            crews=sorted(crews),
            default_crew=default_name,
            version=version
        )
        return AgentCrews(agent_name, crews, default_name, version=version)

    async def load(self, agent_name: str) -> AgentCrews:
        """Return the current snapshot, loading it on first use"""

        snapshot = self._snapshots.get(agent_name)
        if snapshot is not None:
            return snapshot

        async with self._locks[agent_name]:
            snapshot = self._snapshots.get(agent_name)
            if snapshot is None:
                snapshot = self._build(agent_name)
                self._snapshots[agent_name] = snapshot
            return snapshot

    async def snapshot(self, agent_name: str) -> AgentCrews:
        return await self.load(agent_name)

    async def resolve(self, agent_name: str, crew_name: str) -> CrewDefinition:
        snapshot = await self.load(agent_name)
        return snapshot.resolve(crew_name)

    async def hot_swap(self, agent_name: str, crew_name: str, new_definition: CrewDefinition) -> AgentCrews:
        """Replace one crew definition without disturbing in-flight turns.

        The new table is validated as a whole before it is published; on
        failure the previous snapshot stays active.
        """

        if new_definition.name != crew_name:
            raise ConfigurationError(
                f"Hot swap of '{crew_name}' received a definition named '{new_definition.name}'",
                agent_name=agent_name,
                crew_name=crew_name
            )

        current = await self.load(agent_name)
        async with self._locks[agent_name]:
            current = self._snapshots.get(agent_name, current)
            current.resolve(crew_name)
            swapped = current.with_crew(new_definition)
            self._snapshots[agent_name] = swapped

        logger.info(
            "Crew hot-swapped",
            agent_name=agent_name,
            crew=crew_name,
            version=swapped.version
        )
        return swapped

    async def reload(self, agent_name: str) -> AgentCrews:
        """Re-read every source for an agent and publish a fresh snapshot"""

        async with self._locks[agent_name]:
            for source in self.sources:
                source.refresh(agent_name)
            previous = self._snapshots.get(agent_name)
            snapshot = self._build(agent_name, version=previous.version + 1 if previous else 1)
            self._snapshots[agent_name] = snapshot
            return snapshot

    async def reload_crew(self, agent_name: str, crew_name: str) -> AgentCrews:
        """Re-read one crew from its sources and hot-swap it"""

        await self.load(agent_name)
        for source in self.sources:
            source.refresh(agent_name)

        definition = None
        for source in self.sources:
            candidate = source.load_crew(agent_name, crew_name)
            if candidate is not None:
                definition = candidate

        if definition is None:
            raise CrewNotFoundError(
                f"No source defines crew '{crew_name}' for agent '{agent_name}'",
                agent_name=agent_name,
                crew_name=crew_name
            )
        return await self.hot_swap(agent_name, crew_name, definition)

    async def list_crews(self, agent_name: str) -> List[Dict[str, Any]]:
        snapshot = await self.load(agent_name)
        return [crew.to_summary() for crew in snapshot.crews.values()]

    async def has_crews(self, agent_name: str) -> bool:
        try:
            await self.load(agent_name)
        except ConfigurationError:
            return False
        return True

    def loaded_agents(self) -> List[str]:
        return list(self._snapshots.keys())
