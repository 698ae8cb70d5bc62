from abc import ABC, abstractmethod
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, List, Optional
import importlib
import json
import re

import structlog

from crewflow.domain.errors import ConfigurationError
from crewflow.domain.models.crew import CrewDefinition, crew_from_config
from crewflow.domain.tool.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)


def agent_name_candidates(agent_name: str) -> List[str]:
    """Module-safe spellings of an agent name, most specific first.

    "Compass 2.0" -> ["compass_2_0", "compass", ...]
    """

    lowered = agent_name.lower().strip()
    candidates = [
        agent_name,
        lowered,
        re.sub(r"[\s.\-]+", "_", lowered),
        re.sub(r"[\s.\-]+", "_", lowered).rstrip("_"),
        re.sub(r"[\s.\-\d]+", "", lowered),
        re.split(r"[\s.\-]", lowered)[0] if lowered else "",
    ]

    unique = []
    for candidate in candidates:
        if candidate and candidate.isidentifier() and candidate not in unique:
            unique.append(candidate)
    return unique


class CrewSource(ABC):
    """Somewhere crew definitions come from"""

    name: str = "source"

    @abstractmethod
    def load(self, agent_name: str) -> List[CrewDefinition]:
        """Return every crew this source defines for the agent (may be empty)"""
        pass

    def refresh(self, agent_name: str) -> None:
        """Drop any cached material so the next load re-reads it"""
        pass

    def load_crew(self, agent_name: str, crew_name: str) -> Optional[CrewDefinition]:
        for crew in self.load(agent_name):
            if crew.name == crew_name:
                return crew
        return None


class ModuleCrewSource(CrewSource):
    """Crews defined in Python, one module per agent.

    For agent "compass" the module ``<package>.compass.crew`` (or
    ``<package>.compass``) is imported; it exposes ``get_crews()`` returning
    fresh definitions, or a ``CREWS`` list.
    """

    name = "module"

    def __init__(self, package: str = "crewflow.agents"):
        self.package = package
        self._modules: Dict[str, ModuleType] = {}

    def _import(self, agent_name: str) -> Optional[ModuleType]:
        if agent_name in self._modules:
            return self._modules[agent_name]

        for candidate in agent_name_candidates(agent_name):
            for module_path in (f"{self.package}.{candidate}.crew", f"{self.package}.{candidate}"):
                try:
                    module = importlib.import_module(module_path)
                except ModuleNotFoundError as e:
                    # Only swallow "this candidate does not exist", not broken imports inside it
                    if e.name and module_path.startswith(e.name):
                        continue
                    raise
                if hasattr(module, "get_crews") or hasattr(module, "CREWS"):
                    self._modules[agent_name] = module
                    return module

        return None

    def load(self, agent_name: str) -> List[CrewDefinition]:
        module = self._import(agent_name)
        if module is None:
            logger.info("No crew module found", agent_name=agent_name, package=self.package)
            return []

        crews = module.get_crews() if hasattr(module, "get_crews") else list(module.CREWS)
        for crew in crews:
            if not isinstance(crew, CrewDefinition):
                raise ConfigurationError(
                    f"{module.__name__} exported a non-crew object: {crew!r}",
                    agent_name=agent_name
                )

        return [crew.model_copy(update={"source": "module"}) for crew in crews]

    def refresh(self, agent_name: str) -> None:
        module = self._modules.get(agent_name)
        if module is not None:
            self._modules[agent_name] = importlib.reload(module)
            logger.info("Reloaded crew module", agent_name=agent_name, module=module.__name__)


class ConfigCrewSource(CrewSource):
    """Declarative crews from JSON documents or an in-memory mapping.

    A document is ``{"crews": [ {...crew config...}, ... ]}``; see
    ``crew_from_config`` for the accepted keys.
    """

    name = "config"

    def __init__(
        self,
        config_dir: Optional[str] = None,
        configs: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        tool_registry: Optional[ToolRegistry] = None
    ):
        self.config_dir = Path(config_dir) if config_dir else None
        self.configs = configs if configs is not None else {}
        self.tool_registry = tool_registry or ToolRegistry()

    def _read_configs(self, agent_name: str) -> List[Dict[str, Any]]:
        if agent_name in self.configs:
            return self.configs[agent_name]
        if self.config_dir is None:
            return []

        for candidate in agent_name_candidates(agent_name):
            path = self.config_dir / f"{candidate}.json"
            if path.exists():
                with path.open("r", encoding="utf-8") as f:
                    document = json.load(f)
                return document.get("crews", []) if isinstance(document, dict) else document
        return []

    def load(self, agent_name: str) -> List[CrewDefinition]:
        crews = []
        for config in self._read_configs(agent_name):
            try:
                crews.append(crew_from_config(config, self.tool_registry.get_tool))
            except (KeyError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid crew config {config.get('name', '?')!r}: {e}",
                    agent_name=agent_name,
                    crew_name=config.get("name")
                ) from e
        return crews

