from typing import Any, Dict, List, Optional


class CrewflowError(Exception):
    """Base exception for all crew orchestration errors."""
    pass


class ConfigurationError(CrewflowError):
    """Raised when a crew graph is invalid (defaults, dangling targets, firing terminal hooks)."""

    def __init__(self, message: str, agent_name: Optional[str] = None, crew_name: Optional[str] = None):
        super().__init__(message)
        self.agent_name = agent_name
        self.crew_name = crew_name


class CrewNotFoundError(ConfigurationError):
    """Raised when a crew name does not resolve for an agent."""
    pass


class TransitionLoopError(CrewflowError):
    """Raised when chained pre-message transfers exceed the hop limit."""

    def __init__(self, agent_name: str, chain: List[str], max_hops: int):
        super().__init__(
            f"Transfer chain for agent '{agent_name}' exceeded {max_hops} hops: {' -> '.join(chain)}"
        )
        self.agent_name = agent_name
        self.chain = chain
        self.max_hops = max_hops


class GenerationBudgetExceededError(CrewflowError):
    """Raised when a reply needs more tool round trips than allowed."""

    def __init__(self, crew_name: str, max_round_trips: int):
        super().__init__(
            f"Crew '{crew_name}' exceeded the limit of {max_round_trips} tool round trips"
        )
        self.crew_name = crew_name
        self.max_round_trips = max_round_trips


class ContextStoreError(CrewflowError):
    """Raised when the context store backend fails to read or commit."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}
