"""Pytest configuration and scripted fakes for crewflow tests."""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from crewflow.domain.context.context_store import InMemoryContextStore, ScopedContext
from crewflow.domain.context.conversation_store import InMemoryConversationStore
from crewflow.domain.crew.registry import CrewRegistry
from crewflow.domain.crew.sources import CrewSource
from crewflow.domain.fields.extractor import ExtractionResult, FieldExtractor
from crewflow.domain.fields.field_collector import FieldCollector
from crewflow.domain.models.crew import CrewDefinition
from crewflow.domain.models.fields import FieldDefinition
from crewflow.domain.orchestration.dispatcher import TurnDispatcher
from crewflow.domain.orchestration.generation_loop import GenerationRequest, LLMAdapter
from crewflow.domain.tool.tool_executor import ToolCallRequest
from crewflow.infrastructure.config.settings import OrchestrationSettings


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

Item = Union[str, ToolCallRequest]
Script = Union[List[List[Item]], Callable[[GenerationRequest, int], List[Item]]]


def tool_rounds(messages: List[BaseMessage]) -> int:
    """Tool round trips already made in the current turn"""
    count = 0
    for message in reversed(messages):
        if isinstance(message, HumanMessage):
            break
        if isinstance(message, AIMessage) and message.tool_calls:
            count += 1
    return count


class ScriptedAdapter(LLMAdapter):
    """Replays scripted provider rounds, keyed by crew name.

    A crew without a script answers with three tokens: "<crew>", " ", "reply".
    """

    def __init__(self, scripts: Optional[Dict[str, Script]] = None, delay: float = 0.0):
        self.scripts = scripts or {}
        self.delay = delay
        self.requests: List[GenerationRequest] = []
        self.started = asyncio.Event()

    async def stream(self, request: GenerationRequest):
        self.requests.append(request)
        self.started.set()
        round_index = tool_rounds(request.messages)
        script = self.scripts.get(request.crew_name)

        if callable(script):
            items = script(request, round_index)
        elif script is not None and round_index < len(script):
            items = script[round_index]
        else:
            items = [request.crew_name, " ", "reply"]

        for item in items:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield item

    def crews_called(self) -> List[str]:
        return [r.crew_name for r in self.requests]


class KeywordExtractor(FieldExtractor):
    """Reads ``name=value`` tokens from user messages; the earliest mention wins"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []

    async def extract(self, messages, fields, collected_fields, mode) -> ExtractionResult:
        self.calls.append({
            "messages": list(messages),
            "fields": [f.name for f in fields],
            "mode": mode
        })
        if self.fail:
            raise RuntimeError("extractor offline")

        names = {f.name for f in fields}
        found: Dict[str, Any] = {}
        for message in messages:
            if not isinstance(message, HumanMessage):
                continue
            for token in str(message.content).split():
                key, sep, value = token.partition("=")
                if sep and key in names and key not in found:
                    found[key] = value

        return ExtractionResult(
            extracted_fields=found,
            remaining_fields=[n for n in names if n not in found]
        )


class StaticCrewSource(CrewSource):
    """In-memory crews per agent; ``crews`` may be replaced between loads"""

    name = "static"

    def __init__(self, crews: Optional[Dict[str, List[CrewDefinition]]] = None):
        self.crews = crews or {}
        self.refreshed: List[str] = []

    def load(self, agent_name: str) -> List[CrewDefinition]:
        return list(self.crews.get(agent_name, []))

    def refresh(self, agent_name: str) -> None:
        self.refreshed.append(agent_name)


# ---------------------------------------------------------------------------
# Crew helpers
# ---------------------------------------------------------------------------

def make_crew(name: str, **overrides) -> CrewDefinition:
    defaults = {
        "name": name,
        "guidance": f"You are the {name} crew.",
        "model": "test-model",
    }
    defaults.update(overrides)
    return CrewDefinition(**defaults)


def fields(*names: str, reevaluate: Optional[List[str]] = None) -> tuple:
    reevaluate = reevaluate or []
    return tuple(
        FieldDefinition(name=n, description=f"The {n}", reevaluate=n in reevaluate)
        for n in names
    )


async def collect_events(dispatcher: TurnDispatcher, **kwargs) -> List[Any]:
    return [event async for event in dispatcher.dispatch(**kwargs)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def context_store():
    return InMemoryContextStore()


@pytest.fixture
def scoped_context(context_store):
    return ScopedContext(context_store, "conv-1", "user-1")


@pytest.fixture
def extractor():
    return KeywordExtractor()


@pytest.fixture
def field_collector(extractor):
    return FieldCollector(extractor, extraction_window=10)


@pytest.fixture
def orchestration_settings():
    return OrchestrationSettings(
        max_transfer_hops=5,
        max_tool_round_trips=10,
        extraction_window=10,
        history_limit=100,
        speculative_generation=True
    )


@pytest.fixture
def make_dispatcher(context_store, extractor, orchestration_settings):
    """Build a dispatcher over static crews for one agent"""

    def _make(
        crews: List[CrewDefinition],
        adapter: Optional[LLMAdapter] = None,
        agent_name: str = "test_agent",
        **settings_overrides
    ) -> TurnDispatcher:
        source = StaticCrewSource({agent_name: crews})
        settings = orchestration_settings.model_copy(update=settings_overrides)
        return TurnDispatcher(
            registry=CrewRegistry([source]),
            conversations=InMemoryConversationStore(history_limit=settings.history_limit),
            context_store=context_store,
            field_collector=FieldCollector(extractor, extraction_window=settings.extraction_window),
            adapter=adapter or ScriptedAdapter(),
            settings=settings
        )

    return _make

