from typing import Any, Callable, Dict, List, Optional, TypedDict
import inspect

import structlog
from langchain_core.messages import BaseMessage
from langgraph.graph import END, StateGraph
from pydantic import BaseModel, Field

from crewflow.domain.context.context_store import ScopedContext
from crewflow.domain.crew.capabilities import TransitionDecision, normalize_outcome
from crewflow.domain.crew.registry import AgentCrews
from crewflow.domain.errors import ConfigurationError, ContextStoreError, TransitionLoopError
from crewflow.domain.fields.field_collector import FieldCollector
from crewflow.domain.models.conversation import Conversation, TransitionPhase, TransitionRecord
from crewflow.domain.models.crew import CrewDefinition
from crewflow.infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)


class RoutingState(TypedDict):
    """State for the pre-response routing graph"""
    snapshot: AgentCrews
    history: List[BaseMessage]
    context: ScopedContext
    crew_name: str
    collected_fields: Dict[str, Any]
    updated: Dict[str, Any]
    decision: Optional[TransitionDecision]
    hops: int
    chain: List[str]
    pending: List[Dict[str, Any]]


class RoutingOutcome(BaseModel):
    """Result of routing, not yet applied to the conversation"""
    crew_name: str
    collected_fields: Dict[str, Any] = Field(default_factory=dict)
    updated: Dict[str, Any] = Field(default_factory=dict)
    hops: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def transferred(self) -> bool:
        return bool(self.hops)


class TransitionController:
    """Evaluates transfer hooks and owns changes of the active crew"""

    def __init__(self, field_collector: FieldCollector, max_hops: int = 5):
        self.field_collector = field_collector
        self.max_hops = max_hops
        self.graph = self._create_graph()

    def _create_graph(self):
        graph = StateGraph(RoutingState)

        graph.add_node("extract_fields", self.extract_fields_node)
        graph.add_node("pre_transfer", self.pre_transfer_node)
        graph.add_node("hop", self.hop_node)

        graph.set_entry_point("extract_fields")
        graph.add_edge("extract_fields", "pre_transfer")
        graph.add_conditional_edges(
            "pre_transfer",
            self.route_after_pre_transfer,
            {
                "hop": "hop",
                "stay": END
            }
        )
        graph.add_edge("hop", "extract_fields")

        return graph.compile()

    async def extract_fields_node(self, state: RoutingState) -> Dict[str, Any]:
        crew = state["snapshot"].resolve(state["crew_name"])
        update = await self.field_collector.collect(crew, state["history"], state["collected_fields"])

        if update.updated:
            agent_logger.log_fields_collected(
                conversation_id=state["context"].conversation_id,
                crew=crew.name,
                updated=update.updated,
                exposed=update.exposed
            )

        return {
            "collected_fields": update.collected_fields,
            "updated": {**state["updated"], **update.updated}
        }

    async def pre_transfer_node(self, state: RoutingState) -> Dict[str, Any]:
        crew = state["snapshot"].resolve(state["crew_name"])
        decision = await self.evaluate_pre(crew, state["collected_fields"], state["context"])
        return {"decision": decision}

    def route_after_pre_transfer(self, state: RoutingState) -> str:
        decision = state.get("decision")
        return "hop" if decision is not None and decision.transfer else "stay"

    async def hop_node(self, state: RoutingState) -> Dict[str, Any]:
        decision = state["decision"]
        chain = state["chain"] + [decision.target]
        hops = state["hops"] + 1

        if hops > self.max_hops:
            logger.error(
                "Pre-message transfer chain exceeded hop limit",
                agent_name=state["snapshot"].agent_name,
                chain=chain,
                max_hops=self.max_hops
            )
            raise TransitionLoopError(state["snapshot"].agent_name, chain, self.max_hops)

        return {
            "crew_name": decision.target,
            "hops": hops,
            "chain": chain,
            "decision": None,
            "pending": state["pending"] + [{
                "from_crew": state["crew_name"],
                "to_crew": decision.target,
                "reason": decision.reason
            }]
        }

    async def route(
        self,
        snapshot: AgentCrews,
        crew_name: str,
        history: List[BaseMessage],
        collected_fields: Dict[str, Any],
        context: ScopedContext
    ) -> RoutingOutcome:
        """Run extraction and chained pre-message transfers on a copy of the fields"""

        initial: RoutingState = {
            "snapshot": snapshot,
            "history": list(history),
            "context": context,
            "crew_name": crew_name,
            "collected_fields": dict(collected_fields),
            "updated": {},
            "decision": None,
            "hops": 0,
            "chain": [crew_name],
            "pending": []
        }

        # Each hop is three graph steps; keep LangGraph's own limit out of the way
        final = await self.graph.ainvoke(initial, config={"recursion_limit": (self.max_hops + 2) * 3 + 5})

        return RoutingOutcome(
            crew_name=final["crew_name"],
            collected_fields=final["collected_fields"],
            updated=final["updated"],
            hops=final["pending"]
        )

    async def _evaluate(
        self,
        crew: CrewDefinition,
        phase: TransitionPhase,
        hook: Callable[[], Any]
    ) -> TransitionDecision:
        try:
            outcome = hook()
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except ContextStoreError as e:
            # A hook that could not confirm its write must not leave the crew
            logger.warning(
                "Transfer hook hit a context store failure, staying",
                crew=crew.name,
                phase=phase.value,
                error=str(e)
            )
            return TransitionDecision.stay()

        decision = normalize_outcome(outcome)
        if not decision.transfer:
            return TransitionDecision.stay()

        if crew.is_terminal:
            raise ConfigurationError(
                f"Terminal crew '{crew.name}' fired its {phase.value} transfer hook",
                crew_name=crew.name
            )

        target = decision.target or crew.transition_to
        if target not in crew.transfer_targets():
            raise ConfigurationError(
                f"Crew '{crew.name}' tried to transfer to undeclared crew '{target}'",
                crew_name=crew.name
            )

        return TransitionDecision.to(target, decision.reason or f"{phase.value} transfer")

    async def evaluate_pre(
        self,
        crew: CrewDefinition,
        collected_fields: Dict[str, Any],
        context: ScopedContext
    ) -> TransitionDecision:
        return await self._evaluate(
            crew,
            TransitionPhase.PRE_MESSAGE,
            lambda: crew.pre_rule.should_transfer(dict(collected_fields), context)
        )

    async def evaluate_post(
        self,
        crew: CrewDefinition,
        collected_fields: Dict[str, Any],
        context: ScopedContext,
        response: str
    ) -> TransitionDecision:
        if crew.one_shot:
            return TransitionDecision.to(crew.transition_to, "one-shot crew delivered its reply")

        return await self._evaluate(
            crew,
            TransitionPhase.POST_MESSAGE,
            lambda: crew.post_rule.should_transfer(dict(collected_fields), context, response)
        )

    def apply(
        self,
        conversation: Conversation,
        decision: TransitionDecision,
        phase: TransitionPhase
    ) -> Optional[TransitionRecord]:
        """Move the conversation to the decided crew"""

        if not decision.transfer or not decision.target:
            return None

        record = TransitionRecord(
            from_crew=conversation.active_crew_name,
            to_crew=decision.target,
            phase=phase,
            reason=decision.reason
        )
        conversation.active_crew_name = decision.target
        conversation.transitions.append(record)
        conversation.touch()

        agent_logger.log_crew_transition(
            conversation_id=conversation.conversation_id,
            from_crew=record.from_crew,
            to_crew=record.to_crew,
            phase=phase.value,
            reason=record.reason
        )
        return record

    def commit(self, conversation: Conversation, outcome: RoutingOutcome) -> List[TransitionRecord]:
        """Apply a successful routing outcome to the conversation"""

        conversation.collected_fields = dict(outcome.collected_fields)
        records = []
        for hop in outcome.hops:
            record = self.apply(
                conversation,
                TransitionDecision.to(hop["to_crew"], hop.get("reason")),
                TransitionPhase.PRE_MESSAGE
            )
            if record is not None:
                records.append(record)
        return records

    async def verify_terminal_crews(
        self,
        snapshot: AgentCrews,
        samples: List[Dict[str, Any]],
        context: ScopedContext,
        response: str = ""
    ) -> List[str]:
        """Evaluate both hooks of every terminal crew against sample field sets.

        Returns the names of terminal crews checked; a firing hook raises
        ``ConfigurationError``.
        """

        checked = []
        for crew in snapshot.crews.values():
            if not crew.is_terminal:
                continue
            for fields in samples or [{}]:
                await self.evaluate_pre(crew, fields, context)
                await self.evaluate_post(crew, fields, context, response)
            checked.append(crew.name)
        return checked
