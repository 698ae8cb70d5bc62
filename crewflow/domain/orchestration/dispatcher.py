from weakref import WeakValueDictionary
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
import asyncio
import time

import structlog

from crewflow.domain.context.context_store import ContextStore, ScopedContext
from crewflow.domain.context.conversation_store import ConversationStore
from crewflow.domain.crew.capabilities import ContextParams, TransitionDecision
from crewflow.domain.crew.registry import AgentCrews, CrewRegistry
from crewflow.domain.errors import CrewflowError
from crewflow.domain.fields.field_collector import FieldCollector, merge_fields
from crewflow.domain.models.conversation import Conversation, TransitionPhase, TransitionRecord
from crewflow.domain.models.crew import CrewDefinition, KnowledgeBaseConfig
from crewflow.domain.models.events import (
    BaseTurnEvent, TokenEvent, TransitionEvent, TurnCompleteEvent, TurnFailedEvent
)
from crewflow.domain.orchestration.generation_loop import GenerationLoop, GenerationRequest, LLMAdapter
from crewflow.domain.orchestration.transition_controller import TransitionController
from crewflow.domain.tool.tool_executor import ToolContext, ToolExecutor
from crewflow.infrastructure.config.settings import OrchestrationSettings, get_settings
from crewflow.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

_DONE = object()


class SpeculativeDraft:
    """A reply generated while routing is still undecided.

    Events are buffered and only released by ``drain``; tool calls wait on
    the gate so a discarded draft never runs a handler.
    """

    def __init__(self, events: AsyncIterator[BaseTurnEvent], gate: asyncio.Event, tool_context: ToolContext):
        self.gate = gate
        self.tool_context = tool_context
        self.queue: asyncio.Queue = asyncio.Queue()
        self.task = asyncio.create_task(self._pump(events))

    async def _pump(self, events: AsyncIterator[BaseTurnEvent]):
        try:
            async for event in events:
                await self.queue.put(event)
        except Exception as e:
            await self.queue.put(e)
            return
        await self.queue.put(_DONE)

    async def drain(self) -> AsyncIterator[BaseTurnEvent]:
        self.gate.set()
        while True:
            item = await self.queue.get()
            if item is _DONE:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def discard(self):
        if not self.task.done():
            self.task.cancel()
        await asyncio.gather(self.task, return_exceptions=True)


class TurnDispatcher:
    """Runs one inbound message through routing, generation and post-transfer"""

    def __init__(
        self,
        registry: CrewRegistry,
        conversations: ConversationStore,
        context_store: ContextStore,
        field_collector: FieldCollector,
        adapter: LLMAdapter,
        settings: Optional[OrchestrationSettings] = None,
        tool_executor: Optional[ToolExecutor] = None
    ):
        self.settings = settings or get_settings().orchestration
        self.registry = registry
        self.conversations = conversations
        self.context_store = context_store
        self.controller = TransitionController(field_collector, max_hops=self.settings.max_transfer_hops)
        self.generation = GenerationLoop(
            adapter,
            tool_executor=tool_executor,
            max_round_trips=self.settings.max_tool_round_trips
        )
        # Entries vanish once no turn holds or waits on the lock
        self._locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()

    @staticmethod
    def resolve_knowledge_base(crew: CrewDefinition, use_knowledge_base: bool) -> Optional[KnowledgeBaseConfig]:
        """KB is on when the caller asks for it and the crew does not switch it off"""

        if not use_knowledge_base:
            return None
        kb = crew.knowledge_base
        if kb is not None and not kb.enabled:
            return None
        return KnowledgeBaseConfig(
            enabled=True,
            store_id=kb.store_id if kb else None,
            sources=list(kb.sources) if kb else []
        )

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return await self.conversations.get(conversation_id)

    async def _load_conversation(
        self,
        snapshot: AgentCrews,
        conversation_id: str,
        user_id: Optional[str]
    ) -> Conversation:
        conversation = await self.conversations.get(conversation_id)
        if conversation is None:
            conversation = Conversation(
                conversation_id=conversation_id,
                agent_name=snapshot.agent_name,
                user_id=user_id,
                active_crew_name=snapshot.default_crew_name
            )
            logger.info("Conversation created", crew=snapshot.default_crew_name)
        elif conversation.agent_name != snapshot.agent_name:
            raise CrewflowError(
                f"Conversation '{conversation_id}' belongs to agent '{conversation.agent_name}'"
            )
        return conversation

    def _current_crew(
        self,
        snapshot: AgentCrews,
        conversation: Conversation,
        override_crew: Optional[str]
    ) -> CrewDefinition:
        if override_crew:
            crew = snapshot.get(override_crew)
            if crew is not None:
                if crew.name != conversation.active_crew_name:
                    self.controller.apply(
                        conversation,
                        TransitionDecision.to(crew.name, "crew override"),
                        TransitionPhase.PRE_MESSAGE
                    )
                return crew
            logger.warning("Override crew not found, ignoring", crew=override_crew)

        crew = snapshot.get(conversation.active_crew_name)
        if crew is not None:
            return crew

        # The stored crew disappeared in a reload
        logger.warning(
            "Active crew no longer defined, falling back to default",
            crew=conversation.active_crew_name,
            default_crew=snapshot.default_crew_name
        )
        self.controller.apply(
            conversation,
            TransitionDecision.to(snapshot.default_crew_name, "active crew no longer defined"),
            TransitionPhase.PRE_MESSAGE
        )
        return snapshot.default_crew

    async def _prepare(
        self,
        crew: CrewDefinition,
        conversation: Conversation,
        context: ScopedContext,
        use_knowledge_base: bool,
        metadata: Dict[str, Any]
    ) -> Tuple[GenerationRequest, ToolContext]:
        params = ContextParams(
            conversation_id=conversation.conversation_id,
            user_id=conversation.user_id,
            collected_fields=dict(conversation.collected_fields),
            history=list(conversation.history),
            metadata=metadata
        )
        runtime_context = await crew.builder.build(params, context)

        request = GenerationRequest(
            crew_name=crew.name,
            model=crew.model,
            max_tokens=crew.max_tokens,
            guidance=crew.guidance,
            runtime_context=runtime_context,
            tool_schemas=crew.tool_schemas(),
            messages=list(conversation.history),
            knowledge_base=self.resolve_knowledge_base(crew, use_knowledge_base)
        )
        tool_context = ToolContext(
            conversation_id=conversation.conversation_id,
            user_id=conversation.user_id,
            crew_name=crew.name,
            collected_fields=dict(conversation.collected_fields),
            context=context
        )
        return request, tool_context

    @staticmethod
    def _transition_event(record: TransitionRecord) -> TransitionEvent:
        return TransitionEvent(
            crew_name=record.from_crew,
            from_crew=record.from_crew,
            to_crew=record.to_crew,
            phase=record.phase,
            reason=record.reason
        )

    async def dispatch(
        self,
        agent_name: str,
        conversation_id: str,
        message: str,
        user_id: Optional[str] = None,
        override_crew: Optional[str] = None,
        use_knowledge_base: bool = False,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[BaseTurnEvent]:
        """Process one user message, yielding events as the turn progresses.

        Fatal errors yield a ``TurnFailedEvent`` and are re-raised; the stored
        conversation is untouched in that case.
        """

        lock = self._lock_for(conversation_id)
        async with lock:
            structlog.contextvars.bind_contextvars(conversation_id=conversation_id, agent_name=agent_name)
            started = time.perf_counter()
            crew_name = ""

            try:
                snapshot = await self.registry.snapshot(agent_name)
                conversation = await self._load_conversation(snapshot, conversation_id, user_id)
                crew_name = conversation.active_crew_name

                async for event in self._run_turn(
                    snapshot,
                    conversation,
                    message,
                    override_crew,
                    use_knowledge_base,
                    metadata or {}
                ):
                    yield event

                metrics.increment_counter("turns_completed", tags={"agent": agent_name})

            except CrewflowError as e:
                logger.error("Turn failed", crew=crew_name, error_type=type(e).__name__, error=str(e))
                metrics.increment_counter("turns_failed", tags={"agent": agent_name, "error": type(e).__name__})
                yield TurnFailedEvent(
                    crew_name=crew_name,
                    conversation_id=conversation_id,
                    error_type=type(e).__name__,
                    message=str(e)
                )
                raise

            except asyncio.CancelledError:
                logger.info("Turn cancelled", crew=crew_name)
                metrics.increment_counter("turns_cancelled", tags={"agent": agent_name})
                raise

            finally:
                metrics.record_latency(
                    "turn",
                    (time.perf_counter() - started) * 1000,
                    tags={"agent": agent_name}
                )
                structlog.contextvars.unbind_contextvars("conversation_id", "agent_name")

    async def _run_turn(
        self,
        snapshot: AgentCrews,
        conversation: Conversation,
        message: str,
        override_crew: Optional[str],
        use_knowledge_base: bool,
        metadata: Dict[str, Any]
    ) -> AsyncIterator[BaseTurnEvent]:
        recorded = len(conversation.transitions)
        crew = self._current_crew(snapshot, conversation, override_crew)
        for record in conversation.transitions[recorded:]:
            yield self._transition_event(record)

        context = ScopedContext(self.context_store, conversation.conversation_id, conversation.user_id)

        message = await crew.processor.pre_process(message, context)
        conversation.add_user_message(message)
        logger.info("Dispatching message", crew=crew.name, display_name=crew.display_name)

        draft: Optional[SpeculativeDraft] = None
        if self.settings.speculative_generation:
            request, tool_context = await self._prepare(crew, conversation, context, use_knowledge_base, metadata)
            gate = asyncio.Event()
            draft = SpeculativeDraft(self.generation.run(crew, request, tool_context, tool_gate=gate), gate, tool_context)

        try:
            outcome = await self.controller.route(
                snapshot,
                crew.name,
                conversation.history,
                conversation.collected_fields,
                context
            )

            for record in self.controller.commit(conversation, outcome):
                yield self._transition_event(record)

            # A draft is only valid if it saw the same crew and the same fields
            if draft is not None and not outcome.transferred and not outcome.updated:
                events = draft.drain()
                tool_context = draft.tool_context
            else:
                if draft is not None:
                    await draft.discard()
                    logger.debug("Speculative draft discarded", crew=crew.name, transferred=outcome.transferred)
                    draft = None
                crew = snapshot.resolve(conversation.active_crew_name)
                request, tool_context = await self._prepare(crew, conversation, context, use_knowledge_base, metadata)
                events = self.generation.run(crew, request, tool_context)

            reply_parts: List[str] = []
            async for event in events:
                if isinstance(event, TokenEvent):
                    reply_parts.append(event.text)
                yield event

        finally:
            if draft is not None:
                await draft.discard()

        # Tools may have written fields through their context copy
        conversation.collected_fields, _ = merge_fields(
            conversation.collected_fields,
            tool_context.collected_fields,
            list(tool_context.collected_fields.keys())
        )

        reply = await crew.processor.post_process("".join(reply_parts), context)
        conversation.add_assistant_message(reply, crew.name)

        decision = await self.controller.evaluate_post(crew, conversation.collected_fields, context, reply)
        record = self.controller.apply(conversation, decision, TransitionPhase.POST_MESSAGE)
        if record is not None:
            yield self._transition_event(record)

        conversation.trim_history(self.settings.history_limit)
        await self.conversations.save(conversation)

        yield TurnCompleteEvent(
            crew_name=crew.name,
            conversation_id=conversation.conversation_id,
            reply=reply,
            next_crew_name=conversation.active_crew_name,
            collected_fields=dict(conversation.collected_fields)
        )
