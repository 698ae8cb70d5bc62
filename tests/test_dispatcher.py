"""End-to-end turns through the dispatcher with scripted providers."""

import asyncio
import gc
from typing import Any, Dict

import pytest

from conftest import ScriptedAdapter, collect_events, fields, make_crew
from crewflow.domain.crew.capabilities import (
    FieldsCompleteTransfer, MessageProcessor, PostTransferRule, PreTransferRule, TransitionDecision
)
from crewflow.domain.errors import CrewflowError, GenerationBudgetExceededError, TransitionLoopError
from crewflow.domain.models.conversation import TransitionPhase
from crewflow.domain.models.crew import KnowledgeBaseConfig
from crewflow.domain.models.events import (
    TokenEvent, ToolCallEvent, ToolResultEvent, TransitionEvent, TurnCompleteEvent, TurnFailedEvent
)
from crewflow.domain.orchestration.dispatcher import TurnDispatcher
from crewflow.domain.tool.tool_executor import ToolCallRequest
from crewflow.domain.tool.tool_registry import ToolRegistry


class Toggle(PreTransferRule):
    def __init__(self):
        self.on = False

    async def should_transfer(self, collected_fields: Dict[str, Any], context):
        return self.on


class AfterReply(PostTransferRule):
    async def should_transfer(self, collected_fields, context, response):
        return True


class AgeGate(PreTransferRule):
    async def should_transfer(self, collected_fields: Dict[str, Any], context):
        if "age" not in collected_fields:
            return False
        if int(collected_fields["age"]) < 18:
            return TransitionDecision.to("ineligible", "under 18")
        return True


class RecordingPostRule(PostTransferRule):
    def __init__(self):
        self.responses = []

    async def should_transfer(self, collected_fields, context, response):
        self.responses.append(response)
        return False


class Normalizer(MessageProcessor):
    async def pre_process(self, message, context):
        return " ".join(message.split()).lower()

    async def post_process(self, response, context):
        return response.upper()


def tokens(events):
    return [e for e in events if isinstance(e, TokenEvent)]


def completion(events) -> TurnCompleteEvent:
    return next(e for e in events if isinstance(e, TurnCompleteEvent))


async def events_until_error(dispatcher, **kwargs):
    events = []
    with pytest.raises(CrewflowError) as exc_info:
        async for event in dispatcher.dispatch(**kwargs):
            events.append(event)
    return events, exc_info.value


def turn(message: str, conversation_id: str = "conv-1", **kwargs):
    return {"agent_name": "test_agent", "conversation_id": conversation_id, "message": message, **kwargs}


class TestSpeculativeDraft:
    @pytest.mark.asyncio
    async def test_draft_is_used_when_nothing_changes(self, make_dispatcher):
        adapter = ScriptedAdapter()
        dispatcher = make_dispatcher([make_crew("main", is_default=True)], adapter)

        events = await collect_events(dispatcher, **turn("hello"))

        assert "".join(e.text for e in tokens(events)) == "main reply"
        assert adapter.crews_called() == ["main"]
        assert completion(events).next_crew_name == "main"

    @pytest.mark.asyncio
    async def test_pre_transfer_discards_draft(self, make_dispatcher):
        adapter = ScriptedAdapter()
        crews = [
            make_crew(
                "entry",
                is_default=True,
                fields_to_collect=fields("name"),
                transition_to="main",
                pre_transfer=FieldsCompleteTransfer(["name"])
            ),
            make_crew("main"),
        ]
        dispatcher = make_dispatcher(crews, adapter)

        events = await collect_events(dispatcher, **turn("name=Dana"))

        assert isinstance(events[0], TransitionEvent)
        assert (events[0].from_crew, events[0].to_crew) == ("entry", "main")
        assert events[0].phase == TransitionPhase.PRE_MESSAGE
        assert {e.crew_name for e in tokens(events)} == {"main"}
        assert adapter.crews_called()[-1] == "main"

        done = completion(events)
        assert done.reply == "main reply"
        assert done.collected_fields == {"name": "Dana"}

    @pytest.mark.asyncio
    async def test_field_update_regenerates_with_new_fields(self, make_dispatcher):
        adapter = ScriptedAdapter()
        crews = [make_crew(
            "entry",
            is_default=True,
            fields_to_collect=fields("name", "age"),
            transition_to="main",
            pre_transfer=FieldsCompleteTransfer(["name", "age"])
        ), make_crew("main")]
        dispatcher = make_dispatcher(crews, adapter)

        events = await collect_events(dispatcher, **turn("name=Dana"))

        assert adapter.crews_called()[-1] == "entry"
        assert adapter.requests[-1].runtime_context["collected_data"] == {"name": "Dana"}
        assert not any(isinstance(e, TransitionEvent) for e in events)
        assert "".join(e.text for e in tokens(events)) == "entry reply"

    @pytest.mark.asyncio
    async def test_discarded_draft_never_runs_tools(self, make_dispatcher):
        calls = []

        def record(args, ctx):
            calls.append(ctx.crew_name)
            return "ok"

        crews = [
            make_crew(
                "entry",
                is_default=True,
                fields_to_collect=fields("name"),
                transition_to="main",
                pre_transfer=FieldsCompleteTransfer(["name"]),
                tools=(ToolRegistry().get_tool("log_event").model_copy(update={"handler": record}),)
            ),
            make_crew("main"),
        ]
        adapter = ScriptedAdapter({"entry": [[ToolCallRequest(id="t1", name="call_log_event")], ["done"]]})
        dispatcher = make_dispatcher(crews, adapter)

        await collect_events(dispatcher, **turn("name=Dana"))

        assert calls == []

    @pytest.mark.asyncio
    async def test_without_speculation_generates_once(self, make_dispatcher):
        adapter = ScriptedAdapter()
        dispatcher = make_dispatcher([make_crew("main", is_default=True)], adapter, speculative_generation=False)

        await collect_events(dispatcher, **turn("hello"))
        assert adapter.crews_called() == ["main"]


class TestTransfers:
    @pytest.mark.asyncio
    async def test_post_transfer_applies_to_next_message(self, make_dispatcher):
        crews = [
            make_crew("entry", is_default=True, transition_to="main", post_transfer=AfterReply()),
            make_crew("main"),
        ]
        dispatcher = make_dispatcher(crews)

        first = await collect_events(dispatcher, **turn("hi"))
        assert {e.crew_name for e in tokens(first)} == {"entry"}
        transition = next(e for e in first if isinstance(e, TransitionEvent))
        assert transition.phase == TransitionPhase.POST_MESSAGE
        assert completion(first).next_crew_name == "main"

        second = await collect_events(dispatcher, **turn("again"))
        assert {e.crew_name for e in tokens(second)} == {"main"}

    @pytest.mark.asyncio
    async def test_one_shot_crew_replies_exactly_once(self, make_dispatcher):
        crews = [
            make_crew("report", is_default=True, transition_to="coach", one_shot=True),
            make_crew("coach"),
        ]
        dispatcher = make_dispatcher(crews)

        first = await collect_events(dispatcher, **turn("go"))
        second = await collect_events(dispatcher, **turn("thanks"))
        third = await collect_events(dispatcher, **turn("more"))

        assert completion(first).reply == "report reply"
        assert completion(first).next_crew_name == "coach"
        assert completion(second).reply == "coach reply"
        assert completion(third).next_crew_name == "coach"

        conversation = await dispatcher.get_conversation("conv-1")
        assert [t.to_crew for t in conversation.transitions] == ["coach"]

    @pytest.mark.asyncio
    async def test_override_crew_is_recorded(self, make_dispatcher):
        dispatcher = make_dispatcher([make_crew("entry", is_default=True), make_crew("side")])

        events = await collect_events(dispatcher, **turn("hi", override_crew="side"))

        assert events[0].to_crew == "side"
        assert events[0].reason == "crew override"
        assert {e.crew_name for e in tokens(events)} == {"side"}
        conversation = await dispatcher.get_conversation("conv-1")
        assert conversation.active_crew_name == "side"

    @pytest.mark.asyncio
    async def test_unknown_override_is_ignored(self, make_dispatcher):
        dispatcher = make_dispatcher([make_crew("entry", is_default=True)])

        events = await collect_events(dispatcher, **turn("hi", override_crew="ghost"))

        assert not any(isinstance(e, TransitionEvent) for e in events)
        assert completion(events).reply == "entry reply"


class TestFailures:
    @pytest.mark.asyncio
    async def test_transition_loop_keeps_prior_state(self, make_dispatcher):
        toggle = Toggle()
        crews = [
            make_crew("a", is_default=True, transition_to="b", pre_transfer=toggle),
            make_crew("b", transition_to="a", pre_transfer=toggle),
        ]
        dispatcher = make_dispatcher(crews)
        await collect_events(dispatcher, **turn("first"))

        toggle.on = True
        events, error = await events_until_error(dispatcher, **turn("second"))

        assert isinstance(error, TransitionLoopError)
        assert isinstance(events[-1], TurnFailedEvent)
        assert events[-1].error_type == "TransitionLoopError"
        assert not tokens(events)

        conversation = await dispatcher.get_conversation("conv-1")
        assert conversation.active_crew_name == "a"
        assert len(conversation.history) == 2

    @pytest.mark.asyncio
    async def test_budget_exceeded_does_not_save(self, make_dispatcher):
        crew = make_crew("main", is_default=True, tools=(ToolRegistry().get_tool("log_event"),))
        adapter = ScriptedAdapter({
            "main": lambda request, index: [ToolCallRequest(id=f"t{index}", name="call_log_event")]
        })
        dispatcher = make_dispatcher([crew], adapter, max_tool_round_trips=1)

        events, error = await events_until_error(dispatcher, **turn("loop"))

        assert isinstance(error, GenerationBudgetExceededError)
        assert isinstance(events[-1], TurnFailedEvent)
        assert await dispatcher.get_conversation("conv-1") is None


class TestTools:
    @pytest.mark.asyncio
    async def test_tool_field_updates_are_merged(self, make_dispatcher):
        crew = make_crew("main", is_default=True, tools=(ToolRegistry().get_tool("update_field"),))
        adapter = ScriptedAdapter({"main": [
            [ToolCallRequest(
                id="t1",
                name="call_update_field",
                arguments={"fieldName": "email", "fieldValue": "dana@example.com"}
            )],
            ["Saved"],
        ]})
        dispatcher = make_dispatcher([crew], adapter)

        events = await collect_events(dispatcher, **turn("my email is dana@example.com"))

        assert [type(e) for e in events] == [ToolCallEvent, ToolResultEvent, TokenEvent, TurnCompleteEvent]
        assert completion(events).collected_fields == {"email": "dana@example.com"}
        conversation = await dispatcher.get_conversation("conv-1")
        assert conversation.collected_fields == {"email": "dana@example.com"}


class TestHotSwapDuringTurn:
    @pytest.mark.asyncio
    async def test_in_flight_turn_keeps_its_snapshot(self, make_dispatcher):
        adapter = ScriptedAdapter(delay=0.01)
        dispatcher = make_dispatcher([make_crew("main", is_default=True), make_crew("other")], adapter)

        task = asyncio.create_task(collect_events(dispatcher, **turn("hi")))
        await adapter.started.wait()
        await dispatcher.registry.hot_swap("test_agent", "main", make_crew(
            "main", is_default=True, guidance="v2", transition_to="other", post_transfer=AfterReply()
        ))
        first = await task

        assert completion(first).next_crew_name == "main"
        assert adapter.requests[0].guidance == "You are the main crew."

        second = await collect_events(dispatcher, **turn("again"))
        assert adapter.requests[-1].guidance == "v2"
        assert completion(second).next_crew_name == "other"


class TestKnowledgeBase:
    def test_off_unless_requested(self):
        crew = make_crew("coach", knowledge_base=KnowledgeBaseConfig(store_id="kb-1"))
        assert TurnDispatcher.resolve_knowledge_base(crew, False) is None

    def test_crew_can_disable(self):
        crew = make_crew("coach", knowledge_base=KnowledgeBaseConfig(enabled=False, store_id="kb-1"))
        assert TurnDispatcher.resolve_knowledge_base(crew, True) is None

    def test_requested_without_crew_config(self):
        kb = TurnDispatcher.resolve_knowledge_base(make_crew("coach"), True)
        assert kb.enabled is True
        assert kb.store_id is None

    @pytest.mark.asyncio
    async def test_crew_store_reaches_adapter(self, make_dispatcher):
        adapter = ScriptedAdapter()
        crew = make_crew(
            "coach",
            is_default=True,
            knowledge_base=KnowledgeBaseConfig(store_id="kb-1", sources=["guides"])
        )
        dispatcher = make_dispatcher([crew], adapter)

        await collect_events(dispatcher, **turn("help", use_knowledge_base=True))

        kb = adapter.requests[0].knowledge_base
        assert kb.store_id == "kb-1"
        assert kb.sources == ["guides"]


class TestBranching:
    @staticmethod
    def screening_crews():
        return [
            make_crew(
                "entry",
                is_default=True,
                fields_to_collect=fields("user_name", "age"),
                transition_to="eligible",
                branches=("ineligible",),
                pre_transfer=AgeGate()
            ),
            make_crew("eligible"),
            make_crew("ineligible"),
        ]

    @pytest.mark.asyncio
    async def test_minor_routes_to_ineligible_branch(self, make_dispatcher):
        adapter = ScriptedAdapter()
        dispatcher = make_dispatcher(self.screening_crews(), adapter)

        events = await collect_events(dispatcher, **turn("user_name=Dana age=15"))

        done = completion(events)
        assert done.crew_name == "ineligible"
        assert done.next_crew_name == "ineligible"
        assert done.collected_fields == {"user_name": "Dana", "age": "15"}
        assert "".join(e.text for e in tokens(events)) == "ineligible reply"

        transitions = [(e.from_crew, e.to_crew) for e in events if isinstance(e, TransitionEvent)]
        assert transitions == [("entry", "ineligible")]
        assert "eligible" not in adapter.crews_called()

        conversation = await dispatcher.get_conversation("conv-1")
        assert [r.to_crew for r in conversation.transitions] == ["ineligible"]

    @pytest.mark.asyncio
    async def test_adult_takes_default_target(self, make_dispatcher):
        adapter = ScriptedAdapter()
        dispatcher = make_dispatcher(self.screening_crews(), adapter)

        events = await collect_events(dispatcher, **turn("user_name=Sam age=30"))

        assert completion(events).crew_name == "eligible"
        assert "ineligible" not in adapter.crews_called()


class TestMessageProcessing:
    @pytest.mark.asyncio
    async def test_hooks_rewrite_message_and_reply(self, make_dispatcher):
        adapter = ScriptedAdapter()
        post_rule = RecordingPostRule()
        crew = make_crew(
            "main",
            is_default=True,
            message_processor=Normalizer(),
            post_transfer=post_rule
        )
        dispatcher = make_dispatcher([crew], adapter)

        events = await collect_events(dispatcher, **turn("  Hello   THERE "))

        assert adapter.requests[0].messages[-1].content == "hello there"
        # Streamed tokens are the raw model output
        assert "".join(e.text for e in tokens(events)) == "main reply"
        assert completion(events).reply == "MAIN REPLY"
        assert post_rule.responses == ["MAIN REPLY"]

        conversation = await dispatcher.get_conversation("conv-1")
        assert [m.content for m in conversation.history] == ["hello there", "MAIN REPLY"]

    @pytest.mark.asyncio
    async def test_default_processor_passes_text_through(self, make_dispatcher):
        dispatcher = make_dispatcher([make_crew("main", is_default=True)])

        events = await collect_events(dispatcher, **turn("  Hello "))

        conversation = await dispatcher.get_conversation("conv-1")
        assert conversation.history[0].content == "  Hello "
        assert completion(events).reply == "main reply"


class TestConversationLocks:
    @pytest.mark.asyncio
    async def test_concurrent_turns_are_serialized(self, make_dispatcher):
        dispatcher = make_dispatcher([make_crew("main", is_default=True)], ScriptedAdapter(delay=0.01))

        await asyncio.gather(
            collect_events(dispatcher, **turn("one")),
            collect_events(dispatcher, **turn("two")),
        )

        conversation = await dispatcher.get_conversation("conv-1")
        assert len(conversation.history) == 4

    @pytest.mark.asyncio
    async def test_lock_is_released_after_turns(self, make_dispatcher):
        dispatcher = make_dispatcher([make_crew("main", is_default=True)])

        for index in range(3):
            await collect_events(dispatcher, **turn("hi", conversation_id=f"conv-{index}"))
        gc.collect()

        assert len(dispatcher._locks) == 0
