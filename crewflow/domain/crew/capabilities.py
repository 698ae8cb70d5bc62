"""
Per-crew behavioural overrides.

A crew definition may supply any of five capabilities; a missing one falls
back to the default implementation in this module:

    FieldExposure     which fields the extractor sees this turn
    PreTransferRule   discard the draft and switch crews before replying
    PostTransferRule  switch crews for the next inbound message
    ContextBuilder    runtime context handed to the LLM adapter
    MessageProcessor  rewrite the inbound message and the finished reply

Transfer rules return either a bool (transfer to the crew's ``transition_to``)
or a ``TransitionDecision`` naming one of the crew's declared ``branches``.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from langchain_core.messages import BaseMessage
from pydantic import BaseModel, Field

from crewflow.domain.context.context_store import ScopedContext
from crewflow.domain.models.fields import FieldDefinition, is_empty_value


class TransitionDecision(BaseModel):
    """Outcome of a transfer hook"""
    transfer: bool = False
    target: Optional[str] = Field(None, description="Crew to switch to; defaults to transition_to")
    reason: Optional[str] = None

    @classmethod
    def stay(cls) -> "TransitionDecision":
        return cls(transfer=False)

    @classmethod
    def to(cls, target: Optional[str] = None, reason: Optional[str] = None) -> "TransitionDecision":
        return cls(transfer=True, target=target, reason=reason)


TransferOutcome = Union[bool, TransitionDecision]


class FieldExposure(ABC):
    """Chooses the fields eligible for extraction on a turn"""

    @abstractmethod
    def select(self, fields: List[FieldDefinition], collected_fields: Dict[str, Any]) -> List[FieldDefinition]:
        """Must be deterministic given ``collected_fields``"""
        pass


class AllFieldsExposure(FieldExposure):
    """Every field, every turn"""

    def select(self, fields: List[FieldDefinition], collected_fields: Dict[str, Any]) -> List[FieldDefinition]:
        return list(fields)


class SequentialExposure(FieldExposure):
    """Expose fields one step at a time in a fixed order.

    ``skip_rules`` maps a field name to a predicate over the collected fields;
    when it returns True the field is passed over (e.g. no occupation question
    for retirees). Fields flagged ``reevaluate`` are always exposed.
    """

    def __init__(
        self,
        order: Optional[List[str]] = None,
        skip_rules: Optional[Dict[str, Callable[[Dict[str, Any]], bool]]] = None,
        batch_size: int = 1
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.order = order
        self.skip_rules = skip_rules or {}
        self.batch_size = batch_size

    def select(self, fields: List[FieldDefinition], collected_fields: Dict[str, Any]) -> List[FieldDefinition]:
        by_name = {f.name: f for f in fields}
        order = self.order or [f.name for f in fields]

        pending = []
        for name in order:
            field = by_name.get(name)
            if field is None or field.reevaluate:
                continue
            if not is_empty_value(collected_fields.get(name)):
                continue
            skip = self.skip_rules.get(name)
            if skip is not None and skip(collected_fields):
                continue
            pending.append(field)
            if len(pending) >= self.batch_size:
                break

        always = [f for f in fields if f.reevaluate]
        return pending + always


class PreTransferRule(ABC):
    """Decides whether to abandon the draft and switch crews now"""

    @abstractmethod
    async def should_transfer(self, collected_fields: Dict[str, Any], context: ScopedContext) -> TransferOutcome:
        pass


class PostTransferRule(ABC):
    """Decides whether the next message goes to another crew"""

    @abstractmethod
    async def should_transfer(
        self,
        collected_fields: Dict[str, Any],
        context: ScopedContext,
        response: str
    ) -> TransferOutcome:
        pass


class NeverTransfer(PreTransferRule, PostTransferRule):
    """Default for both hooks"""

    async def should_transfer(self, collected_fields: Dict[str, Any], context: ScopedContext, response: str = "") -> TransferOutcome:
        return False


class FieldsCompleteTransfer(PreTransferRule, PostTransferRule):
    """Transfer once every listed field holds a non-empty value"""

    def __init__(self, required: List[str]):
        self.required = list(required)

    async def should_transfer(self, collected_fields: Dict[str, Any], context: ScopedContext, response: str = "") -> TransferOutcome:
        return all(not is_empty_value(collected_fields.get(name)) for name in self.required)


class ContextParams(BaseModel):
    """Inputs available when building the runtime context"""
    conversation_id: str
    user_id: Optional[str] = None
    collected_fields: Dict[str, Any] = Field(default_factory=dict)
    history: List[BaseMessage] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ContextBuilder(ABC):
    """Builds the runtime context object for generation"""

    @abstractmethod
    async def build(self, params: ContextParams, context: ScopedContext) -> Dict[str, Any]:
        pass


class DefaultContextBuilder(ContextBuilder):

    async def build(self, params: ContextParams, context: ScopedContext) -> Dict[str, Any]:
        return {
            "collected_data": dict(params.collected_fields),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }


class MessageProcessor:
    """Hooks around generation; both default to passing text through.

    ``pre_process`` runs on the user message before it enters history.
    ``post_process`` runs on the assembled reply before it is stored and
    before the post-transfer hook sees it. Streamed tokens are not rewritten.
    """

    async def pre_process(self, message: str, context: ScopedContext) -> str:
        return message

    async def post_process(self, response: str, context: ScopedContext) -> str:
        return response


def normalize_outcome(outcome: Any) -> TransitionDecision:
    """Coerce a hook return value into a decision"""
    if isinstance(outcome, TransitionDecision):
        return outcome
    if isinstance(outcome, str):
        return TransitionDecision.to(outcome)
    return TransitionDecision(transfer=bool(outcome))
