from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from crewflow.domain.crew.capabilities import (
    AllFieldsExposure, ContextBuilder, DefaultContextBuilder, FieldExposure,
    FieldsCompleteTransfer, MessageProcessor, NeverTransfer, PostTransferRule, PreTransferRule
)
from crewflow.domain.models.fields import ExtractionMode, FieldDefinition

TOOL_CALL_PREFIX = "call_"

_NEVER = NeverTransfer()
_ALL_FIELDS = AllFieldsExposure()
_DEFAULT_CONTEXT = DefaultContextBuilder()
_PASSTHROUGH = MessageProcessor()


class ToolDefinition(BaseModel):
    """A function the LLM may call while a crew is active"""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    handler: Optional[Callable[..., Any]] = Field(None, exclude=True)

    @property
    def call_name(self) -> str:
        return f"{TOOL_CALL_PREFIX}{self.name}"

    def to_schema(self) -> Dict[str, Any]:
        """Function-calling schema in OpenAI tool format"""
        return {
            "type": "function",
            "function": {
                "name": self.call_name,
                "description": self.description,
                "parameters": self.parameters
            }
        }


class KnowledgeBaseConfig(BaseModel):
    """Retrieval capability consulted by the LLM adapter"""
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    store_id: Optional[str] = None
    sources: List[str] = Field(default_factory=list)


class CrewDefinition(BaseModel):
    """Immutable definition of one conversational state"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(description="Unique within an agent")
    display_name: str = ""
    description: str = ""
    guidance: str = Field("", description="Prompt text, passed through untouched")
    model: str = "gpt-4o"
    max_tokens: int = 2048
    fields_to_collect: Tuple[FieldDefinition, ...] = ()
    extraction_mode: ExtractionMode = ExtractionMode.CONVERSATIONAL
    tools: Tuple[ToolDefinition, ...] = ()
    knowledge_base: Optional[KnowledgeBaseConfig] = None
    transition_to: Optional[str] = None
    branches: Tuple[str, ...] = Field((), description="Extra transfer targets a hook may choose")
    is_default: bool = False
    one_shot: bool = Field(False, description="Hand off to transition_to after one delivered reply")
    source: str = "module"

    field_exposure: Optional[FieldExposure] = None
    pre_transfer: Optional[PreTransferRule] = None
    post_transfer: Optional[PostTransferRule] = None
    context_builder: Optional[ContextBuilder] = None
    message_processor: Optional[MessageProcessor] = None

    @model_validator(mode="before")
    @classmethod
    def _default_display_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("display_name"):
            data = {**data, "display_name": data.get("name", "")}
        return data

    @model_validator(mode="after")
    def _check_definition(self) -> "CrewDefinition":
        if not self.name:
            raise ValueError("crew name is required")

        field_names = [f.name for f in self.fields_to_collect]
        duplicates = {n for n in field_names if field_names.count(n) > 1}
        if duplicates:
            raise ValueError(f"crew '{self.name}' declares duplicate fields: {sorted(duplicates)}")

        tool_names = [t.name for t in self.tools]
        if len(tool_names) != len(set(tool_names)):
            raise ValueError(f"crew '{self.name}' declares duplicate tools")

        if self.one_shot and not self.transition_to:
            raise ValueError(f"one-shot crew '{self.name}' needs transition_to")

        return self

    @property
    def is_terminal(self) -> bool:
        return self.transition_to is None

    @property
    def exposure(self) -> FieldExposure:
        return self.field_exposure or _ALL_FIELDS

    @property
    def pre_rule(self) -> PreTransferRule:
        return self.pre_transfer or _NEVER

    @property
    def post_rule(self) -> PostTransferRule:
        return self.post_transfer or _NEVER

    @property
    def builder(self) -> ContextBuilder:
        return self.context_builder or _DEFAULT_CONTEXT

    @property
    def processor(self) -> MessageProcessor:
        return self.message_processor or _PASSTHROUGH

    def transfer_targets(self) -> List[str]:
        targets = [self.transition_to] if self.transition_to else []
        return targets + [b for b in self.branches if b not in targets]

    def get_field(self, name: str) -> Optional[FieldDefinition]:
        for field in self.fields_to_collect:
            if field.name == name:
                return field
        return None

    def tool_schemas(self) -> List[Dict[str, Any]]:
        return [tool.to_schema() for tool in self.tools]

    def tool_handlers(self) -> Dict[str, Callable[..., Any]]:
        return {tool.call_name: tool.handler for tool in self.tools if tool.handler is not None}

    def to_summary(self) -> Dict[str, Any]:
        """JSON-safe listing for API responses"""
        return {
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "is_default": self.is_default,
            "fields_to_collect": [f.model_dump() for f in self.fields_to_collect],
            "extraction_mode": self.extraction_mode.value,
            "transition_to": self.transition_to,
            "branches": list(self.branches),
            "one_shot": self.one_shot,
            "tool_count": len(self.tools),
            "has_knowledge_base": bool(self.knowledge_base and self.knowledge_base.enabled),
            "source": self.source
        }


def crew_from_config(config: Dict[str, Any], tool_lookup: Optional[Callable[[str], Optional[ToolDefinition]]] = None) -> CrewDefinition:
    """Build a crew from declarative config (no custom hooks).

    ``tools`` holds tool names resolved through ``tool_lookup``; an unknown
    name raises ``ValueError``. ``transfer_when_collected`` lists fields whose
    collection fires the pre-message transfer.
    """

    tool_names = config.get("tools") or []
    tools = []
    for tool_name in tool_names:
        tool = tool_lookup(tool_name) if tool_lookup else None
        if tool is None:
            raise ValueError(f"crew '{config.get('name', '?')}' references unknown tool '{tool_name}'")
        tools.append(tool)

    knowledge_base = config.get("knowledge_base")
    required = config.get("transfer_when_collected") or []

    return CrewDefinition(
        name=config["name"],
        display_name=config.get("display_name", ""),
        description=config.get("description", ""),
        guidance=config.get("guidance", ""),
        model=config.get("model", "gpt-4o"),
        max_tokens=config.get("max_tokens", 2048),
        fields_to_collect=[FieldDefinition(**f) for f in config.get("fields_to_collect", [])],
        extraction_mode=ExtractionMode(config.get("extraction_mode", ExtractionMode.CONVERSATIONAL.value)),
        tools=tools,
        knowledge_base=KnowledgeBaseConfig(**knowledge_base) if knowledge_base else None,
        transition_to=config.get("transition_to"),
        branches=config.get("branches", []),
        is_default=config.get("is_default", False),
        one_shot=config.get("one_shot", False),
        source="config",
        pre_transfer=FieldsCompleteTransfer(required) if required else None
    )
