from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import json
import re

import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from crewflow.domain.models.fields import ExtractionMode, FieldDefinition

logger = structlog.get_logger(__name__)


class ExtractionResult(BaseModel):
    """What the extractor found in the exposed slice of history"""
    extracted_fields: Dict[str, Any] = Field(default_factory=dict)
    corrections: Dict[str, Any] = Field(default_factory=dict)
    remaining_fields: List[str] = Field(default_factory=list)

    @classmethod
    def empty(cls, fields: List[FieldDefinition]) -> "ExtractionResult":
        return cls(remaining_fields=[f.name for f in fields])


class FieldExtractor(ABC):
    """Reads conversation messages and proposes field values"""

    @abstractmethod
    async def extract(
        self,
        messages: List[BaseMessage],
        fields: List[FieldDefinition],
        collected_fields: Dict[str, Any],
        mode: ExtractionMode
    ) -> ExtractionResult:
        pass


CONVERSATIONAL_SYSTEM_PROMPT = """You extract specific fields from a conversation.

Rules:
- Take values from USER messages only; use ASSISTANT messages to understand what was asked.
- Do not guess. An affirmative reply to a yes/no question counts as confirmation.
- Only update an already collected field when the user explicitly gives a new value.

Respond with JSON: {"extractedFields": {"field": "value"}, "remainingFields": ["field"]}"""

FORM_SYSTEM_PROMPT = """You extract form fields from the user's LAST message only.

Rules:
- Ignore every earlier user message; the assistant message shows what was asked.
- Negative answers ("No", "None", "N/A") are valid values and must be extracted.
- When the user explicitly corrects an already collected field ("actually...", "I meant..."), put it in "corrections".

Respond with JSON: {"extractedFields": {}, "corrections": {}, "remainingFields": []}"""

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def _role(message: BaseMessage) -> str:
    if isinstance(message, HumanMessage):
        return "USER"
    if isinstance(message, AIMessage):
        return "ASSISTANT"
    return message.type.upper()


class LLMFieldExtractor(FieldExtractor):
    """Field extraction micro-agent backed by a LangChain chat model"""

    def __init__(self, model: BaseChatModel, form_model: Optional[BaseChatModel] = None):
        self.model = model
        self.form_model = form_model or model

    def build_prompt(
        self,
        messages: List[BaseMessage],
        fields: List[FieldDefinition],
        collected_fields: Dict[str, Any],
        mode: ExtractionMode
    ) -> List[BaseMessage]:
        field_lines = "\n".join(f.to_prompt_line() for f in fields)
        collected = "\n".join(f"- {k}: {v}" for k, v in collected_fields.items()) or "(none collected yet)"
        transcript = "\n\n".join(f"[{_role(m)}]: {m.content}" for m in messages)

        if mode == ExtractionMode.FORM:
            system = FORM_SYSTEM_PROMPT
            body = (
                f"## Fields to Extract (from LAST user message only)\n{field_lines}\n\n"
                f"## Already Collected\n{collected}\n\n"
                f"## Conversation\n{transcript}\n\nReturn JSON."
            )
        else:
            system = CONVERSATIONAL_SYSTEM_PROMPT
            body = (
                f"## Fields to Extract\n{field_lines}\n\n"
                f"## Already Collected\n{collected}\n\n"
                f"## Recent Conversation\n{transcript}\n\nReturn JSON."
            )

        return [SystemMessage(content=system), HumanMessage(content=body)]

    @staticmethod
    def parse(text: str) -> Dict[str, Any]:
        cleaned = _FENCE.sub("", text.strip())
        payload = json.loads(cleaned)
        if not isinstance(payload, dict):
            raise ValueError("extractor returned a non-object payload")
        return payload

    async def extract(
        self,
        messages: List[BaseMessage],
        fields: List[FieldDefinition],
        collected_fields: Dict[str, Any],
        mode: ExtractionMode
    ) -> ExtractionResult:
        model = self.form_model if mode == ExtractionMode.FORM else self.model
        prompt = self.build_prompt(messages, fields, collected_fields, mode)

        try:
            response = await model.ainvoke(prompt)
            payload = self.parse(response.content if isinstance(response.content, str) else str(response.content))
        except Exception as e:
            # Extraction must never block the reply
            logger.warning("Field extraction failed", error=str(e), mode=mode.value)
            return ExtractionResult.empty(fields)

        extracted = payload.get("extractedFields") or {}
        corrections = payload.get("corrections") or {}
        remaining = payload.get("remainingFields") or []
        return ExtractionResult(
            extracted_fields=extracted if isinstance(extracted, dict) else {},
            corrections=corrections if isinstance(corrections, dict) else {},
            remaining_fields=[r for r in remaining if isinstance(r, str)] if isinstance(remaining, list) else []
        )
