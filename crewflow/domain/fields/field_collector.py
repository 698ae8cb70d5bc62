from typing import Any, Dict, List, Tuple

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from pydantic import BaseModel, Field

from crewflow.domain.errors import ConfigurationError
from crewflow.domain.fields.extractor import ExtractionResult, FieldExtractor
from crewflow.domain.models.crew import CrewDefinition
from crewflow.domain.models.fields import ExtractionMode, FieldDefinition, is_empty_value

logger = structlog.get_logger(__name__)


class FieldUpdate(BaseModel):
    """Result of running the field collection contract for one crew"""
    collected_fields: Dict[str, Any] = Field(default_factory=dict)
    updated: Dict[str, Any] = Field(default_factory=dict)
    exposed: List[str] = Field(default_factory=list)


def merge_fields(
    collected_fields: Dict[str, Any],
    values: Dict[str, Any],
    allowed: List[str]
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Overlay extractor output onto collected fields.

    Returns the merged copy and the entries that changed. Empty values and
    names outside ``allowed`` are ignored; absent fields are untouched.
    """

    merged = dict(collected_fields)
    applied: Dict[str, Any] = {}
    for name, value in values.items():
        if name not in allowed or is_empty_value(value):
            continue
        if merged.get(name) != value:
            merged[name] = value
            applied[name] = value
    return merged, applied


class FieldCollector:
    """Decides what the extractor sees each turn and merges what it returns"""

    def __init__(self, extractor: FieldExtractor, extraction_window: int = 10):
        self.extractor = extractor
        self.extraction_window = extraction_window

    def exposed_fields(self, crew: CrewDefinition, collected_fields: Dict[str, Any]) -> List[FieldDefinition]:
        fields = list(crew.fields_to_collect)
        if not fields:
            return []

        selected = crew.exposure.select(fields, dict(collected_fields))
        known = {f.name for f in fields}
        unknown = [f.name for f in selected if f.name not in known]
        if unknown:
            raise ConfigurationError(
                f"Field exposure for crew '{crew.name}' returned undeclared fields: {unknown}",
                crew_name=crew.name
            )

        if crew.field_exposure is None:
            return selected

        exposed = []
        for field in selected:
            declared = crew.get_field(field.name)
            if not declared.reevaluate and not is_empty_value(collected_fields.get(field.name)):
                logger.warning("Sequencing rule re-exposed a collected field", crew=crew.name, field=field.name)
                continue
            if declared not in exposed:
                exposed.append(declared)
        return exposed

    def history_slice(self, crew: CrewDefinition, history: List[BaseMessage]) -> List[BaseMessage]:
        """Messages the extractor may consider under the crew's extraction mode"""

        if crew.extraction_mode == ExtractionMode.FORM:
            last_user = None
            for index in range(len(history) - 1, -1, -1):
                if isinstance(history[index], HumanMessage):
                    last_user = index
                    break
            if last_user is None:
                return []
            # The assistant's question gives context; earlier user answers do not count
            if last_user > 0 and isinstance(history[last_user - 1], AIMessage):
                return [history[last_user - 1], history[last_user]]
            return [history[last_user]]

        return list(history[-self.extraction_window:])

    async def collect(
        self,
        crew: CrewDefinition,
        history: List[BaseMessage],
        collected_fields: Dict[str, Any]
    ) -> FieldUpdate:
        exposed = self.exposed_fields(crew, collected_fields)
        if not exposed:
            return FieldUpdate(collected_fields=dict(collected_fields))

        messages = self.history_slice(crew, history)
        if not messages:
            return FieldUpdate(collected_fields=dict(collected_fields), exposed=[f.name for f in exposed])

        try:
            result = await self.extractor.extract(messages, exposed, dict(collected_fields), crew.extraction_mode)
        except Exception as e:
            logger.warning("Extractor raised, continuing with unchanged fields", crew=crew.name, error=str(e))
            result = ExtractionResult.empty(exposed)

        exposed_names = [f.name for f in exposed]
        merged, applied = merge_fields(collected_fields, result.extracted_fields or {}, exposed_names)

        # Corrections may target any declared field, not just the exposed ones
        declared_names = [f.name for f in crew.fields_to_collect]
        merged, corrected = merge_fields(merged, result.corrections or {}, declared_names)
        applied.update(corrected)

        return FieldUpdate(collected_fields=merged, updated=applied, exposed=exposed_names)
