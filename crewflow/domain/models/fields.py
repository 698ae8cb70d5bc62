from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExtractionMode(str, Enum):
    """How much history the field extractor may look at"""
    CONVERSATIONAL = "conversational"
    FORM = "form"


class FieldDefinition(BaseModel):
    """A piece of information a crew tries to elicit"""
    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Field key, unique within a crew")
    description: str = Field("", description="Extraction hint for the extractor")
    type: Optional[str] = Field(None, description="Optional value type hint (string, number, boolean...)")
    allowed_values: Optional[List[str]] = Field(None, description="Closed set of accepted values")
    reevaluate: bool = Field(False, description="Re-exposed every turn even once collected (e.g. latest OTP code)")

    def to_prompt_line(self) -> str:
        line = f"- {self.name}: {self.description}"
        if self.type:
            line += f" (type: {self.type})"
        if self.allowed_values:
            line += f" (one of: {', '.join(self.allowed_values)})"
        return line


def is_empty_value(value: Any) -> bool:
    """True for values that do not count as collected"""
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, dict)) and not value:
        return True
    return False
