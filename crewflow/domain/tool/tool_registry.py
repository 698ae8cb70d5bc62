from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from crewflow.domain.models.crew import ToolDefinition
from crewflow.domain.models.fields import is_empty_value

logger = structlog.get_logger(__name__)


async def _update_field(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    field_name = params.get("fieldName")
    field_value = params.get("fieldValue")
    if not field_name:
        raise ValueError("fieldName is required")
    if is_empty_value(field_value):
        raise ValueError(f"Refusing to clear field '{field_name}'")

    ctx.collected_fields[field_name] = field_value
    logger.info("Field updated by tool", field=field_name, crew=ctx.crew_name)
    return {
        "success": True,
        "field": field_name,
        "value": field_value,
        "message": f'Field "{field_name}" has been updated.'
    }


async def _log_event(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    logger.info(
        "Crew event",
        event_type=params.get("eventType"),
        event_data=params.get("eventData") or {},
        crew=ctx.crew_name
    )
    return {
        "logged": True,
        "eventType": params.get("eventType"),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


COMMON_TOOLS = [
    {
        "category": "fields",
        "tool": ToolDefinition(
            name="update_field",
            description="Update a collected field value from the conversation",
            parameters={
                "type": "object",
                "properties": {
                    "fieldName": {"type": "string", "description": "Name of the field to update"},
                    "fieldValue": {"type": "string", "description": "Value to store for this field"}
                },
                "required": ["fieldName", "fieldValue"]
            },
            handler=_update_field
        )
    },
    {
        "category": "analytics",
        "tool": ToolDefinition(
            name="log_event",
            description="Log a user interaction or event for analytics purposes",
            parameters={
                "type": "object",
                "properties": {
                    "eventType": {"type": "string", "description": "Type of event (e.g. user_action, milestone)"},
                    "eventData": {"type": "object", "description": "Additional data about the event"}
                },
                "required": ["eventType"]
            },
            handler=_log_event
        )
    }
]


class ToolRegistry:
    """Registry of shared tools any crew can reference by name"""

    def __init__(self, include_common: bool = True):
        self.tools: Dict[str, ToolDefinition] = {}
        self.tool_categories: Dict[str, List[str]] = {}
        if include_common:
            for entry in COMMON_TOOLS:
                self.register_tool(entry["tool"], entry["category"])

    def register_tool(self, tool: ToolDefinition, category: str = "general"):
        """Register a new tool"""

        self.tools[tool.name] = tool

        if category not in self.tool_categories:
            self.tool_categories[category] = []
        if tool.name not in self.tool_categories[category]:
            self.tool_categories[category].append(tool.name)

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        """Look up a tool by name (call_ prefix tolerated)"""

        if name.startswith("call_") and name not in self.tools:
            name = name[len("call_"):]
        return self.tools.get(name)

    def get_tools_by_category(self, category: str) -> List[ToolDefinition]:
        tool_names = self.tool_categories.get(category, [])
        return [self.tools[name] for name in tool_names if name in self.tools]
