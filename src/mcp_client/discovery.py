"""Tool discovery and normalization.

Turns the raw tools/list payload of an MCP Server into provider-neutral
ToolDescriptor objects, and maps descriptors to and from the tool wire
shapes of the supported model providers.
"""

from typing import Any

from pydantic import ValidationError

from shared.logging import get_logger
from shared.models import ToolDescriptor
from shared.schema import EMPTY_OBJECT_SCHEMA, check_schema

logger = get_logger(__name__)


def parse_tool_list(raw_tools: list[dict[str, Any]]) -> list[ToolDescriptor]:
    """
    Build descriptors from a tools/list result.

    Entries without a usable name are skipped. When two entries share a
    name, the first one wins so that a name always maps to one tool.

    Args:
        raw_tools: The "tools" array returned by the server

    Returns:
        Descriptors in server order
    """
    descriptors: list[ToolDescriptor] = []
    seen: set[str] = set()

    for raw in raw_tools:
        if not isinstance(raw, dict):
            logger.warning("Skipping malformed tool entry", entry=repr(raw)[:200])
            continue

        try:
            descriptor = ToolDescriptor(
                name=raw.get("name", ""),
                description=raw.get("description") or "",
                input_schema=raw.get("inputSchema") or dict(EMPTY_OBJECT_SCHEMA),
            )
        except ValidationError as e:
            logger.warning("Skipping invalid tool entry", entry=raw.get("name"), error=str(e))
            continue

        if descriptor.name in seen:
            logger.warning("Duplicate tool name ignored", tool=descriptor.name)
            continue

        problems = check_schema(descriptor.input_schema)
        if problems:
            logger.warning("Tool input schema looks invalid", tool=descriptor.name, problems=problems)

        seen.add(descriptor.name)
        descriptors.append(descriptor)

    return descriptors


def to_input_schema_tool(descriptor: ToolDescriptor) -> dict[str, Any]:
    """Wrap a descriptor as {name, description, input_schema}."""
    return {
        "name": descriptor.name,
        "description": descriptor.description,
        "input_schema": descriptor.input_schema,
    }


def to_function_tool(descriptor: ToolDescriptor) -> dict[str, Any]:
    """Wrap a descriptor as {type: "function", function: {name, description, parameters}}."""
    return {
        "type": "function",
        "function": {
            "name": descriptor.name,
            "description": descriptor.description,
            "parameters": descriptor.input_schema,
        },
    }


def unwrap_tool(tool: dict[str, Any]) -> ToolDescriptor:
    """
    Recover the descriptor from either provider wire shape.

    Raises:
        ValueError: If the dict matches neither shape
    """
    if tool.get("type") == "function" and isinstance(tool.get("function"), dict):
        function = tool["function"]
        return ToolDescriptor(
            name=function["name"],
            description=function.get("description", ""),
            input_schema=function.get("parameters", {}),
        )

    if "input_schema" in tool and "name" in tool:
        return ToolDescriptor(
            name=tool["name"],
            description=tool.get("description", ""),
            input_schema=tool["input_schema"],
        )

    raise ValueError(f"Unrecognized tool shape: {sorted(tool)}")
