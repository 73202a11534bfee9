"""Registry that merges tool sources, classifies tools and executes them."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from pydantic import ValidationError, create_model

from concierge.db import Database
from concierge.tools.base import ExecuteFn, ExecutionMode, Tool, ToolContext, ToolSource

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Explicit registry of static tools plus dynamically discovered ones.

    With a database attached, every execution is recorded in ``tool_executions``.
    """

    def __init__(self, db: Database | None = None) -> None:
        self._db = db
        self._tools: dict[str, Tool] = {}
        self._sources: list[ToolSource] = []
        self._executions: dict[str, ExecuteFn] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def register_execution(self, tool_name: str, execute: ExecuteFn) -> None:
        """Attach the approved-path implementation of a confirmation-required tool."""

        self._executions[tool_name] = execute

    def add_source(self, source: ToolSource) -> None:
        self._sources.append(source)

    @staticmethod
    def classify(tool: Tool) -> ExecutionMode:
        return tool.mode

    async def active_tools(self) -> dict[str, Tool]:
        """Merge static tools and every source into one name-keyed mapping.

        Sources are applied in registration order after the static tools, so
        the last registration for a name wins.
        """
        merged: dict[str, Tool] = dict(self._tools)
        for source in self._sources:
            for tool in await source.list_tools():
                if tool.name in merged:
                    LOGGER.warning("Tool %r from %r replaces an earlier registration", tool.name, source)
                merged[tool.name] = tool
        return merged

    def executions(self, tools: dict[str, Tool]) -> dict[str, ExecuteFn]:
        """Return the execution table for the confirmation-required tools."""

        return {
            name: self._executions.get(name, tool.run)
            for name, tool in tools.items()
            if self.classify(tool) is ExecutionMode.REQUIRES_CONFIRMATION
        }

    async def execute(
        self,
        context: ToolContext,
        tool_name: str,
        arguments: dict[str, Any],
        tools: Mapping[str, Tool] | None = None,
        execute: ExecuteFn | None = None,
    ) -> Any:
        """Validate ``arguments``, run the tool and record the outcome.

        ``execute`` overrides the function that is run; by default auto tools
        run themselves and confirmation-required tools use their registered
        execution. No approval check happens here: callers gate confirmation
        tools before calling. Failures are logged and re-raised.
        """
        if tools is None:
            tools = await self.active_tools()
        tool = tools.get(tool_name)
        if tool is None:
            raise KeyError(f"Unknown tool: {tool_name}")
        if execute is None:
            execute = tool.run if self.classify(tool) is ExecutionMode.AUTO else self._executions.get(tool_name, tool.run)

        validated = validate_arguments(tool.parameters_schema, arguments)
        try:
            result = await execute(context, **validated)
        except Exception as exc:  # noqa: BLE001
            self._log(context, tool_name, validated, {"error": str(exc)}, succeeded=False)
            raise
        self._log(context, tool_name, validated, result, succeeded=True)
        return result

    def _log(self, context: ToolContext, tool_name: str, arguments: dict[str, Any], output: Any, succeeded: bool) -> None:
        if self._db is None:
            return
        self._db.log_tool_execution(context.conversation_id, tool_name, arguments, output, succeeded=succeeded)

    @staticmethod
    def list_tool_specs(tools: dict[str, Tool]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters_schema,
                },
            }
            for tool in tools.values()
        ]


def validate_arguments(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    """Validate ``payload`` against a flat JSON object schema."""

    props = schema.get("properties", {})
    required = set(schema.get("required", []))
    fields: dict[str, tuple[type[Any], Any]] = {}
    for name, config in props.items():
        typ = _python_type(config.get("type", "string"))
        default = ... if name in required else None
        fields[name] = (typ, default)

    model = create_model("ToolInputModel", **fields)
    try:
        value = model(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid input for tool: {exc}") from exc
    return value.model_dump(exclude_none=True)


def _python_type(schema_type: str) -> type[Any]:
    mapping: dict[str, type[Any]] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    return mapping.get(schema_type, str)
