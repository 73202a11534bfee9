"""Tool contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol


class ExecutionMode(str, Enum):
    """Whether a tool runs as soon as it is called or waits for approval."""

    AUTO = "auto"
    REQUIRES_CONFIRMATION = "requires_confirmation"


@dataclass(slots=True, frozen=True)
class ToolContext:
    """Per-call handle passed to every tool execution."""

    conversation_id: str


ExecuteFn = Callable[..., Awaitable[Any]]


class Tool(ABC):
    """Base class for all assistant tools.

    Tools tagged ``REQUIRES_CONFIRMATION`` only have ``run`` called after a
    human approves the specific invocation.
    """

    name: str
    description: str
    parameters_schema: dict[str, Any]
    mode: ExecutionMode = ExecutionMode.AUTO

    @abstractmethod
    async def run(self, context: ToolContext, **kwargs: Any) -> Any:
        """Execute tool with validated arguments."""


class FunctionTool(Tool):
    """Tool assembled from a plain descriptor.

    Unless ``mode`` is given, a descriptor without an execute function is
    confirmation-required and its side effect lives in an execution
    registered separately with the registry.
    """

    def __init__(
        self,
        name: str,
        description: str,
        parameters_schema: dict[str, Any],
        execute: ExecuteFn | None = None,
        mode: ExecutionMode | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.parameters_schema = parameters_schema
        self._execute = execute
        if mode is None:
            mode = ExecutionMode.AUTO if execute is not None else ExecutionMode.REQUIRES_CONFIRMATION
        self.mode = mode

    async def run(self, context: ToolContext, **kwargs: Any) -> Any:
        if self._execute is None:
            raise RuntimeError(f"Tool {self.name} has no execute function")
        return await self._execute(context, **kwargs)


class ToolSource(Protocol):
    """Anything that can contribute tools to the registry at call time."""

    async def list_tools(self) -> list[Tool]:
        ...
