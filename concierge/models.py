"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class InvocationState(str, Enum):
    """Lifecycle of a tool invocation attached to an assistant message."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    DENIED = "denied"
    EXECUTED = "executed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (InvocationState.DENIED, InvocationState.EXECUTED, InvocationState.ERROR)


@dataclass(slots=True)
class Message:
    """Inbound message normalized by adapters for runtime usage."""

    conversation_id: str
    sender_id: str
    text: str
    timestamp: datetime
    message_id: str | None = None


@dataclass(slots=True)
class ToolInvocation:
    """A tool call proposed by the model, plus its resolution."""

    id: str
    tool_name: str
    arguments: dict[str, Any]
    state: InvocationState = InvocationState.PENDING
    result: Any = None

    def advance(self, state: InvocationState, result: Any = None) -> None:
        """Move to ``state``; terminal invocations never change again."""

        if self.state.is_terminal:
            raise ValueError(f"Invocation {self.id} is already {self.state.value}")
        if self.state is InvocationState.CONFIRMED and state is InvocationState.PENDING:
            raise ValueError(f"Invocation {self.id} cannot return to pending")
        self.state = state
        if result is not None:
            self.result = result


@dataclass(slots=True)
class ConversationMessage:
    """A persisted conversation message with any attached tool invocations."""

    id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime
    tool_invocations: list[ToolInvocation] = field(default_factory=list)


@dataclass(slots=True)
class Decision:
    """Human decision for a confirmation-required invocation."""

    approved: bool


@dataclass(slots=True)
class LLMToolCall:
    """Tool invocation returned by an LLM provider."""

    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass(slots=True)
class LLMResponse:
    """Result from an LLM generation request."""

    content: str
    tool_calls: list[LLMToolCall] = field(default_factory=list)


@dataclass(slots=True)
class ScheduledTask:
    """Represents a persisted scheduled task."""

    id: str
    conversation_id: str
    kind: str
    when: str
    callback: str
    payload: Any
    next_run_at: datetime
    status: str


@dataclass(slots=True)
class StepRecord:
    """Checkpoint of one workflow step."""

    name: str
    status: str
    result: Any
    attempts: int


@dataclass(slots=True)
class WorkflowRun:
    """A checkpointed ingestion run."""

    id: str
    text: str
    status: str
    error: str | None = None
    steps: list[StepRecord] = field(default_factory=list)
