"""Reconciles pending tool invocations against human decisions.

Walks the conversation history in order and, for every invocation that is not
yet terminal, either executes it (auto tools, approved tools), records a
declined result (denied tools) or leaves it pending (no decision yet).
Terminal invocations are never touched again, so resolving the same history
twice cannot execute anything twice.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Mapping

from concierge.errors import ToolExecutionError
from concierge.models import ConversationMessage, Decision, InvocationState, ToolInvocation
from concierge.tools.base import ExecuteFn, ExecutionMode, Tool, ToolContext
from concierge.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

DENIED_RESULT = "Error: User denied access to tool execution"

OnUpdate = Callable[[ToolInvocation], "Awaitable[None] | None"]


async def resolve_tool_calls(
    messages: list[ConversationMessage],
    decisions: Mapping[str, Decision],
    tools: Mapping[str, Tool],
    executions: Mapping[str, ExecuteFn],
    context: ToolContext,
    on_update: OnUpdate | None = None,
    registry: ToolRegistry | None = None,
) -> list[ConversationMessage]:
    """Resolve every resolvable invocation in ``messages`` in place.

    ``on_update`` is called after every state transition so the caller can
    persist it; the ``confirmed`` transition is reported before the approved
    execution starts. Executions go through ``registry``, which validates
    arguments and records each run; a bare registry is used when none is given.
    """
    registry = registry or ToolRegistry()

    async def notify(invocation: ToolInvocation) -> None:
        if on_update is None:
            return
        outcome = on_update(invocation)
        if inspect.isawaitable(outcome):
            await outcome

    for message in messages:
        for invocation in message.tool_invocations:
            if invocation.state.is_terminal:
                continue
            await _resolve_one(
                invocation, decisions.get(invocation.id), tools, executions, registry, context, notify
            )
    return messages


def awaiting_confirmation(messages: list[ConversationMessage]) -> list[ToolInvocation]:
    """Return invocations that are still waiting on a human decision."""

    return [
        invocation
        for message in messages
        for invocation in message.tool_invocations
        if invocation.state is InvocationState.PENDING
    ]


async def _resolve_one(
    invocation: ToolInvocation,
    decision: Decision | None,
    tools: Mapping[str, Tool],
    executions: Mapping[str, ExecuteFn],
    registry: ToolRegistry,
    context: ToolContext,
    notify: Callable[[ToolInvocation], Awaitable[None]],
) -> None:
    tool = tools.get(invocation.tool_name)
    if tool is None:
        LOGGER.warning("Invocation %s references unknown tool %r", invocation.id, invocation.tool_name)
        _fail(invocation, "Unknown tool")
        await notify(invocation)
        return

    if invocation.state is InvocationState.CONFIRMED:
        # Approved in an earlier pass whose execution never reported back.
        LOGGER.warning("Invocation %s was interrupted mid-execution; not retrying", invocation.id)
        _fail(invocation, "Execution was interrupted before completing")
        await notify(invocation)
        return

    if ToolRegistry.classify(tool) is ExecutionMode.AUTO:
        await _execute(invocation, tool.run, registry, tools, context)
        await notify(invocation)
        return

    if decision is None:
        return

    if not decision.approved:
        LOGGER.info("Invocation %s of %s denied", invocation.id, invocation.tool_name)
        invocation.advance(InvocationState.DENIED, DENIED_RESULT)
        await notify(invocation)
        return

    execute = executions.get(invocation.tool_name)
    if execute is None:
        _fail(invocation, "No execution registered")
        await notify(invocation)
        return

    invocation.advance(InvocationState.CONFIRMED)
    await notify(invocation)
    await _execute(invocation, execute, registry, tools, context)
    await notify(invocation)


async def _execute(
    invocation: ToolInvocation,
    execute: ExecuteFn,
    registry: ToolRegistry,
    tools: Mapping[str, Tool],
    context: ToolContext,
) -> None:
    try:
        result: Any = await registry.execute(
            context, invocation.tool_name, invocation.arguments, tools=tools, execute=execute
        )
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Tool %s failed for invocation %s", invocation.tool_name, invocation.id)
        _fail(invocation, str(exc))
        return
    invocation.advance(InvocationState.EXECUTED, result)


def _fail(invocation: ToolInvocation, message: str) -> None:
    invocation.advance(InvocationState.ERROR, ToolExecutionError(invocation.tool_name, message).to_result())
