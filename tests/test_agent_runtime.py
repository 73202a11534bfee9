import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from concierge.agent_runtime import AgentRuntime
from concierge.confirmation import DENIED_RESULT
from concierge.db import Database
from concierge.models import Decision, InvocationState, LLMResponse, LLMToolCall, Message
from concierge.tools.base import FunctionTool
from concierge.tools.registry import ToolRegistry

_CITY = {"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]}


def _msg(text: str) -> Message:
    return Message(
        conversation_id="conv-1",
        sender_id="user-1",
        text=text,
        timestamp=datetime.now(timezone.utc),
    )


def _runtime(db, llm, registry=None) -> AgentRuntime:
    return AgentRuntime(
        db=db,
        llm=llm,
        tool_registry=registry or ToolRegistry(db),
        request_timeout_seconds=5,
    )


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "concierge.db")
    database.initialize()
    return database


class FakeProvider:
    async def generate(self, messages, tools=None):  # noqa: ANN001, ANN201
        return LLMResponse(content="hello")


@pytest.mark.asyncio
async def test_agent_runtime_returns_reply(db):
    runtime = _runtime(db, FakeProvider())

    reply = await runtime.handle_message(_msg("hi"))

    assert reply == "hello"
    assert [m.role for m in db.get_messages("conv-1")] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_auto_tool_executes_and_result_feeds_model(db):
    execute = AsyncMock(return_value="10am")
    registry = ToolRegistry(db)
    registry.register(
        FunctionTool(
            "get_local_time",
            "Time",
            {"type": "object", "properties": {"location": {"type": "string"}}, "required": ["location"]},
            execute=execute,
        )
    )
    llm = MagicMock()
    llm.generate = AsyncMock(
        side_effect=[
            LLMResponse(
                content="",
                tool_calls=[LLMToolCall(name="get_local_time", call_id="c1", arguments={"location": "Paris"})],
            ),
            LLMResponse(content="It is 10am in Paris."),
        ]
    )
    runtime = _runtime(db, llm, registry)

    reply = await runtime.handle_message(_msg("What time is it in Paris?"))

    assert reply == "It is 10am in Paris."
    execute.assert_awaited_once()
    second_context = llm.generate.call_args_list[1][0][0]
    assert second_context[-2]["tool_calls"][0]["id"] == "c1"
    assert second_context[-1]["role"] == "tool"
    assert "10am" in second_context[-1]["content"]
    executions = db.list_tool_executions("conv-1")
    assert [e["tool_name"] for e in executions] == ["get_local_time"]


def _weather_setup(db):
    execute = AsyncMock(return_value="The weather in Oslo is sunny")
    registry = ToolRegistry(db)
    registry.register(FunctionTool("get_weather_information", "Weather", _CITY))
    registry.register_execution("get_weather_information", execute)
    llm = MagicMock()
    llm.generate = AsyncMock(
        side_effect=[
            LLMResponse(
                content="",
                tool_calls=[LLMToolCall(name="get_weather_information", call_id="w1", arguments={"city": "Oslo"})],
            ),
            LLMResponse(content="It is sunny in Oslo."),
            LLMResponse(content="Still sunny."),
        ]
    )
    return _runtime(db, llm, registry), llm, execute


@pytest.mark.asyncio
async def test_confirmation_tool_waits_for_approval(db):
    runtime, llm, execute = _weather_setup(db)

    reply = await runtime.handle_message(_msg("Weather in Oslo?"))

    assert "w1" in reply
    assert "@approve" in reply
    execute.assert_not_awaited()
    assert llm.generate.await_count == 1
    assert [inv.id for inv in runtime.pending_confirmations("conv-1")] == ["w1"]


@pytest.mark.asyncio
async def test_new_message_while_pending_does_not_execute(db):
    runtime, llm, execute = _weather_setup(db)
    await runtime.handle_message(_msg("Weather in Oslo?"))

    reply = await runtime.handle_message(_msg("hello?"))

    assert "w1" in reply
    execute.assert_not_awaited()
    assert llm.generate.await_count == 1


@pytest.mark.asyncio
async def test_approval_executes_once_and_continues_turn(db):
    runtime, llm, execute = _weather_setup(db)
    await runtime.handle_message(_msg("Weather in Oslo?"))

    reply = await runtime.handle_decisions("conv-1", {"w1": Decision(approved=True)})
    await runtime.handle_decisions("conv-1", {"w1": Decision(approved=True)})

    assert reply == "It is sunny in Oslo."
    execute.assert_awaited_once()
    assert execute.await_args.kwargs == {"city": "Oslo"}
    invocation = db.get_messages("conv-1")[1].tool_invocations[0]
    assert invocation.state is InvocationState.EXECUTED
    assert runtime.pending_confirmations("conv-1") == []


@pytest.mark.asyncio
async def test_denial_records_declined_result(db):
    runtime, llm, execute = _weather_setup(db)
    await runtime.handle_message(_msg("Weather in Oslo?"))

    await runtime.handle_decisions("conv-1", {"w1": Decision(approved=False)})

    execute.assert_not_awaited()
    invocation = db.get_messages("conv-1")[1].tool_invocations[0]
    assert invocation.state is InvocationState.DENIED
    assert invocation.result == DENIED_RESULT
    final_context = llm.generate.call_args_list[1][0][0]
    assert DENIED_RESULT in final_context[-1]["content"]


@pytest.mark.asyncio
async def test_execute_task_appends_message_before_model_call(db):
    seen_history: list[str] = []

    async def generate(messages, tools=None):  # noqa: ANN001, ANN202
        seen_history.extend(m.content for m in db.get_messages("conv-1"))
        return LLMResponse(content="Reminder sent.")

    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=generate)
    runtime = _runtime(db, llm)

    reply = await runtime.execute_task("conv-1", {"description": "water the plants"})

    assert reply == "Reminder sent."
    assert seen_history == ["Running scheduled task: water the plants"]


@pytest.mark.asyncio
async def test_scheduled_fire_is_recorded_even_if_model_fails(db):
    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=RuntimeError("model down"))
    runtime = _runtime(db, llm)

    with pytest.raises(RuntimeError):
        await runtime.execute_task("conv-1", {"description": "ping"})

    assert [m.content for m in db.get_messages("conv-1")] == ["Running scheduled task: ping"]


@pytest.mark.asyncio
async def test_turns_for_one_conversation_are_serialized(db):
    active = 0
    overlap = False

    async def generate(messages, tools=None):  # noqa: ANN001, ANN202
        nonlocal active, overlap
        active += 1
        overlap = overlap or active > 1
        await asyncio.sleep(0.01)
        active -= 1
        return LLMResponse(content="ok")

    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=generate)
    runtime = _runtime(db, llm)

    await asyncio.gather(
        runtime.handle_message(_msg("one")),
        runtime.execute_task("conv-1", {"description": "two"}),
    )

    assert not overlap


@pytest.mark.asyncio
async def test_tool_step_limit_stops_loop(db):
    execute = AsyncMock(return_value="again")
    registry = ToolRegistry(db)
    registry.register(FunctionTool("loop", "Loop", {"type": "object", "properties": {}}, execute=execute))
    llm = MagicMock()
    llm.generate = AsyncMock(
        side_effect=lambda *a, **k: LLMResponse(
            content="", tool_calls=[LLMToolCall(name="loop", arguments={})]
        )
    )
    runtime = AgentRuntime(db=db, llm=llm, tool_registry=registry, request_timeout_seconds=5, max_steps=3)

    reply = await runtime.handle_message(_msg("loop forever"))

    assert "too many tool steps" in reply
    assert llm.generate.await_count == 3
