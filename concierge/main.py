"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging

from concierge.agent_runtime import AgentRuntime
from concierge.commands import CommandDispatcher
from concierge.config import has_openai_key, load_settings, retry_backoff
from concierge.console_adapter import ConsoleAdapter
from concierge.db import Database
from concierge.llm.openai_compat import OpenAIEmbeddings, OpenAIProvider
from concierge.scheduler import DEFAULT_CALLBACK, TaskScheduler
from concierge.tools.knowledge_tool import KnowledgeBaseTool
from concierge.tools.registry import ToolRegistry
from concierge.tools.remote_tool import HttpToolSource
from concierge.tools.schedule_tools import CancelScheduledTaskTool, ListScheduledTasksTool, ScheduleTaskTool
from concierge.tools.time_tool import GetLocalTimeTool
from concierge.tools.weather_tool import GetWeatherTool
from concierge.vector_index import VectorIndex
from concierge.workflow import IngestionService, IngestionWorkflow, WorkflowEngine

LOGGER = logging.getLogger(__name__)


async def run() -> None:
    """Initialize app layers and start processing loop."""

    settings = load_settings()
    logging.basicConfig(level=settings.log_level.upper())
    if not has_openai_key(settings):
        LOGGER.warning("OPENAI_API_KEY is not set; model and embedding calls will fail")

    db = Database(settings.database_path)
    db.initialize()

    llm = OpenAIProvider(settings)
    embeddings = OpenAIEmbeddings(settings)
    vector_index = VectorIndex(db)
    scheduler = TaskScheduler(db=db, poll_interval_seconds=settings.scheduler_poll_interval_seconds)

    tools = ToolRegistry(db)
    tools.register(GetWeatherTool())
    tools.register(GetLocalTimeTool())
    tools.register(ScheduleTaskTool(scheduler))
    tools.register(ListScheduledTasksTool(scheduler))
    tools.register(CancelScheduledTaskTool(scheduler))
    tools.register(KnowledgeBaseTool(db, llm, embeddings, vector_index, top_k=settings.knowledge_top_k))
    if settings.tool_server_url:
        tools.add_source(HttpToolSource(settings.tool_server_url, timeout_seconds=settings.request_timeout_seconds))

    runtime = AgentRuntime(
        db=db,
        llm=llm,
        tool_registry=tools,
        request_timeout_seconds=settings.request_timeout_seconds,
        memory_window_messages=settings.memory_window_messages,
        max_steps=settings.max_tool_steps,
    )

    engine = WorkflowEngine(db, max_attempts=settings.workflow_max_attempts, backoff_seconds=retry_backoff(settings))
    ingestion = IngestionService(db, IngestionWorkflow(db, embeddings, vector_index, engine))
    ingestion.resume_incomplete()

    adapter = ConsoleAdapter(conversation_id=settings.conversation_id)
    dispatcher = CommandDispatcher(runtime, scheduler=scheduler, ingestion=ingestion, db=db)

    async def handle_scheduled_task(conversation_id: str, payload: object) -> None:
        reply = await runtime.execute_task(conversation_id, payload)
        await adapter.send_message(conversation_id, reply)

    scheduler.register_callback(DEFAULT_CALLBACK, handle_scheduled_task)
    scheduler.recover()
    scheduler_task = asyncio.create_task(scheduler.run_forever(), name="task-scheduler")

    try:
        async for message in adapter.poll_messages():
            reply = await dispatcher.dispatch(message)
            if reply is None:
                reply = await runtime.handle_message(message)
            await adapter.send_message(message.conversation_id, reply)
    except asyncio.CancelledError:
        raise
    finally:
        scheduler.stop()
        scheduler_task.cancel()
        await ingestion.drain()
        LOGGER.info("Concierge shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
