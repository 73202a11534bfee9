"""Tools that let the model schedule, list and cancel deferred tasks."""

from __future__ import annotations

import logging
from typing import Any

from concierge.errors import InvalidSchedule, ScheduleNotFound
from concierge.scheduler import TaskScheduler, parse_schedule_spec
from concierge.tools.base import Tool, ToolContext

LOGGER = logging.getLogger(__name__)

_WHEN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "When to run. One of {type: 'scheduled', date: ISO-8601}, "
        "{type: 'delayed', delayInSeconds: number}, {type: 'cron', cron: expression} "
        "or {type: 'no-schedule'} if the time is unclear."
    ),
    "properties": {
        "type": {"type": "string", "enum": ["scheduled", "delayed", "cron", "no-schedule"]},
        "date": {"type": "string"},
        "delayInSeconds": {"type": "number"},
        "cron": {"type": "string"},
    },
    "required": ["type"],
}


def schedule_prompt(now_iso: str) -> str:
    """Guidance appended to the system prompt so the model fills ``when`` correctly."""

    return (
        f"The current date and time is {now_iso}. When the user asks to do something later, "
        "call schedule_task. Use type 'scheduled' with an ISO-8601 date for a specific time, "
        "'delayed' with delayInSeconds for a relative time, 'cron' with a five-field cron "
        "expression for recurring tasks, and 'no-schedule' if no time was given."
    )


class ScheduleTaskTool(Tool):
    """Register a task that re-enters the conversation when it fires."""

    name = "schedule_task"
    description = "A tool to schedule a task to be executed at a later time."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "when": _WHEN_SCHEMA,
            "description": {"type": "string", "description": "What to do when the task fires."},
        },
        "required": ["when", "description"],
        "additionalProperties": False,
    }

    def __init__(self, scheduler: TaskScheduler) -> None:
        self._scheduler = scheduler

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        when = kwargs["when"]
        description = str(kwargs["description"])
        try:
            spec = parse_schedule_spec(when)
            task_id = self._scheduler.schedule(context.conversation_id, spec, {"description": description})
        except InvalidSchedule as exc:
            LOGGER.warning("Rejected schedule %r: %s", when, exc)
            return f"Error scheduling task: {exc}"
        task = next((t for t in self._scheduler.list_tasks(context.conversation_id) if t.id == task_id), None)
        fire_at = task.next_run_at.isoformat() if task else "unknown"
        return f'Task {task_id} scheduled for type "{spec.type}", next run at {fire_at}'


class ListScheduledTasksTool(Tool):
    """List this conversation's active tasks."""

    name = "get_scheduled_tasks"
    description = "List all tasks that have been scheduled."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {},
        "additionalProperties": False,
    }

    def __init__(self, scheduler: TaskScheduler) -> None:
        self._scheduler = scheduler

    async def run(self, context: ToolContext, **kwargs: Any) -> str | list[dict[str, Any]]:
        tasks = self._scheduler.list_tasks(context.conversation_id)
        if not tasks:
            return "No scheduled tasks found."
        return [
            {
                "id": task.id,
                "type": task.kind,
                "when": task.when,
                "next_run_at": task.next_run_at.isoformat(),
                "description": (task.payload or {}).get("description", ""),
            }
            for task in tasks
        ]


class CancelScheduledTaskTool(Tool):
    """Cancel a task by id."""

    name = "cancel_scheduled_task"
    description = "Cancel a scheduled task using its ID."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "task_id": {"type": "string", "description": "The ID of the task to cancel."},
        },
        "required": ["task_id"],
        "additionalProperties": False,
    }

    def __init__(self, scheduler: TaskScheduler) -> None:
        self._scheduler = scheduler

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        task_id = str(kwargs["task_id"]).strip()
        try:
            self._scheduler.cancel(task_id)
        except ScheduleNotFound as exc:
            LOGGER.warning("Cancel failed: %s", exc)
            return f"Error canceling task {task_id}: {exc}"
        return f"Task {task_id} has been successfully canceled."
