"""Command dispatcher for @-prefixed messages.

Commands bypass the model: they carry approval decisions, trigger document
ingestion and manage scheduled tasks. An unrecognised @command returns None,
letting it fall through to the model.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from concierge.errors import ScheduleNotFound
from concierge.models import Decision, Message

if TYPE_CHECKING:
    from concierge.agent_runtime import AgentRuntime
    from concierge.db import Database
    from concierge.scheduler import TaskScheduler
    from concierge.workflow import IngestionService

LOGGER = logging.getLogger(__name__)


def parse_command(text: str) -> tuple[str, list[str]] | None:
    """Split an @-prefixed message into (command, args).

    Returns:
        A (command, args) tuple where command is lowercased, or None if text
        is not a valid @command.
    """
    text = text.strip()
    if not text.startswith("@"):
        return None
    parts = text[1:].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


class CommandDispatcher:
    """Routes @-prefixed messages to handlers, bypassing the model.

    Returns None for unrecognised commands so the caller can fall through.
    """

    def __init__(
        self,
        runtime: AgentRuntime,
        scheduler: TaskScheduler | None = None,
        ingestion: IngestionService | None = None,
        db: Database | None = None,
    ) -> None:
        self._runtime = runtime
        self._scheduler = scheduler
        self._ingestion = ingestion
        self._db = db

    async def dispatch(self, message: Message) -> str | None:
        """Dispatch a message to a command handler.

        Returns:
            A reply string for recognised commands, or None for unknown ones.
        """
        parsed = parse_command(message.text)
        if parsed is None:
            return None
        command, args = parsed
        LOGGER.info("Command dispatch: command=%r args=%r", command, args)
        if command in ("approve", "deny"):
            return await self._handle_decision(message.conversation_id, args, approved=command == "approve")
        if command == "ingest":
            return self._handle_ingest(message.text.strip()[len("@ingest") :])
        if command == "tasks":
            return self._handle_tasks(message.conversation_id)
        if command == "cancel":
            return self._handle_cancel(args)
        if command == "clear":
            return self._handle_clear(message.conversation_id)
        return None

    async def _handle_decision(self, conversation_id: str, args: list[str], approved: bool) -> str:
        verb = "approve" if approved else "deny"
        pending = {inv.id for inv in self._runtime.pending_confirmations(conversation_id)}
        if not args:
            if not pending:
                return "Nothing is waiting for approval."
            return f"Usage: @{verb} <id> [<id> ...] or @{verb} all"
        ids = sorted(pending) if args == ["all"] else args
        unknown = [i for i in ids if i not in pending]
        if unknown:
            return f"No pending tool call with id {', '.join(unknown)}."
        return await self._runtime.handle_decisions(
            conversation_id, {invocation_id: Decision(approved=approved) for invocation_id in ids}
        )

    def _handle_ingest(self, text: str) -> str:
        if self._ingestion is None:
            return "Ingestion is not configured."
        if not text.strip():
            return "Usage: @ingest <text>"
        run_id = self._ingestion.submit(text)
        return f"Ingestion started (run {run_id})."

    def _handle_tasks(self, conversation_id: str) -> str:
        if self._scheduler is None:
            return "Scheduling is not configured."
        tasks = self._scheduler.list_tasks(conversation_id)
        if not tasks:
            return "No scheduled tasks found."
        return "\n".join(
            f"- {task.id} [{task.kind} {task.when}] next {task.next_run_at.isoformat()}: "
            f"{(task.payload or {}).get('description', '')}"
            for task in tasks
        )

    def _handle_cancel(self, args: list[str]) -> str:
        if self._scheduler is None:
            return "Scheduling is not configured."
        if not args:
            return "Usage: @cancel <task id>"
        try:
            self._scheduler.cancel(args[0])
        except ScheduleNotFound as exc:
            return str(exc)
        return f"Task {args[0]} has been canceled."

    def _handle_clear(self, conversation_id: str) -> str:
        if self._db is None:
            return "History clearing is not available."
        self._db.clear_history(conversation_id)
        return "Conversation history cleared."
