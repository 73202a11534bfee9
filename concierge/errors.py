"""Error taxonomy shared by the tool, scheduling and workflow layers."""

from __future__ import annotations


class ConciergeError(Exception):
    """Base class for domain errors."""


class InvalidSchedule(ConciergeError):
    """Raised when a schedule spec cannot be turned into a fire time."""


class ScheduleNotFound(ConciergeError):
    """Raised when cancelling a task that is unknown or no longer active."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"No active scheduled task with id {task_id}")
        self.task_id = task_id


class ToolExecutionError(ConciergeError):
    """Raised when a tool's execution function fails."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name
        self.message = message

    def to_result(self) -> dict[str, str]:
        return {"error": self.message, "type": type(self).__name__, "tool": self.tool_name}


class WorkflowStepFailure(ConciergeError):
    """Raised by a workflow step.

    Terminal failures abort the run immediately; transient ones are retried
    by the engine until attempts are exhausted.
    """

    def __init__(self, step: str, message: str, terminal: bool = False) -> None:
        super().__init__(f"Step {step!r} failed: {message}")
        self.step = step
        self.terminal = terminal
