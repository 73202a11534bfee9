"""Async scheduler for deferred and recurring tasks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Awaitable, Callable, Literal, Union

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from concierge.db import Database
from concierge.errors import InvalidSchedule, ScheduleNotFound
from concierge.models import ScheduledTask

LOGGER = logging.getLogger(__name__)

DEFAULT_CALLBACK = "execute_task"

TaskHandler = Callable[[str, Any], Awaitable[None]]


class ScheduledAt(BaseModel):
    """Fire once at an absolute time."""

    type: Literal["scheduled"] = "scheduled"
    date: datetime


class Delayed(BaseModel):
    """Fire once after a delay relative to scheduling time."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["delayed"] = "delayed"
    delay_in_seconds: float = Field(alias="delayInSeconds", ge=0)


class Cron(BaseModel):
    """Fire repeatedly on a cron expression."""

    type: Literal["cron"] = "cron"
    cron: str


class NoSchedule(BaseModel):
    """The model could not work out when the task should run."""

    type: Literal["no-schedule"] = "no-schedule"


ScheduleSpec = Annotated[Union[ScheduledAt, Delayed, Cron, NoSchedule], Field(discriminator="type")]

_SPEC_ADAPTER: TypeAdapter[Any] = TypeAdapter(ScheduleSpec)


@dataclass(slots=True, frozen=True)
class FireTime:
    """Either an absolute UTC fire time or the reason there is none."""

    at: datetime | None = None
    error: str | None = None


def parse_schedule_spec(raw: Any) -> ScheduledAt | Delayed | Cron | NoSchedule:
    """Validate a wire-format ``{"type": ...}`` spec."""

    if isinstance(raw, (ScheduledAt, Delayed, Cron, NoSchedule)):
        return raw
    try:
        return _SPEC_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise InvalidSchedule(f"Not a valid schedule input: {exc.errors()[0]['msg']}") from exc


def next_fire_time(spec: Any, now: datetime) -> FireTime:
    """Normalize any spec variant to an absolute fire time after ``now``."""

    if isinstance(spec, ScheduledAt):
        return FireTime(at=_as_utc(spec.date))
    if isinstance(spec, Delayed):
        return FireTime(at=_as_utc(now) + timedelta(seconds=spec.delay_in_seconds))
    if isinstance(spec, Cron):
        if not croniter.is_valid(spec.cron):
            return FireTime(error=f"Invalid cron expression: {spec.cron!r}")
        return FireTime(at=_as_utc(croniter(spec.cron, _as_utc(now)).get_next(datetime)))
    if isinstance(spec, NoSchedule):
        return FireTime(error="Not a valid schedule input")
    return FireTime(error=f"Unsupported schedule spec: {spec!r}")


def describe_when(spec: ScheduledAt | Delayed | Cron | NoSchedule) -> str:
    """Return the human-facing "when" value stored with a task."""

    if isinstance(spec, ScheduledAt):
        return _as_utc(spec.date).isoformat()
    if isinstance(spec, Delayed):
        return f"{spec.delay_in_seconds:g}"
    if isinstance(spec, Cron):
        return spec.cron
    return ""


class TaskScheduler:
    """Persists scheduled tasks, polls for due ones and dispatches them by callback name."""

    def __init__(
        self,
        db: Database,
        poll_interval_seconds: float = 2.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._callbacks: dict[str, TaskHandler] = {}
        self._stop_event = asyncio.Event()

    def register_callback(self, name: str, handler: TaskHandler) -> None:
        self._callbacks[name] = handler

    def schedule(
        self,
        conversation_id: str,
        spec: Any,
        payload: Any,
        callback: str = DEFAULT_CALLBACK,
    ) -> str:
        """Persist a task and return its id.

        Raises:
            InvalidSchedule: for ``no-schedule`` specs, malformed cron
                expressions or payloads that are not a schedule spec.
        """
        parsed = parse_schedule_spec(spec)
        fire_time = next_fire_time(parsed, self._clock())
        if fire_time.at is None:
            raise InvalidSchedule(fire_time.error or "Not a valid schedule input")
        task_id = self._db.create_scheduled_task(
            conversation_id=conversation_id,
            kind=parsed.type,
            when=describe_when(parsed),
            callback=callback,
            payload=payload,
            next_run_at=fire_time.at,
        )
        LOGGER.info("Scheduled task %s (%s) for %s", task_id, parsed.type, fire_time.at.isoformat())
        return task_id

    def list_tasks(self, conversation_id: str | None = None) -> list[ScheduledTask]:
        """Return active tasks ordered by next fire time."""

        return self._db.list_scheduled_tasks(conversation_id)

    def cancel(self, task_id: str) -> None:
        """Cancel a task that has not fired yet.

        Raises:
            ScheduleNotFound: the id is unknown, already fired or already cancelled.
        """
        if not self._db.cancel_task(task_id):
            raise ScheduleNotFound(task_id)
        LOGGER.info("Cancelled scheduled task %s", task_id)

    def recover(self) -> list[str]:
        """Re-queue tasks whose fire was interrupted; call once before polling starts.

        A task left running by a previous process fires again on the next
        poll, so a fire is delivered at least once.
        """
        task_ids = self._db.requeue_running_tasks()
        for task_id in task_ids:
            LOGGER.warning("Re-queued scheduled task %s interrupted mid-fire", task_id)
        return task_ids

    async def run_due(self, now: datetime | None = None) -> int:
        """Fire every task due at ``now`` once; return how many fired."""

        now = now or self._clock()
        fired = 0
        for task in self._db.get_due_tasks(now):
            # Losing the claim means the task was cancelled or fired elsewhere.
            if not self._db.claim_task(task.id):
                continue
            await self._fire(task, now)
            fired += 1
        return fired

    async def _fire(self, task: ScheduledTask, now: datetime) -> None:
        handler = self._callbacks.get(task.callback)
        try:
            if handler is None:
                raise LookupError(f"No callback registered as {task.callback!r}")
            await handler(task.conversation_id, task.payload)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Scheduled task %s failed", task.id)
            if task.kind != "cron":
                self._db.mark_task_status(task.id, "failed")
                return

        if task.kind != "cron":
            self._db.mark_task_status(task.id, "completed")
            return

        fire_time = next_fire_time(Cron(cron=task.when), now)
        if fire_time.at is None:
            LOGGER.error("Cannot reschedule task %s: %s", task.id, fire_time.error)
            self._db.mark_task_status(task.id, "failed")
            return
        if not self._db.reschedule_task(task.id, fire_time.at):
            LOGGER.info("Recurring task %s was cancelled while firing", task.id)

    async def run_forever(self) -> None:
        """Run scheduler loop until stop() is called."""

        while not self._stop_event.is_set():
            await self.run_due()
            await asyncio.sleep(self._poll_interval_seconds)

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
