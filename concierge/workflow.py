"""Durable document ingestion.

A run is a fixed, linear sequence of checkpointed steps:

    create database record -> generate embedding -> insert vector

Each step's result is stored in ``workflow_steps`` as soon as it succeeds.
Re-running a run (after a crash, or after transient failures ran out of
attempts) skips completed steps and feeds their checkpoints to the next one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from concierge.db import Database
from concierge.errors import WorkflowStepFailure
from concierge.llm.base import EmbeddingProvider
from concierge.models import WorkflowRun
from concierge.vector_index import VectorIndex

LOGGER = logging.getLogger(__name__)

CREATE_RECORD = "create database record"
GENERATE_EMBEDDING = "generate embedding"
INSERT_VECTOR = "insert vector"
STEPS = [CREATE_RECORD, GENERATE_EMBEDDING, INSERT_VECTOR]


class WorkflowEngine:
    """Runs named steps with checkpointing and bounded retries."""

    def __init__(
        self,
        db: Database,
        max_attempts: int = 3,
        backoff_seconds: list[float] | None = None,
    ) -> None:
        self._db = db
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds if backoff_seconds is not None else [1, 5, 15]

    async def step(self, run_id: str, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Return the checkpointed result of ``name``, running ``fn`` only if needed."""

        run = self._db.get_workflow_run(run_id)
        if run is None:
            raise LookupError(f"Unknown workflow run {run_id}")
        record = next((s for s in run.steps if s.name == name), None)
        if record is None:
            raise LookupError(f"Run {run_id} has no step {name!r}")
        if record.status == "completed":
            LOGGER.info("Run %s: step %r already completed, reusing checkpoint", run_id, name)
            return record.result

        while True:
            attempt = self._db.record_step_attempt(run_id, name)
            try:
                result = await fn()
            except WorkflowStepFailure as exc:
                if exc.terminal or attempt >= self._max_attempts:
                    self._db.fail_step(run_id, name, str(exc))
                    raise
                error = exc
            except Exception as exc:  # noqa: BLE001
                if attempt >= self._max_attempts:
                    self._db.fail_step(run_id, name, str(exc))
                    raise WorkflowStepFailure(name, str(exc)) from exc
                error = WorkflowStepFailure(name, str(exc))
            else:
                self._db.complete_step(run_id, name, result)
                return result

            delay = self._delay_for(attempt)
            LOGGER.warning(
                "Run %s: %s (attempt %d/%d), retrying in %ss",
                run_id,
                error,
                attempt,
                self._max_attempts,
                delay,
            )
            await asyncio.sleep(delay)

    def _delay_for(self, attempt: int) -> float:
        if not self._backoff_seconds:
            return 0.0
        return self._backoff_seconds[min(attempt - 1, len(self._backoff_seconds) - 1)]


class IngestionWorkflow:
    """Persists a document, embeds it and indexes the vector under the document id."""

    def __init__(
        self,
        db: Database,
        embeddings: EmbeddingProvider,
        vector_index: VectorIndex,
        engine: WorkflowEngine,
    ) -> None:
        self._db = db
        self._embeddings = embeddings
        self._vector_index = vector_index
        self._engine = engine

    async def run(self, run_id: str) -> WorkflowRun:
        """Execute (or resume) ``run_id`` to a terminal state."""

        run = self._db.get_workflow_run(run_id)
        if run is None:
            raise LookupError(f"Unknown workflow run {run_id}")
        if run.status in ("completed", "failed"):
            return run

        self._db.set_run_status(run_id, "running")
        try:
            record = await self._engine.step(run_id, CREATE_RECORD, lambda: self._create_record(run_id, run.text))
            embedding = await self._engine.step(run_id, GENERATE_EMBEDDING, lambda: self._embeddings.embed(run.text))
            await self._engine.step(
                run_id, INSERT_VECTOR, lambda: self._insert_vector(str(record["id"]), embedding)
            )
        except WorkflowStepFailure as exc:
            if exc.terminal:
                LOGGER.error("Run %s aborted: %s", run_id, exc)
                self._db.delete_run_artifacts(run_id)
                self._db.set_run_status(run_id, "failed", str(exc))
            else:
                # Attempts exhausted; the run stays resumable from its last checkpoint.
                LOGGER.error("Run %s stopped after retries: %s", run_id, exc)
                self._db.set_run_status(run_id, "pending", str(exc))
            raise
        self._db.set_run_status(run_id, "completed")
        LOGGER.info("Run %s completed: document %s indexed", run_id, record["id"])
        return self._db.get_workflow_run(run_id)  # type: ignore[return-value]

    async def _create_record(self, run_id: str, text: str) -> dict[str, Any]:
        record = self._db.create_document(run_id, text)
        if not record:
            raise WorkflowStepFailure(CREATE_RECORD, "Failed to create document", terminal=True)
        return record

    async def _insert_vector(self, document_id: str, embedding: list[float]) -> dict[str, Any]:
        self._vector_index.upsert(document_id, embedding)
        return {"id": document_id, "dimensions": len(embedding)}


class IngestionService:
    """Entry point for document submissions; runs workflows in the background."""

    def __init__(self, db: Database, workflow: IngestionWorkflow) -> None:
        self._db = db
        self._workflow = workflow
        self._tasks: set[asyncio.Task[Any]] = set()

    def create_run(self, text: str) -> str:
        text = text.strip()
        if not text:
            raise ValueError("Missing text")
        run_id = self._db.create_workflow_run(text, STEPS)
        LOGGER.info("Created ingestion run %s", run_id)
        return run_id

    def submit(self, text: str) -> str:
        """Create a run for ``text`` and start it; return the run id."""

        run_id = self.create_run(text)
        self._start(run_id)
        return run_id

    def resume_incomplete(self) -> list[str]:
        """Restart every run that did not reach a terminal state."""

        run_ids = self._db.list_incomplete_runs()
        for run_id in run_ids:
            LOGGER.info("Resuming ingestion run %s", run_id)
            self._start(run_id)
        return run_ids

    def get_run(self, run_id: str) -> WorkflowRun | None:
        return self._db.get_workflow_run(run_id)

    async def drain(self) -> None:
        """Wait for all background runs started by this service."""

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _start(self, run_id: str) -> None:
        task = asyncio.create_task(self._run_logged(run_id), name=f"ingest-{run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_logged(self, run_id: str) -> None:
        try:
            await self._workflow.run(run_id)
        except WorkflowStepFailure:
            # Already logged and recorded on the run by the workflow.
            pass
