"""Tests for the durable ingestion workflow."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from concierge.db import Database
from concierge.errors import WorkflowStepFailure
from concierge.vector_index import VectorIndex
from concierge.workflow import (
    CREATE_RECORD,
    GENERATE_EMBEDDING,
    INSERT_VECTOR,
    STEPS,
    IngestionService,
    IngestionWorkflow,
    WorkflowEngine,
)


class CountingDatabase(Database):
    def __init__(self, path, return_no_row: bool = False) -> None:
        super().__init__(path)
        self.create_calls = 0
        self._return_no_row = return_no_row

    def create_document(self, run_id, text):
        self.create_calls += 1
        if self._return_no_row:
            return None
        return super().create_document(run_id, text)


@pytest.fixture
def db(tmp_path):
    database = CountingDatabase(tmp_path / "concierge.db")
    database.initialize()
    return database


def _workflow(db, embeddings, max_attempts: int = 3):
    engine = WorkflowEngine(db, max_attempts=max_attempts, backoff_seconds=[])
    return IngestionWorkflow(db, embeddings, VectorIndex(db), engine)


def _embeddings(*side_effect):
    provider = AsyncMock()
    provider.embed = AsyncMock(side_effect=list(side_effect)) if side_effect else AsyncMock(return_value=[0.1, 0.2])
    return provider


@pytest.mark.asyncio
async def test_ingest_creates_one_row_one_embedding_one_vector(db):
    embeddings = _embeddings()
    service = IngestionService(db, _workflow(db, embeddings))
    run_id = service.create_run("hello")

    run = await _workflow(db, embeddings).run(run_id)

    assert run.status == "completed"
    assert db.count_documents() == 1
    embeddings.embed.assert_awaited_once_with("hello")
    record = run.steps[0].result
    assert db.iter_vectors() == [(str(record["id"]), [0.1, 0.2])]
    assert [s.status for s in run.steps] == ["completed"] * 3


@pytest.mark.asyncio
async def test_resume_after_crash_skips_create_record(db):
    embeddings = _embeddings(RuntimeError("embedding service down"), [0.3, 0.4])
    workflow = _workflow(db, embeddings, max_attempts=1)
    run_id = IngestionService(db, workflow).create_run("hello")

    with pytest.raises(WorkflowStepFailure):
        await workflow.run(run_id)

    interrupted = db.get_workflow_run(run_id)
    assert interrupted.status == "pending"
    assert [s.status for s in interrupted.steps] == ["completed", "failed", "pending"]

    run = await workflow.run(run_id)

    assert run.status == "completed"
    assert db.create_calls == 1
    assert db.count_documents() == 1
    assert run.steps[0].attempts == 1
    assert run.steps[1].attempts == 2
    assert embeddings.embed.await_count == 2


@pytest.mark.asyncio
async def test_resume_reuses_checkpoint_after_crash_between_steps(db):
    embeddings = _embeddings()
    engine = WorkflowEngine(db, backoff_seconds=[])
    workflow = IngestionWorkflow(db, embeddings, VectorIndex(db), engine)
    run_id = IngestionService(db, workflow).create_run("hello")

    # Process died right after the first checkpoint was written.
    await engine.step(run_id, CREATE_RECORD, lambda: workflow._create_record(run_id, "hello"))

    run = await workflow.run(run_id)

    assert run.status == "completed"
    assert db.create_calls == 1
    assert db.count_documents() == 1


@pytest.mark.asyncio
async def test_create_record_without_row_aborts_run(tmp_path):
    db = CountingDatabase(tmp_path / "concierge.db", return_no_row=True)
    db.initialize()
    embeddings = _embeddings()
    workflow = _workflow(db, embeddings)
    run_id = IngestionService(db, workflow).create_run("hello")

    with pytest.raises(WorkflowStepFailure) as excinfo:
        await workflow.run(run_id)

    assert excinfo.value.terminal
    assert db.create_calls == 1
    embeddings.embed.assert_not_awaited()
    assert db.iter_vectors() == []
    run = db.get_workflow_run(run_id)
    assert run.status == "failed"
    assert [s.status for s in run.steps] == ["failed", "pending", "pending"]


@pytest.mark.asyncio
async def test_transient_failure_is_retried_within_a_run(db):
    embeddings = _embeddings(RuntimeError("flaky"), [0.5, 0.5])
    workflow = _workflow(db, embeddings, max_attempts=3)
    run_id = IngestionService(db, workflow).create_run("hello")

    run = await workflow.run(run_id)

    assert run.status == "completed"
    assert run.steps[1].attempts == 2


@pytest.mark.asyncio
async def test_terminal_failure_after_record_removes_document(db):
    embeddings = _embeddings()
    workflow = _workflow(db, embeddings)
    run_id = IngestionService(db, workflow).create_run("hello")
    workflow._insert_vector = AsyncMock(side_effect=WorkflowStepFailure(INSERT_VECTOR, "index gone", terminal=True))

    with pytest.raises(WorkflowStepFailure):
        await workflow.run(run_id)

    assert db.count_documents() == 0
    assert db.get_workflow_run(run_id).status == "failed"


@pytest.mark.asyncio
async def test_completed_run_is_not_rerun(db):
    embeddings = _embeddings()
    workflow = _workflow(db, embeddings)
    run_id = IngestionService(db, workflow).create_run("hello")
    await workflow.run(run_id)

    await workflow.run(run_id)

    assert db.create_calls == 1
    embeddings.embed.assert_awaited_once()


@pytest.mark.asyncio
async def test_service_submit_runs_in_background(db):
    embeddings = _embeddings()
    service = IngestionService(db, _workflow(db, embeddings))

    run_id = service.submit("hello")
    await service.drain()

    assert service.get_run(run_id).status == "completed"


@pytest.mark.asyncio
async def test_service_resumes_incomplete_runs(db):
    embeddings = _embeddings()
    service = IngestionService(db, _workflow(db, embeddings))
    run_id = service.create_run("hello")

    assert service.resume_incomplete() == [run_id]
    await service.drain()

    assert service.get_run(run_id).status == "completed"


def test_service_rejects_empty_text(db):
    service = IngestionService(db, _workflow(db, _embeddings()))
    with pytest.raises(ValueError):
        service.create_run("   ")


@pytest.mark.asyncio
async def test_run_records_steps_in_pipeline_order(db):
    workflow = _workflow(db, _embeddings())
    service = IngestionService(db, workflow)
    run_id = service.create_run("hello")

    created = service.get_run(run_id)
    assert [s.name for s in created.steps] == STEPS
    assert [s.status for s in created.steps] == ["pending", "pending", "pending"]

    await workflow.run(run_id)

    finished = service.get_run(run_id)
    assert [s.name for s in finished.steps] == [CREATE_RECORD, GENERATE_EMBEDDING, INSERT_VECTOR]
    assert [s.status for s in finished.steps] == ["completed", "completed", "completed"]
    assert [s.attempts for s in finished.steps] == [1, 1, 1]
