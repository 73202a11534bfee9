from datetime import datetime, timedelta, timezone

import pytest

from concierge.db import Database
from concierge.models import InvocationState, ToolInvocation


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "concierge.db")
    database.initialize()
    database.upsert_conversation("conv-1")
    return database


def test_initialize_is_idempotent(tmp_path):
    db = Database(tmp_path / "concierge.db")
    db.initialize()
    db.initialize()


def test_messages_round_trip_with_invocations(db):
    db.add_message("conv-1", "user", "hello")
    db.add_message(
        "conv-1",
        "assistant",
        "",
        tool_invocations=[
            ToolInvocation(id="call-1", tool_name="get_local_time", arguments={"location": "UTC"}),
            ToolInvocation(id="call-2", tool_name="get_weather_information", arguments={"city": "Oslo"}),
        ],
    )

    messages = db.get_messages("conv-1")

    assert [m.role for m in messages] == ["user", "assistant"]
    assert [inv.id for inv in messages[1].tool_invocations] == ["call-1", "call-2"]
    assert messages[1].tool_invocations[1].arguments == {"city": "Oslo"}
    assert messages[1].tool_invocations[0].state is InvocationState.PENDING


def test_get_messages_limit_keeps_most_recent_in_order(db):
    for i in range(5):
        db.add_message("conv-1", "user", f"m{i}")

    messages = db.get_messages("conv-1", limit=2)

    assert [m.content for m in messages] == ["m3", "m4"]


def test_update_invocation_persists_state_and_result(db):
    invocation = ToolInvocation(id="call-1", tool_name="t", arguments={})
    db.add_message("conv-1", "assistant", "", tool_invocations=[invocation])

    invocation.advance(InvocationState.EXECUTED, {"ok": True})
    db.update_invocation(invocation)

    stored = db.get_messages("conv-1")[0].tool_invocations[0]
    assert stored.state is InvocationState.EXECUTED
    assert stored.result == {"ok": True}


def test_clear_history_does_not_affect_other_conversations(db):
    db.upsert_conversation("conv-2")
    db.add_message("conv-1", "user", "hello")
    db.add_message("conv-2", "user", "hey")

    db.clear_history("conv-1")

    assert db.get_messages("conv-1") == []
    assert [m.content for m in db.get_messages("conv-2")] == ["hey"]


def test_due_tasks_and_claim(db):
    due_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    task_id = db.create_scheduled_task("conv-1", "delayed", "0", "execute_task", {"description": "ping"}, due_at)

    due = db.get_due_tasks(datetime.now(timezone.utc))
    assert [t.id for t in due] == [task_id]
    assert due[0].payload == {"description": "ping"}

    assert db.claim_task(task_id) is True
    assert db.claim_task(task_id) is False
    assert db.get_due_tasks(datetime.now(timezone.utc)) == []


def test_cancel_only_succeeds_once(db):
    run_at = datetime.now(timezone.utc) + timedelta(hours=1)
    task_id = db.create_scheduled_task("conv-1", "scheduled", "x", "execute_task", {}, run_at)

    assert db.cancel_task(task_id) is True
    assert db.cancel_task(task_id) is False
    assert db.list_scheduled_tasks("conv-1") == []


def test_create_document_is_idempotent_per_run(db):
    first = db.create_document("run-1", "hello")
    second = db.create_document("run-1", "hello")

    assert first == second
    assert db.count_documents() == 1


def test_delete_run_artifacts_removes_document_and_vector(db):
    record = db.create_document("run-1", "hello")
    db.upsert_vector(str(record["id"]), [1.0, 0.0])

    db.delete_run_artifacts("run-1")

    assert db.count_documents() == 0
    assert db.iter_vectors() == []


def test_workflow_run_steps_are_ordered(db):
    run_id = db.create_workflow_run("hello", ["a", "b", "c"])

    assert db.record_step_attempt(run_id, "a") == 1
    db.complete_step(run_id, "a", {"id": 1})

    run = db.get_workflow_run(run_id)
    assert run.status == "pending"
    assert [s.name for s in run.steps] == ["a", "b", "c"]
    assert run.steps[0].status == "completed"
    assert run.steps[0].result == {"id": 1}
    assert run.steps[0].attempts == 1
    assert db.list_incomplete_runs() == [run_id]
