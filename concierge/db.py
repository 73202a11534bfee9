"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from concierge.models import (
    ConversationMessage,
    InvocationState,
    ScheduledTask,
    StepRecord,
    ToolInvocation,
    WorkflowRun,
)

SCHEMA_VERSION = 1


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conversation_id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(conversation_id) REFERENCES conversations(conversation_id)
            );

            CREATE TABLE IF NOT EXISTS tool_invocations (
                id TEXT PRIMARY KEY,
                message_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                tool_name TEXT NOT NULL,
                arguments_json TEXT NOT NULL,
                state TEXT NOT NULL,
                result_json TEXT,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(message_id) REFERENCES messages(id)
            );

            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                when_value TEXT NOT NULL,
                callback TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                next_run_at TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT UNIQUE,
                text TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS vectors (
                id TEXT PRIMARY KEY,
                values_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                text TEXT NOT NULL,
                status TEXT NOT NULL,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS workflow_steps (
                run_id TEXT NOT NULL,
                name TEXT NOT NULL,
                position INTEGER NOT NULL,
                status TEXT NOT NULL,
                result_json TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY(run_id, name),
                FOREIGN KEY(run_id) REFERENCES workflow_runs(id)
            );
            """
        )

    # -- conversations -----------------------------------------------------

    def upsert_conversation(self, conversation_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO conversations(conversation_id, created_at) VALUES(?, ?) "
                "ON CONFLICT(conversation_id) DO NOTHING",
                (conversation_id, _utc_now_iso()),
            )

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        tool_invocations: list[ToolInvocation] | None = None,
    ) -> str:
        """Append a message and its invocations in one transaction."""

        message_id = uuid.uuid4().hex
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO messages(id, conversation_id, role, content, created_at) VALUES (?, ?, ?, ?, ?)",
                (message_id, conversation_id, role, content, now),
            )
            for position, invocation in enumerate(tool_invocations or []):
                conn.execute(
                    """
                    INSERT INTO tool_invocations(
                        id, message_id, position, tool_name, arguments_json, state, result_json, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        invocation.id,
                        message_id,
                        position,
                        invocation.tool_name,
                        json.dumps(invocation.arguments),
                        invocation.state.value,
                        _dump_result(invocation.result),
                        now,
                    ),
                )
        return message_id

    def get_messages(self, conversation_id: str, limit: int | None = None) -> list[ConversationMessage]:
        """Return the most recent messages in chronological order."""

        with self._connect() as conn:
            query = "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq DESC"
            params: tuple[Any, ...] = (conversation_id,)
            if limit is not None:
                query += " LIMIT ?"
                params += (limit,)
            rows = list(reversed(conn.execute(query, params).fetchall()))
            invocations: dict[str, list[ToolInvocation]] = {}
            if rows:
                placeholders = ",".join("?" for _ in rows)
                inv_rows = conn.execute(
                    f"SELECT * FROM tool_invocations WHERE message_id IN ({placeholders}) "
                    "ORDER BY position ASC",
                    tuple(row["id"] for row in rows),
                ).fetchall()
                for inv in inv_rows:
                    invocations.setdefault(inv["message_id"], []).append(_row_to_invocation(inv))
        return [
            ConversationMessage(
                id=row["id"],
                conversation_id=row["conversation_id"],
                role=row["role"],
                content=row["content"],
                created_at=datetime.fromisoformat(row["created_at"]),
                tool_invocations=invocations.get(row["id"], []),
            )
            for row in rows
        ]

    def update_invocation(self, invocation: ToolInvocation) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE tool_invocations SET state = ?, result_json = ?, updated_at = ? WHERE id = ?",
                (invocation.state.value, _dump_result(invocation.result), _utc_now_iso(), invocation.id),
            )

    def clear_history(self, conversation_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM tool_invocations WHERE message_id IN "
                "(SELECT id FROM messages WHERE conversation_id = ?)",
                (conversation_id,),
            )
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))

    def log_tool_execution(
        self,
        conversation_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: Any,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(conversation_id, tool_name, input_json, output_json, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    tool_name,
                    json.dumps(tool_input),
                    json.dumps(tool_output, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_tool_executions(self, conversation_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT tool_name, input_json, output_json, succeeded FROM tool_executions "
                "WHERE conversation_id = ? ORDER BY id ASC",
                (conversation_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    # -- scheduled tasks ---------------------------------------------------

    def create_scheduled_task(
        self,
        conversation_id: str,
        kind: str,
        when: str,
        callback: str,
        payload: Any,
        next_run_at: datetime,
    ) -> str:
        task_id = uuid.uuid4().hex
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO scheduled_tasks(
                    id, conversation_id, kind, when_value, callback, payload_json,
                    next_run_at, status, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
                """,
                (task_id, conversation_id, kind, when, callback, json.dumps(payload), _iso(next_run_at), now, now),
            )
        return task_id

    def list_scheduled_tasks(self, conversation_id: str | None = None) -> list[ScheduledTask]:
        query = "SELECT * FROM scheduled_tasks WHERE status IN ('pending', 'running')"
        params: tuple[Any, ...] = ()
        if conversation_id is not None:
            query += " AND conversation_id = ?"
            params = (conversation_id,)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY next_run_at ASC, created_at ASC", params).fetchall()
        return [_row_to_task(row) for row in rows]

    def get_scheduled_task(self, task_id: str) -> ScheduledTask | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def get_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM scheduled_tasks
                WHERE status = 'pending' AND next_run_at <= ?
                ORDER BY next_run_at ASC
                """,
                (_iso(now),),
            ).fetchall()
        return [_row_to_task(row) for row in rows]

    def claim_task(self, task_id: str) -> bool:
        """Atomically move a pending task to running; False if someone else won."""

        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE scheduled_tasks SET status = 'running', updated_at = ? WHERE id = ? AND status = 'pending'",
                (_utc_now_iso(), task_id),
            )
            return cur.rowcount == 1

    def requeue_running_tasks(self) -> list[str]:
        """Return tasks stuck in running (a fire cut short by a crash) to pending."""

        with self._connect() as conn:
            rows = conn.execute("SELECT id FROM scheduled_tasks WHERE status = 'running'").fetchall()
            conn.execute(
                "UPDATE scheduled_tasks SET status = 'pending', updated_at = ? WHERE status = 'running'",
                (_utc_now_iso(),),
            )
        return [row["id"] for row in rows]

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a task that has not fired yet (cron tasks may be mid-fire)."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE scheduled_tasks SET status = 'cancelled', updated_at = ?
                WHERE id = ? AND (status = 'pending' OR (status = 'running' AND kind = 'cron'))
                """,
                (_utc_now_iso(), task_id),
            )
            return cur.rowcount == 1

    def reschedule_task(self, task_id: str, next_run_at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE scheduled_tasks SET status = 'pending', next_run_at = ?, updated_at = ?
                WHERE id = ? AND status = 'running'
                """,
                (_iso(next_run_at), _utc_now_iso(), task_id),
            )
            return cur.rowcount == 1

    def mark_task_status(self, task_id: str, status: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE scheduled_tasks SET status = ?, updated_at = ? WHERE id = ? AND status = 'running'",
                (status, _utc_now_iso(), task_id),
            )

    # -- knowledge store ---------------------------------------------------

    def create_document(self, run_id: str, text: str) -> dict[str, Any] | None:
        """Insert the document for ``run_id`` once and return its row."""

        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO documents(run_id, text, created_at) VALUES (?, ?, ?)",
                (run_id, text, _utc_now_iso()),
            )
            row = conn.execute("SELECT id, text FROM documents WHERE run_id = ?", (run_id,)).fetchone()
        return dict(row) if row else None

    def get_document(self, document_id: int | str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT id, text FROM documents WHERE id = ?", (int(document_id),)).fetchone()
        return dict(row) if row else None

    def count_documents(self) -> int:
        with self._connect() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0])

    def delete_run_artifacts(self, run_id: str) -> None:
        """Remove the document for a run and any vector keyed to it."""

        with self._connect() as conn:
            row = conn.execute("SELECT id FROM documents WHERE run_id = ?", (run_id,)).fetchone()
            if row is None:
                return
            conn.execute("DELETE FROM vectors WHERE id = ?", (str(row["id"]),))
            conn.execute("DELETE FROM documents WHERE id = ?", (row["id"],))

    def upsert_vector(self, vector_id: str, values: list[float]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO vectors(id, values_json, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET values_json = excluded.values_json, updated_at = excluded.updated_at
                """,
                (vector_id, json.dumps(values), _utc_now_iso()),
            )

    def iter_vectors(self) -> list[tuple[str, list[float]]]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id, values_json FROM vectors").fetchall()
        return [(row["id"], json.loads(row["values_json"])) for row in rows]

    # -- workflow runs -----------------------------------------------------

    def create_workflow_run(self, text: str, step_names: list[str]) -> str:
        run_id = uuid.uuid4().hex
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO workflow_runs(id, text, status, created_at, updated_at) VALUES (?, ?, 'pending', ?, ?)",
                (run_id, text, now, now),
            )
            conn.executemany(
                "INSERT INTO workflow_steps(run_id, name, position, status, updated_at) VALUES (?, ?, ?, 'pending', ?)",
                [(run_id, name, position, now) for position, name in enumerate(step_names)],
            )
        return run_id

    def get_workflow_run(self, run_id: str) -> WorkflowRun | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM workflow_runs WHERE id = ?", (run_id,)).fetchone()
            if row is None:
                return None
            steps = conn.execute(
                "SELECT * FROM workflow_steps WHERE run_id = ? ORDER BY position ASC", (run_id,)
            ).fetchall()
        return WorkflowRun(
            id=row["id"],
            text=row["text"],
            status=row["status"],
            error=row["error"],
            steps=[
                StepRecord(
                    name=step["name"],
                    status=step["status"],
                    result=json.loads(step["result_json"]) if step["result_json"] is not None else None,
                    attempts=step["attempts"],
                )
                for step in steps
            ],
        )

    def list_incomplete_runs(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM workflow_runs WHERE status IN ('pending', 'running') ORDER BY created_at ASC"
            ).fetchall()
        return [row["id"] for row in rows]

    def set_run_status(self, run_id: str, status: str, error: str | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE workflow_runs SET status = ?, error = ?, updated_at = ? WHERE id = ?",
                (status, error, _utc_now_iso(), run_id),
            )

    def record_step_attempt(self, run_id: str, name: str) -> int:
        with self._connect() as conn:
            conn.execute(
                "UPDATE workflow_steps SET attempts = attempts + 1, status = 'running', updated_at = ? "
                "WHERE run_id = ? AND name = ?",
                (_utc_now_iso(), run_id, name),
            )
            row = conn.execute(
                "SELECT attempts FROM workflow_steps WHERE run_id = ? AND name = ?", (run_id, name)
            ).fetchone()
        return int(row["attempts"])

    def complete_step(self, run_id: str, name: str, result: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE workflow_steps SET status = 'completed', result_json = ?, updated_at = ? "
                "WHERE run_id = ? AND name = ?",
                (json.dumps(result), _utc_now_iso(), run_id, name),
            )

    def fail_step(self, run_id: str, name: str, error: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE workflow_steps SET status = 'failed', result_json = ?, updated_at = ? "
                "WHERE run_id = ? AND name = ?",
                (json.dumps({"error": error}), _utc_now_iso(), run_id, name),
            )


def _row_to_invocation(row: sqlite3.Row) -> ToolInvocation:
    return ToolInvocation(
        id=row["id"],
        tool_name=row["tool_name"],
        arguments=json.loads(row["arguments_json"]),
        state=InvocationState(row["state"]),
        result=json.loads(row["result_json"]) if row["result_json"] is not None else None,
    )


def _row_to_task(row: sqlite3.Row) -> ScheduledTask:
    return ScheduledTask(
        id=row["id"],
        conversation_id=row["conversation_id"],
        kind=row["kind"],
        when=row["when_value"],
        callback=row["callback"],
        payload=json.loads(row["payload_json"]),
        next_run_at=datetime.fromisoformat(row["next_run_at"]),
        status=row["status"],
    )


def _dump_result(result: Any) -> str | None:
    return None if result is None else json.dumps(result, default=str)


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _utc_now_iso() -> str:
    return _iso(datetime.now(timezone.utc))
