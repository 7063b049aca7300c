"""SQLite implementation of the workflow store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from ..constants import NO_INDEX
from ..contracts import FailureReason, WorkflowSourceFiles, WorkflowState
from ..errors import ConstraintViolationError
from .models import CallRecord, KeyValueEntry, KeyValueScope, WorkflowRecord, utcnow
from .store import WorkflowStore


def _index_in(index: Optional[int]) -> int:
    return NO_INDEX if index is None else index


def _index_out(value: int) -> Optional[int]:
    return None if value == NO_INDEX else value


def _json_or_none(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


class SQLiteWorkflowStore(WorkflowStore):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    workflow_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    state TEXT NOT NULL,
                    workflow_source TEXT NOT NULL,
                    inputs_json TEXT NOT NULL,
                    options_json TEXT NOT NULL,
                    outputs TEXT,
                    failures TEXT,
                    submitted_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS call_status (
                    workflow_id TEXT NOT NULL,
                    call_fqn TEXT NOT NULL,
                    call_index INTEGER NOT NULL,
                    attempt INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    job_id TEXT,
                    return_code INTEGER,
                    inputs TEXT,
                    outputs TEXT,
                    error_kind TEXT,
                    error_message TEXT,
                    stdout TEXT,
                    stderr TEXT,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (workflow_id, call_fqn, call_index, attempt)
                );
                CREATE TABLE IF NOT EXISTS job_key_value (
                    workflow_id TEXT NOT NULL,
                    call_fqn TEXT NOT NULL,
                    call_index INTEGER NOT NULL,
                    attempt INTEGER NOT NULL,
                    store_key TEXT NOT NULL,
                    store_value TEXT NOT NULL,
                    UNIQUE (workflow_id, call_fqn, call_index, attempt, store_key)
                );
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(query, params)
            return cur.rowcount

    def _execute_many(self, query: str, rows: list[tuple]) -> None:
        """Run ``query`` for every row in one transaction."""
        with self._lock:
            try:
                with self._conn:
                    self._conn.executemany(query, rows)
            except sqlite3.IntegrityError as exc:
                raise ConstraintViolationError(str(exc)) from exc

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    def _workflow_from_row(self, row: sqlite3.Row) -> WorkflowRecord:
        return WorkflowRecord(
            workflow_id=row["workflow_id"],
            name=row["name"],
            state=WorkflowState(row["state"]),
            sources=WorkflowSourceFiles(
                workflow_source=row["workflow_source"],
                inputs_json=row["inputs_json"],
                options_json=row["options_json"],
            ),
            outputs=json.loads(row["outputs"]) if row["outputs"] else None,
            failures=[FailureReason(**f) for f in json.loads(row["failures"] or "[]")],
            submitted_at=datetime.fromisoformat(row["submitted_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _call_from_row(self, row: sqlite3.Row) -> CallRecord:
        return CallRecord(
            workflow_id=row["workflow_id"],
            call_fqn=row["call_fqn"],
            index=_index_out(row["call_index"]),
            attempt=row["attempt"],
            status=row["status"],
            job_id=row["job_id"],
            return_code=row["return_code"],
            inputs=json.loads(row["inputs"]) if row["inputs"] else None,
            outputs=json.loads(row["outputs"]) if row["outputs"] else None,
            error_kind=row["error_kind"],
            error_message=row["error_message"],
            stdout=row["stdout"],
            stderr=row["stderr"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Store API
    async def create_workflow(
        self, workflow_id: str, name: str, sources: WorkflowSourceFiles
    ) -> None:
        now = utcnow().isoformat()
        try:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT INTO workflows (workflow_id, name, state, workflow_source,
                    inputs_json, options_json, failures, submitted_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                workflow_id,
                name,
                WorkflowState.SUBMITTED.value,
                sources.workflow_source,
                sources.inputs_json,
                sources.options_json,
                "[]",
                now,
                now,
            )
        except sqlite3.IntegrityError as exc:
            raise ConstraintViolationError(str(exc)) from exc

    async def update_workflow_state(
        self,
        workflow_id: str,
        state: WorkflowState,
        failures: Optional[Sequence[FailureReason]] = None,
    ) -> None:
        now = utcnow().isoformat()
        if failures is None:
            await asyncio.to_thread(
                self._execute,
                "UPDATE workflows SET state = ?, updated_at = ? WHERE workflow_id = ?",
                state.value,
                now,
                workflow_id,
            )
            return
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET state = ?, failures = ?, updated_at = ? WHERE workflow_id = ?",
            state.value,
            json.dumps([f.model_dump() for f in failures]),
            now,
            workflow_id,
        )

    async def set_workflow_outputs(self, workflow_id: str, outputs: dict) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET outputs = ? WHERE workflow_id = ?",
            json.dumps(outputs),
            workflow_id,
        )

    async def upsert_call_status(self, record: CallRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO call_status (workflow_id, call_fqn, call_index, attempt, status,
                job_id, return_code, inputs, outputs, error_kind, error_message,
                stdout, stderr, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (workflow_id, call_fqn, call_index, attempt) DO UPDATE SET
                status = excluded.status,
                job_id = excluded.job_id,
                return_code = excluded.return_code,
                inputs = excluded.inputs,
                outputs = excluded.outputs,
                error_kind = excluded.error_kind,
                error_message = excluded.error_message,
                stdout = excluded.stdout,
                stderr = excluded.stderr,
                updated_at = excluded.updated_at
            """,
            record.workflow_id,
            record.call_fqn,
            _index_in(record.index),
            record.attempt,
            record.status.value,
            record.job_id,
            record.return_code,
            _json_or_none(record.inputs),
            _json_or_none(record.outputs),
            record.error_kind,
            record.error_message,
            record.stdout,
            record.stderr,
            record.updated_at.isoformat(),
        )

    async def get_call_statuses(self, workflow_id: str) -> list[CallRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM call_status WHERE workflow_id = ? ORDER BY call_fqn, call_index, attempt",
            workflow_id,
        )
        return [self._call_from_row(r) for r in rows]

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM workflows WHERE workflow_id = ?",
            workflow_id,
        )
        if not row:
            return None
        workflow = self._workflow_from_row(row)
        workflow.calls = await self.get_call_statuses(workflow_id)
        return workflow

    async def list_workflows(
        self, states: Optional[Iterable[WorkflowState]] = None
    ) -> list[WorkflowRecord]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM workflows ORDER BY submitted_at"
        )
        workflows = [self._workflow_from_row(row) for row in rows]
        if states is None:
            return workflows
        wanted = set(states)
        return [wf for wf in workflows if wf.state in wanted]

    async def upsert_key_value(self, scope: KeyValueScope, key: str, value: Optional[str]) -> None:
        await self.upsert_key_values([KeyValueEntry(scope=scope, key=key, value=value)])

    async def upsert_key_values(self, entries: Sequence[KeyValueEntry]) -> None:
        rows = [
            (
                e.scope.workflow_id,
                e.scope.call_fqn,
                _index_in(e.scope.index),
                e.scope.attempt,
                e.key,
                e.value,
            )
            for e in entries
        ]
        await asyncio.to_thread(
            self._execute_many,
            """
            INSERT INTO job_key_value (workflow_id, call_fqn, call_index, attempt,
                store_key, store_value)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (workflow_id, call_fqn, call_index, attempt, store_key)
            DO UPDATE SET store_value = excluded.store_value
            """,
            rows,
        )

    async def query_value(self, scope: KeyValueScope, key: str) -> Optional[str]:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT store_value FROM job_key_value
            WHERE workflow_id = ? AND call_fqn = ? AND call_index = ? AND attempt = ?
                AND store_key = ?
            """,
            scope.workflow_id,
            scope.call_fqn,
            _index_in(scope.index),
            scope.attempt,
            key,
        )
        return row["store_value"] if row else None

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
