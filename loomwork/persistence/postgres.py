"""PostgreSQL implementation of the workflow store."""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional, Sequence

import asyncpg

from ..constants import NO_INDEX
from ..contracts import FailureReason, WorkflowSourceFiles, WorkflowState
from ..errors import ConstraintViolationError
from .models import CallRecord, KeyValueEntry, KeyValueScope, WorkflowRecord, utcnow
from .store import WorkflowStore


def _index_in(index: Optional[int]) -> int:
    return NO_INDEX if index is None else index


def _loads(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowStore(WorkflowStore):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                workflow_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                state TEXT NOT NULL,
                workflow_source TEXT NOT NULL,
                inputs_json TEXT NOT NULL,
                options_json TEXT NOT NULL,
                outputs JSONB,
                failures JSONB NOT NULL DEFAULT '[]',
                submitted_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS call_status (
                workflow_id TEXT NOT NULL,
                call_fqn TEXT NOT NULL,
                call_index INTEGER NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                job_id TEXT,
                return_code INTEGER,
                inputs JSONB,
                outputs JSONB,
                error_kind TEXT,
                error_message TEXT,
                stdout TEXT,
                stderr TEXT,
                updated_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (workflow_id, call_fqn, call_index, attempt)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS job_key_value (
                workflow_id TEXT NOT NULL,
                call_fqn TEXT NOT NULL,
                call_index INTEGER NOT NULL,
                attempt INTEGER NOT NULL,
                store_key TEXT NOT NULL,
                store_value TEXT NOT NULL,
                UNIQUE (workflow_id, call_fqn, call_index, attempt, store_key)
            )
            """
        )

    def _workflow_from_row(self, row: asyncpg.Record) -> WorkflowRecord:
        return WorkflowRecord(
            workflow_id=row["workflow_id"],
            name=row["name"],
            state=WorkflowState(row["state"]),
            sources=WorkflowSourceFiles(
                workflow_source=row["workflow_source"],
                inputs_json=row["inputs_json"],
                options_json=row["options_json"],
            ),
            outputs=_loads(row["outputs"]),
            failures=[FailureReason(**f) for f in _loads(row["failures"]) or []],
            submitted_at=row["submitted_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    async def create_workflow(
        self, workflow_id: str, name: str, sources: WorkflowSourceFiles
    ) -> None:
        now = utcnow()
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflows (workflow_id, name, state, workflow_source,
                    inputs_json, options_json, submitted_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                workflow_id,
                name,
                WorkflowState.SUBMITTED.value,
                sources.workflow_source,
                sources.inputs_json,
                sources.options_json,
                now,
                now,
            )
        except asyncpg.exceptions.IntegrityConstraintViolationError as exc:
            raise ConstraintViolationError(str(exc)) from exc
        finally:
            await conn.close()

    async def update_workflow_state(
        self,
        workflow_id: str,
        state: WorkflowState,
        failures: Optional[Sequence[FailureReason]] = None,
    ) -> None:
        conn = await self._connect()
        try:
            if failures is None:
                await conn.execute(
                    "UPDATE workflows SET state = $1, updated_at = $2 WHERE workflow_id = $3",
                    state.value,
                    utcnow(),
                    workflow_id,
                )
            else:
                await conn.execute(
                    """
                    UPDATE workflows SET state = $1, failures = $2, updated_at = $3
                    WHERE workflow_id = $4
                    """,
                    state.value,
                    json.dumps([f.model_dump() for f in failures]),
                    utcnow(),
                    workflow_id,
                )
        finally:
            await conn.close()

    async def set_workflow_outputs(self, workflow_id: str, outputs: dict) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflows SET outputs = $1 WHERE workflow_id = $2",
                json.dumps(outputs),
                workflow_id,
            )
        finally:
            await conn.close()

    async def upsert_call_status(self, record: CallRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO call_status (workflow_id, call_fqn, call_index, attempt, status,
                    job_id, return_code, inputs, outputs, error_kind, error_message,
                    stdout, stderr, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                ON CONFLICT (workflow_id, call_fqn, call_index, attempt) DO UPDATE SET
                    status = EXCLUDED.status,
                    job_id = EXCLUDED.job_id,
                    return_code = EXCLUDED.return_code,
                    inputs = EXCLUDED.inputs,
                    outputs = EXCLUDED.outputs,
                    error_kind = EXCLUDED.error_kind,
                    error_message = EXCLUDED.error_message,
                    stdout = EXCLUDED.stdout,
                    stderr = EXCLUDED.stderr,
                    updated_at = EXCLUDED.updated_at
                """,
                record.workflow_id,
                record.call_fqn,
                _index_in(record.index),
                record.attempt,
                record.status.value,
                record.job_id,
                record.return_code,
                None if record.inputs is None else json.dumps(record.inputs),
                None if record.outputs is None else json.dumps(record.outputs),
                record.error_kind,
                record.error_message,
                record.stdout,
                record.stderr,
                record.updated_at,
            )
        finally:
            await conn.close()

    async def get_call_statuses(self, workflow_id: str) -> list[CallRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM call_status WHERE workflow_id = $1
                ORDER BY call_fqn, call_index, attempt
                """,
                workflow_id,
            )
        finally:
            await conn.close()
        return [
            CallRecord(
                workflow_id=r["workflow_id"],
                call_fqn=r["call_fqn"],
                index=None if r["call_index"] == NO_INDEX else r["call_index"],
                attempt=r["attempt"],
                status=r["status"],
                job_id=r["job_id"],
                return_code=r["return_code"],
                inputs=_loads(r["inputs"]),
                outputs=_loads(r["outputs"]),
                error_kind=r["error_kind"],
                error_message=r["error_message"],
                stdout=r["stdout"],
                stderr=r["stderr"],
                updated_at=r["updated_at"],
            )
            for r in rows
        ]

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM workflows WHERE workflow_id = $1", workflow_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        workflow = self._workflow_from_row(row)
        workflow.calls = await self.get_call_statuses(workflow_id)
        return workflow

    async def list_workflows(
        self, states: Optional[Iterable[WorkflowState]] = None
    ) -> list[WorkflowRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT * FROM workflows ORDER BY submitted_at")
        finally:
            await conn.close()
        workflows = [self._workflow_from_row(r) for r in rows]
        if states is None:
            return workflows
        wanted = set(states)
        return [wf for wf in workflows if wf.state in wanted]

    async def upsert_key_value(self, scope: KeyValueScope, key: str, value: Optional[str]) -> None:
        await self.upsert_key_values([KeyValueEntry(scope=scope, key=key, value=value)])

    async def upsert_key_values(self, entries: Sequence[KeyValueEntry]) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO job_key_value (workflow_id, call_fqn, call_index, attempt,
                        store_key, store_value)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT (workflow_id, call_fqn, call_index, attempt, store_key)
                    DO UPDATE SET store_value = EXCLUDED.store_value
                    """,
                    [
                        (
                            e.scope.workflow_id,
                            e.scope.call_fqn,
                            _index_in(e.scope.index),
                            e.scope.attempt,
                            e.key,
                            e.value,
                        )
                        for e in entries
                    ],
                )
        except asyncpg.exceptions.IntegrityConstraintViolationError as exc:
            raise ConstraintViolationError(str(exc)) from exc
        finally:
            await conn.close()

    async def query_value(self, scope: KeyValueScope, key: str) -> Optional[str]:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                """
                SELECT store_value FROM job_key_value
                WHERE workflow_id = $1 AND call_fqn = $2 AND call_index = $3
                    AND attempt = $4 AND store_key = $5
                """,
                scope.workflow_id,
                scope.call_fqn,
                _index_in(scope.index),
                scope.attempt,
                key,
            )
        finally:
            await conn.close()

    async def close(self) -> None:
        pass
