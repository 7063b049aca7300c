"""In-memory implementation of the workflow store."""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Sequence, Tuple

from ..contracts import FailureReason, WorkflowSourceFiles, WorkflowState
from ..errors import ConstraintViolationError
from .models import CallRecord, KeyValueEntry, KeyValueScope, WorkflowRecord, utcnow
from .store import WorkflowStore

_CallRow = Tuple[str, str, Optional[int], int]


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowRecord] = {}
        self._calls: Dict[_CallRow, CallRecord] = {}
        self._values: Dict[Tuple[KeyValueScope, str], str] = {}

    # ------------------------------------------------------------------
    async def create_workflow(
        self, workflow_id: str, name: str, sources: WorkflowSourceFiles
    ) -> None:
        if workflow_id in self._workflows:
            raise ConstraintViolationError(f"Workflow {workflow_id} already exists")
        self._workflows[workflow_id] = WorkflowRecord(
            workflow_id=workflow_id, name=name, sources=sources
        )

    async def update_workflow_state(
        self,
        workflow_id: str,
        state: WorkflowState,
        failures: Optional[Sequence[FailureReason]] = None,
    ) -> None:
        wf = self._workflows.get(workflow_id)
        if wf:
            wf.state = state
            if failures is not None:
                wf.failures = list(failures)
            wf.updated_at = utcnow()

    async def set_workflow_outputs(self, workflow_id: str, outputs: dict) -> None:
        wf = self._workflows.get(workflow_id)
        if wf:
            wf.outputs = dict(outputs)

    async def upsert_call_status(self, record: CallRecord) -> None:
        row = (record.workflow_id, record.call_fqn, record.index, record.attempt)
        self._calls[row] = record.model_copy(deep=True)

    async def get_call_statuses(self, workflow_id: str) -> list[CallRecord]:
        rows = [r for row, r in self._calls.items() if row[0] == workflow_id]
        rows.sort(key=lambda r: (r.call_fqn, -1 if r.index is None else r.index, r.attempt))
        return [r.model_copy(deep=True) for r in rows]

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            return None
        snapshot = wf.model_copy(deep=True)
        snapshot.calls = await self.get_call_statuses(workflow_id)
        return snapshot

    async def list_workflows(
        self, states: Optional[Iterable[WorkflowState]] = None
    ) -> list[WorkflowRecord]:
        wanted = set(states) if states is not None else None
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if wanted is None or wf.state in wanted
        ]

    async def upsert_key_value(self, scope: KeyValueScope, key: str, value: Optional[str]) -> None:
        await self.upsert_key_values([KeyValueEntry(scope=scope, key=key, value=value)])

    async def upsert_key_values(self, entries: Sequence[KeyValueEntry]) -> None:
        for entry in entries:
            if entry.value is None:
                raise ConstraintViolationError(
                    f"Value of '{entry.key}' for {entry.scope.call_fqn} cannot be null"
                )
        for entry in entries:
            self._values[(entry.scope, entry.key)] = entry.value

    async def query_value(self, scope: KeyValueScope, key: str) -> Optional[str]:
        return self._values.get((scope, key))

    async def close(self) -> None:
        pass
