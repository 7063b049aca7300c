"""Store abstraction for workflow and call state persistence."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol, Sequence

from ..contracts import FailureReason, WorkflowSourceFiles, WorkflowState
from .models import CallRecord, KeyValueEntry, KeyValueScope, WorkflowRecord


class WorkflowStore(Protocol):
    """Protocol for durable store backends.

    Every call actor only writes rows keyed by its own call key, so
    implementations must provide atomic per-key upserts but no cross-key
    locking.
    """

    async def create_workflow(
        self, workflow_id: str, name: str, sources: WorkflowSourceFiles
    ) -> None:
        """Persist a newly submitted workflow."""

    async def update_workflow_state(
        self,
        workflow_id: str,
        state: WorkflowState,
        failures: Optional[Sequence[FailureReason]] = None,
    ) -> None:
        """Persist a workflow state transition and, if given, its failures."""

    async def set_workflow_outputs(self, workflow_id: str, outputs: dict) -> None:
        """Persist the final outputs of a succeeded workflow."""

    async def upsert_call_status(self, record: CallRecord) -> None:
        """Insert or overwrite the row of one call attempt."""

    async def get_call_statuses(self, workflow_id: str) -> list[CallRecord]:
        """Return every call attempt row of a workflow."""

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        """Retrieve a workflow and its call rows by id."""

    async def list_workflows(
        self, states: Optional[Iterable[WorkflowState]] = None
    ) -> list[WorkflowRecord]:
        """Return persisted workflows, optionally filtered by state."""

    async def upsert_key_value(self, scope: KeyValueScope, key: str, value: Optional[str]) -> None:
        """Insert or overwrite one entry; raises ConstraintViolationError."""

    async def upsert_key_values(self, entries: Sequence[KeyValueEntry]) -> None:
        """Upsert all ``entries`` atomically; raises ConstraintViolationError."""

    async def query_value(self, scope: KeyValueScope, key: str) -> Optional[str]:
        """Return the stored value or ``None``."""

    async def close(self) -> None:
        """Release connections."""
