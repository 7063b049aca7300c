"""Data models for persisted workflow and call state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import CallKey, CallStatus, FailureReason, WorkflowSourceFiles, WorkflowState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallRecord(BaseModel):
    """Status row of one call attempt, keyed by (workflow, call, index, attempt)."""

    workflow_id: str
    call_fqn: str
    index: Optional[int] = None
    attempt: int = 1
    status: CallStatus
    job_id: Optional[str] = None
    return_code: Optional[int] = None
    inputs: Optional[Dict[str, Any]] = None
    outputs: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> CallKey:
        return CallKey(fqn=self.call_fqn, index=self.index, attempt=self.attempt)


class WorkflowRecord(BaseModel):
    """Persisted workflow run."""

    workflow_id: str
    name: str
    state: WorkflowState = WorkflowState.SUBMITTED
    sources: WorkflowSourceFiles
    outputs: Optional[Dict[str, Any]] = None
    failures: List[FailureReason] = Field(default_factory=list)
    submitted_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    calls: List[CallRecord] = Field(default_factory=list)


class KeyValueScope(BaseModel):
    """Scope of key/value entries: one call attempt of one workflow."""

    model_config = ConfigDict(frozen=True)

    workflow_id: str
    call_fqn: str
    index: Optional[int] = None
    attempt: int = 1

    @classmethod
    def for_call(cls, workflow_id: str, key: CallKey) -> "KeyValueScope":
        return cls(workflow_id=workflow_id, call_fqn=key.fqn, index=key.index, attempt=key.attempt)


class KeyValueEntry(BaseModel):
    scope: KeyValueScope
    key: str
    value: Optional[str]


def latest_attempts(records: Iterable[CallRecord]) -> Dict[Tuple[str, Optional[int]], CallRecord]:
    """Keep the highest attempt recorded for every call instance."""
    latest: Dict[Tuple[str, Optional[int]], CallRecord] = {}
    for record in records:
        instance = (record.call_fqn, record.index)
        current = latest.get(instance)
        if current is None or record.attempt > current.attempt:
            latest[instance] = record
    return latest
