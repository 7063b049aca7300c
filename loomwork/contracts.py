"""Core contracts shared by the manager, supervisors, call actors and stores."""

from __future__ import annotations

import json
import uuid
from enum import Enum
from typing import Any, Dict, NewType, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import IllegalTransitionError, ParseError
from .graph import DependencyGraph

WorkflowId = NewType("WorkflowId", str)


def new_workflow_id() -> WorkflowId:
    return WorkflowId(str(uuid.uuid4()))


class FailureMode(str, Enum):
    """How a workflow reacts to a terminally failed call."""

    FAIL_FAST = "fail_fast"
    FAIL_SLOW = "fail_slow"


class WorkflowState(str, Enum):
    SUBMITTED = "Submitted"
    RUNNING = "Running"
    ABORTING = "Aborting"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_WORKFLOW_STATES


TERMINAL_WORKFLOW_STATES = frozenset(
    {WorkflowState.SUCCEEDED, WorkflowState.FAILED, WorkflowState.ABORTED}
)

ALLOWED_WORKFLOW_TRANSITIONS: Dict[WorkflowState, Set[WorkflowState]] = {
    WorkflowState.SUBMITTED: {
        WorkflowState.RUNNING,
        WorkflowState.FAILED,
        WorkflowState.ABORTED,
    },
    WorkflowState.RUNNING: {
        WorkflowState.ABORTING,
        WorkflowState.SUCCEEDED,
        WorkflowState.FAILED,
    },
    WorkflowState.ABORTING: {WorkflowState.ABORTED},
    WorkflowState.SUCCEEDED: set(),
    WorkflowState.FAILED: set(),
    WorkflowState.ABORTED: set(),
}


def transition_workflow(current: WorkflowState, to: WorkflowState) -> WorkflowState:
    if to not in ALLOWED_WORKFLOW_TRANSITIONS[current]:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")
    return to


class CallStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    STARTING = "Starting"
    RUNNING = "Running"
    DONE = "Done"
    FAILED = "Failed"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_CALL_STATUSES


TERMINAL_CALL_STATUSES = frozenset({CallStatus.DONE, CallStatus.FAILED, CallStatus.ABORTED})

ALLOWED_CALL_TRANSITIONS: Dict[CallStatus, Set[CallStatus]] = {
    CallStatus.NOT_STARTED: {CallStatus.STARTING, CallStatus.ABORTED},
    CallStatus.STARTING: {CallStatus.RUNNING, CallStatus.FAILED, CallStatus.ABORTED},
    CallStatus.RUNNING: {CallStatus.DONE, CallStatus.FAILED, CallStatus.ABORTED},
    CallStatus.DONE: set(),
    CallStatus.FAILED: set(),
    CallStatus.ABORTED: set(),
}


def transition_call(current: CallStatus, to: CallStatus) -> CallStatus:
    if to not in ALLOWED_CALL_TRANSITIONS[current]:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")
    return to


class CallKey(BaseModel):
    """Identifies one attempt of one call instance."""

    model_config = ConfigDict(frozen=True)

    fqn: str
    index: Optional[int] = None
    attempt: int = 1

    @property
    def instance(self) -> Tuple[str, Optional[int]]:
        return self.fqn, self.index

    @property
    def tag(self) -> str:
        index = "NA" if self.index is None else str(self.index)
        return f"{self.fqn}:{index}:{self.attempt}"

    def next_attempt(self) -> "CallKey":
        return self.model_copy(update={"attempt": self.attempt + 1})

    def __str__(self) -> str:
        return self.tag


class WorkflowSourceFiles(BaseModel):
    """Raw submission: workflow definition, inputs and options."""

    workflow_source: str
    inputs_json: str = "{}"
    options_json: str = "{}"


class WorkflowOptions(BaseModel):
    """Per-workflow overrides of engine configuration."""

    backend: Optional[str] = None
    failure_mode: Optional[FailureMode] = None
    max_retries: Optional[int] = Field(default=None, ge=0)

    @classmethod
    def from_json(cls, data: str) -> "WorkflowOptions":
        try:
            raw = json.loads(data or "{}")
            return cls.model_validate(raw)
        except ValueError as exc:
            raise ParseError(f"Invalid workflow options: {exc}") from exc


class WorkflowDescriptor(BaseModel):
    """Immutable description of one workflow run."""

    model_config = ConfigDict(frozen=True)

    id: WorkflowId
    sources: WorkflowSourceFiles
    graph: DependencyGraph
    options: WorkflowOptions = WorkflowOptions()

    @property
    def name(self) -> str:
        return self.graph.name

    @property
    def inputs(self) -> Dict[str, Any]:
        return self.graph.inputs


class FailureReason(BaseModel):
    """Why a workflow failed: originating call key and error kind."""

    call_key: Optional[str] = None
    kind: str
    message: str

    @classmethod
    def from_error(cls, error: BaseException, key: Optional[CallKey] = None) -> "FailureReason":
        kind = getattr(error, "kind", None) or type(error).__name__
        message = getattr(error, "message", None) or str(error)
        return cls(call_key=key.tag if key else None, kind=kind, message=message)


class StdoutStderr(BaseModel):
    """Paths of the standard streams captured for one call attempt."""

    stdout: str
    stderr: str
