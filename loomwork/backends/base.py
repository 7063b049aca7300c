"""Backend adapter contract: submit, poll and kill one call attempt."""

from __future__ import annotations

import abc
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..contracts import CallKey
from ..graph import RuntimeAttributes


class BackendJob(BaseModel):
    """Everything a backend needs to run one call attempt."""

    workflow_id: str
    workflow_name: str
    key: CallKey
    call_name: str
    task_name: str
    command: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    runtime: RuntimeAttributes = RuntimeAttributes()


class JobHandle(BaseModel):
    """Backend-issued reference to a submitted job."""

    job_id: str
    backend: str
    call_root: str
    stdout: str
    stderr: str
    container: Optional[str] = None


class JobState(str, Enum):
    RUNNING = "Running"
    DONE = "Done"
    FAILED = "Failed"


class PollResult(BaseModel):
    state: JobState
    return_code: Optional[int] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None

    @classmethod
    def running(cls) -> "PollResult":
        return cls(state=JobState.RUNNING)

    @classmethod
    def done(cls, return_code: int, stdout: str, stderr: str) -> "PollResult":
        return cls(state=JobState.DONE, return_code=return_code, stdout=stdout, stderr=stderr)

    @classmethod
    def failed(cls, return_code: Optional[int] = None) -> "PollResult":
        return cls(state=JobState.FAILED, return_code=return_code)


def call_directory(root: Path, job: BackendJob) -> Path:
    """Return ``<root>/<workflow>/<id>/call-<name>[/shard-<i>]/attempt-<n>``."""
    path = root / job.workflow_name / job.workflow_id / f"call-{job.call_name}"
    if job.key.index is not None:
        path = path / f"shard-{job.key.index}"
    return path / f"attempt-{job.key.attempt}"


class BaseBackend(metaclass=abc.ABCMeta):
    """Abstract base for execution backends.

    Implementations raise :class:`~loomwork.errors.BackendTransportError`
    when the backend cannot be reached.
    """

    name: str = "base"

    async def disconnect(self) -> None:
        """Release backend resources (no-op by default)."""
        pass

    @abc.abstractmethod
    async def submit(self, job: BackendJob) -> JobHandle:
        """Start ``job`` and return a handle to it."""
        raise NotImplementedError

    @abc.abstractmethod
    async def poll(self, handle: JobHandle) -> PollResult:
        """Report the current state of the job behind ``handle``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def kill(self, handle: JobHandle) -> None:
        """Ask the backend to stop the job (best effort)."""
        raise NotImplementedError
