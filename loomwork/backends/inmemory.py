"""In-process scripted backend for tests and dry runs."""

from __future__ import annotations

import itertools
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ..errors import BackendTransportError
from .base import BackendJob, BaseBackend, JobHandle, PollResult, call_directory


class ScriptedJob(BaseModel):
    """Outcome the in-memory backend reports for a job.

    ``polls`` is the number of polls answered with Running before the job
    completes; ``files`` are written into the call directory at submit time.
    """

    return_code: Optional[int] = 0
    stdout: str = ""
    stderr: str = ""
    polls: int = 0
    failed: bool = False
    files: Dict[str, str] = Field(default_factory=dict)


Behaviour = Union[ScriptedJob, Callable[[BackendJob], ScriptedJob]]


class _RunningJob:
    def __init__(self, job: BackendJob, script: ScriptedJob) -> None:
        self.job = job
        self.script = script
        self.polls_left = script.polls
        self.killed = False


class InMemoryBackend(BaseBackend):
    """Simple in-process backend for unit tests.

    Behaviours are looked up by call FQN, then call name, then task name.
    Without one the job succeeds and echoes its command on stdout.
    """

    name = "inmemory"

    def __init__(
        self,
        root: Optional[Union[str, Path]] = None,
        behaviours: Optional[Dict[str, Behaviour]] = None,
    ) -> None:
        self.root = Path(root) if root else Path(tempfile.mkdtemp(prefix="loomwork-"))
        self._behaviours: Dict[str, Behaviour] = dict(behaviours or {})
        self._jobs: Dict[str, _RunningJob] = {}
        self._ids = itertools.count(1)
        self._submit_failures: Dict[str, int] = {}
        self._poll_failures: Dict[str, int] = {}
        self.submitted: List[BackendJob] = []
        self.killed: List[BackendJob] = []

    def script(self, name: str, behaviour: Behaviour) -> None:
        """Register the behaviour of the call or task ``name``."""
        self._behaviours[name] = behaviour

    def fail_submissions(self, name: str, times: int = 1) -> None:
        """Make the next ``times`` submissions of ``name`` raise."""
        self._submit_failures[name] = times

    def fail_polls(self, name: str, times: int = 1) -> None:
        """Make the next ``times`` polls of ``name`` raise."""
        self._poll_failures[name] = times

    def _matching(self, table: Dict[str, object], job: BackendJob) -> Optional[str]:
        for name in (job.key.fqn, job.call_name, job.task_name):
            if name in table:
                return name
        return None

    def _consume_failure(self, table: Dict[str, int], job: BackendJob) -> bool:
        name = self._matching(table, job)
        if name is None or table[name] <= 0:
            return False
        table[name] -= 1
        return True

    def _scripted(self, job: BackendJob) -> ScriptedJob:
        name = self._matching(self._behaviours, job)
        if name is None:
            return ScriptedJob(stdout=job.command)
        behaviour = self._behaviours[name]
        return behaviour(job) if callable(behaviour) else behaviour

    async def submit(self, job: BackendJob) -> JobHandle:
        self.submitted.append(job)
        if self._consume_failure(self._submit_failures, job):
            raise BackendTransportError(f"Injected submission failure for {job.key}")

        script = self._scripted(job)
        call_root = call_directory(self.root, job)
        call_root.mkdir(parents=True, exist_ok=True)
        stdout = call_root / "stdout"
        stderr = call_root / "stderr"
        stdout.write_text(script.stdout)
        stderr.write_text(script.stderr)
        for relative, content in script.files.items():
            target = call_root / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)

        job_id = f"inmemory-{next(self._ids)}"
        self._jobs[job_id] = _RunningJob(job, script)
        return JobHandle(
            job_id=job_id,
            backend=self.name,
            call_root=str(call_root),
            stdout=str(stdout),
            stderr=str(stderr),
        )

    async def poll(self, handle: JobHandle) -> PollResult:
        running = self._jobs.get(handle.job_id)
        if running is None:
            raise BackendTransportError(f"Unknown job {handle.job_id}")
        if self._consume_failure(self._poll_failures, running.job):
            raise BackendTransportError(f"Injected poll failure for {running.job.key}")
        if running.killed:
            return PollResult.failed()
        if running.polls_left > 0:
            running.polls_left -= 1
            return PollResult.running()
        script = running.script
        if script.failed:
            return PollResult.failed(script.return_code)
        return PollResult.done(script.return_code, handle.stdout, handle.stderr)

    async def kill(self, handle: JobHandle) -> None:
        running = self._jobs.get(handle.job_id)
        if running is None:
            raise BackendTransportError(f"Unknown job {handle.job_id}")
        running.killed = True
        self.killed.append(running.job)
