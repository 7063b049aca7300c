"""Drives one call attempt through submit, poll and output evaluation."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .actor import Actor
from .backends.base import BackendJob, BaseBackend, JobHandle, JobState, PollResult
from .constants import JOB_ID_KEY
from .contracts import CallKey, CallStatus, StdoutStderr, transition_call
from .errors import (
    BackendTransportError,
    BackendUnavailableError,
    CallExecutionError,
    NonZeroExitError,
    OutputEvaluationError,
    SubmissionError,
)
from .expressions import evaluate_output, render_command
from .graph import CallDefinition
from .messages import (
    CallAborted,
    CallFailed,
    CallRunning,
    CallStarting,
    CallSucceeded,
    CancelCall,
    PollJob,
    StartCall,
)
from .persistence.models import CallRecord, KeyValueScope
from .persistence.store import WorkflowStore
from .utils.retry import poll_delay

logger = logging.getLogger(__name__)


class CallExecutionActor(Actor):
    """Owns the status of exactly one call attempt.

    The actor renders the command, submits it to the backend and polls until
    the job reaches a terminal state. Every status change is written to the
    store before the supervisor is told about it. Polls are scheduled with
    ``loop.call_later`` so the actor keeps handling messages between polls.
    """

    def __init__(
        self,
        *,
        workflow_id: str,
        workflow_name: str,
        call: CallDefinition,
        key: CallKey,
        inputs: Dict[str, Any],
        backend: BaseBackend,
        store: WorkflowStore,
        supervisor: Actor,
        poll_interval: float,
        max_poll_failures: int,
        max_retries: int,
    ) -> None:
        super().__init__(name=f"call:{key.tag}")
        self.workflow_id = workflow_id
        self.workflow_name = workflow_name
        self.call = call
        self.key = key
        self.inputs = inputs
        self.status = CallStatus.NOT_STARTED
        self._backend = backend
        self._store = store
        self._supervisor = supervisor
        self._poll_interval = poll_interval
        self._max_poll_failures = max_poll_failures
        self._max_retries = max_retries
        self._handle: Optional[JobHandle] = None
        self._poll_failures = 0
        self._timer: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    async def receive(self, message: Any) -> None:
        if isinstance(message, StartCall):
            await self._start()
        elif isinstance(message, PollJob):
            await self._poll()
        elif isinstance(message, CancelCall):
            await self._cancel()
        else:
            logger.warning(f"{self.name} ignoring unexpected message {message!r}")

    async def on_failure(self, exc: Exception) -> None:
        if self.status.is_terminal:
            return
        try:
            await self._fail(CallExecutionError(f"Unexpected error: {exc}"))
        except Exception:
            logger.exception(f"{self.name} could not record its failure")
            self.status = CallStatus.FAILED
            self._supervisor.tell(
                CallFailed(self.key, CallExecutionError(f"Unexpected error: {exc}"))
            )
            self.stop()

    async def on_stop(self) -> None:
        self._cancel_timer()

    # ------------------------------------------------------------------
    @property
    def streams(self) -> Optional[StdoutStderr]:
        if self._handle is None:
            return None
        return StdoutStderr(stdout=self._handle.stdout, stderr=self._handle.stderr)

    async def _transition(self, status: CallStatus, **fields: Any) -> None:
        self.status = transition_call(self.status, status)
        streams = self.streams
        record = CallRecord(
            workflow_id=self.workflow_id,
            call_fqn=self.key.fqn,
            index=self.key.index,
            attempt=self.key.attempt,
            status=status,
            job_id=self._handle.job_id if self._handle else None,
            inputs=self.inputs,
            stdout=streams.stdout if streams else None,
            stderr=streams.stderr if streams else None,
            **fields,
        )
        await self._store.upsert_call_status(record)
        logger.info(f"{self.key} is {status.value}")

    def _schedule_poll(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self.tell, PollJob())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ------------------------------------------------------------------
    async def _start(self) -> None:
        if self.status is not CallStatus.NOT_STARTED:
            return
        await self._transition(CallStatus.STARTING)
        self._supervisor.tell(CallStarting(self.key))

        job = BackendJob(
            workflow_id=self.workflow_id,
            workflow_name=self.workflow_name,
            key=self.key,
            call_name=self.call.name,
            task_name=self.call.task.name,
            command=render_command(self.call.task.command, self.inputs),
            inputs=self.inputs,
            runtime=self.call.task.runtime,
        )
        try:
            self._handle = await self._backend.submit(job)
        except Exception as exc:  # any backend failure at submit time
            await self._fail(SubmissionError(f"Could not submit {self.key}: {exc}"))
            return

        await self._store.upsert_key_value(
            KeyValueScope.for_call(self.workflow_id, self.key), JOB_ID_KEY, self._handle.job_id
        )
        await self._transition(CallStatus.RUNNING)
        self._supervisor.tell(CallRunning(self.key, self._handle.job_id))
        self._schedule_poll(self._poll_interval)

    async def _poll(self) -> None:
        self._timer = None
        if self.status is not CallStatus.RUNNING or self._handle is None:
            return
        try:
            result = await self._backend.poll(self._handle)
        except (BackendTransportError, OSError) as exc:
            self._poll_failures += 1
            if self._poll_failures > self._max_poll_failures:
                await self._fail(
                    BackendUnavailableError(
                        f"Polling {self._handle.job_id} failed {self._poll_failures} times: {exc}"
                    )
                )
                return
            delay = poll_delay(self._poll_interval, self._poll_failures)
            logger.warning(
                f"{self.key} poll failed ({self._poll_failures}/{self._max_poll_failures}), "
                f"retrying in {delay:.2f}s: {exc}"
            )
            self._schedule_poll(delay)
            return

        self._poll_failures = 0
        if result.state is JobState.RUNNING:
            self._schedule_poll(self._poll_interval)
        elif result.state is JobState.FAILED:
            await self._fail(
                NonZeroExitError(
                    result.return_code,
                    f"Job {self._handle.job_id} failed on backend {self._handle.backend}"
                    + ("" if result.return_code is None else f" with return code {result.return_code}"),
                )
            )
        else:
            await self._complete(result)

    async def _complete(self, result: PollResult) -> None:
        return_code = result.return_code
        if not self.call.task.runtime.accepts_return_code(return_code):
            await self._fail(NonZeroExitError(return_code), return_code=return_code)
            return
        try:
            outputs = self._evaluate_outputs(result)
        except OutputEvaluationError as exc:
            await self._fail(exc, return_code=return_code)
            return

        await self._transition(CallStatus.DONE, return_code=return_code, outputs=outputs)
        self._supervisor.tell(CallSucceeded(self.key, outputs, return_code, self.streams))
        self.stop()

    def _evaluate_outputs(self, result: PollResult) -> Dict[str, Any]:
        assert self._handle is not None
        stdout = Path(result.stdout or self._handle.stdout)
        stderr = Path(result.stderr or self._handle.stderr)
        return {
            name: evaluate_output(
                expression,
                call_root=Path(self._handle.call_root),
                stdout=stdout,
                stderr=stderr,
                inputs=self.inputs,
            )
            for name, expression in self.call.task.outputs.items()
        }

    async def _fail(self, error: CallExecutionError, **fields: Any) -> None:
        self._cancel_timer()
        retry = error.retryable and self.key.attempt - 1 < self._max_retries
        if isinstance(error, NonZeroExitError):
            fields.setdefault("return_code", error.return_code)
        await self._transition(
            CallStatus.FAILED, error_kind=error.kind, error_message=error.message, **fields
        )
        logger.warning(
            f"{self.key} failed with {error.kind}: {error.message}"
            + (" (will retry)" if retry else "")
        )
        self._supervisor.tell(CallFailed(self.key, error, retry, self.streams))
        self.stop()

    async def _cancel(self) -> None:
        if self.status.is_terminal:
            return
        self._cancel_timer()
        if self._handle is not None:
            try:
                await self._backend.kill(self._handle)
            except Exception as exc:  # kill is best effort
                logger.warning(f"Could not kill job {self._handle.job_id} of {self.key}: {exc}")
        await self._transition(CallStatus.ABORTED)
        self._supervisor.tell(CallAborted(self.key))
        self.stop()
