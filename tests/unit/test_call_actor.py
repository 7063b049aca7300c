import asyncio

import pytest

from loomwork.actor import Actor
from loomwork.backends import InMemoryBackend, ScriptedJob
from loomwork.call_actor import CallExecutionActor
from loomwork.constants import JOB_ID_KEY
from loomwork.contracts import CallKey, CallStatus
from loomwork.graph import CallDefinition, RuntimeAttributes, TaskDefinition
from loomwork.messages import (
    CallAborted,
    CallFailed,
    CallRunning,
    CallStarting,
    CallSucceeded,
    CancelCall,
    StartCall,
)
from loomwork.persistence import InMemoryWorkflowStore, KeyValueScope


class Recorder(Actor):
    """Stands in for the supervisor and collects what call actors report."""

    def __init__(self) -> None:
        super().__init__("recorder")
        self.messages: asyncio.Queue = asyncio.Queue()

    def tell(self, message) -> None:
        self.messages.put_nowait(message)

    async def receive(self, message) -> None:
        pass

    async def next(self, kind, timeout: float = 5.0):
        while True:
            message = await asyncio.wait_for(self.messages.get(), timeout)
            if isinstance(message, kind):
                return message


def _call(outputs=None, runtime=None) -> CallDefinition:
    task = TaskDefinition(
        name="count",
        command="wc -l ${in_file}",
        inputs=["in_file"],
        outputs=outputs if outputs is not None else {"n": "read_int(stdout)"},
        runtime=runtime or RuntimeAttributes(),
    )
    return CallDefinition(fqn="wf.count", name="count", task=task, inputs={"in_file": "/x"})


def _actor(backend, store, supervisor, call=None, attempt=1, **overrides):
    settings = dict(poll_interval=0.01, max_poll_failures=3, max_retries=0)
    settings.update(overrides)
    return CallExecutionActor(
        workflow_id="wf-1",
        workflow_name="wf",
        call=call or _call(),
        key=CallKey(fqn="wf.count", attempt=attempt),
        inputs={"in_file": "/x"},
        backend=backend,
        store=store,
        supervisor=supervisor,
        **settings,
    )


async def _run(actor) -> None:
    actor.start()
    actor.tell(StartCall())


@pytest.mark.asyncio
async def test_successful_call_reports_outputs(tmp_path):
    backend = InMemoryBackend(root=tmp_path, behaviours={"count": ScriptedJob(stdout="5\n", polls=2)})
    store = InMemoryWorkflowStore()
    supervisor = Recorder()
    actor = _actor(backend, store, supervisor)
    await _run(actor)

    starting = await supervisor.next(CallStarting)
    running = await supervisor.next(CallRunning)
    done = await supervisor.next(CallSucceeded)
    await actor.join()

    assert starting.key == running.key == done.key
    assert done.outputs == {"n": 5}
    assert done.return_code == 0
    assert done.streams.stdout.endswith("stdout")
    assert backend.submitted[0].command == "wc -l /x"

    (record,) = await store.get_call_statuses("wf-1")
    assert record.status is CallStatus.DONE
    assert record.outputs == {"n": 5}
    assert record.job_id == running.job_id
    scope = KeyValueScope.for_call("wf-1", done.key)
    assert await store.query_value(scope, JOB_ID_KEY) == running.job_id


@pytest.mark.asyncio
async def test_non_zero_exit_fails_call(tmp_path):
    backend = InMemoryBackend(root=tmp_path, behaviours={"count": ScriptedJob(return_code=1)})
    store = InMemoryWorkflowStore()
    supervisor = Recorder()
    await _run(_actor(backend, store, supervisor))

    failed = await supervisor.next(CallFailed)
    assert failed.error.kind == "NonZeroExitError"
    assert failed.error.return_code == 1
    assert failed.retry is False

    (record,) = await store.get_call_statuses("wf-1")
    assert record.status is CallStatus.FAILED
    assert record.return_code == 1
    assert record.error_kind == "NonZeroExitError"


@pytest.mark.asyncio
async def test_accepted_return_codes_succeed(tmp_path):
    backend = InMemoryBackend(root=tmp_path, behaviours={"count": ScriptedJob(return_code=1)})
    supervisor = Recorder()
    call = _call(outputs={}, runtime=RuntimeAttributes(continue_on_return_code=[0, 1]))
    await _run(_actor(backend, InMemoryWorkflowStore(), supervisor, call=call))

    done = await supervisor.next(CallSucceeded)
    assert done.return_code == 1


@pytest.mark.asyncio
async def test_backend_failure_is_reported_as_non_zero_exit(tmp_path):
    backend = InMemoryBackend(
        root=tmp_path, behaviours={"count": ScriptedJob(failed=True, return_code=137)}
    )
    supervisor = Recorder()
    await _run(_actor(backend, InMemoryWorkflowStore(), supervisor))

    failed = await supervisor.next(CallFailed)
    assert failed.error.kind == "NonZeroExitError"
    assert failed.error.return_code == 137


@pytest.mark.asyncio
async def test_retry_is_requested_until_budget_is_spent(tmp_path):
    backend = InMemoryBackend(root=tmp_path, behaviours={"count": ScriptedJob(return_code=2)})
    supervisor = Recorder()

    await _run(_actor(backend, InMemoryWorkflowStore(), supervisor, max_retries=1))
    assert (await supervisor.next(CallFailed)).retry is True

    await _run(_actor(backend, InMemoryWorkflowStore(), supervisor, attempt=2, max_retries=1))
    assert (await supervisor.next(CallFailed)).retry is False


@pytest.mark.asyncio
async def test_output_evaluation_errors_are_not_retried(tmp_path):
    backend = InMemoryBackend(root=tmp_path, behaviours={"count": ScriptedJob(stdout="many")})
    supervisor = Recorder()
    await _run(_actor(backend, InMemoryWorkflowStore(), supervisor, max_retries=3))

    failed = await supervisor.next(CallFailed)
    assert failed.error.kind == "OutputEvaluationError"
    assert failed.retry is False


@pytest.mark.asyncio
async def test_submission_failure(tmp_path):
    backend = InMemoryBackend(root=tmp_path)
    backend.fail_submissions("count")
    store = InMemoryWorkflowStore()
    supervisor = Recorder()
    await _run(_actor(backend, store, supervisor, max_retries=1))

    failed = await supervisor.next(CallFailed)
    assert failed.error.kind == "SubmissionError"
    assert failed.retry is True
    (record,) = await store.get_call_statuses("wf-1")
    assert record.status is CallStatus.FAILED
    assert record.job_id is None


@pytest.mark.asyncio
async def test_transient_poll_errors_are_tolerated(tmp_path):
    backend = InMemoryBackend(root=tmp_path, behaviours={"count": ScriptedJob(stdout="1")})
    backend.fail_polls("count", times=2)
    supervisor = Recorder()
    await _run(_actor(backend, InMemoryWorkflowStore(), supervisor, max_poll_failures=2))

    done = await supervisor.next(CallSucceeded)
    assert done.outputs == {"n": 1}


@pytest.mark.asyncio
async def test_persistent_poll_errors_make_backend_unavailable(tmp_path):
    backend = InMemoryBackend(root=tmp_path)
    backend.fail_polls("count", times=10)
    supervisor = Recorder()
    await _run(_actor(backend, InMemoryWorkflowStore(), supervisor, max_poll_failures=1))

    failed = await supervisor.next(CallFailed)
    assert failed.error.kind == "BackendUnavailableError"


@pytest.mark.asyncio
async def test_cancel_kills_running_job(tmp_path):
    backend = InMemoryBackend(root=tmp_path, behaviours={"count": ScriptedJob(polls=10_000)})
    store = InMemoryWorkflowStore()
    supervisor = Recorder()
    actor = _actor(backend, store, supervisor)
    await _run(actor)

    await supervisor.next(CallRunning)
    actor.tell(CancelCall())
    aborted = await supervisor.next(CallAborted)
    await actor.join()

    assert aborted.key.fqn == "wf.count"
    assert backend.killed[0].call_name == "count"
    (record,) = await store.get_call_statuses("wf-1")
    assert record.status is CallStatus.ABORTED


@pytest.mark.asyncio
async def test_cancel_after_completion_is_ignored(tmp_path):
    backend = InMemoryBackend(root=tmp_path, behaviours={"count": ScriptedJob(stdout="2")})
    supervisor = Recorder()
    actor = _actor(backend, InMemoryWorkflowStore(), supervisor)
    await _run(actor)

    await supervisor.next(CallSucceeded)
    actor.tell(CancelCall())
    await actor.join()
    assert actor.status is CallStatus.DONE
    assert backend.killed == []
