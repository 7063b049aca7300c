"""Resuming workflows from a durable store after the engine went away."""

import asyncio

import pytest

from loomwork.backends import InMemoryBackend, ScriptedJob
from loomwork.config import BackendConfig, EngineConfig, LoomworkConfig
from loomwork.contracts import CallStatus, WorkflowSourceFiles, WorkflowState
from loomwork.manager import WorkflowManager
from loomwork.persistence import CallRecord, SQLiteWorkflowStore

DIAMOND = """
name: diamond
tasks:
  step:
    command: "run"
    outputs: {out: read_string(stdout)}
  join:
    inputs: [value]
    command: "use ${value}"
    outputs: {out: read_string(stdout)}
calls:
  a: {task: step}
  b: {task: step}
  c:
    task: join
    inputs: {value: "${a.out}"}
"""


def _manager(db_path, backend):
    config = LoomworkConfig(
        backend=BackendConfig(default="inmemory"),
        engine=EngineConfig(poll_interval=0.01),
    )
    return WorkflowManager(
        store=SQLiteWorkflowStore(db_path),
        config=config,
        backends={"inmemory": backend},
    )


async def _wait_for_call(store, workflow_id, fqn, status, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        for record in await store.get_call_statuses(workflow_id):
            if record.call_fqn == fqn and record.status is status:
                return record
        await asyncio.sleep(0.01)
    raise AssertionError(f"{fqn} never reached {status.value}")


@pytest.mark.asyncio
async def test_restart_resumes_from_completed_calls(tmp_path):
    db_path = tmp_path / "wf.db"
    first_backend = InMemoryBackend(root=tmp_path / "runs")
    first_backend.script("a", ScriptedJob(stdout="A"))
    first_backend.script("b", ScriptedJob(polls=10_000))
    first_backend.script("c", ScriptedJob(polls=10_000))
    first = _manager(db_path, first_backend)

    workflow_id = await first.submit_workflow(WorkflowSourceFiles(workflow_source=DIAMOND))
    await _wait_for_call(first.store, workflow_id, "diamond.c", CallStatus.RUNNING)
    await first.shutdown()

    second_backend = InMemoryBackend(root=tmp_path / "runs")
    second_backend.script("b", ScriptedJob(stdout="B"))
    second = _manager(db_path, second_backend)
    assert await second.workflow_status(workflow_id) is WorkflowState.RUNNING

    assert await second.restore() == [workflow_id]
    state = await second.wait_for_completion(workflow_id, timeout=10)

    assert state is WorkflowState.SUCCEEDED
    assert sorted((job.call_name, job.key.attempt) for job in second_backend.submitted) == [
        ("b", 2),
        ("c", 2),
    ]
    outputs = await second.workflow_outputs(workflow_id)
    assert outputs["diamond.a.out"] == "A"
    assert outputs["diamond.b.out"] == "B"
    assert outputs["diamond.c.out"] == "use A"

    attempts = [
        (r.call_fqn, r.attempt) for r in await second.store.get_call_statuses(workflow_id)
    ]
    assert attempts == [
        ("diamond.a", 1),
        ("diamond.b", 1),
        ("diamond.b", 2),
        ("diamond.c", 1),
        ("diamond.c", 2),
    ]
    assert await second.restore() == []
    await second.shutdown()


@pytest.mark.asyncio
async def test_restore_settles_aborting_and_unparseable_workflows(tmp_path):
    db_path = tmp_path / "wf.db"
    store = SQLiteWorkflowStore(db_path)
    await store.create_workflow("aborting", "diamond", WorkflowSourceFiles(workflow_source=DIAMOND))
    await store.update_workflow_state("aborting", WorkflowState.RUNNING)
    await store.update_workflow_state("aborting", WorkflowState.ABORTING)
    await store.create_workflow("broken", "broken", WorkflowSourceFiles(workflow_source="name: [x"))
    await store.create_workflow("done", "diamond", WorkflowSourceFiles(workflow_source=DIAMOND))
    await store.update_workflow_state("done", WorkflowState.SUCCEEDED)
    await store.close()

    manager = _manager(db_path, InMemoryBackend(root=tmp_path / "runs"))
    assert await manager.restore() == []

    assert await manager.workflow_status("aborting") is WorkflowState.ABORTED
    assert await manager.workflow_status("broken") is WorkflowState.FAILED
    assert await manager.workflow_status("done") is WorkflowState.SUCCEEDED
    (failure,) = await manager.workflow_failures("broken")
    assert failure.kind == "MalformedWorkflowError"


@pytest.mark.asyncio
async def test_restore_of_submitted_workflow_runs_everything(tmp_path):
    db_path = tmp_path / "wf.db"
    store = SQLiteWorkflowStore(db_path)
    await store.create_workflow("queued", "diamond", WorkflowSourceFiles(workflow_source=DIAMOND))
    await store.upsert_call_status(
        CallRecord(
            workflow_id="queued",
            call_fqn="diamond.a",
            status=CallStatus.FAILED,
            error_kind="SubmissionError",
        )
    )
    await store.close()

    backend = InMemoryBackend(root=tmp_path / "runs")
    manager = _manager(db_path, backend)
    assert await manager.restore() == ["queued"]
    assert await manager.wait_for_completion("queued", timeout=10) is WorkflowState.SUCCEEDED
    attempts = {job.call_name: job.key.attempt for job in backend.submitted}
    assert attempts == {"a": 2, "b": 1, "c": 1}
