import uuid

import pytest

from loomwork.contracts import CallKey, CallStatus, FailureReason, WorkflowSourceFiles, WorkflowState
from loomwork.errors import ConstraintViolationError
from loomwork.persistence import (
    CallRecord,
    InMemoryWorkflowStore,
    KeyValueEntry,
    KeyValueScope,
    SQLiteWorkflowStore,
    get_store,
    latest_attempts,
)

SOURCES = WorkflowSourceFiles(workflow_source="name: wf", inputs_json='{"wf.x": 1}')


@pytest.fixture(params=["inmemory", "sqlite"])
def store(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowStore(tmp_path / "wf.db")
    return InMemoryWorkflowStore()


@pytest.mark.asyncio
async def test_workflow_lifecycle(store):
    wf_id = str(uuid.uuid4())
    await store.create_workflow(wf_id, "wf", SOURCES)
    await store.update_workflow_state(wf_id, WorkflowState.RUNNING)
    await store.set_workflow_outputs(wf_id, {"wf.a.o": [1, 2]})
    failure = FailureReason(call_key="wf.a:NA:1", kind="NonZeroExitError", message="rc 1")
    await store.update_workflow_state(wf_id, WorkflowState.FAILED, [failure])

    wf = await store.get_workflow(wf_id)
    assert wf is not None
    assert wf.name == "wf"
    assert wf.state is WorkflowState.FAILED
    assert wf.sources == SOURCES
    assert wf.outputs == {"wf.a.o": [1, 2]}
    assert wf.failures == [failure]

    assert await store.get_workflow("missing") is None
    running = await store.list_workflows([WorkflowState.RUNNING])
    assert all(w.workflow_id != wf_id for w in running)
    assert any(w.workflow_id == wf_id for w in await store.list_workflows())
    await store.close()


@pytest.mark.asyncio
async def test_duplicate_workflow_is_rejected(store):
    await store.create_workflow("wf-1", "wf", SOURCES)
    with pytest.raises(ConstraintViolationError):
        await store.create_workflow("wf-1", "wf", SOURCES)


@pytest.mark.asyncio
async def test_call_status_upserts_keep_every_attempt(store):
    await store.create_workflow("wf-1", "wf", SOURCES)
    first = CallRecord(workflow_id="wf-1", call_fqn="wf.a", index=0, status=CallStatus.STARTING)
    await store.upsert_call_status(first)
    await store.upsert_call_status(
        first.model_copy(update={"status": CallStatus.FAILED, "error_kind": "NonZeroExitError"})
    )
    await store.upsert_call_status(
        CallRecord(
            workflow_id="wf-1",
            call_fqn="wf.a",
            index=0,
            attempt=2,
            status=CallStatus.DONE,
            outputs={"o": 1},
            stdout="/x/stdout",
            stderr="/x/stderr",
        )
    )
    await store.upsert_call_status(
        CallRecord(workflow_id="wf-1", call_fqn="wf.b", status=CallStatus.RUNNING, job_id="42")
    )

    calls = await store.get_call_statuses("wf-1")
    assert [(c.call_fqn, c.index, c.attempt) for c in calls] == [
        ("wf.a", 0, 1),
        ("wf.a", 0, 2),
        ("wf.b", None, 1),
    ]
    assert calls[0].status is CallStatus.FAILED
    assert calls[0].error_kind == "NonZeroExitError"
    assert calls[1].outputs == {"o": 1}
    assert calls[2].job_id == "42"

    latest = latest_attempts(calls)
    assert latest[("wf.a", 0)].key == CallKey(fqn="wf.a", index=0, attempt=2)

    wf = await store.get_workflow("wf-1")
    assert len(wf.calls) == 3


@pytest.mark.asyncio
async def test_key_value_upsert_and_query(store):
    scope = KeyValueScope.for_call("wf-1", CallKey(fqn="wf.a"))
    await store.upsert_key_value(scope, "job_id", "100")
    await store.upsert_key_value(scope, "job_id", "101")
    assert await store.query_value(scope, "job_id") == "101"
    assert await store.query_value(scope, "missing") is None
    other_attempt = KeyValueScope.for_call("wf-1", CallKey(fqn="wf.a", attempt=2))
    assert await store.query_value(other_attempt, "job_id") is None


@pytest.mark.asyncio
async def test_key_value_batch_is_atomic(store):
    scope = KeyValueScope.for_call("wf-1", CallKey(fqn="wf.a", index=3))
    entries = [
        KeyValueEntry(scope=scope, key="first", value="1"),
        KeyValueEntry(scope=scope, key="second", value=None),
    ]
    with pytest.raises(ConstraintViolationError):
        await store.upsert_key_values(entries)
    assert await store.query_value(scope, "first") is None


def test_get_store_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("LOOMWORK_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("LOOMWORK_CONFIG", str(tmp_path / "absent.yaml"))

    assert isinstance(get_store(), InMemoryWorkflowStore)
    assert isinstance(get_store(f"sqlite://{tmp_path / 'wf.db'}"), SQLiteWorkflowStore)
    with pytest.raises(ValueError):
        get_store("mysql://localhost/db")
