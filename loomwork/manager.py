"""Entry point of the engine: submit, query and abort workflows."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .backends import get_backend
from .backends.base import BaseBackend
from .config import LoomworkConfig, load_config
from .contracts import (
    CallStatus,
    FailureReason,
    StdoutStderr,
    WorkflowDescriptor,
    WorkflowId,
    WorkflowOptions,
    WorkflowSourceFiles,
    WorkflowState,
    new_workflow_id,
)
from .errors import MalformedWorkflowError, NotFoundError, ParseError
from .messages import AbortWorkflow, StartWorkflow
from .parser import WorkflowParser, YamlWorkflowParser
from .persistence import get_store
from .persistence.models import CallRecord, WorkflowRecord, latest_attempts
from .persistence.store import WorkflowStore
from .supervisor import WorkflowExecutionSupervisor

logger = logging.getLogger(__name__)

RESUMABLE_STATES = (WorkflowState.SUBMITTED, WorkflowState.RUNNING, WorkflowState.ABORTING)


class WorkflowManager:
    """Registry of running workflows and the operations exposed to clients.

    The manager validates submissions, starts one supervisor per workflow and
    answers queries from the supervisor while it is registered, falling back
    to the store for workflows that finished and were evicted.
    """

    def __init__(
        self,
        store: Optional[WorkflowStore] = None,
        config: Optional[LoomworkConfig] = None,
        backends: Optional[Dict[str, BaseBackend]] = None,
        parser: Optional[WorkflowParser] = None,
    ) -> None:
        self.config = config or load_config()
        self.store = store or get_store(config=self.config)
        self._backends: Dict[str, BaseBackend] = dict(backends or {})
        self._parser = parser or YamlWorkflowParser()
        self._workflows: Dict[WorkflowId, WorkflowExecutionSupervisor] = {}
        self._evictions: Dict[WorkflowId, asyncio.TimerHandle] = {}

    # ------------------------------------------------------------------
    def _backend_for(self, options: WorkflowOptions) -> BaseBackend:
        name = (options.backend or self.config.backend.default).lower()
        if name not in self._backends:
            try:
                self._backends[name] = get_backend(name, self.config)
            except ValueError as exc:
                raise MalformedWorkflowError(str(exc)) from exc
        return self._backends[name]

    def _describe(self, workflow_id: WorkflowId, sources: WorkflowSourceFiles) -> WorkflowDescriptor:
        try:
            graph = self._parser.parse(sources.workflow_source, sources.inputs_json)
            options = WorkflowOptions.from_json(sources.options_json)
        except ParseError as exc:
            raise MalformedWorkflowError(str(exc)) from exc
        return WorkflowDescriptor(id=workflow_id, sources=sources, graph=graph, options=options)

    def _launch(
        self, descriptor: WorkflowDescriptor, restored: Optional[List[CallRecord]] = None
    ) -> WorkflowExecutionSupervisor:
        supervisor = WorkflowExecutionSupervisor(
            descriptor,
            backend=self._backend_for(descriptor.options),
            store=self.store,
            engine=self.config.engine,
            restored_calls=restored,
            on_terminal=self._on_terminal,
        )
        self._workflows[descriptor.id] = supervisor
        supervisor.start()
        supervisor.tell(StartWorkflow())
        return supervisor

    def _on_terminal(self, supervisor: WorkflowExecutionSupervisor) -> None:
        retention = self.config.engine.retention_seconds
        if retention is None:
            return
        workflow_id = WorkflowId(supervisor.workflow_id)
        loop = asyncio.get_running_loop()
        self._evictions[workflow_id] = loop.call_later(retention, self._evict, workflow_id)

    def _evict(self, workflow_id: WorkflowId) -> None:
        self._evictions.pop(workflow_id, None)
        if self._workflows.pop(workflow_id, None) is not None:
            logger.debug(f"Evicted workflow {workflow_id}")

    async def _record(self, workflow_id: str) -> WorkflowRecord:
        record = await self.store.get_workflow(workflow_id)
        if record is None:
            raise NotFoundError(f"Unknown workflow {workflow_id}")
        return record

    def _qualify(self, record: WorkflowRecord, call_fqn: str) -> str:
        return call_fqn if "." in call_fqn else f"{record.name}.{call_fqn}"

    # ------------------------------------------------------------------
    # Operations
    async def submit_workflow(self, sources: WorkflowSourceFiles) -> WorkflowId:
        """Validate ``sources``, persist the workflow and start running it.

        Raises:
            MalformedWorkflowError: If the sources cannot be parsed. Nothing
                is persisted in that case.
        """
        workflow_id = new_workflow_id()
        descriptor = self._describe(workflow_id, sources)
        self._backend_for(descriptor.options)
        await self.store.create_workflow(workflow_id, descriptor.name, sources)
        self._launch(descriptor)
        logger.info(f"Submitted workflow {descriptor.name} as {workflow_id}")
        return workflow_id

    async def workflow_status(self, workflow_id: str) -> Optional[WorkflowState]:
        """Return the current state, or ``None`` for an unknown id."""
        supervisor = self._workflows.get(WorkflowId(workflow_id))
        if supervisor is not None:
            return supervisor.state
        record = await self.store.get_workflow(workflow_id)
        return record.state if record else None

    async def workflow_outputs(self, workflow_id: str) -> Dict[str, Any]:
        """Return the outputs of a Succeeded workflow.

        Raises:
            NotFoundError: If the workflow is unknown or has not Succeeded.
        """
        supervisor = self._workflows.get(WorkflowId(workflow_id))
        if supervisor is not None:
            if supervisor.state is not WorkflowState.SUCCEEDED or supervisor.outputs is None:
                raise NotFoundError(
                    f"Workflow {workflow_id} is {supervisor.state.value}, outputs are not available"
                )
            return supervisor.outputs
        record = await self._record(workflow_id)
        if record.state is not WorkflowState.SUCCEEDED:
            raise NotFoundError(
                f"Workflow {workflow_id} is {record.state.value}, outputs are not available"
            )
        return dict(record.outputs or {})

    async def abort_workflow(self, workflow_id: str) -> None:
        """Request cancellation; a no-op for workflows already terminal.

        Returns once the supervisor handled the request, so the status is
        Aborting or already terminal.

        Raises:
            NotFoundError: If the workflow is unknown.
        """
        supervisor = self._workflows.get(WorkflowId(workflow_id))
        if supervisor is None:
            record = await self._record(workflow_id)
            logger.info(f"Workflow {workflow_id} is {record.state.value}, nothing to abort")
            return
        if supervisor.state.is_terminal:
            return
        logger.info(f"Aborting workflow {workflow_id}")
        acknowledged = asyncio.get_running_loop().create_future()
        supervisor.tell(AbortWorkflow(acknowledged=acknowledged))
        finished = asyncio.ensure_future(supervisor.wait())
        try:
            await asyncio.wait({acknowledged, finished}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            finished.cancel()

    async def workflow_failures(self, workflow_id: str) -> List[FailureReason]:
        supervisor = self._workflows.get(WorkflowId(workflow_id))
        if supervisor is not None:
            return list(supervisor.failures)
        record = await self._record(workflow_id)
        return list(record.failures)

    async def call_outputs(self, workflow_id: str, call_fqn: str) -> List[Dict[str, Any]]:
        """Outputs of every Done instance of a call, ordered by index."""
        record = await self._record(workflow_id)
        fqn = self._qualify(record, call_fqn)
        latest = [r for (name, _), r in latest_attempts(record.calls).items() if name == fqn]
        if not latest:
            raise NotFoundError(f"No call {fqn} in workflow {workflow_id}")
        latest.sort(key=lambda r: -1 if r.index is None else r.index)
        return [dict(r.outputs or {}) for r in latest if r.status is CallStatus.DONE]

    async def call_stdout_stderr(self, workflow_id: str, call_fqn: str) -> List[StdoutStderr]:
        """Standard stream paths of the latest attempt of every instance of a call."""
        record = await self._record(workflow_id)
        fqn = self._qualify(record, call_fqn)
        streams = self._streams(record.calls).get(fqn)
        if streams is None:
            raise NotFoundError(f"No call {fqn} in workflow {workflow_id}")
        return streams

    async def workflow_stdout_stderr(self, workflow_id: str) -> Dict[str, List[StdoutStderr]]:
        record = await self._record(workflow_id)
        return self._streams(record.calls)

    def _streams(self, calls: List[CallRecord]) -> Dict[str, List[StdoutStderr]]:
        by_call: Dict[str, List[CallRecord]] = {}
        for (fqn, _), record in latest_attempts(calls).items():
            by_call.setdefault(fqn, []).append(record)
        result: Dict[str, List[StdoutStderr]] = {}
        for fqn, records in sorted(by_call.items()):
            records.sort(key=lambda r: -1 if r.index is None else r.index)
            result[fqn] = [
                StdoutStderr(stdout=r.stdout, stderr=r.stderr)
                for r in records
                if r.stdout is not None and r.stderr is not None
            ]
        return result

    async def wait_for_completion(
        self, workflow_id: str, timeout: Optional[float] = None
    ) -> WorkflowState:
        """Wait until the workflow is terminal and return its final state."""
        supervisor = self._workflows.get(WorkflowId(workflow_id))
        if supervisor is None:
            return (await self._record(workflow_id)).state
        return await asyncio.wait_for(supervisor.wait(), timeout)

    async def list_workflows(
        self, states: Optional[List[WorkflowState]] = None
    ) -> List[WorkflowRecord]:
        return await self.store.list_workflows(states)

    async def restore(self) -> List[WorkflowId]:
        """Resume every non-terminal workflow found in the store.

        Calls that were Done keep their outputs; any other call instance is
        run again as a new attempt. Workflows that were Aborting are marked
        Aborted.
        """
        resumed: List[WorkflowId] = []
        for record in await self.store.list_workflows(RESUMABLE_STATES):
            workflow_id = WorkflowId(record.workflow_id)
            if workflow_id in self._workflows:
                continue
            if record.state is WorkflowState.ABORTING:
                await self.store.update_workflow_state(workflow_id, WorkflowState.ABORTED)
                logger.info(f"Workflow {workflow_id} was aborting, marked Aborted")
                continue
            try:
                descriptor = self._describe(workflow_id, record.sources)
                self._backend_for(descriptor.options)
            except MalformedWorkflowError as exc:
                logger.error(f"Cannot restore workflow {workflow_id}: {exc}")
                await self.store.update_workflow_state(
                    workflow_id, WorkflowState.FAILED, [FailureReason.from_error(exc)]
                )
                continue
            calls = await self.store.get_call_statuses(workflow_id)
            self._launch(descriptor, restored=calls)
            resumed.append(workflow_id)
            logger.info(f"Restored workflow {record.name} ({workflow_id})")
        return resumed

    async def shutdown(self) -> None:
        """Stop supervisors, release backends and close the store."""
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        supervisors = list(self._workflows.values())
        for supervisor in supervisors:
            supervisor.shutdown()
        for supervisor in supervisors:
            await supervisor.join_all()
        self._workflows.clear()
        for backend in self._backends.values():
            await backend.disconnect()
        await self.store.close()
