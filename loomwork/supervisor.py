"""Per-workflow supervisor: scatter expansion, dispatch, retries and abort."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .actor import Actor
from .backends.base import BaseBackend
from .call_actor import CallExecutionActor
from .config import EngineConfig
from .contracts import (
    CallKey,
    CallStatus,
    FailureMode,
    FailureReason,
    StdoutStderr,
    WorkflowDescriptor,
    WorkflowState,
    transition_workflow,
)
from .errors import CallExecutionError, InputEvaluationError, OutputLookupError
from .expressions import evaluate
from .messages import (
    AbortWorkflow,
    CallAborted,
    CallFailed,
    CallRunning,
    CallStarting,
    CallSucceeded,
    CancelCall,
    StartCall,
    StartWorkflow,
)
from .persistence.models import CallRecord, latest_attempts
from .persistence.store import WorkflowStore

logger = logging.getLogger(__name__)

Instance = Tuple[str, Optional[int]]


@dataclass
class CallEntry:
    """The supervisor's view of one call instance (latest attempt)."""

    fqn: str
    index: Optional[int] = None
    attempt: int = 1
    status: CallStatus = CallStatus.NOT_STARTED
    inputs: Optional[Dict[str, Any]] = None
    outputs: Optional[Dict[str, Any]] = None
    streams: Optional[StdoutStderr] = None

    @property
    def key(self) -> CallKey:
        return CallKey(fqn=self.fqn, index=self.index, attempt=self.attempt)


class WorkflowExecutionSupervisor(Actor):
    """Runs one workflow to a terminal state.

    The supervisor is the single writer of the workflow state. It expands
    scatters once their collection is known, starts a call actor for every
    call instance whose upstream calls are Done, and decides retries,
    fail-fast cancellation and the final outcome.
    """

    def __init__(
        self,
        descriptor: WorkflowDescriptor,
        backend: BaseBackend,
        store: WorkflowStore,
        engine: Optional[EngineConfig] = None,
        restored_calls: Optional[Sequence[CallRecord]] = None,
        on_terminal: Optional[Callable[["WorkflowExecutionSupervisor"], None]] = None,
    ) -> None:
        super().__init__(name=f"workflow:{descriptor.id}")
        self.descriptor = descriptor
        self.graph = descriptor.graph
        self._backend = backend
        self._store = store
        self._engine = engine or EngineConfig()
        self._on_terminal = on_terminal
        self._restored = latest_attempts(restored_calls or [])

        options = descriptor.options
        self.failure_mode = options.failure_mode or self._engine.failure_mode
        self.max_retries = (
            options.max_retries if options.max_retries is not None else self._engine.max_retries
        )

        self.state = WorkflowState.SUBMITTED
        self.failures: List[FailureReason] = []
        self._outputs: Optional[Dict[str, Any]] = None
        self._entries: Dict[Instance, CallEntry] = {}
        self._scatter_items: Dict[str, List[Any]] = {}
        self._failed_scatters: Set[str] = set()
        self._blocked: Set[str] = set()
        self._live: Dict[CallKey, CallExecutionActor] = {}
        self._failing = False
        self._terminated = asyncio.Event()

        for fqn, call in self.graph.calls.items():
            if call.scatter is None:
                self._add_entry(fqn, None)

    # ------------------------------------------------------------------
    # Queries
    @property
    def workflow_id(self) -> str:
        return self.descriptor.id

    @property
    def outputs(self) -> Optional[Dict[str, Any]]:
        """Workflow outputs; only set once the workflow Succeeded."""
        return None if self._outputs is None else dict(self._outputs)

    def entries(self) -> List[CallEntry]:
        return sorted(
            self._entries.values(), key=lambda e: (e.fqn, -1 if e.index is None else e.index)
        )

    def live_calls(self) -> List[CallKey]:
        return list(self._live)

    async def wait(self) -> WorkflowState:
        """Block until the workflow reached a terminal state."""
        await self._terminated.wait()
        return self.state

    # ------------------------------------------------------------------
    # Message handling
    async def receive(self, message: Any) -> None:
        if isinstance(message, StartWorkflow):
            await self._start()
        elif isinstance(message, AbortWorkflow):
            try:
                await self._abort()
            finally:
                ack = message.acknowledged
                if ack is not None and not ack.done():
                    ack.set_result(self.state)
        elif isinstance(message, (CallStarting, CallRunning)):
            self._on_call_progress(message)
        elif isinstance(message, CallSucceeded):
            await self._on_call_succeeded(message)
        elif isinstance(message, CallFailed):
            await self._on_call_failed(message)
        elif isinstance(message, CallAborted):
            await self._on_call_aborted(message)
        else:
            logger.warning(f"{self.name} ignoring unexpected message {message!r}")

    async def on_failure(self, exc: Exception) -> None:
        """Fail only this workflow when handling a message raised."""
        if self.state.is_terminal:
            return
        self.failures.append(FailureReason(kind="SupervisorError", message=str(exc)))
        self._failing = True
        self._cancel_live()
        if self._live:
            return
        try:
            await self._finish(WorkflowState.FAILED)
        except Exception:
            logger.exception(f"{self.name} could not persist its failure")
            self.state = WorkflowState.FAILED
            self._terminate()

    async def _start(self) -> None:
        if self.state is not WorkflowState.SUBMITTED:
            return
        await self._set_state(WorkflowState.RUNNING)
        await self._schedule()

    async def _abort(self) -> None:
        if self.state.is_terminal or self.state is WorkflowState.ABORTING:
            return
        if self.state is WorkflowState.SUBMITTED:
            await self._finish(WorkflowState.ABORTED)
            return
        await self._set_state(WorkflowState.ABORTING)
        self._cancel_live()
        await self._schedule()

    def _entry_for(self, key: CallKey) -> Optional[CallEntry]:
        entry = self._entries.get(key.instance)
        if entry is None or entry.attempt != key.attempt:
            return None
        return entry

    def _on_call_progress(self, message: Any) -> None:
        entry = self._entry_for(message.key)
        if entry is None:
            return
        if isinstance(message, CallStarting):
            entry.status = CallStatus.STARTING
        else:
            entry.status = CallStatus.RUNNING

    async def _on_call_succeeded(self, message: CallSucceeded) -> None:
        self._live.pop(message.key, None)
        entry = self._entry_for(message.key)
        if entry is not None:
            entry.status = CallStatus.DONE
            entry.outputs = dict(message.outputs)
            entry.streams = message.streams
        await self._schedule()

    async def _on_call_failed(self, message: CallFailed) -> None:
        self._live.pop(message.key, None)
        entry = self._entry_for(message.key)
        if entry is None:
            await self._schedule()
            return
        entry.status = CallStatus.FAILED
        entry.streams = message.streams

        if message.retry and self.state is WorkflowState.RUNNING and not self._failing:
            entry.attempt = message.key.next_attempt().attempt
            entry.status = CallStatus.NOT_STARTED
            logger.info(f"Retrying {message.key.fqn} as attempt {entry.attempt}")
            self._spawn(entry)
        else:
            self._record_failure(message.key, message.error)
        await self._schedule()

    async def _on_call_aborted(self, message: CallAborted) -> None:
        self._live.pop(message.key, None)
        entry = self._entry_for(message.key)
        if entry is not None:
            entry.status = CallStatus.ABORTED
        await self._schedule()

    # ------------------------------------------------------------------
    # Scheduling
    def _add_entry(self, fqn: str, index: Optional[int]) -> CallEntry:
        entry = CallEntry(fqn=fqn, index=index)
        record = self._restored.get((fqn, index))
        if record is not None:
            if record.status is CallStatus.DONE:
                entry.attempt = record.attempt
                entry.status = CallStatus.DONE
                entry.inputs = record.inputs
                entry.outputs = dict(record.outputs or {})
                if record.stdout and record.stderr:
                    entry.streams = StdoutStderr(stdout=record.stdout, stderr=record.stderr)
            else:
                entry.attempt = record.attempt + 1
        self._entries[(fqn, index)] = entry
        return entry

    def _instances(self, fqn: str) -> List[CallEntry]:
        found = [e for e in self._entries.values() if e.fqn == fqn]
        return sorted(found, key=lambda e: -1 if e.index is None else e.index)

    def _all_done(self, fqn: str) -> bool:
        scatter = self.graph.calls[fqn].scatter
        if scatter is not None and scatter not in self._scatter_items:
            return False
        return all(e.status is CallStatus.DONE for e in self._instances(fqn))

    def _upstream_done(self, entry: CallEntry) -> bool:
        for parent in self.graph.upstream(entry.fqn):
            if entry.index is not None and self.graph.same_scatter(entry.fqn, parent):
                sibling = self._entries.get((parent, entry.index))
                if sibling is None or sibling.status is not CallStatus.DONE:
                    return False
            elif not self._all_done(parent):
                return False
        return True

    def _lookup(self, fqn: Optional[str], index: Optional[int]) -> Callable[[str], Any]:
        def lookup(reference: str) -> Any:
            head, _, tail = reference.partition(".")
            if not tail:
                scatter = self.graph.calls[fqn].scatter if fqn else None
                if scatter is None or index is None:
                    raise KeyError(reference)
                return self._scatter_items[scatter][index]
            if head == "inputs":
                return self.graph.inputs[tail]
            parent = self.graph.call_fqn(head)
            if fqn is not None and index is not None and self.graph.same_scatter(fqn, parent):
                return self._entries[(parent, index)].outputs[tail]
            return self._gathered_output(parent, tail)

        return lookup

    def _gathered_output(self, fqn: str, name: str) -> Any:
        instances = self._instances(fqn)
        if self.graph.calls[fqn].scatter is None:
            return instances[0].outputs[name]
        return [entry.outputs[name] for entry in instances]

    def _expand_scatters(self) -> bool:
        expanded = False
        for name, scatter in self.graph.scatters.items():
            if name in self._scatter_items or name in self._failed_scatters:
                continue
            if not all(self._all_done(parent) for parent in scatter.upstream):
                continue
            try:
                items = evaluate(scatter.items, self._lookup(None, None))
            except (KeyError, IndexError, TypeError) as exc:
                self._fail_scatter(name, f"Cannot evaluate scatter {name}: {exc}")
                continue
            if not isinstance(items, list):
                self._fail_scatter(
                    name, f"Scatter {name} expects a list, got {type(items).__name__}"
                )
                continue
            self._scatter_items[name] = items
            for fqn in self.graph.scattered_calls(name):
                for index in range(len(items)):
                    self._add_entry(fqn, index)
            logger.info(f"Expanded scatter {name} over {len(items)} items")
            expanded = True
        return expanded

    def _fail_scatter(self, name: str, message: str) -> None:
        """Record the failure and block the scattered calls and everything below them."""
        self._failed_scatters.add(name)
        for fqn in self.graph.scattered_calls(name):
            self._blocked.add(fqn)
            self._blocked.update(self.graph.descendants(fqn))
        self._record_failure(None, InputEvaluationError(message))

    def _runnable(self) -> List[CallEntry]:
        return [
            entry
            for entry in self.entries()
            if entry.status is CallStatus.NOT_STARTED
            and entry.key not in self._live
            and entry.fqn not in self._blocked
            and self._upstream_done(entry)
        ]

    def _dispatch(self, entry: CallEntry) -> None:
        call = self.graph.calls[entry.fqn]
        try:
            entry.inputs = evaluate(call.inputs, self._lookup(entry.fqn, entry.index))
        except (KeyError, IndexError, TypeError) as exc:
            entry.status = CallStatus.FAILED
            self._record_failure(
                entry.key, InputEvaluationError(f"Cannot evaluate inputs of {entry.key}: {exc}")
            )
            return
        self._spawn(entry)

    def _spawn(self, entry: CallEntry) -> None:
        call = self.graph.calls[entry.fqn]
        runtime_retries = call.task.runtime.max_retries
        actor = CallExecutionActor(
            workflow_id=self.workflow_id,
            workflow_name=self.graph.name,
            call=call,
            key=entry.key,
            inputs=dict(entry.inputs or {}),
            backend=self._backend,
            store=self._store,
            supervisor=self,
            poll_interval=self._engine.poll_interval,
            max_poll_failures=self._engine.max_poll_failures,
            max_retries=runtime_retries if runtime_retries is not None else self.max_retries,
        )
        self._live[entry.key] = actor
        actor.start()
        actor.tell(StartCall())

    def _record_failure(self, key: Optional[CallKey], error: CallExecutionError) -> None:
        self.failures.append(FailureReason.from_error(error, key))
        if self.failure_mode is FailureMode.FAIL_FAST and not self._failing:
            logger.warning(f"{self.name} failing fast after {error.kind} in {key or 'workflow'}")
            self._failing = True
            self._cancel_live()

    def _cancel_live(self) -> None:
        for actor in self._live.values():
            actor.tell(CancelCall())

    async def _schedule(self) -> None:
        """Start runnable calls, or settle the workflow once nothing is live."""
        if self.state.is_terminal:
            return
        if self.state is WorkflowState.RUNNING and not self._failing:
            while self._expand_scatters():
                pass
            started: List[str] = []
            for entry in self._runnable():
                if self._failing:
                    break
                self._dispatch(entry)
                if entry.key in self._live:
                    started.append(str(entry.key))
            if started:
                logger.info(f"{self.name} starting calls: {', '.join(started)}")

        if self._live:
            return
        if self.state is WorkflowState.ABORTING:
            await self._finish(WorkflowState.ABORTED)
        elif self.failures:
            await self._finish(WorkflowState.FAILED)
        elif self._complete():
            try:
                outputs = self._collect_outputs()
            except OutputLookupError as exc:
                self.failures.append(FailureReason.from_error(exc))
                await self._finish(WorkflowState.FAILED)
                return
            await self._store.set_workflow_outputs(self.workflow_id, outputs)
            self._outputs = outputs
            await self._finish(WorkflowState.SUCCEEDED)
        elif not self._runnable():
            self.failures.append(
                FailureReason(kind="SupervisorError", message="No call can make progress")
            )
            await self._finish(WorkflowState.FAILED)

    def _complete(self) -> bool:
        if any(name not in self._scatter_items for name in self.graph.scatters):
            return False
        return all(entry.status is CallStatus.DONE for entry in self._entries.values())

    def _collect_outputs(self) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {}
        for output_fqn in self.graph.declared_outputs():
            call_fqn, name = self.graph.split_output_fqn(output_fqn)
            instances = self._instances(call_fqn)
            for entry in instances:
                if name not in (entry.outputs or {}):
                    raise OutputLookupError(
                        f"Output {output_fqn} not found in the outputs of {entry.key}"
                    )
            if self.graph.calls[call_fqn].scatter is None:
                outputs[output_fqn] = instances[0].outputs[name]
            else:
                outputs[output_fqn] = [entry.outputs[name] for entry in instances]
        return outputs

    # ------------------------------------------------------------------
    # State changes
    async def _set_state(self, state: WorkflowState) -> None:
        transition_workflow(self.state, state)
        failures = self.failures if state is WorkflowState.FAILED else None
        await self._store.update_workflow_state(self.workflow_id, state, failures)
        self.state = state
        logger.info(f"{self.name} is {state.value}")

    async def _finish(self, state: WorkflowState) -> None:
        await self._set_state(state)
        self._terminate()

    def _terminate(self) -> None:
        self._terminated.set()
        self.stop()
        if self._on_terminal is not None:
            self._on_terminal(self)

    def shutdown(self) -> None:
        """Stop this supervisor and its call actors without aborting jobs."""
        for actor in self._live.values():
            actor.stop()
        self.stop()

    async def join_all(self) -> None:
        await asyncio.gather(*(actor.join() for actor in list(self._live.values())))
        await self.join()
