"""Parsed workflow definitions and the call dependency graph."""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, List, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


class RuntimeAttributes(BaseModel):
    """Resource and environment requirements consumed by backends."""

    model_config = ConfigDict(extra="allow", frozen=True)

    docker: Optional[str] = None
    cpu: int = 1
    memory: Optional[str] = None
    continue_on_return_code: Union[bool, List[int]] = Field(default_factory=lambda: [0])
    max_retries: Optional[int] = Field(default=None, ge=0)

    def accepts_return_code(self, return_code: Optional[int]) -> bool:
        """Return ``True`` when ``return_code`` counts as a successful run."""
        if return_code is None:
            return False
        accepted = self.continue_on_return_code
        if isinstance(accepted, bool):
            return accepted or return_code == 0
        return return_code in accepted


class TaskDefinition(BaseModel):
    """A command template with declared inputs and outputs."""

    model_config = ConfigDict(frozen=True)

    name: str
    command: str
    inputs: List[str] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    runtime: RuntimeAttributes = RuntimeAttributes()


class ScatterDefinition(BaseModel):
    """Fans the calls placed in it out over the elements of ``items``."""

    model_config = ConfigDict(frozen=True)

    name: str
    items: Any
    variable: str
    upstream: FrozenSet[str] = frozenset()


class CallDefinition(BaseModel):
    """One invocation of a task inside the workflow."""

    model_config = ConfigDict(frozen=True)

    fqn: str
    name: str
    task: TaskDefinition
    inputs: Dict[str, Any] = Field(default_factory=dict)
    scatter: Optional[str] = None
    upstream: FrozenSet[str] = frozenset()


class DependencyGraph(BaseModel):
    """Read-only DAG over call FQNs.

    An edge ``A -> B`` exists when an input of ``B`` (or the collection of
    the scatter ``B`` belongs to) references an output of ``A``.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    calls: Dict[str, CallDefinition] = Field(default_factory=dict)
    scatters: Dict[str, ScatterDefinition] = Field(default_factory=dict)
    outputs: List[str] = Field(default_factory=list)

    _downstream: Dict[str, Set[str]] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        downstream: Dict[str, Set[str]] = {fqn: set() for fqn in self.calls}
        for call in self.calls.values():
            for parent in call.upstream:
                downstream.setdefault(parent, set()).add(call.fqn)
        self._downstream = downstream

    def call_fqn(self, name: str) -> str:
        return f"{self.name}.{name}"

    def upstream(self, fqn: str) -> FrozenSet[str]:
        return self.calls[fqn].upstream

    def downstream(self, fqn: str) -> Set[str]:
        return set(self._downstream.get(fqn, ()))

    def descendants(self, fqn: str) -> Set[str]:
        """Return every call transitively depending on ``fqn``."""
        seen: Set[str] = set()
        stack = list(self.downstream(fqn))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.downstream(current))
        return seen

    def same_scatter(self, first: str, second: str) -> bool:
        scatter = self.calls[first].scatter
        return scatter is not None and scatter == self.calls[second].scatter

    def scattered_calls(self, scatter: str) -> List[str]:
        return [fqn for fqn, call in self.calls.items() if call.scatter == scatter]

    def topological_order(self) -> List[str]:
        """Return call FQNs ordered so that parents precede children.

        Raises:
            ValueError: If the graph contains a cycle.
        """
        remaining = {fqn: set(call.upstream) for fqn, call in self.calls.items()}
        order: List[str] = []
        ready = sorted(fqn for fqn, parents in remaining.items() if not parents)
        while ready:
            fqn = ready.pop(0)
            order.append(fqn)
            del remaining[fqn]
            for child in sorted(self.downstream(fqn)):
                parents = remaining.get(child)
                if parents is None:
                    continue
                parents.discard(fqn)
                if not parents:
                    ready.append(child)
        if remaining:
            raise ValueError(f"Cycle detected among calls: {', '.join(sorted(remaining))}")
        return order

    def declared_outputs(self) -> List[str]:
        """Expand workflow output patterns into output FQNs.

        ``call.*`` expands to every output declared by the call's task. With
        no declared outputs every call output is a workflow output.
        """
        patterns = self.outputs or [f"{fqn}.*" for fqn in self.calls]
        expanded: List[str] = []
        for pattern in patterns:
            if pattern.endswith(".*"):
                call = self.calls[pattern[:-2]]
                expanded.extend(f"{call.fqn}.{name}" for name in call.task.outputs)
            else:
                expanded.append(pattern)
        return expanded

    def split_output_fqn(self, output_fqn: str) -> tuple[str, str]:
        """Split ``wf.call.output`` into ``("wf.call", "output")``."""
        call_fqn, _, output = output_fqn.rpartition(".")
        return call_fqn, output
