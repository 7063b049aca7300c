"""YAML workflow parser producing a validated :class:`DependencyGraph`."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Set

import yaml
from pydantic import ValidationError

from .errors import ParseError
from .expressions import is_valid_output_expression, references
from .graph import (
    CallDefinition,
    DependencyGraph,
    RuntimeAttributes,
    ScatterDefinition,
    TaskDefinition,
)

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_]\w*$")


class WorkflowParser(Protocol):
    """Contract of the parser collaborator used by the workflow manager."""

    def parse(self, source: str, inputs_json: str) -> DependencyGraph:
        """Return the dependency graph or raise :class:`ParseError`."""


class YamlWorkflowParser:
    """Parse the YAML workflow format into a dependency graph."""

    def parse(self, source: str, inputs_json: str = "{}") -> DependencyGraph:
        return parse(source, inputs_json)


def _load_source(source: str) -> Dict[str, Any]:
    try:
        document = yaml.safe_load(source)
    except yaml.YAMLError as exc:
        raise ParseError(f"Workflow source is not valid YAML: {exc}") from exc
    if not isinstance(document, dict):
        raise ParseError("Workflow source must be a mapping")
    return document


def _load_inputs(inputs_json: str) -> Dict[str, Any]:
    try:
        raw = json.loads(inputs_json or "{}")
    except json.JSONDecodeError as exc:
        raise ParseError(f"Workflow inputs are not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ParseError("Workflow inputs must be a JSON object")
    return raw


def _require_identifier(kind: str, name: Any) -> str:
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise ParseError(f"Invalid {kind} name: {name!r}")
    return name


def _resolve_inputs(
    workflow: str, declared: Dict[str, Any], raw: Dict[str, Any]
) -> Dict[str, Any]:
    """Match raw inputs (``wf.name`` or ``name``) against declarations."""
    resolved: Dict[str, Any] = {}
    for key, value in raw.items():
        name = key[len(workflow) + 1 :] if key.startswith(f"{workflow}.") else key
        if name not in declared:
            raise ParseError(f"Unexpected workflow input: {key}")
        resolved[name] = value
    for name, default in declared.items():
        if name in resolved:
            continue
        if default is None:
            raise ParseError(f"Required workflow input '{workflow}.{name}' not specified")
        resolved[name] = default
    return resolved


def _parse_task(name: str, spec: Any) -> TaskDefinition:
    if not isinstance(spec, dict) or not isinstance(spec.get("command"), str):
        raise ParseError(f"Task '{name}' must declare a command")
    inputs = list(spec.get("inputs") or [])
    for input_name in inputs:
        _require_identifier(f"task '{name}' input", input_name)
    for ref in references(spec["command"]):
        if ref not in inputs:
            raise ParseError(f"Command of task '{name}' references undeclared input '{ref}'")
    outputs = dict(spec.get("outputs") or {})
    for output_name, expression in outputs.items():
        _require_identifier(f"task '{name}' output", output_name)
        if not is_valid_output_expression(expression):
            raise ParseError(f"Unsupported output expression for {name}.{output_name}: {expression}")
        for ref in references(expression):
            if ref not in inputs:
                raise ParseError(f"Output {name}.{output_name} references undeclared input '{ref}'")
    try:
        runtime = RuntimeAttributes(**(spec.get("runtime") or {}))
    except ValidationError as exc:
        raise ParseError(f"Invalid runtime attributes for task '{name}': {exc}") from exc
    return TaskDefinition(
        name=name,
        command=spec["command"],
        inputs=inputs,
        outputs=outputs,
        runtime=runtime,
    )


def _reference_upstream(
    ref: str,
    *,
    owner: str,
    workflow: str,
    declared_inputs: Dict[str, Any],
    call_tasks: Dict[str, TaskDefinition],
    scatter_variable: Optional[str],
) -> Optional[str]:
    """Validate one reference; return the upstream call FQN if it has one."""
    head, _, tail = ref.partition(".")
    if not tail:
        if ref == scatter_variable:
            return None
        raise ParseError(f"{owner} references unknown variable '{ref}'")
    if head == "inputs":
        if tail not in declared_inputs:
            raise ParseError(f"{owner} references unknown workflow input '{tail}'")
        return None
    task = call_tasks.get(head)
    if task is None:
        raise ParseError(f"{owner} references unknown call '{head}'")
    if tail not in task.outputs:
        raise ParseError(f"{owner} references unknown output '{head}.{tail}'")
    return f"{workflow}.{head}"


def parse(source: str, inputs_json: str = "{}") -> DependencyGraph:
    """Parse ``source`` and ``inputs_json`` into a validated dependency graph.

    Raises:
        ParseError: If the document is malformed, references something that
            does not exist, misses a required input or contains a cycle.
    """
    document = _load_source(source)
    workflow = _require_identifier("workflow", document.get("name"))

    declared_inputs = dict(document.get("inputs") or {})
    for name in declared_inputs:
        _require_identifier("workflow input", name)
    inputs = _resolve_inputs(workflow, declared_inputs, _load_inputs(inputs_json))

    tasks = {
        _require_identifier("task", name): _parse_task(name, spec)
        for name, spec in (document.get("tasks") or {}).items()
    }

    raw_calls: Dict[str, Any] = document.get("calls") or {}
    if not raw_calls:
        raise ParseError(f"Workflow '{workflow}' declares no calls")
    call_tasks: Dict[str, TaskDefinition] = {}
    for name, spec in raw_calls.items():
        _require_identifier("call", name)
        spec = spec or {}
        task_name = spec.get("task", name)
        if task_name not in tasks:
            raise ParseError(f"Call '{name}' uses unknown task '{task_name}'")
        call_tasks[name] = tasks[task_name]

    scatters: Dict[str, ScatterDefinition] = {}
    for name, spec in (document.get("scatters") or {}).items():
        _require_identifier("scatter", name)
        if not isinstance(spec, dict) or "items" not in spec:
            raise ParseError(f"Scatter '{name}' must declare items")
        variable = _require_identifier(f"scatter '{name}' variable", spec.get("variable"))
        if variable == "inputs" or variable in raw_calls:
            raise ParseError(f"Scatter variable '{variable}' shadows a call or 'inputs'")
        upstream: Set[str] = set()
        for ref in references(spec["items"]):
            parent = _reference_upstream(
                ref,
                owner=f"Scatter '{name}'",
                workflow=workflow,
                declared_inputs=declared_inputs,
                call_tasks=call_tasks,
                scatter_variable=None,
            )
            if parent:
                upstream.add(parent)
        scatters[name] = ScatterDefinition(
            name=name, items=spec["items"], variable=variable, upstream=frozenset(upstream)
        )

    calls: Dict[str, CallDefinition] = {}
    for name, spec in raw_calls.items():
        spec = spec or {}
        task = call_tasks[name]
        scatter_name = spec.get("scatter")
        if scatter_name is not None and scatter_name not in scatters:
            raise ParseError(f"Call '{name}' uses unknown scatter '{scatter_name}'")
        scatter = scatters.get(scatter_name) if scatter_name else None
        bindings = dict(spec.get("inputs") or {})
        for input_name in bindings:
            if input_name not in task.inputs:
                raise ParseError(f"Call '{name}' binds unknown input '{input_name}'")
        missing = [i for i in task.inputs if i not in bindings]
        if missing:
            raise ParseError(f"Call '{name}' does not bind inputs: {', '.join(missing)}")
        upstream = set(scatter.upstream) if scatter else set()
        for ref in references(bindings):
            parent = _reference_upstream(
                ref,
                owner=f"Call '{name}'",
                workflow=workflow,
                declared_inputs=declared_inputs,
                call_tasks=call_tasks,
                scatter_variable=scatter.variable if scatter else None,
            )
            if parent:
                upstream.add(parent)
        fqn = f"{workflow}.{name}"
        if fqn in upstream:
            raise ParseError(f"Call '{name}' depends on itself")
        calls[fqn] = CallDefinition(
            fqn=fqn,
            name=name,
            task=task,
            inputs=bindings,
            scatter=scatter_name,
            upstream=frozenset(upstream),
        )

    outputs: List[str] = []
    for pattern in document.get("outputs") or []:
        call_name, _, output = str(pattern).partition(".")
        if f"{workflow}.{call_name}" not in calls or not output:
            raise ParseError(f"Workflow output '{pattern}' does not name a call output")
        outputs.append(f"{workflow}.{pattern}")

    graph = DependencyGraph(
        name=workflow, inputs=inputs, calls=calls, scatters=scatters, outputs=outputs
    )
    try:
        graph.topological_order()
    except ValueError as exc:
        raise ParseError(str(exc)) from exc
    logger.debug(f"Parsed workflow {workflow} with {len(calls)} calls")
    return graph


__all__ = ["WorkflowParser", "YamlWorkflowParser", "parse"]
