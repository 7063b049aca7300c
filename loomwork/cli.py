"""Command line interface for running and inspecting loomwork workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from .config import LoomworkConfig, load_config
from .contracts import WorkflowSourceFiles, WorkflowState
from .errors import MalformedWorkflowError, ParseError
from .manager import WorkflowManager
from .parser import parse
from .persistence import get_store

app = typer.Typer(help="CLI for loomwork workflows")

workflow_app = typer.Typer(help="Commands for inspecting persisted workflows")
app.add_typer(workflow_app, name="workflow")


@app.callback()
def main() -> None:
    """loomwork CLI entry point."""
    pass


def _configure(config_path: Optional[Path]) -> LoomworkConfig:
    config = load_config(str(config_path) if config_path else None)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return config


def _read(path: Optional[Path], default: str = "{}") -> str:
    return path.read_text() if path else default


async def _run(config: LoomworkConfig, sources: WorkflowSourceFiles) -> tuple:
    manager = WorkflowManager(config=config)
    try:
        workflow_id = await manager.submit_workflow(sources)
        state = await manager.wait_for_completion(workflow_id)
        if state is WorkflowState.SUCCEEDED:
            details = await manager.workflow_outputs(workflow_id)
        else:
            details = [f.model_dump() for f in await manager.workflow_failures(workflow_id)]
        return workflow_id, state, details
    finally:
        await manager.shutdown()


@app.command("run")
def run(
    workflow: Path,
    inputs: Optional[Path] = typer.Option(None, help="JSON file with workflow inputs"),
    options: Optional[Path] = typer.Option(None, help="JSON file with workflow options"),
    backend: Optional[str] = typer.Option(None, help="Backend to run calls on"),
    config: Optional[Path] = typer.Option(None, help="Path to loomwork.yaml"),
) -> None:
    """
    Run a workflow to completion and print its outputs.

    Example:
        loomwork run hello.yaml --inputs hello.inputs.json
        # Output: Workflow 7c9e...: Succeeded
        #         {"hello.greet.message": "hello world"}
    """
    settings = _configure(config)
    if backend:
        settings.backend.default = backend.lower()
    sources = WorkflowSourceFiles(
        workflow_source=workflow.read_text(),
        inputs_json=_read(inputs),
        options_json=_read(options),
    )
    try:
        workflow_id, state, details = asyncio.run(_run(settings, sources))
    except MalformedWorkflowError as exc:
        typer.secho(f"Invalid workflow: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Workflow {workflow_id}: {state.value}")
    typer.echo(json.dumps(details, indent=2, sort_keys=True))
    if state is not WorkflowState.SUCCEEDED:
        raise typer.Exit(code=1)


@app.command("validate")
def validate(
    workflow: Path,
    inputs: Optional[Path] = typer.Option(None, help="JSON file with workflow inputs"),
) -> None:
    """Parse a workflow and report its calls without running anything."""
    try:
        graph = parse(workflow.read_text(), _read(inputs))
    except ParseError as exc:
        typer.secho(f"Invalid workflow: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {graph.name} is valid ({len(graph.calls)} calls)")
    for fqn in graph.topological_order():
        call = graph.calls[fqn]
        scatter = f" [scatter {call.scatter}]" if call.scatter else ""
        typer.echo(f"- {fqn}{scatter}")


@workflow_app.command("list")
def workflow_list(
    config: Optional[Path] = typer.Option(None, help="Path to loomwork.yaml"),
) -> None:
    """
    List persisted workflows with their current state.

    Example:
        loomwork workflow list
        # Output: 7c9e...    hello    Succeeded
    """
    store = get_store(config=_configure(config))
    workflows = asyncio.run(store.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.workflow_id}\t{wf.name}\t{wf.state.value}")


@workflow_app.command("show")
def workflow_show(
    workflow_id: str,
    config: Optional[Path] = typer.Option(None, help="Path to loomwork.yaml"),
) -> None:
    """
    Show the state, failures and call history of one workflow.

    Example:
        loomwork workflow show 7c9e...
        # Output: Workflow 7c9e... (hello): Failed
        #         - hello.greet [attempt 1]: Failed (NonZeroExitError)
    """
    store = get_store(config=_configure(config))
    wf = asyncio.run(store.get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.workflow_id} ({wf.name}): {wf.state.value}")
    if wf.outputs:
        typer.echo(f"Outputs: {json.dumps(wf.outputs, sort_keys=True)}")
    for failure in wf.failures:
        typer.echo(f"Failure: {failure.kind} in {failure.call_key or 'workflow'}: {failure.message}")
    for call in wf.calls:
        shard = "" if call.index is None else f":{call.index}"
        error = f" ({call.error_kind})" if call.error_kind else ""
        typer.echo(f"- {call.call_fqn}{shard} [attempt {call.attempt}]: {call.status.value}{error}")
