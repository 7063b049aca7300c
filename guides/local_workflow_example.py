"""Run a small scattered workflow on the local bash backend."""

import asyncio
import json

from loomwork import LoomworkConfig, WorkflowManager, WorkflowSourceFiles
from loomwork.persistence import InMemoryWorkflowStore

WORKFLOW = """
name: greetings
inputs:
  names: null
tasks:
  greet:
    inputs: [who]
    command: "echo hello ${who}"
    outputs: {message: read_string(stdout)}
  count:
    inputs: [messages]
    command: "printf '%s\\n' ${messages} | wc -l"
    outputs: {words: read_int(stdout)}
scatters:
  each_name: {items: "${inputs.names}", variable: who}
calls:
  greet:
    inputs: {who: "${who}"}
    scatter: each_name
  count:
    inputs: {messages: "${greet.message}"}
outputs: ["greet.*", count.words]
"""


async def main():
    manager = WorkflowManager(store=InMemoryWorkflowStore(), config=LoomworkConfig())
    sources = WorkflowSourceFiles(
        workflow_source=WORKFLOW,
        inputs_json=json.dumps({"greetings.names": ["ada", "grace", "linus"]}),
    )

    workflow_id = await manager.submit_workflow(sources)
    print(f"🚀 Submitted {workflow_id}")

    state = await manager.wait_for_completion(workflow_id)
    print(f"✅ Finished: {state.value}")
    if state.value == "Succeeded":
        print(json.dumps(await manager.workflow_outputs(workflow_id), indent=2))
    else:
        for failure in await manager.workflow_failures(workflow_id):
            print(f"❌ {failure.call_key}: {failure.kind} {failure.message}")

    await manager.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
