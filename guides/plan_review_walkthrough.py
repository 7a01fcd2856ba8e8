"""Walk a workflow through plan review using the in-memory backends."""

import asyncio

from agentloop import (
    ActionHandler,
    AgentLoopConfig,
    Orchestrator,
    Poller,
    RemoteStatus,
    WorkflowStore,
)
from agentloop.remote import InMemoryRemoteJobClient
from agentloop.store import InMemoryKeyValueStore


async def main():
    """Launch, plan, revise once, accept and finish."""
    remote = InMemoryRemoteJobClient()
    orchestrator = Orchestrator(
        WorkflowStore(InMemoryKeyValueStore()),
        remote,
        config=AgentLoopConfig(enable_plan_review=True),
    )
    poller = Poller(orchestrator)
    actions = ActionHandler(orchestrator)

    wf = await orchestrator.launch_workflow(
        channel_id="town-square",
        user_id="alice",
        prompt="Add retry with backoff to the HTTP client",
        repository="acme/api",
    )
    print(f"🚀 Workflow {wf.workflow_id} launched, planner {wf.active_job_id}")

    # The remote planner finishes with a first plan
    remote.set_status(wf.active_job_id, RemoteStatus.FINISHED)
    remote.set_plan(wf.active_job_id, "### Summary\nWrap requests in a retry loop.")
    await poller.run_once()

    # Ask for a revision, then let the second planner finish
    outcome = await actions.request_revision(wf.workflow_id, "alice", "Cover 429 responses too.")
    print(f"🔁 Revision requested: {outcome.phase.value}")
    wf = await orchestrator.get_workflow(wf.workflow_id)
    remote.set_status(wf.active_job_id, RemoteStatus.FINISHED)
    remote.set_plan(wf.active_job_id, "### Summary\nRetry 429 and 5xx with backoff.")
    await poller.run_once()

    outcome = await actions.handle_decision(
        {"workflow_id": wf.workflow_id, "action": "accept", "phase": "plan_review", "user_id": "alice"}
    )
    print(f"✅ Plan accepted: {outcome.phase.value}")

    wf = await orchestrator.get_workflow(wf.workflow_id)
    remote.set_status(wf.active_job_id, RemoteStatus.FINISHED)
    await poller.run_once()

    wf = await orchestrator.get_workflow(wf.workflow_id)
    print(f"📋 Final phase: {wf.phase.value} after {wf.iteration_count} revision(s)")


if __name__ == "__main__":
    asyncio.run(main())
