"""Decision handling: exactly-once accept/reject under concurrency."""

import asyncio

import pytest

from agentloop.actions import ActionHandler, DecisionRequest
from agentloop.config import AgentLoopConfig
from agentloop.exceptions import DecisionValidationError, WorkflowNotFoundError
from agentloop.models import Phase, RemoteStatus
from agentloop.orchestrator import Orchestrator
from agentloop.poller import Poller
from agentloop.remote import InMemoryRemoteJobClient
from agentloop.store import InMemoryKeyValueStore, WorkflowStore


class YieldingStore(InMemoryKeyValueStore):
    """Yields to the event loop on every read so concurrent writers interleave."""

    async def get(self, key):
        result = await super().get(key)
        await asyncio.sleep(0)
        return result


def _setup(kv=None, **config):
    remote = InMemoryRemoteJobClient()
    orchestrator = Orchestrator(
        WorkflowStore(kv or InMemoryKeyValueStore()), remote, config=AgentLoopConfig(**config)
    )
    return ActionHandler(orchestrator), orchestrator, remote


async def _plan_under_review(orchestrator, remote, plan="do X"):
    wf = await orchestrator.launch_workflow(
        channel_id="chan", user_id="alice", prompt="Add retries", repository="acme/api"
    )
    job_id = wf.active_job_id
    remote.set_status(job_id, RemoteStatus.FINISHED)
    remote.set_plan(job_id, plan)
    await Poller(orchestrator).run_once()
    current = await orchestrator.get_workflow(wf.workflow_id)
    assert current.phase == Phase.PLAN_REVIEW
    return current


def _decision(workflow_id, action="accept", phase="plan_review", user_id="alice"):
    return {"workflow_id": workflow_id, "action": action, "phase": phase, "user_id": user_id}


@pytest.mark.asyncio
async def test_accept_plan_then_duplicate_accept():
    handler, orchestrator, remote = _setup()
    wf = await _plan_under_review(orchestrator, remote)

    outcome = await handler.handle_decision(_decision(wf.workflow_id))
    assert outcome.status == "applied"
    assert outcome.phase == Phase.IMPLEMENTING
    assert outcome.update["phase"] == "implementing"

    current = await orchestrator.get_workflow(wf.workflow_id)
    assert current.approved_plan == "do X"
    assert current.active_job_id == "job-2"
    assert "<approved-plan>\ndo X\n</approved-plan>" in remote.requests["job-2"].prompt

    duplicate = await handler.handle_decision(_decision(wf.workflow_id))
    assert duplicate.status == "already_resolved"
    assert duplicate.phase == Phase.IMPLEMENTING
    assert len(remote.launched) == 2
    assert (await orchestrator.get_workflow(wf.workflow_id)) == current


@pytest.mark.asyncio
async def test_reject_plan_is_terminal_and_never_polled_again():
    handler, orchestrator, remote = _setup()
    wf = await _plan_under_review(orchestrator, remote)

    outcome = await handler.handle_decision(_decision(wf.workflow_id, action="reject"))
    assert outcome.status == "applied"
    assert outcome.phase == Phase.PLAN_REJECTED
    assert outcome.update["actions"] == []

    poller = Poller(orchestrator)
    for _ in range(3):
        report = await poller.run_once()
        assert report.polled == 0
    assert len(remote.launched) == 1


@pytest.mark.asyncio
async def test_concurrent_accepts_launch_exactly_once():
    handler, orchestrator, remote = _setup(kv=YieldingStore())
    wf = await _plan_under_review(orchestrator, remote)

    outcomes = await asyncio.gather(
        handler.handle_decision(_decision(wf.workflow_id)),
        handler.handle_decision(_decision(wf.workflow_id)),
    )

    assert sorted(o.status for o in outcomes) == ["already_resolved", "applied"]
    assert len(remote.launched) == 2
    current = await orchestrator.get_workflow(wf.workflow_id)
    assert current.phase == Phase.IMPLEMENTING
    assert current.active_job_id == "job-2"


@pytest.mark.asyncio
async def test_concurrent_accept_and_reject_resolve_once():
    handler, orchestrator, remote = _setup(kv=YieldingStore())
    wf = await _plan_under_review(orchestrator, remote)

    outcomes = await asyncio.gather(
        handler.handle_decision(_decision(wf.workflow_id, action="accept")),
        handler.handle_decision(_decision(wf.workflow_id, action="reject")),
    )

    assert sorted(o.status for o in outcomes) == ["already_resolved", "applied"]
    current = await orchestrator.get_workflow(wf.workflow_id)
    assert current.phase in (Phase.IMPLEMENTING, Phase.PLAN_REJECTED)
    expected_jobs = 2 if current.phase == Phase.IMPLEMENTING else 1
    assert len(remote.launched) == expected_jobs


@pytest.mark.asyncio
async def test_context_review_accept_launches_planner():
    handler, orchestrator, remote = _setup(enable_context_review=True)
    wf = await orchestrator.launch_workflow(
        channel_id="chan", user_id="alice", prompt="Add retries", repository="acme/api"
    )

    outcome = await handler.handle_decision(
        _decision(wf.workflow_id, phase="context_review")
    )
    assert outcome.phase == Phase.PLAN_RUNNING
    current = await orchestrator.get_workflow(wf.workflow_id)
    assert current.approved_context == "Add retries"
    assert current.active_job_id == "job-1"

    late = await handler.handle_decision(_decision(wf.workflow_id, action="reject", phase="context_review"))
    assert late.status == "already_resolved"


@pytest.mark.asyncio
async def test_decision_before_review_is_rejected():
    handler, orchestrator, remote = _setup()
    wf = await orchestrator.launch_workflow(
        channel_id="chan", user_id="alice", prompt="Add retries", repository="acme/api"
    )
    with pytest.raises(DecisionValidationError):
        await handler.handle_decision(_decision(wf.workflow_id))
    assert (await orchestrator.get_workflow(wf.workflow_id)).phase == Phase.LAUNCHED_PLANNING


@pytest.mark.asyncio
async def test_only_initiator_may_decide():
    handler, orchestrator, remote = _setup()
    wf = await _plan_under_review(orchestrator, remote)

    with pytest.raises(DecisionValidationError):
        await handler.handle_decision(_decision(wf.workflow_id, user_id="bob"))
    assert (await orchestrator.get_workflow(wf.workflow_id)).phase == Phase.PLAN_REVIEW

    open_handler, open_orchestrator, open_remote = _setup(restrict_decisions_to_initiator=False)
    wf = await _plan_under_review(open_orchestrator, open_remote)
    outcome = await open_handler.handle_decision(_decision(wf.workflow_id, user_id="bob"))
    assert outcome.status == "applied"


@pytest.mark.asyncio
async def test_invalid_payloads():
    handler, orchestrator, remote = _setup()
    wf = await _plan_under_review(orchestrator, remote)

    with pytest.raises(DecisionValidationError):
        await handler.handle_decision(_decision(wf.workflow_id, action="maybe"))
    with pytest.raises(DecisionValidationError):
        await handler.handle_decision(_decision(wf.workflow_id, phase="implementing"))
    with pytest.raises(DecisionValidationError):
        await handler.handle_decision({"action": "accept", "phase": "plan_review", "user_id": "alice"})
    with pytest.raises(WorkflowNotFoundError):
        await handler.handle_decision(_decision("missing"))


def test_decision_request_accepts_button_context():
    request = DecisionRequest.model_validate(
        {
            "user_id": "alice",
            "context": {"workflow_id": "wf-1", "action": "reject", "phase": "context_review"},
        }
    )
    assert request.workflow_id == "wf-1"
    assert request.action == "reject"
    assert request.user_id == "alice"


@pytest.mark.asyncio
async def test_revision_relaunches_planner():
    handler, orchestrator, remote = _setup()
    wf = await _plan_under_review(orchestrator, remote, plan="plan v1")

    outcome = await handler.request_revision(wf.workflow_id, "alice", "cover the CLI too")
    assert outcome.status == "applied"
    assert outcome.phase == Phase.PLAN_RUNNING

    current = await orchestrator.get_workflow(wf.workflow_id)
    assert current.iteration_count == 1
    assert current.active_job_id == "job-2"
    prompt = remote.requests["job-2"].prompt
    assert "<previous-plan>\nplan v1\n</previous-plan>" in prompt
    assert "cover the CLI too" in prompt

    # The card for the first plan is now stale.
    stale = await handler.handle_decision(_decision(wf.workflow_id))
    assert stale.status == "already_resolved"
    assert len(remote.launched) == 2


@pytest.mark.asyncio
async def test_stop_via_handler():
    handler, orchestrator, remote = _setup()
    wf = await orchestrator.launch_workflow(
        channel_id="chan", user_id="alice", prompt="Add retries", repository="acme/api"
    )

    outcome = await handler.stop(wf.workflow_id, "alice")
    assert outcome.status == "applied"
    assert outcome.phase == Phase.STOPPED
    assert remote.stopped == ["job-1"]

    again = await handler.stop(wf.workflow_id, "alice")
    assert again.status == "already_resolved"


@pytest.mark.asyncio
async def test_poll_tick_racing_stop_leaves_one_outcome():
    handler, orchestrator, remote = _setup(kv=YieldingStore(), enable_plan_review=False)
    wf = await orchestrator.launch_workflow(
        channel_id="chan", user_id="alice", prompt="Add retries", repository="acme/api"
    )
    remote.set_status("job-1", RemoteStatus.FINISHED)
    remote.set_plan("job-1", "do X")

    report, outcome = await asyncio.gather(
        Poller(orchestrator).run_once(), handler.stop(wf.workflow_id, "alice")
    )

    assert report.polled == 1
    assert outcome.status == "applied"
    current = await orchestrator.get_workflow(wf.workflow_id)
    assert current.phase == Phase.STOPPED
    assert current.active_job_id == ""

    implementers = [job_id for job_id in remote.requests if job_id != "job-1"]
    assert len(implementers) <= 1
    # Whoever lost the race, no implementer is left running.
    assert set(implementers) <= set(remote.stopped)

    again = await Poller(orchestrator).run_once()
    assert again.polled == 0
    assert len(remote.requests) == 1 + len(implementers)
