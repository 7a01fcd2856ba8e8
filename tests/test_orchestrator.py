"""Orchestrator tests: launching, conditional writes and side effects."""

import pytest

from agentloop.actions import ActionHandler
from agentloop.config import AgentLoopConfig
from agentloop.exceptions import ConcurrencyConflict, StoreError, WorkflowNotFoundError
from agentloop.machine import StopRequested
from agentloop.models import JobRole, Phase, RemoteStatus, UserSettings
from agentloop.orchestrator import Orchestrator
from agentloop.poller import Poller
from agentloop.remote import InMemoryRemoteJobClient
from agentloop.store import InMemoryKeyValueStore, WorkflowStore


class RecordingPublisher:
    def __init__(self) -> None:
        self.messages = []

    async def publish(self, record, message) -> None:
        self.messages.append((record.workflow_id, record.phase, message))


class BrokenPublisher:
    async def publish(self, record, message) -> None:
        raise RuntimeError("chat unavailable")


class LosingStore(InMemoryKeyValueStore):
    """Refuses every update once ``lose`` is set, as if another writer always won."""

    def __init__(self) -> None:
        super().__init__()
        self.lose = False

    async def put(self, key, value, expected_version):
        if self.lose and expected_version:
            return False
        return await super().put(key, value, expected_version)


class FailingPhaseStore(InMemoryKeyValueStore):
    """Raises StoreError whenever a workflow would be written in ``fail_phase``."""

    def __init__(self, fail_phase) -> None:
        super().__init__()
        self.fail_phase = fail_phase

    async def put(self, key, value, expected_version):
        if value.get("phase") == self.fail_phase:
            raise StoreError("disk full")
        return await super().put(key, value, expected_version)


class HookedRemote(InMemoryRemoteJobClient):
    """Runs ``on_create`` before creating a job, to interleave other writers."""

    def __init__(self) -> None:
        super().__init__()
        self.on_create = None

    async def create(self, request):
        if self.on_create is not None:
            hook, self.on_create = self.on_create, None
            await hook()
        return await super().create(request)


def _setup(kv=None, remote=None, publisher=None, **config):
    remote = remote or InMemoryRemoteJobClient()
    publisher = publisher or RecordingPublisher()
    orchestrator = Orchestrator(
        WorkflowStore(kv or InMemoryKeyValueStore()),
        remote,
        publisher=publisher,
        config=AgentLoopConfig(**config),
    )
    return orchestrator, remote, publisher


async def _launch(orchestrator, **kwargs):
    return await orchestrator.launch_workflow(
        channel_id="chan", user_id="alice", prompt="Add retries", repository="acme/api", **kwargs
    )


@pytest.mark.asyncio
async def test_launch_starts_planner_and_records_agent():
    orchestrator, remote, publisher = _setup()
    wf = await _launch(orchestrator)

    assert wf.phase == Phase.LAUNCHED_PLANNING
    assert wf.active_job_id == "job-1"
    assert wf.job_role == JobRole.PLANNER
    assert wf.last_known_remote_status == "CREATING"

    request = remote.requests["job-1"]
    assert request.repository == "acme/api"
    assert request.ref == "main"
    assert not request.auto_create_pr
    assert not request.auto_branch
    assert "<task>\nAdd retries\n</task>" in request.prompt

    agent = await orchestrator.store.get_agent("job-1")
    assert agent.workflow_id == wf.workflow_id
    assert agent.role == JobRole.PLANNER

    stored = await orchestrator.get_workflow(wf.workflow_id)
    assert stored == wf
    assert publisher.messages, "launch should publish a card"


@pytest.mark.asyncio
async def test_launch_with_context_review_waits_for_user():
    orchestrator, remote, _ = _setup(enable_context_review=True)
    wf = await _launch(orchestrator)

    assert wf.phase == Phase.CONTEXT_REVIEW
    assert wf.pending_review_payload == "Add retries"
    assert remote.launched == []


@pytest.mark.asyncio
async def test_launch_requires_repository():
    orchestrator, _, _ = _setup()
    with pytest.raises(ValueError):
        await orchestrator.launch_workflow(channel_id="chan", user_id="alice", prompt="x")


@pytest.mark.asyncio
async def test_review_gates_cascade():
    orchestrator, _, _ = _setup(enable_context_review=False, enable_plan_review=True)
    await orchestrator.store.save_user_settings(
        "alice", UserSettings(enable_plan_review=False, enable_context_review=True)
    )

    assert await orchestrator.resolve_review_gates("alice") == (False, True)
    assert await orchestrator.resolve_review_gates("alice", enable_plan_review=True) == (
        False,
        False,
    )
    assert await orchestrator.resolve_review_gates("bob") == (True, False)


@pytest.mark.asyncio
async def test_launch_failure_fails_workflow():
    orchestrator, remote, _ = _setup()
    remote.fail_create = "quota exceeded"

    wf = await _launch(orchestrator)
    assert wf.phase == Phase.FAILED
    assert "quota exceeded" in wf.last_error
    assert wf.active_job_id == ""


@pytest.mark.asyncio
async def test_stop_running_workflow_stops_remote_job():
    orchestrator, remote, _ = _setup()
    wf = await _launch(orchestrator)

    result = await orchestrator.stop_workflow(wf.workflow_id, user_id="alice")
    assert result.record.phase == Phase.STOPPED
    assert remote.stopped == ["job-1"]
    assert (await orchestrator.store.get_agent("job-1")).status == RemoteStatus.STOPPED

    again = await orchestrator.apply_event(wf.workflow_id, StopRequested("alice"))
    assert not again.changed
    assert remote.stopped == ["job-1"]


@pytest.mark.asyncio
async def test_job_launched_after_stop_is_stopped():
    remote = HookedRemote()
    orchestrator, _, _ = _setup(remote=remote, enable_context_review=True)
    wf = await _launch(orchestrator)

    async def stop_meanwhile():
        await orchestrator.stop_workflow(wf.workflow_id, user_id="alice")

    remote.on_create = stop_meanwhile
    outcome = await ActionHandler(orchestrator).handle_decision(
        {"workflow_id": wf.workflow_id, "action": "accept", "phase": "context_review", "user_id": "alice"}
    )

    assert outcome.phase == Phase.STOPPED
    assert remote.stopped == ["job-1"]
    current = await orchestrator.get_workflow(wf.workflow_id)
    assert current.active_job_id == ""


@pytest.mark.asyncio
async def test_apply_event_gives_up_after_max_attempts():
    kv = LosingStore()
    orchestrator, _, _ = _setup(kv=kv, max_write_attempts=2)
    wf = await _launch(orchestrator)

    kv.lose = True
    with pytest.raises(ConcurrencyConflict) as excinfo:
        await orchestrator.stop_workflow(wf.workflow_id)
    assert excinfo.value.attempts == 2
    assert (await orchestrator.get_workflow(wf.workflow_id)).phase == Phase.LAUNCHED_PLANNING


@pytest.mark.asyncio
async def test_apply_event_unknown_workflow():
    orchestrator, _, _ = _setup()
    with pytest.raises(WorkflowNotFoundError):
        await orchestrator.stop_workflow("missing")


@pytest.mark.asyncio
async def test_publisher_failure_does_not_affect_state():
    orchestrator, _, _ = _setup(publisher=BrokenPublisher())
    wf = await _launch(orchestrator)
    assert wf.phase == Phase.LAUNCHED_PLANNING
    assert wf.active_job_id == "job-1"


@pytest.mark.asyncio
async def test_every_write_increments_lock_token():
    orchestrator, _, _ = _setup()
    wf = await _launch(orchestrator)
    # create (1) then JobLaunched (2)
    assert wf.decision_lock_token == 2

    result = await orchestrator.stop_workflow(wf.workflow_id)
    assert result.record.decision_lock_token == 3


@pytest.mark.asyncio
async def test_store_failure_attaching_job_stops_it_and_fails_workflow():
    kv = FailingPhaseStore(Phase.IMPLEMENTING.value)
    orchestrator, remote, _ = _setup(kv=kv)
    wf = await _launch(orchestrator)
    remote.set_status("job-1", RemoteStatus.FINISHED)
    remote.set_plan("job-1", "do X")
    await Poller(orchestrator).run_once()

    handler = ActionHandler(orchestrator)
    decision = {
        "workflow_id": wf.workflow_id,
        "action": "accept",
        "phase": "plan_review",
        "user_id": "alice",
    }
    outcome = await handler.handle_decision(decision)

    assert outcome.status == "applied"
    assert outcome.phase == Phase.FAILED
    assert remote.stopped == ["job-2"]
    current = await orchestrator.get_workflow(wf.workflow_id)
    assert current.phase == Phase.FAILED
    assert current.active_job_id == ""
    assert "job-2" in current.last_error
    assert (await orchestrator.store.get_agent("job-2")).status == RemoteStatus.STOPPED

    retried = await handler.handle_decision(decision)
    assert retried.status == "already_resolved"
    assert len(remote.launched) == 2


@pytest.mark.asyncio
async def test_publisher_failure_is_logged_with_traceback(caplog):
    orchestrator, _, _ = _setup(publisher=BrokenPublisher())
    with caplog.at_level("ERROR", logger="agentloop.orchestrator"):
        await _launch(orchestrator)

    failures = [r for r in caplog.records if "Failed to publish card" in r.getMessage()]
    assert failures
    assert failures[0].exc_info is not None
