"""agentloop: human-in-the-loop orchestration of remote coding-agent jobs."""

__version__ = "0.1.0"

from .actions import ActionHandler, DecisionOutcome, DecisionRequest
from .config import AgentLoopConfig, load_config
from .models import AgentRecord, JobRole, Phase, RemoteStatus, UserSettings, WorkflowRecord
from .orchestrator import Orchestrator
from .poller import Poller, TickReport
from .remote import get_remote_client
from .store import WorkflowStore, get_store

__all__ = [
    "ActionHandler",
    "AgentLoopConfig",
    "AgentRecord",
    "DecisionOutcome",
    "DecisionRequest",
    "JobRole",
    "Orchestrator",
    "Phase",
    "Poller",
    "RemoteStatus",
    "TickReport",
    "UserSettings",
    "WorkflowRecord",
    "WorkflowStore",
    "get_remote_client",
    "get_store",
    "load_config",
]
