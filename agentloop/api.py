"""HTTP surface: decision callbacks, workflow management and health."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .actions import ActionHandler, DecisionOutcome
from .config import AgentLoopConfig, load_config
from .exceptions import (
    ConcurrencyConflict,
    DecisionValidationError,
    WorkflowExistsError,
    WorkflowNotFoundError,
)
from .metrics import RequestCounter
from .orchestrator import Orchestrator
from .poller import Poller
from .ratelimit import RateLimiter
from .remote import get_remote_client
from .store import WorkflowStore, get_store

logger = logging.getLogger(__name__)


class LaunchRequest(BaseModel):
    channel_id: str
    prompt: str
    user_id: Optional[str] = None
    repository: Optional[str] = None
    branch: Optional[str] = None
    model: Optional[str] = None
    root_post_id: str = ""
    enable_context_review: Optional[bool] = None
    enable_plan_review: Optional[bool] = None


class RevisionBody(BaseModel):
    feedback: str = ""
    user_id: Optional[str] = None


class StopBody(BaseModel):
    user_id: Optional[str] = None


def build_orchestrator(config: AgentLoopConfig) -> Orchestrator:
    """Wire an orchestrator from configuration."""
    store = WorkflowStore(get_store(config=config))
    return Orchestrator(store, get_remote_client(config=config), config=config)


def _acting_user(header_user: Optional[str], body_user: Optional[str]) -> str:
    user_id = header_user or body_user
    if not user_id:
        raise DecisionValidationError("The acting user must be given via X-User-ID or user_id")
    return user_id


def create_app(
    orchestrator: Optional[Orchestrator] = None,
    config: Optional[AgentLoopConfig] = None,
    counter: Optional[RequestCounter] = None,
    start_poller: bool = True,
    limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Create the FastAPI application.

    The poller runs inside the application's lifespan when ``start_poller``
    is set, so a single process serves callbacks and reconciles job status.
    """
    if orchestrator is None:
        orchestrator = build_orchestrator(config or load_config())
    config = orchestrator.config
    counter = counter or RequestCounter()
    limiter = limiter or RateLimiter(max_requests=config.rate_limit_per_minute)
    handler = ActionHandler(orchestrator)
    poller = Poller(orchestrator)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await orchestrator.store.kv.connect()
        if start_poller:
            poller.start()
        yield
        if start_poller:
            await poller.stop()
        await orchestrator.remote.close()
        await orchestrator.store.kv.close()

    app = FastAPI(
        title="agentloop",
        description="Human-in-the-loop orchestration of remote coding-agent jobs",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.poller = poller
    app.state.counter = counter
    app.state.limiter = limiter

    @app.middleware("http")
    async def count_requests(request: Request, call_next):
        counter.record(request.method, request.url.path)
        return await call_next(request)

    async def enforce_rate_limit(x_user_id: Optional[str] = Header(default=None)) -> None:
        if not limiter.allow(x_user_id):
            logger.warning(f"Rate limit exceeded for user {x_user_id}")
            raise HTTPException(status_code=429, detail="Too many requests")

    limited = [Depends(enforce_rate_limit)]

    # ------------------------------------------------------------------
    # Error mapping
    @app.exception_handler(DecisionValidationError)
    async def _validation_error(request: Request, exc: DecisionValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(WorkflowNotFoundError)
    async def _not_found(request: Request, exc: WorkflowNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConcurrencyConflict)
    async def _conflict(request: Request, exc: ConcurrencyConflict):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(WorkflowExistsError)
    async def _exists(request: Request, exc: WorkflowExistsError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    # ------------------------------------------------------------------
    # Decisions
    @app.post("/actions/hitl-response", dependencies=limited)
    async def hitl_response(
        payload: dict[str, Any] = Body(...),
        x_user_id: Optional[str] = Header(default=None),
    ) -> DecisionOutcome:
        return await handler.handle_decision(payload, user_id=x_user_id)

    # ------------------------------------------------------------------
    # Workflows
    @app.post("/workflows", status_code=201, dependencies=limited)
    async def launch_workflow(
        body: LaunchRequest, x_user_id: Optional[str] = Header(default=None)
    ) -> dict[str, Any]:
        user_id = _acting_user(x_user_id, body.user_id)
        try:
            record = await orchestrator.launch_workflow(
                channel_id=body.channel_id,
                user_id=user_id,
                prompt=body.prompt,
                repository=body.repository,
                branch=body.branch,
                model=body.model,
                root_post_id=body.root_post_id,
                enable_context_review=body.enable_context_review,
                enable_plan_review=body.enable_plan_review,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return record.model_dump(mode="json")

    @app.get("/workflows/{workflow_id}", dependencies=limited)
    async def get_workflow(workflow_id: str) -> dict[str, Any]:
        record = await orchestrator.get_workflow(workflow_id)
        return record.model_dump(mode="json")

    @app.post("/workflows/{workflow_id}/revise", dependencies=limited)
    async def revise_workflow(
        workflow_id: str,
        body: Optional[RevisionBody] = None,
        x_user_id: Optional[str] = Header(default=None),
    ) -> DecisionOutcome:
        body = body or RevisionBody()
        user_id = _acting_user(x_user_id, body.user_id)
        return await handler.request_revision(workflow_id, user_id, body.feedback)

    @app.post("/workflows/{workflow_id}/stop", dependencies=limited)
    async def stop_workflow(
        workflow_id: str,
        body: Optional[StopBody] = None,
        x_user_id: Optional[str] = Header(default=None),
    ) -> DecisionOutcome:
        body = body or StopBody()
        user_id = _acting_user(x_user_id, body.user_id)
        return await handler.stop(workflow_id, user_id)

    # ------------------------------------------------------------------
    # Health and metrics
    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {"status": "ok", "uptime": f"{time.monotonic() - started_at:.0f}s"}

    @app.get("/admin/health")
    async def admin_health() -> dict[str, Any]:
        problems = config.validate_settings()
        active = await orchestrator.store.list_active_agents()
        return {
            "status": "ok" if not problems else "degraded",
            "config_valid": not problems,
            "config_problems": problems,
            "active_agents": len(active),
            "poller_running": poller.running,
            "poll_interval_seconds": poller.interval,
            "last_tick": asdict(poller.last_report) if poller.last_report else None,
        }

    @app.get("/admin/metrics")
    async def admin_metrics() -> dict[str, Any]:
        return {"requests": counter.snapshot(), "total": counter.total()}

    return app
