"""Command line interface for running and operating agentloop."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import typer

from .actions import ActionHandler
from .api import build_orchestrator, create_app
from .config import AgentLoopConfig, load_config
from .exceptions import AgentLoopError
from .models import UserSettings
from .orchestrator import Orchestrator
from .poller import Poller

app = typer.Typer(help="CLI for agentloop workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
settings_app = typer.Typer(help="Commands for per-user review settings")

app.add_typer(workflow_app, name="workflow")
app.add_typer(settings_app, name="settings")

_state: dict[str, Optional[str]] = {"config": None}


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to config file (default: $AGENTLOOP_CONFIG or config.yaml)"
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """agentloop CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config"] = config


def _config() -> AgentLoopConfig:
    return load_config(_state["config"])


async def _with_orchestrator(fn):
    orchestrator = build_orchestrator(_config())
    await orchestrator.store.kv.connect()
    try:
        return await fn(orchestrator)
    finally:
        await orchestrator.remote.close()
        await orchestrator.store.kv.close()


def _run(fn):
    try:
        return asyncio.run(_with_orchestrator(fn))
    except (AgentLoopError, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8080, help="Bind port"),
    poller: bool = typer.Option(True, help="Run the status poller in-process"),
) -> None:
    """
    Serve the HTTP API (decision callbacks, workflow management, health).

    Example:
        agentloop serve --port 8080
        agentloop --config prod.yaml serve --no-poller
    """
    import uvicorn

    config = _config()
    for problem in config.validate_settings():
        typer.secho(f"Config warning: {problem}", fg=typer.colors.YELLOW)
    application = create_app(config=config, start_poller=poller)
    uvicorn.run(application, host=host, port=port, log_level="info")


@app.command("poll")
def poll(
    once: bool = typer.Option(False, "--once", help="Run a single tick and exit"),
    interval: Optional[int] = typer.Option(None, help="Override the poll interval in seconds"),
) -> None:
    """Reconcile remote job status into workflow state."""

    async def _poll(orchestrator: Orchestrator):
        poller = Poller(orchestrator, interval=interval)
        if once:
            report = await poller.run_once()
            typer.echo(
                f"polled={report.polled} changed={report.changed} "
                f"failed={report.failed} swept={report.swept}"
            )
            return
        await poller.run_forever()

    _run(_poll)


@workflow_app.command("list")
def workflow_list(
    all_workflows: bool = typer.Option(False, "--all", help="Include finished workflows"),
) -> None:
    """
    List workflows with their current phase.

    Example:
        agentloop workflow list --all
        # Output: 1b4e28ba-2fa1-11d2-883f-0016d3cca427    plan_review    job-3
    """

    async def _list(orchestrator: Orchestrator):
        return await orchestrator.store.list_workflows()

    workflows = _run(_list)
    if not all_workflows:
        workflows = [wf for wf in workflows if not wf.is_terminal]
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.workflow_id}\t{wf.phase.value}\t{wf.active_job_id or '-'}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show the full record of a workflow."""

    async def _show(orchestrator: Orchestrator):
        return await orchestrator.get_workflow(workflow_id)

    wf = _run(_show)
    _echo_json(wf.model_dump(mode="json"))


@workflow_app.command("launch")
def workflow_launch(
    prompt: str,
    user: str = typer.Option(..., "--user", "-u", help="Launching user id"),
    channel: str = typer.Option("cli", "--channel", help="Destination channel id"),
    repository: Optional[str] = typer.Option(None, "--repo", help="owner/repo"),
    branch: Optional[str] = typer.Option(None, help="Base branch"),
    model: Optional[str] = typer.Option(None, help="Remote model name"),
    context_review: Optional[bool] = typer.Option(
        None, "--context-review/--no-context-review", help="Override the context review gate"
    ),
    plan_review: Optional[bool] = typer.Option(
        None, "--plan-review/--no-plan-review", help="Override the plan review gate"
    ),
) -> None:
    """
    Launch a new workflow.

    Example:
        agentloop workflow launch "Add retries to the client" -u alice --repo acme/api
    """

    async def _launch(orchestrator: Orchestrator):
        return await orchestrator.launch_workflow(
            channel_id=channel,
            user_id=user,
            prompt=prompt,
            repository=repository,
            branch=branch,
            model=model,
            enable_context_review=context_review,
            enable_plan_review=plan_review,
        )

    wf = _run(_launch)
    typer.echo(f"{wf.workflow_id}\t{wf.phase.value}")


@workflow_app.command("decide")
def workflow_decide(
    workflow_id: str,
    action: str = typer.Argument(..., help="accept or reject"),
    phase: str = typer.Option(..., "--phase", help="context_review or plan_review"),
    user: str = typer.Option(..., "--user", "-u", help="Acting user id"),
) -> None:
    """Accept or reject the artifact under review."""

    async def _decide(orchestrator: Orchestrator):
        return await ActionHandler(orchestrator).handle_decision(
            {"workflow_id": workflow_id, "action": action, "phase": phase, "user_id": user}
        )

    outcome = _run(_decide)
    typer.echo(f"{outcome.status}\t{outcome.phase.value}")


@workflow_app.command("revise")
def workflow_revise(
    workflow_id: str,
    feedback: str = typer.Argument("", help="What the next plan should change"),
    user: str = typer.Option(..., "--user", "-u", help="Acting user id"),
) -> None:
    """Ask for another planning pass on the plan under review."""

    async def _revise(orchestrator: Orchestrator):
        return await ActionHandler(orchestrator).request_revision(workflow_id, user, feedback)

    outcome = _run(_revise)
    typer.echo(f"{outcome.status}\t{outcome.phase.value}")


@workflow_app.command("stop")
def workflow_stop(
    workflow_id: str,
    user: str = typer.Option(..., "--user", "-u", help="Acting user id"),
) -> None:
    """Stop a workflow and its running remote job."""

    async def _stop(orchestrator: Orchestrator):
        return await ActionHandler(orchestrator).stop(workflow_id, user)

    outcome = _run(_stop)
    typer.echo(f"{outcome.status}\t{outcome.phase.value}")


@settings_app.command("show")
def settings_show(user: str) -> None:
    """Show a user's review gate settings."""

    async def _show(orchestrator: Orchestrator):
        return await orchestrator.store.get_user_settings(user)

    settings = _run(_show) or UserSettings()
    _echo_json(settings.model_dump())


@settings_app.command("set")
def settings_set(
    user: str,
    context_review: Optional[bool] = typer.Option(
        None, "--context-review/--no-context-review"
    ),
    plan_review: Optional[bool] = typer.Option(None, "--plan-review/--no-plan-review"),
) -> None:
    """Store a user's review gate preferences; unset flags keep the global default."""
    settings = UserSettings(
        enable_context_review=context_review, enable_plan_review=plan_review
    )

    async def _save(orchestrator: Orchestrator):
        await orchestrator.store.save_user_settings(user, settings)

    _run(_save)
    typer.echo(f"Saved settings for {user}")


if __name__ == "__main__":
    app()
