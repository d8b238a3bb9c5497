"""Command line interface for running durastep workers and inspecting runs."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from durastep import get_repository, get_transport, load_config, serve
from durastep.cli_utils.workflow import _format_run_line, _format_step, _load_workflow
from durastep.security import SignatureReceiver
from durastep.worker import ContinuationWorker

app = typer.Typer(help="CLI for durastep workflows")

# Command groups
worker_app = typer.Typer(help="Commands for running continuation workers")
runs_app = typer.Typer(help="Commands for inspecting workflow runs")

app.add_typer(worker_app, name="worker")
app.add_typer(runs_app, name="runs")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Python logging level"),
) -> None:
    """durastep CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@worker_app.command("run")
def worker_run(
    target: str,
    base_path: Optional[Path] = None,
    lifespan: Optional[float] = None,
) -> None:
    """
    Run a continuation worker with an in-process gateway for a workflow.

    Args:
        target: Workflow to serve as 'module:function'
        base_path: Directory added to the import path (default: current dir)
        lifespan: Worker timeout in seconds (default: run indefinitely)

    Example:
        durastep worker run myapp.workflows:onboarding
        durastep worker run flows:checkout --base-path ./services --lifespan 300
    """
    try:
        workflow = _load_workflow(target, base_path)
    except (ImportError, ValueError) as exc:
        typer.secho(f"Cannot load workflow: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    config = load_config()
    transport = get_transport(config=config)
    repository = get_repository()
    gateway = serve(workflow, config, repository=repository, transport=transport)
    worker = ContinuationWorker(
        transport,
        gateway=gateway,
        topic=config.transport.topic,
        receiver=SignatureReceiver.from_config(config.signing),
    )

    async def _run() -> None:
        await transport.connect()
        try:
            await worker.start(lifespan=lifespan)
        finally:
            await gateway.aclose()
            await transport.disconnect()

    typer.echo(f"Starting worker for {target} on topic '{config.transport.topic}'")
    asyncio.run(_run())


@worker_app.command("sweep")
def worker_sweep(
    grace: float = typer.Option(60.0, help="Seconds a delivery may be overdue before it is republished"),
) -> None:
    """Republish continuations for overdue sleep timers and unfinished runs."""
    config = load_config()
    transport = get_transport(config=config)
    worker = ContinuationWorker(
        transport, topic=config.transport.topic, repository=get_repository()
    )

    async def _sweep() -> int:
        await transport.connect()
        try:
            timers = await worker.sweep_timers(grace=grace)
            return timers + await worker.sweep_runs(grace=grace)
        finally:
            await transport.disconnect()

    published = asyncio.run(_sweep())
    typer.echo(f"Republished {published} continuation(s)")


@runs_app.command("list")
def runs_list() -> None:
    """
    List all workflow runs with their current status.

    Example:
        durastep runs list
        # Output: wfr_3f2a...    suspended    2024-01-01T10:00:00+00:00
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs())
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(_format_run_line(run))


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """Show a run's status, result and step ledger."""
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.run_id}: {run.status.value}")
    if run.url:
        typer.echo(f"URL: {run.url}")
    if run.payload:
        typer.echo(f"Payload: {run.payload}")
    if run.result is not None:
        typer.echo(f"Result: {run.result}")
    if run.error:
        typer.echo(f"Error at step {run.failed_step}: {run.error}")
    for step in run.steps:
        typer.echo(_format_step(step))


@runs_app.command("cancel")
def runs_cancel(run_id: str) -> None:
    """Cancel a run that has not finished yet."""
    repo = get_repository()
    if asyncio.run(repo.cancel_run(run_id)):
        typer.echo(f"Run {run_id} cancelled")
        return
    typer.secho(f"Run {run_id} not found or already finished", fg=typer.colors.RED)
    raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
