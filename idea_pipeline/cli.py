"""Command line entry point for the idea pipeline."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import typer

from .config import ConfigError, PipelineConfig, load_config
from .task_model import TaskStatus
from .task_store import FileTaskStore

APP_HELP = "Task lifecycle orchestrator for the idea-to-shipped-app pipeline."
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

app = typer.Typer(help=APP_HELP, no_args_is_help=True)
logger = logging.getLogger("cli")

_state = {"config_path": None}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the YAML configuration file.",
    ),
) -> None:
    """Task lifecycle orchestrator."""
    _state["config_path"] = config


def _load() -> PipelineConfig:
    try:
        config = load_config(_state["config_path"])
    except ConfigError as error:
        typer.echo(f"Configuration error: {error}")
        raise typer.Exit(code=1) from error
    logging.basicConfig(
        level=getattr(logging, str(config.log_level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    return config


def _store(config: PipelineConfig) -> FileTaskStore:
    return FileTaskStore(config.store_path, poll_interval=config.poll_interval)


# -----------------------------------------------------------------------------
# Long-running
# -----------------------------------------------------------------------------
@app.command()
def run(
    scheduler: bool = typer.Option(
        True,
        "--scheduler/--no-scheduler",
        help="Also run the daily idea and purge jobs.",
    ),
) -> None:
    """Run the orchestrator until interrupted."""
    from .orchestrator import Orchestrator

    config = _load()

    async def _main() -> None:
        orchestrator = Orchestrator(config)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, orchestrator.request_stop)
            except NotImplementedError:
                pass
        await orchestrator.run_forever(with_scheduler=scheduler)

    logger.info(f"Starting orchestrator (store: {config.store_path}, projects: {config.projects_dir})")
    asyncio.run(_main())


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from config)."),
    port: Optional[int] = typer.Option(None, "--port", help="Port (default from config)."),
) -> None:
    """Serve the intake API."""
    import uvicorn

    from .intake_api import create_app

    config = _load()
    if not config.webhook_secret:
        logger.warning("WEBHOOK_SECRET is not set; /webhook will reject every request")
    uvicorn.run(
        create_app(_store(config), config),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level=str(config.log_level).lower(),
    )


# -----------------------------------------------------------------------------
# One-shot jobs
# -----------------------------------------------------------------------------
@app.command()
def recover() -> None:
    """Clear isProcessing flags left behind by a crashed orchestrator."""
    from .lock_manager import LockManager

    config = _load()
    count = asyncio.run(LockManager(_store(config)).recover_stuck_locks())
    typer.echo(f"Recovered {count} stuck lock(s).")


@app.command()
def daily() -> None:
    """Generate today's ideas now."""
    from .agent_backend import build_agent_backend
    from .maintenance import generate_daily_ideas
    from .notification_engine import build_notification_engine

    config = _load()

    async def _main():
        notifier = build_notification_engine(config)
        created = await generate_daily_ideas(
            _store(config),
            build_agent_backend(config),
            notifier,
            count=config.daily_idea_count,
            deadline_offset_days=config.deadline_offset_days,
        )
        await notifier.drain()
        return created

    created = asyncio.run(_main())
    if not created:
        typer.echo("No ideas were created.")
        raise typer.Exit(code=1)
    typer.echo(f"Created {len(created)} idea(s):")
    for task in created:
        typer.echo(f"- {task.title} ({task.id})")


@app.command()
def purge(
    hours: Optional[float] = typer.Option(
        None,
        "--hours",
        help="Retention for rejected tasks (default from config).",
    ),
) -> None:
    """Delete rejected tasks older than the retention period."""
    from .maintenance import purge_rejected_tasks

    config = _load()
    retention = hours if hours is not None else config.rejected_retention_hours
    deleted = asyncio.run(purge_rejected_tasks(_store(config), retention))
    typer.echo(f"Deleted {deleted} rejected task(s).")


# -----------------------------------------------------------------------------
# Board
# -----------------------------------------------------------------------------
@app.command()
def add(
    title: str = typer.Argument(..., help="Idea title."),
    overview: str = typer.Option("", "--overview", "-o", help="Free-form notes for the agent."),
) -> None:
    """Create a draft idea."""
    config = _load()
    task = asyncio.run(_store(config).create({
        "title": title,
        "overview": overview,
        "status": TaskStatus.DRAFT,
        "source": "cli",
    }))
    typer.echo(f"Created draft {task.id}: {task.title}")


@app.command("list")
def list_tasks(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Only tasks in this status."),
) -> None:
    """List tasks."""
    config = _load()
    statuses = None
    if status:
        try:
            statuses = [TaskStatus.parse(status)]
        except ValueError as error:
            raise typer.BadParameter(str(error)) from error

    tasks = asyncio.run(_store(config).query(statuses=statuses))
    if not tasks:
        typer.echo("No tasks.")
        return
    for task in tasks:
        lock = " [processing]" if task.is_processing else ""
        extra = f" {task.review_url}" if task.review_url else ""
        typer.echo(f"{task.id}  {task.status.value:<20} {task.title}{lock}{extra}")


if __name__ == "__main__":
    app()
