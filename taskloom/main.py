"""Command-line entry point for Taskloom."""

import asyncio
import os
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from taskloom.config import Config, get_config, set_config
from taskloom.events import CollectingEventSink, EventType, FanoutEventSink, LoggingEventSink
from taskloom.exceptions import SchedulerError
from taskloom.llm import provider_from_config
from taskloom.logging import bind_task_context, configure_logging, log
from taskloom.persistence import PersistenceSink, SQLiteInvocationStore, persistence_from_config
from taskloom.scheduler import PlanResult, TaskScheduler, synthesizer_from_provider
from taskloom.task_graph import TaskPlan
from taskloom.tools.registry import ToolRegistry
from taskloom.worker import worker_factory

app = typer.Typer(help="Taskloom - run model-driven task plans")
console = Console()


def _load_config(config: str, model: str, provider: str, no_stream: bool, verbose: bool) -> Config:
    if verbose:
        os.environ["TASKLOOM_LOGGING__LEVEL"] = "DEBUG"

    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            console.print(f"[yellow]Failed to load config {config}: {e}[/yellow]")
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    if no_stream:
        cfg.loop.streaming = False
    if verbose:
        cfg.logging.level = "DEBUG"

    set_config(cfg)
    configure_logging()
    return cfg


async def _execute_plan(scheduler: TaskScheduler, plan: TaskPlan, persistence: PersistenceSink) -> PlanResult:
    handle = scheduler.submit(plan)
    try:
        return await asyncio.shield(handle.result())
    except asyncio.CancelledError:
        handle.cancel("interrupted")
        return await handle.result()
    finally:
        await persistence.close()


def _render(plan: TaskPlan, result: PlanResult, events: CollectingEventSink) -> None:
    table = Table(title=f"Plan {plan.id}")
    table.add_column("Sub-task")
    table.add_column("Worker")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Confidence", justify="right")
    for sub in plan.sub_tasks:
        sub_result = result.results.get(sub.id)
        confidence = f"{sub_result.confidence:.2f}" if sub_result else "-"
        table.add_row(sub.id, sub.worker_kind.value, sub.status, str(sub.attempts), confidence)
    console.print(table)

    tool_calls = len(events.of_type(EventType.TOOL_CALLED))
    style = {"success": "green", "partial": "yellow"}.get(result.status, "red")
    console.print(
        Panel(
            result.output or "(no output)",
            title=f"[{style}]{result.status}[/{style}] confidence {result.confidence:.2f}",
            subtitle=(
                f"{result.rounds} rounds, {tool_calls} tool calls, "
                f"{result.tokens_in} in / {result.tokens_out} out tokens"
            ),
        )
    )


@app.command()
def run(
    plan_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Plan YAML file"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    no_stream: bool = typer.Option(False, "--no-stream", help="Disable streaming"),
    synthesize: bool = typer.Option(True, "--synthesize/--no-synthesize", help="Merge outputs with the model"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Execute a task plan."""
    _load_config(config, model, provider, no_stream, verbose)

    try:
        plan = TaskPlan.from_yaml(plan_file)
    except (SchedulerError, ValueError) as e:
        console.print(f"[red]Invalid plan:[/red] {e}")
        raise typer.Exit(2)

    bind_task_context(task_id=plan.task_id, plan_id=plan.id)
    llm = provider_from_config()
    collected = CollectingEventSink()
    events = FanoutEventSink(LoggingEventSink("debug"), collected)
    persistence = persistence_from_config()
    scheduler = TaskScheduler(
        worker_factory(llm, tools=ToolRegistry(), events=events, persistence=persistence),
        events=events,
        synthesizer=synthesizer_from_provider(llm) if synthesize else None,
        working_directory=Path.cwd(),
    )

    try:
        result = asyncio.run(_execute_plan(scheduler, plan, persistence))
    except KeyboardInterrupt:
        log.info("Interrupted")
        sys.exit(130)
    except SchedulerError as e:
        console.print(f"[red]Plan aborted:[/red] {e}")
        raise typer.Exit(2)

    _render(plan, result, collected)
    if result.status == "failed":
        raise typer.Exit(1)


@app.command()
def history(
    limit: int = typer.Option(20, "-n", "--limit", help="Number of records"),
    db: str = typer.Option("", "--db", help="Database path override"),
) -> None:
    """Show recently recorded worker invocations."""
    store = SQLiteInvocationStore(db or get_config().persistence.path)

    async def _load():
        try:
            return await store.list_recent(limit)
        finally:
            await store.close()

    records = asyncio.run(_load())
    table = Table(title="Recent invocations")
    for column in ("When", "Task", "Worker", "Status", "Confidence", "Tokens", "Outcome"):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.created_at[:19],
            record.task_id,
            record.worker_kind,
            record.status,
            f"{record.confidence:.2f}",
            f"{record.tokens_in}/{record.tokens_out}",
            record.outcome,
        )
    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    from taskloom import __version__
    console.print(f"Taskloom v{__version__}")


if __name__ == "__main__":
    app()
