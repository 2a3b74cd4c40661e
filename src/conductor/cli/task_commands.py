"""Task and dependency graph commands."""

import asyncio
import json
from pathlib import Path
from uuid import UUID

import typer
from rich.table import Table

from conductor.cli.utils import (
    console,
    get_services,
    resolve_agent_id,
    resolve_task_id,
    status_style,
)
from conductor.domain.models import QueuePriority, TaskStatus
from conductor.infrastructure.exceptions import (
    AgentNotFoundError,
    CircularDependencyError,
    TaskNotFoundError,
)

task_app = typer.Typer(help="Task management", no_args_is_help=True)
deps_app = typer.Typer(help="Task dependency graph", no_args_is_help=True)


@task_app.command("add")
def add(
    agent_id: str = typer.Argument(..., help="Agent ID or unique prefix"),
    title: str = typer.Argument(..., help="Task title"),
    description: str = typer.Option("", help="Task description"),
    priority: QueuePriority = typer.Option(QueuePriority.MEDIUM),  # noqa: B008
    dependency: bool = typer.Option(False, help="Task needs human input"),
    reason: str | None = typer.Option(None, help="Why the task is blocked"),
    after: str | None = typer.Option(None, help="Task that must finish first"),
) -> None:
    """Add a task to an agent."""

    async def _add() -> None:
        services = await get_services()
        resolved = await resolve_agent_id(agent_id, services)
        depends_on = await resolve_task_id(after, services) if after else None
        try:
            task = await services["task_service"].create_task(
                resolved,
                services["user_id"],
                title,
                description=description,
                priority=priority,
                is_dependency=dependency,
                blocked_reason=reason,
                depends_on_task_id=depends_on,
            )
        except (AgentNotFoundError, TaskNotFoundError, ValueError) as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from None

        color = status_style(task.status.value)
        console.print(
            f"[green]✓[/green] Task [cyan]{task.id}[/cyan] created "
            f"([{color}]{task.status.value}[/{color}])"
        )

    asyncio.run(_add())


@task_app.command("list")
def list_tasks(
    agent_id: str = typer.Argument(..., help="Agent ID or unique prefix"),
    status: TaskStatus | None = typer.Option(None, help="Filter by status"),  # noqa: B008
    limit: int = typer.Option(100, help="Maximum tasks to show"),
) -> None:
    """List an agent's tasks in priority order."""

    async def _list() -> None:
        services = await get_services()
        resolved = await resolve_agent_id(agent_id, services)
        tasks = await services["database"].list_tasks(agent_id=resolved, status=status, limit=limit)
        if not tasks:
            console.print("[dim]No tasks[/dim]")
            return

        table = Table(title="Tasks")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Title")
        table.add_column("Priority")
        table.add_column("Status")
        table.add_column("Blocked reason", style="dim")
        for task in tasks:
            color = status_style(task.status.value)
            title = f"[magenta]⚑[/magenta] {task.title}" if task.is_dependency else task.title
            table.add_row(
                str(task.id)[:8],
                title,
                task.priority.value,
                f"[{color}]{task.status.value}[/{color}]",
                task.blocked_reason or "",
            )
        console.print(table)

    asyncio.run(_list())


@task_app.command("complete")
def complete(
    task_id: str = typer.Argument(..., help="Task ID or unique prefix"),
    summary: str | None = typer.Option(None, help="Output summary"),
) -> None:
    """Mark a task done and unblock its successors."""

    async def _complete() -> None:
        services = await get_services()
        resolved = await resolve_task_id(task_id, services)
        try:
            unblocked = await services["task_service"].complete_task(
                resolved, services["user_id"], output_summary=summary
            )
        except TaskNotFoundError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from None

        console.print(f"[green]✓[/green] Task [cyan]{resolved}[/cyan] done")
        for tid in unblocked:
            console.print(f"  unblocked [cyan]{tid}[/cyan]")

    asyncio.run(_complete())


@task_app.command("approve")
def approve(
    task_id: str = typer.Argument(..., help="Dependency task ID or unique prefix"),
    response: str | None = typer.Option(None, help="Answer passed back to the agent"),
) -> None:
    """Resolve a human-dependency task and resume its agent."""

    async def _approve() -> None:
        services = await get_services()
        resolved = await resolve_task_id(task_id, services)
        try:
            unblocked = await services["task_service"].approve_dependency(
                resolved, services["user_id"], response=response
            )
        except (TaskNotFoundError, ValueError) as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from None

        console.print(
            f"[green]✓[/green] Dependency resolved, {len(unblocked)} task(s) unblocked"
        )

    asyncio.run(_approve())


@deps_app.command("add")
def add_dependency(
    source: str = typer.Argument(..., help="Task that must finish first"),
    target: str = typer.Argument(..., help="Task that waits for source"),
) -> None:
    """Add an edge: TARGET depends on SOURCE."""

    async def _add() -> None:
        services = await get_services()
        source_id = await resolve_task_id(source, services)
        target_id = await resolve_task_id(target, services)
        result = await services["resolver"].create_dependency(
            source_id, target_id, services["user_id"]
        )
        if not result.success:
            console.print(f"[red]Error:[/red] {result.error}")
            raise typer.Exit(1)
        console.print(f"[green]✓[/green] Dependency [cyan]{result.edge_id}[/cyan] created")

    asyncio.run(_add())


@deps_app.command("recompute")
def recompute(task_id: str = typer.Argument(..., help="Task ID or unique prefix")) -> None:
    """Recompute whether a task is blocked by its predecessors."""

    async def _recompute() -> None:
        services = await get_services()
        resolved = await resolve_task_id(task_id, services)
        new_status = await services["resolver"].recompute_availability(resolved)
        if new_status is None:
            console.print(f"[red]Error:[/red] Task {resolved} not found")
            raise typer.Exit(1)
        color = status_style(new_status.value)
        console.print(f"Task [cyan]{resolved}[/cyan] is [{color}]{new_status.value}[/{color}]")

    asyncio.run(_recompute())


@deps_app.command("graph")
def graph(
    agent_id: str = typer.Argument(..., help="Agent ID or unique prefix"),
    output: Path | None = typer.Option(None, help="Write the graph as JSON"),  # noqa: B008
) -> None:
    """Show dependency graph metrics, critical path and execution order."""

    async def _graph() -> None:
        services = await get_services()
        resolver = services["resolver"]
        resolved = await resolve_agent_id(agent_id, services)

        exported = await resolver.export_graph(resolved)
        titles = {node["id"]: node["title"] for node in exported["nodes"]}

        try:
            metrics = await resolver.get_graph_metrics(resolved)
            critical = await resolver.find_critical_path(resolved)
            order = await resolver.get_execution_order([UUID(tid) for tid in titles])
        except CircularDependencyError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from None

        table = Table(title="Dependency graph")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")
        for name, value in metrics.model_dump().items():
            table.add_row(name.replace("_", " "), str(value))
        console.print(table)

        if len(critical) > 1:
            console.print("\n[bold]Critical path[/bold]")
            console.print(" → ".join(titles.get(str(tid), str(tid)[:8]) for tid in critical))

        if order:
            console.print("\n[bold]Execution order[/bold]")
            for index, tid in enumerate(order, 1):
                console.print(f"  {index}. {titles.get(str(tid), str(tid))}")

        if output:
            output.write_text(json.dumps(exported, indent=2))
            console.print(f"\n[green]✓[/green] Graph written to {output}")

    asyncio.run(_graph())
