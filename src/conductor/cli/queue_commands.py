"""Execution queue commands."""

import asyncio
from uuid import UUID

import typer
from rich.table import Table

from conductor.cli.utils import console, get_services, resolve_agent_id, status_style
from conductor.domain.models import QueuePriority

queue_app = typer.Typer(help="Execution queue management", no_args_is_help=True)


@queue_app.command("enqueue")
def enqueue(
    agent_id: str = typer.Argument(..., help="Agent ID or unique prefix"),
    priority: QueuePriority = typer.Option(  # noqa: B008
        QueuePriority.MEDIUM, help="Queue priority"
    ),
    max_retries: int | None = typer.Option(None, help="Retry budget for this run"),
) -> None:
    """Schedule an agent run."""

    async def _enqueue() -> None:
        services = await get_services()
        resolved = await resolve_agent_id(agent_id, services)
        result = await services["queue"].enqueue(
            resolved, services["user_id"], priority=priority, max_retries=max_retries
        )
        if not result.success:
            console.print(f"[red]Error:[/red] {result.error}")
            raise typer.Exit(1)
        console.print(f"[green]✓[/green] Queued [cyan]{result.queue_id}[/cyan]")

    asyncio.run(_enqueue())


@queue_app.command("cancel")
def cancel(queue_id: str = typer.Argument(..., help="Queue item ID")) -> None:
    """Cancel a pending run."""

    async def _cancel() -> None:
        try:
            parsed = UUID(queue_id)
        except ValueError:
            console.print(f"[red]Error:[/red] Invalid queue ID '{queue_id}'")
            raise typer.Exit(1) from None

        services = await get_services()
        result = await services["queue"].cancel(parsed, user_id=services["user_id"])
        if not result.success:
            console.print(f"[red]Error:[/red] {result.error}")
            raise typer.Exit(1)
        console.print(f"[green]✓[/green] Cancelled [cyan]{queue_id}[/cyan]")

    asyncio.run(_cancel())


@queue_app.command("status")
def status(agent_id: str = typer.Argument(..., help="Agent ID or unique prefix")) -> None:
    """Show the active queue item for an agent."""

    async def _status() -> None:
        services = await get_services()
        resolved = await resolve_agent_id(agent_id, services)
        item = await services["queue"].get_agent_queue_status(resolved)
        if item is None:
            console.print("[dim]No pending or running execution[/dim]")
            return

        table = Table(title=f"Queue item {item.id}")
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        color = status_style(item.status.value)
        table.add_row("Status", f"[{color}]{item.status.value}[/{color}]")
        table.add_row("Priority", item.priority.value)
        table.add_row("Scheduled", item.scheduled_at.isoformat())
        table.add_row("Retries", f"{item.retry_count}/{item.max_retries}")
        if item.error_message:
            table.add_row("Last error", item.error_message)
        console.print(table)

    asyncio.run(_status())


@queue_app.command("stats")
def stats(
    window_hours: int | None = typer.Option(None, "--hours", help="Statistics window"),
) -> None:
    """Show queue counts by status."""

    async def _stats() -> None:
        services = await get_services()
        result = await services["queue"].get_stats(window_hours)

        table = Table(title=f"Queue (last {result.window_hours}h)")
        table.add_column("Status", style="cyan")
        table.add_column("Count", justify="right")
        for name in ("pending", "running", "completed", "failed", "cancelled"):
            color = status_style(name)
            table.add_row(f"[{color}]{name}[/{color}]", str(getattr(result, name)))
        table.add_row("[bold]total[/bold]", f"[bold]{result.total}[/bold]")
        console.print(table)

    asyncio.run(_stats())


@queue_app.command("run")
def run(
    watch: bool = typer.Option(False, help="Keep polling until interrupted"),
) -> None:
    """Process due queue items once, or continuously with --watch."""

    async def _run() -> None:
        services = await get_services()
        queue = services["queue"]

        if not watch:
            recovered = await queue.recover_stale_running()
            processed = await queue.process_queue()
            if recovered:
                console.print(f"[yellow]Recovered {recovered} stale item(s)[/yellow]")
            console.print(f"[green]✓[/green] Processed {processed} item(s)")
            return

        console.print("[blue]Queue processor running. Press Ctrl+C to stop.[/blue]")
        queue.start()
        try:
            while queue.is_running:
                await asyncio.sleep(1)
        finally:
            await queue.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")
