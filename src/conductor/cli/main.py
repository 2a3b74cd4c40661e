"""Conductor CLI - agent execution orchestration."""

import asyncio
import json

import typer
import yaml
from rich.table import Table

from conductor import __version__
from conductor.cli.queue_commands import queue_app
from conductor.cli.task_commands import deps_app, task_app
from conductor.cli.utils import console, get_services, resolve_agent_id, status_style
from conductor.domain.models import Agent
from conductor.infrastructure.credentials import SUPPORTED_PROVIDERS, validate_api_key
from conductor.infrastructure.exceptions import AgentNotFoundError

app = typer.Typer(
    name="conductor",
    help="Agent execution orchestration - queue, failover and task graphs",
    no_args_is_help=True,
)

app.add_typer(queue_app, name="queue")
app.add_typer(task_app, name="task")
app.add_typer(deps_app, name="deps")

agent_app = typer.Typer(help="Agent management", no_args_is_help=True)
app.add_typer(agent_app, name="agent")

workflow_app = typer.Typer(help="Workflow generation", no_args_is_help=True)
app.add_typer(workflow_app, name="workflow")

providers_app = typer.Typer(help="LLM provider health", no_args_is_help=True)
app.add_typer(providers_app, name="providers")

config_app = typer.Typer(help="Configuration and credentials", no_args_is_help=True)
app.add_typer(config_app, name="config")


# ===== Version =====
@app.command()
def version() -> None:
    """Show Conductor version."""
    console.print(f"[bold]Conductor[/bold] version [cyan]{__version__}[/cyan]")


@app.command()
def init() -> None:
    """Create the project database and configuration directory."""

    async def _init() -> None:
        services = await get_services()
        db_path = services["config_manager"].get_database_path()
        console.print(f"[green]✓[/green] Database initialized at [cyan]{db_path}[/cyan]")

    asyncio.run(_init())


# ===== Agent Commands =====
@agent_app.command("create")
def create_agent(
    name: str = typer.Argument(..., help="Agent name"),
    goal: str = typer.Option("", help="What the agent should achieve"),
    agent_type: str = typer.Option("general", "--type", help="Agent type"),
) -> None:
    """Register a new agent."""

    async def _create() -> None:
        services = await get_services()
        agent = Agent(user_id=services["user_id"], name=name, goal=goal, agent_type=agent_type)
        await services["database"].insert_agent(agent)
        console.print(f"[green]✓[/green] Agent [cyan]{agent.id}[/cyan] created")

    asyncio.run(_create())


@agent_app.command("list")
def list_agents() -> None:
    """List the current user's agents."""

    async def _list() -> None:
        services = await get_services()
        agents = await services["database"].list_agents(user_id=services["user_id"])
        if not agents:
            console.print("[dim]No agents[/dim]")
            return

        table = Table(title="Agents")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Goal", style="dim")
        for agent in agents:
            color = status_style(agent.status.value)
            table.add_row(
                str(agent.id)[:8],
                agent.name,
                f"[{color}]{agent.status.value}[/{color}]",
                agent.goal[:60],
            )
        console.print(table)

    asyncio.run(_list())


@agent_app.command("events")
def agent_events(
    agent_id: str = typer.Argument(..., help="Agent ID or unique prefix"),
    limit: int = typer.Option(20, help="Number of events to show"),
) -> None:
    """Show an agent's most recent events."""

    async def _events() -> None:
        services = await get_services()
        resolved = await resolve_agent_id(agent_id, services)
        events = await services["database"].list_events(resolved, limit=limit)

        table = Table(title="Events")
        table.add_column("Time", style="dim", no_wrap=True)
        table.add_column("Type")
        table.add_column("Message")
        for event in events:
            color = status_style(event.event_type.value)
            table.add_row(
                event.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                f"[{color}]{event.event_type.value}[/{color}]",
                event.message,
            )
        console.print(table)

    asyncio.run(_events())


@agent_app.command("delete")
def delete_agent(
    agent_id: str = typer.Argument(..., help="Agent ID or unique prefix"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    """Delete an agent. Its dependency tasks are kept as orphaned."""

    async def _delete() -> None:
        services = await get_services()
        resolved = await resolve_agent_id(agent_id, services)
        if not force and not typer.confirm(f"Delete agent {resolved}?"):
            console.print("[yellow]Aborted[/yellow]")
            raise typer.Exit(0)

        try:
            summary = await services["task_service"].delete_agent(resolved, services["user_id"])
        except AgentNotFoundError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from None

        console.print(
            f"[green]✓[/green] Agent deleted: {summary['tasks_deleted']} task(s) removed, "
            f"{summary['tasks_orphaned']} dependency task(s) orphaned"
        )

    asyncio.run(_delete())


# ===== Workflow Commands =====
@workflow_app.command("generate")
def generate(
    agent_id: str = typer.Argument(..., help="Agent ID or unique prefix"),
    goal: str | None = typer.Option(None, help="Override the agent's stored goal"),
    inputs: str | None = typer.Option(None, help="Onboarding answers as a JSON object"),
) -> None:
    """Generate an initial workflow for an agent and schedule its first run."""

    async def _generate() -> None:
        user_inputs = None
        if inputs:
            try:
                user_inputs = json.loads(inputs)
            except json.JSONDecodeError as e:
                console.print(f"[red]Error:[/red] Invalid --inputs JSON: {e}")
                raise typer.Exit(1) from None
            if not isinstance(user_inputs, dict):
                console.print("[red]Error:[/red] --inputs must be a JSON object")
                raise typer.Exit(1)

        services = await get_services()
        resolved = await resolve_agent_id(agent_id, services)
        try:
            workflow = await services["workflow_service"].activate_agent(
                resolved, services["user_id"], goal=goal, user_inputs=user_inputs
            )
        except AgentNotFoundError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from None

        console.print(f"[green]✓[/green] Workflow generated ([dim]{workflow.generator}[/dim])")
        table = Table(title="Immediate tasks")
        table.add_column("Title")
        table.add_column("Priority")
        table.add_column("Category", style="dim")
        table.add_column("Hours", justify="right")
        for task in workflow.immediate_tasks:
            table.add_row(task.title, task.priority.value, task.category, f"{task.estimated_hours:g}")
        console.print(table)

        if workflow.dependency_tasks:
            console.print("\n[magenta]Needs your input:[/magenta]")
            for dep in workflow.dependency_tasks:
                console.print(f"  • {dep.title} [dim]({dep.reason})[/dim]")

        console.print(f"\n[bold]Focus:[/bold] {workflow.status.current_focus}")

    asyncio.run(_generate())


# ===== Provider Commands =====
@providers_app.command("status")
def providers_status() -> None:
    """Show configured providers and their health in this process."""

    async def _status() -> None:
        services = await get_services()
        selector = services["selector"]
        available = await selector.available_providers(services["user_id"])
        health = selector.get_provider_status()

        table = Table(title="Providers")
        table.add_column("Provider", style="cyan")
        table.add_column("Key")
        table.add_column("Healthy")
        table.add_column("Errors", justify="right")
        for name in selector.preference:
            status = health.get(name)
            table.add_row(
                name,
                "[green]configured[/green]" if name in available else "[dim]missing[/dim]",
                "[green]yes[/green]" if status is None or status.available else "[red]no[/red]",
                str(status.error_count if status else 0),
            )
        console.print(table)

    asyncio.run(_status())


@providers_app.command("test")
def providers_test(
    provider: str | None = typer.Argument(None, help="Provider to test (default: all)"),
) -> None:
    """Send a tiny request to each provider and report latency."""

    async def _test() -> None:
        services = await get_services()
        selector = services["selector"]
        names = [provider] if provider else selector.preference

        failed = False
        for name in names:
            result = await selector.test_provider(name, services["user_id"])
            if result.success:
                console.print(
                    f"[green]✓[/green] {name} ({result.model}) {result.latency_ms:.0f}ms"
                )
            else:
                failed = True
                console.print(f"[red]✗[/red] {name}: {result.error}")
        if failed:
            raise typer.Exit(1)

    asyncio.run(_test())


# ===== Config Commands =====
@config_app.command("set-key")
def set_key(
    provider: str = typer.Argument(..., help=f"One of: {', '.join(SUPPORTED_PROVIDERS)}"),
    api_key: str = typer.Option(..., prompt=True, hide_input=True, help="API key"),
    use_keychain: bool = typer.Option(True, help="Store in system keychain"),
) -> None:
    """Store an API key for a provider."""
    from conductor.infrastructure import ConfigManager

    provider = provider.lower()
    if provider not in SUPPORTED_PROVIDERS:
        console.print(f"[red]Error:[/red] Unknown provider '{provider}'")
        raise typer.Exit(1)

    key = validate_api_key(api_key, provider)
    if key is None:
        console.print(f"[red]Error:[/red] That does not look like a valid {provider} API key")
        raise typer.Exit(1)

    config_manager = ConfigManager()
    user_id = config_manager.load_config().default_user_id
    try:
        config_manager.set_api_key(provider, key, user_id=user_id, use_keychain=use_keychain)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    storage = "keychain" if use_keychain else ".env file"
    console.print(f"[green]✓[/green] {provider} API key stored in {storage}")


@config_app.command("show")
def show() -> None:
    """Print the merged configuration as YAML."""
    from conductor.infrastructure import ConfigManager

    config = ConfigManager().load_config()
    console.print(yaml.safe_dump(config.model_dump(), sort_keys=False))


if __name__ == "__main__":
    app()
