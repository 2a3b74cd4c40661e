"""Shared helpers for CLI commands."""

from typing import Any
from uuid import UUID

import typer
from rich.console import Console

console = Console()


async def get_services() -> dict[str, Any]:
    """Build the service graph from project configuration.

    The queue is created without its background loop; commands that need
    processing call ``process_queue`` or ``start`` explicitly.
    """
    from conductor.application import (
        AgentExecutor,
        ExecutionQueue,
        ProviderSelector,
    )
    from conductor.infrastructure import (
        ConfigManager,
        Database,
        DatabaseEventSink,
        KeyringCredentialResolver,
        setup_logging,
    )
    from conductor.services import DependencyResolver, TaskService, WorkflowService

    config_manager = ConfigManager()
    config = config_manager.load_config()

    setup_logging(log_level=config.log_level, log_dir=config_manager.get_log_dir())

    database = Database(config_manager.get_database_path())
    await database.initialize()

    events = DatabaseEventSink(database)
    credentials = KeyringCredentialResolver(config_manager)
    selector = ProviderSelector(credentials, config=config.providers)
    resolver = DependencyResolver(database)
    executor = AgentExecutor(database, selector, resolver, events)
    queue = ExecutionQueue(database, executor.run, events, config=config.queue, auto_start=False)
    workflow_service = WorkflowService(
        database, events, queue=queue, selector=selector, config=config.workflow
    )
    task_service = TaskService(database, resolver, events, queue=queue)

    return {
        "config_manager": config_manager,
        "config": config,
        "user_id": config.default_user_id,
        "database": database,
        "events": events,
        "selector": selector,
        "resolver": resolver,
        "executor": executor,
        "queue": queue,
        "workflow_service": workflow_service,
        "task_service": task_service,
    }


def _match_prefix(prefix: str, candidates: list[UUID], kind: str) -> UUID:
    try:
        return UUID(prefix)
    except ValueError:
        pass

    matches = [c for c in candidates if str(c).startswith(prefix.lower())]
    if not matches:
        console.print(f"[red]Error:[/red] No {kind} found matching '{prefix}'")
        raise typer.Exit(1)
    if len(matches) > 1:
        console.print(f"[red]Error:[/red] Multiple {kind}s match '{prefix}':")
        for match in matches[:10]:
            console.print(f"  {match}")
        raise typer.Exit(1)
    return matches[0]


async def resolve_agent_id(prefix: str, services: dict[str, Any]) -> UUID:
    """Resolve a full agent UUID or unique prefix owned by the current user."""
    agents = await services["database"].list_agents(user_id=services["user_id"])
    return _match_prefix(prefix, [a.id for a in agents], "agent")


async def resolve_task_id(prefix: str, services: dict[str, Any]) -> UUID:
    """Resolve a full task UUID or unique prefix across the user's agents."""
    try:
        return UUID(prefix)
    except ValueError:
        pass

    db = services["database"]
    task_ids: list[UUID] = []
    for agent in await db.list_agents(user_id=services["user_id"]):
        task_ids.extend(t.id for t in await db.list_tasks(agent_id=agent.id, limit=10000))
    return _match_prefix(prefix, task_ids, "task")


def status_style(value: str) -> str:
    """Rich color for a status value."""
    return {
        "pending": "yellow",
        "running": "blue",
        "completed": "green",
        "done": "green",
        "todo": "cyan",
        "active": "blue",
        "blocked": "magenta",
        "failed": "red",
        "error": "red",
        "cancelled": "dim",
        "orphaned": "dim",
    }.get(value, "white")
