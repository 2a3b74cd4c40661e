"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
from conductor.domain.models import Agent, QueuePriority, Task, TaskStatus
from conductor.infrastructure.database import Database
from conductor.infrastructure.event_log import DatabaseEventSink
from conductor.services.dependency_resolver import DependencyResolver

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


@pytest.fixture
async def db() -> AsyncGenerator[Database, None]:
    """In-memory database with the full schema."""
    database = Database(Path(":memory:"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def events(db: Database) -> DatabaseEventSink:
    return DatabaseEventSink(db)


@pytest.fixture
def resolver(db: Database) -> DependencyResolver:
    return DependencyResolver(db)


@pytest.fixture
async def agent(db: Database) -> Agent:
    """Agent owned by USER_ID."""
    agent = Agent(user_id=USER_ID, name="Research Bot", goal="Research the market")
    await db.insert_agent(agent)
    return agent


@pytest.fixture
async def other_agent(db: Database) -> Agent:
    """Agent owned by OTHER_USER_ID."""
    agent = Agent(user_id=OTHER_USER_ID, name="Someone Else", goal="Unrelated")
    await db.insert_agent(agent)
    return agent


@pytest.fixture
def make_task(db: Database) -> Callable[..., Awaitable[Task]]:
    """Factory inserting a task for an agent."""

    async def _make(
        agent: Agent,
        title: str,
        status: TaskStatus = TaskStatus.TODO,
        priority: QueuePriority = QueuePriority.MEDIUM,
        **kwargs: Any,
    ) -> Task:
        task = Task(agent_id=agent.id, title=title, status=status, priority=priority, **kwargs)
        await db.insert_task(task)
        return task

    return _make
