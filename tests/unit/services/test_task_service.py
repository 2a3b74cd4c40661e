"""Unit tests for TaskService."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from conductor.application.execution_queue import ExecutionQueue
from conductor.domain.models import EventType, QueuePriority, QueueStatus, TaskStatus
from conductor.infrastructure.exceptions import AgentNotFoundError, TaskNotFoundError
from conductor.services.task_service import TaskService

USER_ID = "user-1"


@pytest.fixture
def queue(db, events) -> ExecutionQueue:
    return ExecutionQueue(db, AsyncMock(), events, auto_start=False)


@pytest.fixture
def service(db, resolver, events, queue) -> TaskService:
    return TaskService(db, resolver, events, queue=queue)


@pytest.mark.asyncio
class TestCreateTask:
    """Tests for create_task."""

    async def test_work_task_starts_ready(self, service, agent):
        task = await service.create_task(agent.id, USER_ID, "Write intro", priority="high")

        assert task.status == TaskStatus.TODO
        assert task.priority == QueuePriority.HIGH
        assert task.is_dependency is False

    async def test_dependency_task_starts_blocked(self, service, agent):
        task = await service.create_task(agent.id, USER_ID, "Approve budget", is_dependency=True)

        assert task.status == TaskStatus.BLOCKED
        assert task.blocked_reason == "Requires human input"

    async def test_depends_on_creates_edge(self, db, service, agent):
        first = await service.create_task(agent.id, USER_ID, "First")

        second = await service.create_task(
            agent.id, USER_ID, "Second", depends_on_task_id=first.id
        )

        assert second.status == TaskStatus.BLOCKED
        assert second.depends_on_task_id == first.id
        assert await db.get_edge(first.id, second.id) is not None

    async def test_foreign_agent_rejected(self, service, other_agent):
        with pytest.raises(AgentNotFoundError):
            await service.create_task(other_agent.id, USER_ID, "Nope")

    async def test_unknown_prerequisite_rejected(self, db, service, agent):
        from uuid import uuid4

        with pytest.raises(TaskNotFoundError):
            await service.create_task(agent.id, USER_ID, "Orphan", depends_on_task_id=uuid4())
        assert await db.list_tasks(agent_id=agent.id) == []

    async def test_rejected_edge_removes_task(self, db, resolver, events, agent):
        resolver.create_dependency = AsyncMock(
            return_value=MagicMock(success=False, error="Dependency already exists")
        )
        service = TaskService(db, resolver, events)
        first = await service.create_task(agent.id, USER_ID, "First")

        with pytest.raises(ValueError, match="already exists"):
            await service.create_task(agent.id, USER_ID, "Second", depends_on_task_id=first.id)

        assert [t.title for t in await db.list_tasks(agent_id=agent.id)] == ["First"]


@pytest.mark.asyncio
class TestCompleteAndApprove:
    """Tests for complete_task and approve_dependency."""

    async def test_complete_unblocks_successors(self, db, service, agent):
        first = await service.create_task(agent.id, USER_ID, "First")
        second = await service.create_task(
            agent.id, USER_ID, "Second", depends_on_task_id=first.id
        )

        unblocked = await service.complete_task(first.id, USER_ID, output_summary="done")

        assert unblocked == [second.id]
        assert (await db.get_task(first.id)).output_summary == "done"
        assert (await db.get_task(second.id)).status == TaskStatus.TODO

    async def test_complete_foreign_task_rejected(self, service, other_agent, make_task):
        task = await make_task(other_agent, "theirs")

        with pytest.raises(TaskNotFoundError):
            await service.complete_task(task.id, USER_ID)

    async def test_approve_dependency_resumes_agent(self, db, service, agent):
        human = await service.create_task(
            agent.id, USER_ID, "Approve budget", is_dependency=True, priority="urgent"
        )
        follow_up = await service.create_task(
            agent.id, USER_ID, "Spend budget", depends_on_task_id=human.id
        )

        unblocked = await service.approve_dependency(human.id, USER_ID, response="Approved $5k")

        assert unblocked == [follow_up.id]
        stored = await db.get_task(human.id)
        assert stored.status == TaskStatus.DONE
        assert stored.output_summary == "Approved $5k"

        events = await db.list_events(agent.id, event_type=EventType.SUCCESS)
        assert events[0].message == "Dependency resolved: Approve budget"

        item = await db.get_active_queue_item(agent.id)
        assert item.status == QueueStatus.PENDING
        assert item.priority == QueuePriority.URGENT

    async def test_approve_work_task_rejected(self, service, agent):
        task = await service.create_task(agent.id, USER_ID, "Ordinary")

        with pytest.raises(ValueError, match="Only dependency tasks"):
            await service.approve_dependency(task.id, USER_ID)


@pytest.mark.asyncio
class TestDeleteAgent:
    """Tests for delete_agent."""

    async def test_delete_orphans_dependency_tasks(self, db, service, queue, agent):
        await service.create_task(agent.id, USER_ID, "Work 1")
        await service.create_task(agent.id, USER_ID, "Work 2")
        human = await service.create_task(agent.id, USER_ID, "Sign contract", is_dependency=True)
        enqueued = await queue.enqueue(agent.id, USER_ID)

        summary = await service.delete_agent(agent.id, USER_ID)

        assert summary == {"tasks_deleted": 2, "tasks_orphaned": 1}
        assert await db.get_agent(agent.id) is None
        orphan = await db.get_task(human.id)
        assert orphan.status == TaskStatus.ORPHANED
        assert orphan.agent_id == agent.id
        assert await db.get_queue_item(enqueued.queue_id) is None

    async def test_delete_foreign_agent_rejected(self, db, service, other_agent):
        with pytest.raises(AgentNotFoundError):
            await service.delete_agent(other_agent.id, USER_ID)
        assert await db.get_agent(other_agent.id) is not None
