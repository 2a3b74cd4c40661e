"""Task lifecycle operations layered over the dependency graph."""

from typing import TYPE_CHECKING, Any
from uuid import UUID

from conductor.domain.models import (
    Agent,
    EventType,
    QueuePriority,
    Task,
    TaskStatus,
)
from conductor.infrastructure.exceptions import AgentNotFoundError, TaskNotFoundError
from conductor.infrastructure.logger import get_logger
from conductor.services.dependency_resolver import DependencyResolver

if TYPE_CHECKING:
    from conductor.application.execution_queue import ExecutionQueue
    from conductor.domain.ports.event_sink import EventSink
    from conductor.infrastructure.database import Database

logger = get_logger(__name__)


class TaskService:
    """Create, complete, approve and orphan tasks.

    Every state change that can unblock other tasks goes through
    ``DependencyResolver.recompute_dependents``.
    """

    def __init__(
        self,
        database: "Database",
        resolver: DependencyResolver,
        events: "EventSink",
        queue: "ExecutionQueue | None" = None,
    ):
        self.db = database
        self.resolver = resolver
        self.events = events
        self.queue = queue

    async def _require_agent(self, agent_id: UUID, user_id: str) -> Agent:
        agent = await self.db.get_agent(agent_id, user_id=user_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        return agent

    async def _require_task(self, task_id: UUID, user_id: str) -> Task:
        task = await self.db.get_task(task_id)
        if task is None or await self.db.get_agent(task.agent_id, user_id=user_id) is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    async def create_task(
        self,
        agent_id: UUID,
        user_id: str,
        title: str,
        description: str = "",
        priority: QueuePriority | str = QueuePriority.MEDIUM,
        is_dependency: bool = False,
        blocked_reason: str | None = None,
        depends_on_task_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        """Create a task, optionally depending on an existing one.

        Human-dependency tasks start BLOCKED. When ``depends_on_task_id`` is
        given an edge is created and the new task's availability follows it;
        if the edge is rejected the task is removed again and the error raised.

        Raises:
            AgentNotFoundError: If the agent does not belong to user_id
            TaskNotFoundError: If depends_on_task_id is unknown or not owned
            ValueError: If the dependency edge is rejected
        """
        await self._require_agent(agent_id, user_id)
        if depends_on_task_id is not None:
            await self._require_task(depends_on_task_id, user_id)

        task = Task(
            agent_id=agent_id,
            title=title,
            description=description,
            priority=QueuePriority.coerce(priority),
            status=TaskStatus.BLOCKED if is_dependency else TaskStatus.TODO,
            is_dependency=is_dependency,
            blocked_reason=(blocked_reason or "Requires human input") if is_dependency else None,
            depends_on_task_id=depends_on_task_id,
            metadata=metadata or {},
        )
        await self.db.insert_task(task)

        if depends_on_task_id is not None:
            result = await self.resolver.create_dependency(depends_on_task_id, task.id, user_id)
            if not result.success:
                await self.db.delete_task(task.id)
                raise ValueError(result.error)
            task = await self.db.get_task(task.id) or task

        logger.info("task_created", task_id=str(task.id), agent_id=str(agent_id))
        return task

    async def complete_task(
        self, task_id: UUID, user_id: str, output_summary: str | None = None
    ) -> list[UUID]:
        """Mark a task done and unblock its successors.

        Returns:
            IDs of successors that became ready
        """
        task = await self._require_task(task_id, user_id)
        await self.db.update_task_status(task.id, TaskStatus.DONE, output_summary=output_summary)
        changes = await self.resolver.recompute_dependents(task.id)
        unblocked = [tid for tid, status in changes.items() if status == TaskStatus.TODO]

        logger.info("task_completed", task_id=str(task.id), unblocked=len(unblocked))
        return unblocked

    async def approve_dependency(
        self, task_id: UUID, user_id: str, response: str | None = None
    ) -> list[UUID]:
        """Resolve a human-dependency task and resume its agent.

        Raises:
            TaskNotFoundError: If the task is unknown or not owned
            ValueError: If the task is not a dependency task
        """
        task = await self._require_task(task_id, user_id)
        if not task.is_dependency:
            raise ValueError("Only dependency tasks can be approved")

        unblocked = await self.complete_task(
            task.id, user_id, output_summary=response or "Approved"
        )
        await self.events.log_event(
            task.agent_id,
            user_id,
            EventType.SUCCESS,
            f"Dependency resolved: {task.title}",
            {"task_id": str(task.id), "unblocked_tasks": [str(t) for t in unblocked]},
        )

        if self.queue is not None:
            await self.queue.enqueue(task.agent_id, user_id, priority=task.priority)
        return unblocked

    async def delete_agent(self, agent_id: UUID, user_id: str) -> dict[str, int]:
        """Delete an agent, orphaning its dependency tasks.

        Work tasks are deleted, dependency tasks become ORPHANED and stay
        visible, and a pending queue item is cancelled before the agent row
        is removed.
        """
        await self._require_agent(agent_id, user_id)

        cancelled = False
        if self.queue is not None:
            cancelled = await self.queue.cancel_agent(agent_id)

        deleted = await self.db.delete_agent_work_tasks(agent_id)
        orphaned = await self.db.orphan_dependency_tasks(agent_id)
        await self.db.delete_agent(agent_id)

        logger.info(
            "agent_deleted",
            agent_id=str(agent_id),
            tasks_deleted=deleted,
            tasks_orphaned=orphaned,
            queue_cancelled=cancelled,
        )
        return {"tasks_deleted": deleted, "tasks_orphaned": orphaned}
