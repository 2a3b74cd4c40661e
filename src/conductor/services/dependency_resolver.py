"""Task dependency graph management.

This module maintains the directed edge set between tasks:
- Edge creation with ownership, duplicate and cycle checks (DFS)
- Readiness recomputation when predecessors change
- Topological ordering (Kahn's algorithm) and critical path analysis
"""

import asyncio
from collections import defaultdict, deque
from typing import TYPE_CHECKING, Any
from uuid import UUID

import aiosqlite

from conductor.domain.models import (
    DependencyEdge,
    DependencyResult,
    GraphMetrics,
    Task,
    TaskStatus,
)
from conductor.infrastructure.exceptions import CircularDependencyError
from conductor.infrastructure.logger import get_logger

if TYPE_CHECKING:
    from conductor.infrastructure.database import Database

logger = get_logger(__name__)


class DependencyResolver:
    """Handles dependency graph mutations and queries.

    All edge insertions go through a single mutation lock so that the cycle
    check and the insert it guards cannot interleave with another insert.
    """

    def __init__(self, database: "Database"):
        """Initialize dependency resolver.

        Args:
            database: Database instance holding tasks and edges
        """
        self.db = database
        self._mutation_lock = asyncio.Lock()

    async def _owned_task(self, task_id: UUID, user_id: str) -> Task | None:
        """Return the task if its agent belongs to ``user_id``."""
        task = await self.db.get_task(task_id)
        if task is None:
            return None
        agent = await self.db.get_agent(task.agent_id, user_id=user_id)
        return task if agent is not None else None

    async def create_dependency(
        self, source_task_id: UUID, target_task_id: UUID, user_id: str
    ) -> DependencyResult:
        """Add an edge meaning ``source`` must be done before ``target`` unblocks.

        Args:
            source_task_id: Prerequisite task
            target_task_id: Dependent task
            user_id: Caller; must own both tasks

        Returns:
            DependencyResult with the new edge id, or the rejection reason
        """
        if source_task_id == target_task_id:
            return DependencyResult(success=False, error="A task cannot depend on itself")

        source = await self._owned_task(source_task_id, user_id)
        target = await self._owned_task(target_task_id, user_id)
        if source is None or target is None:
            return DependencyResult(success=False, error="Task not found or access denied")

        async with self._mutation_lock:
            if await self.db.get_edge(source_task_id, target_task_id) is not None:
                return DependencyResult(success=False, error="Dependency already exists")

            try:
                would_cycle = await self.would_create_cycle(source_task_id, target_task_id)
            except Exception as e:
                # Unknown graph state is treated as unsafe
                logger.error(
                    "cycle_check_failed",
                    source_task_id=str(source_task_id),
                    target_task_id=str(target_task_id),
                    error=str(e),
                )
                return DependencyResult(
                    success=False, error="Unable to verify dependency graph; dependency rejected"
                )

            if would_cycle:
                logger.info(
                    "dependency_rejected_cycle",
                    source_task_id=str(source_task_id),
                    target_task_id=str(target_task_id),
                )
                return DependencyResult(
                    success=False, error="This dependency would create a circular dependency"
                )

            edge = DependencyEdge(source_task_id=source_task_id, target_task_id=target_task_id)
            try:
                await self.db.insert_dependency_edge(edge)
            except aiosqlite.IntegrityError as e:
                return DependencyResult(success=False, error=f"Failed to create dependency: {e}")

        logger.info(
            "dependency_created",
            edge_id=str(edge.id),
            source_task_id=str(source_task_id),
            target_task_id=str(target_task_id),
        )
        await self.recompute_availability(target_task_id)
        return DependencyResult(success=True, edge_id=edge.id)

    async def _build_adjacency(self) -> dict[UUID, set[UUID]]:
        """Source -> successors over the full edge set."""
        graph: dict[UUID, set[UUID]] = defaultdict(set)
        for edge in await self.db.get_all_edges():
            graph[edge.source_task_id].add(edge.target_task_id)
        return graph

    async def would_create_cycle(self, source_task_id: UUID, target_task_id: UUID) -> bool:
        """True if ``source`` is reachable from ``target`` along existing edges.

        Raises:
            Exception: Whatever the store raises while loading edges
        """
        graph = await self._build_adjacency()

        stack = [target_task_id]
        visited: set[UUID] = set()
        while stack:
            node = stack.pop()
            if node == source_task_id:
                return True
            if node in visited:
                continue
            visited.add(node)
            stack.extend(graph.get(node, ()))
        return False

    async def recompute_availability(self, task_id: UUID) -> TaskStatus | None:
        """Re-derive a task's blocked/ready state from its predecessors.

        If every predecessor is done, a blocked task becomes TODO unless it is
        waiting on a human. If any predecessor is not done, the task becomes
        BLOCKED. Done and orphaned tasks are never changed, and a task with no
        incoming edges is left alone. Safe to call repeatedly.

        Returns:
            The task's status after recomputation, or None if it does not exist
        """
        task = await self.db.get_task(task_id)
        if task is None:
            return None
        if task.status in (TaskStatus.DONE, TaskStatus.ORPHANED):
            return task.status

        incoming = await self.db.get_incoming_edges(task_id)
        if not incoming:
            return task.status

        sources = await self.db.get_tasks(edge.source_task_id for edge in incoming)
        pending = [s for s in sources if s.status != TaskStatus.DONE]

        if not pending:
            if task.status == TaskStatus.BLOCKED and not task.is_dependency:
                await self.db.update_task_status(task_id, TaskStatus.TODO)
                logger.info("task_unblocked", task_id=str(task_id))
                return TaskStatus.TODO
            return task.status

        if task.status != TaskStatus.BLOCKED:
            await self.db.update_task_status(
                task_id,
                TaskStatus.BLOCKED,
                blocked_reason=f"Waiting on {len(pending)} prerequisite task(s)",
            )
            logger.info("task_blocked", task_id=str(task_id), pending=len(pending))
        return TaskStatus.BLOCKED

    async def recompute_dependents(self, task_id: UUID) -> dict[UUID, TaskStatus | None]:
        """Recompute every direct successor of ``task_id``."""
        results: dict[UUID, TaskStatus | None] = {}
        for edge in await self.db.get_outgoing_edges(task_id):
            results[edge.target_task_id] = await self.recompute_availability(edge.target_task_id)
        return results

    async def get_blocking_tasks(self, task_id: UUID) -> list[Task]:
        """Predecessors of ``task_id`` that are not done yet."""
        incoming = await self.db.get_incoming_edges(task_id)
        sources = await self.db.get_tasks(edge.source_task_id for edge in incoming)
        return [s for s in sources if s.status != TaskStatus.DONE]

    async def get_execution_order(self, task_ids: list[UUID]) -> list[UUID]:
        """Return topological sort of tasks using Kahn's algorithm.

        Only edges between the given tasks are considered. Ties keep the
        input order.

        Raises:
            CircularDependencyError: If the subgraph contains a cycle
        """
        if not task_ids:
            return []

        wanted = set(task_ids)
        graph: dict[UUID, list[UUID]] = defaultdict(list)
        in_degree: dict[UUID, int] = {task_id: 0 for task_id in task_ids}

        for edge in await self.db.get_all_edges():
            if edge.source_task_id in wanted and edge.target_task_id in wanted:
                graph[edge.source_task_id].append(edge.target_task_id)
                in_degree[edge.target_task_id] += 1

        queue = deque(task_id for task_id in in_degree if in_degree[task_id] == 0)
        result: list[UUID] = []

        while queue:
            node = queue.popleft()
            result.append(node)
            for neighbor in graph.get(node, []):
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if len(result) != len(in_degree):
            unprocessed = wanted - set(result)
            raise CircularDependencyError(
                f"Cannot create execution order: circular dependencies detected. "
                f"Unprocessed tasks: {unprocessed}"
            )

        return result

    async def _agent_graph(
        self, agent_id: UUID
    ) -> tuple[list[Task], list[DependencyEdge]]:
        tasks = await self.db.list_tasks(agent_id=agent_id, limit=10_000)
        task_ids = {t.id for t in tasks}
        edges = [
            e
            for e in await self.db.get_agent_edges(agent_id)
            if e.source_task_id in task_ids and e.target_task_id in task_ids
        ]
        return tasks, edges

    async def find_critical_path(self, agent_id: UUID) -> list[UUID]:
        """Longest chain of dependent tasks for an agent (by number of edges)."""
        tasks, edges = await self._agent_graph(agent_id)
        if not tasks:
            return []

        order = await self.get_execution_order([t.id for t in tasks])
        predecessors: dict[UUID, list[UUID]] = defaultdict(list)
        for edge in edges:
            predecessors[edge.target_task_id].append(edge.source_task_id)

        length: dict[UUID, int] = {}
        best_prev: dict[UUID, UUID | None] = {}
        for node in order:
            length[node] = 0
            best_prev[node] = None
            for prev in predecessors.get(node, []):
                if length[prev] + 1 > length[node]:
                    length[node] = length[prev] + 1
                    best_prev[node] = prev

        end = max(order, key=lambda n: length[n])
        path: list[UUID] = []
        node: UUID | None = end
        while node is not None:
            path.append(node)
            node = best_prev[node]
        path.reverse()
        return path

    async def get_graph_metrics(self, agent_id: UUID) -> GraphMetrics:
        tasks, edges = await self._agent_graph(agent_id)
        in_degree: dict[UUID, int] = defaultdict(int)
        out_degree: dict[UUID, int] = defaultdict(int)
        for edge in edges:
            out_degree[edge.source_task_id] += 1
            in_degree[edge.target_task_id] += 1

        critical_path = await self.find_critical_path(agent_id)

        return GraphMetrics(
            total_tasks=len(tasks),
            total_edges=len(edges),
            blocked_tasks=sum(1 for t in tasks if t.status == TaskStatus.BLOCKED),
            ready_tasks=sum(1 for t in tasks if t.status == TaskStatus.TODO),
            done_tasks=sum(1 for t in tasks if t.status == TaskStatus.DONE),
            critical_path_length=max(len(critical_path) - 1, 0),
            max_in_degree=max(in_degree.values(), default=0),
            max_out_degree=max(out_degree.values(), default=0),
        )

    async def export_graph(self, agent_id: UUID) -> dict[str, Any]:
        """Nodes and edges of an agent's task graph as plain JSON-able data."""
        tasks, edges = await self._agent_graph(agent_id)
        return {
            "agent_id": str(agent_id),
            "nodes": [
                {
                    "id": str(t.id),
                    "title": t.title,
                    "status": t.status.value,
                    "priority": t.priority.value,
                    "is_dependency": t.is_dependency,
                }
                for t in tasks
            ],
            "edges": [
                {
                    "id": str(e.id),
                    "source": str(e.source_task_id),
                    "target": str(e.target_task_id),
                }
                for e in edges
            ],
        }
