"""Database infrastructure using SQLite with WAL mode."""

import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID

import aiosqlite
from aiosqlite import Connection

from conductor.domain.models import (
    Agent,
    AgentEvent,
    AgentStatus,
    DependencyEdge,
    EventType,
    QueueItem,
    QueuePriority,
    QueueStatus,
    Task,
    TaskStatus,
    utcnow,
)

# Rank expression shared by every query that orders by priority
_PRIORITY_RANK_SQL = (
    "CASE priority WHEN 'urgent' THEN 4 WHEN 'high' THEN 3 "
    "WHEN 'medium' THEN 2 WHEN 'low' THEN 1 ELSE 0 END"
)


def _iso(value: datetime | None) -> str | None:
    """Serialize a datetime as an ISO string in UTC (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """SQLite database with WAL mode for concurrent access."""

    def __init__(self, db_path: Path) -> None:
        """Initialize database.

        Args:
            db_path: Path to SQLite database file (or Path(":memory:"))
        """
        self.db_path = db_path
        self._initialized = False
        self._shared_conn: Connection | None = None  # For :memory: databases

    async def initialize(self) -> None:
        """Initialize database schema and settings."""
        if self._initialized:
            return

        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self._get_connection() as conn:
            # Enable WAL mode for concurrent reads
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA synchronous=NORMAL")
            await conn.execute("PRAGMA foreign_keys=ON")
            await conn.execute("PRAGMA busy_timeout=5000")

            await self._create_tables(conn)
            await self._create_indexes(conn)
            await conn.commit()

        self._initialized = True

    async def close(self) -> None:
        """Close the database connection.

        Only needed for :memory: databases to clean up the shared connection.
        File-based databases close connections automatically.
        """
        if self._shared_conn is not None:
            await self._shared_conn.close()
            self._shared_conn = None
            self._initialized = False

    @asynccontextmanager
    async def _get_connection(self) -> AsyncIterator[Connection]:
        """Get database connection with proper settings.

        For :memory: databases, maintains a shared connection to preserve data
        across multiple operations. For file databases, creates a new connection
        each time.
        """
        if str(self.db_path) == ":memory:":
            if self._shared_conn is None:
                self._shared_conn = await aiosqlite.connect(":memory:")
                self._shared_conn.row_factory = aiosqlite.Row
                await self._shared_conn.execute("PRAGMA foreign_keys=ON")
            yield self._shared_conn
        else:
            async with aiosqlite.connect(str(self.db_path)) as conn:
                conn.row_factory = aiosqlite.Row
                # SQLite defaults to foreign_keys=OFF on every new connection
                await conn.execute("PRAGMA foreign_keys=ON")
                yield conn

    async def _create_tables(self, conn: Connection) -> None:
        """Create the tables owned by the orchestrator."""
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                goal TEXT NOT NULL DEFAULT '',
                agent_type TEXT NOT NULL DEFAULT 'general',
                status TEXT NOT NULL DEFAULT 'idle',
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """
        )

        # No foreign key on agent_id: orphaned dependency tasks outlive their agent
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                priority TEXT NOT NULL DEFAULT 'medium',
                is_dependency INTEGER NOT NULL DEFAULT 0,
                blocked_reason TEXT,
                depends_on_task_id TEXT,
                depends_on_agent_id TEXT,
                output_summary TEXT,
                auto_generated INTEGER NOT NULL DEFAULT 0,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                completed_at TIMESTAMP
            )
        """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS task_dependencies (
                id TEXT PRIMARY KEY,
                source_task_id TEXT NOT NULL,
                target_task_id TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                FOREIGN KEY (source_task_id) REFERENCES tasks(id) ON DELETE CASCADE,
                FOREIGN KEY (target_task_id) REFERENCES tasks(id) ON DELETE CASCADE,
                CHECK (source_task_id != target_task_id),
                UNIQUE (source_task_id, target_task_id)
            )
        """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_queue (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                priority TEXT NOT NULL DEFAULT 'medium',
                status TEXT NOT NULL DEFAULT 'pending',
                scheduled_at TIMESTAMP NOT NULL,
                started_at TIMESTAMP,
                completed_at TIMESTAMP,
                error_message TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TIMESTAMP NOT NULL,
                FOREIGN KEY (agent_id) REFERENCES agents(id) ON DELETE CASCADE
            )
        """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_events (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                user_id TEXT,
                event_type TEXT NOT NULL,
                message TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TIMESTAMP NOT NULL
            )
        """
        )

    async def _create_indexes(self, conn: Connection) -> None:
        """Create indexes, including the one-active-run-per-agent guarantee."""
        await conn.execute(
            """CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_one_active_per_agent
               ON execution_queue(agent_id)
               WHERE status IN ('pending', 'running')"""
        )
        await conn.execute(
            """CREATE INDEX IF NOT EXISTS idx_queue_status_scheduled
               ON execution_queue(status, scheduled_at)"""
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_queue_created ON execution_queue(created_at)"
        )
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_agents_user ON agents(user_id)")
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_agent_status ON tasks(agent_id, status)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_deps_source ON task_dependencies(source_task_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_deps_target ON task_dependencies(target_task_id)"
        )
        await conn.execute(
            """CREATE INDEX IF NOT EXISTS idx_events_agent_created
               ON agent_events(agent_id, created_at DESC)"""
        )

    # Agent operations
    async def insert_agent(self, agent: Agent) -> None:
        """Insert a new agent into the database."""
        async with self._get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO agents (
                    id, user_id, name, goal, agent_type, status, metadata,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(agent.id),
                    agent.user_id,
                    agent.name,
                    agent.goal,
                    agent.agent_type,
                    agent.status.value,
                    json.dumps(agent.metadata),
                    _iso(agent.created_at),
                    _iso(agent.updated_at),
                ),
            )
            await conn.commit()

    async def get_agent(self, agent_id: UUID, user_id: str | None = None) -> Agent | None:
        """Get agent by ID, optionally restricted to an owner."""
        async with self._get_connection() as conn:
            if user_id is None:
                cursor = await conn.execute("SELECT * FROM agents WHERE id = ?", (str(agent_id),))
            else:
                cursor = await conn.execute(
                    "SELECT * FROM agents WHERE id = ? AND user_id = ?",
                    (str(agent_id), user_id),
                )
            row = await cursor.fetchone()
            return self._row_to_agent(row) if row else None

    async def list_agents(
        self, user_id: str | None = None, status: AgentStatus | None = None
    ) -> list[Agent]:
        """List agents with optional owner and status filters."""
        async with self._get_connection() as conn:
            where_clauses: list[str] = []
            params: list[Any] = []
            if user_id:
                where_clauses.append("user_id = ?")
                params.append(user_id)
            if status:
                where_clauses.append("status = ?")
                params.append(status.value)
            where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
            cursor = await conn.execute(
                f"SELECT * FROM agents {where_sql} ORDER BY created_at ASC", tuple(params)
            )
            rows = await cursor.fetchall()
            return [self._row_to_agent(row) for row in rows]

    async def update_agent_status(self, agent_id: UUID, status: AgentStatus) -> None:
        """Update agent status and updated_at timestamp."""
        async with self._get_connection() as conn:
            await conn.execute(
                "UPDATE agents SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, _iso(utcnow()), str(agent_id)),
            )
            await conn.commit()

    async def update_agent_metadata(self, agent_id: UUID, metadata: dict[str, Any]) -> None:
        """Replace agent metadata."""
        async with self._get_connection() as conn:
            await conn.execute(
                "UPDATE agents SET metadata = ?, updated_at = ? WHERE id = ?",
                (json.dumps(metadata, default=str), _iso(utcnow()), str(agent_id)),
            )
            await conn.commit()

    async def delete_agent(self, agent_id: UUID) -> bool:
        """Delete an agent row. Queue items cascade; tasks are handled by the caller."""
        async with self._get_connection() as conn:
            cursor = await conn.execute("DELETE FROM agents WHERE id = ?", (str(agent_id),))
            await conn.commit()
            return cursor.rowcount > 0

    def _row_to_agent(self, row: aiosqlite.Row) -> Agent:
        """Convert database row to Agent model."""
        return Agent(
            id=UUID(row["id"]),
            user_id=row["user_id"],
            name=row["name"],
            goal=row["goal"],
            agent_type=row["agent_type"],
            status=AgentStatus(row["status"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # Task operations
    async def insert_task(self, task: Task) -> None:
        """Insert a new task into the database."""
        async with self._get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO tasks (
                    id, agent_id, title, description, status, priority,
                    is_dependency, blocked_reason, depends_on_task_id,
                    depends_on_agent_id, output_summary, auto_generated, metadata,
                    created_at, updated_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(task.id),
                    str(task.agent_id),
                    task.title,
                    task.description,
                    task.status.value,
                    task.priority.value,
                    int(task.is_dependency),
                    task.blocked_reason,
                    str(task.depends_on_task_id) if task.depends_on_task_id else None,
                    str(task.depends_on_agent_id) if task.depends_on_agent_id else None,
                    task.output_summary,
                    int(task.auto_generated),
                    json.dumps(task.metadata),
                    _iso(task.created_at),
                    _iso(task.updated_at),
                    _iso(task.completed_at),
                ),
            )
            await conn.commit()

    async def get_task(self, task_id: UUID) -> Task | None:
        """Get task by ID."""
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT * FROM tasks WHERE id = ?", (str(task_id),))
            row = await cursor.fetchone()
            if row:
                return self._row_to_task(row)
            return None

    async def get_tasks(self, task_ids: Iterable[UUID]) -> list[Task]:
        """Get several tasks by ID in one query. Unknown IDs are skipped."""
        ids = [str(task_id) for task_id in task_ids]
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                f"SELECT * FROM tasks WHERE id IN ({placeholders})", tuple(ids)
            )
            rows = await cursor.fetchall()
            return [self._row_to_task(row) for row in rows]

    async def list_tasks(
        self,
        agent_id: UUID | None = None,
        status: TaskStatus | None = None,
        statuses: list[TaskStatus] | None = None,
        is_dependency: bool | None = None,
        limit: int = 100,
    ) -> list[Task]:
        """List tasks with optional filters.

        Args:
            agent_id: Filter by owning agent
            status: Filter by a single status
            statuses: Filter by any of several statuses
            is_dependency: Filter human-blocked (True) or agent (False) tasks
            limit: Maximum number of tasks to return

        Returns:
            Tasks ordered by priority (urgent first), then creation time
        """
        async with self._get_connection() as conn:
            where_clauses: list[str] = []
            params: list[Any] = []

            if agent_id:
                where_clauses.append("agent_id = ?")
                params.append(str(agent_id))

            if status:
                where_clauses.append("status = ?")
                params.append(status.value)

            if statuses:
                where_clauses.append(f"status IN ({','.join('?' * len(statuses))})")
                params.extend(s.value for s in statuses)

            if is_dependency is not None:
                where_clauses.append("is_dependency = ?")
                params.append(int(is_dependency))

            where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""

            query = f"""
                SELECT * FROM tasks
                {where_sql}
                ORDER BY {_PRIORITY_RANK_SQL} DESC, created_at ASC
                LIMIT ?
            """
            params.append(limit)

            cursor = await conn.execute(query, tuple(params))
            rows = await cursor.fetchall()
            return [self._row_to_task(row) for row in rows]

    async def update_task_status(
        self,
        task_id: UUID,
        status: TaskStatus,
        output_summary: str | None = None,
        blocked_reason: str | None = None,
    ) -> None:
        """Update task status and updated_at timestamp.

        Moving to DONE stamps completed_at and stores ``output_summary``.
        ``blocked_reason`` is only written when given.
        """
        async with self._get_connection() as conn:
            now = _iso(utcnow())
            if status == TaskStatus.DONE:
                await conn.execute(
                    """UPDATE tasks SET status = ?, output_summary = ?, completed_at = ?,
                       updated_at = ? WHERE id = ?""",
                    (status.value, output_summary, now, now, str(task_id)),
                )
            elif blocked_reason is not None:
                await conn.execute(
                    "UPDATE tasks SET status = ?, blocked_reason = ?, updated_at = ? WHERE id = ?",
                    (status.value, blocked_reason, now, str(task_id)),
                )
            else:
                await conn.execute(
                    "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
                    (status.value, now, str(task_id)),
                )
            await conn.commit()

    async def delete_task(self, task_id: UUID) -> bool:
        """Delete a task. Its edges are removed by cascade."""
        async with self._get_connection() as conn:
            cursor = await conn.execute("DELETE FROM tasks WHERE id = ?", (str(task_id),))
            await conn.commit()
            return cursor.rowcount > 0

    async def delete_agent_work_tasks(self, agent_id: UUID) -> int:
        """Delete an agent's non-dependency tasks. Returns rows deleted."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "DELETE FROM tasks WHERE agent_id = ? AND is_dependency = 0",
                (str(agent_id),),
            )
            await conn.commit()
            return cursor.rowcount

    async def orphan_dependency_tasks(self, agent_id: UUID) -> int:
        """Mark an agent's open dependency tasks orphaned. Returns rows updated."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE tasks SET status = ?, updated_at = ?
                WHERE agent_id = ? AND is_dependency = 1 AND status != ?
                """,
                (
                    TaskStatus.ORPHANED.value,
                    _iso(utcnow()),
                    str(agent_id),
                    TaskStatus.DONE.value,
                ),
            )
            await conn.commit()
            return cursor.rowcount

    def _row_to_task(self, row: aiosqlite.Row) -> Task:
        """Convert database row to Task model."""
        return Task(
            id=UUID(row["id"]),
            agent_id=UUID(row["agent_id"]),
            title=row["title"],
            description=row["description"] or "",
            status=TaskStatus(row["status"]),
            priority=QueuePriority.coerce(row["priority"]),
            is_dependency=bool(row["is_dependency"]),
            blocked_reason=row["blocked_reason"],
            depends_on_task_id=UUID(row["depends_on_task_id"])
            if row["depends_on_task_id"]
            else None,
            depends_on_agent_id=UUID(row["depends_on_agent_id"])
            if row["depends_on_agent_id"]
            else None,
            output_summary=row["output_summary"],
            auto_generated=bool(row["auto_generated"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
            completed_at=_parse_dt(row["completed_at"]),
        )

    # Dependency edge operations
    async def insert_dependency_edge(self, edge: DependencyEdge) -> None:
        """Insert a dependency edge.

        Raises:
            aiosqlite.IntegrityError: On a duplicate edge, a self-edge, or an unknown task
        """
        async with self._get_connection() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO task_dependencies (id, source_task_id, target_task_id, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        str(edge.id),
                        str(edge.source_task_id),
                        str(edge.target_task_id),
                        _iso(edge.created_at),
                    ),
                )
                await conn.commit()
            except aiosqlite.IntegrityError:
                await conn.rollback()
                raise

    async def get_edge(self, source_task_id: UUID, target_task_id: UUID) -> DependencyEdge | None:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM task_dependencies WHERE source_task_id = ? AND target_task_id = ?",
                (str(source_task_id), str(target_task_id)),
            )
            row = await cursor.fetchone()
            return self._row_to_edge(row) if row else None

    async def get_all_edges(self) -> list[DependencyEdge]:
        """Load the full edge set (used for cycle detection)."""
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT * FROM task_dependencies ORDER BY created_at ASC")
            rows = await cursor.fetchall()
            return [self._row_to_edge(row) for row in rows]

    async def get_incoming_edges(self, task_id: UUID) -> list[DependencyEdge]:
        """Edges whose target is ``task_id`` (its predecessors)."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM task_dependencies WHERE target_task_id = ? ORDER BY created_at ASC",
                (str(task_id),),
            )
            rows = await cursor.fetchall()
            return [self._row_to_edge(row) for row in rows]

    async def get_outgoing_edges(self, task_id: UUID) -> list[DependencyEdge]:
        """Edges whose source is ``task_id`` (its successors)."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM task_dependencies WHERE source_task_id = ? ORDER BY created_at ASC",
                (str(task_id),),
            )
            rows = await cursor.fetchall()
            return [self._row_to_edge(row) for row in rows]

    async def get_agent_edges(self, agent_id: UUID) -> list[DependencyEdge]:
        """Edges touching any task of an agent."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT DISTINCT d.* FROM task_dependencies d
                JOIN tasks t ON t.id = d.source_task_id OR t.id = d.target_task_id
                WHERE t.agent_id = ?
                ORDER BY d.created_at ASC
                """,
                (str(agent_id),),
            )
            rows = await cursor.fetchall()
            return [self._row_to_edge(row) for row in rows]

    def _row_to_edge(self, row: aiosqlite.Row) -> DependencyEdge:
        return DependencyEdge(
            id=UUID(row["id"]),
            source_task_id=UUID(row["source_task_id"]),
            target_task_id=UUID(row["target_task_id"]),
            created_at=_parse_dt(row["created_at"]),
        )

    # Execution queue operations
    async def insert_queue_item(self, item: QueueItem) -> None:
        """Insert a queue item.

        Raises:
            aiosqlite.IntegrityError: If the agent already has an active item
                or the agent does not exist
        """
        async with self._get_connection() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO execution_queue (
                        id, agent_id, user_id, priority, status, scheduled_at,
                        started_at, completed_at, error_message, retry_count,
                        max_retries, metadata, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(item.id),
                        str(item.agent_id),
                        item.user_id,
                        item.priority.value,
                        item.status.value,
                        _iso(item.scheduled_at),
                        _iso(item.started_at),
                        _iso(item.completed_at),
                        item.error_message,
                        item.retry_count,
                        item.max_retries,
                        json.dumps(item.metadata),
                        _iso(item.created_at),
                    ),
                )
                await conn.commit()
            except aiosqlite.IntegrityError:
                await conn.rollback()
                raise

    async def get_queue_item(self, queue_id: UUID) -> QueueItem | None:
        """Get queue item by ID."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM execution_queue WHERE id = ?", (str(queue_id),)
            )
            row = await cursor.fetchone()
            return self._row_to_queue_item(row) if row else None

    async def get_active_queue_item(self, agent_id: UUID) -> QueueItem | None:
        """Newest pending or running item for an agent."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM execution_queue
                WHERE agent_id = ? AND status IN (?, ?)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (str(agent_id), QueueStatus.PENDING.value, QueueStatus.RUNNING.value),
            )
            row = await cursor.fetchone()
            return self._row_to_queue_item(row) if row else None

    async def get_due_queue_items(self, now: datetime, limit: int) -> list[QueueItem]:
        """Pending items due at ``now``, urgent first, then oldest scheduled_at."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT * FROM execution_queue
                WHERE status = ? AND julianday(scheduled_at) <= julianday(?)
                ORDER BY {_PRIORITY_RANK_SQL} DESC, julianday(scheduled_at) ASC
                LIMIT ?
                """,
                (QueueStatus.PENDING.value, _iso(now), limit),
            )
            rows = await cursor.fetchall()
            return [self._row_to_queue_item(row) for row in rows]

    async def mark_queue_item_running(self, queue_id: UUID) -> bool:
        """Conditionally move pending -> running. Returns False if the item was not pending."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE execution_queue SET status = ?, started_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    QueueStatus.RUNNING.value,
                    _iso(utcnow()),
                    str(queue_id),
                    QueueStatus.PENDING.value,
                ),
            )
            await conn.commit()
            return cursor.rowcount > 0

    async def complete_queue_item(self, queue_id: UUID) -> None:
        async with self._get_connection() as conn:
            await conn.execute(
                "UPDATE execution_queue SET status = ?, completed_at = ? WHERE id = ?",
                (QueueStatus.COMPLETED.value, _iso(utcnow()), str(queue_id)),
            )
            await conn.commit()

    async def reschedule_queue_item(
        self,
        queue_id: UUID,
        retry_count: int,
        scheduled_at: datetime,
        error_message: str | None,
    ) -> None:
        """Put a failed item back to pending for a later attempt."""
        async with self._get_connection() as conn:
            await conn.execute(
                """
                UPDATE execution_queue
                SET status = ?, retry_count = ?, scheduled_at = ?, error_message = ?,
                    started_at = NULL
                WHERE id = ?
                """,
                (
                    QueueStatus.PENDING.value,
                    retry_count,
                    _iso(scheduled_at),
                    error_message,
                    str(queue_id),
                ),
            )
            await conn.commit()

    async def fail_queue_item(
        self, queue_id: UUID, retry_count: int, error_message: str | None
    ) -> None:
        """Mark an item terminally failed."""
        async with self._get_connection() as conn:
            await conn.execute(
                """
                UPDATE execution_queue
                SET status = ?, retry_count = ?, error_message = ?, completed_at = ?
                WHERE id = ?
                """,
                (
                    QueueStatus.FAILED.value,
                    retry_count,
                    error_message,
                    _iso(utcnow()),
                    str(queue_id),
                ),
            )
            await conn.commit()

    async def cancel_queue_item(self, queue_id: UUID) -> bool:
        """Conditionally move pending -> cancelled. Returns False if nothing changed."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE execution_queue SET status = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    QueueStatus.CANCELLED.value,
                    _iso(utcnow()),
                    str(queue_id),
                    QueueStatus.PENDING.value,
                ),
            )
            await conn.commit()
            return cursor.rowcount > 0

    async def get_stale_running_queue_items(self, started_before: datetime) -> list[QueueItem]:
        """Running items whose started_at is older than ``started_before``."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM execution_queue
                WHERE status = ? AND julianday(started_at) < julianday(?)
                ORDER BY started_at ASC
                """,
                (QueueStatus.RUNNING.value, _iso(started_before)),
            )
            rows = await cursor.fetchall()
            return [self._row_to_queue_item(row) for row in rows]

    async def count_queue_items_by_status(self, since: datetime) -> dict[QueueStatus, int]:
        """Count items created since ``since`` grouped by status."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT status, COUNT(*) AS n FROM execution_queue
                WHERE julianday(created_at) >= julianday(?)
                GROUP BY status
                """,
                (_iso(since),),
            )
            rows = await cursor.fetchall()
            return {QueueStatus(row["status"]): row["n"] for row in rows}

    def _row_to_queue_item(self, row: aiosqlite.Row) -> QueueItem:
        """Convert database row to QueueItem model."""
        return QueueItem(
            id=UUID(row["id"]),
            agent_id=UUID(row["agent_id"]),
            user_id=row["user_id"],
            priority=QueuePriority.coerce(row["priority"]),
            status=QueueStatus(row["status"]),
            scheduled_at=_parse_dt(row["scheduled_at"]),
            started_at=_parse_dt(row["started_at"]),
            completed_at=_parse_dt(row["completed_at"]),
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=_parse_dt(row["created_at"]),
        )

    # Event operations
    async def insert_event(self, event: AgentEvent) -> None:
        async with self._get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO agent_events (id, agent_id, user_id, event_type, message, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(event.id),
                    str(event.agent_id),
                    event.user_id,
                    event.event_type.value,
                    event.message,
                    json.dumps(event.metadata),
                    _iso(event.created_at),
                ),
            )
            await conn.commit()

    async def list_events(
        self, agent_id: UUID, event_type: EventType | None = None, limit: int = 100
    ) -> list[AgentEvent]:
        """Most recent events for an agent, newest first."""
        async with self._get_connection() as conn:
            params: list[Any] = [str(agent_id)]
            type_sql = ""
            if event_type:
                type_sql = "AND event_type = ?"
                params.append(event_type.value)
            params.append(limit)
            cursor = await conn.execute(
                f"""
                SELECT * FROM agent_events
                WHERE agent_id = ? {type_sql}
                ORDER BY created_at DESC
                LIMIT ?
                """,
                tuple(params),
            )
            rows = await cursor.fetchall()
            return [
                AgentEvent(
                    id=UUID(row["id"]),
                    agent_id=UUID(row["agent_id"]),
                    user_id=row["user_id"],
                    event_type=EventType(row["event_type"]),
                    message=row["message"],
                    metadata=json.loads(row["metadata"]) if row["metadata"] else {},
                    created_at=_parse_dt(row["created_at"]),
                )
                for row in rows
            ]
