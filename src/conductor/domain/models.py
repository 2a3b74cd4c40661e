"""Core domain models for Conductor."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class QueuePriority(str, Enum):
    """Scheduling priority shared by queue items and tasks."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Numeric rank used for ordering (urgent first)."""
        return _PRIORITY_RANKS[self]

    @classmethod
    def coerce(cls, value: Any, default: "QueuePriority | None" = None) -> "QueuePriority":
        """Parse a loosely-typed priority, falling back to ``default`` (medium)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default or cls.MEDIUM


_PRIORITY_RANKS = {
    QueuePriority.LOW: 1,
    QueuePriority.MEDIUM: 2,
    QueuePriority.HIGH: 3,
    QueuePriority.URGENT: 4,
}


class QueueStatus(str, Enum):
    """Execution queue item lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_QUEUE_STATUSES = (QueueStatus.PENDING, QueueStatus.RUNNING)


class TaskStatus(str, Enum):
    """Task lifecycle states.

    ``TODO`` doubles as the "ready" state: a task that is no longer blocked by
    predecessors goes back to ``TODO`` so the agent executor can pick it up.
    """

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    ORPHANED = "orphaned"


class AgentStatus(str, Enum):
    """Agent lifecycle states."""

    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    ERROR = "error"


class EventType(str, Enum):
    """Kinds of human-visible agent events."""

    INFO = "info"
    ACTION = "action"
    PROGRESS = "progress"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    DEPENDENCY = "dependency"


class NextAction(str, Enum):
    """What an agent wants to do after a unit of work."""

    CONTINUE = "continue"
    PAUSE = "pause"
    WAIT_FOR_DEPENDENCY = "wait_for_dependency"
    COMPLETE = "complete"


class Agent(BaseModel):
    """A goal-driven worker owned by a user."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    name: str
    goal: str = ""
    agent_type: str = "general"
    status: AgentStatus = Field(default=AgentStatus.IDLE)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict()


class QueueItem(BaseModel):
    """One scheduled (or attempted) run of an agent.

    Attributes:
        scheduled_at: The run is not eligible for dequeue before this time
        retry_count: Number of failed attempts so far
        error_message: Latest failure message (overwritten on each attempt)
    """

    id: UUID = Field(default_factory=uuid4)
    agent_id: UUID
    user_id: str
    priority: QueuePriority = Field(default=QueuePriority.MEDIUM)
    status: QueueStatus = Field(default=QueueStatus.PENDING)
    scheduled_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict()

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_QUEUE_STATUSES


class Task(BaseModel):
    """A unit of agent work.

    Attributes:
        is_dependency: True when the task needs human input or approval
        blocked_reason: Why the task is blocked (shown to the user)
        output_summary: Result text, only set when the task becomes done
    """

    id: UUID = Field(default_factory=uuid4)
    agent_id: UUID
    title: str
    description: str = ""
    status: TaskStatus = Field(default=TaskStatus.TODO)
    priority: QueuePriority = Field(default=QueuePriority.MEDIUM)
    is_dependency: bool = False
    blocked_reason: str | None = None
    depends_on_task_id: UUID | None = None
    depends_on_agent_id: UUID | None = None
    output_summary: str | None = None
    auto_generated: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Strip whitespace and cap titles at 200 characters."""
        v = v.strip()
        if not v:
            raise ValueError("Task title cannot be empty")
        return v[:200]

    model_config = ConfigDict()

    @property
    def is_human_blocked(self) -> bool:
        return self.is_dependency and self.status == TaskStatus.BLOCKED


class DependencyEdge(BaseModel):
    """Directed edge: ``source_task_id`` must be done before ``target_task_id`` unblocks."""

    id: UUID = Field(default_factory=uuid4)
    source_task_id: UUID
    target_task_id: UUID
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict()


class ProviderStatus(BaseModel):
    """In-memory health record for one LLM provider."""

    available: bool = True
    last_check: datetime = Field(default_factory=utcnow)
    error_count: int = Field(default=0, ge=0)


class AgentEvent(BaseModel):
    """Append-only, human-visible progress message."""

    id: UUID = Field(default_factory=uuid4)
    agent_id: UUID
    user_id: str | None = None
    event_type: EventType = Field(default=EventType.INFO)
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class TokenUsage(BaseModel):
    """Canonical token accounting. Vendors may omit it entirely."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMRequest(BaseModel):
    """Provider-agnostic completion request."""

    prompt: str
    system_prompt: str | None = None
    model: str | None = None
    max_tokens: int = Field(default=2000, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    user_id: str | None = None
    timeout: float = Field(default=30.0, gt=0)
    retries: int = Field(default=3, ge=1)


class LLMResponse(BaseModel):
    """Provider-agnostic completion result.

    A failed response carries ``error`` and, when retries were exhausted,
    an ``error_id`` correlation id that also appears in the logs.
    """

    content: str = ""
    usage: TokenUsage | None = None
    provider: str = "unknown"
    model: str = "unknown"
    success: bool = True
    error: str | None = None
    error_id: str | None = None


class WorkflowTask(BaseModel):
    """Immediately actionable task proposed by a workflow generator."""

    title: str
    description: str = ""
    priority: QueuePriority = Field(default=QueuePriority.MEDIUM)
    category: str = "analysis"
    estimated_hours: float = Field(default=2.0, ge=0)


class WorkflowDependency(BaseModel):
    """Human-blocked task proposed by a workflow generator."""

    title: str
    reason: str
    blocked_by: str = "user_input"
    priority: QueuePriority = Field(default=QueuePriority.HIGH)


class WorkingStatus(BaseModel):
    """What the agent is focused on after activation."""

    current_focus: str = "Analyzing requirements"
    next_milestone: str = "Complete initial setup"
    progress_indicator: str = "Agent is getting started"


class GeneratedWorkflow(BaseModel):
    """Initial plan for a freshly activated agent.

    Both generator implementations return this exact shape.
    """

    immediate_tasks: list[WorkflowTask] = Field(default_factory=list)
    dependency_tasks: list[WorkflowDependency] = Field(default_factory=list)
    status: WorkingStatus = Field(default_factory=WorkingStatus)
    generator: str = "rule_based"


class ProposedTask(BaseModel):
    """Follow-up work returned by an agent run."""

    title: str
    description: str = ""
    priority: QueuePriority = Field(default=QueuePriority.MEDIUM)
    is_dependency: bool = False
    blocked_reason: str | None = None


class ExecutionResult(BaseModel):
    """Outcome of one agent run (one unit of work)."""

    success: bool
    result: str | None = None
    next_action: NextAction = Field(default=NextAction.CONTINUE)
    task_id: UUID | None = None
    new_tasks: list[ProposedTask] = Field(default_factory=list)
    dependencies: list[WorkflowDependency] = Field(default_factory=list)
    error: str | None = None
    provider: str | None = None
    tokens_used: int | None = None
    execution_time_seconds: float | None = None


class EnqueueResult(BaseModel):
    """Outcome of an enqueue request."""

    success: bool
    queue_id: UUID | None = None
    error: str | None = None


class CancelResult(BaseModel):
    """Outcome of a cancel request."""

    success: bool
    error: str | None = None


class QueueStats(BaseModel):
    """Queue item counts by status over a time window."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0
    window_hours: int = 24


class DependencyResult(BaseModel):
    """Outcome of a create-dependency request."""

    success: bool
    edge_id: UUID | None = None
    error: str | None = None


class ProviderTestResult(BaseModel):
    """Outcome of a single-provider connectivity check."""

    provider: str
    success: bool
    error: str | None = None
    latency_ms: float | None = None
    model: str | None = None


class GraphMetrics(BaseModel):
    """Shape of an agent's task graph."""

    total_tasks: int = 0
    total_edges: int = 0
    blocked_tasks: int = 0
    ready_tasks: int = 0
    done_tasks: int = 0
    critical_path_length: int = 0
    max_in_degree: int = 0
    max_out_degree: int = 0
