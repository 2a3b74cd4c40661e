"""Service layer for the task graph, workflow generation and task lifecycle."""

from conductor.services.dependency_resolver import DependencyResolver
from conductor.services.task_service import TaskService
from conductor.services.workflow_generator import (
    LLMWorkflowGenerator,
    RuleBasedWorkflowGenerator,
    WorkflowContext,
    WorkflowGenerator,
    WorkflowService,
)

__all__ = [
    "DependencyResolver",
    "LLMWorkflowGenerator",
    "RuleBasedWorkflowGenerator",
    "TaskService",
    "WorkflowContext",
    "WorkflowGenerator",
    "WorkflowService",
]
