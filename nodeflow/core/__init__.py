"""Core modules for the nodeflow workflow engine."""

from nodeflow.core.graph_engine import WorkflowExecutor
from nodeflow.core.graph_schema import WorkflowDefinition
from nodeflow.core.models import (
    QueueEntry,
    RunStatus,
    StepResult,
    StepStatus,
    WorkflowRun,
)
from nodeflow.core.state import RunStore
from nodeflow.core.worker import QueueDriver

__all__ = [
    "QueueDriver",
    "QueueEntry",
    "RunStatus",
    "RunStore",
    "StepResult",
    "StepStatus",
    "WorkflowDefinition",
    "WorkflowExecutor",
    "WorkflowRun",
]
