"""Data models for workflow runs.

Uses Pydantic for everything persisted to disk (run records, queue entries,
the runs index) and for the request handed to the completion backend.
Persisted JSON is camelCase with integer-millisecond timestamps.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from nodeflow.core.utils import now_ms


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepStatus(str, Enum):
    """Status of a single node execution."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Status of a workflow run. RUNNING moves to a terminal state exactly once."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# --- Run State Models ---


class StepResult(_CamelModel):
    """One execution of one node. Loop iterations produce several per node."""

    node_id: str
    status: StepStatus
    input: Any = None
    output: Any = None
    error: str | None = None
    start_time: int = Field(default_factory=now_ms)
    end_time: int | None = None
    cycle_count: int = 0


class WorkflowRun(_CamelModel):
    """Persisted state of one run, rewritten after every step."""

    id: str
    workflow_id: str
    status: RunStatus = RunStatus.RUNNING
    input: Any = None
    output: Any = None
    error: str | None = None
    step_results: list[StepResult] = Field(default_factory=list)
    start_time: int = Field(default_factory=now_ms)
    end_time: int | None = None
    total_cycles: int = 0

    def steps_for(self, node_id: str) -> list[StepResult]:
        return [s for s in self.step_results if s.node_id == node_id]


class QueueEntry(_CamelModel):
    """A pending or in-flight run request (one file per run id)."""

    workflow_id: str
    run_id: str
    status: Literal["pending", "processing"] = "pending"
    timestamp: int = Field(default_factory=now_ms)
    input: Any = None


class RunSummary(_CamelModel):
    """Last-run summary for one workflow in the runs index."""

    last_run_id: str
    status: RunStatus
    start_time: int
    end_time: int | None = None
    error: str | None = None


class RunsIndex(_CamelModel):
    version: Literal[1] = 1
    updated_at: int = Field(default_factory=now_ms)
    workflows: dict[str, RunSummary] = Field(default_factory=dict)


# --- Prompt Request Models ---


class FileAttachment(_CamelModel):
    path: str
    content: str


class LabeledOutput(_CamelModel):
    node_id: str
    label: str
    output: Any = None


class WorkflowInputContext(_CamelModel):
    """Upstream data handed to a prompt node."""

    primary: LabeledOutput | None = None
    context: list[LabeledOutput] = Field(default_factory=list)
    workflow_input: Any = None
    attachments: list[FileAttachment] = Field(default_factory=list)


class WorkflowPromptRequest(_CamelModel):
    """Structured request sent to the AI-completion backend."""

    agent_id: str | None = None
    workflow_id: str
    run_id: str
    node_id: str
    step_label: str
    step_description: str | None = None
    input_context: WorkflowInputContext
    task: str
    structured_output: bool = False
    output_schema: str | dict[str, Any] | None = None  # JSON schema, as text or object


# --- Execution Context ---


@dataclass
class ExecutionContext:
    """Mutable per-run state, owned by the task driving the run.

    ``step_outputs`` keeps insertion order by recency: re-recording a node's
    output moves it to the end, so the last matching key is the most recent.
    """

    run_id: str
    workflow_id: str
    input: Any = None
    step_outputs: dict[str, Any] = field(default_factory=dict)
    visit_counts: dict[str, int] = field(default_factory=dict)
    total_cycles: int = 0

    def record_output(self, node_id: str, output: Any) -> None:
        self.step_outputs.pop(node_id, None)
        self.step_outputs[node_id] = output

    def most_recent_output(self, node_ids: set[str]) -> tuple[bool, Any]:
        """Return ``(found, output)`` for the latest output among ``node_ids``."""
        for node_id in reversed(self.step_outputs):
            if node_id in node_ids:
                return True, self.step_outputs[node_id]
        return False, None
