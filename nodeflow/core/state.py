"""File-based state for workflow runs.

Layout under the vault's ``.nodeflow`` directory:

    workflows/{workflow_id}.json             definitions (read-only here)
    workflow-runs/{workflow_id}/{run_id}.json run records
    workflow-runs/index.json                  last-run summary per workflow

Run records are rewritten after every step. The index is a listing
convenience: failures to write it are logged and never abort a run.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import pydantic
from filelock import FileLock
from pydantic import BaseModel

from nodeflow.core.config import NODEFLOW_DIR
from nodeflow.core.graph_schema import WorkflowDefinition, WorkflowDefinitionError
from nodeflow.core.models import RunsIndex, RunSummary, WorkflowRun
from nodeflow.core.utils import atomic_write_text, now_ms

logger = logging.getLogger(__name__)

WORKFLOWS_DIR = "workflows"
RUNS_DIR = "workflow-runs"
QUEUE_DIR = "workflow-queue"
INDEX_FILE = "index.json"
INDEX_LOCK_TIMEOUT = 10  # seconds


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder for arbitrary node outputs.

    Handles datetime (ISO format), Pydantic models (model_dump), Path and
    sets; anything else falls back to ``str()`` so a step result never makes
    the run record unwritable.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json", by_alias=True)
        if isinstance(obj, Path):
            return str(obj)
        if isinstance(obj, (set, frozenset)):
            return list(obj)
        return str(obj)


def _safe_json_dumps(obj: Any, indent: int | None = 2) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder, indent=indent, ensure_ascii=False)


def _dump_model(model: BaseModel) -> str:
    return _safe_json_dumps(model.model_dump(mode="python", by_alias=True))


class RunStore:
    """Reads workflow definitions and writes run records for one vault."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.base_dir = self.root / NODEFLOW_DIR

    @property
    def workflows_dir(self) -> Path:
        return self.base_dir / WORKFLOWS_DIR

    @property
    def runs_dir(self) -> Path:
        return self.base_dir / RUNS_DIR

    @property
    def queue_dir(self) -> Path:
        return self.base_dir / QUEUE_DIR

    @property
    def index_path(self) -> Path:
        return self.runs_dir / INDEX_FILE

    def ensure_dirs(self) -> None:
        for directory in (self.workflows_dir, self.runs_dir, self.queue_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # --- Workflow definitions ---

    def workflow_path(self, workflow_id: str) -> Path:
        return self.workflows_dir / f"{workflow_id}.json"

    def load_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """Load and validate a workflow definition.

        Raises:
            WorkflowDefinitionError: If the file is missing, is not valid JSON,
                does not match the schema, or fails graph validation
        """
        path = self.workflow_path(workflow_id)
        if not path.exists():
            raise WorkflowDefinitionError(f"Workflow not found: {workflow_id}")

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise WorkflowDefinitionError(f"Malformed workflow JSON in {path.name}: {e}") from e

        try:
            workflow = WorkflowDefinition.model_validate(data)
        except pydantic.ValidationError as e:
            raise WorkflowDefinitionError(f"Invalid workflow definition {workflow_id}: {e}") from e

        errors = workflow.validate_graph()
        if errors:
            raise WorkflowDefinitionError(
                f"Invalid workflow graph {workflow_id}: " + "; ".join(errors)
            )
        return workflow

    def save_workflow(self, workflow: WorkflowDefinition) -> Path:
        path = self.workflow_path(workflow.id)
        atomic_write_text(path, _dump_model(workflow))
        return path

    # --- Run records ---

    def run_path(self, workflow_id: str, run_id: str) -> Path:
        return self.runs_dir / workflow_id / f"{run_id}.json"

    def save_run(self, run: WorkflowRun) -> None:
        """Write the run record, then refresh the runs index.

        Run record failures propagate. Index failures are logged only.
        """
        atomic_write_text(self.run_path(run.workflow_id, run.id), _dump_model(run))

        try:
            update_index_from_run(self.index_path, run)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to update runs index for {run.workflow_id}/{run.id}: {e}")

    def load_run(self, workflow_id: str, run_id: str) -> WorkflowRun:
        path = self.run_path(workflow_id, run_id)
        return WorkflowRun.model_validate_json(path.read_text(encoding="utf-8"))

    def list_runs(self, workflow_id: str) -> list[WorkflowRun]:
        """All readable runs of a workflow, newest first."""
        runs = []
        run_dir = self.runs_dir / workflow_id
        if not run_dir.is_dir():
            return runs
        for path in run_dir.glob("*.json"):
            try:
                runs.append(WorkflowRun.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, UnicodeDecodeError, pydantic.ValidationError) as e:
                logger.warning(f"Skipping unreadable run record {path}: {e}")
        runs.sort(key=lambda r: r.start_time, reverse=True)
        return runs


# --- Runs index ---


def load_runs_index(index_path: Path) -> RunsIndex:
    """Load the runs index, returning an empty default if missing or corrupt."""
    if not index_path.exists():
        return RunsIndex()
    try:
        return RunsIndex.model_validate_json(index_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, pydantic.ValidationError) as e:
        logger.warning(f"Runs index at {index_path} is unreadable, rebuilding: {e}")
        return RunsIndex()


def write_runs_index_atomic(index_path: Path, index: RunsIndex) -> None:
    atomic_write_text(index_path, _dump_model(index))


def update_index_from_run(index_path: Path, run: WorkflowRun) -> RunsIndex:
    """Record ``run`` as the latest run of its workflow.

    The same run id always updates in place. A different run only replaces
    the entry if it started at or after the stored run, so a stale writer
    can never clobber a newer run's summary. The read-modify-write runs
    under a ``filelock`` lock next to the index; a lock timeout surfaces as
    ``TimeoutError`` (an ``OSError``).
    """
    index_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path = index_path.with_name(index_path.name + ".lock")

    # Concurrent runs (threads or processes) all rewrite the same index
    with FileLock(str(lock_path), timeout=INDEX_LOCK_TIMEOUT):
        index = load_runs_index(index_path)
        existing = index.workflows.get(run.workflow_id)

        if (
            existing is not None
            and existing.last_run_id != run.id
            and run.start_time < existing.start_time
        ):
            return index

        index.workflows[run.workflow_id] = RunSummary(
            last_run_id=run.id,
            status=run.status,
            start_time=run.start_time,
            end_time=run.end_time,
            error=run.error,
        )
        index.updated_at = now_ms()
        write_runs_index_atomic(index_path, index)
        return index
