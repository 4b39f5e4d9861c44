# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the nodeflow test suite.

Provides:
- A temporary vault with the .nodeflow directory layout
- A builder that writes workflow definitions as camelCase JSON
- A fake completion backend that records prompt requests
- Executor factories wired with real sandboxes

Usage:
    Fixtures are discovered by pytest; no imports needed in test modules.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable

import pytest

from nodeflow.core.config import EngineConfig
from nodeflow.core.graph_engine import WorkflowExecutor
from nodeflow.core.models import QueueEntry, WorkflowPromptRequest, WorkflowRun
from nodeflow.core.state import RunStore
from nodeflow.core.utils import new_run_id


# =============================================================================
# Vault Fixtures
# =============================================================================


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    """Create a vault root with empty workflows, runs and queue directories."""
    RunStore(tmp_path).ensure_dirs()
    return tmp_path


@pytest.fixture
def store(vault: Path) -> RunStore:
    """RunStore bound to the temporary vault."""
    return RunStore(vault)


# =============================================================================
# Workflow Builder
# =============================================================================


class WorkflowBuilder:
    """Fluent helper for writing workflow definitions into a vault.

    Example:
        wf = workflow_builder("demo")
        wf.code("a", "return 1").code("b", "return input + 1").edge("a", "b").save()
    """

    def __init__(self, store: RunStore, workflow_id: str):
        self.store = store
        self.workflow_id = workflow_id
        self.nodes: list[dict[str, Any]] = []
        self.edges: list[dict[str, Any]] = []

    def _node(self, node_id: str, node_type: str, data: dict[str, Any]) -> WorkflowBuilder:
        data.setdefault("label", node_id.replace("_", " ").title())
        self.nodes.append(
            {"id": node_id, "type": node_type, "position": {"x": 0, "y": 0}, "data": data}
        )
        return self

    def prompt(self, node_id: str, prompt: str = "Do the thing", **data: Any) -> WorkflowBuilder:
        return self._node(node_id, "prompt", {"prompt": prompt, **data})

    def code(self, node_id: str, code: str) -> WorkflowBuilder:
        return self._node(node_id, "code", {"code": code})

    def condition(self, node_id: str, expression: str, max_cycles: int = 10) -> WorkflowBuilder:
        return self._node(
            node_id, "condition", {"expression": expression, "maxCycles": max_cycles}
        )

    def file(self, node_id: str, path: str) -> WorkflowBuilder:
        return self._node(node_id, "file", {"path": path})

    def edge(self, source: str, target: str, handle: str | None = None) -> WorkflowBuilder:
        edge: dict[str, Any] = {
            "id": f"e{len(self.edges) + 1}-{source}-{target}",
            "source": source,
            "target": target,
        }
        if handle is not None:
            edge["sourceHandle"] = handle
        self.edges.append(edge)
        return self

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.workflow_id,
            "name": self.workflow_id.title(),
            "version": 1,
            "nodes": self.nodes,
            "edges": self.edges,
            "created": "2024-01-01T00:00:00Z",
            "updated": "2024-01-01T00:00:00Z",
        }

    def save(self) -> str:
        path = self.store.workflow_path(self.workflow_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.as_dict(), indent=2))
        return self.workflow_id


@pytest.fixture
def workflow_builder(store: RunStore) -> Callable[..., WorkflowBuilder]:
    """Factory for WorkflowBuilder instances bound to the test vault."""

    def factory(workflow_id: str = "wf") -> WorkflowBuilder:
        return WorkflowBuilder(store, workflow_id)

    return factory


# =============================================================================
# Completion Backend
# =============================================================================


class FakeBackend:
    """Completion backend that records requests.

    ``responses`` maps node ids to a response value, an exception to raise,
    or a callable taking the request. Unmapped nodes answer
    ``{"content": "<node_id> done"}``.
    """

    def __init__(self, responses: dict[str, Any] | None = None):
        self.responses = responses or {}
        self.requests: list[WorkflowPromptRequest] = []

    async def complete(self, request: WorkflowPromptRequest) -> Any:
        self.requests.append(request)
        response = self.responses.get(request.node_id, {"content": f"{request.node_id} done"})
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return response

    def requests_for(self, node_id: str) -> list[WorkflowPromptRequest]:
        return [r for r in self.requests if r.node_id == node_id]


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


# =============================================================================
# Executor Fixtures
# =============================================================================


@pytest.fixture
def make_executor(vault: Path, fake_backend: FakeBackend) -> Callable[..., WorkflowExecutor]:
    """Factory for executors with real sandboxes and the fake backend.

    Timeouts are generous so slow CI machines do not flake; override any
    EngineConfig field through keyword arguments.
    """

    def factory(**overrides: Any) -> WorkflowExecutor:
        settings = {"code_timeout": 20.0, "condition_timeout": 20.0, **overrides}
        return WorkflowExecutor.from_config(vault, EngineConfig(**settings), backend=fake_backend)

    return factory


@pytest.fixture
def run_workflow(make_executor) -> Callable[..., WorkflowRun]:
    """Execute a stored workflow synchronously and return the terminal run."""

    def runner(workflow_id: str, input_data: Any = None, **overrides: Any) -> WorkflowRun:
        executor = make_executor(**overrides)
        entry = QueueEntry(workflow_id=workflow_id, run_id=new_run_id(), input=input_data)
        return asyncio.run(executor.execute_workflow(entry))

    return runner


def executed_order(run: WorkflowRun) -> list[str]:
    """Node ids in step order."""
    return [step.node_id for step in run.step_results]


@pytest.fixture
def order() -> Callable[[WorkflowRun], list[str]]:
    return executed_order
