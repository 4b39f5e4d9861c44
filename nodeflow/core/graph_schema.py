"""Workflow graph schema definitions using Pydantic models.

A workflow is a directed graph of typed nodes (prompt, code, condition,
file) joined by edges. Cycles are legal: a loop closes through a condition
node whose ``maxCycles`` bounds how often the loop body re-runs.

Definitions are stored as camelCase JSON; both camelCase and snake_case
keys are accepted on input.
"""

from enum import Enum
from typing import Annotated, Any, Literal

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CONDITION_HANDLES = ("true", "false")


class WorkflowDefinitionError(Exception):
    """Workflow definition is missing, malformed or structurally invalid."""

    pass


class NodeType(str, Enum):
    """Supported node types in workflow graphs"""

    PROMPT = "prompt"  # Ask the AI-completion backend
    CODE = "code"  # Run a sandboxed Python snippet
    CONDITION = "condition"  # Evaluate a boolean expression, pick a branch
    FILE = "file"  # Read a file, or receive writes from upstream nodes


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class NodeData(_CamelModel):
    label: str = ""
    description: str | None = None


class PromptNodeData(NodeData):
    prompt: str = ""
    structured_output: bool = False
    output_schema: str | dict[str, Any] | None = None  # JSON schema, as text or object


class CodeNodeData(NodeData):
    code: str = ""


class ConditionNodeData(NodeData):
    expression: str = ""
    max_cycles: int = Field(default=10, ge=1)  # CRITICAL: bounds loop re-execution


class FileNodeData(NodeData):
    path: str


class _NodeBase(_CamelModel):
    id: str
    position: dict[str, float] | None = None

    @property
    def label(self) -> str:
        return self.data.label or self.id


class PromptNode(_NodeBase):
    type: Literal["prompt"] = "prompt"
    data: PromptNodeData = Field(default_factory=PromptNodeData)


class CodeNode(_NodeBase):
    type: Literal["code"] = "code"
    data: CodeNodeData = Field(default_factory=CodeNodeData)


class ConditionNode(_NodeBase):
    type: Literal["condition"] = "condition"
    data: ConditionNodeData = Field(default_factory=ConditionNodeData)


class FileNode(_NodeBase):
    type: Literal["file"] = "file"
    data: FileNodeData


WorkflowNode = Annotated[
    PromptNode | CodeNode | ConditionNode | FileNode,
    Field(discriminator="type"),
]


class Edge(_CamelModel):
    """Directed edge between nodes.

    ``source_handle`` selects the branch ("true"/"false") when the source is
    a condition node; it is ignored for other sources.
    """

    id: str
    source: str  # Source node ID
    target: str  # Target node ID
    source_handle: str | None = None
    target_handle: str | None = None
    label: str | None = None


class WorkflowDefinition(_CamelModel):
    """Complete workflow definition"""

    id: str
    name: str = ""
    description: str | None = None
    version: int = 1
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    created: str | None = None  # ISO timestamps, informational
    updated: str | None = None

    def node_map(self) -> dict[str, WorkflowNode]:
        return {n.id: n for n in self.nodes}

    def validate_graph(self) -> list[str]:
        """
        Comprehensive graph validation.
        Returns list of validation errors (empty if valid).
        """
        errors = []

        # Check for duplicate node IDs
        node_ids = set()
        for node in self.nodes:
            if node.id in node_ids:
                errors.append(f"Duplicate node ID: {node.id}")
            node_ids.add(node.id)

        if not self.nodes:
            errors.append("Workflow has no nodes")

        node_types = {n.id: n.type for n in self.nodes}

        # Parallel edges are legal; only edge IDs must be unique
        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: {edge.id}")
            seen_edge_ids.add(edge.id)

        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")
            if (
                node_types.get(edge.source) == NodeType.CONDITION
                and edge.source_handle is not None
                and edge.source_handle not in CONDITION_HANDLES
            ):
                errors.append(
                    f"Edge {edge.id}: condition handle must be 'true' or 'false', "
                    f"got '{edge.source_handle}'"
                )

        if errors:
            return errors

        # A cycle must pass through a condition node, otherwise nothing bounds it
        MAX_CYCLES_TO_CHECK = 100
        G = self.to_networkx()
        for cycle_count, cycle in enumerate(nx.simple_cycles(G), start=1):
            if cycle_count > MAX_CYCLES_TO_CHECK:
                errors.append(
                    f"Too many cycles to validate (>{MAX_CYCLES_TO_CHECK}). "
                    f"Simplify graph structure."
                )
                break
            if not any(node_types[n] == NodeType.CONDITION for n in cycle):
                errors.append(f"Cycle without condition node: {' -> '.join(cycle)}")

        return errors

    def to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id, type=node.type)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G
