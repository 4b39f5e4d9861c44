"""Terminal rendering for workflow graphs and runs using Rich.

SECURITY: node labels, paths and outputs are user-controlled; everything is
passed through ``rich.markup.escape`` before it reaches a markup string.
"""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from nodeflow.core.graph_analyzer import GraphAnalysis, GraphAnalyzer
from nodeflow.core.graph_schema import Edge, NodeType, WorkflowDefinition, WorkflowNode
from nodeflow.core.models import RunsIndex, StepStatus, WorkflowRun
from nodeflow.core.prompt_runner import format_output


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


class TerminalGraphRenderer:
    """
    Renders a workflow definition as a Rich tree.

    Each entry node starts a branch. Condition edges are labelled with their
    handle; back-edges and repeat visits are shown as loop markers instead of
    being expanded again.
    """

    # Node type symbols and colors
    NODE_STYLES = {
        NodeType.PROMPT: ("[P]", "cyan"),
        NodeType.CODE: ("[C]", "yellow"),
        NodeType.CONDITION: ("[?]", "magenta"),
        NodeType.FILE: ("[F]", "green"),
    }

    STATUS_COLORS = {
        "running": "blue bold",
        "completed": "green",
        "failed": "red bold",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self.analyzer = GraphAnalyzer()

    def render_as_tree(
        self,
        workflow: WorkflowDefinition,
        statuses: dict[str, str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """
        Render workflow as a Rich Tree (hierarchical view).

        Args:
            workflow: The workflow to render
            statuses: Optional dict of node_id -> latest step status
            max_depth: Maximum tree depth to prevent exponential blow-up
        """
        safe_name = escape(workflow.name or workflow.id)
        tree = Tree(f"[bold]{safe_name}[/] (v{workflow.version})")

        if not workflow.nodes:
            tree.add("[red]Error: workflow has no nodes[/]")
            return tree

        analysis = self.analyzer.classify(workflow)
        node_map = workflow.node_map()
        for entry_id in analysis.entry_nodes:
            self._add_node_to_tree(
                tree,
                node_map[entry_id],
                statuses,
                node_map,
                analysis,
                visited=set(),
                depth=0,
                max_depth=max_depth,
            )
        return tree

    def _node_text(self, node: WorkflowNode, status: str | None) -> str:
        symbol, color = self.NODE_STYLES.get(node.type, ("[ ]", "white"))
        safe_label = escape(f"{symbol} {node.label}")
        if node.type == NodeType.FILE:
            safe_label += f" [dim]({escape(node.data.path)})[/]"

        if status in self.STATUS_COLORS:
            indicator = {"completed": " ✓", "failed": " ✗", "running": " ⟳"}[status]
            return f"[{self.STATUS_COLORS[status]}]{safe_label}{indicator}[/]"
        return f"[{color}]{safe_label}[/]"

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: WorkflowNode,
        statuses: dict[str, str] | None,
        node_map: dict[str, WorkflowNode],
        analysis: GraphAnalysis,
        visited: set,
        depth: int = 0,
        max_depth: int = 50,
    ):
        """Recursively add nodes to the tree, depth-limited."""
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (already shown)[/]")
            return
        visited.add(node.id)

        status = statuses.get(node.id) if statuses else None
        branch = parent.add(self._node_text(node, status))

        for edge in analysis.outgoing.get(node.id, []):
            child = node_map[edge.target]
            target_parent = branch
            label = self._edge_label(node, edge)
            if label:
                target_parent = branch.add(label)

            if analysis.is_back_edge(edge):
                target_parent.add(f"[dim]↩ {escape(child.id)} (loop)[/]")
                continue

            self._add_node_to_tree(
                target_parent,
                child,
                statuses,
                node_map,
                analysis,
                visited.copy(),
                depth + 1,
                max_depth,
            )

    @staticmethod
    def _edge_label(source: WorkflowNode, edge: Edge) -> str | None:
        if source.type == NodeType.CONDITION and edge.source_handle:
            color = "green" if edge.source_handle == "true" else "red"
            return f"[{color}]({escape(edge.source_handle)})[/]"
        if edge.label:
            return f"[dim]({escape(edge.label)})[/]"
        return None


class StatusTableRenderer:
    """Renders run progress and run listings as Rich tables."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_run_table(
        self,
        run: WorkflowRun,
        workflow: WorkflowDefinition | None = None,
    ) -> Table:
        """One row per step result, in execution order."""
        labels: dict[str, str] = {}
        types: dict[str, str] = {}
        if workflow is not None:
            for node in workflow.nodes:
                labels[node.id] = node.label
                types[node.id] = node.type

        table = Table(title=f"Run {escape(run.id)} ({run.status.value})")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Visit", justify="right")
        table.add_column("Status", justify="center")
        table.add_column("Output", max_width=40)

        for i, step in enumerate(run.step_results, start=1):
            if step.status == StepStatus.COMPLETED:
                status_text = "[green]✓ Completed[/]"
                detail = "" if step.output is None else format_output(step.output)
            elif step.status == StepStatus.FAILED:
                status_text = "[red]✗ Failed[/]"
                detail = step.error or ""
            else:
                status_text = "[blue]⟳ Running[/]"
                detail = ""

            table.add_row(
                str(i),
                escape(labels.get(step.node_id, step.node_id)),
                escape(str(types.get(step.node_id, ""))),
                str(step.cycle_count),
                status_text,
                escape(_truncate(" ".join(detail.split()), 40)),
            )

        return table

    def render_index_table(self, index: RunsIndex) -> Table:
        """Latest run per workflow."""
        table = Table(title="Workflow Runs")
        table.add_column("Workflow", style="cyan")
        table.add_column("Last Run")
        table.add_column("Status", justify="center")
        table.add_column("Duration", justify="right")
        table.add_column("Error", max_width=40)

        for workflow_id, summary in sorted(index.workflows.items()):
            color = {"completed": "green", "failed": "red"}.get(summary.status.value, "blue")
            duration = ""
            if summary.end_time is not None:
                duration = f"{(summary.end_time - summary.start_time) / 1000:.1f}s"
            table.add_row(
                escape(workflow_id),
                escape(summary.last_run_id),
                f"[{color}]{summary.status.value}[/]",
                duration,
                escape(_truncate(summary.error or "", 40)),
            )
        return table

    @staticmethod
    def latest_statuses(run: WorkflowRun) -> dict[str, Any]:
        """node_id -> status of its most recent step result."""
        return {step.node_id: step.status.value for step in run.step_results}
