"""Edge classification for workflow graphs.

Splits edges into forward edges and back-edges (edges that close a cycle)
with a depth-first search from the entry nodes. The scheduler only looks at
forward edges when deciding readiness; back-edges drive loop resets.
"""

from dataclasses import dataclass, field

from nodeflow.core.graph_schema import Edge, WorkflowDefinition


@dataclass
class GraphAnalysis:
    """Result of classifying a workflow's edges. Computed once per run."""

    back_edges: set[str] = field(default_factory=set)
    forward_upstream: dict[str, set[str]] = field(default_factory=dict)
    incoming: dict[str, list[Edge]] = field(default_factory=dict)
    outgoing: dict[str, list[Edge]] = field(default_factory=dict)
    entry_nodes: list[str] = field(default_factory=list)

    def is_back_edge(self, edge: Edge) -> bool:
        return edge.id in self.back_edges


class GraphAnalyzer:
    """Classifies workflow edges into forward edges and back-edges."""

    def classify(self, workflow: WorkflowDefinition) -> GraphAnalysis:
        node_ids = [n.id for n in workflow.nodes]
        incoming: dict[str, list[Edge]] = {n: [] for n in node_ids}
        outgoing: dict[str, list[Edge]] = {n: [] for n in node_ids}
        for edge in workflow.edges:
            if edge.source in outgoing and edge.target in incoming:
                outgoing[edge.source].append(edge)
                incoming[edge.target].append(edge)

        entry_nodes = [n for n in node_ids if not incoming[n]]
        if not entry_nodes and node_ids:
            entry_nodes = [node_ids[0]]

        back_edges: set[str] = set()
        visited: set[str] = set()
        # Entry nodes first, then anything left over (disconnected components)
        for root in entry_nodes + node_ids:
            if root not in visited:
                self._dfs(root, outgoing, visited, back_edges)

        forward_upstream: dict[str, set[str]] = {n: set() for n in node_ids}
        for target, edges in incoming.items():
            for edge in edges:
                if edge.id not in back_edges:
                    forward_upstream[target].add(edge.source)

        return GraphAnalysis(
            back_edges=back_edges,
            forward_upstream=forward_upstream,
            incoming=incoming,
            outgoing=outgoing,
            entry_nodes=entry_nodes,
        )

    @staticmethod
    def _dfs(
        root: str,
        outgoing: dict[str, list[Edge]],
        visited: set[str],
        back_edges: set[str],
    ) -> None:
        """Iterative DFS marking edges whose target is on the current stack."""
        on_stack: set[str] = {root}
        visited.add(root)
        stack = [(root, iter(outgoing[root]))]

        while stack:
            node_id, edges = stack[-1]
            edge = next(edges, None)
            if edge is None:
                stack.pop()
                on_stack.discard(node_id)
                continue

            if edge.target in on_stack:
                back_edges.add(edge.id)
            elif edge.target not in visited:
                visited.add(edge.target)
                on_stack.add(edge.target)
                stack.append((edge.target, iter(outgoing[edge.target])))
