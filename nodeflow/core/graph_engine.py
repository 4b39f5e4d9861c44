"""Workflow graph execution engine.

Runs one workflow run to a terminal status:
- Readiness is computed dynamically from forward edges (back-edges excluded)
- Condition results prune the untaken branch, keeping reconverging nodes alive
- Back-edges reset the loop body so it re-fires, bounded by ``maxCycles``
- The run record is persisted after every node transition
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from nodeflow.core.config import EngineConfig
from nodeflow.core.file_nodes import FileNodeRunner
from nodeflow.core.graph_analyzer import GraphAnalysis, GraphAnalyzer
from nodeflow.core.graph_schema import (
    ConditionNode,
    Edge,
    NodeType,
    WorkflowDefinition,
    WorkflowDefinitionError,
    WorkflowNode,
)
from nodeflow.core.models import (
    ExecutionContext,
    FileAttachment,
    LabeledOutput,
    QueueEntry,
    RunStatus,
    StepResult,
    StepStatus,
    WorkflowInputContext,
    WorkflowRun,
)
from nodeflow.core.prompt_runner import CommandCompletionBackend, CompletionBackend, PromptRunner
from nodeflow.core.state import RunStore
from nodeflow.core.utils import now_ms
from nodeflow.sandbox.executor import CodeSandbox, ConditionSandbox, SandboxConfig

logger = logging.getLogger(__name__)


class NodeExecutionError(Exception):
    """A node failed; the run is aborted at that node."""

    def __init__(self, node_id: str, error: str | None):
        self.node_id = node_id
        self.error = error
        super().__init__(f"Step {node_id} failed: {error}")


@dataclass
class _RunState:
    """Scheduler bookkeeping for one run. Owned by the task driving the run."""

    workflow: WorkflowDefinition
    analysis: GraphAnalysis
    context: ExecutionContext
    run: WorkflowRun
    nodes: dict[str, WorkflowNode]
    pending: set[str] = field(default_factory=set)
    executed: set[str] = field(default_factory=set)
    reachable: set[str] = field(default_factory=set)


class WorkflowExecutor:
    """
    Drives workflow runs from queue entry to terminal status.

    Nodes found ready in the same pass run one after another in id order;
    the executor awaits each runner before moving on.
    """

    def __init__(
        self,
        store: RunStore,
        prompt_runner: PromptRunner,
        code_sandbox: CodeSandbox,
        condition_sandbox: ConditionSandbox,
        file_runner: FileNodeRunner,
        default_max_cycles: int = 10,
    ):
        self.store = store
        self.prompt_runner = prompt_runner
        self.code_sandbox = code_sandbox
        self.condition_sandbox = condition_sandbox
        self.file_runner = file_runner
        self.default_max_cycles = default_max_cycles
        self.analyzer = GraphAnalyzer()

    @classmethod
    def from_config(
        cls,
        root: Path,
        config: EngineConfig,
        backend: CompletionBackend | None = None,
    ) -> WorkflowExecutor:
        """Wire an executor for the vault at ``root``."""
        sandbox_config = SandboxConfig(
            code_timeout=config.code_timeout,
            condition_timeout=config.condition_timeout,
            memory_mb=config.sandbox_memory_mb,
        )
        if backend is None:
            backend = CommandCompletionBackend(
                config.prompt_command, timeout=config.prompt_timeout, cwd=root
            )
        return cls(
            store=RunStore(root),
            prompt_runner=PromptRunner(backend),
            code_sandbox=CodeSandbox(sandbox_config),
            condition_sandbox=ConditionSandbox(sandbox_config),
            file_runner=FileNodeRunner(root),
            default_max_cycles=config.default_max_cycles,
        )

    async def _save(self, run: WorkflowRun) -> None:
        await asyncio.to_thread(self.store.save_run, run)

    # ========== Run Lifecycle ==========

    async def execute_workflow(self, entry: QueueEntry) -> WorkflowRun:
        """
        Execute one queued run and return its terminal record.

        Definition errors fail the run before any node executes. A failing
        node fails the run; earlier step results are kept as history.
        """
        run = WorkflowRun(id=entry.run_id, workflow_id=entry.workflow_id, input=entry.input)

        try:
            workflow = await asyncio.to_thread(self.store.load_workflow, entry.workflow_id)
        except WorkflowDefinitionError as e:
            run.status = RunStatus.FAILED
            run.error = str(e)
            run.end_time = now_ms()
            logger.error(f"Run {run.id} of {entry.workflow_id} failed before start: {e}")
            await self._save(run)
            return run

        context = ExecutionContext(
            run_id=run.id,
            workflow_id=workflow.id,
            input=entry.input,
        )
        state = _RunState(
            workflow=workflow,
            analysis=self.analyzer.classify(workflow),
            context=context,
            run=run,
            nodes=workflow.node_map(),
        )

        logger.info(f"Starting run {run.id} of workflow {workflow.id}")
        await self._save(run)

        try:
            await self._run_topological(state)
        except NodeExecutionError as e:
            run.status = RunStatus.FAILED
            run.error = str(e)
            logger.error(f"Run {run.id} of {workflow.id} failed: {e}")
        else:
            run.status = RunStatus.COMPLETED
            completed = [r for r in run.step_results if r.status == StepStatus.COMPLETED]
            run.output = completed[-1].output if completed else None

        run.end_time = now_ms()
        run.total_cycles = context.total_cycles
        if run.status == RunStatus.COMPLETED:
            logger.info(
                f"Run {run.id} of {workflow.id} completed in {run.end_time - run.start_time}ms "
                f"({run.total_cycles} cycles)"
            )
        await self._save(run)
        return run

    # ========== Scheduling Loop ==========

    async def _run_topological(self, state: _RunState) -> None:
        node_ids = [n.id for n in state.workflow.nodes]
        state.pending = set(node_ids)
        state.executed = set()
        state.reachable = set(node_ids)

        while state.pending:
            ready = self._find_ready_nodes(state)
            if not ready:
                # Remaining nodes sit on untaken branches
                if state.pending:
                    logger.debug(f"Unreachable nodes left pending: {sorted(state.pending)}")
                break

            for node_id in ready:
                # An earlier condition in this batch may have pruned it
                if node_id not in state.pending or node_id not in state.reachable:
                    continue
                await self._execute_ready_node(state, node_id)

    def _find_ready_nodes(self, state: _RunState) -> list[str]:
        """Pending, reachable nodes whose reachable forward upstreams all executed."""
        ready = []
        for node_id in state.pending:
            if node_id not in state.reachable:
                continue
            upstreams = state.analysis.forward_upstream.get(node_id, set())
            if all(u in state.executed for u in upstreams if u in state.reachable):
                ready.append(node_id)
        return sorted(ready)

    async def _execute_ready_node(self, state: _RunState, node_id: str) -> None:
        node = state.nodes[node_id]
        result = await self._execute_node(state, node)

        state.pending.discard(node_id)
        state.executed.add(node_id)

        if result.status == StepStatus.FAILED:
            raise NodeExecutionError(node_id, result.error)

        if node.type == NodeType.CONDITION:
            self._update_reachability_for_condition(state, node, bool(result.output))

        self._handle_loop_back_edges(state, node, result)

    # ========== Node Execution ==========

    async def _execute_node(self, state: _RunState, node: WorkflowNode) -> StepResult:
        context = state.context
        run = state.run

        visit_count = context.visit_counts.get(node.id, 0) + 1
        context.visit_counts[node.id] = visit_count

        if node.type == NodeType.CONDITION and visit_count > node.data.max_cycles:
            logger.warning(
                f"Condition {node.id} exceeded maxCycles={node.data.max_cycles} "
                f"(visit {visit_count}), forcing false to exit loop"
            )
            timestamp = now_ms()
            skip_result = StepResult(
                node_id=node.id,
                status=StepStatus.COMPLETED,
                input=None,
                output=False,
                start_time=timestamp,
                end_time=timestamp,
                cycle_count=visit_count,
            )
            run.step_results.append(skip_result)
            await self._save(run)
            return skip_result

        context.total_cycles += 1
        run.total_cycles = context.total_cycles
        node_input = self.get_node_input(state, node)

        running = StepResult(
            node_id=node.id,
            status=StepStatus.RUNNING,
            input=node_input,
            cycle_count=visit_count,
        )
        run.step_results.append(running)
        slot = len(run.step_results) - 1
        await self._save(run)

        try:
            output = await self._execute_step(state, node, node_input)
        except Exception as e:
            logger.error(f"Node {node.id} failed: {e}")
            result = running.model_copy(
                update={"status": StepStatus.FAILED, "error": str(e), "end_time": now_ms()}
            )
        else:
            result = running.model_copy(
                update={"status": StepStatus.COMPLETED, "output": output, "end_time": now_ms()}
            )

        run.step_results[slot] = result
        await self._save(run)

        if result.status == StepStatus.COMPLETED:
            if node.type == NodeType.CONDITION:
                # Downstream nodes see what the condition saw, not its boolean
                context.record_output(node.id, node_input)
            else:
                context.record_output(node.id, result.output)

        return result

    async def _execute_step(self, state: _RunState, node: WorkflowNode, node_input: Any) -> Any:
        """Dispatch to the runner for the node's type."""
        context = state.context
        attachments = [a.model_dump() for a in self.collect_attachments(state, node.id)]

        if node.type == NodeType.PROMPT:
            input_context = self.build_input_context(state, node.id)
            output = await self.prompt_runner.run(node, input_context, context)
            await self._write_file_targets(state, node.id, output)
            return output

        elif node.type == NodeType.CODE:
            sandbox_context = {
                "workflowId": context.workflow_id,
                "runId": context.run_id,
                "totalCycles": context.total_cycles,
                "stepOutputs": dict(context.step_outputs),
            }
            output = await self.code_sandbox.run(
                node.data.code, node_input, sandbox_context, attachments
            )
            await self._write_file_targets(state, node.id, output)
            return output

        elif node.type == NodeType.CONDITION:
            sandbox_context = {
                "workflowId": context.workflow_id,
                "runId": context.run_id,
                "totalCycles": context.total_cycles,
            }
            return await self.condition_sandbox.evaluate(
                node.data.expression, node_input, sandbox_context, attachments
            )

        elif node.type == NodeType.FILE:
            if self._is_write_mode(state, node.id):
                return None
            return await self.file_runner.read(node)

        else:
            raise ValueError(f"Unknown node type: {node.type}")

    def _is_write_mode(self, state: _RunState, node_id: str) -> bool:
        return any(
            state.nodes[e.source].type != NodeType.FILE
            for e in state.analysis.incoming.get(node_id, [])
        )

    async def _write_file_targets(self, state: _RunState, node_id: str, output: Any) -> None:
        if output is None:
            return
        for edge in state.analysis.outgoing.get(node_id, []):
            target = state.nodes[edge.target]
            if target.type == NodeType.FILE:
                await self.file_runner.write_output(target, output)

    # ========== Reachability ==========

    def _update_reachability_for_condition(
        self, state: _RunState, node: ConditionNode, result: bool
    ) -> None:
        """Keep the taken branch reachable and prune the untaken one."""
        taken = "true" if result else "false"
        untaken = "false" if result else "true"
        outgoing = state.analysis.outgoing.get(node.id, [])

        # Restore first: a loop may take a branch it pruned on an earlier visit
        for edge in outgoing:
            if edge.source_handle == taken:
                self._mark_branch_reachable(state, edge.target)

        for edge in outgoing:
            if edge.source_handle == untaken:
                self._mark_branch_unreachable(state, edge.target)

    def _mark_branch_reachable(self, state: _RunState, start: str) -> None:
        queue: deque[str] = deque([start])
        visited: set[str] = set()
        while queue:
            node_id = queue.popleft()
            if node_id in visited:
                continue
            visited.add(node_id)
            if node_id in state.pending:
                state.reachable.add(node_id)
            for edge in state.analysis.outgoing.get(node_id, []):
                if edge.target not in visited and edge.target in state.pending:
                    queue.append(edge.target)

    def _mark_branch_unreachable(self, state: _RunState, start: str) -> None:
        """
        Prune ``start`` and everything that only it feeds.

        A pending node becomes unreachable once all of its upstreams (any
        edge) are unreachable; iterate to a fixed point. Entry nodes and
        nodes fed by any reachable upstream stay reachable.
        """
        if start in state.pending:
            state.reachable.discard(start)

        changed = True
        while changed:
            changed = False
            for node_id in state.pending:
                if node_id not in state.reachable:
                    continue
                upstreams = [e.source for e in state.analysis.incoming.get(node_id, [])]
                if not upstreams:
                    continue
                if all(u not in state.reachable for u in upstreams):
                    state.reachable.discard(node_id)
                    changed = True

    # ========== Loops ==========

    def _handle_loop_back_edges(
        self, state: _RunState, node: WorkflowNode, result: StepResult
    ) -> None:
        """Reset the loop body for every back-edge leaving ``node`` whose budget allows it."""
        taken = None
        if node.type == NodeType.CONDITION:
            taken = "true" if result.output else "false"

        for edge in state.analysis.outgoing.get(node.id, []):
            if not state.analysis.is_back_edge(edge) or edge.target not in state.executed:
                continue
            if taken is not None and edge.source_handle not in (None, taken):
                continue
            if self._loop_budget_exhausted(state, edge):
                logger.debug(f"Loop {edge.target} <- {node.id} reached its cycle budget")
                continue
            self._reset_loop_section(state, edge.target, node.id)

    def _loop_budget_exhausted(self, state: _RunState, edge: Edge) -> bool:
        """Check the governing condition's visit count against its maxCycles."""
        head = state.nodes[edge.target]
        source = state.nodes[edge.source]
        visits = state.context.visit_counts

        if head.type == NodeType.CONDITION:
            return visits.get(head.id, 0) >= head.data.max_cycles
        if source.type == NodeType.CONDITION:
            return visits.get(source.id, 0) >= source.data.max_cycles
        return visits.get(head.id, 0) >= self.default_max_cycles

    def _reset_loop_section(self, state: _RunState, loop_head: str, loop_end: str) -> None:
        loop_nodes = self._find_loop_nodes(state, loop_head, loop_end)
        logger.debug(f"Resetting loop {loop_head} -> {loop_end}: {sorted(loop_nodes)}")
        for node_id in loop_nodes:
            if node_id in state.executed:
                state.executed.discard(node_id)
                state.pending.add(node_id)
                state.reachable.add(node_id)

    def _find_loop_nodes(self, state: _RunState, loop_head: str, loop_end: str) -> set[str]:
        """
        Nodes on some path from ``loop_head`` to ``loop_end``, both inclusive.

        Intersection of nodes reachable from the head and nodes that can
        reach the end. Neither search passes through the head again, which
        keeps an inner loop's reset from spilling into an enclosing loop.
        Side branches that never lead back to ``loop_end`` are excluded.
        """
        outgoing = state.analysis.outgoing
        incoming = state.analysis.incoming

        # Step 1: everything that can reach loop_end (reverse BFS, stopping at the head)
        can_reach_end: set[str] = set()
        queue: deque[str] = deque([loop_end])
        while queue:
            node_id = queue.popleft()
            if node_id in can_reach_end:
                continue
            can_reach_end.add(node_id)
            if node_id == loop_head:
                continue
            for edge in incoming.get(node_id, []):
                if edge.source not in can_reach_end:
                    queue.append(edge.source)

        # Step 2: forward BFS from the head, never re-entering it
        reachable_from_head: set[str] = set()
        queue = deque([loop_head])
        while queue:
            node_id = queue.popleft()
            if node_id in reachable_from_head:
                continue
            reachable_from_head.add(node_id)
            for edge in outgoing.get(node_id, []):
                if edge.target != loop_head and edge.target not in reachable_from_head:
                    queue.append(edge.target)

        return can_reach_end & reachable_from_head

    # ========== Input Resolution ==========

    def _data_sources(self, state: _RunState, node_id: str) -> list[Edge]:
        """Incoming edges that carry data (file sources become attachments instead)."""
        return [
            e
            for e in state.analysis.incoming.get(node_id, [])
            if state.nodes[e.source].type != NodeType.FILE
        ]

    def get_node_input(self, state: _RunState, node: WorkflowNode) -> Any:
        """
        Resolve the input value for ``node``.

        - no data edges: the run input
        - one data edge: that source's latest output
        - several, into code/condition: the single most recent source output
        - several, into anything else: ``{source_id: output}``
        """
        context = state.context
        edges = self._data_sources(state, node.id)

        if not edges:
            return context.input

        if len(edges) == 1:
            return context.step_outputs.get(edges[0].source)

        if node.type in (NodeType.CODE, NodeType.CONDITION):
            found, value = context.most_recent_output({e.source for e in edges})
            return value if found else context.input

        return {
            e.source: context.step_outputs[e.source]
            for e in edges
            if e.source in context.step_outputs
        }

    def collect_attachments(self, state: _RunState, node_id: str) -> list[FileAttachment]:
        attachments = []
        for edge in state.analysis.incoming.get(node_id, []):
            if state.nodes[edge.source].type != NodeType.FILE:
                continue
            output = state.context.step_outputs.get(edge.source)
            if isinstance(output, dict) and "path" in output and "content" in output:
                attachments.append(FileAttachment(path=output["path"], content=output["content"]))
        return attachments

    def build_input_context(self, state: _RunState, node_id: str) -> WorkflowInputContext:
        """
        Labelled inputs for a prompt node.

        The most recently produced upstream output is ``primary``; the rest
        go to ``context``. File sources only appear as attachments.
        """
        context = state.context
        attachments = self.collect_attachments(state, node_id)

        inputs: dict[str, LabeledOutput] = {}
        for edge in self._data_sources(state, node_id):
            if edge.source in inputs or edge.source not in context.step_outputs:
                continue
            inputs[edge.source] = LabeledOutput(
                node_id=edge.source,
                label=state.nodes[edge.source].label,
                output=context.step_outputs[edge.source],
            )

        primary_id = next((k for k in reversed(context.step_outputs) if k in inputs), None)
        primary = inputs[primary_id] if primary_id is not None else None

        return WorkflowInputContext(
            primary=primary,
            context=[i for i in inputs.values() if i is not primary],
            workflow_input=context.input,
            attachments=attachments,
        )
