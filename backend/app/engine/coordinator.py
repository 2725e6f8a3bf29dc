"""
RunCoordinator — drives document executions through a workflow graph.

Two levels of queue:

    outer   asyncio.Queue of documents to advance, drained by
            ENGINE_DOCUMENT_CONCURRENCY workers
    inner   per-document FIFO of (node, metadata, target port) steps,
            processed breadth-first by the worker that popped the document

For each step the coordinator opens a log row, calls the node's
processor, closes the log row according to the result and enqueues what
comes next.  Processors never touch run / execution / log state
themselves.

Usage::

    coordinator = RunCoordinator(state, services)
    run_id = await coordinator.start_run("wf-1", [{"document_id": "doc-1"}])
"""

from __future__ import annotations

import asyncio
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Iterable

from app.core.config import settings
from app.core.constants import (
    DEFAULT_PORT,
    ExecutionStatus,
    LogStatus,
    NodeKind,
    RESUMABLE_EXECUTION_STATUSES,
    RunTrigger,
)
from app.core.logging import get_logger
from app.engine.errors import (
    ConsistencyViolation,
    EngineError,
    InvalidRequest,
    NotFoundError,
    ProcessorError,
)
from app.engine.graph import Edge, Node, Step, WorkflowGraph, steps_for
from app.engine.interfaces import Collaborators
from app.engine.ordering import OrderingGuard
from app.engine.registry import ProcessorRegistry, build_registry
from app.engine.results import Continue, Fanout, Hold, RunContext
from app.engine.state_store import ExecutionSeed, ExecutionStateStore
from app.reconciliation.engine import ReconciliationEngine

logger = get_logger(__name__)


@dataclass
class DocumentWork:
    """One item of the outer queue: an execution plus its initial steps."""

    execution_id: str
    run_id: str
    workflow_id: str
    document_id: str | None
    steps: list[Step] = field(default_factory=list)


@dataclass
class StepOutcome:
    """What the inner loop does after a step."""

    stop: bool = False
    next_steps: list[Step] = field(default_factory=list)
    spawned: list[DocumentWork] = field(default_factory=list)


class RunCoordinator:
    """Owns the work queues, the ordering guard and every state transition."""

    def __init__(
        self,
        state: ExecutionStateStore,
        services: Collaborators,
        *,
        registry: ProcessorRegistry | None = None,
        guard: OrderingGuard | None = None,
        concurrency: int | None = None,
    ) -> None:
        self.state = state
        self.services = services
        self.reconciliation = ReconciliationEngine(state, services.definition_store, services.formulas)
        self.registry = registry or build_registry(state, self.reconciliation)
        self.guard = guard or OrderingGuard()
        self.concurrency = max(1, concurrency or settings.ENGINE_DOCUMENT_CONCURRENCY)
        self._background: set[asyncio.Task] = set()
        # Live drains per run; a run is finalized when its last drain exits
        self._drains_per_run: Counter[str] = Counter()

    # ═══════════════════════════════════════════════════════
    #  Entry points
    # ═══════════════════════════════════════════════════════

    async def start_run(
        self,
        workflow_id: str,
        entries: list[dict[str, Any]],
        triggered_by: str = RunTrigger.MANUAL,
        *,
        background: bool = False,
    ) -> str:
        """
        Create a run with one execution per entry and advance it.

        Each entry is ``{"document_id", "start_node_id"?, "metadata"?}``.
        With ``background=True`` the drain is scheduled and the run id is
        returned immediately.
        """
        seeds = [
            ExecutionSeed(
                document_id=entry.get("document_id"),
                start_node_id=entry.get("start_node_id"),
                metadata=entry.get("metadata"),
            )
            for entry in entries
        ]
        run, executions = await self.state.create_run(workflow_id, str(triggered_by), seeds)
        logger.info(
            "Run created",
            run_id=run.id,
            workflow_id=workflow_id,
            triggered_by=str(triggered_by),
            executions=len(executions),
        )

        graph = await self._load_graph(workflow_id)
        work = [
            DocumentWork(
                execution_id=execution.id,
                run_id=run.id,
                workflow_id=workflow_id,
                document_id=execution.document_id,
                steps=graph.initial_steps(dict(execution.metadata_ or {}), execution.start_node_id),
            )
            for execution in executions
        ]

        drain = self._drain(work, runs={run.id}, graphs={workflow_id: graph})
        if background:
            self.spawn(drain, name=f"run:{run.id}")
        else:
            await drain
        return run.id

    async def trigger_webhook(
        self,
        node_id: str,
        payload: dict[str, Any] | None = None,
        *,
        background: bool = False,
    ) -> str:
        found = await self.services.graph_store.get_node(node_id)
        if found is None:
            raise NotFoundError(f"Node {node_id} not found", node_id=node_id)
        workflow_id, node = found
        if node.kind != NodeKind.WEBHOOK:
            raise InvalidRequest(f"Node {node_id} is not a webhook node", node_id=node_id)

        metadata = {**(payload or {}), "_webhook_node_id": node_id}
        return await self.start_run(
            workflow_id,
            [{"document_id": None, "start_node_id": node_id, "metadata": metadata}],
            RunTrigger.WEBHOOK,
            background=background,
        )

    async def retrigger(
        self,
        workflow_id: str,
        execution_ids: list[str],
        node_ids: list[str],
        *,
        background: bool = False,
    ) -> str:
        """New run re-entering each listed node with each listed execution's document."""
        executions = await self.state.get_executions(execution_ids)
        document_ids = [e.document_id for e in executions if e.document_id]
        if not document_ids:
            raise InvalidRequest("No valid documents found for the given executions")
        if not node_ids:
            raise InvalidRequest("At least one node id is required")

        entries = [
            {"document_id": document_id, "start_node_id": node_id}
            for node_id in node_ids
            for document_id in document_ids
        ]
        return await self.start_run(workflow_id, entries, RunTrigger.RETRIGGER, background=background)

    async def resume_execution(
        self,
        execution_id: str,
        from_node_id: str,
        run_id: str,
        port: str | None = None,
    ) -> str:
        """
        Continue a held or unrouted execution past ``from_node_id``.

        Returns the execution's status once the resumed traversal settles.
        """
        execution = await self.state.get_execution(execution_id)
        if execution.run_id != run_id:
            raise ConsistencyViolation(
                "Execution does not belong to the given run",
                run_id=run_id,
                execution_id=execution_id,
            )
        if execution.status not in RESUMABLE_EXECUTION_STATUSES:
            raise ConsistencyViolation(
                f"Cannot resume an execution in status {execution.status}",
                run_id=run_id,
                execution_id=execution_id,
                details={"status": execution.status},
            )

        run = await self.state.get_run(run_id)
        graph = await self._load_graph(run.workflow_id)
        log = logger.bind(run_id=run_id, execution_id=execution_id, node_id=from_node_id)

        if graph.get(from_node_id) is None:
            await self.state.update_execution(
                execution_id,
                status=ExecutionStatus.ORPHANED.value,
                orphaned_node_name=from_node_id,
            )
            log.warning("Resume node no longer exists; execution orphaned")
            return ExecutionStatus.ORPHANED.value

        port = port or execution.unrouted_port or DEFAULT_PORT
        edges, unrouted = self._route(graph, from_node_id, port)
        if unrouted:
            await self.state.update_execution(
                execution_id,
                status=ExecutionStatus.UNROUTED.value,
                unrouted_port=port,
                current_node_id=from_node_id,
            )
            log.info("Resume port has no matching edge", port=port)
            return ExecutionStatus.UNROUTED.value

        claimed = await self.state.claim_for_advance([execution_id], node_id=from_node_id)
        if not claimed:
            raise ConsistencyViolation(
                "Execution stopped waiting before it could be resumed",
                run_id=run_id,
                execution_id=execution_id,
            )

        await self.state.reopen_run(run_id)
        log.info("Resuming execution", port=port, successors=len(edges))
        metadata = dict(claimed[0].metadata_ or {})
        await self._drain(
            [DocumentWork(
                execution_id=execution_id,
                run_id=run_id,
                workflow_id=run.workflow_id,
                document_id=execution.document_id,
                steps=steps_for(edges, metadata),
            )],
            runs={run_id},
            graphs={run.workflow_id: graph},
        )
        return (await self.state.get_execution(execution_id)).status

    # ═══════════════════════════════════════════════════════
    #  Operator maintenance
    # ═══════════════════════════════════════════════════════

    async def mark_orphaned(self, workflow_id: str) -> list[str]:
        nodes = await self.services.graph_store.get_nodes(workflow_id)
        orphaned = await self.state.mark_orphaned(workflow_id, {node.id for node in nodes})
        if orphaned:
            logger.info("Executions orphaned by graph change", workflow_id=workflow_id, count=len(orphaned))
        return orphaned

    async def delete_execution(self, execution_id: str) -> None:
        await self.state.delete_execution(execution_id)
        logger.info("Execution deleted", execution_id=execution_id)

    async def recover_stale(self) -> dict[str, int] | None:
        """Startup sweep; failures are logged and never block startup."""
        try:
            counts = await self.state.recover_stale()
        except Exception as exc:
            logger.exception("Startup recovery failed", error=str(exc))
            return None
        logger.info("Startup recovery finished", **counts)
        return counts

    # ═══════════════════════════════════════════════════════
    #  Operator views
    # ═══════════════════════════════════════════════════════

    async def get_run_status(self, run_id: str) -> dict[str, Any]:
        run = await self.state.get_run(run_id)
        executions = await self.state.list_run_executions(run_id)
        counts: dict[str, int] = {}
        for execution in executions:
            counts[execution.status] = counts.get(execution.status, 0) + 1
        return {
            "id": run.id,
            "workflow_id": run.workflow_id,
            "status": run.status,
            "triggered_by": run.triggered_by,
            "started_at": run.started_at,
            "completed_at": run.completed_at,
            "error_message": run.error_message,
            "execution_counts": counts,
        }

    async def get_node_status_summary(self, run_id: str) -> list[dict[str, Any]]:
        """Per node, in topological order: executions parked there and visits by outcome."""
        run = await self.state.get_run(run_id)
        graph = await self._load_graph(run.workflow_id)
        live, visits = await self.state.node_status_rows(run_id)

        summary = {
            node_id: {
                "node_id": node_id,
                "name": graph.nodes[node_id].name,
                "kind": graph.nodes[node_id].kind,
                "processing": 0,
                "held": 0,
                "unrouted": 0,
                "failed": 0,
                "completed": 0,
            }
            for node_id in graph.topological_order()
        }
        for row in live:
            entry = summary.get(row["node_id"])
            if entry is not None and row["status"] in (
                ExecutionStatus.PROCESSING, ExecutionStatus.HELD, ExecutionStatus.UNROUTED,
            ):
                entry[row["status"]] += row["count"]
        for row in visits:
            entry = summary.get(row["node_id"])
            if entry is not None and row["status"] in (LogStatus.COMPLETED, LogStatus.FAILED):
                entry[row["status"]] += row["count"]
        return list(summary.values())

    # ═══════════════════════════════════════════════════════
    #  Background tasks
    # ═══════════════════════════════════════════════════════

    def spawn(self, coro: Awaitable[Any], *, name: str | None = None) -> asyncio.Task:
        """Fire-and-forget; the task is kept referenced until it finishes."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Background task failed",
                task=task.get_name(),
                error=str(task.exception()),
                exc_info=task.exception(),
            )

    async def wait_idle(self) -> None:
        """Wait for every scheduled background drain to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)

    # ═══════════════════════════════════════════════════════
    #  Drain
    # ═══════════════════════════════════════════════════════

    async def _drain(
        self,
        work: Iterable[DocumentWork],
        *,
        runs: set[str],
        graphs: dict[str, WorkflowGraph] | None = None,
    ) -> None:
        """Advance ``work`` (and everything it spawns) until the outer queue is empty."""
        queue: asyncio.Queue[DocumentWork] = asyncio.Queue()
        graphs = dict(graphs or {})
        touched = set(runs)
        self._drains_per_run.update(touched)

        for item in work:
            queue.put_nowait(item)

        async def worker() -> None:
            while True:
                item = await queue.get()
                try:
                    for spawned in await self._advance(item, graphs):
                        if spawned.run_id not in touched:
                            touched.add(spawned.run_id)
                            self._drains_per_run[spawned.run_id] += 1
                            await self.state.reopen_run(spawned.run_id)
                        queue.put_nowait(spawned)
                except Exception as exc:
                    logger.exception(
                        "Document advance crashed",
                        run_id=item.run_id,
                        execution_id=item.execution_id,
                        error=str(exc),
                    )
                    await self._fail_execution(item, f"Unexpected: {exc}")
                finally:
                    queue.task_done()

        workers = [asyncio.create_task(worker()) for _ in range(self.concurrency)]
        try:
            await queue.join()
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            settled = self._release_runs(touched)

        for run_id in sorted(settled):
            await self._finalize(run_id)

    def _release_runs(self, run_ids: set[str]) -> list[str]:
        """Drop this drain's claim on each run; return the runs no other drain still owns."""
        settled = []
        for run_id in run_ids:
            self._drains_per_run[run_id] -= 1
            if self._drains_per_run[run_id] <= 0:
                del self._drains_per_run[run_id]
                settled.append(run_id)
        return settled

    async def _finalize(self, run_id: str) -> None:
        try:
            status = await self.state.finalize_run(run_id)
        except ConsistencyViolation as exc:
            logger.error("Run finalization failed", run_id=run_id, error=str(exc), details=exc.details)
            await self.state.fail_run(run_id, str(exc))
            return
        logger.info("Run finished", run_id=run_id, status=status)

    async def _fail_execution(self, item: DocumentWork, error: str) -> None:
        try:
            await self.state.fail_execution(item.execution_id, error)
        except EngineError as exc:
            logger.error("Could not mark execution failed", execution_id=item.execution_id, error=str(exc))

    async def _load_graph(self, workflow_id: str) -> WorkflowGraph:
        nodes = await self.services.graph_store.get_nodes(workflow_id)
        edges = await self.services.graph_store.get_edges(workflow_id)
        return WorkflowGraph(nodes, edges)

    # ═══════════════════════════════════════════════════════
    #  Inner loop
    # ═══════════════════════════════════════════════════════

    async def _advance(self, item: DocumentWork, graphs: dict[str, WorkflowGraph]) -> list[DocumentWork]:
        """Run one document's inner queue; return executions to push on the outer queue."""
        graph = graphs.get(item.workflow_id)
        if graph is None:
            graph = graphs[item.workflow_id] = await self._load_graph(item.workflow_id)

        log = logger.bind(run_id=item.run_id, execution_id=item.execution_id)
        inner = deque(item.steps)
        spawned: list[DocumentWork] = []
        last_node_id: str | None = None

        while inner:
            step = inner.popleft()
            node = graph.get(step.node_id)
            if node is None:
                await self.state.update_execution(
                    item.execution_id,
                    status=ExecutionStatus.ORPHANED.value,
                    current_node_id=step.node_id,
                    orphaned_node_name=step.node_id,
                )
                log.warning("Step node no longer exists; execution orphaned", node_id=step.node_id)
                return spawned

            outcome = await self._execute_step(item, step, node, graph)
            spawned.extend(outcome.spawned)
            if outcome.stop:
                return spawned
            inner.extend(outcome.next_steps)
            last_node_id = node.id

        await self.state.update_execution(
            item.execution_id,
            status=ExecutionStatus.COMPLETED.value,
            **({"current_node_id": last_node_id} if last_node_id else {}),
        )
        log.info("Execution completed")
        return spawned

    async def _execute_step(
        self,
        item: DocumentWork,
        step: Step,
        node: Node,
        graph: WorkflowGraph,
    ) -> StepOutcome:
        log_id = await self.state.begin_step(item.execution_id, node.id, step.metadata)
        ctx = RunContext(
            run_id=item.run_id,
            execution_id=item.execution_id,
            workflow_id=item.workflow_id,
            document_id=item.document_id,
            services=self.services,
            target_port=step.target_port,
        )

        try:
            processor = self.registry.get(node.kind, node_id=node.id)
        except ProcessorError as exc:
            return await self._fail_step(item, step, node, log_id, str(exc))

        key = processor.ordering_key(node, ctx)
        if key is None:
            return await self._invoke(processor, item, step, node, graph, ctx, log_id)
        # Processor call and the resulting state transition form one critical section
        async with self.guard.hold(key):
            return await self._invoke(processor, item, step, node, graph, ctx, log_id)

    async def _invoke(self, processor, item, step, node, graph, ctx, log_id) -> StepOutcome:
        step_log = logger.bind(node_id=node.id, node_kind=node.kind, **ctx.log_context())
        try:
            result = await processor.process(node, dict(step.metadata), ctx)
            if isinstance(result, Hold):
                return await self._on_hold(result, item, step, node, log_id, step_log)
            if isinstance(result, Fanout):
                return await self._on_fanout(result, item, node, graph, log_id, step_log)
            if isinstance(result, Continue):
                return await self._on_continue(result, item, node, graph, log_id, step_log)
            raise ProcessorError(
                f"Processor for {node.kind} returned {type(result).__name__}",
                node_id=node.id,
            )
        except ConsistencyViolation as exc:
            step_log.error("Consistency violation during step", error=str(exc), details=exc.details)
            return await self._fail_step(item, step, node, log_id, str(exc))
        except EngineError as exc:
            step_log.error("Step failed", error=str(exc))
            return await self._fail_step(item, step, node, log_id, str(exc))
        except Exception as exc:
            step_log.exception("Unexpected error in step", error=str(exc))
            return await self._fail_step(item, step, node, log_id, f"Unexpected: {exc}")

    async def _fail_step(self, item, step, node, log_id, error: str) -> StepOutcome:
        await self.state.finish_step(
            item.execution_id,
            log_id,
            log_status=LogStatus.FAILED.value,
            error=error,
            status=ExecutionStatus.FAILED.value,
            error_message=error,
        )
        return StepOutcome(stop=True)

    # ─── Result handling ──────────────────────────────────

    async def _on_hold(self, result: Hold, item, step, node, log_id, step_log) -> StepOutcome:
        metadata = result.output_metadata if result.output_metadata is not None else step.metadata
        await self.state.finish_step(
            item.execution_id,
            log_id,
            log_status=LogStatus.HELD.value,
            output_metadata=metadata,
            status=ExecutionStatus.HELD.value,
            metadata_=metadata,
        )
        step_log.info("Document held", reason=result.reason)
        return StepOutcome(stop=True)

    async def _on_fanout(self, result: Fanout, item, node, graph, log_id, step_log) -> StepOutcome:
        edges = graph.outgoing(node.id)
        children = []
        for sub in result.sub_documents:
            content = sub.content if isinstance(sub.content, dict) else {}
            document = await self.services.document_store.create(
                file_name=content.get("file_name") or sub.label,
                file_url=content.get("file_url"),
                file_type=content.get("file_type"),
                parent_document_id=item.document_id,
            )
            metadata = {
                "document_id": document.id,
                "label": sub.label,
                "parent_document_id": item.document_id,
            }
            execution = await self.state.add_execution(item.run_id, document_id=document.id, metadata=metadata)
            children.append(DocumentWork(
                execution_id=execution.id,
                run_id=item.run_id,
                workflow_id=item.workflow_id,
                document_id=document.id,
                steps=steps_for(edges, metadata),
            ))

        await self.state.finish_step(
            item.execution_id,
            log_id,
            log_status=LogStatus.COMPLETED.value,
            output_metadata={"sub_documents": [c.document_id for c in children]},
            status=ExecutionStatus.COMPLETED.value,
        )
        step_log.info("Document fanned out", children=len(children))
        return StepOutcome(stop=True, spawned=children)

    async def _on_continue(self, result: Continue, item, node, graph, log_id, step_log) -> StepOutcome:
        port = result.output_port or DEFAULT_PORT
        metadata = result.output_metadata
        edges, unrouted = self._route(graph, node.id, port)

        if unrouted:
            await self.state.finish_step(
                item.execution_id,
                log_id,
                log_status=LogStatus.UNROUTED.value,
                output_metadata=metadata,
                output_port=port,
                status=ExecutionStatus.UNROUTED.value,
                unrouted_port=port,
                metadata_=metadata,
            )
            step_log.info("No edge for output port; execution unrouted", port=port)
            return StepOutcome(stop=True)

        await self.state.finish_step(
            item.execution_id,
            log_id,
            log_status=LogStatus.COMPLETED.value,
            output_metadata=metadata,
            output_port=port,
            metadata_=metadata,
        )

        spawned = []
        if result.advance_executions:
            spawned = await self._advance_others(result.advance_executions, node, edges, step_log)
        return StepOutcome(next_steps=steps_for(edges, metadata), spawned=spawned)

    async def _advance_others(
        self,
        execution_ids: list[str],
        node: Node,
        edges: list[Edge],
        step_log,
    ) -> list[DocumentWork]:
        """Flip held executions to processing and seed them at the same successors."""
        claimed = await self.state.claim_for_advance(execution_ids, node_id=node.id)
        work = []
        for execution in claimed:
            run = await self.state.get_run(execution.run_id)
            work.append(DocumentWork(
                execution_id=execution.id,
                run_id=execution.run_id,
                workflow_id=run.workflow_id,
                document_id=execution.document_id,
                steps=steps_for(edges, dict(execution.metadata_ or {})),
            ))
        step_log.info("Advancing held executions", count=len(work))
        return work

    @staticmethod
    def _route(graph: WorkflowGraph, node_id: str, port: str) -> tuple[list[Edge], bool]:
        """Successor edges for ``port`` and whether the port is unrouted."""
        edges = graph.successors(node_id, port)
        unrouted = port != DEFAULT_PORT and not edges and bool(graph.outgoing(node_id))
        return edges, unrouted
