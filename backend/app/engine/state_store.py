"""
ExecutionStateStore — durable engine state.

Owns the transaction boundary: every public method runs in its own
``session.begin()`` block over the repository functions, so each state
transition the coordinator makes is atomic and visible once it returns.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.constants import (
    ExecutionStatus,
    HeldStatus,
    RESUMABLE_EXECUTION_STATUSES,
    RunStatus,
)
from app.core.logging import get_logger
from app.db.models.document_execution import DocumentExecution
from app.db.models.held_document import HeldDocument
from app.db.models.node_execution_log import NodeExecutionLog
from app.db.models.workflow_run import WorkflowRun
from app.engine.errors import ConsistencyViolation, NotFoundError
from app.repositories import executions as execution_repository
from app.repositories import reconciliation as reconciliation_repository
from app.repositories import runs as run_repository

logger = get_logger(__name__)

STALE_REASON = "Interrupted by process restart"


@dataclass
class ExecutionSeed:
    """A new execution to create alongside a run."""

    document_id: str | None
    start_node_id: str | None = None
    metadata: dict[str, Any] | None = None


class ExecutionStateStore:
    """Transactional facade over the run / execution / log / hold repositories."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One session, one transaction; commits on exit, rolls back on error."""
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    # ─── Runs ──────────────────────────────────────────────

    async def create_run(
        self,
        workflow_id: str,
        triggered_by: str,
        seeds: list[ExecutionSeed],
    ) -> tuple[WorkflowRun, list[DocumentExecution]]:
        async with self.transaction() as db:
            run = await run_repository.create_run(db, workflow_id=workflow_id, triggered_by=triggered_by)
            executions = []
            for seed in seeds:
                metadata = dict(seed.metadata or {})
                if seed.document_id is not None:
                    metadata.setdefault("document_id", seed.document_id)
                executions.append(
                    await execution_repository.create_execution(
                        db,
                        run_id=run.id,
                        document_id=seed.document_id,
                        start_node_id=seed.start_node_id,
                        metadata=metadata,
                    )
                )
            return run, executions

    async def get_run(self, run_id: str) -> WorkflowRun:
        async with self.transaction() as db:
            run = await run_repository.get_run(db, run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found", run_id=run_id)
        return run

    async def finalize_run(self, run_id: str) -> str:
        """
        Derive the run status from its executions.

        Raises ConsistencyViolation if any execution is still pending or
        processing; the caller decides how to record that.
        """
        async with self.transaction() as db:
            executions = await execution_repository.list_by_run(db, run_id)
            unsettled = [
                e.id for e in executions
                if e.status in (ExecutionStatus.PENDING, ExecutionStatus.PROCESSING)
            ]
            if unsettled:
                raise ConsistencyViolation(
                    "Run finished with unsettled executions",
                    run_id=run_id,
                    details={"execution_ids": unsettled},
                )
            failed = any(e.status == ExecutionStatus.FAILED for e in executions)
            status = RunStatus.FAILED if failed else RunStatus.COMPLETED
            await run_repository.set_status(db, run_id, status.value)
            return status.value

    async def fail_run(self, run_id: str, error_message: str) -> None:
        async with self.transaction() as db:
            await run_repository.set_status(db, run_id, RunStatus.FAILED.value, error_message=error_message)

    async def reopen_run(self, run_id: str) -> None:
        """A resumed execution puts its run back to running until re-finalized."""
        async with self.transaction() as db:
            await run_repository.set_status(db, run_id, RunStatus.RUNNING.value)

    # ─── Executions ────────────────────────────────────────

    async def add_execution(
        self,
        run_id: str,
        *,
        document_id: str | None,
        metadata: dict[str, Any],
        start_node_id: str | None = None,
    ) -> DocumentExecution:
        async with self.transaction() as db:
            return await execution_repository.create_execution(
                db,
                run_id=run_id,
                document_id=document_id,
                start_node_id=start_node_id,
                metadata=metadata,
            )

    async def get_execution(self, execution_id: str) -> DocumentExecution:
        async with self.transaction() as db:
            execution = await execution_repository.get_execution(db, execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found", execution_id=execution_id)
        return execution

    async def get_executions(self, execution_ids: list[str]) -> list[DocumentExecution]:
        async with self.transaction() as db:
            return await execution_repository.get_executions(db, execution_ids)

    async def list_run_executions(self, run_id: str) -> list[DocumentExecution]:
        async with self.transaction() as db:
            return await execution_repository.list_by_run(db, run_id)

    async def list_workflow_executions(
        self,
        workflow_id: str,
        statuses: list[str] | None = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DocumentExecution]:
        async with self.transaction() as db:
            return await execution_repository.list_for_workflow(
                db, workflow_id, statuses=statuses, limit=limit, offset=offset
            )

    async def list_logs(self, execution_id: str) -> list[NodeExecutionLog]:
        async with self.transaction() as db:
            return await execution_repository.list_logs(db, execution_id)

    async def update_execution(self, execution_id: str, **fields: Any) -> DocumentExecution:
        async with self.transaction() as db:
            execution = await execution_repository.update_execution(db, execution_id, **fields)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found", execution_id=execution_id)
        return execution

    async def fail_execution(self, execution_id: str, error: str) -> DocumentExecution:
        """Mark the execution failed and close its open log row, if any, in one transaction."""
        async with self.transaction() as db:
            await execution_repository.fail_open_logs(db, reason=error, execution_id=execution_id)
            execution = await execution_repository.update_execution(
                db,
                execution_id,
                status=ExecutionStatus.FAILED.value,
                error_message=error,
            )
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found", execution_id=execution_id)
        return execution

    async def delete_execution(self, execution_id: str) -> None:
        async with self.transaction() as db:
            deleted = await execution_repository.delete_execution(db, execution_id)
        if not deleted:
            raise NotFoundError(f"Execution {execution_id} not found", execution_id=execution_id)

    # ─── Step transitions ──────────────────────────────────

    async def begin_step(
        self,
        execution_id: str,
        node_id: str,
        metadata: dict[str, Any],
    ) -> str:
        """Open a log row and mark the execution processing at ``node_id``."""
        async with self.transaction() as db:
            if await execution_repository.count_open_logs(db, execution_id):
                raise ConsistencyViolation(
                    "Execution already has an open log row",
                    execution_id=execution_id,
                    node_id=node_id,
                )
            log = await execution_repository.open_log(
                db, execution_id=execution_id, node_id=node_id, input_metadata=metadata
            )
            await execution_repository.update_execution(
                db,
                execution_id,
                status=ExecutionStatus.PROCESSING.value,
                current_node_id=node_id,
                metadata_=metadata,
            )
            return log.id

    async def finish_step(
        self,
        execution_id: str,
        log_id: str,
        *,
        log_status: str,
        output_metadata: dict[str, Any] | None = None,
        output_port: str | None = None,
        error: str | None = None,
        **execution_fields: Any,
    ) -> None:
        """Close the open log row and apply execution changes atomically."""
        async with self.transaction() as db:
            await execution_repository.close_log(
                db,
                log_id,
                status=log_status,
                output_metadata=output_metadata,
                output_port=output_port,
                error=error,
            )
            if execution_fields:
                await execution_repository.update_execution(db, execution_id, **execution_fields)

    async def claim_for_advance(
        self,
        execution_ids: list[str],
        *,
        node_id: str | None = None,
        expected_statuses: frozenset[str] = RESUMABLE_EXECUTION_STATUSES,
    ) -> list[DocumentExecution]:
        """
        Flip held / unrouted executions to processing before they are re-enqueued.

        Executions not in ``expected_statuses`` are skipped (already moving
        or settled); their open HeldDocument rows at ``node_id`` are released.
        """
        claimed = []
        async with self.transaction() as db:
            for execution in await execution_repository.get_executions(db, execution_ids):
                if execution.status not in expected_statuses:
                    logger.warning(
                        "Skipping advance of execution not waiting",
                        execution_id=execution.id,
                        status=execution.status,
                    )
                    continue
                await execution_repository.update_execution(
                    db,
                    execution.id,
                    status=ExecutionStatus.PROCESSING.value,
                    unrouted_port=None,
                )
                claimed.append(execution)
            await reconciliation_repository.set_held_status(
                db,
                [e.id for e in claimed],
                HeldStatus.RELEASED.value,
                node_id=node_id,
                only_open=True,
            )
        return claimed

    # ─── Held documents ────────────────────────────────────

    async def record_hold(
        self,
        execution_id: str,
        node_id: str,
        hold_kind: str,
        **fields: Any,
    ) -> HeldDocument:
        async with self.transaction() as db:
            return await reconciliation_repository.upsert_held_document(
                db, execution_id=execution_id, node_id=node_id, hold_kind=hold_kind, **fields
            )

    async def list_held_documents(self, execution_id: str) -> list[HeldDocument]:
        async with self.transaction() as db:
            return await reconciliation_repository.list_held_documents(db, execution_id)

    # ─── Operator views ────────────────────────────────────

    async def node_status_rows(self, run_id: str) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """(execution counts by current node, log counts by node) for one run."""
        async with self.transaction() as db:
            live = await execution_repository.execution_status_by_node(db, run_id)
            visits = await execution_repository.node_status_summary(db, run_id)
            return live, visits

    async def mark_orphaned(self, workflow_id: str, existing_node_ids: set[str]) -> list[str]:
        """Held / unrouted executions parked on a deleted node become orphaned."""
        orphaned = []
        async with self.transaction() as db:
            waiting = await execution_repository.list_for_workflow(
                db,
                workflow_id,
                statuses=[s.value for s in RESUMABLE_EXECUTION_STATUSES],
                limit=10_000,
            )
            for execution in waiting:
                if execution.current_node_id and execution.current_node_id not in existing_node_ids:
                    await execution_repository.update_execution(
                        db,
                        execution.id,
                        status=ExecutionStatus.ORPHANED.value,
                        orphaned_node_name=execution.current_node_id,
                    )
                    orphaned.append(execution.id)
        return orphaned

    # ─── Startup sweep ─────────────────────────────────────

    async def recover_stale(self, reason: str = STALE_REASON) -> dict[str, int]:
        """Fail everything a crashed process left in flight."""
        async with self.transaction() as db:
            logs = await execution_repository.fail_open_logs(db, reason=reason)
            executions = await execution_repository.fail_processing_executions(db, reason=reason)
            runs = await run_repository.fail_running_runs(db, reason=reason)
        return {"logs": logs, "executions": executions, "runs": runs}
