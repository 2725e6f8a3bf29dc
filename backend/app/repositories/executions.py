"""
Document execution and node log repository.

Repository rules:
- Pure data-access logic only
- Every function receives AsyncSession explicitly
- Functions flush, but never commit
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import ExecutionStatus, LogStatus
from app.db.models.base import utcnow
from app.db.models.document_execution import DocumentExecution
from app.db.models.held_document import HeldDocument
from app.db.models.matching_set import SetDoc
from app.db.models.node_execution_log import NodeExecutionLog
from app.db.models.workflow_run import WorkflowRun


# ─── Executions ───────────────────────────────────────────

async def create_execution(
    db: AsyncSession,
    *,
    run_id: str,
    document_id: str | None,
    start_node_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> DocumentExecution:
    execution = DocumentExecution(
        run_id=run_id,
        document_id=document_id,
        start_node_id=start_node_id,
        status=ExecutionStatus.PENDING.value,
        metadata_=dict(metadata or {}),
    )
    db.add(execution)
    await db.flush()
    return execution


async def get_execution(db: AsyncSession, execution_id: str) -> DocumentExecution | None:
    return await db.get(DocumentExecution, execution_id)


async def get_executions(db: AsyncSession, execution_ids: list[str]) -> list[DocumentExecution]:
    if not execution_ids:
        return []
    result = await db.execute(select(DocumentExecution).where(DocumentExecution.id.in_(execution_ids)))
    return list(result.scalars().all())


async def list_by_run(db: AsyncSession, run_id: str) -> list[DocumentExecution]:
    stmt = (
        select(DocumentExecution)
        .where(DocumentExecution.run_id == run_id)
        .order_by(DocumentExecution.created_at)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def update_execution(db: AsyncSession, execution_id: str, **fields: Any) -> DocumentExecution | None:
    """Update mutable execution fields and return the updated row."""
    execution = await get_execution(db, execution_id)
    if execution is None:
        return None

    allowed = {
        "status",
        "current_node_id",
        "metadata_",
        "unrouted_port",
        "orphaned_node_name",
        "error_message",
    }
    for key, value in fields.items():
        if key not in allowed:
            raise ValueError(f"Unknown execution field: {key}")
        if key == "metadata_":
            value = dict(value or {})
        setattr(execution, key, value)
    execution.updated_at = utcnow()

    await db.flush()
    return execution


async def delete_execution(db: AsyncSession, execution_id: str) -> bool:
    """Hard-delete an execution and its dependent rows (operator action)."""
    execution = await get_execution(db, execution_id)
    if execution is None:
        return False
    await db.execute(delete(NodeExecutionLog).where(NodeExecutionLog.document_execution_id == execution_id))
    await db.execute(delete(HeldDocument).where(HeldDocument.document_execution_id == execution_id))
    await db.execute(delete(SetDoc).where(SetDoc.document_execution_id == execution_id))
    await db.execute(delete(DocumentExecution).where(DocumentExecution.id == execution_id))
    await db.flush()
    return True


async def fail_processing_executions(db: AsyncSession, *, reason: str) -> int:
    """Startup sweep: executions left mid-step become failed."""
    result = await db.execute(
        update(DocumentExecution)
        .where(DocumentExecution.status.in_([ExecutionStatus.PROCESSING.value, ExecutionStatus.PENDING.value]))
        .values(status=ExecutionStatus.FAILED.value, error_message=reason, updated_at=utcnow())
    )
    await db.flush()
    return result.rowcount or 0


# ─── Node logs ────────────────────────────────────────────

async def open_log(
    db: AsyncSession,
    *,
    execution_id: str,
    node_id: str,
    input_metadata: dict[str, Any],
) -> NodeExecutionLog:
    sequence = await db.scalar(
        select(func.count(NodeExecutionLog.id)).where(NodeExecutionLog.document_execution_id == execution_id)
    )
    log = NodeExecutionLog(
        document_execution_id=execution_id,
        node_id=node_id,
        sequence=sequence or 0,
        status=LogStatus.PROCESSING.value,
        input_metadata=dict(input_metadata),
        started_at=utcnow(),
    )
    db.add(log)
    await db.flush()
    return log


async def close_log(
    db: AsyncSession,
    log_id: str,
    *,
    status: str,
    output_metadata: dict[str, Any] | None = None,
    output_port: str | None = None,
    error: str | None = None,
) -> NodeExecutionLog | None:
    log = await db.get(NodeExecutionLog, log_id)
    if log is None:
        return None
    log.status = status
    log.output_metadata = dict(output_metadata or {})
    log.output_port = output_port
    log.error = error
    log.completed_at = utcnow()
    await db.flush()
    return log


async def count_open_logs(db: AsyncSession, execution_id: str) -> int:
    return await db.scalar(
        select(func.count(NodeExecutionLog.id)).where(
            NodeExecutionLog.document_execution_id == execution_id,
            NodeExecutionLog.status == LogStatus.PROCESSING.value,
        )
    ) or 0


async def list_logs(db: AsyncSession, execution_id: str) -> list[NodeExecutionLog]:
    stmt = (
        select(NodeExecutionLog)
        .where(NodeExecutionLog.document_execution_id == execution_id)
        .order_by(NodeExecutionLog.sequence)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def fail_open_logs(db: AsyncSession, *, reason: str, execution_id: str | None = None) -> int:
    """Close open log rows as failed; every execution's unless ``execution_id`` is given."""
    stmt = update(NodeExecutionLog).where(NodeExecutionLog.status == LogStatus.PROCESSING.value)
    if execution_id is not None:
        stmt = stmt.where(NodeExecutionLog.document_execution_id == execution_id)
    result = await db.execute(stmt.values(status=LogStatus.FAILED.value, error=reason, completed_at=utcnow()))
    await db.flush()
    return result.rowcount or 0


async def node_status_summary(db: AsyncSession, run_id: str) -> list[dict[str, Any]]:
    """Counts of node visits per (node, log status) for one run."""
    stmt = (
        select(NodeExecutionLog.node_id, NodeExecutionLog.status, func.count(NodeExecutionLog.id))
        .join(DocumentExecution, NodeExecutionLog.document_execution_id == DocumentExecution.id)
        .where(DocumentExecution.run_id == run_id)
        .group_by(NodeExecutionLog.node_id, NodeExecutionLog.status)
    )
    result = await db.execute(stmt)
    return [
        {"node_id": node_id, "status": status, "count": int(count)}
        for node_id, status, count in result.all()
    ]


async def execution_status_by_node(db: AsyncSession, run_id: str) -> list[dict[str, Any]]:
    """Counts of executions per (current node, execution status) for one run."""
    stmt = (
        select(DocumentExecution.current_node_id, DocumentExecution.status, func.count(DocumentExecution.id))
        .where(DocumentExecution.run_id == run_id, DocumentExecution.current_node_id.is_not(None))
        .group_by(DocumentExecution.current_node_id, DocumentExecution.status)
    )
    result = await db.execute(stmt)
    return [
        {"node_id": node_id, "status": status, "count": int(count)}
        for node_id, status, count in result.all()
    ]


async def list_for_workflow(
    db: AsyncSession,
    workflow_id: str,
    *,
    statuses: list[str] | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[DocumentExecution]:
    stmt = (
        select(DocumentExecution)
        .join(WorkflowRun, DocumentExecution.run_id == WorkflowRun.id)
        .where(WorkflowRun.workflow_id == workflow_id)
    )
    if statuses:
        stmt = stmt.where(DocumentExecution.status.in_(statuses))
    stmt = stmt.order_by(DocumentExecution.updated_at.desc()).offset(offset).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
