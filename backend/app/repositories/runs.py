"""
Workflow run repository.

Repository rules:
- Pure data-access logic only
- Every function receives AsyncSession explicitly
- Functions flush, but never commit
"""

from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import RunStatus
from app.db.models.base import utcnow
from app.db.models.workflow_run import WorkflowRun


async def create_run(db: AsyncSession, *, workflow_id: str, triggered_by: str) -> WorkflowRun:
    run = WorkflowRun(workflow_id=workflow_id, triggered_by=triggered_by, status=RunStatus.RUNNING.value)
    db.add(run)
    await db.flush()
    return run


async def get_run(db: AsyncSession, run_id: str) -> WorkflowRun | None:
    return await db.get(WorkflowRun, run_id)


async def set_status(
    db: AsyncSession,
    run_id: str,
    status: str,
    *,
    error_message: str | None = None,
) -> None:
    """Set a run's status; terminal statuses stamp completed_at."""
    values: dict[str, object] = {"status": status, "error_message": error_message}
    if status != RunStatus.RUNNING:
        values["completed_at"] = utcnow()
    else:
        values["completed_at"] = None
    await db.execute(update(WorkflowRun).where(WorkflowRun.id == run_id).values(**values))
    await db.flush()


async def fail_running_runs(db: AsyncSession, *, reason: str) -> int:
    """Startup sweep: runs left ``running`` by a crashed process become failed."""
    result = await db.execute(
        update(WorkflowRun)
        .where(WorkflowRun.status == RunStatus.RUNNING.value)
        .values(status=RunStatus.FAILED.value, error_message=reason, completed_at=utcnow())
    )
    await db.flush()
    return result.rowcount or 0
