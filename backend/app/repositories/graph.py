"""
Workflow graph repository (read-only; definitions are owned externally).
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.workflow_graph import WorkflowEdge, WorkflowNode


async def list_nodes(db: AsyncSession, workflow_id: str) -> list[WorkflowNode]:
    result = await db.execute(
        select(WorkflowNode).where(WorkflowNode.workflow_id == workflow_id).order_by(WorkflowNode.created_at)
    )
    return list(result.scalars().all())


async def list_edges(db: AsyncSession, workflow_id: str) -> list[WorkflowEdge]:
    result = await db.execute(
        select(WorkflowEdge).where(WorkflowEdge.workflow_id == workflow_id).order_by(WorkflowEdge.created_at)
    )
    return list(result.scalars().all())


async def get_node(db: AsyncSession, node_id: str) -> WorkflowNode | None:
    return await db.get(WorkflowNode, node_id)
