"""
DocumentExecution — one document's journey through one run.

Created at run start, by fan-out, or by an external trigger.  Only the
run coordinator (and the startup sweep) changes its status.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from app.db.models.base import Base, JSONType, generate_uuid, utcnow


class DocumentExecution(Base):
    """One row per document per run."""

    __tablename__ = "document_executions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    run_id = Column(String(36), ForeignKey("workflow_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    document_id = Column(String(36), nullable=True, index=True)

    # ── Position in the graph ─────────────────
    start_node_id = Column(String(255), nullable=True)
    current_node_id = Column(String(255), nullable=True, index=True)

    # ── Status ────────────────────────────────
    status = Column(String(50), nullable=False, default="pending", index=True)
    unrouted_port = Column(String(255), nullable=True)
    orphaned_node_name = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)

    # ── Metadata enriched at every step ──────
    metadata_ = Column("metadata", JSONType, default=dict, nullable=False)

    # ── Audit timestamps ─────────────────────
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # ── Relationships ─────────────────────────
    run = relationship("WorkflowRun", back_populates="executions")
    logs = relationship(
        "NodeExecutionLog",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="NodeExecutionLog.sequence",
    )

    def __repr__(self) -> str:
        return f"<DocumentExecution {self.id} status={self.status} node={self.current_node_id}>"
