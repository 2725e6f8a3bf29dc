"""
NodeExecutionLog — one row per (document execution, node) visit.

Append-only.  A row is opened as ``processing`` and closed exactly once
as completed / failed / held / unrouted.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.db.models.base import Base, JSONType, generate_uuid, utcnow


class NodeExecutionLog(Base):
    """One row per node visit."""

    __tablename__ = "node_execution_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    document_execution_id = Column(
        String(36),
        ForeignKey("document_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    node_id = Column(String(255), nullable=False, index=True)
    # Visit order within the execution
    sequence = Column(Integer, nullable=False, default=0)

    # ── Status ────────────────────────────────
    status = Column(String(50), nullable=False, index=True)
    output_port = Column(String(255), nullable=True)
    error = Column(Text, nullable=True)

    # ── Metadata snapshots ────────────────────
    input_metadata = Column(JSONType, default=dict)
    output_metadata = Column(JSONType, default=dict)

    # ── Timing (UTC) ─────────────────────────
    started_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    execution = relationship("DocumentExecution", back_populates="logs")

    def __repr__(self) -> str:
        return f"<NodeExecutionLog {self.node_id} status={self.status} seq={self.sequence}>"
