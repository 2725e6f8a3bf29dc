"""
WorkflowRun — one row per triggering event.

Status is derived from the run's document executions once its work
queue drains: failed if any execution failed, else completed.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.orm import relationship

from app.db.models.base import Base, generate_uuid, utcnow


class WorkflowRun(Base):
    """One row per workflow run."""

    __tablename__ = "workflow_runs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(255), nullable=False, index=True)
    triggered_by = Column(String(50), nullable=False, default="MANUAL")

    # ── Status ────────────────────────────────
    status = Column(String(50), nullable=False, default="running", index=True)
    error_message = Column(Text, nullable=True)

    # ── Timing (UTC) ─────────────────────────
    started_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # ── Relationships ─────────────────────────
    executions = relationship("DocumentExecution", back_populates="run", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<WorkflowRun {self.id} workflow={self.workflow_id} status={self.status}>"
