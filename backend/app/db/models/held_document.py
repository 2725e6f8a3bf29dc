"""
HeldDocument — operator-visible record of a document waiting at a node.

Backs the per-kind review queues (reconciliation, document folder,
extractor review).  For reconciliation there is one row per document
ever entering the node, whether or not it joined a matching set.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, UniqueConstraint

from app.db.models.base import Base, generate_uuid, utcnow


class HeldDocument(Base):
    """One row per (document execution, holding node)."""

    __tablename__ = "held_documents"
    __table_args__ = (
        UniqueConstraint("document_execution_id", "node_id", name="uq_held_documents_exec_node"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    document_execution_id = Column(
        String(36),
        ForeignKey("document_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    node_id = Column(String(255), nullable=False)
    hold_kind = Column(String(50), nullable=False, index=True)

    # ── Queue identity (depends on hold_kind) ─
    extractor_id = Column(String(255), nullable=True)
    rule_id = Column(String(255), nullable=True, index=True)
    folder_id = Column(String(255), nullable=True, index=True)
    slot_id = Column(String(255), nullable=True)
    slot_label = Column(String(255), nullable=True)

    # ── Status ────────────────────────────────
    status = Column(String(50), nullable=False, default="held", index=True)
    reason = Column(Text, nullable=True)

    held_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<HeldDocument exec={self.document_execution_id} kind={self.hold_kind} status={self.status}>"
