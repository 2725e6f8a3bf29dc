"""
Reconciliation state — matching sets, their member documents and
per-comparison outcomes.

Extractor roles are unique within a set at the database level, so a
second claim for the same role fails loudly instead of duplicating.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from app.db.models.base import Base, generate_uuid, utcnow


class MatchingSet(Base):
    """One set per anchor document entering reconciliation."""

    __tablename__ = "matching_sets"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    rule_id = Column(String(255), nullable=False, index=True)
    # Assigned once a variation can be resolved
    variation_id = Column(String(255), nullable=True)
    anchor_document_execution_id = Column(
        String(36),
        ForeignKey("document_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(String(50), nullable=False, default="pending", index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    docs = relationship(
        "SetDoc",
        back_populates="matching_set",
        cascade="all, delete-orphan",
        order_by="SetDoc.added_at",
    )
    comparison_results = relationship("ComparisonResult", back_populates="matching_set", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<MatchingSet {self.id} rule={self.rule_id} status={self.status}>"


class SetDoc(Base):
    """Membership of one document execution in a matching set."""

    __tablename__ = "matching_set_docs"
    __table_args__ = (
        UniqueConstraint("matching_set_id", "extractor_id", name="uq_matching_set_docs_role"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    matching_set_id = Column(String(36), ForeignKey("matching_sets.id", ondelete="CASCADE"), nullable=False, index=True)
    document_execution_id = Column(
        String(36),
        ForeignKey("document_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    extractor_id = Column(String(255), nullable=False)
    added_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    matching_set = relationship("MatchingSet", back_populates="docs")

    def __repr__(self) -> str:
        return f"<SetDoc set={self.matching_set_id} extractor={self.extractor_id}>"


class ComparisonResult(Base):
    """Outcome of one comparison rule for one matching set."""

    __tablename__ = "comparison_results"
    __table_args__ = (
        UniqueConstraint("matching_set_id", "comparison_rule_id", name="uq_comparison_results_set_rule"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    matching_set_id = Column(String(36), ForeignKey("matching_sets.id", ondelete="CASCADE"), nullable=False, index=True)
    comparison_rule_id = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False, default="pending")
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    note = Column(Text, nullable=True)

    matching_set = relationship("MatchingSet", back_populates="comparison_results")

    def __repr__(self) -> str:
        return f"<ComparisonResult set={self.matching_set_id} rule={self.comparison_rule_id} status={self.status}>"
