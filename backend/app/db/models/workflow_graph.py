"""
Workflow graph and definition tables.

Written by the external workflow-management service; the engine only
reads them, and treats them as immutable for the duration of a run.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, String

from app.db.models.base import Base, JSONType, generate_uuid, utcnow


class WorkflowNode(Base):
    __tablename__ = "workflow_nodes"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(255), nullable=False, index=True)
    kind = Column(String(50), nullable=False)
    name = Column(String(255), nullable=True)
    config = Column(JSONType, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class WorkflowEdge(Base):
    __tablename__ = "workflow_edges"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(255), nullable=False, index=True)
    source_node_id = Column(String(255), nullable=False, index=True)
    source_port = Column(String(255), nullable=False, default="default")
    target_node_id = Column(String(255), nullable=False)
    target_port = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Definition(Base):
    """Extractor schemas, splitting instructions, label sets, data-map sets, rules."""

    __tablename__ = "definitions"

    kind = Column(String(50), primary_key=True)
    id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=True)
    body = Column(JSONType, default=dict, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
