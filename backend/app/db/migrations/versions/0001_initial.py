"""Initial workflow engine schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # ── Externally managed graph + definitions ───
    op.create_table(
        "workflow_nodes",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("workflow_id", sa.String(255), nullable=False),
        sa.Column("kind", sa.String(50), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("config", JSONType, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_workflow_nodes_workflow_id", "workflow_nodes", ["workflow_id"])

    op.create_table(
        "workflow_edges",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("workflow_id", sa.String(255), nullable=False),
        sa.Column("source_node_id", sa.String(255), nullable=False),
        sa.Column("source_port", sa.String(255), nullable=False, server_default="default"),
        sa.Column("target_node_id", sa.String(255), nullable=False),
        sa.Column("target_port", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_workflow_edges_workflow_id", "workflow_edges", ["workflow_id"])
    op.create_index("ix_workflow_edges_source_node_id", "workflow_edges", ["source_node_id"])

    op.create_table(
        "definitions",
        sa.Column("kind", sa.String(50), primary_key=True),
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("body", JSONType, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "documents",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("file_name", sa.String(500), nullable=True),
        sa.Column("file_url", sa.String(1000), nullable=True),
        sa.Column("file_type", sa.String(100), nullable=True),
        sa.Column("parent_document_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_documents_parent_document_id", "documents", ["parent_document_id"])

    # ── Runs and executions ──────────────────────
    op.create_table(
        "workflow_runs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("workflow_id", sa.String(255), nullable=False),
        sa.Column("triggered_by", sa.String(50), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_workflow_runs_workflow_id", "workflow_runs", ["workflow_id"])
    op.create_index("ix_workflow_runs_status", "workflow_runs", ["status"])
    op.create_index("ix_workflow_runs_started_at", "workflow_runs", ["started_at"])

    op.create_table(
        "document_executions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "run_id",
            sa.String(36),
            sa.ForeignKey("workflow_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("document_id", sa.String(36), nullable=True),
        sa.Column("start_node_id", sa.String(255), nullable=True),
        sa.Column("current_node_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("unrouted_port", sa.String(255), nullable=True),
        sa.Column("orphaned_node_name", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", JSONType, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_document_executions_run_id", "document_executions", ["run_id"])
    op.create_index("ix_document_executions_document_id", "document_executions", ["document_id"])
    op.create_index("ix_document_executions_current_node_id", "document_executions", ["current_node_id"])
    op.create_index("ix_document_executions_status", "document_executions", ["status"])

    op.create_table(
        "node_execution_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "document_execution_id",
            sa.String(36),
            sa.ForeignKey("document_executions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("node_id", sa.String(255), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("output_port", sa.String(255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("input_metadata", JSONType, nullable=True),
        sa.Column("output_metadata", JSONType, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_node_execution_logs_document_execution_id", "node_execution_logs", ["document_execution_id"]
    )
    op.create_index("ix_node_execution_logs_node_id", "node_execution_logs", ["node_id"])
    op.create_index("ix_node_execution_logs_status", "node_execution_logs", ["status"])

    # ── Holds and reconciliation ─────────────────
    op.create_table(
        "held_documents",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "document_execution_id",
            sa.String(36),
            sa.ForeignKey("document_executions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("node_id", sa.String(255), nullable=False),
        sa.Column("hold_kind", sa.String(50), nullable=False),
        sa.Column("extractor_id", sa.String(255), nullable=True),
        sa.Column("rule_id", sa.String(255), nullable=True),
        sa.Column("folder_id", sa.String(255), nullable=True),
        sa.Column("slot_id", sa.String(255), nullable=True),
        sa.Column("slot_label", sa.String(255), nullable=True),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("held_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("document_execution_id", "node_id", name="uq_held_documents_exec_node"),
    )
    op.create_index("ix_held_documents_document_execution_id", "held_documents", ["document_execution_id"])
    op.create_index("ix_held_documents_hold_kind", "held_documents", ["hold_kind"])
    op.create_index("ix_held_documents_rule_id", "held_documents", ["rule_id"])
    op.create_index("ix_held_documents_folder_id", "held_documents", ["folder_id"])
    op.create_index("ix_held_documents_status", "held_documents", ["status"])

    op.create_table(
        "matching_sets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("rule_id", sa.String(255), nullable=False),
        sa.Column("variation_id", sa.String(255), nullable=True),
        sa.Column(
            "anchor_document_execution_id",
            sa.String(36),
            sa.ForeignKey("document_executions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_matching_sets_rule_id", "matching_sets", ["rule_id"])
    op.create_index(
        "ix_matching_sets_anchor_document_execution_id", "matching_sets", ["anchor_document_execution_id"]
    )
    op.create_index("ix_matching_sets_status", "matching_sets", ["status"])

    op.create_table(
        "matching_set_docs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "matching_set_id",
            sa.String(36),
            sa.ForeignKey("matching_sets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "document_execution_id",
            sa.String(36),
            sa.ForeignKey("document_executions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("extractor_id", sa.String(255), nullable=False),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("matching_set_id", "extractor_id", name="uq_matching_set_docs_role"),
    )
    op.create_index("ix_matching_set_docs_matching_set_id", "matching_set_docs", ["matching_set_id"])
    op.create_index(
        "ix_matching_set_docs_document_execution_id", "matching_set_docs", ["document_execution_id"]
    )

    op.create_table(
        "comparison_results",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "matching_set_id",
            sa.String(36),
            sa.ForeignKey("matching_sets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("comparison_rule_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.UniqueConstraint("matching_set_id", "comparison_rule_id", name="uq_comparison_results_set_rule"),
    )
    op.create_index("ix_comparison_results_matching_set_id", "comparison_results", ["matching_set_id"])


def downgrade() -> None:
    op.drop_table("comparison_results")
    op.drop_table("matching_set_docs")
    op.drop_table("matching_sets")
    op.drop_table("held_documents")
    op.drop_table("node_execution_logs")
    op.drop_table("document_executions")
    op.drop_table("workflow_runs")
    op.drop_table("documents")
    op.drop_table("definitions")
    op.drop_table("workflow_edges")
    op.drop_table("workflow_nodes")
