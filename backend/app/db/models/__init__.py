"""
Models package — re-exports Base and all models.

Import models here so Alembic's `target_metadata = Base.metadata`
picks up every table automatically.

When adding a new model:
    1. Create `app/db/models/<table_name>.py`
    2. Import it here
"""

from app.db.models.base import Base
from app.db.models.document import Document
from app.db.models.document_execution import DocumentExecution
from app.db.models.held_document import HeldDocument
from app.db.models.matching_set import ComparisonResult, MatchingSet, SetDoc
from app.db.models.node_execution_log import NodeExecutionLog
from app.db.models.workflow_graph import Definition, WorkflowEdge, WorkflowNode
from app.db.models.workflow_run import WorkflowRun

__all__ = [
    "Base",
    "ComparisonResult",
    "Definition",
    "Document",
    "DocumentExecution",
    "HeldDocument",
    "MatchingSet",
    "NodeExecutionLog",
    "SetDoc",
    "WorkflowEdge",
    "WorkflowNode",
    "WorkflowRun",
]
