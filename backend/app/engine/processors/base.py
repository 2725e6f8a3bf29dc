"""
NodeProcessor — abstract base class for every node kind.

The coordinator calls ``process()`` and records logging, state
transitions and errors itself.  Processors only implement the node's
business logic and return a ``Continue`` / ``Fanout`` / ``Hold`` result,
or raise a ``ProcessorError``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from app.core.constants import DEFAULT_PORT
from app.engine.errors import ProcessorConfigError, ProcessorError
from app.engine.graph import Node
from app.engine.interfaces import DocumentRecord
from app.engine.results import Continue, ProcessorResult, RunContext


class NodeProcessor(ABC):
    """
    Base class for node processors.

    Subclasses MUST implement:
        - kind (str)               — the NodeKind this processor handles
        - process(node, metadata, ctx)

    Subclasses MAY implement:
        - ordering_key(node, ctx)  — serialize steps that share a key
    """

    kind: str = ""

    @abstractmethod
    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> ProcessorResult:
        ...

    def ordering_key(self, node: Node, ctx: RunContext) -> str | None:
        """Steps returning the same key run one at a time, in arrival order."""
        return None

    # ─── Helpers available to all processors ──────────

    def _continue(self, metadata: dict[str, Any], port: str = DEFAULT_PORT) -> Continue:
        return Continue(output_metadata=dict(metadata), output_port=port)

    def _require(self, node: Node, key: str) -> Any:
        value = (node.config or {}).get(key)
        if value in (None, ""):
            raise ProcessorConfigError(
                f"{node.kind} node '{node.name or node.id}' is missing '{key}'",
                node_id=node.id,
            )
        return value

    async def _definition(self, ctx: RunContext, node: Node, kind: str, definition_id: str) -> dict[str, Any]:
        definition = await ctx.services.definition_store.get(kind, definition_id)
        if definition is None:
            raise ProcessorConfigError(
                f"{kind} definition {definition_id} not found",
                node_id=node.id,
                execution_id=ctx.execution_id,
            )
        return definition

    async def _document(self, ctx: RunContext, node: Node, metadata: dict[str, Any]) -> DocumentRecord:
        document_id = metadata.get("document_id") or ctx.document_id
        document = await ctx.services.document_store.get(document_id) if document_id else None
        if document is None:
            raise ProcessorError(
                f"Document {document_id} not found",
                node_id=node.id,
                execution_id=ctx.execution_id,
            )
        return document
