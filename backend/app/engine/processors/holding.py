"""
Processors that park documents for human review: document folders and
extractors (hold-all or missing mandatory data).
"""

from __future__ import annotations

from typing import Any

from app.core.constants import DefinitionKind, HoldKind, NodeKind
from app.engine.graph import Node
from app.engine.processors.base import NodeProcessor
from app.engine.results import Continue, Hold, RunContext
from app.engine.state_store import ExecutionStateStore


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def missing_mandatory(schema: dict[str, Any], extracted: dict[str, Any]) -> list[str]:
    """Names of mandatory header fields / table columns without a value."""
    missing: list[str] = []
    header = extracted.get("header") or {}
    tables = extracted.get("tables") or {}

    for field in schema.get("header_fields") or []:
        if field.get("is_mandatory") and _is_blank(header.get(field.get("field_name"))):
            missing.append(field.get("field_name"))

    for table_type in schema.get("table_types") or []:
        name = table_type.get("type_name")
        rows = tables.get(name) or []
        for column in table_type.get("columns") or []:
            if not column.get("is_mandatory"):
                continue
            column_name = column.get("column_name")
            if not rows or any(_is_blank(row.get(column_name)) for row in rows):
                missing.append(f"{name}.{column_name}")
    return missing


class DocumentFolderProcessor(NodeProcessor):
    """Always holds; the document waits in the configured folder."""

    kind = NodeKind.DOCUMENT_FOLDER

    def __init__(self, state: ExecutionStateStore) -> None:
        self.state = state

    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> Hold:
        folder_id = (node.config or {}).get("folder_instance_id") or node.id
        reason = f"Held in document folder {folder_id}"
        await self.state.record_hold(
            ctx.execution_id,
            node.id,
            HoldKind.FOLDER.value,
            folder_id=folder_id,
            reason=reason,
        )
        return Hold(reason=reason)


class ExtractorProcessor(NodeProcessor):
    """
    Runs the extraction service with the configured extractor schema.

    Writes ``header`` / ``tables`` / ``extractor_id`` into metadata and
    holds for review when the extractor is ``hold_all`` or mandatory data
    is missing.
    """

    kind = NodeKind.EXTRACTOR

    def __init__(self, state: ExecutionStateStore) -> None:
        self.state = state

    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> Continue | Hold:
        extractor_id = self._require(node, "extractor_id")
        schema = await self._definition(ctx, node, DefinitionKind.EXTRACTOR, extractor_id)
        document = await self._document(ctx, node, metadata)

        extracted = await ctx.services.extraction.extract(document, schema)
        output = {
            **metadata,
            "header": extracted.get("header") or {},
            "tables": extracted.get("tables") or {},
            "extractor_id": extractor_id,
        }

        reason = None
        if schema.get("hold_all"):
            reason = "Extractor is configured to hold all documents for review"
        else:
            missing = missing_mandatory(schema, extracted)
            if missing:
                reason = f"Missing mandatory fields: {', '.join(missing)}"

        if reason is None:
            return self._continue(output)

        await self.state.record_hold(
            ctx.execution_id,
            node.id,
            HoldKind.EXTRACTOR.value,
            extractor_id=extractor_id,
            reason=reason,
        )
        return Hold(reason=reason, output_metadata=output)
