"""RECONCILIATION node — delegates to the ReconciliationEngine."""

from __future__ import annotations

from typing import Any

from app.core.constants import NodeKind
from app.engine.graph import Node
from app.engine.processors.base import NodeProcessor
from app.engine.results import Continue, Hold, RunContext
from app.reconciliation.engine import ReconciliationEngine, ordering_key_for


class ReconciliationProcessor(NodeProcessor):
    kind = NodeKind.RECONCILIATION

    def __init__(self, engine: ReconciliationEngine) -> None:
        self.engine = engine

    def ordering_key(self, node: Node, ctx: RunContext) -> str | None:
        rule_id = (node.config or {}).get("rule_id")
        return ordering_key_for(rule_id) if rule_id else None

    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> Continue | Hold:
        return await self.engine.process(node, metadata, ctx)
