"""
Routing processors: entry pass-through, IF, SWITCH and SET_VALUE.

None of these touch external services; they only evaluate user
conditions / expressions against the document metadata.
"""

from __future__ import annotations

from typing import Any

from app.core.constants import SWITCH_FALLBACK_PORT, NodeKind
from app.engine.conditions import apply_assignments, evaluate_conditions
from app.engine.errors import ProcessorConfigError
from app.engine.graph import Node
from app.engine.processors.base import NodeProcessor
from app.engine.results import Continue, RunContext


class PassThroughProcessor(NodeProcessor):
    """Entry nodes (webhook / manual upload): metadata flows on unchanged."""

    def __init__(self, kind: str) -> None:
        self.kind = kind

    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> Continue:
        return self._continue(metadata)


class IfProcessor(NodeProcessor):
    """Routes to port ``"true"`` or ``"false"``."""

    kind = NodeKind.IF

    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> Continue:
        config = node.config or {}
        matched = evaluate_conditions(
            config.get("conditions"),
            config.get("logic"),
            metadata,
            ctx.services.formulas,
        )
        return self._continue(metadata, "true" if matched else "false")


class SwitchProcessor(NodeProcessor):
    """
    Evaluates ``cases`` in order; the first matching case's port wins.

    Case shape: ``{"port": "...", "conditions": [...], "logic": "AND"|"OR"}``.
    No match → ``"fallback"``.
    """

    kind = NodeKind.SWITCH

    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> Continue:
        for index, case in enumerate((node.config or {}).get("cases") or []):
            port = case.get("port") or case.get("label")
            if not port:
                raise ProcessorConfigError(
                    f"SWITCH case {index} has no port",
                    node_id=node.id,
                    execution_id=ctx.execution_id,
                )
            if evaluate_conditions(case.get("conditions"), case.get("logic"), metadata, ctx.services.formulas):
                return self._continue(metadata, str(port))
        return self._continue(metadata, SWITCH_FALLBACK_PORT)


class SetValueProcessor(NodeProcessor):
    """Applies ``assignments`` (``[{"field", "value"}]``) and continues."""

    kind = NodeKind.SET_VALUE

    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> Continue:
        assignments = (node.config or {}).get("assignments")
        return self._continue(apply_assignments(assignments, metadata, ctx.services.formulas))
