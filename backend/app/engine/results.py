"""
Processor results and the per-step RunContext.

A processor returns exactly one of ``Continue``, ``Fanout`` or ``Hold``;
raising a ``ProcessorError`` is the fourth outcome (failure).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from app.core.constants import DEFAULT_PORT

if TYPE_CHECKING:
    from app.engine.interfaces import Collaborators


# ═══════════════════════════════════════════════════════════
#  Results
# ═══════════════════════════════════════════════════════════

@dataclass
class Continue:
    """Proceed along edges whose source port equals ``output_port``.

    ``DEFAULT_PORT`` follows every outgoing edge.  ``advance_executions``
    names other (held) executions that should continue past this node too.
    """

    output_metadata: dict[str, Any]
    output_port: str = DEFAULT_PORT
    advance_executions: list[str] = field(default_factory=list)


@dataclass
class SubDocument:
    content: Any
    label: str | None = None


@dataclass
class Fanout:
    """End this traversal as completed and seed one execution per sub-document."""

    sub_documents: list[SubDocument]


@dataclass
class Hold:
    """Suspend the document until an operator or another document resumes it."""

    reason: str
    # Metadata to persist on the held execution (None keeps the input)
    output_metadata: dict[str, Any] | None = None


ProcessorResult = Union[Continue, Fanout, Hold]


# ═══════════════════════════════════════════════════════════
#  RunContext
# ═══════════════════════════════════════════════════════════

@dataclass
class RunContext:
    """Identity of the step being executed plus injected collaborators."""

    run_id: str
    execution_id: str
    workflow_id: str
    document_id: str | None
    services: "Collaborators"
    # Edge target port the document arrived on (reconciliation slot id)
    target_port: str | None = None

    def log_context(self) -> dict[str, Any]:
        """Compact identity for ``logger.bind``."""
        return {
            "run_id": self.run_id,
            "execution_id": self.execution_id,
            "document_id": self.document_id,
        }
