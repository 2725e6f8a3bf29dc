"""
Processor registry — maps a node kind to its processor.

Add a new node kind:
    1. Implement a NodeProcessor subclass under app/engine/processors/
    2. Register it in ``build_registry``
"""

from __future__ import annotations

from app.core.constants import NodeKind
from app.engine.errors import ProcessorError
from app.engine.processors.base import NodeProcessor
from app.engine.processors.data_mapper import DataMapperProcessor
from app.engine.processors.external import (
    CategorisationProcessor,
    HttpRequestProcessor,
    SplittingProcessor,
)
from app.engine.processors.holding import DocumentFolderProcessor, ExtractorProcessor
from app.engine.processors.reconciliation import ReconciliationProcessor
from app.engine.processors.routing import (
    IfProcessor,
    PassThroughProcessor,
    SetValueProcessor,
    SwitchProcessor,
)
from app.engine.state_store import ExecutionStateStore
from app.reconciliation.engine import ReconciliationEngine


class ProcessorRegistry:
    def __init__(self, processors: list[NodeProcessor] | None = None) -> None:
        self._processors: dict[str, NodeProcessor] = {}
        for processor in processors or []:
            self.register(processor)

    def register(self, processor: NodeProcessor) -> None:
        self._processors[str(processor.kind)] = processor

    def get(self, kind: str, *, node_id: str | None = None) -> NodeProcessor:
        processor = self._processors.get(str(kind))
        if processor is None:
            raise ProcessorError(f"No processor registered for node kind '{kind}'", node_id=node_id)
        return processor


def build_registry(state: ExecutionStateStore, reconciliation: ReconciliationEngine) -> ProcessorRegistry:
    return ProcessorRegistry([
        PassThroughProcessor(NodeKind.WEBHOOK),
        PassThroughProcessor(NodeKind.MANUAL_UPLOAD),
        IfProcessor(),
        SwitchProcessor(),
        SetValueProcessor(),
        DocumentFolderProcessor(state),
        ExtractorProcessor(state),
        SplittingProcessor(),
        CategorisationProcessor(),
        HttpRequestProcessor(),
        DataMapperProcessor(),
        ReconciliationProcessor(reconciliation),
    ])
