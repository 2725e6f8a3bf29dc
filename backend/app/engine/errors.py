"""
Domain-specific exception hierarchy for the workflow engine.

All engine exceptions inherit from EngineError so callers can catch
broadly or narrowly as needed.  Each exception carries structured
context (run, execution, node) for logging/debugging.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        *,
        run_id: str | None = None,
        execution_id: str | None = None,
        node_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.run_id = run_id
        self.execution_id = execution_id
        self.node_id = node_id
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Non-empty context fields, for API error bodies."""
        context = {
            "run_id": self.run_id,
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "details": self.details,
        }
        return {key: value for key, value in context.items() if value}


class ProcessorError(EngineError):
    """A node processor failed; the document's traversal ends as failed."""
    pass


class ProcessorConfigError(ProcessorError):
    """A node's configuration (or a definition it references) is unusable."""
    pass


class ExternalServiceError(ProcessorError):
    """An external service or HTTP node request failed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: str | None = None,
        **kwargs,
    ) -> None:
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message, **kwargs)


class FormulaError(ProcessorError):
    """A user formula was rejected, failed, or ran over its budget."""
    pass


class ReconciliationConfigError(ProcessorError):
    """A reconciliation rule or the arriving document's extractor role is invalid."""
    pass


class ConsistencyViolation(EngineError):
    """An engine invariant was broken; never silently repaired."""
    pass


class NotFoundError(EngineError):
    """A run, execution, matching set, node or definition does not exist."""
    pass


class InvalidRequest(EngineError):
    """An operator request cannot be honoured as given (wrong node kind, no documents)."""
    pass
