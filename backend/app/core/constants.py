"""Shared constants and enums used across the application."""

from enum import StrEnum


# Output port that follows every outgoing edge of a node
DEFAULT_PORT = "default"

# Port taken by a SWITCH node when no case matches
SWITCH_FALLBACK_PORT = "fallback"


class RunStatus(StrEnum):
    """Overall status of a workflow run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunTrigger(StrEnum):
    """What started a workflow run."""

    MANUAL = "MANUAL"
    WEBHOOK = "WEBHOOK"
    RETRIGGER = "RETRIGGER"


class ExecutionStatus(StrEnum):
    """Status of one document's journey through a run."""

    PENDING = "pending"
    PROCESSING = "processing"
    HELD = "held"
    UNROUTED = "unrouted"
    COMPLETED = "completed"
    FAILED = "failed"
    ORPHANED = "orphaned"


TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.HELD,
    ExecutionStatus.UNROUTED,
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.ORPHANED,
})

RESUMABLE_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.HELD,
    ExecutionStatus.UNROUTED,
})


class LogStatus(StrEnum):
    """Status of a single node visit."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    HELD = "held"
    UNROUTED = "unrouted"


class NodeKind(StrEnum):
    """Node kinds understood by the processor registry."""

    WEBHOOK = "WEBHOOK"
    MANUAL_UPLOAD = "MANUAL_UPLOAD"
    IF = "IF"
    SWITCH = "SWITCH"
    SET_VALUE = "SET_VALUE"
    DOCUMENT_FOLDER = "DOCUMENT_FOLDER"
    EXTRACTOR = "EXTRACTOR"
    SPLITTING = "SPLITTING"
    CATEGORISATION = "CATEGORISATION"
    HTTP = "HTTP"
    DATA_MAPPER = "DATA_MAPPER"
    RECONCILIATION = "RECONCILIATION"


class HoldKind(StrEnum):
    """Which review queue a held document appears in."""

    RECONCILIATION = "reconciliation"
    FOLDER = "folder"
    EXTRACTOR = "extractor"


class HeldStatus(StrEnum):
    """Operator-visible state of a held document."""

    HELD = "held"
    RECONCILED = "reconciled"
    REJECTED = "rejected"
    RELEASED = "released"


class MatchingSetStatus(StrEnum):
    """Reconciliation state of a matching set."""

    PENDING = "pending"
    RECONCILED = "reconciled"
    REJECTED = "rejected"
    FORCE_RECONCILED = "force_reconciled"


class ComparisonStatus(StrEnum):
    """Outcome of one comparison rule on one matching set."""

    PENDING = "pending"
    AUTO = "auto"
    FORCE = "force"
    REJECTED = "rejected"


class DefinitionKind(StrEnum):
    """Kinds of externally managed definitions the processors read."""

    EXTRACTOR = "extractor"
    SPLITTING_INSTRUCTION = "splitting_instruction"
    CATEGORISATION_PROMPT = "categorisation_prompt"
    DATA_MAP_SET = "data_map_set"
    RECONCILIATION_RULE = "reconciliation_rule"


class APIRequestMethod(StrEnum):
    """HTTP methods accepted by HTTP nodes."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
