"""Pydantic models for contentgate."""

from .content import (
    ChoiceOption,
    ContentRecord,
    CorpusKind,
    FormatKind,
    ItemRef,
    StructuredTestEntry,
)
from .ledger import LedgerAction, LedgerEntry
from .queue import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    QueueStats,
    WorkAction,
    WorkAnnotation,
    WorkItem,
    WorkStatus,
)
from .results import (
    BuildReport,
    ProcessOutcome,
    ProcessResult,
    Rejection,
    ScanSummary,
    VerifiedItem,
)
from .validation import ISSUE_SEVERITY, IssueKind, ValidationResult

__all__ = [
    # Content
    "ChoiceOption",
    "ContentRecord",
    "CorpusKind",
    "FormatKind",
    "ItemRef",
    "StructuredTestEntry",
    # Validation
    "ISSUE_SEVERITY",
    "IssueKind",
    "ValidationResult",
    # Queue
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "QueueStats",
    "WorkAction",
    "WorkAnnotation",
    "WorkItem",
    "WorkStatus",
    # Ledger
    "LedgerAction",
    "LedgerEntry",
    # Results
    "BuildReport",
    "ProcessOutcome",
    "ProcessResult",
    "Rejection",
    "ScanSummary",
    "VerifiedItem",
]
