"""Pydantic models for pipeline operation results."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .content import ItemRef
from .validation import IssueKind


class ScanSummary(BaseModel):
    """Result of one scanner pass."""

    scanned: int = 0
    enqueued: int = 0
    duplicates: int = Field(default=0, description="Invalid records that already had an active item")
    invalid: int = 0


class VerifiedItem(BaseModel):
    """Verifier output for one work item."""

    item_id: str
    item_ref: ItemRef
    issues: list[str] = Field(default_factory=list)
    score: float
    structural_confidence: float
    suggested_priority: int | None = None


class ProcessOutcome(str, Enum):
    DONE = "done"
    FAILED = "failed"


class ProcessResult(BaseModel):
    """Processor output for one claimed work item."""

    item_id: str
    item_ref: ItemRef
    outcome: ProcessOutcome
    issues: list[IssueKind] = Field(default_factory=list)
    action_taken: str = Field(
        description="relocated, flagged_manual_review, already_valid, already_relocated, claim_lost or error"
    )
    follow_up_item_id: str | None = None
    detail: str | None = None


class Rejection(BaseModel):
    """A record excluded from a build."""

    item_ref: str
    corpus: str
    issues: list[IssueKind]


class BuildReport(BaseModel):
    """Result of one bundle export."""

    output_dir: str
    generated_at: datetime
    channels: dict[str, int] = Field(default_factory=dict, description="Exported records per channel")
    exported: int = 0
    structured_exported: int = 0
    rejected: list[Rejection] = Field(default_factory=list)
