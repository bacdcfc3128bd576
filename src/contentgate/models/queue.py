"""Pydantic models for remediation work items."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from .content import ItemRef


class WorkAction(str, Enum):
    """Remediation actions a work item can request."""

    FIX_FORMAT = "fix_format"
    FLAG_MANUAL_REVIEW = "flag_manual_review"


class WorkStatus(str, Enum):
    """Work item state machine.

    pending -> in-progress -> {done, failed}; in-progress -> pending on release.
    """

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    FAILED = "failed"


ACTIVE_STATUSES = (WorkStatus.PENDING, WorkStatus.IN_PROGRESS)
TERMINAL_STATUSES = (WorkStatus.DONE, WorkStatus.FAILED)


class WorkAnnotation(BaseModel):
    """Advisory diagnostics written by the verifier; never gates processing."""

    issues: list[str] = Field(default_factory=list, description="Refined issue classification")
    score: float = Field(ge=0.0, le=100.0, description="Diagnostic quality score (0-100)")
    structural_confidence: float = Field(
        ge=0.0,
        le=1.0,
        description="Confidence that the payload is a structured-choice encoding",
    )
    suggested_priority: int | None = Field(default=None, ge=0)
    verifier: str = Field(default="verifier", description="Worker that produced the annotation")
    verified_at: datetime = Field(description="Annotation timestamp (UTC)")

    model_config = {"frozen": True}


class WorkItem(BaseModel):
    """A queued remediation task referencing one content record."""

    id: str = Field(description="Unique identifier generated on enqueue")
    item_type: Literal["question"] = Field(default="question")
    item_ref: ItemRef = Field(description="Referenced record")
    action: WorkAction
    priority: int = Field(ge=0, description="Lower = more urgent")
    status: WorkStatus = Field(default=WorkStatus.PENDING)
    reason: str = Field(default="", description="Diagnostic text captured at enqueue time")
    created_at: datetime
    updated_at: datetime
    attempts: int = Field(default=0, ge=0)
    claimed_by: str | None = Field(default=None, description="Worker currently holding the claim")
    claimed_at: datetime | None = None
    annotation: WorkAnnotation | None = None
    outcome_note: str | None = Field(default=None, description="Free text recorded on completion")

    model_config = {"frozen": True}


class QueueStats(BaseModel):
    """Counts of work items per status."""

    pending: int = 0
    in_progress: int = 0
    done: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.done + self.failed
