"""Pydantic models for quality gate results."""

from enum import Enum

from pydantic import BaseModel, Field


class IssueKind(str, Enum):
    """Structural problems the quality gate detects."""

    WRONG_FORMAT = "wrong_format"
    MISSING_CONTENT = "missing_content"
    PLACEHOLDER_CONTENT = "placeholder_content"


# Lower number = more severe = more urgent queue priority.
ISSUE_SEVERITY: dict[IssueKind, int] = {
    IssueKind.WRONG_FORMAT: 1,
    IssueKind.PLACEHOLDER_CONTENT: 2,
    IssueKind.MISSING_CONTENT: 3,
}


class ValidationResult(BaseModel):
    """Outcome of a quality gate evaluation."""

    is_valid: bool = Field(description="True when no issue was found")
    issues: list[IssueKind] = Field(
        default_factory=list,
        description="Issues in rule evaluation order",
    )
    details: list[str] = Field(
        default_factory=list,
        description="Human-readable diagnostics, parallel to issues",
    )

    model_config = {"frozen": True}

    @property
    def reason(self) -> IssueKind | None:
        """Primary reason: the first failing rule."""
        return self.issues[0] if self.issues else None

    def describe(self) -> str:
        return ", ".join(issue.value for issue in self.issues)
