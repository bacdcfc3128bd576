"""Pydantic models for ledger entries."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class LedgerAction(str, Enum):
    """Closed vocabulary of audited actions."""

    RECORDS_IMPORTED = "RECORDS_IMPORTED"
    ITEM_ENQUEUED = "ITEM_ENQUEUED"
    ITEM_VERIFIED = "ITEM_VERIFIED"
    RECORD_RELOCATED = "RECORD_RELOCATED"
    FLAGGED_FOR_REVIEW = "FLAGGED_FOR_REVIEW"
    ITEM_COMPLETED = "ITEM_COMPLETED"
    ITEM_FAILED = "ITEM_FAILED"
    ITEM_REQUEUED = "ITEM_REQUEUED"
    STALE_CLAIM_RECOVERED = "STALE_CLAIM_RECOVERED"
    BUILD_EXPORTED = "BUILD_EXPORTED"


class LedgerEntry(BaseModel):
    """Append-only audit record.

    Written as JSONL to <workspace>/system/ledger.jsonl.
    Never mutate or delete; only append. Total order is (ts, entry_id).
    """

    entry_id: str = Field(description="Unique entry identifier (uuid4)")
    run_id: str = Field(description="Run identifier of the writing process (uuid4)")
    ts: datetime = Field(description="Entry timestamp (ISO8601 UTC)")
    actor: str = Field(description="Component or bot instance that acted")
    action: LedgerAction = Field(description="Audited action")
    item_ref: str | None = Field(default=None, description="Affected record as channel/id")
    work_item_id: str | None = Field(default=None, description="Related work item, if any")
    before_snapshot: dict | None = Field(default=None, description="Record state before the action")
    after_snapshot: dict | None = Field(default=None, description="Record state after the action")
    payload: dict = Field(default_factory=dict, description="Action-specific data")

    model_config = {"frozen": True}
