"""Corpus scanner: validates every record and enqueues remediation work."""

import logging
from typing import Optional

from .corpus import CorpusStore
from .errors import DuplicateActiveItem, StorageUnavailable
from .ledger import LedgerWriter
from .models.content import ContentRecord
from .models.ledger import LedgerAction
from .models.queue import WorkAction
from .models.results import ScanSummary
from .models.validation import ISSUE_SEVERITY, IssueKind, ValidationResult
from .quality_gate import QualityGate
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)

ACTOR = "scanner"


def priority_for(issues: list[IssueKind]) -> int:
    """Queue priority of the most severe issue (lower = more urgent)."""
    return min(ISSUE_SEVERITY[issue] for issue in issues)


def format_reason(result: ValidationResult) -> str:
    """Reason text stored on the work item: 'Issues: a, b | Details: ...'."""
    return f"Issues: {result.describe()} | Details: {'; '.join(result.details)}"


class Scanner:
    """Walks the regular corpus and routes invalid records to the work queue."""

    def __init__(
        self,
        queue: WorkQueue,
        ledger: LedgerWriter,
        gate: Optional[QualityGate] = None,
    ):
        self.queue = queue
        self.ledger = ledger
        self.gate = gate or QualityGate()

    def scan(self, corpus: CorpusStore, channel_id: Optional[str] = None) -> ScanSummary:
        """Validate every record and enqueue a fix_format item for each invalid one.

        Idempotent: records that already have an active item are counted as
        duplicates, not re-enqueued.
        """
        summary = ScanSummary()
        for record in corpus.iter_records(channel_id):
            summary.scanned += 1
            result = self.gate.validate(record)
            if result.is_valid:
                continue
            summary.invalid += 1
            if self._enqueue(record, result):
                summary.enqueued += 1
            else:
                summary.duplicates += 1

        logger.info(
            f"Scan complete: {summary.scanned} scanned, {summary.invalid} invalid, "
            f"{summary.enqueued} enqueued, {summary.duplicates} already queued"
        )
        return summary

    def _enqueue(self, record: ContentRecord, result: ValidationResult) -> bool:
        try:
            item = self.queue.enqueue(
                record.ref,
                WorkAction.FIX_FORMAT,
                priority_for(result.issues),
                format_reason(result),
            )
        except DuplicateActiveItem:
            return False

        try:
            self.ledger.append(
                ACTOR,
                LedgerAction.ITEM_ENQUEUED,
                item_ref=record.ref,
                work_item_id=item.id,
                before=record,
                payload={
                    "action": item.action.value,
                    "priority": item.priority,
                    "issues": [issue.value for issue in result.issues],
                },
            )
        except StorageUnavailable:
            self.queue.discard_unclaimed(item.id)
            raise
        return True
