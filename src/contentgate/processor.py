"""Processor bot: the only component that mutates content records.

For each claimed fix_format item the bot re-validates the referenced record
and then either relocates a structured-choice payload into the
structured-test corpus or hands the item off for manual review. Relocation,
its re-validation and its ledger entry commit together or not at all.
"""

import logging
import os
import uuid
from typing import Optional

from .corpus import CorpusStore
from .errors import (
    InvalidTransition,
    RecordNotFound,
    RelocationConflict,
    StaleClaim,
    StorageUnavailable,
    ValidationFailure,
)
from .ledger import LedgerWriter
from .models.content import ContentRecord, CorpusKind, StructuredTestEntry
from .models.ledger import LedgerAction
from .models.queue import WorkAction, WorkItem, WorkStatus
from .models.results import ProcessOutcome, ProcessResult
from .models.validation import IssueKind, ValidationResult
from .quality_gate import QualityGate, decode_choices
from .scanner import format_reason, priority_for
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)


def structured_candidate(record: ContentRecord) -> StructuredTestEntry:
    """Structured-test entry carrying a record's payload verbatim."""
    return StructuredTestEntry(
        id=record.id,
        channel_id=record.channel_id,
        prompt_text=record.prompt_text,
        options=decode_choices(record.answer_payload) or [],
        source_payload=record.answer_payload,
        relocated_from=record.ref,
        metadata=dict(record.metadata),
    )


class ProcessorBot:
    """Claims fix_format items and applies the repair for their issue kind."""

    def __init__(
        self,
        corpus: CorpusStore,
        queue: WorkQueue,
        ledger: LedgerWriter,
        gate: Optional[QualityGate] = None,
        worker_id: Optional[str] = None,
    ):
        self.corpus = corpus
        self.queue = queue
        self.ledger = ledger
        self.gate = gate or QualityGate()
        self.worker_id = worker_id or f"processor-{os.getpid()}-{uuid.uuid4().hex[:8]}"

    def process_next(self) -> Optional[ProcessResult]:
        """Claim and process one item. Returns None when nothing is pending.

        Raises:
            StorageUnavailable: Storage failed; the item is released for retry
            InvalidTransition: The queue rejected a transition this bot owns
        """
        item = self.queue.claim_next(action=WorkAction.FIX_FORMAT, worker_id=self.worker_id)
        if item is None:
            return None

        try:
            return self._process(item)
        except StaleClaim as e:
            logger.warning(f"Lost claim on {item.id} while processing: {e}")
            return ProcessResult(
                item_id=item.id,
                item_ref=item.item_ref,
                outcome=ProcessOutcome.FAILED,
                action_taken="claim_lost",
                detail=str(e),
            )
        except InvalidTransition as e:
            logger.error(f"Invalid work item transition while processing {item.id}: {e}")
            raise
        except StorageUnavailable as e:
            logger.error(f"Storage unavailable while processing {item.id}: {e}")
            self._release_after_storage_error(item, str(e))
            raise
        except Exception as e:
            logger.error(f"Processing {item.id} ({item.item_ref.key}) failed: {type(e).__name__}: {e}")
            try:
                return self._fail(item, None, f"{type(e).__name__}: {e}")
            except StorageUnavailable as storage_error:
                logger.error(f"Storage unavailable while failing {item.id}: {storage_error}")
                self._release_after_storage_error(item, str(storage_error))
                raise

    def _process(self, item: WorkItem) -> ProcessResult:
        record = self.corpus.get_record(item.item_ref)
        if record is None:
            existing = self.corpus.get_structured(item.item_ref)
            if existing is not None and existing.relocated_from == item.item_ref:
                return self._complete(
                    item,
                    None,
                    "already_relocated",
                    "record already lives in the structured-test corpus",
                )
            return self._fail(item, None, str(RecordNotFound(item.item_ref.key)))

        result = self.gate.validate(record)
        if result.is_valid:
            return self._complete(item, record, "already_valid", "record passes the quality gate")

        if IssueKind.WRONG_FORMAT in result.issues:
            return self._relocate(item, record, result)
        return self._flag(item, record, result)

    # ------------------------------------------------------------------
    # Repairs
    # ------------------------------------------------------------------

    def _relocate(self, item: WorkItem, record: ContentRecord, result: ValidationResult) -> ProcessResult:
        try:
            with self.corpus.transaction() as tx:
                current = tx.remove_record(record.ref)
                candidate = structured_candidate(current)
                check = self.gate.validate(candidate.as_record(), CorpusKind.STRUCTURED)
                if not check.is_valid:
                    raise ValidationFailure(record.ref.key, [issue.value for issue in check.issues])
                stored = tx.add_structured(candidate)
                self.ledger.append(
                    self.worker_id,
                    LedgerAction.RECORD_RELOCATED,
                    item_ref=record.ref,
                    work_item_id=item.id,
                    before=current,
                    after=stored,
                    payload={
                        "issues": [issue.value for issue in result.issues],
                        "options": len(stored.options),
                        "channel_mutation_version": stored.channel_mutation_version,
                    },
                )
        except ValidationFailure as e:
            check = ValidationResult(
                is_valid=False,
                issues=[IssueKind(issue) for issue in e.issues],
                details=[f"Relocation candidate rejected: {e}"],
            )
            return self._flag(item, record, check)
        except RelocationConflict as e:
            conflict = ValidationResult(
                is_valid=False,
                issues=list(result.issues),
                details=[str(e)],
            )
            return self._flag(item, record, conflict)

        self.queue.complete(
            item.id,
            WorkStatus.DONE,
            worker_id=self.worker_id,
            note="relocated to structured-test corpus",
        )
        logger.info(f"Relocated {record.ref.key} to the structured-test corpus ({len(stored.options)} options)")
        return ProcessResult(
            item_id=item.id,
            item_ref=item.item_ref,
            outcome=ProcessOutcome.DONE,
            issues=list(result.issues),
            action_taken="relocated",
        )

    def _flag(self, item: WorkItem, record: ContentRecord, result: ValidationResult) -> ProcessResult:
        """Close the fix_format item and open a manual-review item; the record is left as is."""
        self.ledger.append(
            self.worker_id,
            LedgerAction.FLAGGED_FOR_REVIEW,
            item_ref=record.ref,
            work_item_id=item.id,
            before=record,
            after=record,
            payload={"issues": [issue.value for issue in result.issues], "details": list(result.details)},
        )
        _closed, follow_up = self.queue.hand_off(
            item.id,
            WorkAction.FLAG_MANUAL_REVIEW,
            format_reason(result),
            priority_for(result.issues),
            worker_id=self.worker_id,
        )
        logger.info(f"Flagged {record.ref.key} for manual review ({result.describe()})")
        return ProcessResult(
            item_id=item.id,
            item_ref=item.item_ref,
            outcome=ProcessOutcome.FAILED,
            issues=list(result.issues),
            action_taken="flagged_manual_review",
            follow_up_item_id=follow_up.id,
            detail="; ".join(result.details),
        )

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _complete(
        self,
        item: WorkItem,
        record: Optional[ContentRecord],
        action_taken: str,
        note: str,
    ) -> ProcessResult:
        self.ledger.append(
            self.worker_id,
            LedgerAction.ITEM_COMPLETED,
            item_ref=item.item_ref,
            work_item_id=item.id,
            before=record,
            after=record,
            payload={"action_taken": action_taken},
        )
        self.queue.complete(item.id, WorkStatus.DONE, worker_id=self.worker_id, note=note)
        return ProcessResult(
            item_id=item.id,
            item_ref=item.item_ref,
            outcome=ProcessOutcome.DONE,
            action_taken=action_taken,
            detail=note,
        )

    def _fail(self, item: WorkItem, record: Optional[ContentRecord], detail: str) -> ProcessResult:
        self.ledger.append(
            self.worker_id,
            LedgerAction.ITEM_FAILED,
            item_ref=item.item_ref,
            work_item_id=item.id,
            before=record,
            payload={"detail": detail},
        )
        self.queue.complete(item.id, WorkStatus.FAILED, worker_id=self.worker_id, note=detail)
        return ProcessResult(
            item_id=item.id,
            item_ref=item.item_ref,
            outcome=ProcessOutcome.FAILED,
            action_taken="error",
            detail=detail,
        )

    def _release_after_storage_error(self, item: WorkItem, detail: str) -> None:
        try:
            self.queue.release(item.id, worker_id=self.worker_id, note=f"storage unavailable: {detail}")
        except (StorageUnavailable, InvalidTransition) as e:
            logger.warning(f"Could not release {item.id}; left for the stale-claim sweep: {e}")
