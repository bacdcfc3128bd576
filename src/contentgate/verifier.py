"""Read-only verifier bot.

Annotates pending work items with a refined issue list, a diagnostic score
and a structural confidence. Never touches content records and never
changes an item's status; the annotation only feeds triage ordering.
"""

import json
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from typing import Optional

from .corpus import CorpusStore
from .errors import StorageUnavailable
from .ledger import LedgerWriter
from .models.content import ContentRecord, FormatKind
from .models.ledger import LedgerAction
from .models.queue import WorkAnnotation, WorkItem
from .models.results import VerifiedItem
from .models.validation import IssueKind
from .quality_gate import COLLECTION_OPENERS, QualityGate, decode_choices, detect_format
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)

# Severity label -> suggested queue priority
SEVERITY_PRIORITY = {
    "critical": 1,
    "high": 2,
    "medium": 3,
    "low": 4,
}

SEVERITY_PENALTY = {
    "critical": 40.0,
    "high": 20.0,
    "medium": 10.0,
    "low": 5.0,
}

REFINED_SEVERITY = {
    "record_missing": "critical",
    "missing_question": "critical",
    "missing_answer": "critical",
    "multiple_choice_json": "critical",
    "short_question": "high",
    "short_answer": "high",
    "placeholder_content": "high",
    "truncated_answer": "high",
    "unparseable_structure": "medium",
}

TRUNCATION_PATTERNS = [
    re.compile(r"\.{3,}$"),
    re.compile(r"\.\.\s*$"),
    re.compile(r"continues\s*$", re.IGNORECASE),
    re.compile(r"and so on\s*$", re.IGNORECASE),
    re.compile(r"\[truncated", re.IGNORECASE),
    re.compile(r"\[continued", re.IGNORECASE),
]


def structural_confidence(payload: str) -> float:
    """Confidence (0-1) that a payload is a structured-choice encoding.

    0.0 for plain prose, rising through malformed collections to 1.0 for a
    decodable option list with a correct answer and four or more options.
    """
    stripped = (payload or "").strip()
    if not stripped.startswith(COLLECTION_OPENERS):
        return 0.0

    options = decode_choices(stripped)
    if options is None:
        try:
            json.loads(stripped)
        except (json.JSONDecodeError, ValueError):
            return 0.2
        return 0.4

    confidence = 0.7
    if any(option.is_correct for option in options):
        confidence += 0.2
    if len(options) >= 4:
        confidence += 0.1
    return round(min(confidence, 1.0), 2)


def refine_issues(record: ContentRecord, gate: QualityGate) -> list[str]:
    """Finer-grained issue names than the quality gate's three kinds."""
    issues: list[str] = []
    prompt = record.prompt_text.strip()
    answer = record.answer_payload.strip()

    if not prompt:
        issues.append("missing_question")
    elif len(prompt) < gate.min_field_length:
        issues.append("short_question")

    if not answer:
        issues.append("missing_answer")
    elif len(answer) < gate.min_field_length:
        issues.append("short_answer")

    kind = detect_format(answer)
    if kind == FormatKind.STRUCTURED_CHOICE:
        issues.append("multiple_choice_json")
    elif kind == FormatKind.UNKNOWN and answer:
        issues.append("unparseable_structure")
    elif any(pattern.search(answer) for pattern in TRUNCATION_PATTERNS):
        issues.append("truncated_answer")

    if IssueKind.PLACEHOLDER_CONTENT in gate.validate(record).issues:
        issues.append("placeholder_content")

    return issues


def diagnostic_score(
    record: ContentRecord,
    issues: list[str],
    confidence: float,
    min_field_length: int,
) -> float:
    """Heuristic quality score (0-100) from length, issue severity and structure."""
    length = len(record.prompt_text.strip()) + len(record.answer_payload.strip())
    completeness = min(1.0, length / (10 * max(min_field_length, 1)))
    penalty = sum(SEVERITY_PENALTY[REFINED_SEVERITY[issue]] for issue in issues)
    score = 60.0 + 40.0 * completeness - penalty - 20.0 * confidence
    return round(max(0.0, min(100.0, score)), 1)


def suggested_priority(issues: list[str]) -> Optional[int]:
    if not issues:
        return None
    return min(SEVERITY_PRIORITY[REFINED_SEVERITY[issue]] for issue in issues)


class VerifierBot:
    """Advisory annotator for pending work items."""

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
        self.worker_id = worker_id or f"verifier-{os.getpid()}-{uuid.uuid4().hex[:8]}"

    def verify_next(self) -> Optional[VerifiedItem]:
        """Annotate the most urgent unannotated pending item.

        Returns None when every pending item is already annotated.
        """
        while True:
            item = self.queue.next_unannotated()
            if item is None:
                return None
            verified = self._verify(item)
            if verified is not None:
                return verified
            # Another verifier annotated it, or it was claimed meanwhile.

    def _verify(self, item: WorkItem) -> Optional[VerifiedItem]:
        record = self.corpus.get_record(item.item_ref)
        if record is None:
            issues = ["record_missing"]
            confidence = 0.0
            score = 0.0
        else:
            issues = refine_issues(record, self.gate)
            confidence = structural_confidence(record.answer_payload)
            score = diagnostic_score(record, issues, confidence, self.gate.min_field_length)

        annotation = WorkAnnotation(
            issues=issues,
            score=score,
            structural_confidence=confidence,
            suggested_priority=suggested_priority(issues),
            verifier=self.worker_id,
            verified_at=datetime.now(timezone.utc),
        )
        if not self.queue.annotate(item.id, annotation):
            logger.debug(f"Annotation of {item.id} skipped: no longer pending or already annotated")
            return None

        try:
            self.ledger.append(
                self.worker_id,
                LedgerAction.ITEM_VERIFIED,
                item_ref=item.item_ref,
                work_item_id=item.id,
                before=record,
                payload=annotation.model_dump(mode="json"),
            )
        except StorageUnavailable:
            self.queue.retract_annotation(item.id, annotation, item.priority)
            raise
        logger.info(f"Verified {item.id} ({item.item_ref.key}): score {score}, issues {', '.join(issues) or 'none'}")

        return VerifiedItem(
            item_id=item.id,
            item_ref=item.item_ref,
            issues=issues,
            score=score,
            structural_confidence=confidence,
            suggested_priority=annotation.suggested_priority,
        )
