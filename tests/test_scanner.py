"""Tests for the corpus scanner."""

import pytest

from contentgate.errors import StorageUnavailable
from contentgate.ledger import LedgerWriter, read_ledger
from contentgate.models.ledger import LedgerAction
from contentgate.models.queue import WorkAction, WorkStatus
from contentgate.models.validation import IssueKind
from contentgate.quality_gate import QualityGate
from contentgate.scanner import Scanner, format_reason, priority_for


@pytest.fixture
def seeded_corpus(corpus, make_record, choice_payload):
    corpus.import_records(
        [
            make_record("good"),
            make_record("mcq", answer=choice_payload()),
            make_record("empty", answer=""),
            make_record("todo", answer="TODO: write this answer properly"),
            make_record("other-good", channel_id="devops"),
        ]
    )
    return corpus


def test_priority_follows_severity():
    assert priority_for([IssueKind.MISSING_CONTENT]) == 3
    assert priority_for([IssueKind.PLACEHOLDER_CONTENT]) == 2
    assert priority_for([IssueKind.MISSING_CONTENT, IssueKind.WRONG_FORMAT]) == 1


def test_reason_lists_issues_then_details(make_record, choice_payload):
    result = QualityGate().validate(make_record("q1", prompt="Short", answer=choice_payload()))
    reason = format_reason(result)
    assert reason.startswith("Issues: wrong_format, missing_content | Details: ")
    assert "Prompt shorter than 8 characters" in reason


def test_scan_enqueues_invalid_records(seeded_corpus, queue, ledger):
    summary = Scanner(queue, ledger).scan(seeded_corpus)

    assert summary.scanned == 5
    assert summary.invalid == 3
    assert summary.enqueued == 3
    assert summary.duplicates == 0

    items = {item.item_ref.record_id: item for item in queue.list_items()}
    assert set(items) == {"mcq", "empty", "todo"}
    assert all(item.action == WorkAction.FIX_FORMAT for item in items.values())
    assert items["mcq"].priority == 1
    assert items["todo"].priority == 2
    assert items["empty"].priority == 3
    assert items["empty"].reason.startswith("Issues: missing_content")


def test_scan_writes_ledger_entry_per_enqueue(seeded_corpus, queue, ledger, workspace_paths):
    Scanner(queue, ledger).scan(seeded_corpus)

    entries = read_ledger(workspace_paths.ledger_file)
    assert len(entries) == 3
    assert {e.action for e in entries} == {LedgerAction.ITEM_ENQUEUED}
    assert all(e.actor == "scanner" for e in entries)
    assert all(e.before_snapshot is not None for e in entries)


def test_scan_is_idempotent(seeded_corpus, queue, ledger):
    scanner = Scanner(queue, ledger)
    scanner.scan(seeded_corpus)
    second = scanner.scan(seeded_corpus)

    assert second.enqueued == 0
    assert second.duplicates == 3
    assert queue.stats().total == 3


def test_scan_skips_records_with_in_progress_item(seeded_corpus, queue, ledger):
    scanner = Scanner(queue, ledger)
    scanner.scan(seeded_corpus)
    queue.claim_next()

    assert scanner.scan(seeded_corpus).duplicates == 3
    assert queue.stats().total == 3


def test_scan_single_channel(seeded_corpus, queue, ledger):
    summary = Scanner(queue, ledger).scan(seeded_corpus, channel_id="devops")
    assert summary.scanned == 1
    assert summary.enqueued == 0


def test_rescan_after_completion_enqueues_again(seeded_corpus, queue, ledger):
    scanner = Scanner(queue, ledger)
    scanner.scan(seeded_corpus)
    while (item := queue.claim_next()) is not None:
        queue.complete(item.id, WorkStatus.FAILED)

    assert scanner.scan(seeded_corpus).enqueued == 3
    assert queue.stats().pending == 3


def test_scan_uses_gate_configuration(corpus, queue, ledger, make_record):
    corpus.import_records([make_record("q1", answer="Coming soon, check back later")])
    gate = QualityGate(placeholder_terms=["coming soon"])

    summary = Scanner(queue, ledger, gate).scan(corpus)
    assert summary.enqueued == 1
    assert queue.list_items()[0].priority == 2


def test_enqueue_is_undone_when_ledger_unavailable(seeded_corpus, queue, temp_workspace):
    broken_path = temp_workspace / "broken.jsonl"
    broken_path.mkdir()

    with pytest.raises(StorageUnavailable):
        Scanner(queue, LedgerWriter(broken_path)).scan(seeded_corpus)

    assert queue.stats().total == 0
