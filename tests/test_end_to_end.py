"""End-to-end pipeline runs: scan, verify, process, export."""

import json

from contentgate.exporter import BuildExporter
from contentgate.ledger import read_ledger
from contentgate.models.content import CorpusKind
from contentgate.models.ledger import LedgerAction
from contentgate.models.results import ProcessOutcome
from contentgate.processor import ProcessorBot
from contentgate.quality_gate import QualityGate
from contentgate.scanner import Scanner
from contentgate.verifier import VerifierBot
from contentgate.workers import run_worker


def test_nine_structured_records_are_relocated(corpus, queue, ledger, workspace_paths, make_record, choice_payload):
    records = [
        make_record(f"mcq-{i}", channel_id="system-design" if i % 2 else "devops", answer=choice_payload(i % 4))
        for i in range(9)
    ]
    corpus.import_records(records + [make_record("plain")])

    summary = Scanner(queue, ledger).scan(corpus)
    assert summary.enqueued == 9

    processed = run_worker(ProcessorBot(corpus, queue, ledger).process_next)

    assert processed.handled == 9
    assert all(r.outcome == ProcessOutcome.DONE for r in processed.results)

    remaining = [r for r in corpus.iter_records() if r.id.startswith("mcq-")]
    assert remaining == []
    structured = corpus.iter_structured()
    assert len(structured) == 9
    gate = QualityGate()
    assert all(gate.validate(e.as_record(), CorpusKind.STRUCTURED).is_valid for e in structured)

    assert queue.stats().done == 9
    assert queue.stats().pending == 0
    assert len(read_ledger(workspace_paths.ledger_file)) >= 9


def test_full_pipeline_with_verifier_and_export(corpus, queue, ledger, workspace_paths, make_record, choice_payload):
    corpus.import_records(
        [
            make_record("good"),
            make_record("mcq", answer=choice_payload()),
            make_record("blank", answer=""),
            make_record("todo", answer="TBD after the design review"),
        ]
    )

    Scanner(queue, ledger).scan(corpus)
    verified = run_worker(VerifierBot(corpus, queue, ledger).verify_next)
    assert verified.handled == 3

    processed = run_worker(ProcessorBot(corpus, queue, ledger).process_next)
    actions = sorted(r.action_taken for r in processed.results)
    assert actions == ["flagged_manual_review", "flagged_manual_review", "relocated"]

    # Manual-review items are pending and not yet annotated.
    assert run_worker(VerifierBot(corpus, queue, ledger).verify_next).handled == 2

    report = BuildExporter(corpus, ledger=ledger).export(workspace_paths.build)
    assert report.exported == 1
    assert report.structured_exported == 1
    assert sorted(r.item_ref for r in report.rejected) == ["system-design/blank", "system-design/todo"]

    tests = json.loads((workspace_paths.build / "tests.json").read_text())
    assert [t["id"] for t in tests] == ["mcq"]

    actions_logged = {e.action for e in read_ledger(workspace_paths.ledger_file)}
    assert {
        LedgerAction.ITEM_ENQUEUED,
        LedgerAction.ITEM_VERIFIED,
        LedgerAction.RECORD_RELOCATED,
        LedgerAction.FLAGGED_FOR_REVIEW,
        LedgerAction.BUILD_EXPORTED,
    } <= actions_logged


def test_rescan_after_processing_creates_no_duplicates(corpus, queue, ledger, make_record, choice_payload):
    corpus.import_records([make_record("mcq", answer=choice_payload()), make_record("blank", answer="")])
    scanner = Scanner(queue, ledger)
    scanner.scan(corpus)
    run_worker(ProcessorBot(corpus, queue, ledger).process_next)
    total = queue.stats().total

    rescan = scanner.scan(corpus)
    assert rescan.scanned == 1
    assert rescan.duplicates == 1
    assert queue.stats().total == total
