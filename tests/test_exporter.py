"""Tests for the build exporter."""

import json

from contentgate.exporter import BuildExporter
from contentgate.ledger import LedgerWriter, read_ledger
from contentgate.models.content import ItemRef, StructuredTestEntry
from contentgate.models.ledger import LedgerAction
from contentgate.models.queue import WorkAction
from contentgate.models.validation import IssueKind
from contentgate.processor import ProcessorBot
from contentgate.scanner import Scanner
from contentgate.work_queue import WorkQueue


def _read(path):
    return json.loads(path.read_text(encoding="utf-8"))


def test_export_writes_bundle_layout(corpus, tmp_path, make_record):
    corpus.import_records(
        [
            make_record("sd-1", difficulty="beginner", tags=["lb"]),
            make_record("sd-2", difficulty="advanced"),
            make_record("do-1", channel_id="devops"),
        ]
    )
    out = tmp_path / "build"

    report = BuildExporter(corpus).export(out)

    assert report.exported == 3
    assert report.channels == {"devops": 1, "system-design": 2}
    assert report.rejected == []

    channel = _read(out / "channels" / "system-design.json")
    assert [q["id"] for q in channel["questions"]] == ["sd-1", "sd-2"]
    assert channel["questions"][0]["question"] == "What is a load balancer used for?"
    assert channel["questions"][0]["tags"] == ["lb"]
    assert channel["stats"] == {"total": 2, "beginner": 1, "intermediate": 0, "advanced": 1}

    channels = _read(out / "channels.json")
    assert [c["id"] for c in channels] == ["devops", "system-design"]
    assert channels[1]["questionCount"] == 2

    search_index = _read(out / "all-questions.json")
    assert {q["id"] for q in search_index} == {"sd-1", "sd-2", "do-1"}

    assert _read(out / "tests.json") == []
    assert _read(out / "stats.json")["totalQuestions"] == 3


def test_rejection_report_always_written(corpus, tmp_path, make_record):
    corpus.import_records([make_record("q1")])
    out = tmp_path / "build"

    BuildExporter(corpus).export(out)

    report = _read(out / "rejections.json")
    assert report["rejected"] == []
    assert report["generatedAt"]


def test_export_of_empty_corpus(corpus, tmp_path):
    out = tmp_path / "build"
    report = BuildExporter(corpus).export(out)

    assert report.exported == 0
    assert _read(out / "rejections.json")["rejected"] == []
    assert _read(out / "channels.json") == []


def test_invalid_records_are_excluded_and_reported(corpus, tmp_path, make_record, choice_payload):
    corpus.import_records(
        [
            make_record("good"),
            make_record("mcq", answer=choice_payload()),
            make_record("todo", answer="FIXME before launch please"),
        ]
    )
    out = tmp_path / "build"

    report = BuildExporter(corpus).export(out)

    assert report.exported == 1
    exported_ids = [q["id"] for q in _read(out / "channels" / "system-design.json")["questions"]]
    assert exported_ids == ["good"]

    rejected = {r["itemRef"]: r for r in _read(out / "rejections.json")["rejected"]}
    assert rejected["system-design/mcq"]["issues"] == ["wrong_format"]
    assert rejected["system-design/mcq"]["corpus"] == "free-text"
    assert rejected["system-design/todo"]["issues"] == ["placeholder_content"]


def test_structured_entries_exported_to_tests_file(corpus, tmp_path, make_record, choice_payload):
    corpus.import_records([make_record("mcq", answer=choice_payload())])
    with corpus.transaction() as tx:
        tx.add_structured(
            StructuredTestEntry(
                id="broken",
                channel_id="system-design",
                prompt_text="Which option is right?",
                source_payload=choice_payload(correct_index=-1),
            )
        )
    out = tmp_path / "build"

    queue = WorkQueue(tmp_path / "queue.sqlite")
    ledger = LedgerWriter(tmp_path / "ledger.jsonl")
    Scanner(queue, ledger).scan(corpus)
    ProcessorBot(corpus, queue, ledger).process_next()

    report = BuildExporter(corpus).export(out)

    tests = _read(out / "tests.json")
    assert [t["id"] for t in tests] == ["mcq"]
    assert tests[0]["relocatedFrom"] == "system-design/mcq"
    assert tests[0]["options"][0] == {"id": "a", "text": "Option number 1", "isCorrect": True}
    assert report.structured_exported == 1
    assert [(r.item_ref, r.corpus) for r in report.rejected] == [("system-design/broken", "structured")]


def test_scenario_empty_answer_flagged_and_excluded(corpus, queue, ledger, tmp_path, make_record):
    corpus.import_records([make_record("good"), make_record("blank", answer="")])
    ref = ItemRef(channel_id="system-design", record_id="blank")
    before = corpus.get_record(ref)

    Scanner(queue, ledger).scan(corpus)
    result = ProcessorBot(corpus, queue, ledger).process_next()
    assert result.action_taken == "flagged_manual_review"
    assert queue.pending()[0].action == WorkAction.FLAG_MANUAL_REVIEW

    report = BuildExporter(corpus, ledger=ledger).export(tmp_path / "build")

    assert [r.item_ref for r in report.rejected] == ["system-design/blank"]
    assert report.rejected[0].issues == [IssueKind.MISSING_CONTENT]
    rejections = _read(tmp_path / "build" / "rejections.json")["rejected"]
    assert rejections == [{"itemRef": "system-design/blank", "corpus": "free-text", "issues": ["missing_content"]}]
    assert corpus.get_record(ref) == before


def test_export_writes_ledger_entry(corpus, ledger, workspace_paths, make_record):
    corpus.import_records([make_record("q1")])
    BuildExporter(corpus, ledger=ledger).export(workspace_paths.build)

    entries = [e for e in read_ledger(workspace_paths.ledger_file) if e.action == LedgerAction.BUILD_EXPORTED]
    assert len(entries) == 1
    assert entries[0].payload["exported"] == 1
    assert entries[0].payload["rejected"] == []


def test_channel_without_valid_records_replaces_previous_bundle(corpus, tmp_path, make_record):
    out = tmp_path / "build"
    corpus.import_records([make_record("q1", channel_id="devops")])
    BuildExporter(corpus).export(out)
    assert [q["id"] for q in _read(out / "channels" / "devops.json")["questions"]] == ["q1"]

    corpus.import_records([make_record("q1", channel_id="devops", answer="TODO fill this answer in")])
    report = BuildExporter(corpus).export(out)

    bundle = _read(out / "channels" / "devops.json")
    assert bundle["questions"] == []
    assert bundle["stats"]["total"] == 0
    assert report.channels == {"devops": 0}
    assert [r.item_ref for r in report.rejected] == ["devops/q1"]
    assert _read(out / "all-questions.json") == []


def test_leftover_channel_bundles_are_removed(corpus, tmp_path, make_record):
    out = tmp_path / "build"
    (out / "channels").mkdir(parents=True)
    (out / "channels" / "retired.json").write_text('{"questions": [{"id": "old"}]}')
    corpus.import_records([make_record("q1")])

    BuildExporter(corpus).export(out)

    assert not (out / "channels" / "retired.json").exists()
    assert sorted(p.name for p in (out / "channels").iterdir()) == ["system-design.json"]


def test_channel_named_like_an_aggregate_file(corpus, tmp_path, make_record):
    corpus.import_records([make_record("q1", channel_id="tests"), make_record("q2", channel_id="stats")])
    out = tmp_path / "build"

    report = BuildExporter(corpus).export(out)

    assert report.channels == {"stats": 1, "tests": 1}
    assert [q["id"] for q in _read(out / "channels" / "tests.json")["questions"]] == ["q1"]
    assert [q["id"] for q in _read(out / "channels" / "stats.json")["questions"]] == ["q2"]
    assert _read(out / "tests.json") == []
    assert _read(out / "stats.json")["totalQuestions"] == 2
