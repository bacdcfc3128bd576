"""Build exporter: the last-line quality gate before publishing bundles."""

import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .corpus import CorpusStore
from .ledger import LedgerWriter
from .models.content import ContentRecord, CorpusKind, StructuredTestEntry
from .models.ledger import LedgerAction
from .models.results import BuildReport, Rejection
from .quality_gate import QualityGate

logger = logging.getLogger(__name__)

ACTOR = "exporter"

CHANNELS_DIR = "channels"
CHANNELS_FILE = "channels.json"
ALL_QUESTIONS_FILE = "all-questions.json"
TESTS_FILE = "tests.json"
STATS_FILE = "stats.json"
REJECTIONS_FILE = "rejections.json"

DIFFICULTIES = ("beginner", "intermediate", "advanced")


def _question_json(record: ContentRecord) -> dict[str, Any]:
    data = dict(record.metadata)
    data.update(
        {
            "id": record.id,
            "channel": record.channel_id,
            "question": record.prompt_text,
            "answer": record.answer_payload,
        }
    )
    return data


def _test_json(entry: StructuredTestEntry) -> dict[str, Any]:
    data = dict(entry.metadata)
    data.update(
        {
            "id": entry.id,
            "channel": entry.channel_id,
            "question": entry.prompt_text,
            "options": [
                {"id": o.id, "text": o.text, "isCorrect": o.is_correct} for o in entry.options
            ],
        }
    )
    if entry.relocated_from is not None:
        data["relocatedFrom"] = entry.relocated_from.key
    return data


def _channel_stats(questions: list[dict[str, Any]]) -> dict[str, int]:
    stats = {"total": len(questions)}
    for difficulty in DIFFICULTIES:
        stats[difficulty] = sum(1 for q in questions if q.get("difficulty") == difficulty)
    return stats


def _write_json(path: Path, data: Any) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, separators=(",", ":"))


class BuildExporter:
    """Writes only gate-passing records into distributable bundles.

    Output layout under ``output_dir``:
        channels/<id>.json  {"questions": [...], "stats": {...}} for every channel
        channels.json       per-channel counts
        all-questions.json  search index of every exported question
        tests.json          valid structured-test entries
        stats.json          totals
        rejections.json     {"generatedAt", "rejected": [{itemRef, corpus, issues}]}

    rejections.json is always written, with an empty list when nothing was
    excluded. A channel whose records all fail the gate still gets a bundle,
    with no questions, and bundles left over from earlier builds are removed.
    """

    def __init__(
        self,
        corpus: CorpusStore,
        gate: Optional[QualityGate] = None,
        ledger: Optional[LedgerWriter] = None,
    ):
        self.corpus = corpus
        self.gate = gate or QualityGate()
        self.ledger = ledger

    def export(self, output_dir: Path) -> BuildReport:
        generated_at = datetime.now(timezone.utc)
        output_dir.mkdir(parents=True, exist_ok=True)
        channels_dir = output_dir / CHANNELS_DIR
        channels_dir.mkdir(exist_ok=True)
        for stale_bundle in channels_dir.glob("*.json"):
            stale_bundle.unlink()

        rejected: list[Rejection] = []
        by_channel: dict[str, list[dict[str, Any]]] = defaultdict(list)

        for record in self.corpus.iter_records():
            result = self.gate.validate(record, CorpusKind.FREE_TEXT)
            if result.is_valid:
                by_channel[record.channel_id].append(_question_json(record))
            else:
                rejected.append(
                    Rejection(item_ref=record.ref.key, corpus=CorpusKind.FREE_TEXT.value, issues=result.issues)
                )

        tests: list[dict[str, Any]] = []
        for entry in self.corpus.iter_structured():
            result = self.gate.validate(entry.as_record(), CorpusKind.STRUCTURED)
            if result.is_valid:
                tests.append(_test_json(entry))
            else:
                rejected.append(
                    Rejection(item_ref=entry.ref.key, corpus=CorpusKind.STRUCTURED.value, issues=result.issues)
                )

        channel_ids = sorted(set(self.corpus.list_channels()) | set(by_channel))
        channel_index = []
        for channel_id in channel_ids:
            questions = by_channel.get(channel_id, [])
            stats = _channel_stats(questions)
            _write_json(channels_dir / f"{channel_id}.json", {"questions": questions, "stats": stats})
            channel_index.append({"id": channel_id, "questionCount": stats["total"], **stats})
            logger.info(f"Wrote {CHANNELS_DIR}/{channel_id}.json ({len(questions)} questions)")

        search_index = [
            {
                "id": q["id"],
                "question": q["question"],
                "channel": q["channel"],
                "difficulty": q.get("difficulty"),
                "tags": q.get("tags", []),
            }
            for channel_id in sorted(by_channel)
            for q in by_channel[channel_id]
        ]
        exported = len(search_index)

        _write_json(output_dir / CHANNELS_FILE, channel_index)
        _write_json(output_dir / ALL_QUESTIONS_FILE, search_index)
        _write_json(output_dir / TESTS_FILE, tests)
        _write_json(
            output_dir / STATS_FILE,
            {
                "totalQuestions": exported,
                "totalTests": len(tests),
                "totalChannels": len(channel_index),
                "channels": channel_index,
                "lastUpdated": generated_at.isoformat(),
            },
        )
        _write_json(
            output_dir / REJECTIONS_FILE,
            {
                "generatedAt": generated_at.isoformat(),
                "rejected": [
                    {
                        "itemRef": r.item_ref,
                        "corpus": r.corpus,
                        "issues": [issue.value for issue in r.issues],
                    }
                    for r in rejected
                ],
            },
        )

        report = BuildReport(
            output_dir=str(output_dir),
            generated_at=generated_at,
            channels={channel_id: len(by_channel.get(channel_id, [])) for channel_id in channel_ids},
            exported=exported,
            structured_exported=len(tests),
            rejected=rejected,
        )

        if self.ledger is not None:
            self.ledger.append(
                ACTOR,
                LedgerAction.BUILD_EXPORTED,
                payload={
                    "output_dir": str(output_dir),
                    "exported": exported,
                    "structured_exported": len(tests),
                    "rejected": [r.item_ref for r in rejected],
                },
            )

        if rejected:
            logger.warning(f"Build excluded {len(rejected)} record(s); see {output_dir / REJECTIONS_FILE}")
        logger.info(f"Exported {exported} question(s) and {len(tests)} test entr(ies) to {output_dir}")
        return report
