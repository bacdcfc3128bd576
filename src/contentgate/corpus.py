"""sqlite-backed storage for the regular and structured-test corpora."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from .errors import RecordNotFound, RelocationConflict, StorageUnavailable
from .ledger import LedgerWriter
from .models.content import ChoiceOption, ContentRecord, FormatKind, ItemRef, StructuredTestEntry
from .models.ledger import LedgerAction
from .quality_gate import detect_format
from .storage import connect, immediate, iso_now, json_dumps, json_loads, reading

logger = logging.getLogger(__name__)

_ID_KEYS = ("id", "record_id")
_CHANNEL_KEYS = ("channel_id", "channel", "channelId")
_PROMPT_KEYS = ("prompt_text", "question", "prompt", "promptText")
_ANSWER_KEYS = ("answer_payload", "answer", "answerPayload")


def _first(raw: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def record_from_bundle(raw: dict, default_channel: Optional[str] = None) -> ContentRecord:
    """Build a ContentRecord from a static bundle entry.

    Unknown keys are kept as metadata. The format kind is always re-detected
    from the payload rather than trusted from the bundle.
    """
    record_id = _first(raw, _ID_KEYS)
    channel_id = _first(raw, _CHANNEL_KEYS) or default_channel
    if record_id is None or not channel_id:
        raise ValueError(f"Bundle entry lacks id or channel: {sorted(raw)}")

    answer = _first(raw, _ANSWER_KEYS)
    if answer is not None and not isinstance(answer, str):
        # Payloads that arrive already decoded are stored in their encoded form.
        answer = json.dumps(answer, ensure_ascii=False)
    answer = answer or ""

    consumed = set(_ID_KEYS + _CHANNEL_KEYS + _PROMPT_KEYS + _ANSWER_KEYS)
    consumed.update({"format_kind", "formatKind", "channel_mutation_version", "channelMutationVersion"})
    metadata = {k: v for k, v in raw.items() if k not in consumed}

    return ContentRecord(
        id=str(record_id),
        channel_id=str(channel_id),
        prompt_text=str(_first(raw, _PROMPT_KEYS) or ""),
        answer_payload=answer,
        format_kind=detect_format(answer),
        metadata=metadata,
    )


def load_bundle_records(path: Path) -> list[ContentRecord]:
    """Read ContentRecords from a bundle file or a directory of bundle files.

    A bundle file is either {"questions": [...]} or a bare list. The file stem
    is the default channel for entries that do not name one.
    """
    files = sorted(path.glob("*.json")) if path.is_dir() else [path]
    records: list[ContentRecord] = []
    for bundle_file in files:
        with open(bundle_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        entries = data.get("questions", []) if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise ValueError(f"Unrecognized bundle layout in {bundle_file}")
        for raw in entries:
            if isinstance(raw, dict):
                records.append(record_from_bundle(raw, default_channel=bundle_file.stem))
    return records


def _row_to_record(row: sqlite3.Row) -> ContentRecord:
    return ContentRecord(
        id=str(row["record_id"]),
        channel_id=str(row["channel_id"]),
        prompt_text=str(row["prompt_text"]),
        answer_payload=str(row["answer_payload"]),
        format_kind=FormatKind(row["format_kind"]),
        channel_mutation_version=int(row["channel_mutation_version"]),
        metadata=dict(json_loads(row["metadata_json"]) or {}),
    )


def _row_to_structured(row: sqlite3.Row) -> StructuredTestEntry:
    relocated_from = row["relocated_from"]
    return StructuredTestEntry(
        id=str(row["entry_id"]),
        channel_id=str(row["channel_id"]),
        prompt_text=str(row["prompt_text"]),
        options=[ChoiceOption(**o) for o in json_loads(row["options_json"]) or []],
        source_payload=str(row["source_payload"]),
        relocated_from=ItemRef.from_key(relocated_from) if relocated_from else None,
        channel_mutation_version=int(row["channel_mutation_version"]),
        metadata=dict(json_loads(row["metadata_json"]) or {}),
    )


def _bump_channel(conn: sqlite3.Connection, channel_id: str) -> int:
    row = conn.execute(
        """
        INSERT INTO channels(channel_id, mutation_version) VALUES(?, 1)
        ON CONFLICT(channel_id) DO UPDATE SET mutation_version = mutation_version + 1
        RETURNING mutation_version
        """,
        (channel_id,),
    ).fetchone()
    return int(row["mutation_version"])


class CorpusTransaction:
    """Write handle valid inside CorpusStore.transaction()."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def remove_record(self, ref: ItemRef) -> ContentRecord:
        """Remove a record from the regular corpus and return its last state."""
        row = self._conn.execute(
            "SELECT * FROM questions WHERE channel_id = ? AND record_id = ?",
            (ref.channel_id, ref.record_id),
        ).fetchone()
        if row is None:
            raise RecordNotFound(ref.key)
        self._conn.execute(
            "DELETE FROM questions WHERE channel_id = ? AND record_id = ?",
            (ref.channel_id, ref.record_id),
        )
        _bump_channel(self._conn, ref.channel_id)
        return _row_to_record(row)

    def add_structured(self, entry: StructuredTestEntry) -> StructuredTestEntry:
        """Insert a structured-test entry, stamping the channel mutation version."""
        existing = self._conn.execute(
            "SELECT 1 FROM structured_tests WHERE channel_id = ? AND entry_id = ?",
            (entry.channel_id, entry.id),
        ).fetchone()
        if existing is not None:
            raise RelocationConflict(entry.ref.key)
        version = _bump_channel(self._conn, entry.channel_id)
        stored = entry.model_copy(update={"channel_mutation_version": version})
        self._conn.execute(
            """
            INSERT INTO structured_tests(
              channel_id, entry_id, prompt_text, options_json, source_payload,
              relocated_from, channel_mutation_version, metadata_json, updated_at
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.channel_id,
                stored.id,
                stored.prompt_text,
                json_dumps([o.model_dump() for o in stored.options]),
                stored.source_payload,
                stored.relocated_from.key if stored.relocated_from else None,
                stored.channel_mutation_version,
                json_dumps(stored.metadata),
                iso_now(),
            ),
        )
        return stored

    def upsert_record(self, record: ContentRecord) -> ContentRecord:
        """Insert or replace a regular-corpus record (content ingestion)."""
        version = _bump_channel(self._conn, record.channel_id)
        stored = record.model_copy(update={"channel_mutation_version": version})
        self._conn.execute(
            """
            INSERT INTO questions(
              channel_id, record_id, prompt_text, answer_payload, format_kind,
              channel_mutation_version, metadata_json, updated_at
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(channel_id, record_id) DO UPDATE SET
              prompt_text=excluded.prompt_text,
              answer_payload=excluded.answer_payload,
              format_kind=excluded.format_kind,
              channel_mutation_version=excluded.channel_mutation_version,
              metadata_json=excluded.metadata_json,
              updated_at=excluded.updated_at
            """,
            (
                stored.channel_id,
                stored.id,
                stored.prompt_text,
                stored.answer_payload,
                stored.format_kind.value,
                stored.channel_mutation_version,
                json_dumps(stored.metadata),
                iso_now(),
            ),
        )
        return stored


class CorpusStore:
    """Regular (free-text) and structured-test corpora keyed by channel."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            with immediate(conn):
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS channels(
                      channel_id TEXT PRIMARY KEY,
                      mutation_version INTEGER NOT NULL DEFAULT 0
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS questions(
                      channel_id TEXT NOT NULL,
                      record_id TEXT NOT NULL,
                      prompt_text TEXT NOT NULL,
                      answer_payload TEXT NOT NULL,
                      format_kind TEXT NOT NULL,
                      channel_mutation_version INTEGER NOT NULL,
                      metadata_json TEXT NOT NULL,
                      updated_at TEXT NOT NULL,
                      PRIMARY KEY(channel_id, record_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS structured_tests(
                      channel_id TEXT NOT NULL,
                      entry_id TEXT NOT NULL,
                      prompt_text TEXT NOT NULL,
                      options_json TEXT NOT NULL,
                      source_payload TEXT NOT NULL,
                      relocated_from TEXT,
                      channel_mutation_version INTEGER NOT NULL,
                      metadata_json TEXT NOT NULL,
                      updated_at TEXT NOT NULL,
                      PRIMARY KEY(channel_id, entry_id)
                    )
                    """
                )
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[CorpusTransaction]:
        """Open a write transaction; commits on clean exit, rolls back on error."""
        conn = self._connect()
        try:
            with immediate(conn):
                yield CorpusTransaction(conn)
        except sqlite3.IntegrityError as e:
            raise StorageUnavailable(f"Corpus write rejected: {e}") from e
        finally:
            conn.close()

    def import_records(
        self,
        records: Iterable[ContentRecord],
        ledger: Optional[LedgerWriter] = None,
        source: Optional[str] = None,
    ) -> list[ContentRecord]:
        """Ingest records into the regular corpus in one transaction.

        When a ledger is given, the RECORDS_IMPORTED entry is written before
        the transaction commits; a ledger failure rolls the import back.
        """
        with self.transaction() as tx:
            stored = [tx.upsert_record(record) for record in records]
            if ledger is not None:
                ledger.append(
                    "importer",
                    LedgerAction.RECORDS_IMPORTED,
                    payload={
                        "source": source,
                        "count": len(stored),
                        "channels": sorted({r.channel_id for r in stored}),
                    },
                )
        logger.info(f"Imported {len(stored)} record(s) into {self.db_path}")
        return stored

    def import_bundle(self, path: Path, ledger: Optional[LedgerWriter] = None) -> list[ContentRecord]:
        """Ingest a static JSON bundle file or directory."""
        return self.import_records(load_bundle_records(path), ledger=ledger, source=str(path))

    def list_channels(self) -> list[str]:
        conn = self._connect()
        try:
            with reading(conn):
                rows = conn.execute(
                    """
                    SELECT channel_id FROM questions
                    UNION SELECT channel_id FROM structured_tests
                    ORDER BY channel_id
                    """
                ).fetchall()
            return [str(r["channel_id"]) for r in rows]
        finally:
            conn.close()

    def channel_version(self, channel_id: str) -> int:
        conn = self._connect()
        try:
            with reading(conn):
                row = conn.execute(
                    "SELECT mutation_version FROM channels WHERE channel_id = ?",
                    (channel_id,),
                ).fetchone()
            return int(row["mutation_version"]) if row is not None else 0
        finally:
            conn.close()

    def iter_records(self, channel_id: Optional[str] = None) -> list[ContentRecord]:
        """All regular-corpus records, ordered by channel then id."""
        conn = self._connect()
        try:
            with reading(conn):
                if channel_id is None:
                    rows = conn.execute(
                        "SELECT * FROM questions ORDER BY channel_id, record_id"
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM questions WHERE channel_id = ? ORDER BY record_id",
                        (channel_id,),
                    ).fetchall()
            return [_row_to_record(r) for r in rows]
        finally:
            conn.close()

    def get_record(self, ref: ItemRef) -> Optional[ContentRecord]:
        conn = self._connect()
        try:
            with reading(conn):
                row = conn.execute(
                    "SELECT * FROM questions WHERE channel_id = ? AND record_id = ?",
                    (ref.channel_id, ref.record_id),
                ).fetchone()
            return _row_to_record(row) if row is not None else None
        finally:
            conn.close()

    def iter_structured(self, channel_id: Optional[str] = None) -> list[StructuredTestEntry]:
        """All structured-test entries, ordered by channel then id."""
        conn = self._connect()
        try:
            with reading(conn):
                if channel_id is None:
                    rows = conn.execute(
                        "SELECT * FROM structured_tests ORDER BY channel_id, entry_id"
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM structured_tests WHERE channel_id = ? ORDER BY entry_id",
                        (channel_id,),
                    ).fetchall()
            return [_row_to_structured(r) for r in rows]
        finally:
            conn.close()

    def get_structured(self, ref: ItemRef) -> Optional[StructuredTestEntry]:
        conn = self._connect()
        try:
            with reading(conn):
                row = conn.execute(
                    "SELECT * FROM structured_tests WHERE channel_id = ? AND entry_id = ?",
                    (ref.channel_id, ref.record_id),
                ).fetchone()
            return _row_to_structured(row) if row is not None else None
        finally:
            conn.close()

    def count(self) -> dict[str, int]:
        conn = self._connect()
        try:
            with reading(conn):
                questions = conn.execute("SELECT COUNT(1) AS n FROM questions").fetchone()
                structured = conn.execute("SELECT COUNT(1) AS n FROM structured_tests").fetchone()
            return {"questions": int(questions["n"]), "structured_tests": int(structured["n"])}
        finally:
            conn.close()
