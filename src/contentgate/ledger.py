"""Append-only audit ledger for the remediation pipeline."""

import hashlib
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from .errors import StorageUnavailable
from .models.content import ItemRef
from .models.ledger import LedgerAction, LedgerEntry

logger = logging.getLogger(__name__)


def snapshot_record(record: Optional[BaseModel]) -> Optional[dict]:
    """Compact snapshot of a record for before/after diffing and replay.

    Returns {"hash": sha256 of the canonical JSON, "record": the JSON dict}.
    """
    if record is None:
        return None
    data = record.model_dump(mode="json")
    canonical = json.dumps(data, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return {
        "hash": hashlib.sha256(canonical.encode("utf-8")).hexdigest(),
        "record": data,
    }


class LedgerWriter:
    """Append-only ledger writer.

    Writes entries to <workspace>/system/ledger.jsonl.
    Never truncates or rewrites; only appends.
    """

    def __init__(self, ledger_path: Path, run_id: str | None = None):
        """Initialize ledger writer.

        Args:
            ledger_path: Path to ledger.jsonl file
            run_id: Optional run ID; if None, generates a new uuid4
        """
        self.ledger_path = ledger_path
        self.run_id = run_id or str(uuid.uuid4())
        self._lock = threading.Lock()

    def record(self, entry: LedgerEntry) -> LedgerEntry:
        """Append a prepared entry.

        Raises:
            StorageUnavailable: If the ledger file cannot be written. Callers
                must then treat the triggering action as not committed.
        """
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False)
        try:
            self.ledger_path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock:
                with open(self.ledger_path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
                    f.flush()
        except OSError as e:
            logger.error(f"Ledger write failed for {entry.action.value} ({entry.item_ref}): {e}")
            raise StorageUnavailable(f"Ledger unavailable at {self.ledger_path}: {e}") from e
        return entry

    def append(
        self,
        actor: str,
        action: LedgerAction,
        item_ref: ItemRef | str | None = None,
        work_item_id: str | None = None,
        before: Optional[BaseModel] = None,
        after: Optional[BaseModel] = None,
        payload: dict | None = None,
    ) -> LedgerEntry:
        """Build and append an entry.

        Args:
            actor: Component or bot instance taking the action
            action: Audited action
            item_ref: Affected record
            work_item_id: Related work item
            before: Record state before the action
            after: Record state after the action
            payload: Action-specific data

        Returns:
            The appended LedgerEntry
        """
        entry = LedgerEntry(
            entry_id=str(uuid.uuid4()),
            run_id=self.run_id,
            ts=datetime.now(timezone.utc),
            actor=actor,
            action=action,
            item_ref=str(item_ref) if item_ref is not None else None,
            work_item_id=work_item_id,
            before_snapshot=snapshot_record(before),
            after_snapshot=snapshot_record(after),
            payload=payload or {},
        )
        return self.record(entry)


def _parse_lines(lines: list[str]) -> list[LedgerEntry]:
    entries: list[LedgerEntry] = []
    malformed_count = 0

    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(LedgerEntry(**json.loads(line)))
        except (json.JSONDecodeError, ValueError, TypeError) as e:
            malformed_count += 1
            logger.warning(f"Skipping malformed ledger line: {e}")

    if malformed_count > 0:
        logger.warning(f"Skipped {malformed_count} malformed ledger line(s)")

    return entries


def read_ledger(ledger_path: Path) -> list[LedgerEntry]:
    """Read every entry in total order (ts, entry_id).

    Malformed lines are skipped with a warning.
    """
    if not ledger_path.exists():
        return []
    try:
        with open(ledger_path, "r", encoding="utf-8") as f:
            lines = f.readlines()
    except OSError as e:
        raise StorageUnavailable(f"Ledger unreadable at {ledger_path}: {e}") from e

    entries = _parse_lines(lines)
    entries.sort(key=lambda entry: (entry.ts, entry.entry_id))
    return entries


def read_ledger_tail(ledger_path: Path, n: int = 20) -> list[LedgerEntry]:
    """Read the last N entries in total order."""
    entries = read_ledger(ledger_path)
    return entries[-n:] if n > 0 else []
