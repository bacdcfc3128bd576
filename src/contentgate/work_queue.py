"""Durable remediation work queue backed by sqlite.

Every state transition is a single conditional UPDATE inside a
BEGIN IMMEDIATE transaction, so exactly one caller wins any race and the
queue stays correct across processes and restarts.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from .config import DEFAULT_MAX_ATTEMPTS
from .errors import DuplicateActiveItem, InvalidTransition, StaleClaim
from .models.content import ItemRef
from .models.queue import (
    TERMINAL_STATUSES,
    QueueStats,
    WorkAction,
    WorkAnnotation,
    WorkItem,
    WorkStatus,
)
from .storage import connect, immediate, iso_now, json_dumps, json_loads, reading

logger = logging.getLogger(__name__)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_item(row: sqlite3.Row) -> WorkItem:
    annotation = json_loads(row["annotation_json"])
    return WorkItem(
        id=str(row["id"]),
        item_type=row["item_type"],
        item_ref=ItemRef.from_key(str(row["item_ref"])),
        action=WorkAction(row["action"]),
        priority=int(row["priority"]),
        status=WorkStatus(row["status"]),
        reason=str(row["reason"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
        attempts=int(row["attempts"]),
        claimed_by=row["claimed_by"],
        claimed_at=_parse_ts(row["claimed_at"]),
        annotation=WorkAnnotation(**annotation) if annotation else None,
        outcome_note=row["outcome_note"],
    )


class WorkQueue:
    """Owner of every WorkItem state transition.

    State machine: pending -> in-progress -> {done, failed}, plus
    in-progress -> pending on release. At most one pending or in-progress
    item may exist per item_ref; a partial unique index enforces it.
    """

    def __init__(self, db_path: Path, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.db_path = db_path
        self.max_attempts = max_attempts
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            with immediate(conn):
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS work_items(
                      id TEXT PRIMARY KEY,
                      item_type TEXT NOT NULL,
                      item_ref TEXT NOT NULL,
                      action TEXT NOT NULL,
                      priority INTEGER NOT NULL,
                      status TEXT NOT NULL,
                      reason TEXT NOT NULL,
                      created_at TEXT NOT NULL,
                      updated_at TEXT NOT NULL,
                      attempts INTEGER NOT NULL DEFAULT 0,
                      claimed_by TEXT,
                      claimed_at TEXT,
                      annotation_json TEXT,
                      outcome_note TEXT,
                      requeued_from TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_work_items_active_ref
                    ON work_items(item_ref) WHERE status IN ('pending', 'in-progress')
                    """
                )
                conn.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_work_items_status_priority
                    ON work_items(status, priority, created_at)
                    """
                )
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _insert(
        self,
        conn: sqlite3.Connection,
        item_ref: ItemRef,
        action: WorkAction,
        priority: int,
        reason: str,
        requeued_from: Optional[str] = None,
    ) -> WorkItem:
        now = iso_now()
        item_id = str(uuid.uuid4())
        try:
            row = conn.execute(
                """
                INSERT INTO work_items(
                  id, item_type, item_ref, action, priority, status, reason,
                  created_at, updated_at, attempts, requeued_from
                )
                VALUES(?, 'question', ?, ?, ?, 'pending', ?, ?, ?, 0, ?)
                RETURNING *
                """,
                (item_id, item_ref.key, action.value, priority, reason, now, now, requeued_from),
            ).fetchone()
        except sqlite3.IntegrityError as e:
            existing = conn.execute(
                "SELECT id FROM work_items WHERE item_ref = ? AND status IN ('pending', 'in-progress')",
                (item_ref.key,),
            ).fetchone()
            raise DuplicateActiveItem(item_ref.key, existing["id"] if existing else None) from e
        return _row_to_item(row)

    def enqueue(
        self,
        item_ref: ItemRef,
        action: WorkAction,
        priority: int,
        reason: str,
    ) -> WorkItem:
        """Create a pending item.

        Raises:
            DuplicateActiveItem: If the record already has a pending or in-progress item
        """
        conn = self._connect()
        try:
            try:
                with immediate(conn):
                    item = self._insert(conn, item_ref, action, priority, reason)
            except DuplicateActiveItem:
                logger.debug(f"Skipped enqueue for {item_ref.key}: active item exists")
                raise
        finally:
            conn.close()
        logger.info(f"Enqueued {item.action.value} for {item_ref.key} (priority {priority}, id {item.id})")
        return item

    def requeue(self, item_id: str) -> WorkItem:
        """Manually re-enqueue a terminal item as a NEW pending item with fresh attempts."""
        conn = self._connect()
        try:
            with immediate(conn):
                row = conn.execute("SELECT * FROM work_items WHERE id = ?", (item_id,)).fetchone()
                if row is None or WorkStatus(row["status"]) not in TERMINAL_STATUSES:
                    raise InvalidTransition(item_id, row["status"] if row else None, WorkStatus.PENDING.value)
                original = _row_to_item(row)
                item = self._insert(
                    conn,
                    original.item_ref,
                    original.action,
                    original.priority,
                    original.reason,
                    requeued_from=original.id,
                )
        finally:
            conn.close()
        logger.info(f"Requeued {original.id} as {item.id} for {item.item_ref.key}")
        return item

    def discard_unclaimed(self, item_id: str) -> bool:
        """Delete a pending item that was never claimed.

        Only for undoing an enqueue whose ledger entry could not be written.
        """
        conn = self._connect()
        try:
            with immediate(conn):
                row = conn.execute(
                    "DELETE FROM work_items WHERE id = ? AND status = 'pending' AND attempts = 0 RETURNING id",
                    (item_id,),
                ).fetchone()
        finally:
            conn.close()
        if row is not None:
            logger.warning(f"Discarded unaudited work item {item_id}")
        return row is not None

    # ------------------------------------------------------------------
    # Claims and transitions
    # ------------------------------------------------------------------

    def claim(self, item_id: str, worker_id: Optional[str] = None) -> Optional[WorkItem]:
        """Claim one specific pending item (operator triage). None if it is not pending.

        Operator claims do not count against max_attempts.
        """
        now = iso_now()
        conn = self._connect()
        try:
            with immediate(conn):
                row = conn.execute(
                    """
                    UPDATE work_items
                    SET status = 'in-progress',
                        claimed_at = ?, updated_at = ?, claimed_by = ?
                    WHERE id = ? AND status = 'pending'
                    RETURNING *
                    """,
                    (now, now, worker_id, item_id),
                ).fetchone()
        finally:
            conn.close()
        return _row_to_item(row) if row is not None else None

    def claim_next(
        self,
        action: Optional[WorkAction] = None,
        worker_id: Optional[str] = None,
    ) -> Optional[WorkItem]:
        """Atomically claim the most urgent pending item.

        Picks the lowest priority number (then oldest), moves it to
        in-progress and increments attempts. Returns None when nothing matches.
        """
        now = iso_now()
        action_clause = "AND action = ?" if action is not None else ""
        params: list = [now, now, worker_id]
        if action is not None:
            params.append(action.value)

        conn = self._connect()
        try:
            with immediate(conn):
                row = conn.execute(
                    f"""
                    UPDATE work_items
                    SET status = 'in-progress', attempts = attempts + 1,
                        claimed_at = ?, updated_at = ?, claimed_by = ?
                    WHERE status = 'pending' AND id = (
                        SELECT id FROM work_items
                        WHERE status = 'pending' {action_clause}
                        ORDER BY priority, created_at, id
                        LIMIT 1
                    )
                    RETURNING *
                    """,
                    params,
                ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        item = _row_to_item(row)
        logger.info(f"{worker_id or 'worker'} claimed {item.id} ({item.action.value} {item.item_ref.key}, attempt {item.attempts})")
        return item

    def _transition_error(
        self,
        conn: sqlite3.Connection,
        item_id: str,
        target: WorkStatus,
        worker_id: Optional[str],
    ) -> InvalidTransition:
        row = conn.execute("SELECT status, claimed_by FROM work_items WHERE id = ?", (item_id,)).fetchone()
        # A holder mismatch means the claim was lost, whatever the current status.
        if row is not None and worker_id is not None and row["claimed_by"] != worker_id:
            error: InvalidTransition = StaleClaim(item_id, worker_id, row["claimed_by"])
            logger.warning(str(error))
            return error
        error = InvalidTransition(item_id, row["status"] if row else None, target.value)
        logger.error(f"Invalid work item transition: {error}")
        return error

    def complete(
        self,
        item_id: str,
        outcome: WorkStatus,
        worker_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> WorkItem:
        """Move an in-progress item to done or failed.

        Raises:
            InvalidTransition: If the item is not in-progress
            StaleClaim: If worker_id is given and no longer holds the claim
        """
        if outcome not in TERMINAL_STATUSES:
            raise ValueError(f"complete() outcome must be done or failed, got {outcome.value}")

        holder_clause = "AND claimed_by = ?" if worker_id is not None else ""
        params: list = [outcome.value, iso_now(), note, item_id]
        if worker_id is not None:
            params.append(worker_id)

        conn = self._connect()
        try:
            with immediate(conn):
                row = conn.execute(
                    f"""
                    UPDATE work_items
                    SET status = ?, updated_at = ?, outcome_note = ?, claimed_by = NULL
                    WHERE id = ? AND status = 'in-progress' {holder_clause}
                    RETURNING *
                    """,
                    params,
                ).fetchone()
                if row is None:
                    raise self._transition_error(conn, item_id, outcome, worker_id)
        finally:
            conn.close()

        item = _row_to_item(row)
        logger.info(f"Completed {item.id} as {item.status.value}")
        return item

    def _release_locked(
        self,
        conn: sqlite3.Connection,
        item_id: str,
        worker_id: Optional[str],
        note: Optional[str],
    ) -> Optional[sqlite3.Row]:
        holder_clause = "AND claimed_by = ?" if worker_id is not None else ""
        params: list = [self.max_attempts, self.max_attempts, note, iso_now(), item_id]
        if worker_id is not None:
            params.append(worker_id)
        return conn.execute(
            f"""
            UPDATE work_items
            SET status = CASE WHEN attempts >= ? THEN 'failed' ELSE 'pending' END,
                outcome_note = CASE WHEN attempts >= ? THEN 'attempts exhausted' ELSE ? END,
                claimed_by = NULL, claimed_at = NULL, updated_at = ?
            WHERE id = ? AND status = 'in-progress' {holder_clause}
            RETURNING *
            """,
            params,
        ).fetchone()

    def release(
        self,
        item_id: str,
        worker_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> WorkItem:
        """Return an in-progress item to pending.

        Items that already used max_attempts claims become permanently failed
        instead; they need a manual requeue.
        """
        conn = self._connect()
        try:
            with immediate(conn):
                row = self._release_locked(conn, item_id, worker_id, note)
                if row is None:
                    raise self._transition_error(conn, item_id, WorkStatus.PENDING, worker_id)
        finally:
            conn.close()

        item = _row_to_item(row)
        if item.status == WorkStatus.FAILED:
            logger.warning(f"Released {item.id} after {item.attempts} attempt(s); permanently failed")
        else:
            logger.info(f"Released {item.id} back to pending")
        return item

    def hand_off(
        self,
        item_id: str,
        action: WorkAction,
        reason: str,
        priority: int,
        worker_id: Optional[str] = None,
    ) -> tuple[WorkItem, WorkItem]:
        """Fail an in-progress item and enqueue its follow-up in one transaction.

        Returns:
            (closed item, new pending item)
        """
        holder_clause = "AND claimed_by = ?" if worker_id is not None else ""
        params: list = [iso_now(), f"handed off to {action.value}", item_id]
        if worker_id is not None:
            params.append(worker_id)

        conn = self._connect()
        try:
            with immediate(conn):
                row = conn.execute(
                    f"""
                    UPDATE work_items
                    SET status = 'failed', updated_at = ?, outcome_note = ?, claimed_by = NULL
                    WHERE id = ? AND status = 'in-progress' {holder_clause}
                    RETURNING *
                    """,
                    params,
                ).fetchone()
                if row is None:
                    raise self._transition_error(conn, item_id, WorkStatus.FAILED, worker_id)
                closed = _row_to_item(row)
                follow_up = self._insert(conn, closed.item_ref, action, priority, reason)
        finally:
            conn.close()

        logger.info(f"Handed off {closed.id} to {follow_up.action.value} item {follow_up.id}")
        return closed, follow_up

    def recover_stale(
        self,
        threshold_seconds: int,
        now: Optional[datetime] = None,
        on_recover: Optional[Callable[[WorkItem, Optional[str]], None]] = None,
    ) -> list[WorkItem]:
        """Force-release every in-progress item claimed longer ago than the threshold.

        Each item is released in its own transaction. ``on_recover(item,
        previous_holder)`` runs before that transaction commits; if it raises,
        the item stays in-progress and the sweep stops with that error.
        """
        cutoff = ((now or datetime.now(timezone.utc)) - timedelta(seconds=threshold_seconds)).isoformat(
            timespec="microseconds"
        )
        recovered: list[WorkItem] = []

        conn = self._connect()
        try:
            with reading(conn):
                stale_rows = conn.execute(
                    "SELECT id, claimed_by FROM work_items "
                    "WHERE status = 'in-progress' AND claimed_at < ? ORDER BY claimed_at",
                    (cutoff,),
                ).fetchall()

            for stale in stale_rows:
                previous_holder = stale["claimed_by"]
                with immediate(conn):
                    row = self._release_locked(
                        conn,
                        stale["id"],
                        previous_holder,
                        f"stale claim recovered (was {previous_holder or 'unknown'})",
                    )
                    if row is None:
                        # Completed or released since the candidate scan.
                        continue
                    item = _row_to_item(row)
                    if on_recover is not None:
                        on_recover(item, previous_holder)
                recovered.append(item)
                logger.warning(f"Recovered stale claim {item.id} ({item.item_ref.key}) -> {item.status.value}")
        finally:
            conn.close()

        return recovered

    # ------------------------------------------------------------------
    # Annotation (verifier)
    # ------------------------------------------------------------------

    def next_unannotated(self, action: Optional[WorkAction] = None) -> Optional[WorkItem]:
        """Most urgent pending item that has no verifier annotation yet."""
        action_clause = "AND action = ?" if action is not None else ""
        params = [action.value] if action is not None else []
        conn = self._connect()
        try:
            with reading(conn):
                row = conn.execute(
                    f"""
                    SELECT * FROM work_items
                    WHERE status = 'pending' AND annotation_json IS NULL {action_clause}
                    ORDER BY priority, created_at, id
                    LIMIT 1
                    """,
                    params,
                ).fetchone()
            return _row_to_item(row) if row is not None else None
        finally:
            conn.close()

    def annotate(self, item_id: str, annotation: WorkAnnotation) -> bool:
        """Attach an annotation to a pending, not yet annotated item.

        Never changes status. A suggested priority may only make the item
        more urgent. Returns False if another verifier got there first or the
        item is no longer pending.
        """
        conn = self._connect()
        try:
            with immediate(conn):
                row = conn.execute(
                    """
                    UPDATE work_items
                    SET annotation_json = ?,
                        priority = MIN(priority, COALESCE(?, priority)),
                        updated_at = ?
                    WHERE id = ? AND status = 'pending' AND annotation_json IS NULL
                    RETURNING id
                    """,
                    (
                        json_dumps(annotation.model_dump(mode="json")),
                        annotation.suggested_priority,
                        iso_now(),
                        item_id,
                    ),
                ).fetchone()
        finally:
            conn.close()
        return row is not None

    def retract_annotation(self, item_id: str, annotation: WorkAnnotation, priority: int) -> bool:
        """Undo an annotation whose ledger entry could not be written.

        Only clears the annotation if it is still the one given, and restores
        the priority the item had before annotating.
        """
        conn = self._connect()
        try:
            with immediate(conn):
                row = conn.execute(
                    """
                    UPDATE work_items
                    SET annotation_json = NULL, priority = ?, updated_at = ?
                    WHERE id = ? AND annotation_json = ?
                    RETURNING id
                    """,
                    (
                        priority,
                        iso_now(),
                        item_id,
                        json_dumps(annotation.model_dump(mode="json")),
                    ),
                ).fetchone()
        finally:
            conn.close()
        return row is not None

    # ------------------------------------------------------------------
    # Operator queries
    # ------------------------------------------------------------------

    def get(self, item_id: str) -> Optional[WorkItem]:
        conn = self._connect()
        try:
            with reading(conn):
                row = conn.execute("SELECT * FROM work_items WHERE id = ?", (item_id,)).fetchone()
            return _row_to_item(row) if row is not None else None
        finally:
            conn.close()

    def list_items(
        self,
        status: Optional[WorkStatus] = None,
        action: Optional[WorkAction] = None,
        item_ref: Optional[ItemRef] = None,
        limit: Optional[int] = None,
    ) -> list[WorkItem]:
        """Items in triage order (priority, then age), optionally filtered."""
        clauses = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if action is not None:
            clauses.append("action = ?")
            params.append(action.value)
        if item_ref is not None:
            clauses.append("item_ref = ?")
            params.append(item_ref.key)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit_clause = ""
        if limit:
            limit_clause = "LIMIT ?"
            params.append(limit)

        conn = self._connect()
        try:
            with reading(conn):
                rows = conn.execute(
                    f"SELECT * FROM work_items {where} ORDER BY priority, created_at, id {limit_clause}",
                    params,
                ).fetchall()
            return [_row_to_item(r) for r in rows]
        finally:
            conn.close()

    def pending(self, limit: Optional[int] = None) -> list[WorkItem]:
        """Operator triage view: pending items only."""
        return self.list_items(status=WorkStatus.PENDING, limit=limit)

    def stats(self) -> QueueStats:
        conn = self._connect()
        try:
            with reading(conn):
                rows = conn.execute(
                    "SELECT status, COUNT(1) AS n FROM work_items GROUP BY status"
                ).fetchall()
        finally:
            conn.close()
        counts = {str(r["status"]): int(r["n"]) for r in rows}
        return QueueStats(
            pending=counts.get(WorkStatus.PENDING.value, 0),
            in_progress=counts.get(WorkStatus.IN_PROGRESS.value, 0),
            done=counts.get(WorkStatus.DONE.value, 0),
            failed=counts.get(WorkStatus.FAILED.value, 0),
        )
