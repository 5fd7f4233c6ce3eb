"""Human review queue for uncertain classifications, with time-based expiry."""

import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from typing import Optional

from . import pipeline_state
from .db import from_db_time, get_connection, to_db_time
from .matcher import SameJobFn, match_or_create
from .models import (
    Classification,
    DecisionAction,
    JobRecord,
    PipelineStage,
    RawMessage,
    ReviewItem,
    to_utc,
    utcnow,
)
from .parser import extract_with_rules, map_status

logger = logging.getLogger(__name__)


def _row_to_item(row: sqlite3.Row) -> ReviewItem:
    return ReviewItem(
        id=row["id"],
        account_id=row["account_id"],
        provider_message_id=row["provider_message_id"],
        classification=Classification.model_validate_json(row["classification"]),
        confidence=row["confidence"],
        retention_days=row["retention_days"],
        created_at=from_db_time(row["created_at"]),
        expires_at=from_db_time(row["expires_at"]),
        manually_reviewed=bool(row["manually_reviewed"]),
    )


def store(
    message: RawMessage,
    classification: Classification,
    retention_days: int,
    now: Optional[datetime] = None,
) -> ReviewItem:
    """Queue a message for review. Storing the same message again replaces the
    snapshot but keeps the original creation time, so expiry never moves later."""
    now = to_utc(now or utcnow())
    conn = get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        existing = conn.execute(
            "SELECT created_at, expires_at FROM review_items WHERE provider_message_id = ? AND account_id = ?",
            (message.provider_message_id, message.account_id),
        ).fetchone()

        if existing is None:
            created_at = now
            expires_at = now + timedelta(days=retention_days)
        else:
            created_at = from_db_time(existing["created_at"])
            expires_at = min(created_at + timedelta(days=retention_days), from_db_time(existing["expires_at"]))

        conn.execute(
            """
            INSERT INTO review_items
            (provider_message_id, account_id, classification, confidence, retention_days, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (provider_message_id, account_id) DO UPDATE SET
                classification = excluded.classification,
                confidence = excluded.confidence,
                retention_days = excluded.retention_days,
                expires_at = excluded.expires_at
            """,
            (
                message.provider_message_id,
                message.account_id,
                classification.model_dump_json(),
                classification.confidence,
                retention_days,
                to_db_time(created_at),
                to_db_time(expires_at),
            ),
        )
        conn.commit()

        row = conn.execute(
            "SELECT * FROM review_items WHERE provider_message_id = ? AND account_id = ?",
            (message.provider_message_id, message.account_id),
        ).fetchone()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()

    logger.info(
        f"Queued {message.account_id}/{message.provider_message_id} for review "
        f"(confidence {classification.confidence:.2f}, {retention_days} days)"
    )
    return _row_to_item(row)


def get_item(item_id: int) -> Optional[ReviewItem]:
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM review_items WHERE id = ?", (item_id,)).fetchone()
        return _row_to_item(row) if row else None
    finally:
        conn.close()


def list_items(account_id: Optional[str] = None, include_reviewed: bool = True) -> list[ReviewItem]:
    query = "SELECT * FROM review_items WHERE 1 = 1"
    params: list = []
    if account_id is not None:
        query += " AND account_id = ?"
        params.append(account_id)
    if not include_reviewed:
        query += " AND manually_reviewed = 0"
    query += " ORDER BY expires_at, id"

    conn = get_connection()
    try:
        return [_row_to_item(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def mark_reviewed(item_id: int) -> bool:
    """Flag an item as seen by a human; reviewed items are never swept."""
    conn = get_connection()
    try:
        cursor = conn.execute("UPDATE review_items SET manually_reviewed = 1 WHERE id = ?", (item_id,))
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def _delete(item_id: int) -> None:
    conn = get_connection()
    try:
        conn.execute("DELETE FROM review_items WHERE id = ?", (item_id,))
        conn.commit()
    finally:
        conn.close()


def confirm(item_id: int, as_job_related: bool, same_job: Optional[SameJobFn] = None) -> Optional[JobRecord]:
    """Apply a human verdict to a queued item.

    Confirmed items become (or join) a job and stay in the queue flagged as
    reviewed. Rejected items are removed and their pipeline record is marked
    not job-related.
    """
    item = get_item(item_id)
    if item is None:
        raise KeyError(f"No review item {item_id}")

    record = pipeline_state.get_record(item.account_id, item.provider_message_id)
    if record is None:
        raise KeyError(f"No pipeline record for {item.account_id}/{item.provider_message_id}")

    if not as_job_related:
        pipeline_state.set_decision(
            item.account_id, item.provider_message_id, DecisionAction.DISCARD, is_job_related=False
        )
        _delete(item_id)
        logger.info(f"Review item {item_id} rejected")
        return None

    message = record.message
    snapshot = item.classification
    rules = extract_with_rules(message.subject, message.body_text, message.from_address)
    classification = snapshot.model_copy(
        update={
            "is_job_related": True,
            "company": snapshot.company or rules["company"],
            "position": snapshot.position or rules["position"],
            "status": snapshot.status or map_status(rules["status"]),
            "method": snapshot.method or "rules",
        }
    )

    job = match_or_create(message, classification, same_job)
    pipeline_state.advance(
        item.account_id,
        item.provider_message_id,
        PipelineStage.PROMOTED_TO_JOBS,
        is_job_related=True,
        company=classification.company,
        position=classification.position,
        status=classification.status,
        extraction_method=classification.method,
        job_id=job.id,
    )
    pipeline_state.set_decision(item.account_id, item.provider_message_id, DecisionAction.JOB)
    mark_reviewed(item_id)
    logger.info(f"Review item {item_id} confirmed as job {job.id}")
    return job


def withdraw(account_id: str, provider_message_id: str) -> bool:
    """Drop the unreviewed queue entry for a message that has since become a job."""
    conn = get_connection()
    try:
        cursor = conn.execute(
            """
            DELETE FROM review_items
            WHERE account_id = ? AND provider_message_id = ? AND manually_reviewed = 0
            """,
            (account_id, provider_message_id),
        )
        conn.commit()
        removed = cursor.rowcount > 0
    finally:
        conn.close()

    if removed:
        logger.info(f"Withdrew review item for {account_id}/{provider_message_id}")
    return removed


def sweep_expired(now: Optional[datetime] = None) -> int:
    """Delete unreviewed items whose expiry has passed. Returns how many went."""
    now = to_utc(now or utcnow())
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT id, expires_at FROM review_items WHERE manually_reviewed = 0"
        ).fetchall()
        expired = [row["id"] for row in rows if from_db_time(row["expires_at"]) <= now]
        conn.executemany("DELETE FROM review_items WHERE id = ?", [(item_id,) for item_id in expired])
        conn.commit()
    finally:
        conn.close()

    if expired:
        logger.info(f"Swept {len(expired)} expired review items")
    return len(expired)


class ReviewSweeper(threading.Thread):
    """Background thread that sweeps once after a startup delay, then periodically."""

    def __init__(self, interval_seconds: float, initial_delay_seconds: float = 30.0):
        super().__init__(name="review-sweeper", daemon=True)
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self._stop_event = threading.Event()

    def run(self) -> None:
        delay = self.initial_delay_seconds
        while not self._stop_event.wait(delay):
            try:
                sweep_expired()
            except Exception:
                logger.exception("Review sweep failed")
            delay = self.interval_seconds

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)
