"""Job matching and deduplication.

This is the only module that writes to the jobs, job_emails, job_threads and
status_history tables.
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .config import get_config
from .db import from_db_time, get_connection, to_db_time
from .models import (
    Classification,
    EmailHistoryEntry,
    JobRecord,
    JobStatus,
    RawMessage,
    StatusChange,
    utcnow,
)
from .parser import normalize, similarity_key

logger = logging.getLogger(__name__)

UNKNOWN_COMPANY = "Unknown Company"
UNKNOWN_POSITION = "Unknown Position"

SameJobFn = Callable[[Any, Any], bool]


def same_key(a: Any, b: Any) -> bool:
    """Fallback matcher: normalized company/position keys are equal."""
    return similarity_key(a.company, a.position) == similarity_key(b.company, b.position)


def _is_placeholder(value: Optional[str]) -> bool:
    return not value or value in (UNKNOWN_COMPANY, UNKNOWN_POSITION)


def _overlaps(a: Optional[str], b: Optional[str]) -> bool:
    a, b = normalize(a), normalize(b)
    if not a or not b:
        return False
    return a in b or b in a


def _load_job(conn: sqlite3.Connection, job_id: str) -> Optional[JobRecord]:
    row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
    if row is None:
        return None

    history = conn.execute(
        "SELECT message_id, date, subject FROM job_emails WHERE job_id = ? ORDER BY date, id",
        (job_id,),
    ).fetchall()

    return JobRecord(
        id=row["id"],
        account_id=row["account_id"],
        company=row["company"],
        position=row["position"],
        status=JobStatus(row["status"]),
        first_seen_date=from_db_time(row["first_seen_date"]),
        email_history=[
            EmailHistoryEntry(message_id=h["message_id"], date=from_db_time(h["date"]), subject=h["subject"])
            for h in history
        ],
        confidence=row["confidence"],
        classification_model=row["classification_model"],
        similarity_key=row["similarity_key"],
    )


def get_job(job_id: str) -> Optional[JobRecord]:
    conn = get_connection()
    try:
        return _load_job(conn, job_id)
    finally:
        conn.close()


def list_jobs(account_id: Optional[str] = None) -> list[JobRecord]:
    """All jobs (optionally for one account), most recently seen first."""
    conn = get_connection()
    try:
        if account_id is None:
            rows = conn.execute("SELECT id FROM jobs ORDER BY first_seen_date DESC").fetchall()
        else:
            rows = conn.execute(
                "SELECT id FROM jobs WHERE account_id = ? ORDER BY first_seen_date DESC",
                (account_id,),
            ).fetchall()
        return [_load_job(conn, row["id"]) for row in rows]
    finally:
        conn.close()


def get_status_history(job_id: str) -> list[StatusChange]:
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT status, message_id, changed_at FROM status_history WHERE job_id = ? ORDER BY id",
            (job_id,),
        ).fetchall()
        return [
            StatusChange(
                status=JobStatus(row["status"]),
                message_id=row["message_id"],
                changed_at=from_db_time(row["changed_at"]),
            )
            for row in rows
        ]
    finally:
        conn.close()


def find_job_for_message(account_id: str, message_id: str) -> Optional[str]:
    """Id of the job whose history already contains this message, if any."""
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT job_id FROM job_emails WHERE account_id = ? AND message_id = ?",
            (account_id, message_id),
        ).fetchone()
        return row["job_id"] if row else None
    finally:
        conn.close()


def find_job_for_thread(account_id: str, thread_id: Optional[str]) -> Optional[str]:
    if not thread_id:
        return None
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT job_id FROM job_threads WHERE account_id = ? AND thread_id = ?",
            (account_id, thread_id),
        ).fetchone()
        return row["job_id"] if row else None
    finally:
        conn.close()


def find_candidates(
    account_id: str,
    company: Optional[str],
    position: Optional[str],
    message_date: datetime,
    window_days: int,
) -> list[JobRecord]:
    """Jobs first seen within the trailing window whose company or position overlaps."""
    cutoff = message_date - timedelta(days=window_days)
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT id, company, position, first_seen_date FROM jobs WHERE account_id = ?",
            (account_id,),
        ).fetchall()

        matches = [
            row for row in rows
            if from_db_time(row["first_seen_date"]) >= cutoff
            and (_overlaps(row["company"], company) or _overlaps(row["position"], position))
        ]
        matches.sort(key=lambda row: from_db_time(row["first_seen_date"]), reverse=True)
        return [_load_job(conn, row["id"]) for row in matches]
    finally:
        conn.close()


def _record_status(conn: sqlite3.Connection, job_id: str, status: JobStatus, message_id: str) -> None:
    conn.execute(
        "INSERT INTO status_history (job_id, status, message_id, changed_at) VALUES (?, ?, ?, ?)",
        (job_id, status.value, message_id, to_db_time(utcnow())),
    )


def _create_job(
    conn: sqlite3.Connection,
    message: RawMessage,
    classification: Classification,
    status: JobStatus,
) -> str:
    job_id = uuid.uuid4().hex
    company = classification.company or UNKNOWN_COMPANY
    position = classification.position or UNKNOWN_POSITION
    conn.execute(
        """
        INSERT INTO jobs
        (id, account_id, company, position, similarity_key, status, first_seen_date,
         confidence, classification_model)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            message.account_id,
            company,
            position,
            similarity_key(classification.company, classification.position),
            status.value,
            to_db_time(message.received_at),
            classification.confidence,
            classification.model_id,
        ),
    )
    _record_status(conn, job_id, status, message.provider_message_id)
    logger.info(f"Created job {job_id}: {company} - {position} ({status.value})")
    return job_id


def _merge_into(
    conn: sqlite3.Connection,
    job_id: str,
    message: RawMessage,
    classification: Classification,
    status: JobStatus,
) -> None:
    row = conn.execute(
        "SELECT company, position, status, first_seen_date, confidence FROM jobs WHERE id = ?",
        (job_id,),
    ).fetchone()

    company = row["company"]
    position = row["position"]
    if _is_placeholder(company) and classification.company:
        company = classification.company
    if _is_placeholder(position) and classification.position:
        position = classification.position

    current = JobStatus(row["status"])
    # Monotonic: only a strictly higher priority replaces the current status
    new_status = status if status.priority > current.priority else current

    first_seen = min(from_db_time(row["first_seen_date"]), message.received_at)

    conn.execute(
        """
        UPDATE jobs
        SET company = ?, position = ?, similarity_key = ?, status = ?, first_seen_date = ?,
            confidence = ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
        """,
        (
            company,
            position,
            similarity_key(
                None if _is_placeholder(company) else company,
                None if _is_placeholder(position) else position,
            ),
            new_status.value,
            to_db_time(first_seen),
            max(row["confidence"], classification.confidence),
            job_id,
        ),
    )
    if new_status != current:
        _record_status(conn, job_id, new_status, message.provider_message_id)
        logger.info(f"Job {job_id} status {current.value} -> {new_status.value}")
    else:
        logger.debug(f"Job {job_id} keeps status {current.value} (incoming {status.value})")


def match_or_create(
    message: RawMessage,
    classification: Classification,
    same_job: Optional[SameJobFn] = None,
    window_days: Optional[int] = None,
) -> JobRecord:
    """Attach a job-related message to an existing job or create a new one.

    Safe to call repeatedly for the same message: a message already in a
    job's history returns that job untouched.
    """
    same_job = same_job or same_key
    if window_days is None:
        window_days = get_config().match_window_days
    account_id = message.account_id
    status = classification.status or JobStatus.APPLIED

    existing = find_job_for_message(account_id, message.provider_message_id)
    if existing:
        logger.debug(f"Message {message.provider_message_id} already belongs to job {existing}")
        return get_job(existing)

    target_id = find_job_for_thread(account_id, message.thread_id)

    if target_id is None:
        # Model calls happen here, outside the write lock
        for candidate in find_candidates(
            account_id, classification.company, classification.position, message.received_at, window_days
        ):
            if same_job(classification, candidate):
                target_id = candidate.id
                logger.debug(f"Matched {message.provider_message_id} to job {candidate.id}")
                break

    conn = get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")

        # Another writer may have linked this message or thread since the checks above
        row = conn.execute(
            "SELECT job_id FROM job_emails WHERE account_id = ? AND message_id = ?",
            (account_id, message.provider_message_id),
        ).fetchone()
        if row:
            conn.commit()
            return _load_job(conn, row["job_id"])

        if message.thread_id:
            row = conn.execute(
                "SELECT job_id FROM job_threads WHERE account_id = ? AND thread_id = ?",
                (account_id, message.thread_id),
            ).fetchone()
            if row:
                target_id = row["job_id"]

        if target_id is not None and conn.execute(
            "SELECT 1 FROM jobs WHERE id = ?", (target_id,)
        ).fetchone() is None:
            target_id = None

        if target_id is None:
            job_id = _create_job(conn, message, classification, status)
        else:
            job_id = target_id
            _merge_into(conn, job_id, message, classification, status)

        conn.execute(
            "INSERT OR IGNORE INTO job_emails (job_id, account_id, message_id, date, subject) VALUES (?, ?, ?, ?, ?)",
            (job_id, account_id, message.provider_message_id, to_db_time(message.received_at), message.subject),
        )
        if message.thread_id:
            conn.execute(
                "INSERT OR IGNORE INTO job_threads (account_id, thread_id, job_id) VALUES (?, ?, ?)",
                (account_id, message.thread_id, job_id),
            )
        conn.commit()
        return _load_job(conn, job_id)
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()
