"""Per-message pipeline state: ingestion, stage advancement, attempts and reset."""

import logging
import sqlite3
from enum import Enum
from typing import Any, Optional

from .config import get_config
from .db import from_db_time, get_connection, to_db_time
from .models import DecisionAction, JobStatus, PipelineRecord, PipelineStage, RawMessage

logger = logging.getLogger(__name__)

# Columns filled in when a record reaches each stage
STAGE_COLUMNS = {
    PipelineStage.DIGEST_FILTERED: ("is_digest", "digest_reason"),
    PipelineStage.ML_CLASSIFIED: ("is_job_related", "confidence", "model_id"),
    PipelineStage.EXTRACTION_COMPLETE: ("company", "position", "status", "extraction_method"),
    PipelineStage.PROMOTED_TO_JOBS: ("job_id",),
}

UPDATABLE_COLUMNS = {column for columns in STAGE_COLUMNS.values() for column in columns} | {"decision"}

_SELECT_RECORD = """
    SELECT r.provider_message_id, r.account_id, r.thread_id, r.subject, r.from_address,
           r.received_at, r.body_text, p.*
    FROM pipeline p
    JOIN raw_messages r
      ON r.provider_message_id = p.provider_message_id AND r.account_id = p.account_id
"""


def _to_db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _optional_bool(value: Optional[int]) -> Optional[bool]:
    return None if value is None else bool(value)


def _row_to_record(row: sqlite3.Row) -> PipelineRecord:
    return PipelineRecord(
        message=RawMessage(
            account_id=row["account_id"],
            provider_message_id=row["provider_message_id"],
            thread_id=row["thread_id"],
            subject=row["subject"],
            from_address=row["from_address"],
            received_at=from_db_time(row["received_at"]),
            body_text=row["body_text"],
        ),
        stage=PipelineStage(row["stage"]),
        is_digest=_optional_bool(row["is_digest"]),
        digest_reason=row["digest_reason"],
        is_job_related=_optional_bool(row["is_job_related"]),
        confidence=row["confidence"],
        company=row["company"],
        position=row["position"],
        status=JobStatus(row["status"]) if row["status"] else None,
        extraction_method=row["extraction_method"],
        attempts=row["attempts"],
        failures=row["failures"],
        model_id=row["model_id"],
        decision=DecisionAction(row["decision"]) if row["decision"] else None,
        job_id=row["job_id"],
        failed=bool(row["failed"]),
        last_error=row["last_error"],
    )


def ingest(message: RawMessage) -> bool:
    """Store a raw message and its pipeline row. Returns False if it was already known."""
    conn = get_connection()
    try:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO raw_messages
            (provider_message_id, account_id, thread_id, subject, from_address, received_at, body_text)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.provider_message_id,
                message.account_id,
                message.thread_id,
                message.subject,
                message.from_address,
                to_db_time(message.received_at),
                message.body_text,
            ),
        )
        inserted = cursor.rowcount > 0
        conn.execute(
            "INSERT OR IGNORE INTO pipeline (provider_message_id, account_id) VALUES (?, ?)",
            (message.provider_message_id, message.account_id),
        )
        conn.commit()
        if inserted:
            logger.debug(f"Ingested {message.account_id}/{message.provider_message_id}")
        return inserted
    finally:
        conn.close()


def get_record(account_id: str, provider_message_id: str) -> Optional[PipelineRecord]:
    conn = get_connection()
    try:
        row = conn.execute(
            _SELECT_RECORD + " WHERE p.account_id = ? AND p.provider_message_id = ?",
            (account_id, provider_message_id),
        ).fetchone()
        return _row_to_record(row) if row else None
    finally:
        conn.close()


def _update(conn: sqlite3.Connection, account_id: str, provider_message_id: str, fields: dict) -> None:
    unknown = set(fields) - UPDATABLE_COLUMNS - {"stage"}
    if unknown:
        raise ValueError(f"Unknown pipeline columns: {sorted(unknown)}")
    assignments = ", ".join(f"{column} = ?" for column in fields)
    conn.execute(
        f"UPDATE pipeline SET {assignments}, updated_at = CURRENT_TIMESTAMP "
        "WHERE account_id = ? AND provider_message_id = ?",
        [_to_db_value(v) for v in fields.values()] + [account_id, provider_message_id],
    )


def advance(account_id: str, provider_message_id: str, stage: PipelineStage, **fields: Any) -> bool:
    """Move a record forward to ``stage`` and store the given columns with it.

    Returns False (and writes nothing) when the record is already at or past ``stage``.
    """
    conn = get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute(
            "SELECT stage FROM pipeline WHERE account_id = ? AND provider_message_id = ?",
            (account_id, provider_message_id),
        ).fetchone()
        if row is None:
            conn.rollback()
            raise KeyError(f"No pipeline record for {account_id}/{provider_message_id}")

        current = PipelineStage(row["stage"])
        if current.rank >= stage.rank:
            conn.rollback()
            logger.debug(f"{provider_message_id} already at {current.value}, not advancing to {stage.value}")
            return False

        _update(conn, account_id, provider_message_id, {"stage": stage, **fields})
        conn.commit()
        return True
    finally:
        conn.close()


def set_decision(
    account_id: str,
    provider_message_id: str,
    decision: DecisionAction,
    **fields: Any,
) -> None:
    """Record the policy outcome without changing the stage."""
    conn = get_connection()
    try:
        _update(conn, account_id, provider_message_id, {"decision": decision, **fields})
        conn.commit()
    finally:
        conn.close()


def record_attempt(account_id: str, provider_message_id: str, model_id: Optional[str] = None) -> int:
    """Count one successful classifier invocation. Returns the new attempt count."""
    conn = get_connection()
    try:
        conn.execute(
            """
            UPDATE pipeline
            SET attempts = attempts + 1, model_id = COALESCE(?, model_id), updated_at = CURRENT_TIMESTAMP
            WHERE account_id = ? AND provider_message_id = ?
            """,
            (model_id, account_id, provider_message_id),
        )
        conn.commit()
        row = conn.execute(
            "SELECT attempts FROM pipeline WHERE account_id = ? AND provider_message_id = ?",
            (account_id, provider_message_id),
        ).fetchone()
        return row["attempts"] if row else 0
    finally:
        conn.close()


def record_failure(
    account_id: str,
    provider_message_id: str,
    error: str,
    max_attempts: Optional[int] = None,
) -> bool:
    """Count a failed classifier invocation; returns True once the record is dead.

    Only failures count towards ``max_attempts``. Successful calls recorded by
    ``record_attempt`` add to ``attempts`` but never use up retries.
    """
    if max_attempts is None:
        max_attempts = get_config().max_attempts

    conn = get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(
            """
            UPDATE pipeline
            SET attempts = attempts + 1, failures = failures + 1, last_error = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE account_id = ? AND provider_message_id = ?
            """,
            (error[:1000], account_id, provider_message_id),
        )
        row = conn.execute(
            "SELECT failures FROM pipeline WHERE account_id = ? AND provider_message_id = ?",
            (account_id, provider_message_id),
        ).fetchone()
        dead = row is not None and row["failures"] >= max_attempts
        if dead:
            conn.execute(
                "UPDATE pipeline SET failed = 1 WHERE account_id = ? AND provider_message_id = ?",
                (account_id, provider_message_id),
            )
        conn.commit()
    finally:
        conn.close()

    if dead:
        logger.error(f"{account_id}/{provider_message_id} failed after {max_attempts} attempts: {error}")
    else:
        logger.warning(f"{account_id}/{provider_message_id} attempt failed: {error}")
    return dead


def pending_records(account_id: Optional[str] = None) -> list[PipelineRecord]:
    """Records that still have work to do, oldest message first."""
    query = (
        _SELECT_RECORD
        + """
        WHERE p.failed = 0
          AND p.stage != ?
          AND COALESCE(p.is_digest, 0) = 0
          AND (p.decision IS NULL OR p.decision = ?)
        """
    )
    params: list[Any] = [PipelineStage.PROMOTED_TO_JOBS.value, DecisionAction.JOB.value]
    if account_id is not None:
        query += " AND p.account_id = ?"
        params.append(account_id)
    query += " ORDER BY r.received_at, r.provider_message_id"

    conn = get_connection()
    try:
        return [_row_to_record(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def list_failed(account_id: Optional[str] = None) -> list[PipelineRecord]:
    query = _SELECT_RECORD + " WHERE p.failed = 1"
    params: list[Any] = []
    if account_id is not None:
        query += " AND p.account_id = ?"
        params.append(account_id)
    query += " ORDER BY r.received_at"

    conn = get_connection()
    try:
        return [_row_to_record(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def stage_counts(account_id: Optional[str] = None) -> dict[str, int]:
    query = "SELECT stage, COUNT(*) AS n FROM pipeline"
    params: list[Any] = []
    if account_id is not None:
        query += " WHERE account_id = ?"
        params.append(account_id)
    query += " GROUP BY stage"

    conn = get_connection()
    try:
        return {row["stage"]: row["n"] for row in conn.execute(query, params).fetchall()}
    finally:
        conn.close()


def reset_stage(
    stage: PipelineStage,
    account_id: Optional[str] = None,
    provider_message_id: Optional[str] = None,
) -> int:
    """Roll records back to ``stage`` so the next sync reprocesses them.

    Clears everything computed after ``stage`` plus the attempt and failure
    counts, the failed flag and the policy decision. Job history is left
    alone; reprocessing a message that is already in a job's history is a
    no-op in the matcher.
    """
    cleared = [
        column
        for later, columns in STAGE_COLUMNS.items()
        if later.rank > stage.rank
        for column in columns
    ]
    if stage != PipelineStage.PROMOTED_TO_JOBS:
        cleared.append("decision")

    query = "SELECT account_id, provider_message_id, stage, failed FROM pipeline WHERE 1 = 1"
    params: list[Any] = []
    if account_id is not None:
        query += " AND account_id = ?"
        params.append(account_id)
    if provider_message_id is not None:
        query += " AND provider_message_id = ?"
        params.append(provider_message_id)

    conn = get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        targets = [
            row for row in conn.execute(query, params).fetchall()
            if PipelineStage(row["stage"]).rank > stage.rank
            or (row["failed"] and PipelineStage(row["stage"]).rank == stage.rank)
        ]
        assignments = ", ".join(
            [f"{column} = NULL" for column in cleared]
            + ["stage = ?", "attempts = 0", "failures = 0", "failed = 0", "last_error = NULL",
               "updated_at = CURRENT_TIMESTAMP"]
        )
        for row in targets:
            conn.execute(
                f"UPDATE pipeline SET {assignments} WHERE account_id = ? AND provider_message_id = ?",
                (stage.value, row["account_id"], row["provider_message_id"]),
            )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()

    logger.info(f"Reset {len(targets)} records to {stage.value}")
    return len(targets)
