"""Sync orchestration: fetch, filter, classify, decide and match, per account."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Callable, Optional, Protocol

from . import pipeline_state, review
from .classifier import StructuredClassifier
from .config import Config, get_config
from .confidence import decide
from .db import from_db_time, get_connection, to_db_time
from .digest import detect_message
from .errors import ClassifierError, ConfigurationError, ModelUnavailableError, ProviderError
from .llm import LLMClient
from .matcher import match_or_create
from .models import (
    Classification,
    DecisionAction,
    MessagePage,
    PipelineRecord,
    PipelineStage,
    ProgressEvent,
    SyncOptions,
    SyncRun,
    utcnow,
)
from .threads import group_conversations, iter_in_order, thread_context

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


class CancellationToken:
    """Cooperative cancellation flag shared between the caller and a running sync."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class MailboxProvider(Protocol):
    account_id: str

    def fetch_page(self, since, page_token: Optional[str] = None) -> MessagePage:
        ...


def record_sync_run(run: SyncRun) -> SyncRun:
    """Insert a new sync_runs row, or update the existing one when ``run.id`` is set."""
    conn = get_connection()
    try:
        values = (
            to_db_time(run.started_at),
            run.accounts_synced,
            run.messages_fetched,
            run.messages_classified,
            run.jobs_found,
            run.duration_seconds,
            run.status,
            run.error,
        )
        if run.id is None:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs
                (started_at, accounts_synced, messages_fetched, messages_classified, jobs_found,
                 duration_seconds, status, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                values,
            )
            run = run.model_copy(update={"id": cursor.lastrowid})
        else:
            conn.execute(
                """
                UPDATE sync_runs
                SET started_at = ?, accounts_synced = ?, messages_fetched = ?, messages_classified = ?,
                    jobs_found = ?, duration_seconds = ?, status = ?, error = ?
                WHERE id = ?
                """,
                values + (run.id,),
            )
        conn.commit()
        return run
    finally:
        conn.close()


def recent_sync_runs(limit: int = 10) -> list[SyncRun]:
    conn = get_connection()
    try:
        rows = conn.execute("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [
            SyncRun(
                id=row["id"],
                started_at=from_db_time(row["started_at"]),
                accounts_synced=row["accounts_synced"],
                messages_fetched=row["messages_fetched"],
                messages_classified=row["messages_classified"],
                jobs_found=row["jobs_found"],
                duration_seconds=row["duration_seconds"],
                status=row["status"],
                error=row["error"],
            )
            for row in rows
        ]
    finally:
        conn.close()


class _AccountSync:
    """Processes one account's mailbox serially, oldest message first."""

    def __init__(
        self,
        provider: MailboxProvider,
        options: SyncOptions,
        classifier: StructuredClassifier,
        cancel_token: CancellationToken,
        progress: Optional[ProgressCallback],
        config: Config,
        abort_token: Optional[CancellationToken] = None,
    ):
        self.provider = provider
        self.account_id = provider.account_id
        self.options = options
        self.classifier = classifier
        self.cancel_token = cancel_token
        self.abort_token = abort_token or CancellationToken()
        self.progress = progress
        self.config = config
        self.stats = {
            "messages_fetched": 0,
            "messages_classified": 0,
            "jobs_found": 0,
            "digests": 0,
            "discarded": 0,
            "queued_for_review": 0,
            "failures": 0,
            "error": None,
        }
        self.job_ids: set[str] = set()
        self._deadline: Optional[float] = None

    def emit(self, phase: str, detail: str = "", message_id: Optional[str] = None) -> None:
        if self.progress is not None:
            self.progress(
                ProgressEvent(phase=phase, account_id=self.account_id, message_id=message_id, detail=detail)
            )

    def _out_of_time(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def _stopped(self) -> bool:
        return self.cancel_token.cancelled or self.abort_token.cancelled

    def _should_stop(self) -> bool:
        return self._stopped() or self._out_of_time()

    def fetch(self) -> None:
        since = utcnow() - timedelta(days=self.options.days_to_sync)
        page_token = None
        self.emit("fetching", f"Fetching messages since {since.date().isoformat()}")

        while not self._should_stop():
            page = self.provider.fetch_page(since, page_token)
            for message in page.messages:
                if self.stats["messages_fetched"] >= self.options.max_messages:
                    break
                pipeline_state.ingest(message)
                self.stats["messages_fetched"] += 1

            page_token = page.next_page_token
            if not page_token or self.stats["messages_fetched"] >= self.options.max_messages:
                break

        logger.info(f"[{self.account_id}] Fetched {self.stats['messages_fetched']} messages")

    def _apply_decision(self, record: PipelineRecord, classification: Classification) -> str:
        message = record.message
        decision = decide(classification.confidence, classification.is_job_related)

        if decision.action == DecisionAction.DISCARD:
            pipeline_state.set_decision(self.account_id, message.provider_message_id, DecisionAction.DISCARD)
            self.stats["discarded"] += 1
            return "discard"

        if decision.action == DecisionAction.REVIEW:
            review.store(message, classification, decision.retention_days)
            pipeline_state.set_decision(self.account_id, message.provider_message_id, DecisionAction.REVIEW)
            self.stats["queued_for_review"] += 1
            self.emit("review", f"Queued for review ({decision.retention_days} days)", message.provider_message_id)
            return "review"

        pipeline_state.set_decision(self.account_id, message.provider_message_id, DecisionAction.JOB)
        self.emit("saving", f"{classification.company} - {classification.position}", message.provider_message_id)
        job = match_or_create(message, classification, self.classifier.same_job, self.config.match_window_days)
        pipeline_state.advance(
            self.account_id, message.provider_message_id, PipelineStage.PROMOTED_TO_JOBS, job_id=job.id
        )
        review.withdraw(self.account_id, message.provider_message_id)
        self.job_ids.add(job.id)
        self.stats["jobs_found"] = len(self.job_ids)
        return "job"

    def process(self, record: PipelineRecord, context: str = "") -> str:
        """Take one record from wherever it stopped to a terminal outcome.

        Raises ClassifierError on transient model failure; the stage reached so
        far is already persisted.
        """
        message = record.message
        message_id = message.provider_message_id
        stage = record.stage

        if stage.rank < PipelineStage.DIGEST_FILTERED.rank:
            result = detect_message(message)
            pipeline_state.advance(
                self.account_id, message_id, PipelineStage.DIGEST_FILTERED,
                is_digest=result.is_digest, digest_reason=result.reason,
            )
            if result.is_digest:
                self.stats["digests"] += 1
                return "digest"

        body = context + message.body_text if message.body_text.strip() else message.body_text
        self.emit("classifying", message.subject[:80], message_id)

        if stage.rank < PipelineStage.ML_CLASSIFIED.rank:
            is_job, confidence = self.classifier.classify_relevance(message.subject, body)
            pipeline_state.record_attempt(self.account_id, message_id, self.classifier.model_id)
            pipeline_state.advance(
                self.account_id, message_id, PipelineStage.ML_CLASSIFIED,
                is_job_related=is_job, confidence=confidence, model_id=self.classifier.model_id,
            )
            self.stats["messages_classified"] += 1
        else:
            is_job, confidence = bool(record.is_job_related), record.confidence or 0.0

        if not is_job:
            return self._apply_decision(
                record,
                Classification(is_job_related=False, confidence=confidence, model_id=self.classifier.model_id),
            )

        if stage.rank < PipelineStage.EXTRACTION_COMPLETE.rank:
            pipeline_state.advance(self.account_id, message_id, PipelineStage.EXTRACTION_PENDING)
            classification = self.classifier.extract(message.subject, body, message.from_address)
            pipeline_state.record_attempt(self.account_id, message_id)
            pipeline_state.advance(
                self.account_id, message_id, PipelineStage.EXTRACTION_COMPLETE,
                confidence=classification.confidence,
                company=classification.company,
                position=classification.position,
                status=classification.status,
                extraction_method=classification.method,
            )
        else:
            classification = record.classification()

        return self._apply_decision(record, classification)

    def run(self) -> dict:
        if self._stopped():
            return self.stats

        budget = self.config.account_time_budget_seconds
        if budget:
            self._deadline = time.monotonic() + budget

        try:
            self.fetch()
        except ProviderError as e:
            logger.error(f"[{self.account_id}] Fetch failed: {e}")
            self.stats["error"] = str(e)
            self.emit("error", f"Fetch failed: {e}")

        records = {
            r.provider_message_id: r for r in pipeline_state.pending_records(self.account_id)
        }
        conversations = group_conversations(r.message for r in records.values())

        for conversation, message in iter_in_order(conversations):
            if self._stopped():
                logger.info(f"[{self.account_id}] Stopped before {message.provider_message_id}")
                break
            if self._out_of_time():
                logger.warning(f"[{self.account_id}] Time budget exhausted, remaining messages left for next sync")
                break

            record = records[message.provider_message_id]
            try:
                outcome = self.process(record, thread_context(conversation, message))
                logger.debug(f"[{self.account_id}] {message.provider_message_id} -> {outcome}")
            except ModelUnavailableError as e:
                logger.error(f"[{self.account_id}] Model unavailable, aborting sync: {e}")
                self.stats["error"] = str(e)
                self.abort_token.cancel()
                self.emit("error", f"Model unavailable: {e}", message.provider_message_id)
                break
            except ClassifierError as e:
                self.stats["failures"] += 1
                dead = pipeline_state.record_failure(
                    self.account_id, message.provider_message_id, str(e), self.config.max_attempts
                )
                if dead:
                    self.emit("error", f"Giving up: {e}", message.provider_message_id)

        self.emit(
            "complete",
            f"{self.stats['messages_fetched']} fetched, {self.stats['jobs_found']} jobs, "
            f"{self.stats['queued_for_review']} for review",
        )
        return self.stats


def run_sync(
    options: Optional[SyncOptions] = None,
    providers: Optional[list] = None,
    classifier: Optional[StructuredClassifier] = None,
    cancel_token: Optional[CancellationToken] = None,
    progress: Optional[ProgressCallback] = None,
    config: Optional[Config] = None,
) -> SyncRun:
    """Sync every provider's mailbox and return the recorded SyncRun."""
    config = config or get_config()
    options = options or SyncOptions(days_to_sync=config.days_to_sync, max_messages=config.max_messages)
    cancel_token = cancel_token or CancellationToken()
    providers = providers or []
    started = time.monotonic()
    run = SyncRun()

    try:
        if not providers:
            raise ConfigurationError("No accounts configured")
        if options.model_id and options.model_id not in config.allowed_models:
            raise ConfigurationError(f"Model {options.model_id!r} is not in allowed_models")
        if classifier is None:
            classifier = StructuredClassifier(LLMClient.from_config(config, options.model_id))
    except ConfigurationError as e:
        logger.error(f"Sync not started: {e}")
        run = run.model_copy(update={"status": "failed", "error": str(e)})
        if progress is not None:
            progress(ProgressEvent(phase="error", detail=str(e)))
        return record_sync_run(run)

    run = record_sync_run(run)
    logger.info(f"Sync run {run.id} started for {len(providers)} account(s)")
    abort_token = CancellationToken()

    errors = []
    with ThreadPoolExecutor(max_workers=max(1, config.max_parallel_accounts)) as executor:
        futures = {
            executor.submit(
                _AccountSync(provider, options, classifier, cancel_token, progress, config, abort_token).run
            ): provider.account_id
            for provider in providers
        }
        for future, account_id in futures.items():
            try:
                stats = future.result()
            except Exception as e:
                logger.exception(f"[{account_id}] Sync failed")
                errors.append(f"{account_id}: {e}")
                continue

            run.messages_fetched += stats["messages_fetched"]
            run.messages_classified += stats["messages_classified"]
            run.jobs_found += stats["jobs_found"]
            if stats["error"]:
                errors.append(f"{account_id}: {stats['error']}")
            else:
                run.accounts_synced += 1

    if abort_token.cancelled:
        run.status = "failed"
    elif cancel_token.cancelled:
        run.status = "cancelled"
    elif errors:
        run.status = "partial"
    else:
        run.status = "success"
    run.error = "; ".join(errors) or None
    run.duration_seconds = round(time.monotonic() - started, 3)

    logger.info(
        f"Sync run {run.id} {run.status}: {run.messages_fetched} fetched, "
        f"{run.messages_classified} classified, {run.jobs_found} jobs"
    )
    return record_sync_run(run)
