"""Data models for the job timeline pipeline."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    APPLIED = "Applied"
    INTERVIEWED = "Interviewed"
    DECLINED = "Declined"
    OFFER = "Offer"

    @property
    def priority(self) -> int:
        return STATUS_PRIORITY[self]


# Offer outranks Declined: an offer is never overwritten by a later rejection.
STATUS_PRIORITY = {
    JobStatus.APPLIED: 1,
    JobStatus.INTERVIEWED: 2,
    JobStatus.DECLINED: 3,
    JobStatus.OFFER: 4,
}


class PipelineStage(str, Enum):
    FETCHED = "fetched"
    DIGEST_FILTERED = "digest_filtered"
    ML_CLASSIFIED = "ml_classified"
    EXTRACTION_PENDING = "extraction_pending"
    EXTRACTION_COMPLETE = "extraction_complete"
    PROMOTED_TO_JOBS = "promoted_to_jobs"

    @property
    def rank(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER = list(PipelineStage)


class DecisionAction(str, Enum):
    DISCARD = "discard"
    REVIEW = "review"
    JOB = "job"


class Decision(BaseModel):
    """Outcome of the confidence policy."""

    action: DecisionAction
    retention_days: Optional[int] = None

    @classmethod
    def discard(cls) -> "Decision":
        return cls(action=DecisionAction.DISCARD)

    @classmethod
    def store_for_review(cls, retention_days: int) -> "Decision":
        return cls(action=DecisionAction.REVIEW, retention_days=retention_days)

    @classmethod
    def store_as_job(cls) -> "Decision":
        return cls(action=DecisionAction.JOB)


class RawMessage(BaseModel):
    """A message as handed over by the mailbox provider, body already decoded to text."""

    account_id: str
    provider_message_id: str
    thread_id: Optional[str] = None
    subject: str = ""
    from_address: str = ""
    received_at: datetime
    body_text: str = ""

    @field_validator("received_at")
    @classmethod
    def _normalize_received_at(cls, value: datetime) -> datetime:
        return to_utc(value)


class MessagePage(BaseModel):
    """One page of messages from a provider plus the continuation token."""

    messages: list[RawMessage] = Field(default_factory=list)
    next_page_token: Optional[str] = None


class DigestResult(BaseModel):
    is_digest: bool
    reason: str
    confidence: float = Field(ge=0.0, le=1.0)


class Classification(BaseModel):
    """Result of stage 1 (and stage 2 when the message is job-related)."""

    is_job_related: bool
    confidence: float = Field(ge=0.0, le=1.0)
    company: Optional[str] = None
    position: Optional[str] = None
    status: Optional[JobStatus] = None
    model_id: Optional[str] = None
    method: Optional[str] = None  # "llm" or "rules"


class PipelineRecord(BaseModel):
    """Persisted progress of one raw message through the pipeline."""

    message: RawMessage
    stage: PipelineStage = PipelineStage.FETCHED
    is_digest: Optional[bool] = None
    digest_reason: Optional[str] = None
    is_job_related: Optional[bool] = None
    confidence: Optional[float] = None
    company: Optional[str] = None
    position: Optional[str] = None
    status: Optional[JobStatus] = None
    extraction_method: Optional[str] = None
    attempts: int = 0
    failures: int = 0
    model_id: Optional[str] = None
    decision: Optional[DecisionAction] = None
    job_id: Optional[str] = None
    failed: bool = False
    last_error: Optional[str] = None

    @property
    def account_id(self) -> str:
        return self.message.account_id

    @property
    def provider_message_id(self) -> str:
        return self.message.provider_message_id

    @property
    def is_terminal(self) -> bool:
        """True when there is nothing left for the pipeline to do with this record."""
        if self.failed or self.stage == PipelineStage.PROMOTED_TO_JOBS:
            return True
        if self.is_digest:
            return True
        return self.decision in (DecisionAction.DISCARD, DecisionAction.REVIEW)

    def classification(self) -> Optional[Classification]:
        if self.is_job_related is None or self.confidence is None:
            return None
        return Classification(
            is_job_related=self.is_job_related,
            confidence=self.confidence,
            company=self.company,
            position=self.position,
            status=self.status,
            model_id=self.model_id,
            method=self.extraction_method,
        )


class EmailHistoryEntry(BaseModel):
    message_id: str
    date: datetime
    subject: str = ""


class StatusChange(BaseModel):
    status: JobStatus
    message_id: Optional[str] = None
    changed_at: datetime


class JobRecord(BaseModel):
    """An employer/position relationship built up from one or more emails."""

    id: str
    account_id: str
    company: str
    position: str
    status: JobStatus = JobStatus.APPLIED
    first_seen_date: datetime
    email_history: list[EmailHistoryEntry] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    classification_model: Optional[str] = None
    similarity_key: str = ""


class ReviewItem(BaseModel):
    id: int
    account_id: str
    provider_message_id: str
    classification: Classification
    confidence: float
    retention_days: int
    created_at: datetime
    expires_at: datetime
    manually_reviewed: bool = False


class SyncOptions(BaseModel):
    days_to_sync: int = 30
    max_messages: int = 500
    model_id: Optional[str] = None


class SyncRun(BaseModel):
    """Audit row describing one sync invocation."""

    id: Optional[int] = None
    started_at: datetime = Field(default_factory=utcnow)
    accounts_synced: int = 0
    messages_fetched: int = 0
    messages_classified: int = 0
    jobs_found: int = 0
    duration_seconds: float = 0.0
    status: str = "running"  # running, success, partial, cancelled, failed
    error: Optional[str] = None


class ProgressEvent(BaseModel):
    """Stage-tagged progress notification for callers rendering live status."""

    phase: str  # fetching, classifying, saving, review, complete, error
    account_id: Optional[str] = None
    message_id: Optional[str] = None
    detail: str = ""
    created_at: datetime = Field(default_factory=utcnow)
