"""Confidence thresholds and the policy mapping a score to a storage decision."""

from .models import Decision

# Policy thresholds (0-1 scale)
DISCARD_NEGATIVE = 0.8  # above this, a "not job-related" verdict is thrown away
LOW = 0.5
MIN_JOB_STORAGE = 0.6
NEEDS_REVIEW = 0.7
AUTO_APPROVE = 0.9

# Review retention, in days
VERY_UNCERTAIN_DAYS = 30
UNCERTAIN_DAYS = 14
CERTAIN_DAYS = 7

# Display bands
CONFIDENCE_LEVELS = [
    (0.3, "very_low"),
    (LOW, "low"),
    (NEEDS_REVIEW, "medium"),
    (AUTO_APPROVE, "high"),
]


def decide(confidence: float, is_job_related: bool) -> Decision:
    """Map a classification confidence onto discard / review / job.

    Job-related results at or above MIN_JOB_STORAGE are stored even though
    they sit below the NEEDS_REVIEW bar.
    """
    if not is_job_related and confidence > DISCARD_NEGATIVE:
        return Decision.discard()
    if confidence < LOW:
        return Decision.store_for_review(VERY_UNCERTAIN_DAYS)
    if is_job_related and confidence >= MIN_JOB_STORAGE:
        return Decision.store_as_job()
    if confidence < NEEDS_REVIEW:
        return Decision.store_for_review(UNCERTAIN_DAYS)
    return Decision.store_for_review(CERTAIN_DAYS)


def confidence_level(confidence: float) -> str:
    for upper, label in CONFIDENCE_LEVELS:
        if confidence < upper:
            return label
    return "very_high"


def needs_review(confidence: float) -> bool:
    return confidence < NEEDS_REVIEW
