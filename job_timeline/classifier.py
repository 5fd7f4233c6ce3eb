"""Three-stage structured classifier: relevance, field extraction, same-job check."""

import json
import logging
import re
from typing import Any, Optional

from .errors import ClassifierError, ModelUnavailableError
from .llm import LLMClient, parse_json_response
from .models import Classification
from .parser import clean_field, extract_with_rules, is_malformed, map_status, similarity_key

logger = logging.getLogger(__name__)

PROMPT_VERSION = "v3"

RELEVANCE_BODY_CHARS = 800
EXTRACTION_BODY_CHARS = 1500

DEFAULT_RELEVANCE_CONFIDENCE = 0.85
MALFORMED_CONFIDENCE = 0.2

# (base, cap) per extraction strategy; rules always score below the model
LLM_SCORING = (0.5, 0.95)
RULES_SCORING = (0.3, 0.7)
COMPANY_WEIGHT = 0.15
POSITION_WEIGHT = 0.15
STATUS_WEIGHT = 0.10

RELEVANCE_PROMPT = """You decide whether an email is about the recipient's own job search.

Job-related: application confirmations, recruiter outreach about a specific role,
interview scheduling, assessments, offers, rejections.
Not job-related: job alerts, newsletters, marketing, receipts, social notifications,
personal mail.

Return ONLY valid JSON: {"is_job": true|false, "confidence": 0.0-1.0}"""

EXTRACTION_PROMPT = """Extract job application details from this email. Return ONLY valid JSON.

Rules:
- company: the employer you applied to (NOT "LinkedIn", "Indeed" or the ATS vendor, those are platforms)
- position: the job title, e.g. "Software Engineer Intern"
- status: one of "applied", "interview", "offer", "rejected"
- Use null for anything the email does not state

Example: {"company": "Stripe", "position": "Backend Engineer", "status": "interview"}"""

SAME_JOB_PROMPT = """Two job-search records are given. Decide whether they describe the
same application at the same employer (allow for abbreviations, suffixes like
"Inc." and minor title wording differences).

Return ONLY valid JSON: {"same_job": true|false}"""


def composite_confidence(
    company: Optional[str],
    position: Optional[str],
    raw_status: Optional[str],
    scoring: tuple[float, float],
) -> float:
    base, cap = scoring
    score = base
    if company:
        score += COMPANY_WEIGHT
    if position:
        score += POSITION_WEIGHT
    if raw_status:
        score += STATUS_WEIGHT
    return round(min(score, cap), 4)


def _clamp(value: Any, default: float) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def _describe(record: Any) -> str:
    status = getattr(record, "status", None)
    return json.dumps(
        {
            "company": getattr(record, "company", None),
            "position": getattr(record, "position", None),
            "status": status.value if status is not None else None,
        }
    )


class StructuredClassifier:
    """Runs the staged prompts against one configured model.

    ``llm`` may be None, in which case every model call behaves as if the
    model were unavailable: relevance raises, extraction uses rules and the
    same-job check compares similarity keys.
    """

    def __init__(self, llm: Optional[LLMClient]):
        self.llm = llm

    @property
    def model_id(self) -> Optional[str]:
        return self.llm.model_id if self.llm is not None else None

    def _require_llm(self) -> LLMClient:
        if self.llm is None:
            raise ModelUnavailableError("No model configured")
        return self.llm

    def classify_relevance(self, subject: str, body: str) -> tuple[bool, float]:
        """Stage 1: is this message part of the user's job search?"""
        if is_malformed(subject, body):
            logger.debug("Malformed message, treating as not job-related")
            return False, MALFORMED_CONFIDENCE

        llm = self._require_llm()
        user_prompt = f"Subject: {subject}\n\nBody:\n{(body or '')[:RELEVANCE_BODY_CHARS]}"
        content = llm.complete(RELEVANCE_PROMPT, user_prompt, max_tokens=50)

        try:
            data = parse_json_response(content)
        except json.JSONDecodeError:
            is_job = bool(re.search(r'"is_job"\s*:\s*true', content, re.IGNORECASE))
            logger.warning(f"Unparseable relevance reply, substring check says is_job={is_job}")
            return is_job, DEFAULT_RELEVANCE_CONFIDENCE

        if not isinstance(data, dict):
            raise ClassifierError(f"Unexpected relevance reply: {content[:200]}")

        is_job = bool(data.get("is_job", False))
        confidence = _clamp(data.get("confidence"), DEFAULT_RELEVANCE_CONFIDENCE)
        return is_job, confidence

    def _extract_with_llm(self, subject: str, body: str, from_address: str) -> Optional[dict]:
        llm = self._require_llm()
        user_prompt = (
            f"Email subject: {subject}\nFrom: {from_address}\n\n"
            f"Email body:\n{(body or '')[:EXTRACTION_BODY_CHARS]}"
        )
        data = llm.complete_json(EXTRACTION_PROMPT, user_prompt, max_tokens=150)

        # One email can mention several roles; keep the first
        if isinstance(data, list):
            data = data[0] if data else {}
        if not isinstance(data, dict):
            raise ClassifierError(f"Unexpected extraction reply: {data!r}")

        return {
            "company": clean_field(data.get("company")),
            "position": clean_field(data.get("position")),
            "status": clean_field(data.get("status")),
        }

    def extract(self, subject: str, body: str, from_address: str) -> Classification:
        """Stage 2: pull company, position and status out of a job-related message.

        Raises ClassifierError on transient model failures so the caller can retry.
        """
        fields = None
        method = "llm"
        try:
            fields = self._extract_with_llm(subject, body, from_address)
        except ModelUnavailableError as e:
            logger.warning(f"Model unavailable, using rule extraction: {e}")

        if fields is None or (not fields["company"] and not fields["position"]):
            fields = extract_with_rules(subject, body, from_address)
            method = "rules"

        scoring = LLM_SCORING if method == "llm" else RULES_SCORING
        confidence = composite_confidence(fields["company"], fields["position"], fields["status"], scoring)

        return Classification(
            is_job_related=True,
            confidence=confidence,
            company=fields["company"],
            position=fields["position"],
            status=map_status(fields["status"]),
            model_id=self.model_id if method == "llm" else None,
            method=method,
        )

    def classify(self, subject: str, body: str, from_address: str) -> Classification:
        """Stage 1 followed by stage 2 when the message is job-related."""
        is_job, confidence = self.classify_relevance(subject, body)
        if not is_job:
            return Classification(is_job_related=False, confidence=confidence, model_id=self.model_id)
        return self.extract(subject, body, from_address)

    def same_job(self, a: Any, b: Any) -> bool:
        """Stage 3: do two records (classifications or jobs) describe the same job?"""
        try:
            llm = self._require_llm()
            data = llm.complete_json(
                SAME_JOB_PROMPT,
                f"Record A: {_describe(a)}\nRecord B: {_describe(b)}",
                max_tokens=20,
            )
            if not isinstance(data, dict) or "same_job" not in data:
                raise ClassifierError(f"Unexpected same-job reply: {data!r}")
            return bool(data["same_job"])
        except ClassifierError as e:
            logger.info(f"Same-job check fell back to similarity keys: {e}")
            return similarity_key(a.company, a.position) == similarity_key(b.company, b.position)
