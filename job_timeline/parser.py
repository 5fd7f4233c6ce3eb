"""Text utilities and the rule-based extraction strategy.

The rule-based extractor is the secondary strategy: it only runs when the
model-based extractor is unavailable or came back without company and
position, and its results are always scored below the model's.
"""

import html
import logging
import re
from typing import Optional

from .models import JobStatus

logger = logging.getLogger(__name__)

SENTINEL_VALUES = {"", "unknown", "n/a", "na", "none", "null", "unknown company", "unknown position"}

BASE_TITLES = [
    "Software Engineer",
    "Software Developer",
    "Backend Engineer",
    "Frontend Engineer",
    "Full Stack Engineer",
    "Full Stack Developer",
    "Mobile Engineer",
    "DevOps Engineer",
    "Site Reliability Engineer",
    "Platform Engineer",
    "Infrastructure Engineer",
    "Data Engineer",
    "Machine Learning Engineer",
    "ML Engineer",
    "Security Engineer",
    "QA Engineer",
    "Solutions Engineer",
    "Data Scientist",
    "Research Scientist",
    "Data Analyst",
    "Business Analyst",
    "Product Manager",
    "Product Designer",
    "UX Designer",
    "Engineering Manager",
    "Program Manager",
    "Project Manager",
    "Technical Writer",
    "Solutions Architect",
    "Software Architect",
]

TITLE_PREFIXES = [
    "Senior",
    "Sr.",
    "Junior",
    "Staff",
    "Principal",
    "Lead",
    "Associate",
    "Intern",
    "Entry Level",
]

# Checked in order; the first keyword hit decides the status
STATUS_KEYWORDS = [
    ("interview", JobStatus.INTERVIEWED),
    ("offer", JobStatus.OFFER),
    ("declin", JobStatus.DECLINED),
    ("reject", JobStatus.DECLINED),
]

REJECTION_INDICATORS = [
    "not be moving forward",
    "not moving forward",
    "decided not to proceed",
    "moving forward with other candidates",
    "pursuing other candidates",
    "regret to inform",
    "not been selected",
    "were not selected",
    "position has been filled",
    "no longer considering",
    "unable to offer you",
    "decided to pursue other",
]

INTERVIEW_INDICATORS = [
    "invite you to interview",
    "interview invitation",
    "schedule an interview",
    "schedule a call",
    "phone screen",
    "your interview",
    "availability for an interview",
]

OFFER_INDICATORS = [
    "offer letter",
    "pleased to offer",
    "extend an offer",
    "job offer",
]

SENDER_SUFFIXES = r"\s+(Careers?|Recruiting|Talent( Acquisition)?|Jobs?|HR|Team|Hiring|via\s+.+)$"
GENERIC_SENDER_NAMES = {
    "jobs", "careers", "recruiting", "hr", "talent", "no-reply", "noreply", "notifications", "hiring team",
}
GENERIC_DOMAIN_LABELS = {
    "mail", "email", "jobs", "careers", "notifications", "noreply", "no-reply", "talent",
    "gmail", "yahoo", "outlook", "hotmail", "linkedin", "indeed", "greenhouse", "lever",
    "myworkday", "workday", "icims", "smartrecruiters", "ashbyhq", "jobvite",
}


def strip_html(text: str) -> str:
    """Convert HTML to plain text."""
    text = re.sub(r"<br\s*/?>|<p[^>]*>|</p>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


def clean_field(value: Optional[str]) -> Optional[str]:
    """Trim a company/position value and collapse sentinel placeholders to None."""
    if value is None:
        return None
    value = re.sub(r"\s+", " ", str(value)).strip().strip("\"'")
    if value.lower() in SENTINEL_VALUES:
        return None
    return value


def map_status(raw_status: Optional[str]) -> JobStatus:
    """Map a free-text status phrase onto the four tracked statuses."""
    if not raw_status:
        return JobStatus.APPLIED
    lowered = raw_status.lower()
    for keyword, status in STATUS_KEYWORDS:
        if keyword in lowered:
            return status
    return JobStatus.APPLIED


def detect_status(subject: str, body: str) -> Optional[str]:
    """Guess a status phrase from message content, or None when nothing stands out."""
    combined = f"{subject} {body}".lower()
    if any(phrase in combined for phrase in OFFER_INDICATORS):
        return "offer"
    if any(phrase in combined for phrase in REJECTION_INDICATORS):
        return "rejected"
    if any(phrase in combined for phrase in INTERVIEW_INDICATORS):
        return "interview"
    if re.search(r"\b(thank you for applying|application (received|submitted)|applied)\b", combined):
        return "applied"
    return None


def match_job_title(text: str) -> Optional[str]:
    """Find a known job title in the text, keeping a seniority prefix when present."""
    for base_title in BASE_TITLES:
        match = re.search(rf"\b{re.escape(base_title)}\b", text, re.IGNORECASE)
        if not match:
            continue
        context = text[max(0, match.start() - 20):match.end()]
        for prefix in TITLE_PREFIXES:
            if re.search(rf"\b{re.escape(prefix)}\s+{re.escape(base_title)}\b", context, re.IGNORECASE):
                return f"{prefix} {base_title}"
        return base_title

    # "... for the Widget Integration Specialist position"
    match = re.search(
        r"\bfor (?:the|our) ([A-Z][\w/&+-]*(?: [A-Z][\w/&+-]*){0,5}) (?:position|role|opening)\b", text
    )
    if match:
        return match.group(1)
    return None


def extract_company(text: str, from_address: str) -> Optional[str]:
    """Extract a company name from the sender header or the message text."""
    # "Acme" via Greenhouse / Acme Careers <...>
    for pattern in (
        r'"([^"]+)" via .+',
        r"([A-Za-z0-9][A-Za-z0-9 &.]+?)\s+(?:Careers?|Recruiting|Talent|Jobs?|HR)\s*<",
    ):
        match = re.search(pattern, from_address, re.IGNORECASE)
        if match:
            company = match.group(1).strip()
            if 1 < len(company) < 50:
                return company

    for pattern in (
        r"(?:applying|applied|application)\s+(?:to|at|with)\s+([A-Z][A-Za-z0-9&.'-]*(?:\s+[A-Z][A-Za-z0-9&.'-]*)*)",
        r"interest\s+in\s+(?:joining\s+)?([A-Z][A-Za-z0-9&.'-]*(?:\s+[A-Z][A-Za-z0-9&.'-]*)*)",
        r"(?:interview|position|role|opportunity)\s+(?:with|at)\s+([A-Z][A-Za-z0-9&.'-]*(?:\s+[A-Z][A-Za-z0-9&.'-]*)*)",
        r"\bjoin\s+([A-Z][A-Za-z0-9&.'-]*(?:\s+[A-Z][A-Za-z0-9&.'-]*)*)\s+as\b",
    ):
        match = re.search(pattern, text)
        if match:
            company = match.group(1).strip().rstrip(".")
            if company.lower() not in ("the", "our", "a", "an", "this", "your") and 1 < len(company) < 50:
                return company

    sender_match = re.search(r"^\s*\"?([^<\"]+)\"?\s*<", from_address)
    if sender_match:
        sender_name = re.sub(SENDER_SUFFIXES, "", sender_match.group(1).strip(), flags=re.IGNORECASE)
        if len(sender_name) > 1 and sender_name.lower() not in GENERIC_SENDER_NAMES:
            return sender_name

    domain_match = re.search(r"@([a-zA-Z0-9.-]+)", from_address)
    if domain_match:
        labels = domain_match.group(1).lower().split(".")
        for label in labels[:-1]:
            if label not in GENERIC_DOMAIN_LABELS:
                return label.replace("-", " ").title()

    return None


def extract_with_rules(subject: str, body: str, from_address: str) -> dict[str, Optional[str]]:
    """Secondary extraction strategy: regex company/position plus keyword status."""
    text = strip_html(body) if "<" in body else body
    combined = f"{subject}\n{text}"
    result = {
        "company": clean_field(extract_company(combined, from_address or "")),
        "position": clean_field(match_job_title(subject) or match_job_title(text)),
        "status": detect_status(subject, text),
    }
    logger.debug(f"Rule extraction for '{subject[:50]}': {result}")
    return result


def is_malformed(subject: str, body: str) -> bool:
    """True when there is no usable text to classify."""
    return not (subject or "").strip() and not strip_html(body or "").strip()


def normalize(value: Optional[str]) -> str:
    """Lower-case and drop everything that is not a letter or digit."""
    return re.sub(r"[^a-z0-9]", "", (value or "").lower())


def similarity_key(company: Optional[str], position: Optional[str]) -> str:
    return f"{normalize(company)}_{normalize(position)}"
