"""Rule-based pre-filter for job-board digests, newsletters and marketing mail.

Runs before any LLM call. Its only purpose is to cut classification cost and
noise: a "not a digest" result is never a job verdict on its own, it just
lets the message continue to the classifier.
"""

import logging
import re
from collections import Counter
from typing import Iterable

from .models import DigestResult, RawMessage

logger = logging.getLogger(__name__)

# Addresses that only ever send notifications
NOTIFICATION_ONLY_ADDRESSES = [
    "notifications-noreply@linkedin.com",
    "donotreply@match.indeed.com",
]

# Job boards and alert senders that never send real application mail
DIGEST_DOMAINS = [
    "monster.com",
    "ziprecruiter.com",
    "careerbuilder.com",
    "dice.com",
    "angel.co",
    "angellist.com",
    "hired.com",
    "jobs.stackoverflow.com",
    "stackoverflow.email",
    "remoteok.io",
    "weworkremotely.com",
    "flexjobs.com",
    "themuse.com",
    "idealist.org",
    "usajobs.gov",
    "simplyhired.com",
    "snagajob.com",
    "builtin.com",
    "tldrnewsletter.com",
    "match.indeed.com",
    "jobalerts-noreply@linkedin.com",
    "messages-noreply@linkedin.com",
]

NEWSLETTER_PLATFORMS = [
    "substack.com",
    "beehiiv.com",
    "convertkit.com",
    "mailchimp.com",
    "sendgrid.net",
    "ccsend.com",
    "klaviyo.com",
    "getresponse.com",
    "constantcontact.com",
]

# Send both digests and genuine application confirmations
MIXED_DOMAINS = [
    "linkedin.com",
    "indeed.com",
    "glassdoor.com",
]

ATS_VENDORS = [
    "greenhouse",
    "lever",
    "workday",
    "taleo",
    "icims",
    "jobvite",
    "bamboohr",
    "smartrecruiters",
    "ashbyhq",
    "breezy",
    "bullhorn",
    "recruitee",
    "jazzhr",
    "applicantpro",
    "zoho recruit",
]

# Subject phrases strong enough to bypass every other rule
STRONG_SUBJECT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"your application",
        r"application (to|for|at|was|has been|status|update)",
        r"thank you for (your )?(application|applying|interest)",
        r"regarding your (application|candidacy)",
        r"interview",
        r"offer letter",
        r"(job|employment) offer",
        r"next steps",
        r"assessment",
        r"coding challenge",
        r"take.?home",
        r"background check",
        r"reference check",
        r"we (have )?received your",
    ]
]

APPLICATION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"your application (was |has been )?sent",
        r"application (was |has been )?(sent|submitted|received)",
        r"thank you for (your )?application",
        r"thank you for applying",
        r"we (have )?received your (application|resume|submission)",
        r"successfully applied",
        r"status of your application",
        r"your application to",
        r"application was (viewed|reviewed)",
        r"reviewed your (application|resume)",
        r"regarding your application",
        r"about your application",
        r"schedule.{0,20}interview",
        r"interview (invitation|request|confirmation)",
        r"invite you to interview",
        r"confirm your interview",
        r"\byour interview\b",
        r"\bphone (interview|screen)\b",
        r"offer letter",
        r"employment offer",
        r"advanced to the next",
        r"coding challenge",
        r"technical (assessment|challenge|test)",
        r"unfortunately",
        r"regret to inform",
        r"(not|won.?t) (be )?(selected|moving forward|proceeding)",
        r"position has been filled",
        r"other candidates?",
    ]
]

DIGEST_SUBJECT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"^\d+ (new )?jobs?",
        r"new jobs(?! (at|with) (the|my|our|your))",
        r"and \d+ more (new )?jobs?",
        r"new (positions|openings)",
        r"(available|open) positions",
        r"job openings",
        r"recommended jobs?",
        r"jobs? (you might|you may) (like|be interested)",
        r"jobs? (that match|matching your|based on your)",
        r"similar jobs?",
        r"jobs? alerts?",
        r"job alert:",
        r"(job|weekly|daily|monthly) digest",
        r"(weekly|daily|latest) jobs?",
        r"jobs? (newsletter|roundup)",
        r"(new|available|career) opportunities",
        r"newsletter",
        r"career (insights?|tips|advice|growth)",
        r"job search (tips|advice|strategies)",
        r"salary (negotiation|insights?)",
        r"unlock your",
        r"boost your",
        r"stand out to",
        r"don.?t miss (this|out)",
        r"last chance",
        r"limited time",
        r"(companies|.+) (are|is) hiring",
        r"is looking for",
        r"join (our|their) team",
        r"\d+ companies",
        r"profile.?views?",
        r"who.?s viewed your",
        r"people are viewing",
        r"you appeared in \d+ search",
        r"your profile appeared",
        r"new jobs? in",
        r"jobs? near",
        r"jobs? within \d+ miles",
        r"company reviews?",
        r"join us for .+ webinar",
        r"^apply now to",
        r"(see|view) jobs at",
        r"explore opportunities at",
        r"check out (these |the )?jobs",
        r"\d+ more new jobs?",
    ]
]

DIGEST_BODY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"view all jobs?",
        r"see more jobs?",
        r"browse (more|all)",
        r"explore (opportunities|jobs)",
        r"view \d+ (more|similar)",
        r"unsubscribe from",
        r"manage (your )?(job |email )?alerts?",
        r"update your preferences",
        r"email preferences",
        r"(job )?recommendations based on",
        r"we found \d+ (jobs?|opportunities)",
        r"here are (some |the )?(latest |new )?jobs?",
        r"top picks for",
        r"curated (for you|based on)",
        r"personalized (recommendations|jobs)",
        r"matches your (profile|skills|experience)",
        r"discover more opportunities",
        r"manage your (subscription|preferences)",
        r"view (this )?(email )?in (your )?browser",
        r"forward this (email|newsletter)",
        r"why did (i|you) (get|receive) this",
    ]
]

BODY_SCAN_CHARS = 2000
BODY_PATTERN_THRESHOLD = 2


def extract_sender(from_address: str) -> str:
    """Return the bare lower-cased address from a From header value."""
    match = re.search(r"<([^>]+)>", from_address)
    if match:
        return match.group(1).strip().lower()
    match = re.search(r"[^<>\s]+@[^<>\s]+", from_address)
    return match.group(0).strip().lower() if match else from_address.strip().lower()


def extract_domain(from_address: str) -> str:
    sender = extract_sender(from_address)
    return sender.split("@", 1)[1] if "@" in sender else ""


def _domain_matches(sender: str, domain: str, candidates: Iterable[str]) -> bool:
    for candidate in candidates:
        if "@" in candidate:
            if sender == candidate:
                return True
        elif domain == candidate or domain.endswith("." + candidate):
            return True
    return False


def is_application_email(subject: str, body: str) -> bool:
    """Strong application-lifecycle language in the subject or the top of the body."""
    if any(p.search(subject) for p in STRONG_SUBJECT_PATTERNS):
        return True
    content = f"{subject} {body[:1000]}"
    return any(p.search(content) for p in APPLICATION_PATTERNS)


def has_application_signals(subject: str, body: str) -> bool:
    """ATS vendor names or application phrases anywhere near the top of the message."""
    content = f"{subject} {body[:500]}".lower()
    if any(re.search(rf"\b{re.escape(vendor)}\b", content) for vendor in ATS_VENDORS):
        return True
    return is_application_email(subject, body)


def detect_digest(subject: str, from_address: str, body: str) -> DigestResult:
    """Decide whether a message is a bulk digest. First matching rule wins."""
    subject = subject or ""
    body = body or ""
    sender = extract_sender(from_address or "")
    domain = extract_domain(from_address or "")

    if sender in NOTIFICATION_ONLY_ADDRESSES:
        return DigestResult(is_digest=True, reason=f"digest_sender:{sender}", confidence=0.99)

    # Allowlist runs before any domain rule: bulk senders also relay real confirmations
    if is_application_email(subject, body):
        return DigestResult(is_digest=False, reason="application_email", confidence=1.0)

    if _domain_matches(sender, domain, NEWSLETTER_PLATFORMS):
        if not has_application_signals(subject, body):
            return DigestResult(is_digest=True, reason="newsletter_platform", confidence=0.95)

    mixed = _domain_matches(sender, domain, MIXED_DOMAINS) and not _domain_matches(
        sender, domain, DIGEST_DOMAINS
    )
    if mixed:
        # Content, not domain, decides for mixed senders
        if has_application_signals(subject, body):
            return DigestResult(is_digest=False, reason="application_email_from_job_board", confidence=1.0)
        if any(p.search(subject) for p in DIGEST_SUBJECT_PATTERNS):
            return DigestResult(is_digest=True, reason="mixed_domain_digest_pattern", confidence=0.85)

    elif _domain_matches(sender, domain, DIGEST_DOMAINS):
        if has_application_signals(subject, body):
            return DigestResult(is_digest=False, reason="application_email_from_job_board", confidence=1.0)
        return DigestResult(is_digest=True, reason=f"digest_domain:{domain or sender}", confidence=0.95)

    elif any(p.search(subject) for p in DIGEST_SUBJECT_PATTERNS):
        return DigestResult(is_digest=True, reason="digest_subject_pattern", confidence=0.9)

    snippet = body[:BODY_SCAN_CHARS]
    body_hits = sum(1 for p in DIGEST_BODY_PATTERNS if p.search(snippet))
    if body_hits >= BODY_PATTERN_THRESHOLD:
        return DigestResult(is_digest=True, reason="digest_body_patterns", confidence=0.85)

    return DigestResult(is_digest=False, reason="no_digest_signals", confidence=0.0)


def detect_message(message: RawMessage) -> DigestResult:
    result = detect_digest(message.subject, message.from_address, message.body_text)
    if result.is_digest:
        logger.debug(f"Digest {message.provider_message_id}: {result.reason}")
    return result


def digest_statistics(messages: Iterable[RawMessage]) -> dict:
    """Summarize filter outcomes for a batch of messages."""
    reasons: Counter = Counter()
    stats = {"total": 0, "digests": 0, "applications": 0, "unknown": 0}

    for message in messages:
        result = detect_message(message)
        stats["total"] += 1
        reasons[result.reason] += 1
        if result.is_digest:
            stats["digests"] += 1
        elif result.reason.startswith("application_email"):
            stats["applications"] += 1
        else:
            stats["unknown"] += 1

    stats["by_reason"] = dict(reasons)
    return stats
