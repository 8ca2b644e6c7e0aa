"""Spam scoring for public contact submissions. Pure functions, no I/O."""
import hashlib
import re
from dataclasses import dataclass, field
from typing import Iterable, List

SUSPICIOUS_DOMAINS = frozenset({
    "tempmail.org",
    "10minutemail.com",
    "guerrillamail.com",
    "mailinator.com",
    "throwaway.email",
    "yopmail.com",
})

SPAM_KEYWORDS = (
    "viagra",
    "casino",
    "lottery",
    "winner",
    "congratulations",
    "urgent",
    "act now",
    "limited time",
    "free money",
    "guaranteed",
)

DUPLICATE_WEIGHT = 30
SUSPICIOUS_EMAIL_WEIGHT = 40
EXCESSIVE_LINKS_WEIGHT = 50
KEYWORD_WEIGHT = 25
HOURLY_RATE_WEIGHT = 50
DAILY_RATE_WEIGHT = 30

MAX_LINKS = 3
MAX_PER_HOUR = 5
MAX_PER_DAY = 20
MAX_SCORE = 100
DEFAULT_THRESHOLD = 70

LINK_RE = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class SpamAssessment:
    score: int = 0
    reasons: List[str] = field(default_factory=list)
    is_spam: bool = False


def normalize_text(text: str) -> str:
    return WHITESPACE_RE.sub(" ", text or "").strip().lower()


def content_hash(email: str, parts: Iterable[str]) -> str:
    """Stable hash of a sender plus the normalized content they submitted."""
    payload = f"{email.strip().lower()}:" + "|".join(parts)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def count_links(text: str) -> int:
    return len({m.rstrip(".,;:!?)").lower() for m in LINK_RE.findall(text or "")})


def keyword_matches(text: str) -> List[str]:
    lowered = normalize_text(text)
    return [kw for kw in SPAM_KEYWORDS if kw in lowered]


def email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].strip().lower() if "@" in email else ""


def score_submission(
    text: str,
    email: str,
    *,
    is_duplicate: bool = False,
    recent_hour: int = 0,
    recent_day: int = 0,
    threshold: int = DEFAULT_THRESHOLD,
) -> SpamAssessment:
    """Linear spam score from content and sender signals.

    recent_hour / recent_day are prior submissions from the same source in
    the trailing windows, not counting this one.
    """
    score = 0
    reasons: List[str] = []

    if is_duplicate:
        score += DUPLICATE_WEIGHT
        reasons.append("duplicate_content")

    if email_domain(email) in SUSPICIOUS_DOMAINS:
        score += SUSPICIOUS_EMAIL_WEIGHT
        reasons.append("suspicious_email")

    if count_links(text) > MAX_LINKS:
        score += EXCESSIVE_LINKS_WEIGHT
        reasons.append("excessive_links")

    matches = keyword_matches(text)
    if matches:
        score += KEYWORD_WEIGHT * len(matches)
        reasons.append("suspicious_keywords")

    if recent_hour > MAX_PER_HOUR:
        score += HOURLY_RATE_WEIGHT
        reasons.append("rate_limit_exceeded")
    elif recent_day > MAX_PER_DAY:
        score += DAILY_RATE_WEIGHT
        reasons.append("rate_limit_exceeded")

    score = min(score, MAX_SCORE)
    return SpamAssessment(score=score, reasons=reasons, is_spam=score >= threshold)
