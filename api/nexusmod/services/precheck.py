"""Synchronous pre-check filter run at submission time.

This is the cheap gate in front of the moderation queue. It does no I/O; the
only inputs are the content string and an in-memory term list. Rules run in
order and the first match wins:

1. case-insensitive substring match against the banned-term list
2. content longer than ``max_length`` characters
3. more than ``max_urls`` occurrences of ``http://`` / ``https://``

The filter never enqueues anything itself. The submission flow decides what
to do with an unsafe result (enqueue at high priority), and the batch
processor turns the same rule hits into deterministic block verdicts via
rule_verdict() so those items never reach the analyzer.

Design note on false positives:
- Matching is substring-based, so "scammer" and "scampi" both hit "scam".
  This is cheap and matches how the platform has always filtered; the
  analyzer is where nuance lives.
- The category attached to keyword hits is configurable
  (``precheck_keyword_categories``) because the historical "harassment" tag
  is applied to spam-like terms as well.
"""

import enum
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from nexusmod.config import settings
from nexusmod.schemas.moderation import ModerationResult

_URL_PATTERN = re.compile(r"https?://")

REASON_LANGUAGE = "Contains inappropriate language"
REASON_TOO_LONG = "Content too long"
REASON_TOO_MANY_URLS = "Too many URLs"


class PrecheckRule(str, enum.Enum):
    banned_term = "banned_term"
    too_long = "too_long"
    too_many_urls = "too_many_urls"


@dataclass(frozen=True)
class PrecheckResult:
    safe: bool
    reason: Optional[str] = None
    rule: Optional[PrecheckRule] = None


SAFE = PrecheckResult(safe=True)


def count_urls(content: str) -> int:
    return len(_URL_PATTERN.findall(content))


def precheck(
    content: str,
    banned_terms: Optional[Sequence[str]] = None,
    max_length: Optional[int] = None,
    max_urls: Optional[int] = None,
) -> PrecheckResult:
    """Run the ordered rule scan over a piece of content.

    Args:
        content: Raw text as submitted.
        banned_terms: Term list; defaults to settings.precheck_banned_terms.
        max_length: Length ceiling; defaults to settings.precheck_max_length.
        max_urls: URL ceiling; defaults to settings.precheck_max_urls.

    Returns:
        PrecheckResult with safe=False, a human-readable reason and the rule
        that matched, or SAFE.
    """
    if banned_terms is None:
        banned_terms = settings.precheck_banned_terms
    if max_length is None:
        max_length = settings.precheck_max_length
    if max_urls is None:
        max_urls = settings.precheck_max_urls

    lowered = content.lower()
    for term in banned_terms:
        if term and term.lower() in lowered:
            return PrecheckResult(False, REASON_LANGUAGE, PrecheckRule.banned_term)

    if len(content) > max_length:
        return PrecheckResult(False, REASON_TOO_LONG, PrecheckRule.too_long)

    if count_urls(content) > max_urls:
        return PrecheckResult(False, REASON_TOO_MANY_URLS, PrecheckRule.too_many_urls)

    return SAFE


def verdict_for(check: PrecheckResult, keyword_categories: Optional[Sequence[str]] = None) -> Optional[ModerationResult]:
    """Map a failed pre-check onto the block verdict the processor records.

    Returns None for a safe result.
    """
    if check.safe:
        return None
    if keyword_categories is None:
        keyword_categories = settings.precheck_keyword_categories

    if check.rule is PrecheckRule.banned_term:
        return ModerationResult(
            allowed=False,
            action="block",
            reason=REASON_LANGUAGE,
            severity="HIGH",
            confidence=1.0,
            categories=list(keyword_categories),
        )
    if check.rule is PrecheckRule.too_many_urls:
        return ModerationResult(
            allowed=False,
            action="block",
            reason="Too many URLs (possible spam)",
            severity="MEDIUM",
            confidence=0.9,
            categories=["spam"],
        )
    return ModerationResult(
        allowed=False,
        action="block",
        reason=check.reason or REASON_TOO_LONG,
        severity="MEDIUM",
        confidence=1.0,
        categories=["spam"],
    )


def rule_verdict(content: str) -> Optional[ModerationResult]:
    """Deterministic local verdict for content the pre-check rejects, else None."""
    return verdict_for(precheck(content))
