"""Best-effort rate-limit detection over captured member stderr."""

from __future__ import annotations

import re
from dataclasses import dataclass

RATE_LIMIT_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"429", re.IGNORECASE),
    re.compile(r"rate.?limit", re.IGNORECASE),
    re.compile(r"too.?many.?requests", re.IGNORECASE),
    re.compile(r"RESOURCE_EXHAUSTED", re.IGNORECASE),
    re.compile(r"quota.?exceeded", re.IGNORECASE),
)


@dataclass(slots=True)
class RateLimitMatch:
    """Which pattern fired and the text it matched."""

    pattern: str
    matched_text: str

    def to_details(self, *, member: str) -> dict[str, object]:
        return {
            "classifier_version": RATE_LIMIT_CLASSIFIER_VERSION,
            "member": member,
            "matched_pattern": self.pattern,
            "matched_text": self.matched_text,
        }


def detect_rate_limit(stderr: str | None) -> RateLimitMatch | None:
    """Return the first rate-limit signature found in ``stderr``.

    Textual heuristic only; CLIs report throttling in free-form text, so a miss
    does not prove the failure was something else.
    """

    if not stderr:
        return None
    for pattern in _RATE_LIMIT_PATTERNS:
        found = pattern.search(stderr)
        if found is not None:
            return RateLimitMatch(pattern=pattern.pattern, matched_text=found.group(0))
    return None


def is_rate_limited(stderr: str | None) -> bool:
    return detect_rate_limit(stderr) is not None
