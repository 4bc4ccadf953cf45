from __future__ import annotations

import allure
import pytest

from agent_council.orchestrator.failure_classifier import (
    RATE_LIMIT_CLASSIFIER_VERSION,
    detect_rate_limit,
    is_rate_limited,
)

pytestmark = [
    allure.epic("Agent Council"),
    allure.feature("Rate Limit Fallback"),
]


@pytest.mark.parametrize(
    "stderr",
    [
        "HTTP 429 returned by upstream",
        "Error: rate limit reached for requests",
        "rate-limit exceeded",
        "Too Many Requests",
        "status: RESOURCE_EXHAUSTED",
        "Quota exceeded for project",
    ],
)
def test_detect_rate_limit_matches_known_signatures(stderr: str) -> None:
    assert is_rate_limited(stderr)


@pytest.mark.parametrize("stderr", [None, "", "segmentation fault", "permission denied"])
def test_detect_rate_limit_ignores_other_failures(stderr: str | None) -> None:
    assert detect_rate_limit(stderr) is None


def test_rate_limit_details_name_the_pattern_and_member() -> None:
    match = detect_rate_limit("upstream said: too many requests, slow down")

    assert match is not None
    details = match.to_details(member="gemini")
    assert details["classifier_version"] == RATE_LIMIT_CLASSIFIER_VERSION
    assert details["member"] == "gemini"
    assert details["matched_text"].lower() == "too many requests"
