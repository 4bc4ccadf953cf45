"""Sensitive-content checks applied to prompts before they are persisted."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_SENSITIVE_FILE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\.env(?:\.[\w-]+)?\b",
        r"credentials\.json",
        r"secrets?\.(?:json|ya?ml|toml)",
        r"[\w./-]+\.pem\b",
        r"[\w./-]+\.key\b",
        r"id_rsa",
        r"id_ed25519",
        r"\.ssh/",
        r"aws_credentials",
        r"\.netrc",
        r"\.npmrc",
        r"\.pypirc",
        r"token\.json",
        r"service[-_]?account[\w.-]*\.json",
    )
)

_MASKS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(api[_-]?key\s*[=:]\s*)['\"]?[\w-]{20,}['\"]?", re.IGNORECASE),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(secret[_-]?key\s*[=:]\s*)['\"]?[\w-]{20,}['\"]?", re.IGNORECASE),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(password\s*[=:]\s*)['\"]?[^'\"\s]{8,}['\"]?", re.IGNORECASE),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(token\s*[=:]\s*)['\"]?[\w.-]{20,}['\"]?", re.IGNORECASE),
        r"\1[REDACTED]",
    ),
    (re.compile(r"(bearer\s+)[\w.-]{20,}", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"ghp_[A-Za-z0-9]{36}"), "[GITHUB_TOKEN_REDACTED]"),
    (re.compile(r"sk-[A-Za-z0-9]{48}"), "[OPENAI_KEY_REDACTED]"),
    (re.compile(r"xox[baprs]-[\w-]+"), "[SLACK_TOKEN_REDACTED]"),
)


@dataclass(slots=True)
class MaskedPrompt:
    text: str
    masked_count: int = 0
    warnings: list[str] = field(default_factory=list)


def find_sensitive_file_references(prompt: str) -> list[str]:
    """One warning per sensitive file pattern mentioned in ``prompt``."""

    warnings: list[str] = []
    for pattern in _SENSITIVE_FILE_PATTERNS:
        found = pattern.search(prompt)
        if found is not None:
            warnings.append(f"Sensitive file pattern detected: {found.group(0)}")
    return warnings


def mask_sensitive_values(prompt: str) -> tuple[str, int]:
    """Replace inline secrets; returns masked text and the number of patterns that fired."""

    masked = prompt
    fired = 0
    for pattern, replacement in _MASKS:
        masked, replaced = pattern.subn(replacement, masked)
        if replaced:
            fired += 1
    return masked, fired


def sanitize_prompt(prompt: str) -> MaskedPrompt:
    masked, count = mask_sensitive_values(prompt)
    return MaskedPrompt(
        text=masked,
        masked_count=count,
        warnings=find_sensitive_file_references(prompt),
    )
