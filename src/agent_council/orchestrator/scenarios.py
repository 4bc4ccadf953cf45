"""Scenario templates that give each member a distinct review role."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_VALID_SCENARIO_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


@dataclass(slots=True)
class ScenarioRole:
    id: str
    name: str
    prompt: str = ""

    @property
    def label(self) -> str:
        return self.name or self.id


@dataclass(slots=True)
class ScenarioTemplate:
    """Parsed ``templates/<scenario>.yaml``."""

    name: str
    system_prompt: str = ""
    roles: list[ScenarioRole] = field(default_factory=list)
    sections: list[Any] = field(default_factory=list)

    def role_for(self, index: int) -> ScenarioRole | None:
        """Round-robin role assignment by member position."""

        if not self.roles:
            return None
        return self.roles[index % len(self.roles)]


@dataclass(slots=True)
class ScenarioDetection:
    detected: str | None
    confidence: str
    scores: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class _ScenarioKeywords:
    description: str
    emoji: str
    patterns: tuple[re.Pattern[str], ...]
    weight: int = 10


def _compile(*patterns: str, flags: int = re.IGNORECASE) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, flags) for pattern in patterns)


SCENARIO_KEYWORDS: dict[str, _ScenarioKeywords] = {
    "code-review": _ScenarioKeywords(
        description="Code review",
        emoji="🔍",
        patterns=(
            *_compile(
                r"\b(code\s*)?review\b",
                r"\bpull\s*request",
                r"\bmerge\s*request",
                r"\bdiff\b",
            ),
            *_compile(r"\bPR\b", r"\bMR\b", flags=0),
        ),
    ),
    "architecture": _ScenarioKeywords(
        description="Architecture decisions",
        emoji="🏗️",
        patterns=_compile(
            r"\barchitecture\b",
            r"\bdesign\s+(pattern|decision|choice)",
            r"\b(monorepo|multirepo)\b",
            r"\b(microservices?|MSA)\b",
            r"\bmonolith",
            r"\b(system|service)\s+structure\b",
            r"\btech(nology)?\s+stack\b",
            r"\bscalability\b",
        ),
    ),
    "bug-analysis": _ScenarioKeywords(
        description="Bug analysis",
        emoji="🐛",
        patterns=_compile(
            r"\bbugs?\b",
            r"\berrors?\b",
            r"\bdebug(ging)?\b",
            r"\broot\s+cause\b",
            r"\bexception\b",
            r"\bcrash",
            r"\bstack\s*trace\b",
            r"\b(does\s*n[o']t|doesn't|not)\s+work",
        ),
    ),
    "security": _ScenarioKeywords(
        description="Security audit",
        emoji="🔐",
        patterns=_compile(
            r"\bsecurity\b",
            r"\bvulnerabilit(y|ies)\b",
            r"\bOWASP\b",
            r"\bauthentication\b",
            r"\bauth\b",
            r"\bauthorization\b",
            r"\bXSS\b",
            r"\bSQL.{0,3}injection\b",
            r"\bCSRF\b",
            r"\bencryption\b",
            r"\b(hacking|exploit)",
        ),
    ),
    "doc-quality": _ScenarioKeywords(
        description="Documentation quality",
        emoji="📝",
        patterns=_compile(
            r"\b(document(ation)?|docs?)\s+(quality|review)",
            r"\bREADME\b",
            r"\bguide\b",
            r"\btutorial\b",
            r"\bmanual\b",
            r"\bcomments?\s+quality\b",
        ),
    ),
    "reader-feedback": _ScenarioKeywords(
        description="Reader feedback",
        emoji="👥",
        patterns=_compile(
            r"\b(reader|user)\s+(perspective|feedback)",
            r"\b(beginner|newbie)s?\b",
            r"\beasy\s+to\s+(read|understand)\b",
            r"\baudience\b",
        ),
    ),
    "structure": _ScenarioKeywords(
        description="Document structure",
        emoji="📊",
        patterns=_compile(
            r"\b(document|docs?)\s+structure\b",
            r"\b(ToC|table\s+of\s+contents)\b",
            r"\bsection\s+(order|layout)\b",
            r"\binformation\s+architecture\b",
            r"\bnavigation\b",
        ),
    ),
}


def detect_scenario(prompt: str) -> ScenarioDetection:
    """Pick the scenario with the highest keyword score (ties keep declaration order)."""

    scores: dict[str, int] = {}
    for name, keywords in SCENARIO_KEYWORDS.items():
        score = sum(keywords.weight for pattern in keywords.patterns if pattern.search(prompt))
        if score > 0:
            scores[name] = score

    best: str | None = None
    best_score = 0
    for name, score in scores.items():
        if score > best_score:
            best, best_score = name, score

    if best_score >= 20:
        confidence = "high"
    elif best_score >= 10:
        confidence = "medium"
    elif best_score > 0:
        confidence = "low"
    else:
        confidence = "none"
    return ScenarioDetection(detected=best, confidence=confidence, scores=scores)


def scenario_emoji(name: str | None) -> str:
    keywords = SCENARIO_KEYWORDS.get(name or "")
    return keywords.emoji if keywords is not None else "🤖"


def load_scenario_template(name: str | None, templates_dir: Path) -> ScenarioTemplate | None:
    """Load a scenario template; ``None`` for unknown, invalid or unparseable names."""

    if not name:
        return None
    if not _VALID_SCENARIO_NAME.match(name):
        logger.warning("Ignoring invalid scenario name %r", name)
        return None

    template_path = templates_dir / f"{name}.yaml"
    if not template_path.is_file():
        logger.warning("Scenario template not found: %s (expected %s)", name, template_path)
        return None

    try:
        raw = yaml.safe_load(template_path.read_text("utf-8"))
    except (OSError, yaml.YAMLError) as error:
        logger.warning("Failed to parse scenario template %s: %s", name, error)
        return None
    if not isinstance(raw, dict):
        logger.warning("Scenario template %s is not a mapping", name)
        return None

    template = ScenarioTemplate(
        name=name,
        system_prompt=str(raw.get("system_prompt") or ""),
        roles=_parse_roles(raw.get("roles")),
        sections=_parse_sections(raw.get("output")),
    )
    logger.debug("Loaded scenario %s with %d roles", name, len(template.roles))
    return template


def list_scenarios(templates_dir: Path) -> list[str]:
    try:
        return sorted(path.stem for path in templates_dir.glob("*.yaml"))
    except OSError:
        return []


def build_role_enhanced_prompt(
    prompt: str,
    template: ScenarioTemplate | None,
    index: int,
) -> str:
    """Wrap ``prompt`` with the template's instructions for member ``index``."""

    role = template.role_for(index) if template is not None else None
    if template is None or role is None:
        return prompt

    parts: list[str] = []
    if template.system_prompt.strip():
        parts.append(template.system_prompt.strip())
    if role.prompt.strip():
        parts.append(f"\n---\n**Your Role: {role.label}**\n{role.prompt.strip()}")
    parts.append(f"\n---\n**Question/Task:**\n{prompt}")
    return "\n".join(parts)


def _parse_roles(raw_roles: Any) -> list[ScenarioRole]:
    if not isinstance(raw_roles, list):
        return []
    roles: list[ScenarioRole] = []
    for entry in raw_roles:
        if not isinstance(entry, dict):
            continue
        role_id = str(entry.get("id") or "").strip()
        role_name = str(entry.get("name") or "").strip()
        if not role_id and not role_name:
            continue
        roles.append(
            ScenarioRole(
                id=role_id or role_name,
                name=role_name,
                prompt=str(entry.get("prompt") or ""),
            ),
        )
    return roles


def _parse_sections(raw_output: Any) -> list[Any]:
    if not isinstance(raw_output, dict):
        return []
    sections = raw_output.get("sections")
    return list(sections) if isinstance(sections, list) else []
