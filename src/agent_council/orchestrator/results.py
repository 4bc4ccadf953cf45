"""Collect finished member outputs and render them for the chairman."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_council.orchestrator.contracts import read_json_if_exists, read_text_if_exists
from agent_council.orchestrator.failure_classifier import is_rate_limited
from agent_council.orchestrator.models import MemberState, parse_iso, utc_now_iso
from agent_council.orchestrator.scenarios import ScenarioTemplate
from agent_council.orchestrator.workdir import JobPaths

logger = logging.getLogger(__name__)

MIN_USEFUL_STDERR_CHARS = 100
CONSENSUS_LIMIT = 5
CONSENSUS_KEY_CHARS = 50
MIN_FINDING_CHARS = 10
ERROR_EXCERPT_CHARS = 500

_FAILED_STATES = frozenset(
    {MemberState.ERROR.value, MemberState.MISSING_CLI.value, MemberState.TIMED_OUT.value},
)

_STATE_EMOJI = {
    MemberState.DONE.value: "✅",
    MemberState.ERROR.value: "❌",
    MemberState.TIMED_OUT.value: "⏱️",
    MemberState.MISSING_CLI.value: "⚠️",
    MemberState.RUNNING.value: "🔄",
    MemberState.RETRYING.value: "↻",
    MemberState.QUEUED.value: "⏳",
    MemberState.CANCELED.value: "🛑",
}

_STATE_LABEL = {
    MemberState.DONE.value: "✅ Complete",
    MemberState.ERROR.value: "❌ Error",
    MemberState.TIMED_OUT.value: "⏱️ Timeout",
    MemberState.MISSING_CLI.value: "⚠️ CLI Missing",
    MemberState.CANCELED.value: "🛑 Canceled",
}

_BULLET = re.compile(r"^\s*[-*]\s+(.+)")
_NUMBERED = re.compile(r"^\s*\d+\.\s+(.+)")
_BOLD = re.compile(r"\*\*([^*]+)\*\*")

_STDERR_NOISE = (
    re.compile(r"codex_core::codex"),
    re.compile(r"mcp startup"),
    re.compile(r"^\d{4}-\d{2}-\d{2}T"),
    re.compile(r"succeeded in \d+ms"),
    re.compile(r"^ in /.*$"),
)
_STDERR_SKIP = (
    re.compile(r"^(thinking|exec)"),
    re.compile(r"^/bin/(bash|zsh)"),
    re.compile(r"^\s+\d+\t"),
    re.compile(r"^[A-Za-z0-9_-]+\.(md|py|js|yaml|json|txt|sh)$"),
    re.compile(r"^(README|LICENSE|Makefile|package|node_modules|scripts|templates)"),
)
_STDERR_CONTENT = re.compile(r"^(## |### |- |\* |\d+\.|\*\*.*\*\*|\||>)")


@dataclass(slots=True)
class MemberResult:
    """Status record plus captured streams of one member."""

    member: str
    safe_name: str
    state: str
    role: str | None = None
    message: str | None = None
    exit_code: int | None = None
    used_fallback: bool = False
    started_at: str | None = None
    finished_at: str | None = None
    output: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state == MemberState.DONE.value

    @property
    def failed(self) -> bool:
        return self.state in _FAILED_STATES

    @property
    def duration_seconds(self) -> float | None:
        started = parse_iso(self.started_at)
        finished = parse_iso(self.finished_at)
        if started is None or finished is None:
            return None
        return (finished - started).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "member": self.member,
            "role": self.role,
            "state": self.state,
            "exitCode": self.exit_code,
            "message": self.message,
            "usedFallback": self.used_fallback,
            "output": self.output,
            "stderr": self.stderr,
        }


@dataclass(slots=True)
class ConsensusPoint:
    text: str
    members: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.members)


def collect_member_results(job_dir: Path) -> list[MemberResult]:
    """Read every member with a status record, sorted by member name."""

    paths = JobPaths(job_dir)
    results: list[MemberResult] = []
    for member_dir in paths.member_dirs():
        member_paths = paths.member(member_dir.name)
        record = read_json_if_exists(member_paths.status_path)
        if record is None:
            continue
        exit_code = record.get("exitCode")
        results.append(
            MemberResult(
                member=str(record.get("member") or member_dir.name),
                safe_name=member_dir.name,
                state=str(record.get("state") or "unknown"),
                role=record.get("role") or None,
                message=record.get("message") or None,
                exit_code=exit_code if isinstance(exit_code, int) else None,
                used_fallback=bool(record.get("usedFallback")),
                started_at=record.get("startedAt"),
                finished_at=record.get("finishedAt"),
                output=read_text_if_exists(member_paths.output_path),
                stderr=read_text_if_exists(member_paths.error_path),
            ),
        )
    results.sort(key=lambda result: result.member)
    return results


def extract_key_findings(output: str) -> list[str]:
    """Bullets, numbered items and bold phrases, lower-cased."""

    findings: list[str] = []
    for line in output.splitlines():
        bullet = _BULLET.match(line)
        numbered = _NUMBERED.match(line)
        if bullet is not None:
            findings.append(bullet.group(1).strip().lower())
        elif numbered is not None:
            findings.append(numbered.group(1).strip().lower())
        findings.extend(bold.strip().lower() for bold in _BOLD.findall(line))
    return findings


def find_consensus(results: list[MemberResult]) -> list[ConsensusPoint]:
    """Findings raised by at least two successful members, most shared first."""

    points: dict[str, ConsensusPoint] = {}
    for result in results:
        if not result.succeeded or not result.output:
            continue
        seen: set[str] = set()
        for finding in extract_key_findings(result.output):
            if len(finding) < MIN_FINDING_CHARS:
                continue
            key = finding[:CONSENSUS_KEY_CHARS]
            if key in seen:
                continue
            seen.add(key)
            point = points.setdefault(key, ConsensusPoint(text=finding))
            point.members.append(result.role or result.member)
    shared = [point for point in points.values() if point.count >= 2]
    shared.sort(key=lambda point: point.count, reverse=True)
    return shared[:CONSENSUS_LIMIT]


def extract_stderr_answer(stderr: str) -> str | None:
    """Recover a markdown answer from CLIs that log their reply on stderr."""

    useful: list[str] = []
    separators = 0
    for line in stderr.splitlines():
        if any(pattern.search(line) for pattern in _STDERR_NOISE):
            continue
        if line.startswith("---"):
            separators += 1
            continue
        # Everything before the second separator echoes the prompt.
        if separators < 2:
            continue
        if not line.strip() or any(pattern.search(line) for pattern in _STDERR_SKIP):
            continue
        if _STDERR_CONTENT.match(line):
            useful.append(line)

    text = "\n".join(useful).strip()
    if len(text) > MIN_USEFUL_STDERR_CHARS and "##" in text:
        return text
    return None


def render_markdown(
    results: list[MemberResult],
    *,
    scenario: str | None,
    template: ScenarioTemplate | None = None,
) -> str:
    lines = [f"# Council Results: {scenario or 'default'}", ""]

    consensus = find_consensus(results)
    if consensus:
        lines += [
            "## Auto-Synthesized Summary",
            "",
            "### Consensus Points",
            "*Issues identified by multiple reviewers:*",
            "",
        ]
        for point in consensus:
            text = point.text if len(point.text) <= 80 else f"{point.text[:80]}..."
            lines.append(f"- **{text}**")
            lines.append(f"  - Mentioned by: {', '.join(point.members)}")
        lines.append("")

    succeeded = [result for result in results if result.succeeded]
    lines.append("### Review Statistics")
    lines.append(f"- **Completed**: {len(succeeded)}/{len(results)} reviewers")
    issues = [
        result
        for result in results
        if result.state in {MemberState.ERROR.value, MemberState.TIMED_OUT.value}
    ]
    if issues:
        described = ", ".join(f"{result.member} ({result.state})" for result in issues)
        lines.append(f"- **Issues**: {described}")
    lines.append("")

    lines += ["## Participants", "", "| Member | Role | Status |", "|--------|------|--------|"]
    for result in results:
        status = _STATE_LABEL.get(result.state, result.state)
        lines.append(f"| {result.member} | {result.role or 'General'} | {status} |")
    lines.append("")

    lines += ["## Individual Responses", ""]
    for result in results:
        emoji = _STATE_EMOJI.get(result.state, "❓")
        lines.append(f"### {emoji} {result.role or result.member} ({result.member})")
        lines.append("")
        lines += _response_lines(result)
        lines.append("")

    if template is not None and template.sections:
        lines += [
            "---",
            "",
            "## Synthesis Guide",
            "",
            "Based on the template, synthesize the above responses into these sections:",
            "",
        ]
        lines += [line for line in map(_section_line, template.sections) if line]
        lines.append("")

    return "\n".join(lines)


def _response_lines(result: MemberResult) -> list[str]:
    if result.state == MemberState.DONE.value:
        output = result.output.strip()
        if output:
            return [output]
        if result.stderr.strip():
            recovered = extract_stderr_answer(result.stderr)
            if recovered:
                return ["*Output extracted from stderr:*", "", recovered]
            return ["> *No output captured (check stderr for details)*"]
        return ["> *No output captured*"]
    if result.state == MemberState.ERROR.value:
        lines = [f"> **Error**: {result.message or 'Unknown error'}"]
        if result.stderr.strip():
            lines += ["```", result.stderr.strip()[:ERROR_EXCERPT_CHARS], "```"]
        return lines
    if result.state == MemberState.TIMED_OUT.value:
        return [f"> **Timed out**: {result.message or 'Response took too long'}"]
    if result.state == MemberState.MISSING_CLI.value:
        return [f"> **CLI not found**: {result.member} CLI is not installed or not in PATH"]
    if result.state == MemberState.CANCELED.value:
        return ["> **Canceled**: stopped before completion"]
    return [f"> Status: {result.state}"]


def _section_line(section: Any) -> str | None:
    if isinstance(section, str):
        title = section.replace("_", " ").title()
        return f"- **{title}**"
    if isinstance(section, dict):
        header = str(section.get("header") or section.get("name") or "Unknown Section")
        header = re.sub(r"^#+\s*", "", header)
        description = section.get("description") or ""
        return f"- **{header}**" + (f": {description}" if description else "")
    return None


def render_json(job_dir: Path, results: list[MemberResult]) -> dict[str, Any]:
    paths = JobPaths(job_dir)
    meta = read_json_if_exists(paths.meta_path) or {}
    prompt = read_text_if_exists(paths.prompt_path) if paths.prompt_path.exists() else None
    return {
        "jobDir": str(job_dir),
        "id": meta.get("id"),
        "scenario": meta.get("scenario"),
        "prompt": prompt,
        "members": [result.to_dict() for result in results],
    }


def summarize_outcomes(results: list[MemberResult]) -> list[str]:
    """Warning lines about fallbacks and partial or total failure."""

    lines: list[str] = []
    fallback = [result for result in results if result.used_fallback]
    if fallback:
        lines.append("↻ Fallback command used")
        for result in fallback:
            mark = "✓" if result.succeeded else "✗"
            lines.append(f"  {mark} {result.member}: {result.message or 'Switched to fallback'}")

    succeeded = [result for result in results if result.succeeded]
    failed = [result for result in results if result.failed]
    if failed and succeeded:
        lines.append("⚠ Partial results available")
        lines.append(f"  ✓ {len(succeeded)} of {len(results)} members responded")
        lines += [f"  ✗ {result.member}: {_failure_reason(result)}" for result in failed]
    elif not succeeded:
        lines.append("✗ No members responded successfully")
        lines += [f"  ✗ {result.member}: {_failure_reason(result)}" for result in failed]
    return lines


def _failure_reason(result: MemberResult) -> str:
    if result.state == MemberState.MISSING_CLI.value:
        return "CLI not installed"
    if result.state == MemberState.TIMED_OUT.value:
        return "timed out"
    return result.message or "error"


def export_results(content: str, output_path: Path) -> Path:
    """Write rendered results, creating parent directories. Returns the resolved path."""

    resolved = output_path.expanduser().resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(content, "utf-8")
    logger.debug("Results exported to %s", resolved)
    return resolved


@dataclass(slots=True)
class MemberStat:
    state: str
    duration_seconds: float | None = None


@dataclass(slots=True)
class RateLimitObservation:
    member: str
    excerpt: str
    observed_at: str


@dataclass(slots=True)
class ExecutionStats:
    """Per-invocation statistics, rendered with ``--show-stats`` or ``--debug``."""

    started_at: str | None = None
    finished_at: str | None = None
    members: dict[str, MemberStat] = field(default_factory=dict)
    rate_limits: list[RateLimitObservation] = field(default_factory=list)

    def record_results(self, results: list[MemberResult]) -> None:
        for result in results:
            self.members[result.member] = MemberStat(
                state=result.state,
                duration_seconds=result.duration_seconds,
            )
            if is_rate_limited(result.stderr):
                self.rate_limits.append(
                    RateLimitObservation(
                        member=result.member,
                        excerpt=result.stderr[:200],
                        observed_at=utc_now_iso(),
                    ),
                )
            self.started_at = _pick(self.started_at, result.started_at, later=False)
            self.finished_at = _pick(self.finished_at, result.finished_at, later=True)

    @property
    def duration_seconds(self) -> float | None:
        started = parse_iso(self.started_at)
        finished = parse_iso(self.finished_at)
        if started is None or finished is None:
            return None
        return (finished - started).total_seconds()

    def render_lines(self) -> list[str]:
        duration = self.duration_seconds
        lines = ["📊 Execution Stats", f"  Duration: {_seconds_label(duration)}"]
        if self.members:
            lines.append("  Members:")
            for name, stat in self.members.items():
                if stat.state == MemberState.DONE.value:
                    mark = "✓"
                elif stat.state == MemberState.TIMED_OUT.value:
                    mark = "⏱"
                else:
                    mark = "✗"
                suffix = (
                    f" ({_seconds_label(stat.duration_seconds)})"
                    if stat.duration_seconds is not None
                    else ""
                )
                lines.append(f"    {mark} {name}: {stat.state}{suffix}")
        if self.rate_limits:
            lines.append(f"  Rate Limits: {len(self.rate_limits)} detected")
            for observation in self.rate_limits[:3]:
                excerpt = observation.excerpt[:50].replace("\n", " ")
                lines.append(f"    - {observation.member}: {excerpt}...")
        return lines


def _seconds_label(value: float | None) -> str:
    return "N/A" if value is None else f"{value:.1f}s"


def _pick(current: str | None, candidate: str | None, *, later: bool) -> str | None:
    candidate_at = parse_iso(candidate)
    if candidate_at is None:
        return current
    current_at = parse_iso(current)
    if current_at is None:
        return candidate
    if (candidate_at > current_at) if later else (candidate_at < current_at):
        return candidate
    return current
