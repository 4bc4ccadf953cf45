"""Controllers for council CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_council.config import Settings
from agent_council.orchestrator.cache import cache_key, validate_cache_key
from agent_council.orchestrator.contracts import read_json_if_exists, read_text_if_exists
from agent_council.orchestrator.models import MemberState, UsageError
from agent_council.orchestrator.results import (
    ExecutionStats,
    MemberResult,
    collect_member_results,
    export_results,
    render_json,
    render_markdown,
    summarize_outcomes,
)
from agent_council.orchestrator.scenarios import (
    SCENARIO_KEYWORDS,
    load_scenario_template,
    scenario_emoji,
)
from agent_council.orchestrator.services import (
    CouncilService,
    StartJobRequest,
    WorkerLauncher,
    launch_worker,
)
from agent_council.orchestrator.status import JobStatusSnapshot, compute_status
from agent_council.orchestrator.wait import wait_for_progress
from agent_council.orchestrator.workdir import JobPaths

logger = logging.getLogger(__name__)

STATUS_FORMATS = ("json", "text", "checklist")


@dataclass(slots=True)
class CommandResult:
    """Lines for stdout and warnings for stderr."""

    lines: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CouncilStartCommand:
    """CLI input for job start."""

    prompt: str
    config_path: Path | None = None
    jobs_dir: Path | None = None
    chairman: str | None = None
    scenario: str | None = None
    timeout_seconds: float | None = None
    include_chairman: bool = False
    exclude_chairman: bool = False
    no_cache: bool = False
    as_json: bool = False


@dataclass(slots=True)
class CouncilStatusCommand:
    """CLI input for one-shot status."""

    job_dir: Path
    output_format: str = "json"
    verbose: bool = False


@dataclass(slots=True)
class CouncilWaitCommand:
    """CLI input for cursor-based wait."""

    job_dir: Path
    cursor: str | None = None
    bucket: str | None = None
    interval_ms: int = 250
    timeout_ms: int = 0


@dataclass(slots=True)
class CouncilResultsCommand:
    """CLI input for results rendering."""

    job_dir: Path
    as_json: bool = False
    output_path: Path | None = None
    show_stats: bool = False


@dataclass(slots=True)
class CouncilJobCommand:
    """CLI input for stop/clean."""

    job_dir: Path


@dataclass(slots=True)
class CacheListCommand:
    as_json: bool = False


@dataclass(slots=True)
class CacheClearCommand:
    key: str | None = None


@dataclass(slots=True)
class CacheExportCommand:
    key: str
    output_path: Path | None = None


class CouncilCliController:
    """Coordinates job, wait and cache CLI operations."""

    def __init__(self, *, launcher: WorkerLauncher = launch_worker) -> None:
        self.launcher = launcher

    def _service(self, settings: Settings) -> CouncilService:
        return CouncilService(settings=settings, launcher=self.launcher)

    def start(self, command: CouncilStartCommand) -> CommandResult:
        settings = Settings.from_env(config_path=command.config_path, jobs_dir=command.jobs_dir)
        outcome = self._service(settings).start_job(
            StartJobRequest(
                prompt=command.prompt,
                scenario=command.scenario,
                chairman=command.chairman,
                timeout_seconds=command.timeout_seconds,
                exclude_chairman=command.exclude_chairman,
                include_chairman=command.include_chairman,
                no_cache=command.no_cache,
            ),
        )

        warnings = [f"⚠ {warning}" for warning in outcome.warnings]
        if outcome.masked_count:
            warnings.append(f"✓ Masked {outcome.masked_count} sensitive value(s) in prompt")
        if outcome.detection is not None:
            detected = outcome.detection.detected
            if detected:
                description = SCENARIO_KEYWORDS[detected].description
                warnings.append(
                    f"{scenario_emoji(detected)} Detected scenario: {description} "
                    f"(confidence {outcome.detection.confidence})",
                )
            else:
                warnings.append("No specific scenario detected, using general council")

        if command.as_json:
            return CommandResult(
                lines=[json.dumps(outcome.to_payload(), ensure_ascii=False, indent=2)],
                warnings=warnings,
            )
        if outcome.cache_hit is not None:
            warnings.append(
                f"⚡ Cached result found ({outcome.cache_hit.timestamp}); "
                f"{outcome.cache_hit.member_count} members responded. "
                "Use --no-cache to run a fresh query.",
            )
            return CommandResult(
                lines=[f"CACHE_HIT:{outcome.cache_hit.job_dir}"],
                warnings=warnings,
            )
        return CommandResult(lines=[str(outcome.job_dir)], warnings=warnings)

    def status(self, command: CouncilStatusCommand) -> CommandResult:
        if command.output_format not in STATUS_FORMATS:
            raise UsageError(f"Unsupported status format: {command.output_format}")
        snapshot = compute_status(command.job_dir)

        if command.output_format == "checklist":
            header_id = f" ({snapshot.id})" if snapshot.id else ""
            lines = [
                f"Agent Council{header_id}",
                f"Progress: {snapshot.terminal}/{snapshot.total} done  "
                f"(running {snapshot.counts['running']}, queued {snapshot.counts['queued']})",
            ]
            for member in snapshot.members:
                mark = _checklist_mark(member.state)
                lines.append(
                    f"{mark} {member.member}: {member.state}{_exit_suffix(member.exit_code)}",
                )
            return CommandResult(lines=lines)

        if command.output_format == "text":
            lines = [
                f"members {snapshot.terminal}/{snapshot.total} done; "
                f"running={snapshot.counts['running']} queued={snapshot.counts['queued']}",
            ]
            if command.verbose:
                lines += [
                    f"- {member.member}: {member.state}{_exit_suffix(member.exit_code)}"
                    for member in snapshot.members
                ]
            return CommandResult(lines=lines)

        return CommandResult(lines=[_dumps(snapshot.to_dict())])

    def wait(
        self,
        command: CouncilWaitCommand,
        *,
        on_poll: Callable[[JobStatusSnapshot], None] | None = None,
    ) -> CommandResult:
        result = wait_for_progress(
            command.job_dir,
            cursor=command.cursor,
            bucket=command.bucket,
            interval_ms=command.interval_ms,
            timeout_ms=command.timeout_ms,
            on_poll=on_poll,
        )
        return CommandResult(lines=[_dumps(result.to_payload())])

    def results(self, command: CouncilResultsCommand, *, debug: bool = False) -> CommandResult:
        job_dir = command.job_dir.resolve()
        if not job_dir.is_dir():
            raise UsageError(f"Job directory not found: {job_dir}")
        settings = Settings.from_env()
        paths = JobPaths(job_dir)
        meta = read_json_if_exists(paths.meta_path) or {}
        scenario = meta.get("scenario") if isinstance(meta.get("scenario"), str) else None

        members = collect_member_results(job_dir)
        warnings = summarize_outcomes(members)
        self._remember(settings, job_dir=job_dir, scenario=scenario, members=members)

        if command.show_stats or debug:
            stats = ExecutionStats()
            stats.record_results(members)
            warnings += stats.render_lines()

        if command.as_json:
            return CommandResult(lines=[_dumps(render_json(job_dir, members))], warnings=warnings)

        template = load_scenario_template(scenario, settings.templates_dir) if scenario else None
        rendered = render_markdown(members, scenario=scenario, template=template)
        if command.output_path is not None:
            exported = export_results(rendered, command.output_path)
            return CommandResult(lines=[f"✓ Results exported to: {exported}"], warnings=warnings)
        return CommandResult(lines=[rendered], warnings=warnings)

    def _remember(
        self,
        settings: Settings,
        *,
        job_dir: Path,
        scenario: str | None,
        members: list[MemberResult],
    ) -> None:
        succeeded = [member for member in members if member.succeeded]
        prompt = read_text_if_exists(JobPaths(job_dir).prompt_path)
        if not succeeded or not prompt:
            return
        cache = self._service(settings).result_cache()
        try:
            cache.write(
                cache_key(prompt, scenario),
                job_dir=job_dir,
                prompt=prompt,
                scenario=scenario,
                members=[member.to_dict() for member in succeeded],
            )
        except OSError as error:
            logger.warning("Could not write result cache: %s", error)

    def stop(self, command: CouncilJobCommand) -> CommandResult:
        signaled = self._service(Settings.from_env()).stop_job(command.job_dir)
        if not signaled:
            return CommandResult(lines=["stop: no running members"])
        return CommandResult(lines=[f"stop: sent SIGTERM to {', '.join(signaled)}"])

    def clean(self, command: CouncilJobCommand) -> CommandResult:
        removed = self._service(Settings.from_env()).clean_job(command.job_dir)
        return CommandResult(lines=[f"cleaned: {removed}"])

    def cache_list(self, command: CacheListCommand) -> CommandResult:
        entries = self._service(Settings.from_env()).result_cache().list_entries()
        if command.as_json:
            return CommandResult(lines=[_dumps([entry.to_dict() for entry in entries])])
        if not entries:
            return CommandResult(lines=["No cached results found"])

        lines = [
            f"Cached Results ({len(entries)} entries)",
            "",
            f"{'KEY':<18} {'AGE':<10} {'MEMBERS':<8} PROMPT",
            f"{'-' * 18} {'-' * 10} {'-' * 8} {'-' * 40}",
        ]
        for entry in entries:
            age = (
                f"{entry.age_minutes}m"
                if entry.age_minutes < 60
                else f"{round(entry.age_minutes / 60)}h"
            )
            preview = entry.prompt[:40].replace("\n", " ")
            expired = " (expired)" if entry.is_expired else ""
            lines.append(f"{entry.key:<18} {age:<10} {entry.member_count!s:<8} {preview}{expired}")
        return CommandResult(lines=lines)

    def cache_clear(self, command: CacheClearCommand) -> CommandResult:
        if command.key is not None:
            validate_cache_key(command.key)
        cleared = self._service(Settings.from_env()).result_cache().clear(command.key)
        if command.key is None:
            return CommandResult(lines=[f"✓ Cleared {cleared} cache entries"])
        if cleared:
            return CommandResult(lines=[f"✓ Cleared cache entry: {command.key}"])
        return CommandResult(lines=[f"⚠ Cache entry not found: {command.key}"])

    def cache_export(self, command: CacheExportCommand) -> CommandResult:
        validate_cache_key(command.key)
        settings = Settings.from_env()
        entry = self._service(settings).result_cache().read(command.key)
        if entry is None:
            raise UsageError(f"Cache entry not found or expired: {command.key}")
        job_dir = Path(entry.job_dir)
        if not job_dir.is_dir():
            raise UsageError(f"Cached job directory no longer exists: {job_dir}")

        meta = read_json_if_exists(JobPaths(job_dir).meta_path) or {}
        scenario = meta.get("scenario") if isinstance(meta.get("scenario"), str) else None
        template = load_scenario_template(scenario, settings.templates_dir) if scenario else None
        rendered = render_markdown(
            collect_member_results(job_dir),
            scenario=scenario,
            template=template,
        )
        if command.output_path is not None:
            exported = export_results(rendered, command.output_path)
            return CommandResult(lines=[f"✓ Exported to: {exported}"])
        return CommandResult(lines=[rendered])


def format_progress_line(snapshot: JobStatusSnapshot) -> str:
    """One-line progress summary for interactive terminals."""

    running = [m.member for m in snapshot.members if m.state == MemberState.RUNNING.value]
    retrying = [m.member for m in snapshot.members if m.state == MemberState.RETRYING.value]
    parts = [f"Council Progress: ✓{snapshot.terminal}"]
    if running:
        parts.append(f"⟳{len(running)}")
    if retrying:
        parts.append(f"↻{len(retrying)}")
    parts.append(f"of {snapshot.total}")
    active = running + [f"{name}↻" for name in retrying]
    if active:
        parts.append(f"({', '.join(active)})")
    return " ".join(parts)


def _checklist_mark(state: str) -> str:
    if state == MemberState.DONE.value:
        return "[x]"
    if state in {MemberState.RUNNING.value, MemberState.QUEUED.value, MemberState.RETRYING.value}:
        return "[ ]"
    return "[!]"


def _exit_suffix(exit_code: int | None) -> str:
    return f" (exit {exit_code})" if exit_code is not None else ""


def _dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2)
