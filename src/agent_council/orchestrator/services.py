"""Use-case services: create council jobs, stop them and clean them up."""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_council.config import CouncilConfig, Settings, load_council_config
from agent_council.orchestrator.cache import CacheEntry, ResultCache, cache_key
from agent_council.orchestrator.contracts import (
    read_json_if_exists,
    write_json_atomic,
    write_text_atomic,
)
from agent_council.orchestrator.models import (
    JobMember,
    JobMeta,
    JobNotFoundError,
    JobSettings,
    MemberSpec,
    MemberState,
    UsageError,
    utc_now_iso,
)
from agent_council.orchestrator.sanitization import sanitize_prompt
from agent_council.orchestrator.scenarios import (
    ScenarioDetection,
    ScenarioTemplate,
    build_role_enhanced_prompt,
    detect_scenario,
    list_scenarios,
    load_scenario_template,
)
from agent_council.orchestrator.workdir import (
    JobPaths,
    JobWorkdirManager,
    new_job_id,
    unique_safe_names,
)

logger = logging.getLogger(__name__)

WORKER_MODULE = "agent_council.orchestrator.worker"
AUTO_ROLE = "auto"
DEFAULT_CHAIRMAN_ROLE = "claude"

WorkerLauncher = Callable[[Sequence[str]], None]


def launch_worker(argv: Sequence[str]) -> None:
    """Start a detached worker in its own session and return without waiting."""

    subprocess.Popen(  # noqa: S603
        list(argv),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True,
    )


def detect_host_role(host_override: str | None = None, install_path: Path | None = None) -> str:
    """Which agent host installed us: ``claude``, ``codex`` or ``unknown``."""

    if host_override:
        return host_override.strip().lower()
    normalized = (install_path or Path(__file__).resolve()).as_posix()
    if "/.claude/skills/" in normalized:
        return "claude"
    if "/.codex/skills/" in normalized:
        return "codex"
    return "unknown"


def resolve_chairman_role(role: str | None, host_role: str) -> str:
    normalized = (role or "").strip().lower()
    if normalized and normalized != AUTO_ROLE:
        return normalized
    if host_role in {"claude", "codex"}:
        return host_role
    return DEFAULT_CHAIRMAN_ROLE


def cache_watched_paths(config_path: Path | None) -> list[Path]:
    """Sources whose modification invalidates cached results."""

    worker_path = Path(__file__).resolve().with_name("worker.py")
    watched = [Path(__file__).resolve(), worker_path]
    if config_path is not None:
        watched.append(config_path)
    return watched


@dataclass(slots=True)
class StartJobRequest:
    """High-level command to start a council job."""

    prompt: str
    scenario: str | None = None
    chairman: str | None = None
    timeout_seconds: float | None = None
    exclude_chairman: bool = False
    include_chairman: bool = False
    no_cache: bool = False


@dataclass(slots=True)
class StartJobResult:
    """Either a freshly launched job or a cache hit pointing at an older one."""

    job_dir: Path | None
    meta: JobMeta | None = None
    cache_key: str | None = None
    cache_hit: CacheEntry | None = None
    warnings: list[str] = field(default_factory=list)
    masked_count: int = 0
    detection: ScenarioDetection | None = None

    def to_payload(self) -> dict[str, Any]:
        if self.cache_hit is not None:
            return {
                "cacheHit": True,
                "cacheKey": self.cache_key,
                "cached": {
                    "timestamp": self.cache_hit.timestamp,
                    "jobDir": self.cache_hit.job_dir,
                    "memberCount": self.cache_hit.member_count,
                    "preview": [
                        {
                            "member": preview.member,
                            "role": preview.role,
                            "outputPreview": preview.output_preview,
                        }
                        for preview in self.cache_hit.preview
                    ],
                },
                "message": "Cached result found. Use --no-cache to run fresh query.",
            }
        payload: dict[str, Any] = {"jobDir": str(self.job_dir)}
        if self.meta is not None:
            payload.update(self.meta.to_record())
        return payload


class CouncilService:
    """Coordinates config resolution, job layout and worker launch."""

    def __init__(
        self,
        *,
        settings: Settings,
        launcher: WorkerLauncher = launch_worker,
        python_executable: str | None = None,
    ) -> None:
        self.settings = settings
        self.launcher = launcher
        self.python_executable = python_executable or sys.executable

    def result_cache(self, config_path: Path | None = None) -> ResultCache:
        if config_path is None:
            config_path = self.settings.resolve_config_path()
        return ResultCache(
            self.settings.cache_dir,
            watched_paths=cache_watched_paths(config_path),
        )

    def start_job(self, request: StartJobRequest) -> StartJobResult:
        if not request.prompt or not request.prompt.strip():
            raise UsageError("Missing prompt")

        sanitized = sanitize_prompt(request.prompt)
        warnings = list(sanitized.warnings)
        prompt = sanitized.text
        if sanitized.masked_count:
            logger.debug("Masked %d sensitive value pattern(s) in prompt", sanitized.masked_count)

        config_path = self.settings.resolve_config_path()
        config = load_council_config(config_path)
        host_role = detect_host_role(self.settings.host)
        chairman_role = resolve_chairman_role(
            request.chairman or self.settings.chairman or config.chairman_role or AUTO_ROLE,
            host_role,
        )

        scenario = request.scenario or self.settings.scenario
        detection: ScenarioDetection | None = None
        if scenario == AUTO_ROLE:
            detection = detect_scenario(prompt)
            scenario = detection.detected
            logger.debug("Scenario auto-detection: %s (%s)", scenario, detection.confidence)

        key = cache_key(prompt, scenario)
        if not request.no_cache:
            cached = self.result_cache(config_path).read(key)
            if cached is not None:
                logger.info("Cache hit %s -> %s", key, cached.job_dir)
                return StartJobResult(
                    job_dir=Path(cached.job_dir),
                    cache_key=key,
                    cache_hit=cached,
                    warnings=warnings,
                    masked_count=sanitized.masked_count,
                    detection=detection,
                )

        template = load_scenario_template(scenario, self.settings.templates_dir)
        if scenario and template is None:
            warnings.append(f"Scenario template not found: {scenario}; using default prompting")
            logger.debug(
                "Available scenarios: %s",
                ", ".join(list_scenarios(self.settings.templates_dir)),
            )

        exclude_chairman = _resolve_exclusion(config, request)
        timeout = _resolve_timeout(config, request.timeout_seconds)
        members = [
            member
            for member in config.members
            if member.name and member.command
            and not (exclude_chairman and member.name.strip().lower() == chairman_role)
        ]

        meta = self._materialize(
            prompt=prompt,
            members=members,
            template=template,
            config=config,
            host_role=host_role,
            chairman_role=chairman_role,
            scenario=scenario,
            settings=JobSettings(
                exclude_chairman_from_members=exclude_chairman,
                timeout_seconds=timeout,
            ),
        )
        job_dir = self.settings.jobs_dir.resolve() / meta.id
        return StartJobResult(
            job_dir=job_dir,
            meta=meta,
            cache_key=key,
            warnings=warnings,
            masked_count=sanitized.masked_count,
            detection=detection,
        )

    def _materialize(  # noqa: PLR0913
        self,
        *,
        prompt: str,
        members: list[MemberSpec],
        template: ScenarioTemplate | None,
        config: CouncilConfig,
        host_role: str,
        chairman_role: str,
        scenario: str | None,
        settings: JobSettings,
    ) -> JobMeta:
        job_id = new_job_id()
        safe_names = unique_safe_names([member.name for member in members])
        paths = JobWorkdirManager(self.settings.jobs_dir.resolve()).materialize(
            job_id=job_id,
            safe_names=safe_names,
        )
        write_text_atomic(paths.prompt_path, prompt)

        job_members = [
            JobMember(
                name=member.name,
                command=member.command,
                fallback=member.fallback,
                emoji=member.emoji,
                color=member.color,
                role=_role_label(template, index),
            )
            for index, member in enumerate(members)
        ]
        meta = JobMeta(
            id=job_id,
            created_at=utc_now_iso(),
            config_path=str(config.path) if config.path is not None else None,
            host_role=host_role,
            chairman_role=chairman_role,
            scenario=scenario,
            settings=settings,
            members=job_members,
        )
        write_json_atomic(paths.meta_path, meta.to_record())

        for index, (member, safe_name) in enumerate(zip(job_members, safe_names, strict=True)):
            member_paths = paths.member(safe_name)
            write_text_atomic(
                member_paths.prompt_path,
                build_role_enhanced_prompt(prompt, template, index),
            )
            write_json_atomic(
                member_paths.status_path,
                {
                    "member": member.name,
                    "role": member.role,
                    "state": MemberState.QUEUED.value,
                    "queuedAt": utc_now_iso(),
                    "command": member.command,
                },
            )
            fallback = member.fallback if config.retry_on_rate_limit else None
            argv = self._worker_argv(
                paths,
                member=member,
                safe_name=safe_name,
                timeout=settings.timeout_seconds,
                fallback=fallback,
            )
            try:
                self.launcher(argv)
            except OSError as error:
                logger.warning("Could not launch worker for %s: %s", member.name, error)
                write_json_atomic(
                    member_paths.status_path,
                    {
                        "member": member.name,
                        "role": member.role,
                        "state": MemberState.ERROR.value,
                        "message": f"Failed to launch worker: {error}",
                        "finishedAt": utc_now_iso(),
                        "command": member.command,
                    },
                )
        logger.info("Started job %s with %d member(s)", job_id, len(job_members))
        return meta

    def _worker_argv(  # noqa: PLR0913
        self,
        paths: JobPaths,
        *,
        member: JobMember,
        safe_name: str,
        timeout: float | None,
        fallback: str | None,
    ) -> list[str]:
        argv = [
            self.python_executable,
            "-m",
            WORKER_MODULE,
            "--job-dir",
            str(paths.job_dir),
            "--member",
            member.name,
            "--safe-member",
            safe_name,
            "--command",
            member.command,
            "--use-member-prompt",
        ]
        if timeout:
            argv += ["--timeout", f"{timeout:g}"]
        if fallback:
            argv += ["--fallback", fallback]
        return argv

    def stop_job(self, job_dir: Path) -> list[str]:
        """Send SIGTERM to every running member; returns the members signaled."""

        paths = JobPaths(job_dir.resolve())
        if not paths.members_dir.is_dir():
            raise JobNotFoundError(f"No members folder found: {paths.members_dir}")

        signaled: list[str] = []
        for member_dir in paths.member_dirs():
            record = read_json_if_exists(paths.member(member_dir.name).status_path)
            if record is None or record.get("state") != MemberState.RUNNING.value:
                continue
            pid = record.get("pid")
            if not isinstance(pid, int) or pid <= 0:
                continue
            try:
                os.kill(pid, signal.SIGTERM)
            except (ProcessLookupError, PermissionError) as error:
                logger.debug("Could not signal %s (pid %s): %s", member_dir.name, pid, error)
                continue
            signaled.append(str(record.get("member") or member_dir.name))
        return signaled

    def clean_job(self, job_dir: Path) -> Path:
        """Remove a job directory tree; refuses directories that are not jobs."""

        resolved = job_dir.resolve()
        if not resolved.exists():
            return resolved
        paths = JobPaths(resolved)
        if not paths.meta_path.exists() and not paths.members_dir.is_dir():
            raise UsageError(f"Not a council job directory: {resolved}")
        shutil.rmtree(resolved)
        return resolved


def _role_label(template: ScenarioTemplate | None, index: int) -> str | None:
    role = template.role_for(index) if template is not None else None
    return role.label if role is not None else None


def _resolve_exclusion(config: CouncilConfig, request: StartJobRequest) -> bool:
    exclude = config.exclude_chairman_from_members
    if request.exclude_chairman:
        exclude = True
    if request.include_chairman:
        exclude = False
    return exclude


def _resolve_timeout(config: CouncilConfig, override: float | None) -> float | None:
    if override is not None and override > 0:
        return override
    if config.timeout_seconds is not None and config.timeout_seconds > 0:
        return config.timeout_seconds
    return None
