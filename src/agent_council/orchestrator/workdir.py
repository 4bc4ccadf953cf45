"""Job directory layout helpers."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_council.orchestrator.models import safe_member_name

JOB_ID_PREFIX = "council-"


@dataclass(frozen=True, slots=True)
class MemberPaths:
    """Files owned by one member inside a job."""

    directory: Path

    @property
    def status_path(self) -> Path:
        return self.directory / "status.json"

    @property
    def prompt_path(self) -> Path:
        return self.directory / "prompt.txt"

    @property
    def output_path(self) -> Path:
        return self.directory / "output.txt"

    @property
    def error_path(self) -> Path:
        return self.directory / "error.txt"


@dataclass(frozen=True, slots=True)
class JobPaths:
    """Well-known paths of one job directory."""

    job_dir: Path

    @property
    def meta_path(self) -> Path:
        return self.job_dir / "job.json"

    @property
    def prompt_path(self) -> Path:
        return self.job_dir / "prompt.txt"

    @property
    def members_dir(self) -> Path:
        return self.job_dir / "members"

    @property
    def cursor_path(self) -> Path:
        return self.job_dir / ".wait_cursor"

    def member(self, safe_name: str) -> MemberPaths:
        return MemberPaths(self.members_dir / safe_name)

    def member_dirs(self) -> list[Path]:
        """Existing member directories, sorted by name."""

        try:
            return sorted(path for path in self.members_dir.iterdir() if path.is_dir())
        except OSError:
            return []


def new_job_id(now: datetime | None = None) -> str:
    """Timestamped job id with a random suffix."""

    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"{JOB_ID_PREFIX}{stamp}-{secrets.token_hex(3)}"


class JobWorkdirManager:
    """Creates per-job directory layout under a jobs root."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def materialize(self, *, job_id: str, safe_names: list[str]) -> JobPaths:
        paths = JobPaths(self.root_dir / job_id)
        paths.members_dir.mkdir(parents=True, exist_ok=True)
        for safe_name in safe_names:
            paths.member(safe_name).directory.mkdir(parents=True, exist_ok=True)
        return paths


def unique_safe_names(names: list[str]) -> list[str]:
    """Safe directory names for ``names``, suffixed when two members collide."""

    seen: set[str] = set()
    result: list[str] = []
    for name in names:
        base = safe_member_name(name)
        candidate = base
        suffix = 2
        while candidate in seen:
            candidate = f"{base}-{suffix}"
            suffix += 1
        seen.add(candidate)
        result.append(candidate)
    return result
