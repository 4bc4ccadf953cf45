"""Aggregate member status records into one job snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_council.orchestrator.contracts import read_json_if_exists
from agent_council.orchestrator.models import (
    COUNTED_STATES,
    JobNotFoundError,
    MemberState,
    terminal_count,
)
from agent_council.orchestrator.workdir import JobPaths


@dataclass(slots=True)
class MemberSummary:
    member: str
    state: str
    safe_name: str
    role: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    exit_code: int | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "member": self.member,
            "state": self.state,
            "role": self.role,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "exitCode": self.exit_code,
            "message": self.message,
        }


@dataclass(slots=True)
class JobStatusSnapshot:
    """Point-in-time reduction of every member record under a job."""

    job_dir: Path
    id: str | None
    chairman_role: str | None
    overall_state: str
    counts: dict[str, int]
    members: list[MemberSummary] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.counts.get("total", 0)

    @property
    def terminal(self) -> int:
        return terminal_count(self.counts)

    @property
    def is_done(self) -> bool:
        return self.overall_state == MemberState.DONE.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobDir": str(self.job_dir),
            "id": self.id,
            "chairmanRole": self.chairman_role,
            "overallState": self.overall_state,
            "counts": dict(self.counts),
            "members": [member.to_dict() for member in self.members],
        }


def compute_status(job_dir: Path) -> JobStatusSnapshot:
    """Tally member states; absent or half-written records count as missing."""

    resolved = job_dir.resolve()
    if not resolved.is_dir():
        raise JobNotFoundError(f"Job directory not found: {resolved}")

    paths = JobPaths(resolved)
    meta = read_json_if_exists(paths.meta_path) or {}

    members: list[MemberSummary] = []
    for member_dir in paths.member_dirs():
        record = read_json_if_exists(paths.member(member_dir.name).status_path)
        if record is None:
            continue
        members.append(_summarize(record, safe_name=member_dir.name))
    members.sort(key=lambda summary: summary.member)

    # retrying is listed but never counted, so a job whose only active member sits
    # between its retrying and running writes reads as done for that instant.
    counts = {state: 0 for state in COUNTED_STATES}
    for summary in members:
        if summary.state in counts:
            counts[summary.state] += 1

    if counts[MemberState.RUNNING.value] == 0 and counts[MemberState.QUEUED.value] == 0:
        overall = MemberState.DONE.value
    elif counts[MemberState.RUNNING.value] > 0:
        overall = MemberState.RUNNING.value
    else:
        overall = MemberState.QUEUED.value

    return JobStatusSnapshot(
        job_dir=resolved,
        id=_optional_str(meta.get("id")),
        chairman_role=_optional_str(meta.get("chairmanRole")),
        overall_state=overall,
        counts={"total": len(members), **counts},
        members=members,
    )


def _summarize(record: dict[str, Any], *, safe_name: str) -> MemberSummary:
    exit_code = record.get("exitCode")
    if not isinstance(exit_code, int) or isinstance(exit_code, bool):
        exit_code = None
    return MemberSummary(
        member=str(record.get("member") or safe_name),
        state=str(record.get("state") or "unknown"),
        safe_name=safe_name,
        role=_optional_str(record.get("role")),
        started_at=_optional_str(record.get("startedAt")),
        finished_at=_optional_str(record.get("finishedAt")),
        exit_code=exit_code,
        message=_optional_str(record.get("message")),
    )


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
