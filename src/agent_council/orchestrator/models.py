"""Domain models for council jobs and member execution."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class MemberState(str, Enum):
    """Member lifecycle states written to ``status.json``."""

    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    DONE = "done"
    ERROR = "error"
    MISSING_CLI = "missing_cli"
    TIMED_OUT = "timed_out"
    CANCELED = "canceled"


TERMINAL_STATES: frozenset[str] = frozenset(
    {
        MemberState.DONE.value,
        MemberState.ERROR.value,
        MemberState.MISSING_CLI.value,
        MemberState.TIMED_OUT.value,
        MemberState.CANCELED.value,
    },
)

# Fixed tally vocabulary of the aggregator, in display order.
COUNTED_STATES: tuple[str, ...] = (
    MemberState.QUEUED.value,
    MemberState.RUNNING.value,
    MemberState.DONE.value,
    MemberState.ERROR.value,
    MemberState.MISSING_CLI.value,
    MemberState.TIMED_OUT.value,
    MemberState.CANCELED.value,
)


class UsageError(ValueError):
    """Caller supplied missing or invalid input; no job side effects happened."""


class JobNotFoundError(UsageError):
    """Job directory does not exist."""


@dataclass(slots=True)
class MemberSpec:
    """One configured council member."""

    name: str
    command: str
    fallback: str | None = None
    emoji: str | None = None
    color: str | None = None


@dataclass(slots=True)
class JobMember:
    """Member entry frozen into job metadata."""

    name: str
    command: str
    fallback: str | None = None
    emoji: str | None = None
    color: str | None = None
    role: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "fallback": self.fallback,
            "emoji": self.emoji,
            "color": self.color,
            "role": self.role,
        }


@dataclass(slots=True)
class JobSettings:
    """Per-run settings resolved at job creation."""

    exclude_chairman_from_members: bool
    timeout_seconds: float | None


@dataclass(slots=True)
class JobMeta:
    """Immutable job metadata persisted as ``job.json``."""

    id: str
    created_at: str
    config_path: str | None
    host_role: str
    chairman_role: str
    scenario: str | None
    settings: JobSettings
    members: list[JobMember] = field(default_factory=list)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "configPath": self.config_path,
            "hostRole": self.host_role,
            "chairmanRole": self.chairman_role,
            "scenario": self.scenario,
            "settings": {
                "excludeChairmanFromMembers": self.settings.exclude_chairman_from_members,
                "timeoutSec": self.settings.timeout_seconds,
            },
            "members": [member.to_record() for member in self.members],
        }


_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9_-]+")


def safe_member_name(name: str) -> str:
    """Filesystem-safe directory name derived from a member name."""

    cleaned = _UNSAFE_NAME_CHARS.sub("-", str(name or "").strip().lower())
    return cleaned or "member"


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with a ``Z`` suffix."""

    stamp = datetime.now(tz=UTC).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def parse_iso(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def terminal_count(counts: dict[str, int]) -> int:
    """Number of members that reached any terminal state."""

    return sum(int(counts.get(state, 0) or 0) for state in TERMINAL_STATES)
