"""Cursor-based long-poll over job progress.

A cursor condenses a snapshot into ``v2:<bucket>:<dispatch>:<doneBucket>:<isDone>``.
Callers pass back the last cursor they saw; the wait returns as soon as the
condensed value differs, so each caller wakes only when a bucket boundary is
crossed rather than on every member transition.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_council.orchestrator.contracts import read_text_if_exists, write_text_atomic
from agent_council.orchestrator.models import TERMINAL_STATES, MemberState, UsageError
from agent_council.orchestrator.status import JobStatusSnapshot, compute_status
from agent_council.orchestrator.workdir import JobPaths

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 250
MIN_INTERVAL_MS = 50
AUTO_BUCKET_TARGET_UPDATES = 5
PLAN_PREFIX = "[Council]"


@dataclass(frozen=True, slots=True)
class WaitCursor:
    bucket_size: int
    dispatch_bucket: int
    done_bucket: int
    is_done: bool

    def format(self) -> str:
        return (
            f"v2:{self.bucket_size}:{self.dispatch_bucket}:"
            f"{self.done_bucket}:{1 if self.is_done else 0}"
        )

    @classmethod
    def parse(cls, value: str | None) -> WaitCursor | None:
        """Parse a v2 or legacy v1 cursor; ``None`` for anything malformed."""

        parts = (value or "").strip().split(":")
        if parts[0] == "v1" and len(parts) == 4:
            numbers = _non_negative_ints(parts[1], parts[2])
            if numbers is None or numbers[0] <= 0:
                return None
            return cls(numbers[0], 0, numbers[1], parts[3] == "1")
        if parts[0] == "v2" and len(parts) == 5:
            numbers = _non_negative_ints(parts[1], parts[2], parts[3])
            if numbers is None or numbers[0] <= 0:
                return None
            return cls(numbers[0], numbers[1], numbers[2], parts[4] == "1")
        return None


@dataclass(slots=True)
class WaitResult:
    snapshot: JobStatusSnapshot
    cursor: WaitCursor
    changed: bool

    def to_payload(self) -> dict[str, Any]:
        return {
            "jobDir": str(self.snapshot.job_dir),
            "id": self.snapshot.id,
            "chairmanRole": self.snapshot.chairman_role,
            "overallState": self.snapshot.overall_state,
            "counts": dict(self.snapshot.counts),
            "members": [
                {
                    "member": member.member,
                    "state": member.state,
                    "exitCode": member.exit_code,
                    "message": member.message,
                }
                for member in self.snapshot.members
            ],
            "ui": build_progress_plan(self.snapshot),
            "cursor": self.cursor.format(),
        }


def resolve_bucket_size(
    bucket: int | str | None,
    total: int,
    previous: WaitCursor | None,
) -> int:
    """Explicit bucket wins; ``auto`` reuses the previous size or targets ~5 wakeups."""

    if bucket is not None and str(bucket).strip().lower() != "auto":
        try:
            size = int(str(bucket).strip())
        except ValueError as error:
            raise UsageError(f"wait: invalid --bucket: {bucket}") from error
        if size <= 0:
            raise UsageError(f"wait: invalid --bucket: {bucket}")
        return size
    if bucket is None and previous is not None:
        return previous.bucket_size
    if total <= 0:
        return 1
    return max(1, math.ceil(total / AUTO_BUCKET_TARGET_UPDATES))


def compute_cursor(snapshot: JobStatusSnapshot, bucket_size: int) -> WaitCursor:
    queued = snapshot.counts.get(MemberState.QUEUED.value, 0)
    return WaitCursor(
        bucket_size=bucket_size,
        dispatch_bucket=1 if queued == 0 and snapshot.total > 0 else 0,
        done_bucket=snapshot.terminal // bucket_size,
        is_done=snapshot.is_done,
    )


def build_progress_plan(snapshot: JobStatusSnapshot) -> dict[str, Any]:
    """Plan/todo payloads for host agents, with one ``in_progress`` step while work remains."""

    done = snapshot.is_done
    queued = snapshot.counts.get(MemberState.QUEUED.value, 0)
    running = snapshot.counts.get(MemberState.RUNNING.value, 0)

    dispatch_status = "in_progress" if not done and queued > 0 else "completed"
    has_in_progress = dispatch_status == "in_progress"

    member_steps: list[tuple[str, str]] = []
    for member in sorted(snapshot.members, key=lambda summary: summary.member):
        if member.state in TERMINAL_STATES:
            status = "completed"
        elif not has_in_progress and running > 0 and member.state == MemberState.RUNNING.value:
            status = "in_progress"
            has_in_progress = True
        else:
            status = "pending"
        member_steps.append((f"{PLAN_PREFIX} Ask {member.member}", status))

    if done:
        synth_status = "pending" if has_in_progress else "in_progress"
    else:
        synth_status = "pending"

    dispatch_label = f"{PLAN_PREFIX} Prompt dispatch"
    synth_label = f"{PLAN_PREFIX} Synthesize"
    codex_plan = [
        {"step": dispatch_label, "status": dispatch_status},
        *({"step": label, "status": status} for label, status in member_steps),
        {"step": synth_label, "status": synth_status},
    ]
    claude_todos = [
        {
            "content": dispatch_label,
            "status": dispatch_status,
            "activeForm": (
                "Dispatched council prompts"
                if dispatch_status == "completed"
                else "Dispatching council prompts"
            ),
        },
        *(
            {
                "content": label,
                "status": status,
                "activeForm": "Finished" if status == "completed" else "Awaiting response",
            }
            for label, status in member_steps
        ),
        {
            "content": synth_label,
            "status": synth_status,
            "activeForm": (
                "Ready to synthesize" if synth_status == "in_progress" else "Waiting to synthesize"
            ),
        },
    ]
    return {
        "progress": {
            "done": snapshot.terminal,
            "total": snapshot.total,
            "overallState": snapshot.overall_state,
        },
        "codex": {"update_plan": {"plan": codex_plan}},
        "claude": {"todo_write": {"todos": claude_todos}},
    }


def wait_for_progress(  # noqa: PLR0913
    job_dir: Path,
    *,
    cursor: str | None = None,
    bucket: int | str | None = None,
    interval_ms: int = DEFAULT_INTERVAL_MS,
    timeout_ms: int = 0,
    on_poll: Callable[[JobStatusSnapshot], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> WaitResult:
    """Block until the job's cursor differs from the caller's previous one."""

    if interval_ms < 0:
        raise UsageError(f"wait: invalid --interval-ms: {interval_ms}")
    if timeout_ms < 0:
        raise UsageError(f"wait: invalid --timeout-ms: {timeout_ms}")
    interval_seconds = max(MIN_INTERVAL_MS, int(interval_ms)) / 1000

    paths = JobPaths(job_dir)
    raw_previous = cursor if cursor is not None else read_text_if_exists(paths.cursor_path)
    previous = WaitCursor.parse(raw_previous)

    snapshot = compute_status(job_dir)
    bucket_size = resolve_bucket_size(bucket, snapshot.total, previous)
    current = compute_cursor(snapshot, bucket_size)

    if previous is not None and current == previous:
        started = clock()
        while True:
            if timeout_ms > 0 and (clock() - started) * 1000 >= timeout_ms:
                logger.debug("wait timed out after %sms on %s", timeout_ms, current.format())
                break
            sleep(interval_seconds)
            snapshot = compute_status(job_dir)
            if on_poll is not None:
                on_poll(snapshot)
            current = compute_cursor(snapshot, bucket_size)
            if current != previous:
                break

    write_text_atomic(paths.cursor_path, current.format())
    return WaitResult(snapshot=snapshot, cursor=current, changed=current != previous)


def _non_negative_ints(*values: str) -> tuple[int, ...] | None:
    numbers: list[int] = []
    for value in values:
        try:
            number = int(value)
        except ValueError:
            return None
        if number < 0:
            return None
        numbers.append(number)
    return tuple(numbers)
