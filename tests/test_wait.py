from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_council.orchestrator.contracts import write_json_atomic
from agent_council.orchestrator.models import UsageError
from agent_council.orchestrator.status import compute_status
from agent_council.orchestrator.wait import (
    WaitCursor,
    build_progress_plan,
    compute_cursor,
    resolve_bucket_size,
    wait_for_progress,
)
from agent_council.orchestrator.workdir import JobPaths

pytestmark = [
    allure.epic("Agent Council"),
    allure.feature("Cursor Wait"),
]


def _job(tmp_path: Path, states: dict[str, str]) -> JobPaths:
    paths = JobPaths(tmp_path / "job")
    write_json_atomic(paths.meta_path, {"id": "council-1", "chairmanRole": "codex"})
    for name, state in states.items():
        _set_state(paths, name, state)
    return paths


def _set_state(paths: JobPaths, name: str, state: str) -> None:
    write_json_atomic(paths.member(name).status_path, {"member": name, "state": state})


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_cursor_format_and_parse() -> None:
    cursor = WaitCursor(bucket_size=2, dispatch_bucket=1, done_bucket=1, is_done=False)

    assert cursor.format() == "v2:2:1:1:0"
    assert WaitCursor.parse("v2:2:1:1:0") == cursor
    assert WaitCursor.parse("v1:3:2:1") == WaitCursor(3, 0, 2, True)
    for malformed in (None, "", "v2:0:1:1:0", "v2:x:1:1:0", "v3:1:1:1:1", "v2:1:-1:0:0"):
        assert WaitCursor.parse(malformed) is None


def test_resolve_bucket_size() -> None:
    previous = WaitCursor(4, 0, 0, False)

    assert resolve_bucket_size(None, 12, None) == 3
    assert resolve_bucket_size("auto", 3, None) == 1
    assert resolve_bucket_size(None, 0, None) == 1
    assert resolve_bucket_size(None, 12, previous) == 4
    assert resolve_bucket_size("auto", 12, previous) == 3
    assert resolve_bucket_size("2", 12, previous) == 2
    for invalid in ("0", "-1", "many"):
        with pytest.raises(UsageError, match="invalid --bucket"):
            resolve_bucket_size(invalid, 12, None)


def test_compute_cursor_tracks_dispatch_and_done_buckets(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"a": "queued", "b": "running", "c": "done"})

    assert compute_cursor(compute_status(paths.job_dir), 1).format() == "v2:1:0:1:0"
    _set_state(paths, "a", "running")
    assert compute_cursor(compute_status(paths.job_dir), 1).format() == "v2:1:1:1:0"


def test_first_wait_returns_immediately_and_persists_cursor(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"a": "queued", "b": "queued"})
    clock = _FakeClock()

    result = wait_for_progress(paths.job_dir, sleep=clock.sleep, clock=clock)

    assert result.changed is True
    assert clock.sleeps == []
    assert paths.cursor_path.read_text("utf-8") == result.cursor.format()
    assert result.to_payload()["cursor"] == "v2:1:0:0:0"


def test_wait_with_unchanged_cursor_times_out(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"a": "running", "b": "running"})
    clock = _FakeClock()
    first = wait_for_progress(paths.job_dir, sleep=clock.sleep, clock=clock)

    again = wait_for_progress(
        paths.job_dir,
        cursor=first.cursor.format(),
        interval_ms=250,
        timeout_ms=1000,
        sleep=clock.sleep,
        clock=clock,
    )

    assert again.changed is False
    assert again.cursor == first.cursor
    assert len(clock.sleeps) == 4


def test_wait_wakes_when_bucket_boundary_crossed(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"a": "running", "b": "running"})
    first = wait_for_progress(paths.job_dir, bucket="1")
    transitions = iter([("a", "done")])
    polled: list[int] = []

    def sleep(_seconds: float) -> None:
        step = next(transitions, None)
        if step is not None:
            _set_state(paths, *step)

    result = wait_for_progress(
        paths.job_dir,
        cursor=first.cursor.format(),
        sleep=sleep,
        on_poll=lambda snapshot: polled.append(snapshot.terminal),
    )

    assert result.changed is True
    assert result.cursor.format() == "v2:1:1:1:0"
    assert polled == [1]


def test_wait_reads_saved_cursor_when_none_given(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"a": "running"})
    wait_for_progress(paths.job_dir)
    clock = _FakeClock()

    result = wait_for_progress(paths.job_dir, timeout_ms=200, sleep=clock.sleep, clock=clock)

    assert result.changed is False
    assert clock.sleeps


def test_wait_upgrades_legacy_cursor_before_comparing(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"a": "running"})
    clock = _FakeClock()

    result = wait_for_progress(
        paths.job_dir,
        cursor="v1:1:0:0",
        timeout_ms=100,
        sleep=clock.sleep,
        clock=clock,
    )

    assert result.changed is True
    assert result.cursor.format() == "v2:1:1:0:0"


def test_wait_enforces_minimum_interval(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"a": "running"})
    clock = _FakeClock()
    first = wait_for_progress(paths.job_dir, sleep=clock.sleep, clock=clock)

    wait_for_progress(
        paths.job_dir,
        cursor=first.cursor.format(),
        interval_ms=1,
        timeout_ms=100,
        sleep=clock.sleep,
        clock=clock,
    )

    assert set(clock.sleeps) == {0.05}


def test_wait_rejects_negative_durations(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"a": "running"})

    with pytest.raises(UsageError):
        wait_for_progress(paths.job_dir, interval_ms=-1)
    with pytest.raises(UsageError):
        wait_for_progress(paths.job_dir, timeout_ms=-5)


def test_progress_plan_has_single_in_progress_step(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"claude": "done", "codex": "running", "gemini": "running"})

    plan = build_progress_plan(compute_status(paths.job_dir))

    steps = plan["codex"]["update_plan"]["plan"]
    assert [step["step"] for step in steps] == [
        "[Council] Prompt dispatch",
        "[Council] Ask claude",
        "[Council] Ask codex",
        "[Council] Ask gemini",
        "[Council] Synthesize",
    ]
    assert [step["status"] for step in steps] == [
        "completed",
        "completed",
        "in_progress",
        "pending",
        "pending",
    ]
    assert plan["progress"] == {"done": 1, "total": 3, "overallState": "running"}
    todos = plan["claude"]["todo_write"]["todos"]
    assert [todo["status"] for todo in todos] == [step["status"] for step in steps]


def test_progress_plan_when_done_marks_synthesis_in_progress(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"claude": "done", "codex": "error"})

    plan = build_progress_plan(compute_status(paths.job_dir))

    steps = plan["codex"]["update_plan"]["plan"]
    assert steps[-1] == {"step": "[Council] Synthesize", "status": "in_progress"}
    assert [step["status"] for step in steps].count("in_progress") == 1


def test_progress_plan_while_dispatching(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"claude": "queued", "codex": "running"})

    steps = build_progress_plan(compute_status(paths.job_dir))["codex"]["update_plan"]["plan"]

    assert steps[0]["status"] == "in_progress"
    assert [step["status"] for step in steps[1:]] == ["pending", "pending", "pending"]
