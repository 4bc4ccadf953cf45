from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_council.orchestrator.contracts import write_json_atomic
from agent_council.orchestrator.models import COUNTED_STATES, JobNotFoundError
from agent_council.orchestrator.status import compute_status
from agent_council.orchestrator.workdir import JobPaths

pytestmark = [
    allure.epic("Agent Council"),
    allure.feature("Status Aggregation"),
]


def _job(tmp_path: Path, states: dict[str, str]) -> JobPaths:
    paths = JobPaths(tmp_path / "job")
    write_json_atomic(paths.meta_path, {"id": "council-1", "chairmanRole": "claude"})
    for name, state in states.items():
        write_json_atomic(paths.member(name).status_path, {"member": name, "state": state})
    return paths


def test_compute_status_counts_and_overall_state(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"gemini": "running", "codex": "done", "claude": "queued"})

    snapshot = compute_status(paths.job_dir)

    assert snapshot.id == "council-1"
    assert snapshot.chairman_role == "claude"
    assert snapshot.overall_state == "running"
    assert snapshot.counts["total"] == 3
    assert snapshot.counts["done"] == 1
    assert snapshot.terminal == 1
    assert [member.member for member in snapshot.members] == ["claude", "codex", "gemini"]


def test_compute_status_queued_when_nothing_running(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"a": "queued", "b": "error"})

    assert compute_status(paths.job_dir).overall_state == "queued"


def test_compute_status_done_when_all_terminal(tmp_path: Path) -> None:
    paths = _job(
        tmp_path,
        {"a": "done", "b": "error", "c": "missing_cli", "d": "timed_out", "e": "canceled"},
    )

    snapshot = compute_status(paths.job_dir)

    assert snapshot.is_done is True
    assert snapshot.terminal == 5


def test_compute_status_skips_missing_and_corrupt_records(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"a": "done"})
    paths.member("b").directory.mkdir()
    paths.member("c").directory.mkdir()
    paths.member("c").status_path.write_text('{"state": ', "utf-8")

    snapshot = compute_status(paths.job_dir)

    assert snapshot.counts["total"] == 1
    assert [member.member for member in snapshot.members] == ["a"]


def test_compute_status_lists_retrying_without_counting_it(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"a": "retrying", "b": "done"})

    snapshot = compute_status(paths.job_dir)

    assert "retrying" not in snapshot.counts
    assert snapshot.counts["total"] == 2
    assert snapshot.is_done is True
    assert {member.state for member in snapshot.members} == {"retrying", "done"}


def test_compute_status_done_while_only_member_is_retrying(tmp_path: Path) -> None:
    paths = _job(tmp_path, {"a": "retrying"})

    snapshot = compute_status(paths.job_dir)

    assert snapshot.overall_state == "done"
    assert snapshot.counts == {"total": 1, **{state: 0 for state in COUNTED_STATES}}

def test_compute_status_without_job_metadata(tmp_path: Path) -> None:
    paths = JobPaths(tmp_path / "job")
    write_json_atomic(paths.member("a").status_path, {"member": "a", "state": "running"})

    snapshot = compute_status(paths.job_dir)

    assert snapshot.id is None
    assert snapshot.to_dict()["overallState"] == "running"


def test_compute_status_missing_job_dir(tmp_path: Path) -> None:
    with pytest.raises(JobNotFoundError):
        compute_status(tmp_path / "nope")


def test_compute_status_empty_job_is_done(tmp_path: Path) -> None:
    (tmp_path / "job").mkdir()

    snapshot = compute_status(tmp_path / "job")

    assert snapshot.total == 0
    assert snapshot.is_done is True
