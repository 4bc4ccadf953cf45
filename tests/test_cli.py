from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import RecordingLauncher

from agent_council import __version__, main
from agent_council.config import Settings
from agent_council.main import agent_council
from agent_council.orchestrator.contracts import merge_status
from agent_council.orchestrator.workdir import JobPaths

pytestmark = [
    allure.epic("Agent Council"),
    allure.feature("CLI"),
]


@pytest.fixture()
def runner(council_env: Settings, launcher: RecordingLauncher, monkeypatch) -> CliRunner:
    monkeypatch.setattr(main.COUNCIL_CONTROLLER, "launcher", launcher)
    return CliRunner()


def _start(runner: CliRunner, *args: str) -> Path:
    result = runner.invoke(agent_council, ["start", *args])
    assert result.exit_code == 0, result.output
    return Path(result.output.strip().splitlines()[-1])


def _finish(job_dir: Path, outputs: dict[str, str]) -> None:
    paths = JobPaths(job_dir)
    for name, output in outputs.items():
        member = paths.member(name)
        merge_status(
            member.status_path,
            {
                "member": name,
                "state": "done",
                "exitCode": 0,
                "startedAt": "2026-01-01T00:00:00.000Z",
                "finishedAt": "2026-01-01T00:00:02.000Z",
            },
        )
        member.output_path.write_text(output, "utf-8")


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(agent_council, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_start_prints_job_dir_and_launches_workers(
    runner: CliRunner,
    launcher: RecordingLauncher,
) -> None:
    job_dir = _start(runner, "Compare", "two", "designs")

    assert job_dir.is_dir()
    assert JobPaths(job_dir).prompt_path.read_text("utf-8") == "Compare two designs"
    assert len(launcher.calls) == 2


def test_start_json_prints_metadata(runner: CliRunner) -> None:
    result = runner.invoke(agent_council, ["start", "--json", "--include-chairman", "hello"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output[result.output.index("{") :])
    assert payload["chairmanRole"] == "claude"
    assert [member["name"] for member in payload["members"]] == ["claude", "codex", "gemini"]


def test_start_without_prompt_is_usage_error(runner: CliRunner, launcher) -> None:
    result = runner.invoke(agent_council, ["start"])

    assert result.exit_code == 2
    assert "Missing prompt" in result.output
    assert launcher.calls == []


def test_start_with_broken_config_fails(runner: CliRunner, tmp_path: Path) -> None:
    config = tmp_path / "broken.yaml"
    config.write_text("council: [oops", "utf-8")

    result = runner.invoke(agent_council, ["start", "--config", str(config), "hello"])

    assert result.exit_code == 1
    assert "Invalid YAML" in result.output


def test_status_formats(runner: CliRunner) -> None:
    job_dir = _start(runner, "hello")

    as_json = runner.invoke(agent_council, ["status", str(job_dir)])
    as_text = runner.invoke(agent_council, ["status", "--text", "--verbose", str(job_dir)])
    checklist = runner.invoke(agent_council, ["status", "--checklist", str(job_dir)])

    assert json.loads(as_json.output)["overallState"] == "queued"
    assert as_text.output.splitlines()[0] == "members 0/2 done; running=0 queued=2"
    assert "- codex: queued" in as_text.output
    assert "[ ] gemini: queued" in checklist.output
    assert "Progress: 0/2 done" in checklist.output


def test_status_missing_job_is_usage_error(runner: CliRunner, tmp_path: Path) -> None:
    result = runner.invoke(agent_council, ["status", str(tmp_path / "nope")])

    assert result.exit_code == 2
    assert "Job directory not found" in result.output


def test_wait_returns_cursor_and_plan(runner: CliRunner) -> None:
    job_dir = _start(runner, "hello")

    first = runner.invoke(agent_council, ["wait", str(job_dir)])
    payload = json.loads(first.output)
    _finish(job_dir, {"codex": "a", "gemini": "b"})
    second = runner.invoke(
        agent_council,
        ["wait", "--cursor", payload["cursor"], "--timeout-ms", "5000", str(job_dir)],
    )

    assert payload["cursor"] == "v2:1:0:0:0"
    assert payload["ui"]["progress"] == {"done": 0, "total": 2, "overallState": "queued"}
    assert json.loads(second.output)["overallState"] == "done"


def test_wait_rejects_bad_bucket(runner: CliRunner) -> None:
    job_dir = _start(runner, "hello")

    result = runner.invoke(agent_council, ["wait", "--bucket", "zero", str(job_dir)])

    assert result.exit_code == 2
    assert "invalid --bucket" in result.output


def test_results_render_and_populate_cache(runner: CliRunner, launcher, tmp_path: Path) -> None:
    job_dir = _start(runner, "hello")
    _finish(job_dir, {"codex": "- codex answer", "gemini": "- gemini answer"})

    rendered = runner.invoke(agent_council, ["results", str(job_dir)])
    as_json = runner.invoke(agent_council, ["results", "--json", str(job_dir)])
    exported = runner.invoke(
        agent_council,
        ["results", "--output", str(tmp_path / "out.md"), str(job_dir)],
    )

    assert rendered.exit_code == 0, rendered.output
    assert "# Council Results: default" in rendered.output
    assert "- codex answer" in rendered.output
    assert "Results exported to" in exported.output
    assert (tmp_path / "out.md").read_text("utf-8").startswith("# Council Results")
    members = json.loads(as_json.output[as_json.output.index("{") :])["members"]
    assert [member["output"] for member in members] == ["- codex answer", "- gemini answer"]

    cached = runner.invoke(agent_council, ["start", "hello"])
    assert f"CACHE_HIT:{job_dir}" in cached.output
    assert len(launcher.calls) == 2


def test_results_show_stats(runner: CliRunner) -> None:
    job_dir = _start(runner, "hello")
    _finish(job_dir, {"codex": "done", "gemini": "done"})

    result = runner.invoke(agent_council, ["results", "--show-stats", str(job_dir)])

    assert "📊 Execution Stats" in result.output
    assert "Duration: 2.0s" in result.output


def test_results_missing_job(runner: CliRunner, tmp_path: Path) -> None:
    result = runner.invoke(agent_council, ["results", str(tmp_path / "missing")])

    assert result.exit_code == 2


def test_cache_commands(runner: CliRunner, tmp_path: Path) -> None:
    job_dir = _start(runner, "hello")
    _finish(job_dir, {"codex": "answer one", "gemini": "answer two"})
    runner.invoke(agent_council, ["results", str(job_dir)])

    listed = json.loads(runner.invoke(agent_council, ["cache", "list", "--json"]).output)
    key = listed[0]["key"]
    table = runner.invoke(agent_council, ["cache", "list"])
    exported = runner.invoke(agent_council, ["cache", "export", key])
    missing = runner.invoke(agent_council, ["cache", "export", "0000000000000000"])
    cleared = runner.invoke(agent_council, ["cache", "clear", key])
    empty = runner.invoke(agent_council, ["cache", "list"])

    assert listed[0]["jobDir"] == str(job_dir)
    assert "Cached Results (1 entries)" in table.output
    assert "answer one" in exported.output
    assert missing.exit_code == 2
    assert f"Cleared cache entry: {key}" in cleared.output
    assert "No cached results found" in empty.output


def test_stop_and_clean(runner: CliRunner) -> None:
    job_dir = _start(runner, "hello")

    stopped = runner.invoke(agent_council, ["stop", str(job_dir)])
    cleaned = runner.invoke(agent_council, ["clean", str(job_dir)])

    assert stopped.output.strip() == "stop: no running members"
    assert cleaned.output.strip() == f"cleaned: {job_dir}"
    assert not job_dir.exists()


def test_cache_commands_reject_keys_outside_cache_dir(
    runner: CliRunner,
    council_env: Settings,
) -> None:
    council_env.cache_dir.mkdir(parents=True, exist_ok=True)
    outside = council_env.cache_dir.parent / "x.json"
    outside.write_text("{}", "utf-8")

    cleared = runner.invoke(agent_council, ["cache", "clear", "../x"])
    exported = runner.invoke(agent_council, ["cache", "export", "../x"])

    assert cleared.exit_code == 2
    assert "Invalid cache key" in cleared.output
    assert exported.exit_code == 2
    assert outside.exists()
