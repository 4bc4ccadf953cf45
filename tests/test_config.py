from __future__ import annotations

from pathlib import Path

import allure
import pytest
from conftest import write_config

from agent_council.config import (
    DEFAULT_CONFIG_FILENAME,
    ConfigError,
    Settings,
    load_council_config,
    parse_bool,
)

pytestmark = [
    allure.epic("Agent Council"),
    allure.feature("Configuration"),
]


def test_load_council_config_defaults_without_file() -> None:
    config = load_council_config(None)

    assert [member.name for member in config.members] == ["claude", "codex", "gemini"]
    assert config.chairman_role == "auto"
    assert config.exclude_chairman_from_members is True
    assert config.timeout_seconds == 120.0
    assert config.retry_on_rate_limit is True


def test_load_council_config_parses_members_and_settings(tmp_path: Path) -> None:
    path = write_config(
        tmp_path / "council.yaml",
        """
council:
  chairman:
    role: codex
  members:
    - name: claude
      command: claude -p
      emoji: "🧠"
    - name: gemini
      command: gemini
      fallback: gemini --model flash
    - name: nameless
    - command: orphan-command
  settings:
    exclude_chairman_from_members: "no"
    retry_on_rate_limit: false
    timeout: 0
""",
    )

    config = load_council_config(path)

    assert config.path == path
    assert config.chairman_role == "codex"
    assert [member.name for member in config.members] == ["claude", "gemini"]
    assert config.members[0].emoji == "🧠"
    assert config.members[1].fallback == "gemini --model flash"
    assert config.exclude_chairman_from_members is False
    assert config.retry_on_rate_limit is False
    assert config.timeout_seconds is None


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("council: [unclosed", "Invalid YAML"),
        ("- just\n- a list\n", "expected a YAML mapping"),
        ("other: {}\n", "missing required top-level key 'council:'"),
        ("council: 5\n", "'council' must be a mapping"),
        ("council:\n  members: claude\n", "'council.members' must be a list"),
        ("council:\n  settings:\n    timeout: soon\n", "must be a number"),
    ],
)
def test_load_council_config_rejects_malformed_files(
    tmp_path: Path,
    body: str,
    message: str,
) -> None:
    path = write_config(tmp_path / "council.yaml", body)

    with pytest.raises(ConfigError, match=message):
        load_council_config(path)


def test_load_council_config_missing_explicit_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        load_council_config(tmp_path / "absent.yaml")


def test_settings_from_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("COUNCIL_JOBS_DIR", str(tmp_path / "jobs"))
    monkeypatch.setenv("COUNCIL_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("COUNCIL_CONFIG", str(tmp_path / "env.yaml"))
    monkeypatch.setenv("COUNCIL_CHAIRMAN", " codex ")
    monkeypatch.setenv("COUNCIL_SCENARIO", "")

    settings = Settings.from_env()

    assert settings.jobs_dir == tmp_path / "jobs"
    assert settings.cache_dir == tmp_path / "cache"
    assert settings.config_path == tmp_path / "env.yaml"
    assert settings.chairman == "codex"
    assert settings.scenario is None

    override = Settings.from_env(config_path=tmp_path / "cli.yaml", jobs_dir=tmp_path / "j2")
    assert override.config_path == tmp_path / "cli.yaml"
    assert override.jobs_dir == tmp_path / "j2"


def test_resolve_config_path_prefers_explicit_then_working_directory(tmp_path: Path) -> None:
    assert Settings().resolve_config_path(cwd=tmp_path) is None

    local = write_config(tmp_path / DEFAULT_CONFIG_FILENAME, "council: {members: []}")
    assert Settings().resolve_config_path(cwd=tmp_path) == local
    explicit = tmp_path / "other.yaml"
    assert Settings(config_path=explicit).resolve_config_path(cwd=tmp_path) == explicit


@pytest.mark.parametrize(
    ("value", "expected"),
    [(True, True), ("yes", True), ("1", True), ("off", False), (0, False), ("maybe", None)],
)
def test_parse_bool(value: object, expected: bool | None) -> None:
    assert parse_bool(value) is expected
