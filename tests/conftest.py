"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections.abc import Sequence
from pathlib import Path

import pytest

from agent_council.config import Settings

ECHO_AGENT = f"{shlex.quote(sys.executable)} -m agent_council.orchestrator.backend.echo_agent"


def echo_command(*args: str) -> str:
    """Command line running the bundled echo agent with ``args``."""

    return " ".join([ECHO_AGENT, *(shlex.quote(arg) for arg in args)])


class RecordingLauncher:
    """Worker launcher that records argv instead of spawning processes."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def __call__(self, argv: Sequence[str]) -> None:
        self.calls.append(list(argv))

    def option(self, index: int, name: str) -> str | None:
        argv = self.calls[index]
        if name not in argv:
            return None
        return argv[argv.index(name) + 1]


@pytest.fixture()
def council_env(tmp_path: Path, monkeypatch) -> Settings:
    """Isolated jobs/cache dirs and a working directory without a config file."""

    for name in ("COUNCIL_CONFIG", "COUNCIL_CHAIRMAN", "COUNCIL_SCENARIO", "COUNCIL_TEMPLATES_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("COUNCIL_JOBS_DIR", str(tmp_path / "jobs"))
    monkeypatch.setenv("COUNCIL_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("COUNCIL_HOST", "claude")
    monkeypatch.chdir(tmp_path)
    return Settings.from_env()


@pytest.fixture()
def launcher() -> RecordingLauncher:
    return RecordingLauncher()


def write_config(path: Path, body: str) -> Path:
    path.write_text(body, "utf-8")
    return path
