"""Backend interface for running one member command."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class MemberRunRequest:
    """Inputs required to execute one member attempt."""

    command: str
    prompt: str
    stdout_path: Path
    stderr_path: Path
    timeout_seconds: float | None = None
    on_started: Callable[[int], None] | None = None


@dataclass(slots=True)
class MemberRunResult:
    """Execution outcome from the backend runner."""

    pid: int
    exit_code: int | None
    signal_number: int | None
    timer_fired: bool
    stdout_path: Path
    stderr_path: Path


class MemberBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: MemberRunRequest) -> MemberRunResult:
        """Run one attempt to exit and return execution metadata."""
