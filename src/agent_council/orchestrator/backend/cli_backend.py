"""Subprocess-based backend runner for member CLIs."""

from __future__ import annotations

import contextlib
import logging
import shlex
import signal
import subprocess
import time
from collections.abc import Iterator
from pathlib import Path
from typing import IO

from agent_council.orchestrator.backend.base import MemberRunRequest, MemberRunResult

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.1
TERMINATE_GRACE_SECONDS = 2.0


class BackendRunError(RuntimeError):
    """Member command could not be started."""

    def __init__(self, message: str, *, missing_executable: bool) -> None:
        super().__init__(message)
        self.missing_executable = missing_executable


def split_command(command: str) -> list[str]:
    """Split a configured command line into argv using POSIX shell rules."""

    try:
        argv = shlex.split(command or "")
    except ValueError as error:
        raise BackendRunError(
            f"Invalid command string: {error}",
            missing_executable=False,
        ) from error
    if not argv:
        raise BackendRunError("Invalid command string", missing_executable=False)
    return argv


def append_diagnostic(path: Path, message: str) -> None:
    """Append a diagnostic line to a member error file; never raises."""

    try:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(f"\n{message}\n")
    except OSError as error:
        logger.warning("Could not record diagnostic in %s: %s (%s)", path, message, error)


class CliAgentBackend:
    """Run a member command with its prompt appended as the last argument."""

    def __init__(
        self,
        *,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        terminate_grace_seconds: float = TERMINATE_GRACE_SECONDS,
    ) -> None:
        self.poll_interval_seconds = poll_interval_seconds
        self.terminate_grace_seconds = terminate_grace_seconds

    def run(self, request: MemberRunRequest) -> MemberRunResult:
        """Run one attempt; stderr is opened for append so earlier diagnostics survive."""

        argv = [*split_command(request.command), request.prompt]
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)

        with (
            _open_stream(
                request.stdout_path,
                mode="wb",
                diagnostics_path=request.stderr_path,
            ) as stdout_handle,
            _open_stream(request.stderr_path, mode="ab", diagnostics_path=None) as stderr_handle,
        ):
            try:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                )
            except FileNotFoundError as error:
                raise BackendRunError(
                    f"Command not found: {argv[0]} ({error.strerror or error})",
                    missing_executable=True,
                ) from error
            except OSError as error:
                raise BackendRunError(
                    f"Failed to start {argv[0]}: {error}",
                    missing_executable=False,
                ) from error

            if request.on_started is not None:
                request.on_started(process.pid)
            return self._wait_with_timeout(process, request)

    def _wait_with_timeout(
        self,
        process: subprocess.Popen[bytes],
        request: MemberRunRequest,
    ) -> MemberRunResult:
        timeout = request.timeout_seconds
        deadline = (
            time.monotonic() + timeout if timeout is not None and timeout > 0 else None
        )
        timer_fired = False

        while True:
            returncode = process.poll()
            if returncode is not None:
                break
            if deadline is not None and time.monotonic() >= deadline:
                timer_fired = True
                logger.debug("Timeout of %ss expired for pid %s", timeout, process.pid)
                returncode = _terminate_process(process, grace=self.terminate_grace_seconds)
                break
            time.sleep(self.poll_interval_seconds)

        exit_code: int | None = returncode
        signal_number: int | None = None
        if returncode is not None and returncode < 0:
            exit_code = None
            signal_number = -returncode
        return MemberRunResult(
            pid=process.pid,
            exit_code=exit_code,
            signal_number=signal_number,
            timer_fired=timer_fired,
            stdout_path=request.stdout_path,
            stderr_path=request.stderr_path,
        )


def signal_name(signal_number: int | None) -> str | None:
    if signal_number is None:
        return None
    try:
        return signal.Signals(signal_number).name
    except ValueError:
        return str(signal_number)


@contextlib.contextmanager
def _open_stream(
    path: Path,
    *,
    mode: str,
    diagnostics_path: Path | None,
) -> Iterator[IO[bytes] | int]:
    try:
        handle = path.open(mode)
    except OSError as error:
        message = f"output stream error: {error}"
        if diagnostics_path is not None:
            append_diagnostic(diagnostics_path, message)
        else:
            logger.warning("Could not open %s: %s", path, error)
        yield subprocess.DEVNULL
        return
    with handle:
        yield handle


def _terminate_process(process: subprocess.Popen[bytes], *, grace: float) -> int | None:
    try:
        process.terminate()
    except OSError:
        return process.poll()
    try:
        return process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return process.poll()
        return process.wait(timeout=grace)
